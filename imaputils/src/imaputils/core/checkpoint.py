"""Per-folder checkpoint persistence for the incremental training scan.

What:
  Persist ``uidvalidity``/``uidnext``/``highestmodseq`` for every
  ``(user, folder)`` pair under ``<statefolder>/<user>.<folder>`` and guard
  each file with an exclusive, non-blocking lock while a folder is processed.

Why:
  The scanner must be resumable and idempotent: a quiescent folder is skipped
  by comparing the server's counters with the stored ones, and a crash in the
  middle of a folder must never move the stored cursor past work that was not
  finished. Two concurrent runs on the same folder would corrupt that cursor,
  so contention fails fast instead of waiting.

How:
  :meth:`CheckpointStore.acquire` opens (creating if needed) the checkpoint
  file, takes ``fcntl.flock(LOCK_EX | LOCK_NB)`` and parses the current
  contents. The returned :class:`CheckpointHandle` exposes the mutable
  :class:`FolderCheckpoint`; :meth:`CheckpointHandle.save` truncates and
  rewrites the file through the still-held descriptor and fsyncs it. Parsing
  failures raise :class:`~imaputils.errors.StateCorruption` internally and are
  turned into a zero checkpoint plus a ``checkpoint_invalid`` warning.

Interfaces:
  :class:`FolderCheckpoint`, :class:`CheckpointHandle`, :class:`CheckpointStore`,
  :func:`checkpoint_tag`.

Invariants & Safety:
  - Files hold one ``key: value`` line per counter; ``uidvalidity`` and
    ``highestmodseq`` are required, ``uidnext`` is optional.
  - The lock is held from :meth:`CheckpointStore.acquire` until the handle is
    closed; saving never happens without it.
  - Tags are percent-quoted so folder delimiters never create subdirectories.
"""
from __future__ import annotations

import contextlib
import fcntl
import os
from dataclasses import dataclass
from pathlib import Path
from typing import Dict, Iterator, Optional
from urllib.parse import quote

from ..errors import LockContention, StateCorruption
from ..utils.logging import JsonLogger, get_logger


CHECKPOINT_KEYS = ("uidvalidity", "uidnext", "highestmodseq")
REQUIRED_KEYS = frozenset({"uidvalidity", "highestmodseq"})


def checkpoint_tag(user: str, folder: str) -> str:
    """Return the checkpoint tag for ``folder`` of ``user``."""

    return f"{user}.{folder}"


@dataclass
class FolderCheckpoint:
    """Stored counters of one folder; zero means unknown."""

    uidvalidity: int = 0
    uidnext: int = 0
    highestmodseq: int = 0

    def matches(self, uidvalidity: int, uidnext: int, highestmodseq: int) -> bool:
        return (
            self.uidvalidity == uidvalidity
            and self.uidnext == uidnext
            and self.highestmodseq == highestmodseq
        )

    def reset_for(self, uidvalidity: int) -> None:
        """Adopt a new UID generation, forgetting every cursor of the old one."""

        self.uidvalidity = uidvalidity
        self.uidnext = 0
        self.highestmodseq = 0

    def dumps(self) -> str:
        return "".join(f"{key}: {getattr(self, key)}\n" for key in CHECKPOINT_KEYS)

    @classmethod
    def parse(cls, text: str) -> "FolderCheckpoint":
        """Parse checkpoint file contents.

        Raises:
          StateCorruption: On malformed lines, unknown or duplicate keys,
          negative or non-numeric values, and missing required keys.
        """

        values: Dict[str, int] = {}
        for number, line in enumerate(text.splitlines(), start=1):
            if not line.strip():
                continue
            key, sep, raw = line.partition(":")
            key = key.strip()
            raw = raw.strip()
            if not sep or key not in CHECKPOINT_KEYS:
                raise StateCorruption(f"line {number}: unexpected entry {line!r}")
            if key in values:
                raise StateCorruption(f"line {number}: duplicate key {key!r}")
            if not raw.isdigit():
                raise StateCorruption(f"line {number}: invalid value {raw!r} for {key!r}")
            values[key] = int(raw)
        missing = REQUIRED_KEYS - values.keys()
        if missing:
            raise StateCorruption(f"missing keys: {', '.join(sorted(missing))}")
        return cls(**values)


class CheckpointHandle:
    """A locked checkpoint file and its parsed contents."""

    def __init__(self, tag: str, path: Path, fd: int, checkpoint: FolderCheckpoint):
        self.tag = tag
        self.path = path
        self.checkpoint = checkpoint
        self._fd: Optional[int] = fd

    @property
    def closed(self) -> bool:
        return self._fd is None

    def save(self) -> None:
        """Truncate and rewrite the file with the current checkpoint."""

        if self._fd is None:
            raise ValueError(f"checkpoint {self.tag!r} is closed")
        data = self.checkpoint.dumps().encode("ascii")
        os.ftruncate(self._fd, 0)
        os.lseek(self._fd, 0, os.SEEK_SET)
        os.write(self._fd, data)
        os.fsync(self._fd)

    def close(self) -> None:
        if self._fd is None:
            return
        fd, self._fd = self._fd, None
        try:
            fcntl.flock(fd, fcntl.LOCK_UN)
        finally:
            os.close(fd)


class CheckpointStore:
    """Directory of per-folder checkpoint files.

    What:
      Map checkpoint tags to files below ``state_dir`` and hand out locked
      handles for them.

    Why:
      The processor keeps a folder's checkpoint locked between opening and
      closing the folder; tests and the ``show-flags`` tooling only need plain
      reads and writes. Both go through the same locking path.

    How:
      :meth:`acquire` does the open/lock/parse dance; :meth:`read` and
      :meth:`write` are thin wrappers around it.
    """

    def __init__(self, state_dir: Path | str, logger: Optional[JsonLogger] = None):
        self.state_dir = Path(state_dir)
        self._logger = logger or get_logger("imaputils.checkpoint")

    def path_for(self, tag: str) -> Path:
        return self.state_dir / quote(tag, safe="@+")

    def acquire(self, tag: str) -> CheckpointHandle:
        """Lock the checkpoint file for ``tag`` and load its contents.

        Raises:
          LockContention: If another process holds the lock.
        """

        self.state_dir.mkdir(parents=True, exist_ok=True)
        path = self.path_for(tag)
        fd = os.open(path, os.O_CREAT | os.O_RDWR, 0o600)
        try:
            fcntl.flock(fd, fcntl.LOCK_EX | fcntl.LOCK_NB)
        except BlockingIOError as exc:
            os.close(fd)
            raise LockContention(f"checkpoint {tag!r} is locked by another process") from exc
        try:
            checkpoint = self._load(fd, tag)
        except BaseException:
            fcntl.flock(fd, fcntl.LOCK_UN)
            os.close(fd)
            raise
        return CheckpointHandle(tag, path, fd, checkpoint)

    @contextlib.contextmanager
    def locked(self, tag: str) -> Iterator[CheckpointHandle]:
        handle = self.acquire(tag)
        try:
            yield handle
        finally:
            handle.close()

    def read(self, tag: str) -> FolderCheckpoint:
        with self.locked(tag) as handle:
            return handle.checkpoint

    def write(self, tag: str, checkpoint: FolderCheckpoint) -> None:
        with self.locked(tag) as handle:
            handle.checkpoint = checkpoint
            handle.save()

    def _load(self, fd: int, tag: str) -> FolderCheckpoint:
        chunks = []
        os.lseek(fd, 0, os.SEEK_SET)
        while True:
            chunk = os.read(fd, 4096)
            if not chunk:
                break
            chunks.append(chunk)
        text = b"".join(chunks).decode("ascii", errors="replace")
        if not text.strip():
            return FolderCheckpoint()
        try:
            return FolderCheckpoint.parse(text)
        except StateCorruption as exc:
            self._logger.warning("checkpoint_invalid", tag=tag, error=str(exc))
            return FolderCheckpoint()
