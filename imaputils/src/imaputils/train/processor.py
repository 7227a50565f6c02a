"""Incremental scan of user mailboxes that feeds a spam classifier.

What:
  Walk every folder of every opted-in user, find the messages whose
  classification flags disagree with the folder they now live in (or that were
  never classified), hand them to a :class:`ClassificationSink`, and record
  the new classification as IMAP keywords.

Why:
  Users train the filter by moving mail: a message classified as junk that
  ends up in an ordinary folder is a missed innocent, and vice versa. Scanning
  thousands of folders on every cron run is only affordable when unchanged
  folders cost a single ``STATUS`` and changed folders only return what
  changed since the last run. That is what ``CONDSTORE`` mod-sequences and the
  per-folder checkpoint provide.

How:
  :meth:`UserProcessor.open_folder` compares ``STATUS UIDVALIDITY UIDNEXT
  HIGHESTMODSEQ`` with the stored checkpoint and returns an
  :class:`OpenResult`. Opened folders are queried with ``SORT (MODSEQ)`` for
  messages above the stored ``highestmodseq`` that match the folder's
  condition; candidates are clamped to the remaining budget and processed in
  ascending mod-sequence order, ``batch_size`` at a time. After each batch
  the flag changes are stored (``-FLAGS.SILENT`` first, then
  ``+FLAGS.SILENT``) and only then does the checkpoint move forward.

Interfaces:
  :class:`OpenResult`, :class:`Disposition`, :class:`ScanMessage`,
  :class:`ClassificationSink`, :class:`UserProcessor`, :class:`ImapProcessor`.

Invariants & Safety:
  - Messages are processed strictly in ascending ``MODSEQ`` order; the
    checkpoint never jumps over a message that was skipped.
  - The checkpoint is forced to the server's ``HIGHESTMODSEQ``/``UIDNEXT``
    only when no candidate was clamped away by the budget.
  - A ``UIDVALIDITY`` change resets every stored cursor of the folder.
  - Interrupted folders are never saved.
"""
from __future__ import annotations

import enum
import re
from collections import defaultdict
from dataclasses import dataclass, field, replace
from typing import Any, Callable, Dict, FrozenSet, List, Optional, Protocol, Sequence, Tuple

from imapclient.exceptions import IMAPClientError

from ..config.patterns import FolderPatterns
from ..config.schema import AppConfig
from ..core.checkpoint import CheckpointHandle, CheckpointStore, checkpoint_tag
from ..core.messages import normalise_flags
from ..errors import ConfigurationError, ImapUtilsError, LockContention, ServerError
from ..imap.client import ImapSession
from ..utils.logging import JsonLogger, get_logger
from ..utils.progress import batches


CLASSIFIED_INNOCENT = "$ClassifiedInnocent"
CLASSIFIED_JUNK = "$ClassifiedJunk"
JUNK = "Junk"
TRACKED_FLAGS = (CLASSIFIED_INNOCENT, CLASSIFIED_JUNK, JUNK)

CONDSTORE_ANNOTATION = "/vendor/cmu/cyrus-imapd/condstore"
STATUS_ITEMS = ("UIDVALIDITY", "UIDNEXT", "HIGHESTMODSEQ")

SIGNATURE_HEADER = "BODY[HEADER.FIELDS (X-DSPAM-SIGNATURE)]"
SUBJECT_HEADER = "BODY[HEADER.FIELDS (SUBJECT)]"
RAW_BODY = "BODY[]"

_SIGNATURE = re.compile(rb"^X-DSPAM-Signature:\s*([A-Za-z0-9]+)\s*$", re.IGNORECASE | re.MULTILINE)
_SUBJECT = re.compile(rb"^Subject:\s*([^\r\n]*)", re.IGNORECASE | re.MULTILINE)


class OpenResult(enum.Enum):
    UNCHANGED = "unchanged"
    OPENED = "opened"
    ERROR = "error"


class Disposition(enum.Enum):
    KEPT = "kept"
    MISSED_JUNK = "missed_junk"
    MISSED_INNOCENT = "missed_innocent"
    CORPUS_JUNK = "corpus_junk"
    CORPUS_INNOCENT = "corpus_innocent"


@dataclass(frozen=True)
class ScanMessage:
    """A changed message as seen by the classifier sink."""

    uid: int
    modseq: int
    flags: FrozenSet[str] = frozenset()
    signature: Optional[str] = None
    subject: Optional[str] = None
    raw: Optional[bytes] = field(default=None, repr=False)

    @property
    def classified_innocent(self) -> bool:
        return CLASSIFIED_INNOCENT in self.flags

    @property
    def classified_junk(self) -> bool:
        return CLASSIFIED_JUNK in self.flags

    @property
    def unclassified(self) -> bool:
        return not (self.classified_innocent or self.classified_junk)

    def with_flags(self, add: Sequence[str] = (), remove: Sequence[str] = ()) -> "ScanMessage":
        return replace(self, flags=(self.flags | frozenset(add)) - frozenset(remove))


class ClassificationSink(Protocol):
    """Receiver of classification events.

    ``handles`` tells the processor which events the sink acts on; events a
    sink does not handle leave the message untouched.
    """

    def handles(self, kind: Disposition) -> bool: ...

    def kept(self, user: str, message: ScanMessage) -> None: ...

    def missed_junk(self, user: str, message: ScanMessage) -> None: ...

    def missed_innocent(self, user: str, message: ScanMessage) -> None: ...

    def corpus_junk(self, user: str, message: ScanMessage) -> None: ...

    def corpus_innocent(self, user: str, message: ScanMessage) -> None: ...


def _fetch_item(data: Dict[bytes, Any], name: str) -> Any:
    wanted = name.upper()
    for key, value in data.items():
        text = key.decode("ascii", "replace") if isinstance(key, bytes) else str(key)
        if text.upper() == wanted:
            return value
    return None


def _modseq(value: Any) -> int:
    if isinstance(value, (tuple, list)):
        value = value[0] if value else 0
    return int(value or 0)


def parse_scan_message(uid: int, data: Dict[bytes, Any]) -> ScanMessage:
    """Build a :class:`ScanMessage` from one ``FETCH`` response entry."""

    signature = subject = None
    header = _fetch_item(data, SIGNATURE_HEADER)
    if header:
        match = _SIGNATURE.search(header)
        if match:
            signature = match.group(1).decode("ascii")
    header = _fetch_item(data, SUBJECT_HEADER)
    if header:
        match = _SUBJECT.search(header)
        if match:
            subject = match.group(1).decode("utf-8", "replace")
    return ScanMessage(
        uid=uid,
        modseq=_modseq(_fetch_item(data, "MODSEQ")),
        flags=normalise_flags(_fetch_item(data, "FLAGS")),
        signature=signature,
        subject=subject,
        raw=_fetch_item(data, RAW_BODY),
    )


@dataclass
class _OpenFolder:
    name: str
    handle: CheckpointHandle
    uidnext: int
    highestmodseq: int


@dataclass
class UserResult:
    user: str
    processed: int = 0
    unchanged: List[str] = field(default_factory=list)
    opened: List[str] = field(default_factory=list)
    failed: List[str] = field(default_factory=list)


class UserProcessor:
    """Scans the folders of one user on an already authenticated session."""

    def __init__(
        self,
        config: AppConfig,
        session: ImapSession,
        user: str,
        sink: ClassificationSink,
        limit: Optional[int] = None,
        *,
        store: Optional[CheckpointStore] = None,
        logger: Optional[JsonLogger] = None,
    ):
        self.config = config
        self.session = session
        self.user = user
        self.sink = sink
        self.remaining = limit if limit is not None else config.limits.msgs_per_run
        self.batch_size = config.limits.batchsize
        self._logger = logger or get_logger("imaputils.train")
        self.store = store or CheckpointStore(config.statefolder, self._logger)
        delimiter = session.delimiter
        self._ignore = FolderPatterns(config.folders.ignore, delimiter)
        self._junk = FolderPatterns(config.folders.junk, delimiter)
        self._corpus = FolderPatterns(config.folders.corpus, delimiter)
        self._open: Optional[_OpenFolder] = None

    @property
    def exhausted(self) -> bool:
        return self.remaining is not None and self.remaining <= 0

    def process_folders(self) -> UserResult:
        result = UserResult(self.user)
        self._logger.info("user_start", user=self.user, limit=self.remaining, batchsize=self.batch_size)
        for info in self.session.list_folders("*"):
            if self.exhausted:
                break
            if not info.selectable or self._ignore.matches(info.name):
                continue
            junk = self._junk.matches(info.name)
            corpus = self._corpus.matches(info.name)
            outcome, count = self.process_folder(info.name, junk=junk, corpus=corpus)
            result.processed += count
            if outcome is OpenResult.UNCHANGED:
                result.unchanged.append(info.name)
            elif outcome is OpenResult.OPENED:
                result.opened.append(info.name)
            else:
                result.failed.append(info.name)
        self._logger.info(
            "user_done",
            user=self.user,
            processed=result.processed,
            opened=len(result.opened),
            unchanged=len(result.unchanged),
            failed=len(result.failed),
        )
        return result

    def process_folder(self, folder: str, *, junk: bool, corpus: bool) -> Tuple[OpenResult, int]:
        """Process one folder; folder errors are logged and reported as ``ERROR``."""

        role = "junk" if junk else "innocent"
        self._logger.info("folder_check", user=self.user, folder=folder, role=role, corpus=corpus)
        outcome = self.open_folder(folder)
        if outcome is not OpenResult.OPENED:
            return outcome, 0
        condition, with_body = self.condition_for(junk=junk, corpus=corpus)
        count = 0
        try:
            count = self.process_messages(condition, junk=junk, with_body=with_body)
        except (ImapUtilsError, IMAPClientError) as exc:
            self.close_folder(exc)
            return OpenResult.ERROR, count
        except BaseException:
            self._abandon()
            raise
        self.close_folder()
        return OpenResult.OPENED, count

    def condition_for(self, *, junk: bool, corpus: bool) -> Tuple[str, bool]:
        """Return the ``SORT`` condition and whether message bodies are needed."""

        handles = self.sink.handles
        if junk:
            if corpus and handles(Disposition.CORPUS_JUNK):
                return f"NOT KEYWORD {CLASSIFIED_JUNK}", True
            return f"KEYWORD {CLASSIFIED_INNOCENT}", False
        if corpus and (handles(Disposition.CORPUS_JUNK) or handles(Disposition.CORPUS_INNOCENT)):
            return f"NOT KEYWORD {CLASSIFIED_INNOCENT} NOT KEYWORD {CLASSIFIED_JUNK}", True
        return f"KEYWORD {CLASSIFIED_JUNK}", False

    # Folder lifecycle ---------------------------------------------------
    def _status(self, folder: str) -> Dict[str, int]:
        status = self.session.status(folder, STATUS_ITEMS)
        if status.get("HIGHESTMODSEQ", 0) > 0:
            return status
        self._logger.info("condstore_enable", user=self.user, folder=folder)
        self.session.set_annotation(folder, CONDSTORE_ANNOTATION, "true")
        status = self.session.status(folder, STATUS_ITEMS)
        if status.get("HIGHESTMODSEQ", 0) > 0:
            self._logger.info("condstore_enabled", user=self.user, folder=folder)
            return status
        raise ConfigurationError(f"CONDSTORE/MODSEQ couldn't be enabled for {folder}")

    def open_folder(self, folder: str) -> OpenResult:
        """Decide whether ``folder`` changed since the last run and open it if so."""

        try:
            handle = self.store.acquire(checkpoint_tag(self.user, folder))
        except LockContention as exc:
            self._log_folder_error(folder, exc)
            return OpenResult.ERROR
        try:
            status = self._status(folder)
            uidvalidity = status.get("UIDVALIDITY", 0)
            uidnext = status.get("UIDNEXT", 0)
            highestmodseq = status.get("HIGHESTMODSEQ", 0)
            if handle.checkpoint.matches(uidvalidity, uidnext, highestmodseq):
                handle.close()
                self._logger.debug("folder_unchanged", user=self.user, folder=folder)
                return OpenResult.UNCHANGED

            response = self.session.examine(folder)
            if b"UIDVALIDITY" not in response:
                raise ServerError(f"server reported no UIDVALIDITY for {folder}")
            uidvalidity = int(response[b"UIDVALIDITY"])
            uidnext = int(response.get(b"UIDNEXT", uidnext))
            highestmodseq = _modseq(response.get(b"HIGHESTMODSEQ", highestmodseq))
            if handle.checkpoint.uidvalidity != uidvalidity:
                self._logger.info(
                    "uidvalidity_changed",
                    user=self.user,
                    folder=folder,
                    old=handle.checkpoint.uidvalidity,
                    new=uidvalidity,
                )
                handle.checkpoint.reset_for(uidvalidity)
        except (ImapUtilsError, IMAPClientError) as exc:
            handle.close()
            self._log_folder_error(folder, exc)
            return OpenResult.ERROR
        except BaseException:
            handle.close()
            raise
        self._open = _OpenFolder(folder, handle, uidnext, highestmodseq)
        self._logger.info("folder_open", user=self.user, folder=folder)
        return OpenResult.OPENED

    def close_folder(self, error: Optional[BaseException] = None) -> None:
        """Leave the open folder and persist its checkpoint."""

        current, self._open = self._open, None
        if current is None:
            return
        try:
            self.session.release()
            current.handle.save()
        finally:
            current.handle.close()
        if error is None:
            self._logger.info(
                "folder_done",
                user=self.user,
                folder=current.name,
                highestmodseq=current.handle.checkpoint.highestmodseq,
            )
        else:
            self._log_folder_error(current.name, error)

    def _abandon(self) -> None:
        current, self._open = self._open, None
        if current is not None:
            current.handle.close()

    def _log_folder_error(self, folder: str, error: BaseException) -> None:
        self._logger.error(
            "folder_failed",
            user=self.user,
            folder=folder,
            error=str(error),
            error_class=type(error).__name__,
        )

    # Messages -----------------------------------------------------------
    def process_messages(self, condition: str, *, junk: bool, with_body: bool) -> int:
        """Classify the changed messages of the open folder.

        Returns:
          Number of processed messages.
        """

        current = self._open
        if current is None:
            raise ServerError("no folder is open")
        checkpoint = current.handle.checkpoint
        pending = self.session.sort(
            ["MODSEQ"],
            f"MODSEQ {checkpoint.highestmodseq + 1} NOT DELETED {condition}",
            "UTF-8",
        )
        uids = pending if self.remaining is None else pending[: max(self.remaining, 0)]
        if pending:
            self._logger.info(
                "folder_pending",
                user=self.user,
                folder=current.name,
                process=len(uids),
                matching=len(pending),
                batchsize=self.batch_size,
            )
        items = ["MODSEQ", "FLAGS", "BODY.PEEK[HEADER.FIELDS (X-DSPAM-Signature)]", "BODY.PEEK[HEADER.FIELDS (Subject)]"]
        if with_body:
            items.append("BODY.PEEK[]")
        processed = 0
        for batch in batches(uids, self.batch_size):
            processed += self._process_batch(batch, items, junk=junk)
        if len(uids) == len(pending):
            checkpoint.highestmodseq = current.highestmodseq
            checkpoint.uidnext = current.uidnext
        return processed

    def _process_batch(self, uids: List[int], items: List[str], *, junk: bool) -> int:
        response = self.session.fetch(uids, items)
        done: List[Tuple[ScanMessage, ScanMessage]] = []
        try:
            for uid in uids:
                data = response.get(uid)
                if data is None:
                    continue
                original = parse_scan_message(uid, data)
                done.append((original, self.classify(original, junk=junk)))
        except BaseException:
            self._commit(done)
            raise
        self._commit(done)
        return len(done)

    def classify(self, message: ScanMessage, *, junk: bool) -> ScanMessage:
        """Run the sink event for ``message`` and return it with its new flags."""

        handles = self.sink.handles
        if junk:
            if message.classified_innocent and handles(Disposition.MISSED_JUNK):
                self._logger.info("missed_junk", user=self.user, uid=message.uid)
                self.sink.missed_junk(self.user, message)
                return message.with_flags(add=[CLASSIFIED_JUNK], remove=[CLASSIFIED_INNOCENT])
            if message.unclassified and handles(Disposition.CORPUS_JUNK):
                self._logger.info("corpus_junk", user=self.user, uid=message.uid)
                self.sink.corpus_junk(self.user, message)
                return message.with_flags(add=[CLASSIFIED_JUNK], remove=[CLASSIFIED_INNOCENT])
        else:
            if message.classified_junk and handles(Disposition.MISSED_INNOCENT):
                self._logger.info("missed_innocent", user=self.user, uid=message.uid)
                self.sink.missed_innocent(self.user, message)
                return message.with_flags(add=[CLASSIFIED_INNOCENT], remove=[CLASSIFIED_JUNK, JUNK])
            if message.unclassified and handles(Disposition.CORPUS_INNOCENT):
                self._logger.info("corpus_innocent", user=self.user, uid=message.uid)
                self.sink.corpus_innocent(self.user, message)
                return message.with_flags(add=[CLASSIFIED_INNOCENT], remove=[CLASSIFIED_JUNK])
        if handles(Disposition.KEPT):
            self.sink.kept(self.user, message)
        return message

    def _commit(self, done: List[Tuple[ScanMessage, ScanMessage]]) -> None:
        """Store flag changes of ``done`` and advance the checkpoint past them."""

        if not done or self._open is None:
            return
        to_add: Dict[Tuple[str, ...], List[int]] = defaultdict(list)
        to_remove: Dict[Tuple[str, ...], List[int]] = defaultdict(list)
        for original, updated in done:
            added = tuple(flag for flag in TRACKED_FLAGS if flag in updated.flags and flag not in original.flags)
            removed = tuple(flag for flag in TRACKED_FLAGS if flag in original.flags and flag not in updated.flags)
            if added:
                to_add[added].append(original.uid)
            if removed:
                to_remove[removed].append(original.uid)
        for flags, uids in to_remove.items():
            self.session.remove_flags(uids, flags)
        for flags, uids in to_add.items():
            self.session.add_flags(uids, flags)
        self._open.handle.checkpoint.highestmodseq = done[-1][0].modseq
        if self.remaining is not None:
            self.remaining -= len(done)


@dataclass
class TrainResult:
    users: List[UserResult] = field(default_factory=list)
    skipped: List[str] = field(default_factory=list)
    failed: Dict[str, str] = field(default_factory=dict)

    @property
    def ok(self) -> bool:
        return not self.failed


class ImapProcessor:
    """Runs a :class:`UserProcessor` for every opted-in user of the source server.

    ``valid_user`` decides which users take part; the default accepts every
    user. Users are listed below ``imap.user_prefix`` on an administrator
    session authenticated as ``imap.src.proxyusr``.
    """

    def __init__(
        self,
        config: AppConfig,
        sink: ClassificationSink,
        *,
        valid_user: Optional[Callable[[str], bool]] = None,
        limit: Optional[int] = None,
        logger: Optional[JsonLogger] = None,
    ):
        self.config = config
        self.sink = sink
        self.valid_user = valid_user or (lambda user: True)
        self.limit = limit
        self._logger = logger or get_logger("imaputils.train")
        self.endpoint = config.endpoint("src")
        self.store = CheckpointStore(config.statefolder, self._logger)

    def list_users(self, session: ImapSession, pattern: str = "%") -> List[str]:
        prefix = self.config.imap.user_prefix + session.delimiter
        users = []
        for info in session.list_folders(prefix + pattern):
            if not info.selectable or not info.name.startswith(prefix):
                continue
            users.append(info.name[len(prefix):])
        return users

    def process_users(self, pattern: str = "%") -> TrainResult:
        admin = self.endpoint.proxyusr
        if not admin:
            raise ConfigurationError("imap.src.proxyusr is required to enumerate users")
        with ImapSession.connect(self.endpoint, admin, logger=self._logger) as session:
            users = self.list_users(session, pattern)
        result = TrainResult()
        for user in users:
            self._run_user(user, result)
        return result

    def process_user(self, user: str) -> TrainResult:
        result = TrainResult()
        self._run_user(user, result)
        return result

    def _run_user(self, user: str, result: TrainResult) -> None:
        if not self.valid_user(user):
            result.skipped.append(user)
            self._logger.debug("user_skipped", user=user)
            return
        try:
            with ImapSession.connect(self.endpoint, user, logger=self._logger) as session:
                processor = UserProcessor(
                    self.config,
                    session,
                    user,
                    self.sink,
                    self.limit,
                    store=self.store,
                    logger=self._logger,
                )
                result.users.append(processor.process_folders())
        except (ImapUtilsError, IMAPClientError, OSError) as exc:
            result.failed[user] = f"{exc} ({type(exc).__name__})"
            self._logger.error("user_failed", user=user, error=str(exc), error_class=type(exc).__name__)
