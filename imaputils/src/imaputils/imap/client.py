"""Locked, mode-aware IMAP session used by the replicator and the trainer.

What:
  Wrap one ``imapclient.IMAPClient`` connection with authentication,
  hierarchy-delimiter discovery, a keepalive heartbeat, and explicit tracking
  of the currently opened folder and whether it was opened read-only.

Why:
  Both tools open folders with ``EXAMINE`` so that merely looking at a folder
  never alters ``\\Recent`` or other server state, but later need to store
  flags in the same folder. Closing a folder with ``CLOSE`` would expunge
  messages marked ``\\Deleted`` by someone else. A heartbeat thread shares the
  connection, so commands must never interleave.

How:
  Every command runs under a per-session :class:`threading.RLock`; the
  heartbeat only pings when it can take that lock without waiting. Flag and
  expunge operations call :meth:`ImapSession.ensure_writable`, which
  re-``SELECT``s a folder that was only examined. :meth:`ImapSession.release`
  leaves the folder by examining the empty mailbox name and ignoring the
  server's ``NO``.

Interfaces:
  :class:`FolderInfo`, :class:`ImapSession`.

Invariants & Safety:
  - All message operations use UIDs (``IMAPClient`` runs in UID mode).
  - ``CLOSE`` is never sent.
  - Teardown stops and joins the heartbeat before logging out, on success and
    on error alike.
"""
from __future__ import annotations

import threading
from datetime import datetime
from typing import Any, Dict, Iterable, List, NamedTuple, Optional, Sequence, Tuple

from imapclient import IMAPClient, imap_utf7
from imapclient.exceptions import IMAPClientError

from ..config.loader import read_password
from ..config.schema import ServerEndpoint
from ..errors import ConfigurationError, ServerError
from ..utils.logging import JsonLogger, get_logger
from .auth import authenticate
from .keepalive import Heartbeat


NOSELECT = "\\noselect"


def _text(value: Any) -> str:
    if isinstance(value, bytes):
        return value.decode("utf-8", "surrogateescape")
    return str(value)


class FolderInfo(NamedTuple):
    """One ``LIST`` response entry with decoded name, flags and delimiter."""

    name: str
    flags: Tuple[str, ...]
    delimiter: Optional[str]

    @property
    def selectable(self) -> bool:
        return NOSELECT not in (flag.lower() for flag in self.flags)


class ImapSession:
    """Authenticated IMAP connection for one user.

    What:
      Expose the handful of IMAP commands the replication and training code
      needs, each serialised through the session lock.

    Why:
      Callers should never reach for the raw client; that is where overlapping
      commands and accidental writes to examined folders would come from.

    How:
      Build instances with :meth:`connect`, use them as context managers, and
      let :meth:`close` tear everything down.
    """

    def __init__(
        self,
        client: IMAPClient,
        user: str,
        delimiter: str,
        *,
        host: str = "",
        logger: Optional[JsonLogger] = None,
    ):
        self.client = client
        self.user = user
        self.delimiter = delimiter
        self.host = host
        self._logger = logger or get_logger("imaputils.imap")
        self._lock = threading.RLock()
        self._folder: Optional[str] = None
        self._readonly = True
        self._heartbeat: Optional[Heartbeat] = None

    # Lifecycle ----------------------------------------------------------
    @classmethod
    def connect(
        cls,
        endpoint: ServerEndpoint,
        user: str,
        password: Optional[str] = None,
        *,
        logger: Optional[JsonLogger] = None,
        heartbeat: bool = True,
    ) -> "ImapSession":
        """Open, authenticate and prepare a session for ``user``.

        With ``endpoint.proxyusr`` set the session authenticates as that
        administrator using ``endpoint.proxypwd`` and acts as ``user``;
        otherwise ``password`` is used.

        Raises:
          ConfigurationError: If no password is available.
          AuthenticationError: If the server refuses the login.
          ServerError: If the server reports no hierarchy delimiter.
        """

        log = logger or get_logger("imaputils.imap")
        proxy_user = endpoint.proxyusr
        secret = read_password(endpoint.proxypwd) if proxy_user else read_password(password)
        if secret is None:
            raise ConfigurationError(f"no password configured for {proxy_user or user} on {endpoint.server}")

        client = IMAPClient(endpoint.server, port=endpoint.port, ssl=endpoint.ssl)
        try:
            authenticate(
                client,
                endpoint.mech,
                user,
                secret,
                proxy_user=proxy_user,
                host=endpoint.server,
            )
            delimiter = cls._discover_delimiter(client)
        except BaseException:
            cls._quiet_logout(client, log)
            raise
        session = cls(client, user, delimiter, host=endpoint.server, logger=log)
        log.info("session_opened", server=endpoint.server, user=user, proxy_user=proxy_user)
        if heartbeat:
            session.start_heartbeat()
        return session

    @staticmethod
    def _discover_delimiter(client: IMAPClient) -> str:
        for _flags, delimiter, _name in client.list_folders("", ""):
            if delimiter:
                return _text(delimiter)
        raise ServerError("Couldn't determine mailbox hierarchy delimiter")

    @staticmethod
    def _quiet_logout(client: IMAPClient, logger: JsonLogger) -> None:
        try:
            client.logout()
        except (IMAPClientError, OSError) as exc:
            logger.warning("logout_failed", error=str(exc))

    def start_heartbeat(self, *, every: int = 10, tick: float = 1.0) -> None:
        if self._heartbeat is None:
            self._heartbeat = Heartbeat(
                self.try_noop,
                every=every,
                tick=tick,
                name=f"imap-heartbeat-{self.user}",
                logger=self._logger,
            )
            self._heartbeat.start()

    def close(self) -> None:
        """Stop the heartbeat and log out."""

        if self._heartbeat is not None:
            self._heartbeat.stop()
            self._heartbeat = None
        with self._lock:
            self._folder = None
            self._quiet_logout(self.client, self._logger)

    def __enter__(self) -> "ImapSession":
        return self

    def __exit__(self, exc_type, exc, tb) -> None:
        self.close()

    def try_noop(self) -> bool:
        """Send ``NOOP`` unless a command is in flight; return whether it was sent."""

        if not self._lock.acquire(blocking=False):
            return False
        try:
            self.client.noop()
            return True
        finally:
            self._lock.release()

    # Folders ------------------------------------------------------------
    @property
    def folder(self) -> Optional[str]:
        return self._folder

    @property
    def readonly(self) -> bool:
        return self._readonly

    def list_folders(self, pattern: str = "*", directory: str = "") -> List[FolderInfo]:
        with self._lock:
            entries = self.client.list_folders(directory, pattern)
        return [self._folder_info(entry) for entry in entries]

    def list_subscribed(self, pattern: str = "*") -> List[FolderInfo]:
        with self._lock:
            entries = self.client.list_sub_folders("", pattern)
        return [self._folder_info(entry) for entry in entries]

    @staticmethod
    def _folder_info(entry: Sequence[Any]) -> FolderInfo:
        flags, delimiter, name = entry
        return FolderInfo(
            _text(name),
            tuple(_text(flag) for flag in flags or ()),
            _text(delimiter) if delimiter else None,
        )

    def create_folder(self, folder: str) -> None:
        with self._lock:
            self.client.create_folder(folder)

    def subscribe(self, folder: str) -> None:
        with self._lock:
            self.client.subscribe_folder(folder)

    def unsubscribe(self, folder: str) -> None:
        with self._lock:
            self.client.unsubscribe_folder(folder)

    def status(self, folder: str, items: Iterable[str] = ("UIDVALIDITY", "UIDNEXT", "HIGHESTMODSEQ")) -> Dict[str, int]:
        """Return ``STATUS`` counters keyed by upper-case item name."""

        with self._lock:
            response = self.client.folder_status(folder, list(items))
        return {_text(key).upper(): int(value) for key, value in response.items()}

    def examine(self, folder: str) -> Dict[bytes, Any]:
        """Open ``folder`` read-only."""

        return self._open(folder, readonly=True)

    def select(self, folder: str) -> Dict[bytes, Any]:
        """Open ``folder`` read-write."""

        return self._open(folder, readonly=False)

    def _open(self, folder: str, *, readonly: bool) -> Dict[bytes, Any]:
        with self._lock:
            self._folder = None
            response = self.client.select_folder(folder, readonly=readonly)
            self._folder = folder
            self._readonly = readonly
            return response

    def ensure_writable(self) -> None:
        """Re-open the current folder with ``SELECT`` if it was only examined."""

        with self._lock:
            if self._folder is None:
                raise ServerError("no folder is open")
            if self._readonly:
                self.select(self._folder)

    def release(self) -> None:
        """Leave the current folder without expunging it.

        ``EXAMINE ""`` is refused by the server, which deselects the folder as
        a side effect; the ``NO`` is expected and ignored.
        """

        with self._lock:
            try:
                self.client.select_folder("", readonly=True)
            except IMAPClientError:
                pass
            self._folder = None
            self._readonly = True

    def set_annotation(self, folder: str, entry: str, value: str) -> bool:
        """Set a shared ``SETANNOTATION`` value; return whether the server accepted it."""

        mailbox = imap_utf7.encode(folder).decode("ascii")
        # imapclient has no SETANNOTATION helper; _command_and_check is its
        # internal dispatcher onto the imaplib method of the same name.
        with self._lock:
            try:
                self.client._command_and_check(
                    "setannotation",
                    _quoted(mailbox),
                    _quoted(entry),
                    f'("value.shared" {_quoted(value)})',
                )
            except IMAPClientError as exc:
                self._logger.warning("setannotation_failed", folder=folder, entry=entry, error=str(exc))
                return False
        return True

    # Messages -----------------------------------------------------------
    def search(self, criteria: Any = "ALL") -> List[int]:
        with self._lock:
            return list(self.client.search(criteria))

    def sort(self, sort_criteria: Sequence[str], criteria: str, charset: str = "UTF-8") -> List[int]:
        with self._lock:
            return list(self.client.sort(list(sort_criteria), criteria, charset))

    def fetch(self, uids: Sequence[int], items: Sequence[str]) -> Dict[int, Dict[bytes, Any]]:
        if not uids:
            return {}
        with self._lock:
            return self.client.fetch(list(uids), list(items))

    def add_flags(self, uids: Sequence[int], flags: Iterable[str]) -> None:
        with self._lock:
            self.ensure_writable()
            self.client.add_flags(list(uids), sorted(flags), silent=True)

    def remove_flags(self, uids: Sequence[int], flags: Iterable[str]) -> None:
        with self._lock:
            self.ensure_writable()
            self.client.remove_flags(list(uids), sorted(flags), silent=True)

    def set_flags(self, uids: Sequence[int], flags: Iterable[str]) -> None:
        with self._lock:
            self.ensure_writable()
            self.client.set_flags(list(uids), sorted(flags), silent=True)

    def delete_messages(self, uids: Sequence[int]) -> None:
        """Mark ``uids`` deleted and expunge exactly those UIDs."""

        with self._lock:
            self.ensure_writable()
            self.client.add_flags(list(uids), ["\\Deleted"], silent=True)
            self.client.expunge(list(uids))

    def append(self, folder: str, message: bytes, flags: Iterable[str], date: Optional[datetime]) -> None:
        with self._lock:
            self.client.append(folder, message, flags=sorted(flags), msg_time=date)

    def multiappend(self, folder: str, messages: Sequence[Dict[str, Any]]) -> None:
        """Append several messages in one ``MULTIAPPEND`` command.

        ``messages`` entries hold ``msg``, ``flags`` and ``date``.
        """

        with self._lock:
            self.client.multiappend(folder, list(messages))


def _quoted(value: str) -> str:
    return '"' + value.replace("\\", "\\\\").replace('"', '\\"') + '"'
