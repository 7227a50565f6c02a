"""Replication of a whole account: every folder plus the Sieve scripts.

What:
  Connect a source and a destination session for one user pair, map every
  source folder to its destination name, replicate each folder and, when
  enabled, copy the Sieve scripts.

Why:
  Operators migrate accounts, not folders. A broken folder (odd name, quota,
  server hiccup) must not stop the rest of the account, while a failed login
  must stop the pair immediately since nothing else can work.

How:
  Sessions are opened as context managers so heartbeats stop and connections
  close whatever happens. Folder names are mapped by :func:`map_folder_name`;
  folders matching ``folders.ignore`` and ``\\Noselect`` entries are skipped.
  Each folder runs through :class:`~imaputils.replicate.folder.FolderReplicator`
  inside a ``try`` that turns IMAP and imaputils errors into a failed
  :class:`~imaputils.replicate.folder.FolderResult`.

Interfaces:
  :func:`map_folder_name`, :class:`MailboxResult`, :class:`MailboxReplicator`.
"""
from __future__ import annotations

import re
from dataclasses import dataclass, field
from typing import List, Optional

from imapclient.exceptions import IMAPClientError

from ..config.patterns import FolderPatterns
from ..config.schema import AppConfig
from ..errors import ImapUtilsError
from ..imap.client import ImapSession
from ..imap.sieve import SieveSession
from ..utils.logging import JsonLogger, get_logger
from .folder import FolderReplicator, FolderResult
from .sieve import SieveReplicator, SieveResult


INBOX = "INBOX"


def map_folder_name(
    folder: str,
    *,
    src_delimiter: str,
    dst_delimiter: str,
    src_prefix: str = "",
    dst_prefix: str = "",
) -> str:
    """Translate a source folder name into the destination namespace.

    ``INBOX`` (any case) maps to ``INBOX``. Otherwise the source prefix and
    its delimiter are stripped, hierarchy delimiters are swapped and the
    destination prefix is prepended.
    """

    if folder.upper() == INBOX:
        return INBOX
    name = folder
    if src_prefix:
        match = re.match(
            rf"^{re.escape(src_prefix + src_delimiter)}([^{re.escape(src_delimiter)}].*)$",
            folder,
            re.DOTALL,
        )
        if match:
            name = match.group(1)
    name = dst_delimiter.join(name.split(src_delimiter))
    if dst_prefix:
        return f"{dst_prefix}{dst_delimiter}{name}"
    return name


@dataclass
class MailboxResult:
    src_user: str
    dst_user: str
    folders: List[FolderResult] = field(default_factory=list)
    ignored: List[str] = field(default_factory=list)
    sieve: Optional[SieveResult] = None

    @property
    def failed_folders(self) -> List[FolderResult]:
        return [folder for folder in self.folders if not folder.ok]

    @property
    def ok(self) -> bool:
        return not self.failed_folders


class MailboxReplicator:
    """Replicates one ``src_user`` account into one ``dst_user`` account.

    Passwords are only needed for endpoints without ``proxyusr``; values
    starting with ``<`` name password files.
    """

    def __init__(
        self,
        config: AppConfig,
        src_user: str,
        dst_user: str,
        *,
        src_password: Optional[str] = None,
        dst_password: Optional[str] = None,
        logger: Optional[JsonLogger] = None,
    ):
        self.config = config
        self.src_user = src_user
        self.dst_user = dst_user
        self._src_password = src_password
        self._dst_password = dst_password
        self._logger = logger or get_logger("imaputils.replicate")
        self.src_endpoint = config.endpoint("src")
        self.dst_endpoint = config.endpoint("dst")

    @property
    def dont_delete(self) -> bool:
        return self.dst_endpoint.dont_delete

    def map_folder(self, folder: str, src_delimiter: str, dst_delimiter: str) -> str:
        return map_folder_name(
            folder,
            src_delimiter=src_delimiter,
            dst_delimiter=dst_delimiter,
            src_prefix=self.src_endpoint.prefix,
            dst_prefix=self.dst_endpoint.prefix,
        )

    def run(self) -> MailboxResult:
        """Replicate the mailbox and, when enabled, the Sieve scripts."""

        result = self.replicate_mailbox()
        if self.config.sieve.replicate:
            result.sieve = self.replicate_sieve()
        return result

    def replicate_mailbox(self) -> MailboxResult:
        result = MailboxResult(self.src_user, self.dst_user)
        log = self._logger
        log.info("mailbox_start", src_user=self.src_user, dst_user=self.dst_user)
        with ImapSession.connect(self.src_endpoint, self.src_user, self._src_password, logger=log) as src, \
                ImapSession.connect(self.dst_endpoint, self.dst_user, self._dst_password, logger=log) as dst:
            ignore = FolderPatterns(self.config.folders.ignore, src.delimiter)
            replicator = FolderReplicator(src, dst, self.config, dont_delete=self.dont_delete, logger=log)
            for info in src.list_folders("*"):
                if not info.selectable:
                    continue
                if ignore.matches(info.name):
                    result.ignored.append(info.name)
                    log.debug("folder_ignored", src=info.name)
                    continue
                folder_dst = self.map_folder(info.name, src.delimiter, dst.delimiter)
                log.info("folder_start", src=info.name, dst=folder_dst)
                try:
                    folder_result = replicator.replicate(info.name, folder_dst)
                except (ImapUtilsError, IMAPClientError) as exc:
                    folder_result = FolderResult(
                        info.name,
                        folder_dst,
                        error=str(exc),
                        error_class=type(exc).__name__,
                    )
                    log.error(
                        "folder_failed",
                        src=info.name,
                        dst=folder_dst,
                        error=str(exc),
                        error_class=type(exc).__name__,
                    )
                else:
                    log.info("folder_done", src=info.name, dst=folder_dst, **folder_result.counts())
                result.folders.append(folder_result)
        log.info(
            "mailbox_done",
            src_user=self.src_user,
            dst_user=self.dst_user,
            folders=len(result.folders),
            failed=len(result.failed_folders),
        )
        return result

    def replicate_sieve(self) -> SieveResult:
        port = self.config.sieve.port
        log = self._logger
        with SieveSession.connect(self.src_endpoint, self.src_user, self._src_password, port=port, logger=log) as src, \
                SieveSession.connect(self.dst_endpoint, self.dst_user, self._dst_password, port=port, logger=log) as dst:
            result = SieveReplicator(src, dst, dont_delete=self.dont_delete, logger=log).replicate()
        log.info("sieve_done", src_user=self.src_user, copied=len(result.copied), removed=len(result.removed))
        return result
