"""Account replication: folders, messages and Sieve scripts."""

from .folder import FolderReplicator, FolderResult
from .mailbox import MailboxReplicator, MailboxResult, map_folder_name
from .sieve import SieveReplicator, SieveResult

__all__ = [
    "FolderReplicator",
    "FolderResult",
    "MailboxReplicator",
    "MailboxResult",
    "map_folder_name",
    "SieveReplicator",
    "SieveResult",
]
