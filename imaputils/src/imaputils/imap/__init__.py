"""IMAP and ManageSieve connection layer for imaputils."""

from .auth import CramMD5, DigestMD5, authenticate
from .client import FolderInfo, ImapSession
from .keepalive import Heartbeat
from .sieve import SieveScript, SieveSession

__all__ = [
    "CramMD5",
    "DigestMD5",
    "authenticate",
    "FolderInfo",
    "ImapSession",
    "Heartbeat",
    "SieveScript",
    "SieveSession",
]
