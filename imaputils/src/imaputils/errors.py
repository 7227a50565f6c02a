"""Exception taxonomy shared by the replicator and the training scanner.

What:
  Declare the typed errors raised across imaputils so that every recovery
  boundary (folder, user, process) can decide what to catch.

Why:
  The tools run unattended over thousands of folders. Folder-level failures
  must be logged and skipped, user-level failures must abort only that user,
  and local state problems must heal themselves. A small, explicit hierarchy
  makes those boundaries obvious at the ``except`` sites.

How:
  Every error derives from :class:`ImapUtilsError`. Boundaries catch the base
  class; call sites raise the most specific subclass with a message that
  already contains the folder or user context.

Interfaces:
  :class:`ImapUtilsError`, :class:`ConfigurationError`,
  :class:`AuthenticationError`, :class:`ServerError`,
  :class:`StateCorruption`, :class:`LockContention`,
  :class:`PartialApplyFailure`, :class:`ClassifierError`.

Invariants & Safety:
  - :class:`StateCorruption` never escapes the checkpoint store; it is caught
    and turned into a zero checkpoint.
  - :class:`PartialApplyFailure` is informational and is recorded as counters
    rather than raised through the folder boundary.
"""
from __future__ import annotations


class ImapUtilsError(Exception):
    """Base class for all imaputils errors."""


class ConfigurationError(ImapUtilsError):
    """Missing or invalid settings, locally or on the server.

    Raised for unreadable configuration files, unsupported authentication
    mechanisms, and folders whose mod-sequence tracking cannot be enabled.
    """


class AuthenticationError(ImapUtilsError):
    """Login or proxy authorization failed.

    The message states whether authentication itself failed or whether the
    authenticated identity was refused authorization for the target user.
    """

    def __init__(self, message: str, *, user: str, mechanism: str, proxy_user: str | None = None):
        super().__init__(message)
        self.user = user
        self.mechanism = mechanism
        self.proxy_user = proxy_user


class ServerError(ImapUtilsError):
    """The server violated a protocol expectation (no delimiter, no UIDVALIDITY)."""


class StateCorruption(ImapUtilsError):
    """A checkpoint file could not be parsed."""


class LockContention(ImapUtilsError):
    """A checkpoint file is locked by another running process."""


class PartialApplyFailure(ImapUtilsError):
    """Some messages of a batch could not be applied on the destination."""

    def __init__(self, message: str, *, failed: int, total: int):
        super().__init__(message)
        self.failed = failed
        self.total = total


class ClassifierError(ImapUtilsError):
    """The external classifier could not be run or exited with an error."""
