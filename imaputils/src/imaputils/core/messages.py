"""Listing the messages of an opened folder as identity-keyed records.

What:
  Turn the currently opened folder of an :class:`~imaputils.imap.client.ImapSession`
  into a list of :class:`MessageRecord` entries (UID, identity, flags).

Why:
  The diff engine only needs envelopes and flags. Fetching them in bounded
  batches keeps the size of one server response predictable on folders with
  tens of thousands of messages.

How:
  ``UID SEARCH ALL`` returns every UID; ``UID FETCH (FLAGS ENVELOPE)`` is then
  issued per ``batch_size`` slice with decile progress logging. Messages whose
  envelope is missing or cannot be turned into an identity are counted as
  broken and logged, never raised.

Interfaces:
  :class:`MessageRecord`, :class:`QueryResult`, :func:`normalise_flags`,
  :func:`query_messages`.
"""
from __future__ import annotations

from dataclasses import dataclass, field, replace
from typing import TYPE_CHECKING, FrozenSet, Iterable, List, Optional

from ..utils.logging import JsonLogger, get_logger
from ..utils.progress import BatchProgress, batches
from .identity import MessageIdentity, identity_of

if TYPE_CHECKING:  # pragma: no cover
    from ..imap.client import ImapSession


RECENT = "\\Recent"


@dataclass(frozen=True)
class MessageRecord:
    """One message of one folder on one server."""

    uid: int
    identity: MessageIdentity
    flags: FrozenSet[str] = frozenset()

    def with_flags(self, flags: Iterable[str]) -> "MessageRecord":
        return replace(self, flags=frozenset(flags))


@dataclass
class QueryResult:
    records: List[MessageRecord] = field(default_factory=list)
    broken: int = 0


def normalise_flags(flags: Optional[Iterable[object]]) -> FrozenSet[str]:
    """Decode server flags and drop the session-specific ``\\Recent``."""

    result = set()
    for flag in flags or ():
        text = flag.decode("utf-8", "surrogateescape") if isinstance(flag, bytes) else str(flag)
        if text != RECENT:
            result.add(text)
    return frozenset(result)


def query_messages(
    session: "ImapSession",
    tag: str,
    *,
    batch_size: int = 1024,
    logger: Optional[JsonLogger] = None,
) -> QueryResult:
    """List the messages of the folder currently opened on ``session``.

    Args:
      session: Session with a folder opened via ``examine`` or ``select``.
      tag: Context label used in log entries (typically ``src:Folder``).
      batch_size: Number of UIDs per ``FETCH``.
      logger: Destination for progress and broken-message warnings.

    Returns:
      The parsed records, in ascending UID order, and the broken count.
    """

    log = logger or get_logger("imaputils.messages")
    uids = sorted(session.search(["ALL"]))
    result = QueryResult()
    progress = BatchProgress(log, "query", len(uids), tag=tag)
    for batch in batches(uids, batch_size):
        response = session.fetch(batch, ["FLAGS", "ENVELOPE"])
        for uid in batch:
            data = response.get(uid)
            envelope = data.get(b"ENVELOPE") if data else None
            if envelope is None:
                result.broken += 1
                log.warning("message_without_envelope", tag=tag, uid=uid)
                continue
            try:
                identity = identity_of(envelope)
            except (AttributeError, TypeError, ValueError) as exc:
                result.broken += 1
                log.warning("message_unparseable", tag=tag, uid=uid, error=str(exc))
                continue
            result.records.append(MessageRecord(uid, identity, normalise_flags(data.get(b"FLAGS"))))
        progress.advance(len(batch))
    return result
