"""Content-addressed message identities derived from IMAP envelopes.

What:
  Compute a :class:`MessageIdentity` for a message from its ``ENVELOPE``
  alone, so the same message can be recognised on two servers whose UIDs have
  nothing in common.

Why:
  Replication must not download bodies just to decide whether a message
  already exists on the destination. The envelope is cheap to fetch and, with
  the Message-ID or the full address set, distinguishes messages reliably.

How:
  With a non-empty Message-ID the identity is ``date + NUL + message_id``.
  Without one it falls back to date, subject and the sorted ``mailbox@host``
  renderings of From, To, Cc and Bcc. The joined string is hashed with a
  64-bit BLAKE2b digest, which is stable across processes (unlike ``hash()``).
  Identities order by hash first and by the full string second.

Interfaces:
  :class:`MessageIdentity`, :func:`identity_of`.

Invariants & Safety:
  - The identity does not depend on the order of addresses in any field.
  - Undecodable bytes survive via ``surrogateescape``; nothing is dropped.
"""
from __future__ import annotations

import hashlib
from dataclasses import dataclass, field
from datetime import datetime
from email.utils import parsedate_to_datetime
from typing import Any, Iterable, Optional


_SEP = "\0"


@dataclass(frozen=True, order=True)
class MessageIdentity:
    """Composite key of a message; compares by ``hash`` then ``id_str``."""

    hash: int
    id_str: str
    description: str = field(default="", compare=False)

    @classmethod
    def from_id_str(cls, id_str: str, description: str = "") -> "MessageIdentity":
        digest = hashlib.blake2b(id_str.encode("utf-8", "surrogateescape"), digest_size=8).digest()
        return cls(int.from_bytes(digest, "big"), id_str, description)

    def __str__(self) -> str:
        return self.description or self.id_str.replace(_SEP, " ")


def _text(value: Any) -> str:
    if value is None:
        return ""
    if isinstance(value, bytes):
        return value.decode("utf-8", "surrogateescape")
    return str(value)


def _date(value: Any) -> str:
    """Render the envelope date as ISO-8601; unparseable dates are kept verbatim."""

    if value is None:
        return ""
    if isinstance(value, datetime):
        return value.isoformat()
    text = _text(value).strip()
    if not text:
        return ""
    try:
        return parsedate_to_datetime(text).isoformat()
    except (TypeError, ValueError, IndexError):
        return text


def _address(address: Any) -> Optional[str]:
    mailbox = _text(getattr(address, "mailbox", None))
    host = _text(getattr(address, "host", None))
    if not mailbox or not host:
        return None
    return f"{mailbox}@{host}"


def _address_list(addresses: Optional[Iterable[Any]]) -> str:
    rendered = [text for text in (_address(a) for a in addresses or ()) if text]
    return ",".join(sorted(rendered))


def identity_of(envelope: Any) -> MessageIdentity:
    """Derive the identity of the message described by ``envelope``.

    ``envelope`` is an :class:`imapclient.response_types.Envelope` or any
    object exposing the same attributes.
    """

    date = _date(envelope.date)
    subject = _text(envelope.subject)
    message_id = _text(envelope.message_id).strip()
    description = f"{_address_list(envelope.from_)}:{subject}"
    if message_id:
        return MessageIdentity.from_id_str(_SEP.join((date, message_id)), description)
    parts = (
        date,
        subject,
        _address_list(envelope.from_),
        _address_list(envelope.to),
        _address_list(envelope.cc),
        _address_list(envelope.bcc),
    )
    return MessageIdentity.from_id_str(_SEP.join(parts), description)
