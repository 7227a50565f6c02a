"""Merge-join of source and destination message lists into a replication plan.

What:
  Compare the records of a source folder with those of its destination folder
  and decide which messages must be appended, which destination messages need
  new flags and which destination messages must be deleted.

Why:
  Both lists can hold tens of thousands of entries; a sorted merge-join keeps
  the comparison at ``O(n log n)`` with a single linear pass and makes the
  order of appended messages deterministic (identity order).

How:
  Sort both sides by :class:`~imaputils.core.identity.MessageIdentity` and
  walk them with two cursors. Source records are reduced to their effective
  flags (``(raw | add) - remove``) before being compared, so a flag policy can
  suppress updates that would only fight the policy. A source record equal to
  its predecessor is a duplicate: it is counted, logged and ignored.

Interfaces:
  :class:`ReplicationPlan`, :func:`diff_messages`.

Invariants & Safety:
  - ``added`` carries source UIDs with effective flags; ``updated`` and
    ``removed`` carry destination UIDs.
  - Running the diff on identical inputs yields an empty plan.
"""
from __future__ import annotations

from collections import defaultdict
from dataclasses import dataclass, field
from typing import AbstractSet, Dict, FrozenSet, Iterable, List, Optional

from ..utils.logging import JsonLogger, get_logger
from .messages import MessageRecord


@dataclass
class ReplicationPlan:
    added: List[MessageRecord] = field(default_factory=list)
    updated: Dict[FrozenSet[str], List[MessageRecord]] = field(default_factory=dict)
    removed: List[MessageRecord] = field(default_factory=list)
    duplicates: int = 0

    @property
    def empty(self) -> bool:
        return not (self.added or self.updated or self.removed)


def diff_messages(
    source: Iterable[MessageRecord],
    dest: Iterable[MessageRecord],
    add_flags: AbstractSet[str] = frozenset(),
    remove_flags: AbstractSet[str] = frozenset(),
    *,
    logger: Optional[JsonLogger] = None,
) -> ReplicationPlan:
    """Compute the plan that makes ``dest`` mirror ``source``."""

    log = logger or get_logger("imaputils.diff")
    src = sorted(source, key=lambda record: record.identity)
    dst = sorted(dest, key=lambda record: record.identity)
    plan = ReplicationPlan()
    updated: Dict[FrozenSet[str], List[MessageRecord]] = defaultdict(list)

    def effective(record: MessageRecord) -> MessageRecord:
        return record.with_flags((record.flags | add_flags) - remove_flags)

    i = j = 0
    previous: Optional[MessageRecord] = None
    while i < len(src):
        record = src[i]
        if previous is not None and record.identity == previous.identity:
            plan.duplicates += 1
            log.warning(
                "duplicate_message",
                uid=record.uid,
                first_uid=previous.uid,
                hash=f"{record.identity.hash:016x}",
            )
            i += 1
            continue
        if j >= len(dst):
            plan.added.append(effective(record))
            previous = record
            i += 1
            continue
        other = dst[j]
        if record.identity == other.identity:
            wanted = effective(record)
            if wanted.flags != other.flags:
                updated[wanted.flags].append(other)
            previous = record
            i += 1
            j += 1
        elif record.identity < other.identity:
            plan.added.append(effective(record))
            previous = record
            i += 1
        else:
            plan.removed.append(other)
            j += 1
    plan.removed.extend(dst[j:])
    plan.updated = dict(updated)
    return plan
