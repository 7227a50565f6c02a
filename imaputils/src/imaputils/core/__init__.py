"""Synchronisation core: identities, record listing, diffing and checkpoints."""

from .checkpoint import CheckpointHandle, CheckpointStore, FolderCheckpoint, checkpoint_tag
from .diff import ReplicationPlan, diff_messages
from .identity import MessageIdentity, identity_of
from .messages import MessageRecord, QueryResult, normalise_flags, query_messages

__all__ = [
    "CheckpointHandle",
    "CheckpointStore",
    "FolderCheckpoint",
    "checkpoint_tag",
    "ReplicationPlan",
    "diff_messages",
    "MessageIdentity",
    "identity_of",
    "MessageRecord",
    "QueryResult",
    "normalise_flags",
    "query_messages",
]
