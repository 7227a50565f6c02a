"""Expose the public utility surface for imaputils.

What:
  Re-export the logging and batching helpers that the replicator, the
  training scanner and the CLI share.

Interfaces:
  ``JsonLogger``, ``get_logger``, ``batches``, ``BatchProgress``.
"""

from .logging import JsonLogger, get_logger
from .progress import BatchProgress, batches

__all__ = [
    "JsonLogger",
    "get_logger",
    "batches",
    "BatchProgress",
]
