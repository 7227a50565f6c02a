"""Batch slicing and progress reporting for long IMAP operations.

What:
  Slice work lists into fixed-size batches and log decile milestones while the
  batches are processed.

Why:
  Every network call blocks until the server answers; batching bounds both the
  blocking time and the memory footprint of one call, and a folder with
  100 000 messages needs some sign of life in the log between "will query"
  and "finished".

How:
  :func:`batches` yields consecutive slices. :class:`BatchProgress` remembers
  the last reported decile and logs a ``<event>_progress`` entry only when the
  decile changes, so the log volume stays independent of the batch size.

Interfaces:
  :func:`batches`, :class:`BatchProgress`.
"""
from __future__ import annotations

from typing import Any, Iterator, List, Sequence, TypeVar

from .logging import JsonLogger

T = TypeVar("T")


def batches(items: Sequence[T], size: int) -> Iterator[List[T]]:
    """Yield consecutive slices of ``items`` holding at most ``size`` entries."""

    if size <= 0:
        raise ValueError("batch size must be positive")
    for start in range(0, len(items), size):
        yield list(items[start : start + size])


class BatchProgress:
    """Decile progress reporter bound to one batched operation."""

    def __init__(self, logger: JsonLogger, event: str, total: int, **context: Any):
        self._logger = logger
        self._event = event
        self._total = total
        self._done = 0
        self._context = context

    @property
    def done(self) -> int:
        return self._done

    def advance(self, count: int) -> None:
        """Record ``count`` more processed items and log on decile changes."""

        if self._total <= 0:
            return
        before = (10 * self._done) // self._total
        self._done = min(self._total, self._done + count)
        after = (10 * self._done) // self._total
        if after != before:
            self._logger.info(
                f"{self._event}_progress",
                percent=after * 10,
                done=self._done,
                total=self._total,
                **self._context,
            )
