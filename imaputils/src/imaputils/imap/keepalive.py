"""Background NOOP heartbeat for long-lived IMAP sessions.

What:
  Run a daemon thread per session that wakes up every ``tick`` seconds and
  issues a ping every ``every`` ticks.

Why:
  A replication pair keeps two connections open; while one side appends a
  large batch the other sits idle long enough for servers and NAT boxes to
  drop it. IMAP is strictly request/response per connection, so the ping must
  never overlap a command issued by the main thread.

How:
  The ping callable is provided by :class:`~imaputils.imap.client.ImapSession`
  and only sends ``NOOP`` when it can take the session lock without blocking.
  :meth:`Heartbeat.stop` sets an event and joins the thread, so teardown is
  synchronous. A ping that raises stops the heartbeat after a warning; the
  next real command on the session surfaces the underlying error.

Interfaces:
  :class:`Heartbeat`.
"""
from __future__ import annotations

import threading
from typing import Callable, Optional

from ..utils.logging import JsonLogger, get_logger


class Heartbeat:
    """Periodic ping on a daemon thread."""

    def __init__(
        self,
        ping: Callable[[], object],
        *,
        every: int = 10,
        tick: float = 1.0,
        name: str = "imap-heartbeat",
        logger: Optional[JsonLogger] = None,
    ):
        self._ping = ping
        self._every = every
        self._tick = tick
        self._name = name
        self._logger = logger or get_logger("imaputils.keepalive")
        self._stop = threading.Event()
        self._thread: Optional[threading.Thread] = None

    @property
    def running(self) -> bool:
        return self._thread is not None and self._thread.is_alive()

    def start(self) -> None:
        if self._thread is not None:
            return
        self._stop.clear()
        self._thread = threading.Thread(target=self._run, name=self._name, daemon=True)
        self._thread.start()

    def stop(self) -> None:
        self._stop.set()
        thread, self._thread = self._thread, None
        if thread is not None and thread is not threading.current_thread():
            thread.join()

    def _run(self) -> None:
        ticks = 0
        while not self._stop.wait(self._tick):
            ticks += 1
            if ticks % self._every:
                continue
            try:
                self._ping()
            except Exception as exc:
                self._logger.warning("heartbeat_failed", thread=self._name, error=str(exc))
                return
