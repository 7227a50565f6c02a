"""imaputils logging helpers with deterministic JSON emission and redaction.

What:
  Offer a tiny facade over Python streams so every imaputils component can
  emit JSON log lines with consistent fields and automatic removal of
  credentials and message content.

Why:
  Replication and training runs are long and unattended; operators grep the
  logs of a cron job to find the one folder that failed. A structured layout
  keeps that trivial while making sure passwords handed to the connection
  layer, or raw message bodies handed to the classifier, never end up in a
  shared log file.

How:
  Provide a :class:`JsonLogger` dataclass that accepts a target stream and
  enforces uppercase severity levels. ``extra`` dictionaries are scrubbed via a
  recursive redaction helper before being serialised with ``json.dump``.
  Values that JSON cannot represent (sets, bytes, exceptions) are rendered
  with ``str``.

Interfaces:
  :class:`JsonLogger`, :func:`get_logger`.

Invariants & Safety:
  - The emitted payload always includes an ISO8601 timestamp, severity, and
    component name.
  - Sensitive keys (``password``, ``raw``, ``body``, ``subject``) are replaced
    with ``[redacted]`` even inside nested dictionaries.
  - Streams are flushed after every write so a killed cron job still leaves
    its last diagnostic behind.
"""
from __future__ import annotations

import json
import sys
from dataclasses import dataclass, field
from datetime import datetime, timezone
from typing import Any, Dict, Optional


REDACTED = "[redacted]"
SENSITIVE_KEYS = frozenset({"password", "raw", "body", "subject"})


@dataclass
class JsonLogger:
    """Structured JSON logger with automatic redaction.

    What:
      Emits single-line JSON entries that include timestamps, severity, a
      component tag, and optional supplemental fields.

    Why:
      Centralising structured logging avoids duplicating the redaction logic
      and guarantees a uniform schema for log processing and test assertions.

    How:
      Stores the destination stream and component label, then exposes helper
      methods (:meth:`debug`, :meth:`info`, :meth:`warning`, :meth:`error`)
      that merge a canonical payload with redacted extras.
    """

    stream: Any = field(default_factory=lambda: sys.stdout)
    component: str = "imaputils"
    verbose: bool = False

    def log(self, level: str, message: str, *, extra: Optional[Dict[str, Any]] = None) -> None:
        """Emit a structured JSON log entry.

        Args:
          level: Human-readable severity (e.g., ``"info"`` or ``"error"``).
          message: Event name; by convention ``snake_case``.
          extra: Optional context dictionary that will be redacted recursively.
        """

        payload = {
            "ts": datetime.now(timezone.utc).isoformat(),
            "lvl": level.upper(),
            "msg": message,
            "component": self.component,
        }
        if extra:
            payload.update(self._redact(extra))
        json.dump(payload, self.stream, separators=(",", ":"), default=str)
        self.stream.write("\n")
        self.stream.flush()

    def debug(self, message: str, **kwargs: Any) -> None:
        """Log a per-message detail, only emitted when ``verbose`` is set."""

        if self.verbose:
            self.log("DEBUG", message, extra=kwargs)

    def info(self, message: str, **kwargs: Any) -> None:
        """Log an informational message with structured context."""

        self.log("INFO", message, extra=kwargs)

    def warning(self, message: str, **kwargs: Any) -> None:
        """Log a warning message while enforcing redaction.

        What:
          Emits a ``WARN`` level entry using the structured payload pipeline.

        Why:
          Skipped messages, duplicate identities and partial append failures do
          not stop a run but must remain visible to operators.
        """

        self.log("WARN", message, extra=kwargs)

    def error(self, message: str, **kwargs: Any) -> None:
        """Log an error entry; callers pass ``error`` and ``error_class``."""

        self.log("ERROR", message, extra=kwargs)

    def child(self, component: str) -> "JsonLogger":
        """Return a logger writing to the same stream under ``component``."""

        return JsonLogger(stream=self.stream, component=component, verbose=self.verbose)

    @staticmethod
    def _redact(data: Dict[str, Any]) -> Dict[str, Any]:
        """Remove sensitive keys from a payload recursively.

        What:
          Produces a copy of ``data`` where predefined fields are replaced with
          the ``[redacted]`` sentinel.

        Why:
          Connection helpers receive passwords and the training path receives
          full message bodies; neither may be serialised.

        How:
          Walks the dictionary, applying the sentinel to known keys and
          recursing into nested dictionaries.

        Args:
          data: Arbitrary metadata to sanitise.

        Returns:
          A copy of ``data`` with sensitive values masked.
        """

        result: Dict[str, Any] = {}
        for key, value in data.items():
            if key in SENSITIVE_KEYS and value is not None:
                result[key] = REDACTED
            elif isinstance(value, dict):
                result[key] = JsonLogger._redact(value)
            elif isinstance(value, (set, frozenset)):
                result[key] = sorted(str(item) for item in value)
            else:
                result[key] = value
        return result


def get_logger(component: str, *, verbose: bool = False) -> JsonLogger:
    """Construct a :class:`JsonLogger` for the requested component.

    Args:
      component: Logical subsystem name to include in log payloads.
      verbose: Whether :meth:`JsonLogger.debug` entries are emitted.

    Returns:
      Configured :class:`JsonLogger` writing to ``stdout``.
    """

    return JsonLogger(component=component, verbose=verbose)
