"""DSPAM command-line adapter implementing the classification sink.

What:
  Translate classification events into ``dspam --client`` invocations:
  misclassifications are retrained by signature, corpus messages are fed to
  the classifier on standard input.

Why:
  DSPAM keeps per-user token databases that only learn through its client
  binary. Running it as a subprocess keeps the scanner independent of the
  classifier's storage backend.

How:
  Each event builds an argument vector and runs it with :func:`subprocess.run`,
  capturing combined output. A missing executable or a non-zero exit status
  raises :class:`~imaputils.errors.ClassifierError` with the command line and
  output, which aborts the current folder (the checkpoint stays behind the
  failed message). Messages without a signature (for misses) or without a
  body (for corpus training) are skipped.

Interfaces:
  :class:`DspamClassifier`.
"""
from __future__ import annotations

import os
import subprocess
from pathlib import Path
from typing import List, Optional, Sequence

from ..errors import ClassifierError
from ..utils.logging import JsonLogger, get_logger
from .processor import Disposition, ScanMessage


SPAM = "spam"
INNOCENT = "innocent"


class DspamClassifier:
    """Classification sink backed by the ``dspam`` binary."""

    def __init__(
        self,
        command: str = "/usr/bin/dspam",
        opt_in_dir: Optional[str] = None,
        *,
        logger: Optional[JsonLogger] = None,
    ):
        self.command = command
        self.opt_in_dir = Path(opt_in_dir) if opt_in_dir else None
        self._logger = logger or get_logger("imaputils.dspam")

    def valid_user(self, user: str) -> bool:
        """Users opt in by owning ``<opt_in_dir>/<user>.dspam``."""

        if self.opt_in_dir is None:
            return True
        return (self.opt_in_dir / f"{user}.dspam").exists()

    def handles(self, kind: Disposition) -> bool:
        return kind is not Disposition.KEPT

    def kept(self, user: str, message: ScanMessage) -> None:
        return None

    def missed_junk(self, user: str, message: ScanMessage) -> None:
        self._retrain(user, message, SPAM)

    def missed_innocent(self, user: str, message: ScanMessage) -> None:
        self._retrain(user, message, INNOCENT)

    def corpus_junk(self, user: str, message: ScanMessage) -> None:
        self._corpus(user, message, SPAM)

    def corpus_innocent(self, user: str, message: ScanMessage) -> None:
        self._corpus(user, message, INNOCENT)

    def _retrain(self, user: str, message: ScanMessage, klass: str) -> None:
        if not message.signature:
            self._logger.warning("classifier_skip", user=user, uid=message.uid, reason="no signature")
            return
        self.run(
            None,
            ["--client", "--user", user, f"--signature={message.signature}", "--source=error", f"--class={klass}"],
        )

    def _corpus(self, user: str, message: ScanMessage, klass: str) -> None:
        if not message.raw:
            self._logger.warning("classifier_skip", user=user, uid=message.uid, reason="no body")
            return
        self.run(message.raw, ["--client", "--user", user, "--source=corpus", f"--class={klass}"])

    def run(self, payload: Optional[bytes], args: Sequence[str]) -> str:
        """Run the classifier with ``args``, feeding ``payload`` on stdin.

        Raises:
          ClassifierError: If the executable is missing or exits non-zero.
        """

        argv: List[str] = [self.command, *args]
        if not (os.path.isfile(self.command) and os.access(self.command, os.X_OK)):
            raise ClassifierError(f"Couldn't find dspam executable: {self.command}")
        try:
            completed = subprocess.run(
                argv,
                input=payload if payload is not None else b"",
                stdout=subprocess.PIPE,
                stderr=subprocess.STDOUT,
                check=False,
            )
        except OSError as exc:
            raise ClassifierError(f"{' '.join(argv)}: {exc}") from exc
        output = completed.stdout.decode("utf-8", "replace")
        if completed.returncode != 0:
            raise ClassifierError(f"{' '.join(argv)}\n{output}")
        self._logger.debug("classifier_run", args=list(args), returncode=completed.returncode)
        return output
