"""imaputils: IMAP mailbox replication and incremental spam-training scans.

What:
  Expose the package version and the top-level services so operators and
  tests can reach them without knowing the module layout.

Interfaces:
  ``MailboxReplicator``, ``ImapProcessor``, ``DspamClassifier``,
  ``load_config``, ``__version__``.
"""

from .config.loader import load_config
from .replicate.mailbox import MailboxReplicator
from .train.classifier import DspamClassifier
from .train.processor import ImapProcessor

__all__ = ["MailboxReplicator", "ImapProcessor", "DspamClassifier", "load_config", "__version__"]

__version__ = "1.0.0"
