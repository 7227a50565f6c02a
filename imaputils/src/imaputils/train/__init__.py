"""Incremental spam-training scan and the DSPAM adapter."""

from .classifier import DspamClassifier
from .processor import (
    ClassificationSink,
    Disposition,
    ImapProcessor,
    OpenResult,
    ScanMessage,
    TrainResult,
    UserProcessor,
    UserResult,
)

__all__ = [
    "DspamClassifier",
    "ClassificationSink",
    "Disposition",
    "ImapProcessor",
    "OpenResult",
    "ScanMessage",
    "TrainResult",
    "UserProcessor",
    "UserResult",
]
