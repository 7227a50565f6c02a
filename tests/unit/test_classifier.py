"""Tests for the DSPAM classification sink."""
from __future__ import annotations

import stat

import pytest

from imaputils.errors import ClassifierError
from imaputils.train.classifier import DspamClassifier
from imaputils.train.processor import Disposition, ScanMessage


@pytest.fixture
def dspam(tmp_path):
    """Install a fake ``dspam`` that records its arguments and input."""

    record = tmp_path / "calls.log"
    script = tmp_path / "dspam"
    script.write_text(
        "#!/bin/sh\n"
        f'echo "$@" >> "{record}"\n'
        f'cat >> "{record}"\n'
        'case "$*" in *--user\\ broken*) echo "database locked"; exit 3;; esac\n'
        "exit 0\n"
    )
    script.chmod(script.stat().st_mode | stat.S_IXUSR)
    return script, record


def test_missed_junk_retrains_by_signature(dspam, logger) -> None:
    script, record = dspam
    classifier = DspamClassifier(str(script), logger=logger)

    classifier.missed_junk("alice", ScanMessage(uid=1, modseq=2, signature="4f2a"))

    assert record.read_text() == "--client --user alice --signature=4f2a --source=error --class=spam\n"


def test_corpus_innocent_feeds_message_on_stdin(dspam, logger) -> None:
    script, record = dspam
    classifier = DspamClassifier(str(script), logger=logger)

    classifier.corpus_innocent("alice", ScanMessage(uid=1, modseq=2, raw=b"Subject: hi\r\n\r\nbody\n"))

    assert record.read_bytes() == b"--client --user alice --source=corpus --class=innocent\nSubject: hi\r\n\r\nbody\n"


def test_messages_without_material_are_skipped(dspam, logger, log_stream) -> None:
    script, record = dspam
    classifier = DspamClassifier(str(script), logger=logger)

    classifier.missed_innocent("alice", ScanMessage(uid=1, modseq=2))
    classifier.corpus_junk("alice", ScanMessage(uid=2, modseq=3))

    assert not record.exists()
    assert log_stream.getvalue().count("classifier_skip") == 2


def test_non_zero_exit_raises_with_output(dspam, logger) -> None:
    script, _ = dspam
    classifier = DspamClassifier(str(script), logger=logger)

    with pytest.raises(ClassifierError, match="database locked"):
        classifier.missed_innocent("broken", ScanMessage(uid=1, modseq=2, signature="abc"))


def test_missing_executable_raises(tmp_path, logger) -> None:
    classifier = DspamClassifier(str(tmp_path / "absent"), logger=logger)

    with pytest.raises(ClassifierError, match="Couldn't find dspam executable"):
        classifier.missed_junk("alice", ScanMessage(uid=1, modseq=2, signature="abc"))


def test_opt_in_directory_selects_users(tmp_path, logger) -> None:
    (tmp_path / "alice.dspam").write_text("")
    classifier = DspamClassifier(opt_in_dir=str(tmp_path), logger=logger)

    assert classifier.valid_user("alice")
    assert not classifier.valid_user("bob")
    assert DspamClassifier(logger=logger).valid_user("bob")


def test_handles_everything_but_kept() -> None:
    classifier = DspamClassifier()

    assert not classifier.handles(Disposition.KEPT)
    assert all(classifier.handles(kind) for kind in Disposition if kind is not Disposition.KEPT)
