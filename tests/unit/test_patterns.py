"""Tests for folder glob patterns."""

import pytest

from imaputils.config.patterns import FolderPatterns, compile_pattern


@pytest.mark.parametrize(
    "pattern,delimiter,folder,expected",
    [
        ("Archive.*", ".", "Archive.2024", True),
        ("Archive.*", "/", "Archive/2024", True),
        ("Archive.*", "/", "Archive.2024", False),
        ("Archive/*", ".", "Archive.2024.Q1", True),
        ("Archive.*", ".", "Archive", False),
        ("Trash", ".", "Trash", True),
        ("Trash", ".", "Trash.Old", False),
        ("Trash", ".", "MyTrash", False),
        ("a..b", "/", "a.b", True),
        ("a..b", "/", "a/b", False),
        ("a//b", ".", "a/b", True),
        ("a**", ".", "a*", True),
        ("a**", ".", "abc", False),
        ("a\\.b", "/", "a.b", True),
        ("INBOX.Spam", "/", "INBOX/Spam", True),
        ("*", ".", "anything.at.all", True),
        ("S(pam)+", ".", "S(pam)+", True),
    ],
)
def test_compile_pattern(pattern, delimiter, folder, expected):
    assert bool(compile_pattern(pattern, delimiter).match(folder)) is expected


def test_folder_patterns_match_any():
    patterns = FolderPatterns(["Trash", "Junk.*"], "/")

    assert patterns
    assert patterns.matches("Junk/old")
    assert patterns.matches("Trash")
    assert not patterns.matches("INBOX")


def test_empty_patterns_never_match():
    patterns = FolderPatterns([], ".")

    assert not patterns
    assert not patterns.matches("INBOX")
