"""Folder glob patterns used to ignore, classify, and select folders.

What:
  Compile the short folder patterns from the ``folders`` configuration section
  into anchored regular expressions bound to a server's hierarchy delimiter.

Why:
  Operators write patterns like ``Archive.*`` or ``INBOX/Spam`` without knowing
  whether the server separates levels with ``.`` or ``/``. Translating both
  separators to the delimiter the server actually reports keeps one
  configuration valid across servers.

How:
  A single left-to-right scan with one character of lookahead:

  - ``..``, ``//`` and ``**`` stand for a literal ``.``, ``/`` and ``*``;
  - ``.`` and ``/`` stand for the hierarchy delimiter;
  - ``*`` matches anything, including delimiters;
  - a backslash makes the next character literal;
  - everything else matches itself.

  The result is anchored at both ends.

Interfaces:
  :func:`compile_pattern`, :class:`FolderPatterns`.
"""
from __future__ import annotations

import re
from typing import Iterable, List, Pattern


_SEPARATORS = "./"


def compile_pattern(pattern: str, delimiter: str) -> Pattern[str]:
    """Translate ``pattern`` into an anchored regex for ``delimiter``."""

    parts: List[str] = [r"\A"]
    index = 0
    while index < len(pattern):
        char = pattern[index]
        lookahead = pattern[index + 1] if index + 1 < len(pattern) else ""
        if char == "\\" and lookahead:
            parts.append(re.escape(lookahead))
            index += 2
            continue
        if char in _SEPARATORS + "*" and lookahead == char:
            parts.append(re.escape(char))
            index += 2
            continue
        if char in _SEPARATORS:
            parts.append(re.escape(delimiter))
        elif char == "*":
            parts.append(".*")
        else:
            parts.append(re.escape(char))
        index += 1
    parts.append(r"\Z")
    return re.compile("".join(parts))


class FolderPatterns:
    """A compiled list of folder patterns; matches when any pattern matches."""

    def __init__(self, patterns: Iterable[str], delimiter: str):
        self.patterns = list(patterns)
        self._compiled = [compile_pattern(pattern, delimiter) for pattern in self.patterns]

    def matches(self, folder: str) -> bool:
        return any(regex.match(folder) for regex in self._compiled)

    def __bool__(self) -> bool:
        return bool(self._compiled)
