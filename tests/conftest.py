"""Pytest configuration shared by every suite.

What:
  Make the ``imaputils`` package importable from the source tree.

Why:
  The tests execute the real package rather than an installed wheel, so edits
  under ``imaputils/src`` are picked up without reinstalling.

How:
  Compute the project root relative to this file and prepend the source
  directory to ``sys.path`` when it exists.

Invariants & Safety:
  - The path injection runs once at import time and only when the source tree
    is present, avoiding pollution when the package is installed.
"""

import sys
from pathlib import Path

PROJECT_ROOT = Path(__file__).resolve().parents[1]
SRC_DIR = PROJECT_ROOT / "imaputils" / "src"
if SRC_DIR.exists():
    sys.path.insert(0, str(SRC_DIR))
