"""Make the in-memory servers from ``tests/unit`` importable for end-to-end runs."""

import sys
from pathlib import Path

UNIT_DIR = Path(__file__).resolve().parents[1] / "unit"
if str(UNIT_DIR) not in sys.path:
    sys.path.insert(0, str(UNIT_DIR))
