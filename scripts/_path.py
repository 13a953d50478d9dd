"""Let ``python scripts/<name>.py`` import the top-level packages."""

from __future__ import annotations

import sys
from pathlib import Path


def add_root() -> None:
    root = str(Path(__file__).resolve().parent.parent)
    if root not in sys.path:
        sys.path.insert(0, root)
