"""Pytest configuration.

The packages are importable without installation: this file puts the
repository root on ``sys.path`` so ``import cm_core`` works from any cwd.
"""

from __future__ import annotations

import sys
from pathlib import Path


ROOT = Path(__file__).resolve().parents[1]
if str(ROOT) not in sys.path:
    sys.path.insert(0, str(ROOT))
