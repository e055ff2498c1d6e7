#!/usr/bin/env python3

"""Compatibility wrapper.

The project is packaged under `src/ingress_status`. This wrapper allows running
`./ingress-status-sync.py` from a fresh checkout without installing it.

Note: This file intentionally tweaks sys.path before importing the package.
"""

import sys
from pathlib import Path


sys.path.insert(0, str(Path(__file__).resolve().parent / "src"))

from ingress_status.cli import main  # noqa: E402


if __name__ == "__main__":
    main()
