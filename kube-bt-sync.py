#!/usr/bin/env python3

"""Compatibility wrapper.

The project is packaged under `src/kube_bt_sync`. This wrapper allows running
`./kube-bt-sync.py` straight from a fresh checkout.

Note: This file intentionally tweaks sys.path before importing the package.
"""

import sys
from pathlib import Path


sys.path.insert(0, str(Path(__file__).resolve().parent / "src"))

from kube_bt_sync.cli import main  # noqa: E402


if __name__ == "__main__":
    main()
