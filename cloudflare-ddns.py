#!/usr/bin/env python3

"""Checkout wrapper.

The project is packaged under `src/cloudflare_ddns`. This wrapper allows
running `./cloudflare-ddns.py -h` from a fresh clone without installing.

Note: This file intentionally tweaks sys.path before importing the package.
"""

import sys
from pathlib import Path


sys.path.insert(0, str(Path(__file__).resolve().parent / "src"))

from cloudflare_ddns.cli import main  # noqa: E402


if __name__ == "__main__":
    main()
