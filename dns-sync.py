#!/usr/bin/env python3

"""Compatibility wrapper.

The project is packaged under `src/dns_sync`. This wrapper keeps the
`./dns-sync.py` invocation style working from a fresh checkout.
"""

import sys
from pathlib import Path


sys.path.insert(0, str(Path(__file__).resolve().parent / "src"))

from dns_sync.cli import main  # noqa: E402


if __name__ == "__main__":
    main()
