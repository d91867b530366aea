#!/usr/bin/env python3

"""Run node-dns from a source checkout.

Equivalent to the installed `node-dns` console script; `src/` is put on the
import path first so no install is needed.
"""

import sys
from pathlib import Path

SRC_DIR = Path(__file__).resolve().parent / "src"
sys.path.insert(0, str(SRC_DIR))

from node_dns.cli import main  # noqa: E402

if __name__ == "__main__":
    main()
