#!/usr/bin/env python3
"""Quote against the paper ledger with live reference books."""

import sys
sys.path.insert(0, "src")

from perp_mm.cli import main

if __name__ == "__main__":
    main(["run", "--config", "configs/paper.toml"] + sys.argv[1:], standalone_mode=False)
