#!/usr/bin/env python3
"""Emergency cancel of every resting order.

Usage:
  python scripts/cancel_all.py --config configs/live.toml
"""

import sys
sys.path.insert(0, "src")

from perp_mm.cli import main

if __name__ == "__main__":
    main(["cancel-all"] + sys.argv[1:])
