#!/usr/bin/env python3
"""
SignalScout - Main Entry Point

Thin wrapper around the operator CLI so ``python main.py <command>`` and the
``signal-scout`` console script behave the same.
"""

from __future__ import annotations

import sys

if sys.version_info < (3, 10):
    print("[FATAL] Python 3.10+ is required.")
    sys.exit(1)

from src.cli import main

if __name__ == "__main__":
    sys.exit(main())
