"""Application entry point — wires services and runs the command line."""

from __future__ import annotations

import sys

from confighistory.cli import main

if __name__ == "__main__":
    sys.exit(main())
