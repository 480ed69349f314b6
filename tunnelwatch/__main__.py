"""
Entry point for running tunnelwatch via `python -m tunnelwatch`.

Dispatches to the command line interface.
"""

import sys

from .cli import main

if __name__ == "__main__":
    sys.exit(main())
