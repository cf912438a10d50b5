"""Package entry point for ``python -m hitl_broker``."""

import sys

from .cli import main

if __name__ == "__main__":
    sys.exit(main())
