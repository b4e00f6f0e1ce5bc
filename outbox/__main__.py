"""Allow running the engine as a module: python -m outbox [command]."""

import sys

from outbox.cli import main

if __name__ == "__main__":
    sys.exit(main())
