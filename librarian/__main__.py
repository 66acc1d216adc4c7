"""Entry point for Librarian.

Usage:
    python -m librarian [-s SETTINGS] [--o]
"""

import sys


def main() -> None:
    """Run the headless watcher and exit with its status code."""
    from librarian.service import main as service_main

    sys.exit(service_main())


if __name__ == "__main__":
    main()
