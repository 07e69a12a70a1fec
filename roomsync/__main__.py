"""Allow running roomsync as a module."""

from roomsync.cli import main

if __name__ == "__main__":
    raise SystemExit(main())
