"""CLI entry point for habit_tracker.cli module.

Enables execution via: python -m habit_tracker.cli
"""

from habit_tracker.cli.habit import main

if __name__ == "__main__":
    raise SystemExit(main())
