"""
CLI runner module.

Provides commands:
- init: Create the data directory
- apps: Verify credentials
- sync: Pull crashes and feedback, backfill logs and screenshots
- list/show/log/stats: Query crashes
- fix/investigate/wontfix/duplicate/reopen: Triage crashes
- feedback <...>: The same commands for screenshot feedback
"""

from .main import create_cli, main

__all__ = [
    "create_cli",
    "main",
]
