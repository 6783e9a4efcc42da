"""
Shared activity journal.

Every instance appends one line per notable action to a plain-text file in
the shared directory, so an office can see who did what without opening
the application:

    [2026-10-19 08:30:12] | Alice                | LEASE_ACQUIRED       | host=PC1

The journal is informational. A failed append is logged and otherwise
ignored; it never blocks a save or a lease operation.
"""

from __future__ import annotations

import logging
from datetime import datetime
from pathlib import Path

from .fsio import append_text, run_blocking

logger = logging.getLogger(__name__)


def format_entry(
    operator: str, action: str, details: str = "", when: datetime | None = None
) -> str:
    """Render one journal line (newline included)."""
    timestamp = (when or datetime.now()).strftime("%Y-%m-%d %H:%M:%S")
    return f"[{timestamp}] | {operator.ljust(20)} | {action.ljust(20)} | {details}\n"


class ActivityLog:
    """Append-only journal in the shared directory.

    Example:
        >>> journal = ActivityLog(Path("/mnt/share/epal/activity_log.txt"))
        >>> await journal.record("Alice", "LEASE_ACQUIRED", "host=PC1")
    """

    def __init__(self, path: Path | None) -> None:
        self.path = path

    async def record(self, operator: str, action: str, details: str = "") -> bool:
        """Append an entry.

        Returns:
            True if the entry was written.
        """
        if self.path is None:
            return False
        line = format_entry(operator, action, details)
        try:
            await run_blocking(append_text, self.path, line)
        except OSError as e:
            logger.warning(f"Could not write activity journal: {e}", extra={"path": str(self.path)})
            return False
        return True

    async def read_lines(self) -> list[str]:
        """Return all journal lines, oldest first."""
        if self.path is None or not self.path.exists():
            return []
        text = await run_blocking(self.path.read_text, "utf-8")
        return text.splitlines()
