"""
Unit tests for the activity journal.
"""

import tempfile
from datetime import datetime
from pathlib import Path

import pytest

from palletdesk.sharedstore.activity import ActivityLog, format_entry


class TestActivityLog:
    """Tests for ActivityLog."""

    def test_format_entry(self):
        """Operator and action columns are padded to 20 characters."""
        when = datetime(2026, 10, 19, 8, 30, 12)

        line = format_entry("Alice", "LEASE_ACQUIRED", "host=PC1", when=when)

        assert line == (
            "[2026-10-19 08:30:12] | Alice                | LEASE_ACQUIRED       | host=PC1\n"
        )

    @pytest.mark.asyncio
    async def test_record_appends(self):
        """Entries are appended in order."""
        with tempfile.TemporaryDirectory() as tmpdir:
            journal = ActivityLog(Path(tmpdir) / "activity_log.txt")

            assert await journal.record("Alice", "LEASE_ACQUIRED", "host=PC1") is True
            assert await journal.record("Alice", "SAVE_CLIENTS", "records=3") is True

            lines = await journal.read_lines()
            assert len(lines) == 2
            assert "LEASE_ACQUIRED" in lines[0]
            assert lines[1].endswith("records=3")

    @pytest.mark.asyncio
    async def test_unconfigured(self):
        journal = ActivityLog(None)

        assert await journal.record("Alice", "SAVE_CLIENTS") is False
        assert await journal.read_lines() == []

    @pytest.mark.asyncio
    async def test_write_failure_is_not_raised(self):
        """A journal on a vanished directory reports failure quietly."""
        with tempfile.TemporaryDirectory() as tmpdir:
            journal = ActivityLog(Path(tmpdir) / "missing" / "activity_log.txt")

            assert await journal.record("Alice", "SAVE_CLIENTS") is False
