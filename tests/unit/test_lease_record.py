"""
Unit tests for the lease record and lease file codec.

Tests cover:
- Serialized key names
- Older key spellings
- Staleness and age arithmetic
- Reading absent, corrupt and valid lease files
"""

import json
import tempfile
from pathlib import Path

import pytest

from palletdesk.sharedstore.lease.record import LeaseFile, LeaseRecord, decode_lease, encode_lease


class TestLeaseRecord:
    """Tests for LeaseRecord."""

    def test_encode_uses_file_keys(self):
        """Encoded record uses holder/host/lastRenewedAt."""
        record = LeaseRecord(holder="Alice", host="PC1", last_renewed_at_ms=1_000)

        document = json.loads(encode_lease(record))

        assert document == {"holder": "Alice", "host": "PC1", "lastRenewedAt": 1_000}

    def test_decode_round_trip(self):
        """Decoding an encoded record yields the same record."""
        record = LeaseRecord(holder="Alice", host="PC1", last_renewed_at_ms=1_000)

        assert decode_lease(encode_lease(record)) == record

    def test_decode_older_key_spelling(self):
        """Records written with operator/machine/lastHeartbeat are understood."""
        raw = b'{"operator": "Bob", "machine": "PC2", "lastHeartbeat": 5000}'

        record = decode_lease(raw)

        assert record is not None
        assert record.holder == "Bob"
        assert record.host == "PC2"
        assert record.last_renewed_at_ms == 5000

    @pytest.mark.parametrize(
        "raw",
        [b"", b"not json", b"{}", b"[1, 2]", b'{"holder": "Alice", "host": "PC1"}'],
    )
    def test_decode_invalid_returns_none(self, raw):
        """Unparseable or incomplete content decodes to None."""
        assert decode_lease(raw) is None

    def test_identifies(self):
        """Identity requires both holder and host to match."""
        record = LeaseRecord(holder="Alice", host="PC1", last_renewed_at_ms=0)

        assert record.identifies("Alice", "PC1")
        assert not record.identifies("Alice", "PC2")
        assert not record.identifies("Bob", "PC1")

    def test_staleness_is_strict(self):
        """A record exactly at the threshold is still fresh."""
        record = LeaseRecord(holder="Alice", host="PC1", last_renewed_at_ms=10_000)

        assert not record.is_stale(70_000, stale_after_seconds=60)
        assert record.is_stale(70_001, stale_after_seconds=60)

    def test_age_never_negative(self):
        """A timestamp from the future (clock skew) has age zero."""
        record = LeaseRecord(holder="Alice", host="PC1", last_renewed_at_ms=10_000)

        assert record.age_seconds(5_000) == 0
        assert record.age_seconds(12_500) == 2.5

    def test_renewed_keeps_identity(self):
        """Renewal only changes the timestamp."""
        record = LeaseRecord(holder="Alice", host="PC1", last_renewed_at_ms=1_000)

        renewed = record.renewed(2_000)

        assert renewed.identifies("Alice", "PC1")
        assert renewed.last_renewed_at_ms == 2_000
        assert record.last_renewed_at_ms == 1_000


class TestLeaseFile:
    """Tests for LeaseFile."""

    @pytest.fixture
    def lease_file(self):
        """Lease file in a temporary directory."""
        with tempfile.TemporaryDirectory() as tmpdir:
            yield LeaseFile(Path(tmpdir) / "lock.json")

    def test_read_absent(self, lease_file):
        """Missing file reads as (False, None)."""
        assert lease_file.read() == (False, None)

    def test_read_corrupt(self, lease_file):
        """Garbage reads as (True, None)."""
        lease_file.path.write_text("{ half a record")

        assert lease_file.read() == (True, None)

    def test_write_then_read(self, lease_file):
        """Written record reads back."""
        record = LeaseRecord(holder="Alice", host="PC1", last_renewed_at_ms=42)

        lease_file.write(record)

        assert lease_file.read() == (True, record)
        assert list(lease_file.path.parent.iterdir()) == [lease_file.path]

    def test_delete(self, lease_file):
        """Delete reports whether a file was removed."""
        lease_file.write(LeaseRecord(holder="Alice", host="PC1", last_renewed_at_ms=42))

        assert lease_file.delete() is True
        assert lease_file.delete() is False
        assert not lease_file.path.exists()
