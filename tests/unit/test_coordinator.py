"""
Unit tests for the lease coordinator.

Tests cover:
- Acquisition against absent, fresh, stale and corrupt lease files
- Idempotent re-acquire
- Renewal, release and forced takeover
- Detection of a lease taken over by another instance
- Not-configured and I/O failure outcomes
- Serialization of renew and release

Time is driven by a ManualClock; no test waits for the staleness window.
"""

import asyncio
import json
import tempfile
from pathlib import Path

import pytest

from palletdesk.sharedstore.config import LeaseConfig
from palletdesk.sharedstore.lease import (
    AcquireStatus,
    LeaseCoordinator,
    LeaseState,
    ManualClock,
)

HEARTBEAT = 10.0
STALE = 60.0


def read_lock(shared_dir: Path) -> dict:
    return json.loads((shared_dir / "lock.json").read_text())


class TestLeaseCoordinator:
    """Tests for LeaseCoordinator."""

    @pytest.fixture
    def shared_dir(self):
        """Create temporary shared directory."""
        with tempfile.TemporaryDirectory() as tmpdir:
            yield Path(tmpdir)

    @pytest.fixture
    def clock(self):
        return ManualClock(start_ms=1_000_000)

    @pytest.fixture
    def config(self):
        return LeaseConfig(heartbeat_interval_seconds=HEARTBEAT, stale_after_seconds=STALE)

    @pytest.fixture
    def make(self, shared_dir, config, clock):
        """Factory for coordinators sharing one directory and clock."""

        def factory(host: str) -> LeaseCoordinator:
            return LeaseCoordinator(shared_dir, config, clock, host=host)

        return factory

    @pytest.mark.asyncio
    async def test_acquire_absent_lease(self, make, shared_dir, clock):
        """Acquiring with no lease file writes our record."""
        alice = make("PC1")
        t = clock.now_ms()

        result = await alice.acquire("Alice")

        assert result.success
        assert result.handle.holder == "Alice"
        assert result.handle.host == "PC1"
        assert result.handle.forced is False
        assert alice.state is LeaseState.HELD
        assert alice.heartbeat_running
        assert read_lock(shared_dir) == {"holder": "Alice", "host": "PC1", "lastRenewedAt": t}
        await alice.close()

    @pytest.mark.asyncio
    async def test_alice_bob_scenario(self, make, shared_dir, clock):
        """Fresh lease blocks Bob; once Alice goes silent past staleness Bob gets it."""
        alice = make("PC1")
        bob = make("PC2")

        assert (await alice.acquire("Alice")).success

        clock.advance(HEARTBEAT / 2)
        result = await bob.acquire("Bob")

        assert result.status is AcquireStatus.CONFLICT
        assert result.conflict.holder == "Alice"
        assert result.conflict.host == "PC1"
        assert result.conflict.age_seconds == HEARTBEAT / 2
        assert bob.state is LeaseState.CONFLICTED
        assert bob.last_conflict == result.conflict

        # Alice's process was killed: no renewals from here on.
        clock.advance(STALE + 1)
        result = await bob.acquire("Bob")

        assert result.success
        assert bob.state is LeaseState.HELD
        assert bob.last_conflict is None
        assert read_lock(shared_dir)["holder"] == "Bob"
        await bob.close()
        await alice.close()

    @pytest.mark.asyncio
    async def test_renewed_lease_is_never_acquired_by_others(self, make, clock):
        """While the holder keeps renewing, nobody else can acquire."""
        alice = make("PC1")
        bob = make("PC2")
        assert (await alice.acquire("Alice")).success

        for _ in range(20):
            clock.advance(HEARTBEAT)
            assert await alice.renew() is True
            result = await bob.acquire("Bob")
            assert result.status is AcquireStatus.CONFLICT

        await alice.close()

    @pytest.mark.asyncio
    async def test_lease_at_threshold_is_still_fresh(self, make, clock):
        """Staleness requires strictly exceeding the threshold."""
        alice = make("PC1")
        bob = make("PC2")
        await alice.acquire("Alice")

        clock.advance(STALE)
        assert (await bob.acquire("Bob")).status is AcquireStatus.CONFLICT

        clock.set(clock.now_ms() + 1)
        assert (await bob.acquire("Bob")).success
        await bob.close()
        await alice.close()

    @pytest.mark.asyncio
    async def test_idempotent_reacquire(self, make, shared_dir, clock):
        """Same holder on the same host re-acquires a fresh lease (e.g. after a reload)."""
        first = make("PC1")
        await first.acquire("Alice")

        clock.advance(5)
        reloaded = make("PC1")
        result = await reloaded.acquire("Alice")

        assert result.success
        assert read_lock(shared_dir)["lastRenewedAt"] == clock.now_ms()
        await reloaded.close()
        await first.close()

    @pytest.mark.asyncio
    async def test_same_name_other_host_conflicts(self, make):
        """Two operators sharing a name are told apart by host."""
        first = make("PC1")
        second = make("PC2")
        await first.acquire("Alice")

        result = await second.acquire("Alice")

        assert result.status is AcquireStatus.CONFLICT
        assert result.conflict.host == "PC1"
        await first.close()

    @pytest.mark.asyncio
    async def test_acquire_for_other_identity_while_held(self, make, shared_dir, clock):
        """A held lease keeps its holder and keeps renewing."""
        alice = make("PC1")
        await alice.acquire("Alice")

        result = await alice.acquire("Bob")

        assert result.status is AcquireStatus.CONFLICT
        assert result.conflict.holder == "Alice"
        assert alice.state is LeaseState.HELD
        assert alice.heartbeat_running
        assert alice.handle.holder == "Alice"

        clock.advance(HEARTBEAT)
        assert await alice.renew() is True
        assert read_lock(shared_dir) == {
            "holder": "Alice",
            "host": "PC1",
            "lastRenewedAt": clock.now_ms(),
        }
        await alice.close()

    @pytest.mark.asyncio
    async def test_corrupt_lease_is_overwritten(self, make, shared_dir):
        """Unparseable lease content counts as absent."""
        (shared_dir / "lock.json").write_text("\x00\x00garbage")
        alice = make("PC1")

        result = await alice.acquire("Alice")

        assert result.success
        assert read_lock(shared_dir)["holder"] == "Alice"
        await alice.close()

    @pytest.mark.asyncio
    async def test_renew_refreshes_timestamp(self, make, shared_dir, clock):
        """Renewal rewrites lastRenewedAt for the same holder."""
        alice = make("PC1")
        await alice.acquire("Alice")

        clock.advance(HEARTBEAT)
        assert await alice.renew() is True

        lock = read_lock(shared_dir)
        assert lock["lastRenewedAt"] == clock.now_ms()
        assert lock["holder"] == "Alice"
        await alice.close()

    @pytest.mark.asyncio
    async def test_renew_when_not_held(self, make, shared_dir):
        """Renewal without a lease does nothing."""
        alice = make("PC1")

        assert await alice.renew() is False
        assert not (shared_dir / "lock.json").exists()

    @pytest.mark.asyncio
    async def test_renew_io_failure_keeps_lease(self, make):
        """A failed renewal write is retried later; the lease stays HELD."""
        alice = make("PC1")
        await alice.acquire("Alice")

        def failing_write(record):
            raise OSError("network share unavailable")

        alice._lease_file.write = failing_write

        assert await alice.renew() is False
        assert alice.state is LeaseState.HELD
        assert alice.is_held
        await alice.close()

    @pytest.mark.asyncio
    async def test_release_deletes_own_lease(self, make, shared_dir):
        """Clean release removes the lease file and stops the heartbeat."""
        alice = make("PC1")
        await alice.acquire("Alice")

        assert await alice.release() is True

        assert not (shared_dir / "lock.json").exists()
        assert alice.state is LeaseState.UNLEASED
        assert alice.handle is None
        assert not alice.heartbeat_running

    @pytest.mark.asyncio
    async def test_release_after_forced_takeover_keeps_new_lease(self, make, shared_dir):
        """A acquires, B forces takeover, A releases: the lease file stays B's."""
        alice = make("PC1")
        bob = make("PC2")
        await alice.acquire("Alice")

        result = await bob.force_takeover("Bob")
        assert result.success
        assert result.handle.forced is True

        assert await alice.release() is False

        lock = read_lock(shared_dir)
        assert lock["holder"] == "Bob"
        assert lock["host"] == "PC2"
        assert alice.state is LeaseState.UNLEASED
        await bob.close()

    @pytest.mark.asyncio
    async def test_force_takeover_from_conflicted(self, make, clock):
        """CONFLICTED moves to HELD through forced takeover."""
        alice = make("PC1")
        bob = make("PC2")
        await alice.acquire("Alice")
        clock.advance(1)

        await bob.acquire("Bob")
        assert bob.state is LeaseState.CONFLICTED

        result = await bob.force_takeover("Bob")
        assert result.success
        assert bob.state is LeaseState.HELD
        await bob.close()
        await alice.close()

    @pytest.mark.asyncio
    async def test_superseded_lease_detected_on_renew(self, make, shared_dir, clock):
        """Renewal notices a forced takeover and does not overwrite it."""
        alice = make("PC1")
        bob = make("PC2")
        lost = []
        alice.on_lease_lost(lost.append)
        await alice.acquire("Alice")

        await bob.force_takeover("Bob")
        clock.advance(HEARTBEAT)

        assert await alice.renew() is False

        assert alice.state is LeaseState.CONFLICTED
        assert not alice.is_held
        assert not alice.heartbeat_running
        assert len(lost) == 1
        assert lost[0].holder == "Bob"
        assert read_lock(shared_dir)["holder"] == "Bob"
        await bob.close()

    @pytest.mark.asyncio
    async def test_renew_rewrites_missing_lease(self, make, shared_dir, clock):
        """A lease file deleted from under us is written back on renewal."""
        alice = make("PC1")
        await alice.acquire("Alice")
        (shared_dir / "lock.json").unlink()

        clock.advance(HEARTBEAT)
        assert await alice.renew() is True
        assert read_lock(shared_dir)["holder"] == "Alice"
        await alice.close()

    @pytest.mark.asyncio
    async def test_not_configured(self, config, clock):
        """No directory is a legitimate outcome, not an exception."""
        coordinator = LeaseCoordinator(None, config, clock, host="PC1")

        result = await coordinator.acquire("Alice")

        assert result.status is AcquireStatus.NOT_CONFIGURED
        assert not result.success
        assert coordinator.state is LeaseState.UNLEASED
        assert (await coordinator.force_takeover("Alice")).status is AcquireStatus.NOT_CONFIGURED
        assert await coordinator.inspect() is None

    @pytest.mark.asyncio
    async def test_missing_directory(self, shared_dir, config, clock):
        """A directory that does not exist yet is reported as not configured."""
        coordinator = LeaseCoordinator(shared_dir / "not-yet", config, clock, host="PC1")

        result = await coordinator.acquire("Alice")

        assert result.status is AcquireStatus.NOT_CONFIGURED
        assert "does not exist" in result.error

    @pytest.mark.asyncio
    async def test_io_error_is_an_outcome(self, make, shared_dir):
        """An unreadable lease path yields IO_ERROR instead of raising."""
        (shared_dir / "lock.json").mkdir()
        alice = make("PC1")

        result = await alice.acquire("Alice")

        assert result.status is AcquireStatus.IO_ERROR
        assert result.error
        assert alice.state is LeaseState.UNLEASED

    @pytest.mark.asyncio
    async def test_inspect(self, make, shared_dir, clock):
        """Inspection reports the on-disk record without side effects."""
        alice = make("PC1")
        observer = make("PC9")

        inspection = await observer.inspect()
        assert inspection.exists is False
        assert inspection.record is None

        await alice.acquire("Alice")
        clock.advance(30)
        inspection = await observer.inspect()
        assert inspection.record.holder == "Alice"
        assert inspection.age_seconds == 30
        assert inspection.stale is False

        clock.advance(STALE)
        inspection = await observer.inspect()
        assert inspection.stale is True
        assert observer.state is LeaseState.UNLEASED

        await alice.release()
        (shared_dir / "lock.json").write_text("nope")
        inspection = await observer.inspect()
        assert inspection.corrupt is True

    @pytest.mark.asyncio
    async def test_renew_and_release_are_serialized(self, make, shared_dir):
        """A renewal racing a release never leaves a lease file behind."""
        alice = make("PC1")
        await alice.acquire("Alice")

        await asyncio.gather(alice.renew(), alice.release())

        assert not (shared_dir / "lock.json").exists()
        assert alice.state is LeaseState.UNLEASED
