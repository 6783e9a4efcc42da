"""
Lease coordinator for the shared directory.

Several application instances on different machines share one directory
and nothing else: no network service, no shared memory, no portable OS
lock that works on every network share. The coordinator builds an advisory
mutual-exclusion protocol on top of a single lease file and wall-clock
timestamps:

    UNLEASED ──acquire──▶ ACQUIRING ──▶ HELD ──release──▶ RELEASING ──▶ UNLEASED
                              │           ▲
                              ▼           │ force_takeover
                          CONFLICTED ─────┘
                              │
                              └──retry (acquire)──▶ ACQUIRING

Acquisition rules:
    - No lease file, or unparseable content: write ours, succeed
    - Lease older than the staleness threshold: abandoned, overwrite it
    - Fresh lease with our (holder, host): idempotent re-acquire
    - Fresh lease of someone else: conflict, reported with holder and age

Invariants:
    - Filesystem errors never escape acquire/renew/release/force_takeover;
      they are reported through the returned outcome
    - Operations on one coordinator are serialized by a non-reentrant
      asyncio.Lock, so a heartbeat tick cannot interleave with release
    - release() only deletes a lease file that still names us
    - renew() never overwrites a lease that names someone else

Known limitation:
    Two instances that both observe an absent or stale lease at the same
    moment can both write it; the filesystem's last-writer-wins decides.
    The staleness threshold is far larger than realistic I/O latency, and
    the loser notices on its next renewal and is moved to CONFLICTED.

How to change safely:
    - Keep staleness several multiples of the heartbeat interval
    - Never auto-resolve a conflict; surface it to a human
"""

from __future__ import annotations

import asyncio
import logging
import socket
from dataclasses import dataclass
from enum import Enum
from pathlib import Path
from typing import Callable

from ..config import LeaseConfig
from ..fsio import run_blocking
from .clock import Clock, SystemClock
from .heartbeat import Heartbeat
from .record import LeaseFile, LeaseRecord

logger = logging.getLogger(__name__)


class LeaseState(Enum):
    """Coordinator states."""

    UNLEASED = "unleased"
    ACQUIRING = "acquiring"
    HELD = "held"
    CONFLICTED = "conflicted"
    RELEASING = "releasing"


class AcquireStatus(Enum):
    """Outcome of an acquisition attempt."""

    ACQUIRED = "acquired"
    CONFLICT = "conflict"
    NOT_CONFIGURED = "not_configured"
    IO_ERROR = "io_error"


@dataclass(frozen=True)
class LeaseHandle:
    """Proof of a held lease.

    Attributes:
        holder: Operator name
        host: Machine identifier
        acquired_at_ms: When this instance took the lease (epoch ms)
        forced: Whether the lease was taken by forced takeover
    """

    holder: str
    host: str
    acquired_at_ms: int
    forced: bool = False


@dataclass(frozen=True)
class LeaseConflict:
    """A fresh lease held by another instance.

    Attributes:
        holder: Operator name recorded in the lease
        host: Machine recorded in the lease
        last_renewed_at_ms: Last renewal timestamp (epoch ms)
        age_seconds: Seconds since that renewal, by our clock
    """

    holder: str
    host: str
    last_renewed_at_ms: int
    age_seconds: float


@dataclass(frozen=True)
class AcquireResult:
    """Result of acquire() or force_takeover().

    Attributes:
        status: What happened
        handle: Lease handle if status is ACQUIRED
        conflict: Conflicting lease if status is CONFLICT
        error: Error message if status is IO_ERROR or NOT_CONFIGURED
    """

    status: AcquireStatus
    handle: LeaseHandle | None = None
    conflict: LeaseConflict | None = None
    error: str | None = None

    @property
    def success(self) -> bool:
        return self.status is AcquireStatus.ACQUIRED


@dataclass(frozen=True)
class LeaseInspection:
    """Read-only view of the lease file.

    Attributes:
        exists: Whether the lease file exists
        record: Parsed record (None if absent or corrupt)
        age_seconds: Seconds since last renewal, if a record was read
        stale: Whether the record is past the staleness threshold
        corrupt: Whether the file exists but could not be parsed
    """

    exists: bool
    record: LeaseRecord | None
    age_seconds: float | None
    stale: bool
    corrupt: bool


LeaseListener = Callable[[LeaseConflict], None]


class LeaseCoordinator:
    """Acquires, renews and releases the shared directory's lease.

    Attributes:
        shared_dir: Shared directory (None = not configured yet)
        config: Lease timing configuration
        clock: Wall-clock time source
        host: This machine's identifier

    Example:
        >>> coordinator = LeaseCoordinator(Path("/mnt/share/epal"), LeaseConfig())
        >>> result = await coordinator.acquire("Alice")
        >>> if result.success:
        ...     ...  # save collections
        ...     await coordinator.release()
    """

    def __init__(
        self,
        shared_dir: Path | None,
        config: LeaseConfig | None = None,
        clock: Clock | None = None,
        host: str | None = None,
    ) -> None:
        """Initialize the coordinator.

        Args:
            shared_dir: Shared directory holding the lease file
            config: Lease timing configuration
            clock: Time source (defaults to the system clock)
            host: Machine identifier (defaults to the hostname)
        """
        self.shared_dir = shared_dir
        self.config = config or LeaseConfig()
        self.clock = clock or SystemClock()
        self.host = host or socket.gethostname()

        self._lease_file = (
            LeaseFile(shared_dir / self.config.lock_file_name) if shared_dir is not None else None
        )
        self._state = LeaseState.UNLEASED
        self._handle: LeaseHandle | None = None
        self._record: LeaseRecord | None = None
        self._last_conflict: LeaseConflict | None = None
        self._lock = asyncio.Lock()
        self._heartbeat = Heartbeat(self.config.heartbeat_interval_seconds, self.renew)
        self._lost_listeners: list[LeaseListener] = []
        self._renew_failures = 0

    @property
    def state(self) -> LeaseState:
        return self._state

    @property
    def handle(self) -> LeaseHandle | None:
        return self._handle

    @property
    def is_held(self) -> bool:
        return self._state is LeaseState.HELD

    @property
    def last_conflict(self) -> LeaseConflict | None:
        return self._last_conflict

    @property
    def lease_path(self) -> Path | None:
        return self._lease_file.path if self._lease_file is not None else None

    @property
    def heartbeat_running(self) -> bool:
        return self._heartbeat.is_running

    def on_lease_lost(self, listener: LeaseListener) -> None:
        """Register a callback for when another instance supersedes our lease."""
        self._lost_listeners.append(listener)

    async def acquire(self, holder: str, host: str | None = None) -> AcquireResult:
        """Try to take the lease.

        Args:
            holder: Operator name
            host: Machine identifier (defaults to this coordinator's host)

        Returns:
            AcquireResult; never raises for filesystem problems.
        """
        host = host or self.host
        async with self._lock:
            if not self._directory_ready():
                return self._not_configured()

            now_ms = self.clock.now_ms()
            if self._record is not None and not self._record.identifies(holder, host):
                # A held lease is only handed over through release().
                logger.info(
                    "Acquire for another identity while holding the lease",
                    extra={"holder": holder, "host": host, "current": self._record.holder},
                )
                return AcquireResult(
                    status=AcquireStatus.CONFLICT,
                    conflict=LeaseConflict(
                        holder=self._record.holder,
                        host=self._record.host,
                        last_renewed_at_ms=self._record.last_renewed_at_ms,
                        age_seconds=self._record.age_seconds(now_ms),
                    ),
                )

            previous_state = self._state
            self._state = LeaseState.ACQUIRING

            try:
                exists, existing = await run_blocking(self._lease_file.read)
            except OSError as e:
                return self._io_failure("read", e, previous_state)

            if existing is not None and not existing.is_stale(
                now_ms, self.config.stale_after_seconds
            ):
                if not existing.identifies(holder, host):
                    conflict = LeaseConflict(
                        holder=existing.holder,
                        host=existing.host,
                        last_renewed_at_ms=existing.last_renewed_at_ms,
                        age_seconds=existing.age_seconds(now_ms),
                    )
                    self._state = LeaseState.CONFLICTED
                    self._last_conflict = conflict
                    logger.info(
                        "Shared store is leased by another instance",
                        extra={
                            "holder": conflict.holder,
                            "host": conflict.host,
                            "age_seconds": conflict.age_seconds,
                        },
                    )
                    return AcquireResult(status=AcquireStatus.CONFLICT, conflict=conflict)
                logger.info("Re-acquiring our own lease", extra={"holder": holder, "host": host})
            elif existing is not None:
                logger.info(
                    "Overwriting stale lease",
                    extra={
                        "holder": existing.holder,
                        "host": existing.host,
                        "age_seconds": existing.age_seconds(now_ms),
                    },
                )
            elif exists:
                logger.warning(f"Lease file {self._lease_file.path} is corrupt, overwriting")

            return await self._take(
                holder, host, now_ms, forced=False, previous_state=previous_state
            )

    async def force_takeover(self, holder: str, host: str | None = None) -> AcquireResult:
        """Take the lease regardless of who holds it or how fresh it is.

        The caller is trusted to have obtained explicit human confirmation.

        Args:
            holder: Operator name
            host: Machine identifier (defaults to this coordinator's host)

        Returns:
            AcquireResult; never raises for filesystem problems.
        """
        host = host or self.host
        async with self._lock:
            if not self._directory_ready():
                return self._not_configured()

            previous_state = self._state
            self._state = LeaseState.ACQUIRING
            now_ms = self.clock.now_ms()

            try:
                _, existing = await run_blocking(self._lease_file.read)
            except OSError:
                existing = None
            if existing is not None and not existing.identifies(holder, host):
                logger.warning(
                    "Forced takeover of lease",
                    extra={
                        "previous_holder": existing.holder,
                        "previous_host": existing.host,
                        "holder": holder,
                        "host": host,
                    },
                )

            return await self._take(
                holder, host, now_ms, forced=True, previous_state=previous_state
            )

    async def renew(self) -> bool:
        """Refresh our lease timestamp. Called on every heartbeat tick.

        Returns:
            True if the lease file now carries a fresh timestamp for us.
            An I/O failure returns False but keeps the HELD state; the next
            tick retries. A lease superseded by someone else moves the
            coordinator to CONFLICTED.
        """
        async with self._lock:
            if self._state is not LeaseState.HELD or self._record is None:
                return False

            record = self._record
            try:
                _, current = await run_blocking(self._lease_file.read)
                if current is not None and not current.identifies(record.holder, record.host):
                    await self._superseded(current)
                    return False

                renewed = record.renewed(self.clock.now_ms())
                await run_blocking(self._lease_file.write, renewed)
            except OSError as e:
                self._renew_failures += 1
                logger.warning(
                    f"Lease renewal failed, will retry on next heartbeat: {e}",
                    extra={"consecutive_failures": self._renew_failures},
                )
                return False

            self._record = renewed
            self._renew_failures = 0
            logger.debug("Lease renewed", extra={"last_renewed_at_ms": renewed.last_renewed_at_ms})
            return True

    async def release(self) -> bool:
        """Give up the lease.

        Stops the heartbeat and deletes the lease file only if it still
        names this holder and host.

        Returns:
            True if the lease file was deleted by this call.
        """
        await self._heartbeat.stop()
        async with self._lock:
            record = self._record
            if record is None or self._lease_file is None:
                self._reset()
                return False

            self._state = LeaseState.RELEASING
            deleted = False
            try:
                _, current = await run_blocking(self._lease_file.read)
                if current is not None and current.identifies(record.holder, record.host):
                    deleted = await run_blocking(self._lease_file.delete)
                elif current is not None:
                    logger.info(
                        "Lease now belongs to another instance, leaving it in place",
                        extra={"holder": current.holder, "host": current.host},
                    )
            except OSError as e:
                logger.error(f"Failed to release lease: {e}", exc_info=True)

            if deleted:
                logger.info("Lease released", extra={"holder": record.holder, "host": record.host})
            self._reset()
            return deleted

    async def inspect(self) -> LeaseInspection | None:
        """Read the lease file without changing anything.

        Returns:
            LeaseInspection, or None if the directory is not configured or
            cannot be read.
        """
        if not self._directory_ready():
            return None
        try:
            exists, record = await run_blocking(self._lease_file.read)
        except OSError as e:
            logger.warning(f"Could not read lease file: {e}")
            return None

        if record is None:
            return LeaseInspection(
                exists=exists, record=None, age_seconds=None, stale=False, corrupt=exists
            )
        now_ms = self.clock.now_ms()
        return LeaseInspection(
            exists=True,
            record=record,
            age_seconds=record.age_seconds(now_ms),
            stale=record.is_stale(now_ms, self.config.stale_after_seconds),
            corrupt=False,
        )

    async def close(self) -> None:
        """Release the lease if held and stop background work."""
        if self._record is not None:
            await self.release()
        else:
            await self._heartbeat.stop()

    async def _take(
        self,
        holder: str,
        host: str,
        now_ms: int,
        forced: bool,
        previous_state: LeaseState,
    ) -> AcquireResult:
        """Write our record and enter HELD (lock must be held)."""
        record = LeaseRecord(holder=holder, host=host, last_renewed_at_ms=now_ms)
        try:
            await run_blocking(self._lease_file.write, record)
        except OSError as e:
            return self._io_failure("write", e, previous_state)

        self._record = record
        self._handle = LeaseHandle(holder=holder, host=host, acquired_at_ms=now_ms, forced=forced)
        self._state = LeaseState.HELD
        self._last_conflict = None
        self._renew_failures = 0
        self._heartbeat.start()
        logger.info("Lease acquired", extra={"holder": holder, "host": host, "forced": forced})
        return AcquireResult(status=AcquireStatus.ACQUIRED, handle=self._handle)

    async def _superseded(self, current: LeaseRecord) -> None:
        """Another instance took our lease (lock must be held)."""
        conflict = LeaseConflict(
            holder=current.holder,
            host=current.host,
            last_renewed_at_ms=current.last_renewed_at_ms,
            age_seconds=current.age_seconds(self.clock.now_ms()),
        )
        logger.warning(
            "Lease was taken over by another instance",
            extra={"holder": current.holder, "host": current.host},
        )
        self._state = LeaseState.CONFLICTED
        self._last_conflict = conflict
        self._record = None
        self._handle = None
        await self._heartbeat.stop()
        for listener in list(self._lost_listeners):
            try:
                listener(conflict)
            except Exception as e:
                logger.error(f"Lease-lost listener failed: {e}", exc_info=True)

    def _directory_ready(self) -> bool:
        return self._lease_file is not None and self._lease_file.path.parent.is_dir()

    def _not_configured(self) -> AcquireResult:
        location = str(self.shared_dir) if self.shared_dir is not None else None
        logger.info("Shared directory not configured", extra={"shared_dir": location})
        return AcquireResult(
            status=AcquireStatus.NOT_CONFIGURED,
            error="No shared directory configured"
            if location is None
            else f"Shared directory does not exist: {location}",
        )

    def _io_failure(self, action: str, error: OSError, previous_state: LeaseState) -> AcquireResult:
        logger.error(f"Failed to {action} lease file: {error}", exc_info=True)
        self._state = previous_state
        return AcquireResult(status=AcquireStatus.IO_ERROR, error=str(error))

    def _reset(self) -> None:
        self._state = LeaseState.UNLEASED
        self._record = None
        self._handle = None
