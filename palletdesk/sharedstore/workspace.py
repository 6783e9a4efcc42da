"""
Workspace - the shared store as seen by the application.

Ties the lease coordinator, the versioned store and the activity journal
to one configured shared directory, and exposes the small surface the
presentation layer consumes:

    - configure_shared_directory / get_shared_directory
    - on_lease_conflict: notified with holder, host and age whenever the
      lease cannot be taken, or is taken away by a forced takeover
    - on_import_requires_confirmation: asked before any import overwrites
      a collection, with the verification status and record counts

Lifecycle:
    workspace = Workspace(config)
    await workspace.load()                    # read path, no lease needed
    await workspace.acquire_lease("Alice")    # before any write
    await workspace.save(CollectionKind.CLIENTS, records)
    await workspace.close()                   # releases the lease

Invariants:
    - Writes go through the store's lease guard; no lease, no write
    - Switching directories releases the lease on the old one first
    - An import is committed only after every confirmation handler agreed
"""

from __future__ import annotations

import asyncio
import inspect
import logging
from pathlib import Path
from typing import Any, Awaitable, Callable, Union

from .activity import ActivityLog
from .config import SharedStoreConfig
from .errors import LeaseConflictError
from .fsio import run_blocking
from .lease import (
    AcquireResult,
    AcquireStatus,
    Clock,
    LeaseConflict,
    LeaseCoordinator,
    LeaseState,
)
from .store import (
    CollectionKind,
    ImportProposal,
    Record,
    VersionedStore,
    default_archive_name,
    write_backup_archive,
)

logger = logging.getLogger(__name__)

ConflictHandler = Callable[[LeaseConflict], Any]
ConfirmationHandler = Callable[[ImportProposal], Union[bool, Awaitable[bool]]]


async def _call(handler: Callable[..., Any], *args: Any) -> Any:
    result = handler(*args)
    if inspect.isawaitable(result):
        result = await result
    return result


class Workspace:
    """Facade over one shared directory.

    Attributes:
        config: Current configuration (replaced on directory change)
        coordinator: Lease coordinator for the current directory
        store: Versioned store for the current directory
        activity: Activity journal for the current directory

    Example:
        >>> async with Workspace(SharedStoreConfig.from_env()) as workspace:
        ...     workspace.on_lease_conflict(show_blocking_screen)
        ...     result = await workspace.acquire_lease("Alice")
        ...     if result.success:
        ...         await workspace.save(CollectionKind.CLIENTS, clients)
    """

    def __init__(
        self,
        config: SharedStoreConfig | None = None,
        clock: Clock | None = None,
        host: str | None = None,
    ) -> None:
        """Initialize the workspace.

        Args:
            config: Configuration (loaded from env if not provided)
            clock: Time source for lease timestamps
            host: Machine identifier (defaults to the hostname)
        """
        self.config = config or SharedStoreConfig.from_env()
        self._clock = clock
        self._host = host
        self._operator: str | None = None
        self._conflict_handlers: list[ConflictHandler] = []
        self._confirmation_handlers: list[ConfirmationHandler] = []
        self._pending: set[asyncio.Future[Any]] = set()
        self._build()

    def _build(self) -> None:
        shared = self.config.storage.shared_path
        self.coordinator = LeaseCoordinator(shared, self.config.lease, self._clock, self._host)
        self.coordinator.on_lease_lost(self._lease_lost)
        self.store = VersionedStore(
            shared, self.config.storage, lease_guard=lambda: self.coordinator.is_held
        )
        self.activity = ActivityLog(
            shared / self.config.storage.activity_log_file_name if shared is not None else None
        )

    @property
    def operator(self) -> str | None:
        """Operator of the currently held lease."""
        return self._operator

    @property
    def host(self) -> str:
        return self.coordinator.host

    def get_shared_directory(self) -> Path | None:
        return self.config.storage.shared_path

    async def configure_shared_directory(self, path: str | Path | None) -> None:
        """Switch to another shared directory.

        Any lease on the previous directory is released, and the
        collections of the new one are loaded.

        Args:
            path: Directory chosen by the user, or None to unset it
        """
        if self.coordinator.is_held:
            await self.release_lease()
        await self.coordinator.close()

        self.config = self.config.with_shared_dir(path)
        self._build()
        logger.info(
            "Shared directory configured", extra={"shared_dir": self.config.storage.shared_dir}
        )
        await self.store.load_all()

    def on_lease_conflict(self, handler: ConflictHandler) -> None:
        """Register a handler for lease conflicts (sync or async)."""
        self._conflict_handlers.append(handler)

    def on_import_requires_confirmation(self, handler: ConfirmationHandler) -> None:
        """Register a handler that approves or declines an import (sync or async)."""
        self._confirmation_handlers.append(handler)

    async def load(self) -> dict[CollectionKind, list[Record]]:
        """Read both collections from disk. Needs no lease."""
        return await self.store.load_all()

    def records(self, kind: CollectionKind) -> list[Record]:
        return self.store.records(kind)

    async def acquire_lease(self, operator: str) -> AcquireResult:
        """Take the lease for operator, notifying conflict handlers on failure."""
        result = await self.coordinator.acquire(operator)
        if result.status is AcquireStatus.CONFLICT and result.conflict is not None:
            await self._notify_conflict(result.conflict)
        elif result.success:
            self._operator = operator
            await self.activity.record(operator, "LEASE_ACQUIRED", f"host={self.host}")
        return result

    async def force_takeover(self, operator: str) -> AcquireResult:
        """Take the lease regardless of its holder.

        Call only after a human confirmed that the recorded holder is gone.
        """
        previous = self.coordinator.last_conflict
        result = await self.coordinator.force_takeover(operator)
        if result.success:
            self._operator = operator
            details = f"host={self.host}"
            if previous is not None:
                details += f" previous={previous.holder}@{previous.host}"
            await self.activity.record(operator, "FORCED_TAKEOVER", details)
        return result

    async def release_lease(self) -> bool:
        """Release the lease if we hold it."""
        operator = self._operator
        released = await self.coordinator.release()
        self._operator = None
        if released and operator is not None:
            await self.activity.record(operator, "LEASE_RELEASED", f"host={self.host}")
        return released

    async def save(self, kind: CollectionKind, records: list[Record]) -> None:
        """Persist a collection.

        Raises:
            LeaseConflictError: If another instance holds the lease
            LeaseNotHeldError: If the lease is not held
            ConfigurationError: If no shared directory is configured
            StorageIOError: If the write failed
        """
        self._check_not_superseded()
        await self.store.save_collection(kind, records)
        await self.activity.record(
            self._operator or "?", f"SAVE_{kind.value.upper()}", f"records={len(records)}"
        )

    async def initialize(self) -> None:
        """Create empty collection files in a fresh shared directory (lease required)."""
        self._check_not_superseded()
        await self.store.initialize()

    async def propose_import(
        self, raw: bytes, kind: CollectionKind | None = None
    ) -> ImportProposal:
        """Validate a foreign file; see VersionedStore.propose_import()."""
        return await self.store.propose_import(raw, kind)

    async def commit_import(self, proposal: ImportProposal) -> None:
        """Install a proposal the user already confirmed."""
        self._check_not_superseded()
        await self.store.commit_import(proposal)
        await self.activity.record(
            self._operator or "?",
            "IMPORT",
            f"{proposal.format.value} {proposal.status.value} {proposal.record_counts}",
        )

    async def confirm_import(self, proposal: ImportProposal) -> bool:
        """Ask every confirmation handler; all must agree.

        With no handler registered the import is declined, since nobody
        could have confirmed the overwrite.
        """
        if not self._confirmation_handlers:
            logger.warning("Import declined: no confirmation handler registered")
            return False
        for handler in list(self._confirmation_handlers):
            if not await _call(handler, proposal):
                logger.info(
                    "Import declined by user", extra={"record_counts": proposal.record_counts}
                )
                return False
        return True

    async def import_file(
        self, path: str | Path, kind: CollectionKind | None = None
    ) -> ImportProposal | None:
        """Validate, confirm and commit an import from a file.

        Args:
            path: Foreign file (JSON document or backup archive)
            kind: Target collection, or None for a full restore

        Returns:
            The committed proposal, or None if the import was declined.

        Raises:
            ForeignImportError: If the file was rejected
            LeaseNotHeldError, ConfigurationError, StorageIOError: On commit
        """
        raw = await run_blocking(Path(path).read_bytes)
        proposal = await self.propose_import(raw, kind)
        if not await self.confirm_import(proposal):
            return None
        await self.commit_import(proposal)
        return proposal

    def export_snapshot(self) -> bytes:
        """Full-backup envelope of both collections. Needs no lease."""
        return self.store.export_snapshot()

    async def export_archive(self, dest: str | Path | None = None) -> Path:
        """Write a combined backup archive.

        Args:
            dest: Target file or directory (defaults to the shared directory)

        Returns:
            Path of the written archive
        """
        target = Path(dest) if dest is not None else self.get_shared_directory()
        if target is None:
            target = Path.cwd() / default_archive_name()
        return await write_backup_archive(self.store, target)

    async def close(self) -> None:
        """Release the lease and stop background work."""
        if self.coordinator.is_held:
            await self.release_lease()
        await self.coordinator.close()
        if self._pending:
            await asyncio.gather(*self._pending, return_exceptions=True)

    async def __aenter__(self) -> Workspace:
        return self

    async def __aexit__(self, *exc_info: object) -> None:
        await self.close()

    def _check_not_superseded(self) -> None:
        conflict = self.coordinator.last_conflict
        if self.coordinator.state is LeaseState.CONFLICTED and conflict is not None:
            raise LeaseConflictError(conflict.holder, conflict.host, conflict.age_seconds)

    async def _notify_conflict(self, conflict: LeaseConflict) -> None:
        for handler in list(self._conflict_handlers):
            try:
                await _call(handler, conflict)
            except Exception as e:
                logger.error(f"Lease conflict handler failed: {e}", exc_info=True)

    def _lease_lost(self, conflict: LeaseConflict) -> None:
        self._operator = None
        future = asyncio.ensure_future(self._notify_conflict(conflict))
        self._pending.add(future)
        future.add_done_callback(self._pending.discard)
