"""
Versioned document store for the two record collections.

The store keeps the client and movement collections in memory and persists
each one as a signed envelope file in the shared directory:

    <shared_dir>/clients.json     {"signature": "EPAL_CLIENTS_V1", "data": [...]}
    <shared_dir>/movements.json   {"signature": "EPAL_MOVEMENTS_V1", "data": [...]}

Other instances may change these files at any time between our own calls.
The store makes no caching assumption beyond what it explicitly re-reads:
load_collection() always goes back to disk.

Invariants:
    - A missing file loads as an empty collection (first run)
    - An unreadable file loads as empty with a warning; startup never blocks
    - In-memory collections are replaced wholesale, never merged
    - A save either fully replaces the file or leaves the old one intact
    - Writes require the lease when a lease guard is wired in
    - A rejected import leaves memory and disk untouched

How to change safely:
    - Keep decoding every envelope generation ever written
    - Route every write through _write_collection so atomicity holds
"""

from __future__ import annotations

import io
import logging
import time
import zipfile
from dataclasses import dataclass, field
from enum import Enum
from pathlib import Path
from typing import Callable

from ..config import StorageConfig
from ..errors import (
    ConfigurationError,
    CorruptStateError,
    ForeignImportError,
    LeaseNotHeldError,
    MalformedInputError,
    SharedStoreError,
    StorageIOError,
)
from ..fsio import preserve_copy, read_if_exists, run_blocking, write_atomic
from .backup import read_backup_archive
from .envelope import (
    CollectionKind,
    DecodeOutcome,
    Record,
    decode_collection,
    encode_collection,
    encode_full_backup,
)
from .validator import ImportFormat, VerificationStatus, validate_backup, validate_import

logger = logging.getLogger(__name__)


class LoadStatus(Enum):
    """What the last load found on disk for a collection."""

    NOT_LOADED = "not_loaded"
    MISSING = "missing"
    SIGNED = "signed"
    LEGACY = "legacy"
    CORRUPT = "corrupt"
    UNREADABLE = "unreadable"


@dataclass(frozen=True)
class ImportProposal:
    """A validated import waiting for confirmation.

    Attributes:
        collections: Records to install, per collection
        status: Verification status to show the user
        format: File generation that was recognized
    """

    collections: dict[CollectionKind, list[Record]]
    status: VerificationStatus
    format: ImportFormat

    @property
    def kinds(self) -> tuple[CollectionKind, ...]:
        return tuple(self.collections)

    @property
    def record_counts(self) -> dict[str, int]:
        return {kind.value: len(records) for kind, records in self.collections.items()}

    @property
    def record_count(self) -> int:
        return sum(len(records) for records in self.collections.values())

    @property
    def is_full_restore(self) -> bool:
        return len(self.collections) == len(CollectionKind)

    def describe(self) -> str:
        """One-line summary for a confirmation prompt."""
        counts = ", ".join(f"{count} {name}" for name, count in self.record_counts.items())
        trust = (
            "signed and verified"
            if self.status is VerificationStatus.SIGNED_VERIFIED
            else "legacy file, kind NOT verified"
        )
        return f"Replace {counts} ({trust})"


@dataclass(frozen=True)
class ImportResult:
    """Result of import_foreign().

    Attributes:
        success: Whether the collection was replaced and saved
        kind: Target collection
        records: Installed records (empty on failure)
        status: Verification status, if validation passed
        error: The typed error on failure
    """

    success: bool
    kind: CollectionKind
    records: list[Record] = field(default_factory=list)
    status: VerificationStatus | None = None
    error: SharedStoreError | None = None


class VersionedStore:
    """Atomic load/save of the client and movement collections.

    Attributes:
        shared_dir: Shared directory (None = not configured yet)
        config: Storage layout configuration

    Example:
        >>> store = VersionedStore(shared_dir, lease_guard=lambda: coordinator.is_held)
        >>> await store.load_all()
        >>> clients = store.records(CollectionKind.CLIENTS)
        >>> await store.save_collection(CollectionKind.CLIENTS, clients + [new_client])
    """

    def __init__(
        self,
        shared_dir: Path | None,
        config: StorageConfig | None = None,
        lease_guard: Callable[[], bool] | None = None,
    ) -> None:
        """Initialize the store.

        Args:
            shared_dir: Directory holding the collection files
            config: Storage layout configuration
            lease_guard: Returns True while writes are allowed; None disables the check
        """
        self.shared_dir = shared_dir
        self.config = config or StorageConfig()
        self._lease_guard = lease_guard
        self._collections: dict[CollectionKind, list[Record]] = {
            kind: [] for kind in CollectionKind
        }
        self._status: dict[CollectionKind, LoadStatus] = {
            kind: LoadStatus.NOT_LOADED for kind in CollectionKind
        }

    def path(self, kind: CollectionKind) -> Path | None:
        """Backing file of a collection."""
        if self.shared_dir is None:
            return None
        name = (
            self.config.clients_file_name
            if kind is CollectionKind.CLIENTS
            else self.config.movements_file_name
        )
        return self.shared_dir / name

    def records(self, kind: CollectionKind) -> list[Record]:
        """Current in-memory collection (a shallow copy)."""
        return list(self._collections[kind])

    def load_status(self, kind: CollectionKind) -> LoadStatus:
        return self._status[kind]

    async def load_collection(self, kind: CollectionKind) -> list[Record]:
        """Re-read a collection from disk and replace the in-memory copy.

        Never raises: missing and unreadable files yield an empty collection.

        Returns:
            The loaded records
        """
        path = self.path(kind)
        if path is None:
            self._install(kind, [], LoadStatus.MISSING)
            return []

        try:
            raw = await run_blocking(read_if_exists, path)
        except OSError as e:
            logger.error(f"Cannot read {path}: {e}", exc_info=True)
            self._install(kind, [], LoadStatus.UNREADABLE)
            return []

        if raw is None:
            self._install(kind, [], LoadStatus.MISSING)
            return []

        try:
            records, outcome = decode_collection(raw, kind)
        except CorruptStateError as e:
            logger.warning(
                f"Collection file is corrupt, starting empty: {e.message}",
                extra={"kind": kind.value, "path": str(path), "code": e.code},
            )
            self._install(kind, [], LoadStatus.CORRUPT)
            return []

        status = LoadStatus.SIGNED if outcome is DecodeOutcome.SIGNED else LoadStatus.LEGACY
        self._install(kind, records, status)
        logger.info(
            "Collection loaded",
            extra={"kind": kind.value, "record_count": len(records), "status": status.value},
        )
        return self.records(kind)

    async def load_all(self) -> dict[CollectionKind, list[Record]]:
        """Load both collections."""
        return {kind: await self.load_collection(kind) for kind in CollectionKind}

    async def save_collection(self, kind: CollectionKind, records: list[Record]) -> None:
        """Persist a collection as a signed envelope and adopt it in memory.

        Precondition: the caller holds the lease.

        Raises:
            LeaseNotHeldError: If a lease guard is wired and reports no lease
            ConfigurationError: If no shared directory is configured
            StorageIOError: If the write failed (the previous file is intact)
        """
        self._check_writable()
        records = list(records)
        await self._write_collection(kind, records)
        self._install(kind, records, LoadStatus.SIGNED)

    async def initialize(self) -> None:
        """Create the directory and empty envelopes for missing collection files."""
        self._check_writable()
        for kind in CollectionKind:
            path = self.path(kind)
            if not await run_blocking(path.exists):
                await self._write_collection(kind, [])
                self._install(kind, [], LoadStatus.SIGNED)
                logger.info(f"Initialized empty collection file {path}")

    async def propose_import(
        self,
        raw: bytes,
        kind: CollectionKind | None = None,
    ) -> ImportProposal:
        """Validate a foreign file without changing anything.

        Args:
            raw: File content (JSON document or backup archive)
            kind: Target collection, or None for a full restore of both

        Returns:
            ImportProposal to show the user before commit_import()

        Raises:
            ForeignImportError: With the specific rejection reason
        """
        if len(raw) > self.config.max_import_bytes:
            raise MalformedInputError(
                f"File is {len(raw)} bytes, "
                f"larger than the {self.config.max_import_bytes} byte limit"
            )

        if zipfile.is_zipfile(io.BytesIO(raw)):
            backup = read_backup_archive(raw, max_entry_bytes=self.config.max_import_bytes)
            if kind is None:
                collections = {k: backup.records(k) for k in CollectionKind}
            else:
                collections = {kind: backup.records(kind)}
            return ImportProposal(
                collections=collections, status=backup.status, format=ImportFormat.ARCHIVE
            )

        if kind is None:
            backup = validate_backup(raw)
            return ImportProposal(
                collections={k: backup.records(k) for k in CollectionKind},
                status=backup.status,
                format=backup.format,
            )

        candidate = validate_import(raw, kind)
        return ImportProposal(
            collections={kind: candidate.records},
            status=candidate.status,
            format=candidate.format,
        )

    async def commit_import(self, proposal: ImportProposal) -> None:
        """Install a confirmed proposal, replacing the affected collections.

        For a full restore both files are written before memory changes; if
        the second write fails the first file is put back.

        Raises:
            LeaseNotHeldError, ConfigurationError, StorageIOError
        """
        self._check_writable()
        previous = {kind: self.records(kind) for kind in proposal.kinds}
        written: list[CollectionKind] = []

        try:
            for kind, records in proposal.collections.items():
                await self._write_collection(kind, records)
                written.append(kind)
        except StorageIOError:
            for kind in written:
                try:
                    await self._write_collection(kind, previous[kind])
                except StorageIOError:
                    logger.error(f"Could not roll back {kind.value} after failed import")
            raise

        for kind, records in proposal.collections.items():
            self._install(kind, list(records), LoadStatus.SIGNED)
        logger.info(
            "Import committed",
            extra={
                "record_counts": proposal.record_counts,
                "status": proposal.status.value,
                "format": proposal.format.value,
            },
        )

    async def import_foreign(self, kind: CollectionKind, raw: bytes) -> ImportResult:
        """Validate and, if valid, install and save a foreign file in one step.

        Callers that need a human confirmation use propose_import() and
        commit_import() instead.

        Returns:
            ImportResult; state is unchanged unless success is True.
        """
        try:
            proposal = await self.propose_import(raw, kind)
        except ForeignImportError as e:
            logger.warning(
                f"Import rejected: {e.message}", extra={"code": e.code, "kind": kind.value}
            )
            return ImportResult(success=False, kind=kind, error=e)

        try:
            await self.commit_import(proposal)
        except SharedStoreError as e:
            return ImportResult(success=False, kind=kind, status=proposal.status, error=e)

        return ImportResult(
            success=True, kind=kind, records=self.records(kind), status=proposal.status
        )

    def export_snapshot(self) -> bytes:
        """Serialize both in-memory collections as a full-backup envelope.

        Read-only; needs no lease.
        """
        return encode_full_backup(
            self.records(CollectionKind.CLIENTS),
            self.records(CollectionKind.MOVEMENTS),
        )

    def _check_writable(self) -> None:
        if self._lease_guard is not None and not self._lease_guard():
            raise LeaseNotHeldError()
        if self.shared_dir is None:
            raise ConfigurationError("No shared directory configured")

    def _install(self, kind: CollectionKind, records: list[Record], status: LoadStatus) -> None:
        self._collections[kind] = records
        self._status[kind] = status

    async def _write_collection(self, kind: CollectionKind, records: list[Record]) -> None:
        path = self.path(kind)
        data = encode_collection(kind, records)
        keep_copy = self.config.keep_corrupt_copies and self._status[kind] in (
            LoadStatus.CORRUPT,
            LoadStatus.UNREADABLE,
        )
        try:
            await run_blocking(self._write_file, path, data, keep_copy)
        except OSError as e:
            logger.error(f"Failed to save {kind.value}: {e}", exc_info=True)
            raise StorageIOError(f"Failed to save {kind.value}: {e}", path=str(path)) from e
        logger.info("Collection saved", extra={"kind": kind.value, "record_count": len(records)})

    @staticmethod
    def _write_file(path: Path, data: bytes, keep_copy: bool) -> None:
        path.parent.mkdir(parents=True, exist_ok=True)
        if keep_copy:
            copy = preserve_copy(path, f".corrupt-{int(time.time() * 1000)}.bak")
            if copy is not None:
                logger.warning(f"Kept unreadable collection file as {copy}")
        write_atomic(path, data)
