"""
Combined backup archive for both collections.

Archive layout (ZIP, deflated):

    clients.json      signed envelope, EPAL_CLIENTS_V1
    movements.json    signed envelope, EPAL_MOVEMENTS_V1
    manifest.json     {"signature": "EPAL_FULL_BACKUP_V1",
                       "exportedAt": "...",
                       "entries": {"clients.json": {"kind": "clients",
                                                    "records": 12,
                                                    "checksum": "sha256:..."}, ...}}

The manifest is written last, so an archive without one was interrupted.
On restore, checksums are verified before any entry is parsed, and each
entry then goes through the regular import validation for its kind.

Invariants:
    - Only complete archives (manifest present, checksums match) restore
    - Entries are validated exactly like standalone import files
"""

from __future__ import annotations

import hashlib
import io
import json
import logging
import zipfile
import zlib
from datetime import date
from pathlib import Path
from typing import TYPE_CHECKING, Any

from ..errors import MalformedInputError, SignatureMismatchError, UnrecognizedFormatError
from ..fsio import run_blocking, write_atomic
from .envelope import (
    FULL_BACKUP_SIGNATURE,
    CollectionKind,
    encode_collection,
    load_json,
    utc_timestamp,
)
from .validator import BackupCandidate, ImportFormat, VerificationStatus, validate_import

if TYPE_CHECKING:
    from .versioned_store import VersionedStore

logger = logging.getLogger(__name__)

MANIFEST_NAME = "manifest.json"
ENTRY_NAMES: dict[CollectionKind, str] = {
    CollectionKind.CLIENTS: "clients.json",
    CollectionKind.MOVEMENTS: "movements.json",
}
# zipfile failures on damaged or unreadable members.
_ARCHIVE_ERRORS = (zipfile.BadZipFile, zlib.error, EOFError, RuntimeError, NotImplementedError)


def default_archive_name(day: date | None = None) -> str:
    """File name for a backup taken on the given day."""
    return f"epal_backup_{(day or date.today()).isoformat()}.zip"


def _checksum(data: bytes) -> str:
    return f"sha256:{hashlib.sha256(data).hexdigest()}"


def build_backup_archive(collections: dict[CollectionKind, list[dict[str, Any]]]) -> bytes:
    """Build archive bytes from both collections."""
    entries: dict[str, dict[str, Any]] = {}
    buffer = io.BytesIO()
    with zipfile.ZipFile(buffer, "w", compression=zipfile.ZIP_DEFLATED) as archive:
        for kind in CollectionKind:
            records = collections.get(kind, [])
            data = encode_collection(kind, records)
            archive.writestr(ENTRY_NAMES[kind], data)
            entries[ENTRY_NAMES[kind]] = {
                "kind": kind.value,
                "records": len(records),
                "checksum": _checksum(data),
            }

        manifest = {
            "signature": FULL_BACKUP_SIGNATURE,
            "exportedAt": utc_timestamp(),
            "entries": entries,
        }
        archive.writestr(MANIFEST_NAME, json.dumps(manifest, indent=2))
    return buffer.getvalue()


async def write_backup_archive(store: VersionedStore, dest: Path) -> Path:
    """Write the store's in-memory collections as a backup archive.

    Args:
        store: Store to export (read-only, no lease needed)
        dest: Target file, or a directory to place a dated archive in

    Returns:
        Path of the written archive
    """
    if dest.is_dir():
        dest = dest / default_archive_name()
    data = build_backup_archive({kind: store.records(kind) for kind in CollectionKind})
    await run_blocking(write_atomic, dest, data)
    logger.info("Backup archive written", extra={"path": str(dest), "size_bytes": len(data)})
    return dest


def read_backup_archive(raw: bytes, max_entry_bytes: int = 50 * 1024 * 1024) -> BackupCandidate:
    """Verify and extract a backup archive.

    Raises:
        MalformedInputError: Not a readable ZIP, or checksum mismatch
        UnrecognizedFormatError: Manifest or entry missing
        SignatureMismatchError: Manifest or entry signed for something else
        CrossKindContaminationError: Unsigned entry holding the other kind
    """
    try:
        archive = zipfile.ZipFile(io.BytesIO(raw))
    except _ARCHIVE_ERRORS as e:
        raise MalformedInputError(f"Backup archive is not a readable ZIP file: {e}") from e

    with archive:
        names = set(archive.namelist())
        if MANIFEST_NAME not in names:
            raise UnrecognizedFormatError("Archive has no manifest; it is incomplete or foreign")

        try:
            manifest_raw = archive.read(MANIFEST_NAME)
        except _ARCHIVE_ERRORS as e:
            raise MalformedInputError(f"Archive manifest is damaged: {e}") from e
        try:
            manifest = load_json(manifest_raw)
            signature = manifest.get("signature")
            entries = manifest["entries"]
        except (ValueError, KeyError, AttributeError) as e:
            raise UnrecognizedFormatError(f"Archive manifest is invalid: {e}") from e
        if signature != FULL_BACKUP_SIGNATURE:
            raise SignatureMismatchError(FULL_BACKUP_SIGNATURE, str(signature))
        if not isinstance(entries, dict):
            raise UnrecognizedFormatError("Archive manifest has no entry table")

        collections: dict[CollectionKind, list[dict[str, Any]]] = {}
        statuses: list[VerificationStatus] = []
        for kind, name in ENTRY_NAMES.items():
            if name not in names or name not in entries:
                raise UnrecognizedFormatError(f"Archive is missing '{name}'")
            if archive.getinfo(name).file_size > max_entry_bytes:
                raise MalformedInputError(f"Archive entry '{name}' is too large")

            entry = entries[name]
            if not isinstance(entry, dict):
                raise UnrecognizedFormatError(f"Archive manifest entry for '{name}' is invalid")

            try:
                data = archive.read(name)
            except _ARCHIVE_ERRORS as e:
                raise MalformedInputError(f"Archive entry '{name}' is damaged: {e}") from e
            if _checksum(data) != entry.get("checksum"):
                raise MalformedInputError(f"Checksum mismatch for '{name}'; archive is damaged")

            candidate = validate_import(data, kind)
            collections[kind] = candidate.records
            statuses.append(candidate.status)

    status = (
        VerificationStatus.SIGNED_VERIFIED
        if all(s is VerificationStatus.SIGNED_VERIFIED for s in statuses)
        else VerificationStatus.LEGACY_UNVERIFIED
    )
    return BackupCandidate(
        clients=collections[CollectionKind.CLIENTS],
        movements=collections[CollectionKind.MOVEMENTS],
        status=status,
        format=ImportFormat.ARCHIVE,
    )
