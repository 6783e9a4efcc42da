"""
Import validation for foreign files.

An accepted import replaces a whole collection, so a wrong file is
destructive. Validation therefore fails closed: anything that could be the
wrong artifact is rejected with a specific reason.

The document is decoded by an ordered chain of parsers, each of which
either recognizes its shape or declines:

    1. Full-backup envelope   {"signature": FULL, "data": {...}}
    2. Signed envelope        {"signature": ..., "data": [...]}
    3. Legacy bare array      [...]
    4. Legacy named object    {"clients": [...], "movements": [...]}

Signed shapes are checked against the requested kind (SignatureMismatch is
fatal, no confirmation can override it). Unsigned shapes go through
discriminator sniffing: a record carrying fields unique to the other kind
is CrossKindContamination. Unsigned files that pass are returned as
LEGACY_UNVERIFIED so the caller can warn before committing.

Invariants:
    - Validation is pure: bytes in, candidate or typed error out
    - No partial acceptance; one bad record rejects the file
    - A signed file is never sniffed into a different kind
"""

from __future__ import annotations

import logging
from dataclasses import dataclass
from enum import Enum
from typing import Any, Callable, Mapping

from pydantic import ValidationError

from ..errors import (
    CrossKindContaminationError,
    MalformedInputError,
    SignatureMismatchError,
    UnrecognizedFormatError,
)
from .envelope import (
    DISCRIMINATOR_FIELDS,
    FULL_BACKUP_SIGNATURE,
    CollectionKind,
    FullBackupEnvelope,
    LegacyArray,
    LegacyBackup,
    Record,
    SignedEnvelope,
    load_json,
)

logger = logging.getLogger(__name__)


class ImportFormat(Enum):
    """Recognized file generations."""

    FULL_BACKUP = "full_backup"
    SIGNED_COLLECTION = "signed_collection"
    LEGACY_ARRAY = "legacy_array"
    LEGACY_OBJECT = "legacy_object"
    ARCHIVE = "archive"


class VerificationStatus(Enum):
    """How much the caller can trust the candidate's kind."""

    SIGNED_VERIFIED = "signed-verified"
    LEGACY_UNVERIFIED = "legacy-unverified"


@dataclass(frozen=True)
class ImportCandidate:
    """Records extracted from a foreign file for one collection.

    Attributes:
        kind: Collection the records are destined for
        records: Extracted records, in file order
        status: Verification status
        format: File generation that was recognized
    """

    kind: CollectionKind
    records: list[Record]
    status: VerificationStatus
    format: ImportFormat


@dataclass(frozen=True)
class BackupCandidate:
    """Both collections extracted from a full backup.

    Attributes:
        clients: Client records
        movements: Movement records
        status: Verification status
        format: File generation that was recognized
    """

    clients: list[Record]
    movements: list[Record]
    status: VerificationStatus
    format: ImportFormat

    def records(self, kind: CollectionKind) -> list[Record]:
        return self.clients if kind is CollectionKind.CLIENTS else self.movements


@dataclass(frozen=True)
class _Shape:
    """A parser's view of the document."""

    format: ImportFormat
    signature: str | None
    collections: Mapping[CollectionKind, list[Record] | None]


def _parse_full_backup(document: Any) -> _Shape | None:
    if not isinstance(document, dict) or document.get("signature") != FULL_BACKUP_SIGNATURE:
        return None
    try:
        envelope = FullBackupEnvelope.model_validate(document)
    except ValidationError as e:
        raise UnrecognizedFormatError(
            f"Full backup envelope is structurally invalid ({e.error_count()} errors)"
        ) from e
    return _Shape(
        format=ImportFormat.FULL_BACKUP,
        signature=envelope.signature,
        collections={
            CollectionKind.CLIENTS: envelope.data.clients,
            CollectionKind.MOVEMENTS: envelope.data.movements,
        },
    )


def _parse_signed_envelope(document: Any) -> _Shape | None:
    if not isinstance(document, dict) or "signature" not in document:
        return None
    try:
        envelope = SignedEnvelope.model_validate(document)
    except ValidationError as e:
        raise UnrecognizedFormatError(
            f"Signed envelope is structurally invalid ({e.error_count()} errors)"
        ) from e
    return _Shape(
        format=ImportFormat.SIGNED_COLLECTION,
        signature=envelope.signature,
        collections={
            kind: envelope.data for kind in CollectionKind if kind.signature == envelope.signature
        },
    )


def _parse_legacy_array(document: Any) -> _Shape | None:
    if not isinstance(document, list):
        return None
    try:
        records = LegacyArray.validate_python(document)
    except ValidationError as e:
        raise UnrecognizedFormatError("Array contains entries that are not records") from e
    # The kind of a bare array is only known through sniffing.
    return _Shape(
        format=ImportFormat.LEGACY_ARRAY,
        signature=None,
        collections={kind: records for kind in CollectionKind},
    )


def _parse_legacy_object(document: Any) -> _Shape | None:
    if not isinstance(document, dict) or not ({"clients", "movements"} & document.keys()):
        return None
    try:
        legacy = LegacyBackup.model_validate(document)
    except ValidationError as e:
        raise UnrecognizedFormatError(
            f"Legacy backup object is structurally invalid ({e.error_count()} errors)"
        ) from e
    return _Shape(
        format=ImportFormat.LEGACY_OBJECT,
        signature=None,
        collections={kind: legacy.collection(kind) for kind in CollectionKind},
    )


_PARSERS: tuple[Callable[[Any], _Shape | None], ...] = (
    _parse_full_backup,
    _parse_signed_envelope,
    _parse_legacy_array,
    _parse_legacy_object,
)


def _decode(raw: bytes) -> Any:
    try:
        return load_json(raw)
    except (ValueError, RecursionError) as e:
        raise MalformedInputError(f"File is not valid JSON: {e}") from e


def classify(raw: bytes) -> _Shape:
    """Run the parser chain over raw bytes.

    Raises:
        MalformedInputError: If the bytes are not JSON
        UnrecognizedFormatError: If no parser recognizes the document
    """
    document = _decode(raw)
    for parser in _PARSERS:
        shape = parser(document)
        if shape is not None:
            return shape
    raise UnrecognizedFormatError(
        f"Unrecognized file format (top-level {type(document).__name__})"
    )


def sniff_records(
    records: list[Record],
    kind: CollectionKind,
    discriminators: Mapping[CollectionKind, frozenset[str]] = DISCRIMINATOR_FIELDS,
) -> None:
    """Reject unsigned records that carry fields of the other kind.

    Every record is inspected. Records with fields of the requested kind,
    or with no distinguishing fields at all, pass.

    Raises:
        CrossKindContaminationError: On the first record with foreign fields
    """
    foreign = discriminators[kind.other]
    for index, record in enumerate(records):
        found = sorted(foreign & record.keys())
        if found:
            raise CrossKindContaminationError(kind.value, found, index)


def validate_import(
    raw: bytes,
    kind: CollectionKind,
    discriminators: Mapping[CollectionKind, frozenset[str]] = DISCRIMINATOR_FIELDS,
) -> ImportCandidate:
    """Validate a foreign file for import into one collection.

    Args:
        raw: File content
        kind: Target collection
        discriminators: Kind-unique field names used for sniffing

    Returns:
        ImportCandidate with the extracted records

    Raises:
        MalformedInputError, UnrecognizedFormatError, SignatureMismatchError,
        CrossKindContaminationError
    """
    shape = classify(raw)

    if shape.signature is not None:
        if shape.signature not in (kind.signature, FULL_BACKUP_SIGNATURE):
            raise SignatureMismatchError(kind.signature, shape.signature)
        records = shape.collections[kind]
        status = VerificationStatus.SIGNED_VERIFIED
    else:
        records = shape.collections[kind]
        if records is None:
            if shape.collections[kind.other] is None:
                raise UnrecognizedFormatError(
                    "Backup object holds neither collection as a list of records"
                )
            # Legacy object naming only the other collection.
            raise CrossKindContaminationError(kind.value, [kind.other.value])
        sniff_records(records, kind, discriminators)
        status = VerificationStatus.LEGACY_UNVERIFIED

    logger.info(
        "Import file validated",
        extra={
            "kind": kind.value,
            "format": shape.format.value,
            "status": status.value,
            "record_count": len(records),
        },
    )
    return ImportCandidate(kind=kind, records=records, status=status, format=shape.format)


def validate_backup(
    raw: bytes,
    discriminators: Mapping[CollectionKind, frozenset[str]] = DISCRIMINATOR_FIELDS,
) -> BackupCandidate:
    """Validate a foreign file for a full restore of both collections.

    Only a full-backup envelope or a legacy object naming both collections
    qualifies.

    Raises:
        MalformedInputError, UnrecognizedFormatError, SignatureMismatchError,
        CrossKindContaminationError
    """
    shape = classify(raw)

    if shape.signature is not None:
        if shape.signature != FULL_BACKUP_SIGNATURE:
            raise SignatureMismatchError(FULL_BACKUP_SIGNATURE, shape.signature)
        status = VerificationStatus.SIGNED_VERIFIED
    elif shape.format is ImportFormat.LEGACY_OBJECT:
        for kind in CollectionKind:
            records = shape.collections[kind]
            if records is None:
                raise UnrecognizedFormatError(
                    f"Backup object has no '{kind.value}' collection; import it per collection"
                )
            sniff_records(records, kind, discriminators)
        status = VerificationStatus.LEGACY_UNVERIFIED
    else:
        raise UnrecognizedFormatError(
            "A bare array holds a single collection; import it per collection"
        )

    return BackupCandidate(
        clients=shape.collections[CollectionKind.CLIENTS],
        movements=shape.collections[CollectionKind.MOVEMENTS],
        status=status,
        format=shape.format,
    )
