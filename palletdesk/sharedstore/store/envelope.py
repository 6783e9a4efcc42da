"""
Snapshot codec: signed envelopes around record collections.

Every collection file is a self-describing document:

    {
      "signature": "EPAL_CLIENTS_V1",
      "savedAt": "2026-10-19T08:30:00+00:00",
      "data": [ {...}, {...} ]
    }

A full backup embeds both collections under one signature:

    {
      "signature": "EPAL_FULL_BACKUP_V1",
      "exportedAt": "2026-10-19T08:30:00+00:00",
      "data": {"clients": [...], "movements": [...]}
    }

Files written before signatures existed are bare JSON arrays (one
collection) or {"clients": [...], "movements": [...]} objects (backups).
Records are opaque JSON objects; their schema belongs to the application.

Invariants:
    - Signature tokens are never reused for a different shape
    - Writers always produce signed envelopes
    - Readers keep accepting the legacy bare array

How to change safely:
    - A new envelope generation gets a new token (..._V2); keep decoding _V1
    - Add envelope fields as optional
"""

from __future__ import annotations

import json
import logging
from datetime import datetime, timezone
from enum import Enum
from typing import Any, Literal

from pydantic import BaseModel, ConfigDict, Field, TypeAdapter, ValidationError

from ..errors import CorruptStateError

logger = logging.getLogger(__name__)

Record = dict[str, Any]


class CollectionKind(str, Enum):
    """The two logical collections of the store."""

    CLIENTS = "clients"
    MOVEMENTS = "movements"

    @property
    def signature(self) -> str:
        return SIGNATURES[self]

    @property
    def other(self) -> CollectionKind:
        if self is CollectionKind.CLIENTS:
            return CollectionKind.MOVEMENTS
        return CollectionKind.CLIENTS


SIGNATURES: dict[CollectionKind, str] = {
    CollectionKind.CLIENTS: "EPAL_CLIENTS_V1",
    CollectionKind.MOVEMENTS: "EPAL_MOVEMENTS_V1",
}
FULL_BACKUP_SIGNATURE = "EPAL_FULL_BACKUP_V1"

# Fields that only appear in records of one kind.
DISCRIMINATOR_FIELDS: dict[CollectionKind, frozenset[str]] = {
    CollectionKind.CLIENTS: frozenset({"code", "vatNumber", "address", "contact", "email"}),
    CollectionKind.MOVEMENTS: frozenset(
        {"clientId", "palletsGood", "palletsShipping", "palletsExchange", "palletsReturned"}
    ),
}


class SignedEnvelope(BaseModel):
    """Single-collection envelope."""

    model_config = ConfigDict(populate_by_name=True)

    signature: str
    saved_at: str | None = Field(default=None, alias="savedAt")
    data: list[Record]


class BackupData(BaseModel):
    clients: list[Record]
    movements: list[Record]


class FullBackupEnvelope(BaseModel):
    """Both collections under the full-backup signature."""

    model_config = ConfigDict(populate_by_name=True)

    signature: Literal["EPAL_FULL_BACKUP_V1"]
    exported_at: str | None = Field(default=None, alias="exportedAt")
    data: BackupData


class LegacyBackup(BaseModel):
    """Unsigned backup object from the first application generation."""

    clients: list[Record] | None = None
    movements: list[Record] | None = None

    def collection(self, kind: CollectionKind) -> list[Record] | None:
        return self.clients if kind is CollectionKind.CLIENTS else self.movements


LegacyArray = TypeAdapter(list[Record])


def utc_timestamp() -> str:
    return datetime.now(timezone.utc).isoformat(timespec="seconds")


def _dump(document: dict[str, Any]) -> bytes:
    return json.dumps(document, indent=2, ensure_ascii=False).encode("utf-8")


def encode_collection(kind: CollectionKind, records: list[Record]) -> bytes:
    """Serialize a collection as a signed envelope."""
    envelope = SignedEnvelope(signature=kind.signature, saved_at=utc_timestamp(), data=records)
    return _dump(envelope.model_dump(by_alias=True))


def encode_full_backup(
    clients: list[Record],
    movements: list[Record],
    exported_at: str | None = None,
) -> bytes:
    """Serialize both collections as a full-backup envelope."""
    envelope = FullBackupEnvelope(
        signature=FULL_BACKUP_SIGNATURE,
        exported_at=exported_at or utc_timestamp(),
        data=BackupData(clients=clients, movements=movements),
    )
    return _dump(envelope.model_dump(by_alias=True))


def load_json(raw: bytes) -> Any:
    """Decode UTF-8 JSON bytes, tolerating a byte-order mark.

    Raises:
        ValueError: If the bytes are not UTF-8 JSON, or nest too deeply.
    """
    try:
        return json.loads(raw.decode("utf-8-sig"))
    except RecursionError as e:
        raise ValueError("JSON document is nested too deeply") from e


class DecodeOutcome(Enum):
    SIGNED = "signed"
    LEGACY = "legacy"


def decode_collection(raw: bytes, kind: CollectionKind) -> tuple[list[Record], DecodeOutcome]:
    """Parse a collection file written by this or an older generation.

    Args:
        raw: File content
        kind: Collection the file is expected to hold

    Returns:
        Tuple of (records, outcome)

    Raises:
        CorruptStateError: If the content is neither a matching signed
            envelope nor a legacy bare array.
    """
    try:
        document = load_json(raw)
    except ValueError as e:
        raise CorruptStateError(f"Not valid JSON: {e}") from e

    if isinstance(document, dict) and "signature" in document:
        try:
            envelope = SignedEnvelope.model_validate(document)
        except ValidationError as e:
            raise CorruptStateError(f"Invalid signed envelope: {e.error_count()} errors") from e
        if envelope.signature != kind.signature:
            raise CorruptStateError(
                f"Envelope signature '{envelope.signature}' does not match '{kind.signature}'"
            )
        return envelope.data, DecodeOutcome.SIGNED

    try:
        return LegacyArray.validate_python(document), DecodeOutcome.LEGACY
    except ValidationError as e:
        raise CorruptStateError(
            f"Not a signed envelope or legacy array: {e.error_count()} errors"
        ) from e
