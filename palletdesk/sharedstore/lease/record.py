"""
Lease record and lease file codec.

The lease file (lock.json by default) is the sole source of truth about who
may write the shared directory. It holds a single record:

    {
      "holder": "Alice",
      "host": "PC1",
      "lastRenewedAt": 1760000000000
    }

lastRenewedAt is wall-clock epoch milliseconds, because instances on
different machines must compare it against their own clocks.

Invariants:
    - At most one record lives in the file
    - Unparseable content decodes to None (treated as absent by callers)
    - Writes are atomic (temp file + replace)

How to change safely:
    - Keep accepting older key spellings when renaming fields
    - Never add fields that older instances would need to understand
"""

from __future__ import annotations

import json
import logging
from pathlib import Path

from pydantic import AliasChoices, BaseModel, ConfigDict, Field, ValidationError

from ..fsio import read_if_exists, unlink_if_exists, write_atomic

logger = logging.getLogger(__name__)


class LeaseRecord(BaseModel):
    """Current claim on the shared store.

    Attributes:
        holder: Operator name supplied by the user (not unique)
        host: Machine identifier, distinguishes two operators sharing a name
        last_renewed_at_ms: Epoch milliseconds of the last successful write
    """

    model_config = ConfigDict(frozen=True)

    # The first application generation wrote operator/machine/lastHeartbeat.
    holder: str = Field(validation_alias=AliasChoices("holder", "operator"))
    host: str = Field(validation_alias=AliasChoices("host", "machine"))
    last_renewed_at_ms: int = Field(
        validation_alias=AliasChoices("lastRenewedAt", "lastHeartbeat", "last_renewed_at_ms"),
        serialization_alias="lastRenewedAt",
    )

    def identifies(self, holder: str, host: str) -> bool:
        """True if this record belongs to the given holder on the given host."""
        return self.holder == holder and self.host == host

    def age_seconds(self, now_ms: int) -> float:
        """Seconds since the last renewal (never negative)."""
        return max(0, now_ms - self.last_renewed_at_ms) / 1000

    def is_stale(self, now_ms: int, stale_after_seconds: float) -> bool:
        """True if the holder has not renewed within the staleness threshold."""
        return (now_ms - self.last_renewed_at_ms) > stale_after_seconds * 1000

    def renewed(self, now_ms: int) -> LeaseRecord:
        """Copy of this record with a refreshed timestamp."""
        return self.model_copy(update={"last_renewed_at_ms": now_ms})


def encode_lease(record: LeaseRecord) -> bytes:
    """Serialize a lease record to file content."""
    return json.dumps(record.model_dump(by_alias=True), indent=2).encode("utf-8")


def decode_lease(raw: bytes) -> LeaseRecord | None:
    """Parse lease file content.

    Returns:
        The record, or None if the content is not a valid lease record.
    """
    try:
        return LeaseRecord.model_validate_json(raw)
    except ValidationError as e:
        logger.warning(f"Lease file content is not a valid lease record: {e.error_count()} errors")
        return None


class LeaseFile:
    """Reads and writes the lease record at a well-known path.

    All methods are blocking and may raise OSError; the coordinator runs
    them in an executor and turns failures into outcomes.

    Attributes:
        path: Absolute path of the lease file
    """

    def __init__(self, path: Path) -> None:
        self.path = path

    def read(self) -> tuple[bool, LeaseRecord | None]:
        """Read the lease file.

        Returns:
            Tuple of (file_exists, record). A file that exists but cannot be
            parsed yields (True, None).
        """
        raw = read_if_exists(self.path)
        if raw is None:
            return False, None
        return True, decode_lease(raw)

    def write(self, record: LeaseRecord) -> None:
        """Atomically replace the lease file with record."""
        write_atomic(self.path, encode_lease(record))

    def delete(self) -> bool:
        """Remove the lease file; False if it was already gone."""
        return unlink_if_exists(self.path)
