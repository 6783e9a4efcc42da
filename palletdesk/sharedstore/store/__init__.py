"""
Store module - the two record collections and their on-disk formats.

This module handles:
- Signed envelope encoding and decoding of collection files
- Validation of foreign import files (format, signature, kind sniffing)
- Atomic load/save of the client and movement collections
- Combined backup archives for full export and restore

Invariants:
    - Collections are replaced wholesale, never merged
    - A rejected import changes nothing, in memory or on disk
    - Readers keep accepting every file generation ever written
"""

from .backup import (
    build_backup_archive,
    default_archive_name,
    read_backup_archive,
    write_backup_archive,
)
from .envelope import (
    DISCRIMINATOR_FIELDS,
    FULL_BACKUP_SIGNATURE,
    SIGNATURES,
    CollectionKind,
    DecodeOutcome,
    Record,
    decode_collection,
    encode_collection,
    encode_full_backup,
)
from .validator import (
    BackupCandidate,
    ImportCandidate,
    ImportFormat,
    VerificationStatus,
    sniff_records,
    validate_backup,
    validate_import,
)
from .versioned_store import ImportProposal, ImportResult, LoadStatus, VersionedStore

__all__ = [
    "VersionedStore",
    "LoadStatus",
    "ImportProposal",
    "ImportResult",
    "CollectionKind",
    "Record",
    "SIGNATURES",
    "FULL_BACKUP_SIGNATURE",
    "DISCRIMINATOR_FIELDS",
    "DecodeOutcome",
    "encode_collection",
    "encode_full_backup",
    "decode_collection",
    "ImportFormat",
    "VerificationStatus",
    "ImportCandidate",
    "BackupCandidate",
    "validate_import",
    "validate_backup",
    "sniff_records",
    "build_backup_archive",
    "write_backup_archive",
    "read_backup_archive",
    "default_archive_name",
]
