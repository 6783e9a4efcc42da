"""
Error types for the shared store.

This module defines the exception hierarchy used across the package:
- SharedStoreError: Base exception
- ConfigurationError: No usable shared directory
- StorageIOError: Transient filesystem failure
- LeaseConflictError / LeaseNotHeldError: Lease violations
- CorruptStateError: Unreadable collection file
- ForeignImportError and subclasses: Rejected import files

Invariants:
    - All errors inherit from SharedStoreError
    - Every error carries a stable code for programmatic handling
    - Import errors name the exact reason, never a generic failure
"""

from __future__ import annotations

from typing import Any, Dict, Optional


class SharedStoreError(Exception):
    """Base exception for all shared store errors.

    Attributes:
        message: Error message
        code: Error code for programmatic handling
        details: Additional error context
    """

    def __init__(
        self,
        message: str,
        code: Optional[str] = None,
        details: Optional[Dict[str, Any]] = None,
    ) -> None:
        super().__init__(message)
        self.message = message
        self.code = code or "SHARED_STORE_ERROR"
        self.details = details or {}


class ConfigurationError(SharedStoreError):
    """No shared directory is configured, or it cannot be used."""

    def __init__(self, message: str, path: Optional[str] = None) -> None:
        super().__init__(message, code="CONFIGURATION_ERROR", details={"path": path})
        self.path = path


class StorageIOError(SharedStoreError):
    """Filesystem operation failed.

    Usually transient on network shares; callers should offer a retry.
    """

    def __init__(self, message: str, path: Optional[str] = None) -> None:
        super().__init__(message, code="IO_ERROR", details={"path": path})
        self.path = path


class LeaseNotHeldError(SharedStoreError):
    """A write was attempted without holding the lease."""

    def __init__(
        self,
        message: str = "Lease is not held; refusing to write",
        code: str = "LEASE_NOT_HELD",
        details: Optional[Dict[str, Any]] = None,
    ) -> None:
        super().__init__(message, code=code, details=details)


class LeaseConflictError(LeaseNotHeldError):
    """Another instance holds a fresh lease.

    Raised when writing after the lease was lost to another instance.
    Recoverable through retry or a human-confirmed forced takeover.
    """

    def __init__(self, holder: str, host: str, age_seconds: float) -> None:
        super().__init__(
            f"Shared store is in use by '{holder}' on '{host}' "
            f"(last seen {age_seconds:.0f}s ago)",
            code="LEASE_CONFLICT",
            details={"holder": holder, "host": host, "age_seconds": age_seconds},
        )
        self.holder = holder
        self.host = host
        self.age_seconds = age_seconds


class CorruptStateError(SharedStoreError):
    """A collection file could not be parsed; loading treats it as empty."""

    def __init__(self, message: str, path: Optional[str] = None) -> None:
        super().__init__(message, code="CORRUPT_STATE", details={"path": path})
        self.path = path


class ForeignImportError(SharedStoreError):
    """Base class for rejected import files.

    All import errors are fatal to the import: nothing is merged.
    """


class MalformedInputError(ForeignImportError):
    """The file is not decodable JSON."""

    def __init__(self, message: str) -> None:
        super().__init__(message, code="MALFORMED_INPUT")


class UnrecognizedFormatError(ForeignImportError):
    """The document matches none of the known file generations."""

    def __init__(self, message: str) -> None:
        super().__init__(message, code="UNRECOGNIZED_FORMAT")


class SignatureMismatchError(ForeignImportError):
    """The file is signed for a different collection."""

    def __init__(self, expected: str, actual: str) -> None:
        super().__init__(
            f"File signature '{actual}' does not match the requested '{expected}'",
            code="SIGNATURE_MISMATCH",
            details={"expected": expected, "actual": actual},
        )
        self.expected = expected
        self.actual = actual


class CrossKindContaminationError(ForeignImportError):
    """An unsigned file contains records of the other collection kind."""

    def __init__(self, requested: str, found_fields: list[str], index: int = 0) -> None:
        super().__init__(
            f"Record {index} looks like another kind of data than '{requested}' "
            f"(fields: {', '.join(found_fields)})",
            code="CROSS_KIND_CONTAMINATION",
            details={"requested": requested, "found_fields": found_fields, "index": index},
        )
        self.requested = requested
        self.found_fields = found_fields
        self.index = index
