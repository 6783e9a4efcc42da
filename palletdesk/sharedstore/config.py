"""
Configuration management for the shared store.

Configuration comes from environment variables with sensible defaults, and
is then threaded explicitly through constructors. There is no process-wide
mutable setting for the shared directory: switching directories means
building a new config with with_shared_dir() and new components from it.

Invariants:
    - All settings have defaults that work for a single local instance
    - The staleness threshold is always larger than the heartbeat interval
    - An absent shared directory means "not configured yet", not an error

How to change safely:
    - Add new settings with defaults that keep existing folders readable
    - File names are part of the on-disk contract shared by older instances
"""

from __future__ import annotations

import dataclasses
import logging
import os
from dataclasses import dataclass, field
from pathlib import Path

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class LeaseConfig:
    """Lease timing configuration.

    Attributes:
        heartbeat_interval_seconds: Interval between lease renewals
        stale_after_seconds: Age after which a lease counts as abandoned
        lock_file_name: Lease file name inside the shared directory
    """

    heartbeat_interval_seconds: float = 10.0
    stale_after_seconds: float = 60.0
    lock_file_name: str = "lock.json"

    @classmethod
    def from_env(cls) -> LeaseConfig:
        """Load configuration from environment variables."""
        return cls(
            heartbeat_interval_seconds=float(os.getenv("LEASE_HEARTBEAT_SECONDS", "10")),
            stale_after_seconds=float(os.getenv("LEASE_STALE_SECONDS", "60")),
            lock_file_name=os.getenv("LEASE_FILE_NAME", "lock.json"),
        )


@dataclass(frozen=True)
class StorageConfig:
    """Shared directory layout.

    Attributes:
        shared_dir: Absolute path of the shared directory (None = not configured)
        clients_file_name: Client collection file
        movements_file_name: Movement collection file
        activity_log_file_name: Append-only activity journal
        max_import_bytes: Largest foreign file accepted for import
        keep_corrupt_copies: Copy unreadable collection files aside before overwriting
    """

    shared_dir: str | None = None
    clients_file_name: str = "clients.json"
    movements_file_name: str = "movements.json"
    activity_log_file_name: str = "activity_log.txt"
    max_import_bytes: int = 50 * 1024 * 1024  # 50MB
    keep_corrupt_copies: bool = True

    @classmethod
    def from_env(cls) -> StorageConfig:
        """Load configuration from environment variables."""
        return cls(
            shared_dir=os.getenv("SHARED_DIR") or None,
            clients_file_name=os.getenv("CLIENTS_FILE_NAME", "clients.json"),
            movements_file_name=os.getenv("MOVEMENTS_FILE_NAME", "movements.json"),
            activity_log_file_name=os.getenv("ACTIVITY_LOG_FILE_NAME", "activity_log.txt"),
            max_import_bytes=int(os.getenv("MAX_IMPORT_BYTES", str(50 * 1024 * 1024))),
            keep_corrupt_copies=os.getenv("KEEP_CORRUPT_COPIES", "true").lower() == "true",
        )

    @property
    def shared_path(self) -> Path | None:
        """Shared directory as a Path, or None when not configured."""
        return Path(self.shared_dir) if self.shared_dir else None


@dataclass(frozen=True)
class ObservabilityConfig:
    """Logging configuration.

    Attributes:
        log_level: Logging level (DEBUG, INFO, WARNING, ERROR)
        log_format: Log format (json, text)
    """

    log_level: str = "INFO"
    log_format: str = "text"

    @classmethod
    def from_env(cls) -> ObservabilityConfig:
        """Load configuration from environment variables."""
        return cls(
            log_level=os.getenv("LOG_LEVEL", "INFO"),
            log_format=os.getenv("LOG_FORMAT", "text"),
        )


@dataclass(frozen=True)
class SharedStoreConfig:
    """Complete configuration.

    Attributes:
        lease: Lease timing configuration
        storage: Shared directory layout
        observability: Logging configuration
    """

    lease: LeaseConfig = field(default_factory=LeaseConfig)
    storage: StorageConfig = field(default_factory=StorageConfig)
    observability: ObservabilityConfig = field(default_factory=ObservabilityConfig)

    @classmethod
    def from_env(cls) -> SharedStoreConfig:
        """Load complete configuration from environment variables.

        Raises:
            ValueError: If configuration is invalid.
        """
        config = cls(
            lease=LeaseConfig.from_env(),
            storage=StorageConfig.from_env(),
            observability=ObservabilityConfig.from_env(),
        )
        config.validate()
        return config

    def with_shared_dir(self, path: str | os.PathLike[str] | None) -> SharedStoreConfig:
        """Return a copy pointing at another shared directory.

        The path is resolved to an absolute path; None clears the setting.
        """
        resolved = str(Path(path).expanduser().resolve()) if path else None
        return dataclasses.replace(
            self, storage=dataclasses.replace(self.storage, shared_dir=resolved)
        )

    def validate(self) -> None:
        """Validate configuration consistency.

        Raises:
            ValueError: If configuration is invalid.
        """
        if self.lease.heartbeat_interval_seconds <= 0:
            raise ValueError("LEASE_HEARTBEAT_SECONDS must be positive")
        if self.lease.stale_after_seconds <= self.lease.heartbeat_interval_seconds:
            raise ValueError("LEASE_STALE_SECONDS must be greater than LEASE_HEARTBEAT_SECONDS")
        if self.lease.stale_after_seconds < 3 * self.lease.heartbeat_interval_seconds:
            logger.warning(
                "Staleness threshold is less than 3 heartbeats; "
                "slow network shares may cause false lease conflicts",
                extra={
                    "heartbeat_interval_seconds": self.lease.heartbeat_interval_seconds,
                    "stale_after_seconds": self.lease.stale_after_seconds,
                },
            )
        if self.storage.max_import_bytes <= 0:
            raise ValueError("MAX_IMPORT_BYTES must be positive")
        if self.observability.log_format not in ("json", "text"):
            raise ValueError(
                f"Invalid LOG_FORMAT '{self.observability.log_format}'. Must be one of: json, text"
            )

        shared = self.storage.shared_path
        if shared is not None and not shared.exists():
            logger.warning(f"Shared directory does not exist: {shared}")

    def log_config(self) -> None:
        """Log configuration."""
        logger.info(
            "Shared store configuration loaded",
            extra={
                "shared_dir": self.storage.shared_dir,
                "heartbeat_interval_seconds": self.lease.heartbeat_interval_seconds,
                "stale_after_seconds": self.lease.stale_after_seconds,
                "lock_file_name": self.lease.lock_file_name,
                "log_level": self.observability.log_level,
            },
        )
