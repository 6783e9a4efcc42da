"""
Lease module - advisory cross-process lock on the shared directory.

This module handles:
- The lease record and its file codec (lock.json)
- The heartbeat that keeps a held lease fresh
- Acquisition, conflict detection, release and forced takeover

There is no lock service: the lease file on the shared directory is the
only coordination channel, and freshness is judged from wall-clock
timestamps written into it.

Invariants:
    - A fresh lease of another holder is never overwritten except by
      an explicit forced takeover
    - A stale lease is treated as abandoned
    - Filesystem failures are reported, never raised
"""

from .clock import Clock, ManualClock, SystemClock
from .coordinator import (
    AcquireResult,
    AcquireStatus,
    LeaseConflict,
    LeaseCoordinator,
    LeaseHandle,
    LeaseInspection,
    LeaseState,
)
from .heartbeat import Heartbeat
from .record import LeaseFile, LeaseRecord, decode_lease, encode_lease

__all__ = [
    "LeaseCoordinator",
    "LeaseState",
    "AcquireResult",
    "AcquireStatus",
    "LeaseHandle",
    "LeaseConflict",
    "LeaseInspection",
    "LeaseRecord",
    "LeaseFile",
    "encode_lease",
    "decode_lease",
    "Heartbeat",
    "Clock",
    "SystemClock",
    "ManualClock",
]
