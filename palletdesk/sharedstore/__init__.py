"""
PalletDesk shared store - concurrent-safe persistence on a shared folder.

Several desktop instances (different machines, no shared runtime) keep
their business records as files in one directory, usually a network share.
This package provides the core those instances rely on:
- A lease file that grants one instance at a time the right to write
- Signed, versioned JSON snapshots of the two record collections
- Validation of foreign files before they may overwrite a collection

Architecture:
    ┌─────────────┐     ┌─────────────┐     ┌──────────────────┐
    │  UI / CLI   │────▶│  Workspace  │────▶│ LeaseCoordinator │──▶ lock.json
    └─────────────┘     └──────┬──────┘     └────────┬─────────┘
                               │                     │ heartbeat
                               ▼                     ▼
                        ┌──────────────┐      ┌────────────┐
                        │VersionedStore│      │ Heartbeat  │
                        └──────┬───────┘      └────────────┘
                               │
               ┌───────────────┼────────────────┐
               ▼               ▼                ▼
        clients.json    movements.json   Import Validator

Invariants:
    - The lease file is the only cross-process coordination primitive
    - Saves only happen while the lease is held
    - Collection files are replaced atomically, never rewritten in place
    - Foreign data is validated before it replaces a collection

How to change safely:
    - New envelope generations need a new signature token; keep reading old ones
    - Lease timing belongs in configuration, not in code
    - Never let an import error leave a collection partially replaced
"""

from ._version import __version__

__all__ = ["__version__"]
