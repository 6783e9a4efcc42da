"""
Administrative CLI for a shared store directory.

Lets an office administrator look at and repair a shared directory without
starting the desktop application:

Usage:
    palletdesk-store --dir /mnt/share/epal status
    palletdesk-store check clients_backup.json --kind clients
    palletdesk-store import clients_backup.json --kind clients --operator Alice
    palletdesk-store import epal_backup_2026-10-19.zip --operator Alice --yes
    palletdesk-store export /tmp/backups --archive
    palletdesk-store force-unlock --operator Alice

The directory comes from --dir or the SHARED_DIR environment variable.
Exit code is 0 on success and 1 on any failure or declined action.

Invariants:
    - Read-only commands (status, check, export) never touch the lease
    - Writing commands release the lease before exiting
    - Destructive commands ask for confirmation unless --yes is given
"""

from __future__ import annotations

import argparse
import asyncio
import dataclasses
import logging
import sys
from datetime import datetime, timezone
from pathlib import Path

from ..config import SharedStoreConfig
from ..errors import SharedStoreError
from ..fsio import run_blocking, write_atomic
from ..lease import AcquireStatus
from ..main import setup_logging
from ..store import CollectionKind, ImportProposal
from ..workspace import Workspace

logger = logging.getLogger(__name__)


def _confirm(question: str, assume_yes: bool) -> bool:
    if assume_yes:
        return True
    answer = input(f"{question} [y/N] ")
    return answer.strip().lower() in ("y", "yes")


def _kind(value: str | None) -> CollectionKind | None:
    return CollectionKind(value) if value else None


def _format_ms(ms: int) -> str:
    return datetime.fromtimestamp(ms / 1000, tz=timezone.utc).isoformat(timespec="seconds")


async def cmd_status(workspace: Workspace, args: argparse.Namespace) -> int:
    """Print the directory, the lease and the collections."""
    shared = workspace.get_shared_directory()
    print(f"Shared directory: {shared or 'not configured'}")
    if shared is None:
        return 1

    inspection = await workspace.coordinator.inspect()
    if inspection is None:
        print("Lease: directory missing or unreadable")
        return 1
    if inspection.record is not None:
        record = inspection.record
        state = "STALE" if inspection.stale else "active"
        print(f"Lease: {record.holder} on {record.host} ({state})")
        print(f"  Last renewed: {_format_ms(record.last_renewed_at_ms)}")
        print(f"  Age: {inspection.age_seconds:.0f}s")
    elif inspection.corrupt:
        print("Lease: lock file is corrupt (will be overwritten on next acquire)")
    else:
        print("Lease: free")

    await workspace.load()
    for kind in CollectionKind:
        records = workspace.records(kind)
        status = workspace.store.load_status(kind)
        print(f"{kind.value.capitalize()}: {len(records)} records ({status.value})")
    return 0


def _print_proposal(proposal: ImportProposal) -> None:
    print(f"  Format: {proposal.format.value}")
    print(f"  Verification: {proposal.status.value}")
    for name, count in proposal.record_counts.items():
        print(f"  {name}: {count} records")


async def cmd_check(workspace: Workspace, args: argparse.Namespace) -> int:
    """Dry-run validation of an import file."""
    raw = await run_blocking(Path(args.file).read_bytes)
    proposal = await workspace.propose_import(raw, _kind(args.kind))
    print(f"{args.file}: accepted")
    _print_proposal(proposal)
    return 0


async def cmd_import(workspace: Workspace, args: argparse.Namespace) -> int:
    """Replace one or both collections with the content of a file."""
    await workspace.load()
    result = await workspace.acquire_lease(args.operator)
    if not result.success:
        if result.status is AcquireStatus.CONFLICT and result.conflict is not None:
            conflict = result.conflict
            print(
                f"Shared store is in use by {conflict.holder} on {conflict.host} "
                f"(last seen {conflict.age_seconds:.0f}s ago)"
            )
        else:
            print(f"Cannot take the lease: {result.error}")
        return 1

    def confirm(proposal: ImportProposal) -> bool:
        _print_proposal(proposal)
        return _confirm(f"{proposal.describe()}. Continue?", args.yes)

    workspace.on_import_requires_confirmation(confirm)
    try:
        committed = await workspace.import_file(args.file, _kind(args.kind))
    finally:
        await workspace.release_lease()

    if committed is None:
        print("Import cancelled")
        return 1
    print(f"Imported {committed.record_count} records")
    return 0


async def cmd_export(workspace: Workspace, args: argparse.Namespace) -> int:
    """Write a full backup of both collections."""
    await workspace.load()
    dest = Path(args.dest)
    if args.archive:
        path = await workspace.export_archive(dest)
    else:
        path = dest / "epal_backup.json" if dest.is_dir() else dest
        await run_blocking(write_atomic, path, workspace.export_snapshot())
    print(f"Backup written to {path}")
    return 0


async def cmd_force_unlock(workspace: Workspace, args: argparse.Namespace) -> int:
    """Remove a lease whose holder is known to be gone."""
    inspection = await workspace.coordinator.inspect()
    if inspection is None:
        print("Shared directory missing or unreadable")
        return 1
    if inspection.record is None and not inspection.corrupt:
        print("Lease is already free")
        return 0

    if inspection.record is not None:
        holder = f"{inspection.record.holder} on {inspection.record.host}"
        question = f"Remove the lease of {holder}? Their unsaved changes may be lost."
    else:
        question = "Remove the corrupt lock file?"
    if not _confirm(question, args.yes):
        print("Cancelled")
        return 1

    result = await workspace.force_takeover(args.operator)
    if not result.success:
        print(f"Takeover failed: {result.error}")
        return 1
    await workspace.release_lease()
    print("Lease removed")
    return 0


COMMANDS = {
    "status": cmd_status,
    "check": cmd_check,
    "import": cmd_import,
    "export": cmd_export,
    "force-unlock": cmd_force_unlock,
}


def build_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(
        prog="palletdesk-store", description="Inspect and maintain a PalletDesk shared directory"
    )
    parser.add_argument("--dir", help="Shared directory (default: $SHARED_DIR)")
    parser.add_argument("-v", "--verbose", action="store_true", help="Verbose output")
    subparsers = parser.add_subparsers(dest="command", required=True)

    subparsers.add_parser("status", help="Show lease holder and collection sizes")

    kinds = [kind.value for kind in CollectionKind]
    check_parser = subparsers.add_parser("check", help="Validate an import file without importing")
    check_parser.add_argument("file", help="File to validate")
    check_parser.add_argument("--kind", choices=kinds, help="Target collection (default: both)")

    import_parser = subparsers.add_parser("import", help="Replace collections from a file")
    import_parser.add_argument("file", help="File to import")
    import_parser.add_argument("--kind", choices=kinds, help="Target collection (default: both)")
    import_parser.add_argument("--operator", required=True, help="Operator name for the lease")
    import_parser.add_argument("--yes", action="store_true", help="Do not ask for confirmation")

    export_parser = subparsers.add_parser("export", help="Write a full backup")
    export_parser.add_argument("dest", help="Target file or directory")
    export_parser.add_argument("--archive", action="store_true", help="Write a ZIP archive")

    unlock_parser = subparsers.add_parser("force-unlock", help="Remove a stuck lease")
    unlock_parser.add_argument("--operator", required=True, help="Operator name for the takeover")
    unlock_parser.add_argument("--yes", action="store_true", help="Do not ask for confirmation")

    return parser


async def run(config: SharedStoreConfig, args: argparse.Namespace) -> int:
    async with Workspace(config) as workspace:
        return await COMMANDS[args.command](workspace, args)


def main(argv: list[str] | None = None) -> None:
    """CLI entry point for palletdesk-store."""
    args = build_parser().parse_args(argv)

    try:
        config = SharedStoreConfig.from_env()
    except ValueError as e:
        print(f"Invalid configuration: {e}", file=sys.stderr)
        sys.exit(1)
    if args.dir:
        config = config.with_shared_dir(args.dir)
    if args.verbose:
        config = dataclasses.replace(
            config, observability=dataclasses.replace(config.observability, log_level="DEBUG")
        )
    setup_logging(config)

    try:
        code = asyncio.run(run(config, args))
    except SharedStoreError as e:
        print(f"Error [{e.code}]: {e.message}", file=sys.stderr)
        sys.exit(1)
    except OSError as e:
        print(f"Error: {e}", file=sys.stderr)
        sys.exit(1)
    sys.exit(code)


if __name__ == "__main__":
    main()
