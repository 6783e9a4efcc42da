"""
Integration tests for the palletdesk-store command-line tool.

Each test runs main() against a temporary shared directory and checks the
exit code, the printed report and the files left behind.
"""

import json
import logging
import tempfile
import time
import zipfile
from pathlib import Path

import pytest

from palletdesk.sharedstore.store.envelope import CollectionKind, encode_collection
from palletdesk.sharedstore.tools.cli import main

CLIENTS = [{"id": "c1", "name": "Acme", "code": "ACM"}]
MOVEMENTS = [{"id": "m1", "clientId": "c1", "palletsGood": 3}]


def run_cli(*argv: str) -> int:
    with pytest.raises(SystemExit) as exc_info:
        main(list(argv))
    return exc_info.value.code


def foreign_lock(shared_dir: Path, holder: str = "Carol", host: str = "PC-OTHER") -> None:
    (shared_dir / "lock.json").write_text(
        json.dumps({"holder": holder, "host": host, "lastRenewedAt": int(time.time() * 1000)})
    )


class TestCli:
    """Tests for the CLI commands."""

    @pytest.fixture(autouse=True)
    def clean_env(self, monkeypatch):
        """Isolate from the caller's environment and restore root logging afterwards."""
        for name in ("SHARED_DIR", "LOG_FORMAT", "LOG_LEVEL", "LEASE_STALE_SECONDS"):
            monkeypatch.delenv(name, raising=False)
        root = logging.getLogger()
        handlers, level = root.handlers[:], root.level
        yield
        root.handlers = handlers
        root.setLevel(level)

    @pytest.fixture
    def shared_dir(self):
        """Create temporary shared directory."""
        with tempfile.TemporaryDirectory() as tmpdir:
            yield Path(tmpdir)

    def test_status_empty_directory(self, shared_dir, capsys):
        """A fresh directory reports a free lease and empty collections."""
        code = run_cli("--dir", str(shared_dir), "status")

        out = capsys.readouterr().out
        assert code == 0
        assert "Lease: free" in out
        assert "Clients: 0 records (missing)" in out

    def test_status_shows_holder(self, shared_dir, capsys):
        foreign_lock(shared_dir)
        (shared_dir / "clients.json").write_bytes(
            encode_collection(CollectionKind.CLIENTS, CLIENTS)
        )

        code = run_cli("--dir", str(shared_dir), "status")

        out = capsys.readouterr().out
        assert code == 0
        assert "Lease: Carol on PC-OTHER (active)" in out
        assert "Clients: 1 records (signed)" in out

    def test_status_unconfigured(self, capsys):
        """Without --dir or SHARED_DIR the tool says so."""
        assert run_cli("status") == 1
        assert "not configured" in capsys.readouterr().out

    def test_check_accepts_valid_file(self, shared_dir, capsys):
        source = shared_dir / "clients_backup.json"
        source.write_text(json.dumps(CLIENTS))

        code = run_cli("check", str(source), "--kind", "clients")

        out = capsys.readouterr().out
        assert code == 0
        assert "accepted" in out
        assert "legacy-unverified" in out

    def test_check_rejects_wrong_kind(self, shared_dir, capsys):
        """The specific rejection reason is reported."""
        source = shared_dir / "movements.json"
        source.write_bytes(encode_collection(CollectionKind.MOVEMENTS, MOVEMENTS))

        code = run_cli("check", str(source), "--kind", "clients")

        assert code == 1
        assert "SIGNATURE_MISMATCH" in capsys.readouterr().err

    def test_import_with_yes(self, shared_dir, capsys):
        """Import takes the lease, writes the collection and releases."""
        source = shared_dir / "incoming.json"
        source.write_bytes(encode_collection(CollectionKind.CLIENTS, CLIENTS))

        code = run_cli(
            "--dir", str(shared_dir), "import", str(source),
            "--kind", "clients", "--operator", "Alice", "--yes",
        )

        assert code == 0
        assert "Imported 1 records" in capsys.readouterr().out
        document = json.loads((shared_dir / "clients.json").read_text())
        assert document["data"] == CLIENTS
        assert not (shared_dir / "lock.json").exists()

    def test_import_declined_at_prompt(self, shared_dir, capsys, monkeypatch):
        source = shared_dir / "incoming.json"
        source.write_bytes(encode_collection(CollectionKind.CLIENTS, CLIENTS))
        monkeypatch.setattr("builtins.input", lambda prompt: "n")

        code = run_cli(
            "--dir", str(shared_dir), "import", str(source),
            "--kind", "clients", "--operator", "Alice",
        )

        assert code == 1
        assert "Import cancelled" in capsys.readouterr().out
        assert not (shared_dir / "clients.json").exists()

    def test_import_blocked_by_lease(self, shared_dir, capsys):
        """A fresh foreign lease stops the import."""
        foreign_lock(shared_dir)
        source = shared_dir / "incoming.json"
        source.write_bytes(encode_collection(CollectionKind.CLIENTS, CLIENTS))

        code = run_cli(
            "--dir", str(shared_dir), "import", str(source),
            "--kind", "clients", "--operator", "Alice", "--yes",
        )

        assert code == 1
        assert "in use by Carol on PC-OTHER" in capsys.readouterr().out
        assert json.loads((shared_dir / "lock.json").read_text())["holder"] == "Carol"

    def test_export_json_and_archive(self, shared_dir, capsys):
        (shared_dir / "clients.json").write_bytes(
            encode_collection(CollectionKind.CLIENTS, CLIENTS)
        )
        target = shared_dir / "backup.json"

        assert run_cli("--dir", str(shared_dir), "export", str(target)) == 0
        assert json.loads(target.read_text())["signature"] == "EPAL_FULL_BACKUP_V1"

        out_dir = shared_dir / "backups"
        out_dir.mkdir()
        assert run_cli("--dir", str(shared_dir), "export", str(out_dir), "--archive") == 0
        archives = list(out_dir.glob("epal_backup_*.zip"))
        assert len(archives) == 1
        with zipfile.ZipFile(archives[0]) as archive:
            assert "manifest.json" in archive.namelist()

    def test_force_unlock(self, shared_dir, capsys):
        """Force-unlock removes a stuck lease after confirmation."""
        foreign_lock(shared_dir)

        code = run_cli("--dir", str(shared_dir), "force-unlock", "--operator", "Alice", "--yes")

        assert code == 0
        assert "Lease removed" in capsys.readouterr().out
        assert not (shared_dir / "lock.json").exists()
        assert "FORCED_TAKEOVER" in (shared_dir / "activity_log.txt").read_text()

    def test_force_unlock_free_lease(self, shared_dir, capsys):
        code = run_cli("--dir", str(shared_dir), "force-unlock", "--operator", "Alice", "--yes")

        assert code == 0
        assert "already free" in capsys.readouterr().out
