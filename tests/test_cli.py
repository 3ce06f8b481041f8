"""Tests for the ingestor CLI commands.

External services are replaced by wiring the in-memory blob store and
event channel into :class:`~ingestor.app.Services` through a stand-in
for :class:`~ingestor.app.IngestorApp`.
"""

from __future__ import annotations

import logging

import pytest
from conftest import FakeBlobStore, FakeEventChannel
from rich.console import Console
from typer.testing import CliRunner

from ingestor import cli
from ingestor.app import Services
from ingestor.database import Database
from ingestor.reconciliation.engine import ReconciliationEngine
from ingestor.reconciliation.scheduler import ReconciliationScheduler
from ingestor.upload.intake import IntakeService
from ingestor.upload.state import UploadRecordStore

runner = CliRunner()


@pytest.fixture(autouse=True)
def _restore_root_logging():
    """Undo the root-logger handlers the CLI callback installs via basicConfig."""
    root = logging.getLogger()
    handlers, level = root.handlers[:], root.level
    yield
    root.handlers[:] = handlers
    root.setLevel(level)


@pytest.fixture
def backends(monkeypatch):
    """Patch IngestorApp to use in-memory backends shared across invocations."""
    blobs = FakeBlobStore()
    events = FakeEventChannel()

    class InMemoryApp:
        def __init__(self, config, instance_id=None):
            self.config = config
            self.store = UploadRecordStore(config.db_path)

        async def __aenter__(self):
            Database(self.config.db_path).close()
            await self.store.connect()
            engine = ReconciliationEngine(
                self.store,
                blobs,
                events,
                self.config.reconciliation,
                "cli-test",
                bucket=self.config.bucket,
                subject=self.config.event_subject,
            )
            return Services(
                config=self.config,
                store=self.store,
                blobs=blobs,
                events=events,
                engine=engine,
                scheduler=ReconciliationScheduler(engine),
                intake=IntakeService(
                    self.store, blobs, events, self.config.bucket, self.config.event_subject
                ),
            )

        async def __aexit__(self, *exc):
            await self.store.close()

    monkeypatch.setattr(cli, "IngestorApp", InMemoryApp)
    return blobs, events


@pytest.fixture(autouse=True)
def isolated(monkeypatch):
    monkeypatch.setattr("keyring.get_password", lambda service, key: None)
    monkeypatch.setattr(cli, "console", Console(width=200, color_system=None))


@pytest.fixture
def base_args(tmp_path) -> list[str]:
    return ["--config", str(tmp_path / "absent.json"), "--db", str(tmp_path / "ingestor.db")]


def _upload(base_args, tmp_path, *extra: str):
    image = tmp_path / "sunset.jpg"
    image.write_bytes(b"\xff\xd8\xff\xe0" + b"pixels" * 64)
    return runner.invoke(
        cli.app,
        [*base_args, "upload", str(image), "--user", "user_1", "--width", "1920", "--height", "1080", *extra],
    )


class TestDatabaseCommands:
    def test_init_db_then_status(self, base_args, tmp_path):
        result = runner.invoke(cli.app, [*base_args, "init-db"])
        assert result.exit_code == 0
        assert (tmp_path / "ingestor.db").exists()

        result = runner.invoke(cli.app, [*base_args, "status"])
        assert result.exit_code == 0
        assert "Uploads by State" in result.output
        assert "Total records: 0" in result.output

    def test_status_without_database(self, base_args):
        result = runner.invoke(cli.app, [*base_args, "status"])
        assert result.exit_code == 1
        assert "Database not found" in result.output

    def test_history_of_unknown_record(self, base_args):
        runner.invoke(cli.app, [*base_args, "init-db"])
        result = runner.invoke(cli.app, [*base_args, "history", "wlpr_nope"])
        assert result.exit_code == 1
        assert "No transitions" in result.output


class TestUpload:
    def test_upload_publishes_and_logs_history(self, backends, base_args, tmp_path):
        blobs, events = backends
        result = _upload(base_args, tmp_path)

        assert result.exit_code == 0, result.output
        assert "stored as" in result.output
        assert "(processing)" in result.output
        assert blobs.puts == 1
        assert len(events.published) == 1

        with Database(tmp_path / "ingestor.db") as db:
            record_id = db.conn.execute("SELECT id FROM wallpapers").fetchone()["id"]
        result = runner.invoke(cli.app, [*base_args, "history", record_id])
        assert result.exit_code == 0
        assert "processing" in result.output

    def test_second_upload_is_duplicate(self, backends, base_args, tmp_path):
        _upload(base_args, tmp_path)
        result = _upload(base_args, tmp_path)
        assert result.exit_code == 0
        assert "duplicate of" in result.output

    def test_invalid_dimensions(self, backends, base_args, tmp_path):
        image = tmp_path / "sunset.jpg"
        image.write_bytes(b"\xff\xd8")
        result = runner.invoke(
            cli.app,
            [*base_args, "upload", str(image), "--user", "u", "--width", "0", "--height", "10"],
        )
        assert result.exit_code == 1
        assert "Invalid dimensions" in result.output

    def test_unknown_media_type(self, backends, base_args, tmp_path):
        blob = tmp_path / "mystery.zzqx"
        blob.write_bytes(b"data")
        result = runner.invoke(
            cli.app,
            [*base_args, "upload", str(blob), "--user", "u", "--width", "1", "--height", "1"],
        )
        assert result.exit_code == 1
        assert "--mime" in result.output


class TestServiceCommands:
    def test_reconcile_prints_every_pass(self, backends, base_args):
        result = runner.invoke(cli.app, [*base_args, "reconcile"])
        assert result.exit_code == 0, result.output
        for name in ("stuck_uploads", "missing_events", "orphaned_intents", "orphaned_objects"):
            assert name in result.output

    def test_reconcile_exits_nonzero_when_a_pass_crashes(self, backends, base_args):
        blobs, _ = backends
        blobs.fail_lists = True
        result = runner.invoke(cli.app, [*base_args, "reconcile"])
        assert result.exit_code == 1
        assert "Pass crashed" in result.output

    def test_health(self, backends, base_args):
        result = runner.invoke(cli.app, [*base_args, "health"])
        assert result.exit_code == 0
        for name in ("database", "blob_store", "event_channel"):
            assert name in result.output


class TestConfigCommands:
    def test_set_s3_secret(self, monkeypatch):
        stored = {}
        monkeypatch.setattr(
            "keyring.set_password", lambda service, key, value: stored.update({(service, key): value})
        )
        result = runner.invoke(cli.app, ["config", "set-s3-secret", "s3cr3t"])
        assert result.exit_code == 0
        assert stored == {("wallpaper-ingestor", "s3_secret_access_key"): "s3cr3t"}

    def test_set_empty_secret_rejected(self):
        result = runner.invoke(cli.app, ["config", "set-s3-secret", "  "])
        assert result.exit_code == 1

    def test_remove_when_absent(self):
        result = runner.invoke(cli.app, ["config", "remove-s3-secret"])
        assert result.exit_code == 0
        assert "Nothing to remove" in result.output
