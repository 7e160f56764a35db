from __future__ import annotations

import json
from pathlib import Path

import pytest
import typer
from typer.testing import CliRunner

from delivery_sync import config
from delivery_sync import coordinator as coordinator_module
from delivery_sync import main as main_module
from delivery_sync.queue import OfflineQueue, QueuedWrite

runner = CliRunner()


@pytest.fixture
def cli_env(monkeypatch: pytest.MonkeyPatch, tmp_path: Path, remote) -> Path:
    """Point the CLI at a temp queue file and the in-memory remote."""
    queue_path = tmp_path / "offline.json"
    monkeypatch.setenv("OFFLINE_QUEUE_PATH", str(queue_path))
    monkeypatch.setenv("SUPABASE_URL", "https://demo.supabase.co")
    monkeypatch.setattr(main_module, "configure_logging", lambda **kwargs: None)

    async def fake_create_remote_client(settings):
        return remote

    monkeypatch.setattr(coordinator_module, "create_remote_client", fake_create_remote_client)
    config.get_settings.cache_clear()
    yield queue_path
    config.get_settings.cache_clear()


def test_parse_where_requires_field_value_pairs() -> None:
    assert main_module._parse_where(["ref=DR-1", "status=Active"]) == {"ref": "DR-1", "status": "Active"}
    with pytest.raises(typer.BadParameter):
        main_module._parse_where(["ref"])


def test_info_shows_backend(cli_env: Path) -> None:
    result = runner.invoke(main_module.app, ["info"])

    assert result.exit_code == 0
    assert "backend=rest https://demo.supabase.co" in result.output


def test_save_then_get_as_json(cli_env: Path, remote) -> None:
    saved = runner.invoke(main_module.app, ["save", "deliveries", '{"ref": "DR-001", "status": "Active"}'])
    assert saved.exit_code == 0
    assert len(remote.rows("deliveries")) == 1

    result = runner.invoke(main_module.app, ["get", "deliveries", "--where", "ref=DR-001", "--json"])

    assert result.exit_code == 0
    views = json.loads(result.output)
    assert [view["drNumber"] for view in views] == ["DR-001"]
    assert views[0]["status"] == "Active"


def test_save_reports_validation_errors(cli_env: Path, remote) -> None:
    result = runner.invoke(main_module.app, ["save", "customers", '{"name": "Acme"}'])

    assert result.exit_code == 2
    assert "phone" in result.output
    assert remote.calls == []


def test_save_rejects_malformed_json(cli_env: Path) -> None:
    result = runner.invoke(main_module.app, ["save", "deliveries", "{not json"])

    assert result.exit_code == 2


def test_delete_missing_record_fails(cli_env: Path) -> None:
    result = runner.invoke(main_module.app, ["delete", "deliveries", "missing"])

    assert result.exit_code == 1
    assert "not found" in result.output


def test_queue_lists_and_cancels_pending_writes(cli_env: Path) -> None:
    op = OfflineQueue(cli_env).append(QueuedWrite(kind="delete", table="customers", record_id="C1"))

    listed = runner.invoke(main_module.app, ["queue"])
    assert listed.exit_code == 0
    assert "1 pending" in listed.output

    cancelled = runner.invoke(main_module.app, ["queue", "--cancel", op.op_id])
    assert cancelled.exit_code == 0
    assert "Offline queue is empty." in cancelled.output
    assert len(OfflineQueue(cli_env)) == 0

    unknown = runner.invoke(main_module.app, ["queue", "--cancel", "nope"])
    assert unknown.exit_code == 1


def test_drain_applies_queued_writes(cli_env: Path, remote) -> None:
    remote.seed("customers", id="C1", name="Acme", phone="555-0100")
    OfflineQueue(cli_env).append(QueuedWrite(kind="delete", table="customers", record_id="C1"))

    result = runner.invoke(main_module.app, ["drain"])

    assert result.exit_code == 0
    assert "Drained 1 queued write(s)." in result.output
    assert remote.rows("customers") == []
    assert len(OfflineQueue(cli_env)) == 0
