"""Tests for CLI commands and helper functions."""

import asyncio
import json

import pytest
from click.testing import CliRunner

from async_broadcast_service.cli import (
    _fmt_ts,
    _styled_status,
    build_core,
    main,
    run_async,
)
from async_broadcast_service.core import BroadcastCore
from async_broadcast_service.persistence import Persistence


class RecordingTransport:
    async def send(self, address, message, attachments=None):
        return {"message_id": "1"}


@pytest.fixture
def db_path(tmp_path):
    return str(tmp_path / "cli.db")


@pytest.fixture
def cli(db_path, tmp_path, monkeypatch):
    """Invoke the CLI against a temporary database and an empty config."""
    monkeypatch.delenv("BROADCAST_CONFIG", raising=False)
    monkeypatch.delenv("BROADCAST_DB_PATH", raising=False)
    runner = CliRunner()
    config = str(tmp_path / "missing.ini")

    def invoke(*args, **kwargs):
        return runner.invoke(main, ["--db", db_path, "--config", config, *args], **kwargs)

    return invoke


def seed_run(db_path, addresses=("1001", "1002")):
    core = BroadcastCore(db_path=db_path, transport=RecordingTransport(), test_mode=True)

    async def _seed():
        await core.init()
        for address in addresses:
            await core.persistence.add_user(address, first_name=f"User {address}")
        run = await core.enqueue_run("Service window tonight", kind="news")
        return run["id"]

    return asyncio.run(_seed())


class TestHelperFunctions:
    """Tests for CLI helper functions."""

    def test_run_async(self):
        async def async_func():
            return 42

        assert run_async(async_func()) == 42

    def test_fmt_ts(self):
        assert _fmt_ts(None) == "-"
        assert _fmt_ts(0) == "-"
        assert _fmt_ts(1_700_000_000) == "2023-11-14 22:13:20"

    def test_styled_status(self):
        assert _styled_status("SENT") == "[green]SENT[/green]"
        assert _styled_status("OTHER") == "OTHER"

    def test_build_core_prefers_db_option(self, tmp_path, monkeypatch):
        monkeypatch.delenv("BROADCAST_DB_PATH", raising=False)
        core = build_core(str(tmp_path / "x.db"), str(tmp_path / "missing.ini"))
        assert isinstance(core, BroadcastCore)
        assert core.persistence.db_path == str(tmp_path / "x.db")


class TestRunsCommands:
    def test_list_empty(self, cli):
        result = cli("runs", "list")
        assert result.exit_code == 0
        assert "No broadcast runs found" in result.output

    def test_list_json(self, cli, db_path):
        run_id = seed_run(db_path)
        result = cli("runs", "list", "--json")
        assert result.exit_code == 0
        data = json.loads(result.output)
        assert [run["id"] for run in data["runs"]] == [run_id]
        assert data["meta"]["total"] == 1

    def test_list_table(self, cli, db_path):
        seed_run(db_path)
        result = cli("runs", "list")
        assert result.exit_code == 0
        assert "Broadcast runs" in result.output

    def test_show(self, cli, db_path):
        run_id = seed_run(db_path)
        result = cli("runs", "show", str(run_id), "--json")
        assert result.exit_code == 0
        data = json.loads(result.output)
        assert data["status"] == "QUEUED"
        assert data["delivery_summary"]["PENDING"] == 2

        result = cli("runs", "show", str(run_id))
        assert result.exit_code == 0
        assert "Service window tonight" in result.output

    def test_show_missing_run(self, cli):
        result = cli("runs", "show", "999")
        assert result.exit_code == 1
        assert "Broadcast run 999 not found" in result.output

    def test_cancel_then_delete(self, cli, db_path):
        run_id = seed_run(db_path)

        result = cli("runs", "delete", str(run_id), "--force")
        assert result.exit_code == 1
        assert "Cancel it first" in result.output

        result = cli("runs", "cancel", str(run_id))
        assert result.exit_code == 0
        assert "CANCELLED" in result.output

        result = cli("runs", "delete", str(run_id), input="n\n")
        assert result.exit_code == 0
        assert "Aborted" in result.output

        result = cli("runs", "delete", str(run_id), "--force")
        assert result.exit_code == 0
        assert "deleted" in result.output
        assert asyncio.run(Persistence(db_path).get_run(run_id)) is None

    def test_requeue_unknown_without_unknowns(self, cli, db_path):
        run_id = seed_run(db_path)
        result = cli("runs", "requeue-unknown", str(run_id))
        assert result.exit_code == 0
        assert "Requeued 0 unknown deliveries" in result.output

    def test_repost(self, cli, db_path):
        run_id = seed_run(db_path)
        result = cli("runs", "repost", str(run_id))
        assert result.exit_code == 0
        assert f"reposted as run {run_id + 1}" in result.output

    def test_repost_records_requesting_user(self, cli, db_path):
        run_id = seed_run(db_path)
        result = cli("runs", "repost", str(run_id), "--requested-by", "42")
        assert result.exit_code == 0
        assert asyncio.run(Persistence(db_path).get_run(run_id + 1))["requested_by"] == 42


class TestDeliveriesCommand:
    def test_deliveries_json_with_filter(self, cli, db_path):
        run_id = seed_run(db_path)
        result = cli("deliveries", str(run_id), "--status", "pending", "--json")
        assert result.exit_code == 0
        data = json.loads(result.output)
        assert {d["address"] for d in data["deliveries"]} == {"1001", "1002"}
        assert data["deliveries"][0]["user_first_name"].startswith("User")

        result = cli("deliveries", str(run_id), "--status", "SENT")
        assert result.exit_code == 0
        assert "No deliveries found" in result.output

    def test_deliveries_table(self, cli, db_path):
        run_id = seed_run(db_path)
        result = cli("deliveries", str(run_id))
        assert result.exit_code == 0
        assert f"Run {run_id} deliveries (2 total)" in result.output

    def test_invalid_filter_rejected(self, cli, db_path):
        run_id = seed_run(db_path)
        result = cli("deliveries", str(run_id), "--status", "BOGUS")
        assert result.exit_code == 2


class TestUsersCommands:
    def test_add_and_list(self, cli, db_path):
        result = cli("users", "add", "5001", "--first-name", "Grace", "--username", "grace_h")
        assert result.exit_code == 0
        assert "(5001)" in result.output
        cli("users", "add", "5002", "--first-name", "Alan")

        result = cli("users", "list", "--search", "GRACE", "--json")
        assert result.exit_code == 0
        data = json.loads(result.output)
        assert [u["address"] for u in data["users"]] == ["5001"]
        assert data["users"][0]["username"] == "grace_h"

        result = cli("users", "list", "--limit", "1", "--page", "2", "--json")
        data = json.loads(result.output)
        assert data["meta"]["total"] == 2
        assert [u["address"] for u in data["users"]] == ["5001"]

        result = cli("users", "list")
        assert result.exit_code == 0
        assert "Users (2 total)" in result.output

    def test_list_empty_and_blank_address(self, cli):
        result = cli("users", "list", "--search", "nobody")
        assert result.exit_code == 0
        assert "No users found" in result.output

        result = cli("users", "add", "   ")
        assert result.exit_code == 1
        assert "missing 'address'" in result.output


class TestServiceCommands:
    def test_tick_without_runs(self, cli):
        result = cli("tick")
        assert result.exit_code == 0
        assert "No broadcast run to process" in result.output

    def test_purge(self, cli):
        result = cli("purge")
        assert result.exit_code == 0
        assert "Purged 0 run(s)." in result.output

    def test_subscribers_add(self, cli, db_path):
        result = cli("subscribers", "add", "4242", "--username", "alice", "--first-name", "Alice")
        assert result.exit_code == 0
        assert "Subscriber 4242 registered" in result.output
        sub = asyncio.run(Persistence(db_path).get_subscriber("4242"))
        assert sub["username"] == "alice"
        assert sub["is_active"] is True
