import json
from types import SimpleNamespace

import pytest

import toplist_sync.cli.backfill_snapshot as backfill_cli
import toplist_sync.cli.purge_legacy_players as purge_cli
import toplist_sync.cli.update_derived_cache as update_cli
import toplist_sync.commands.backfill as backfill_command
import toplist_sync.commands.purge as purge_command
import toplist_sync.commands.update_cache as update_command
import toplist_sync.functions as functions
from toplist_sync.config import Settings

BACKFILL_ARGS = ["--server", "EU1", "--from", "2026-01-01", "--to", "2026-01-31T23:59:59Z", "--label", "2026-01"]


@pytest.fixture
def wired(monkeypatch, store):
    for module in (backfill_command, purge_command, update_command):
        monkeypatch.setattr(module, "configure_runtime", lambda: Settings(project_id="demo"))
        monkeypatch.setattr(module, "build_client", lambda _settings, _project=None: store)
    return store


def test_backfill_dry_run_prints_summary(wired, capsys):
    wired.seed(
        "players/1/scans/1",
        {"playerId": "1", "server": "EU1", "timestamp": 1767225700, "values": {"Base Luck": 5}},
    )

    assert backfill_cli.main(BACKFILL_ARGS + ["--dry-run"]) == 0

    summary = json.loads(capsys.readouterr().out)
    assert summary["dryRun"] is True
    assert summary["playersWritten"] == 1
    assert summary["writtenPath"] is None


@pytest.mark.parametrize(
    "argv",
    [
        [],
        ["--server", "EU1", "--from", "2026-01-01"],
        ["--server", "EU1", "--from", "2026-02-01", "--to", "2026-01-01"],
        BACKFILL_ARGS[:-1] + ["January"],
        BACKFILL_ARGS + ["--topN", "zero"],
    ],
)
def test_backfill_validation_errors_exit_1(wired, argv):
    assert backfill_cli.main(argv) == 1
    assert wired.queries == []


def test_backfill_missing_index_exits_1(wired):
    wired.missing_index_collections.add("scans")

    assert backfill_cli.main(BACKFILL_ARGS) == 1


def test_purge_dry_run(wired, capsys):
    wired.seed("players/12/scans/1", {"playerId": "12"})

    assert purge_cli.main(["--project", "demo"]) == 0

    summary = json.loads(capsys.readouterr().out)
    assert summary["execute"] is False
    assert summary["playerIds"] == ["12"]
    assert wired.data("players/12/scans/1") is not None


def test_purge_requires_project(wired):
    assert purge_cli.main([]) == 1


def test_purge_missing_credential_exits_1(monkeypatch):
    monkeypatch.setattr(purge_command, "configure_runtime", lambda: Settings())

    assert purge_cli.main(["--project", "demo", "--execute"]) == 1


def test_update_cache_prints_summary(wired, capsys):
    assert update_cli.main(["--page-size", "10"]) == 0

    summary = json.loads(capsys.readouterr().out)
    assert summary["scanned"] == 0
    assert summary["watermarkAfter"] is not None


def test_function_entrypoint_handles_candidate_write(monkeypatch, store):
    monkeypatch.setattr(functions, "configure_logging", lambda: None)
    monkeypatch.setattr(functions, "_client_for_runtime", lambda: (store, 100))
    payload = {
        "oldValue": {},
        "value": {
            "name": "projects/p/databases/(default)/documents/stats_cache_player_derived/snapshot_eu1_player_derived",
            "fields": {"players": {"arrayValue": {}}},
            "updateTime": "2026-01-10T00:00:00Z",
        },
    }

    assert functions.publish_player_latest_toplists(payload, SimpleNamespace(resource="")) == "pending"


def test_function_entrypoint_ignores_player_documents(monkeypatch):
    monkeypatch.setattr(functions, "configure_logging", lambda: None)

    def fail():
        raise AssertionError("client must not be created")

    monkeypatch.setattr(functions, "_client_for_runtime", fail)
    payload = {"value": {"name": "projects/p/databases/(default)/documents/stats_cache_player_derived/123"}}

    assert functions.publish_player_latest_toplists(payload, SimpleNamespace()) == "ignored"
