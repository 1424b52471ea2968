import datetime
import math

import pytest

from toplist_sync.classes.firestore_client import FirestoreError
from toplist_sync.classes.toplist_meta import TOPLIST_META_PATH
from toplist_sync.services import derived_cache_updater as updater
from toplist_sync.services.candidate_snapshots import candidate_path

UTC = datetime.timezone.utc


def _latest(server="EU1", strength=50, updated_at=None):
    return {
        "name": "Hero",
        "server": server,
        "level": 100,
        "className": "Warrior",
        "updatedAt": updated_at or datetime.datetime(2026, 1, 10, tzinfo=UTC),
        "values": {
            "Base Strength": strength,
            "Base Dexterity": 30,
            "Base Intelligence": 20,
            "Base Constitution": 40,
            "Base Luck": 10,
        },
    }


def _now():
    return 1768000000000


def test_player_id_from_latest_path():
    assert updater.player_id_from_latest_path("players/42/latest/latest") == "42"
    assert updater.player_id_from_latest_path("guilds/42/latest/latest") is None
    assert updater.player_id_from_latest_path("players/42/latest/other") is None
    assert updater.player_id_from_latest_path("a/players/42/latest/latest") is None


def test_run_update_derives_filters_and_records_meta(store):
    store.seed("players/1/latest/latest", _latest())
    store.seed("players/2/latest/latest", _latest(server="f3", strength=10))
    store.seed("guilds/9/latest/latest", _latest())

    summary = updater.run_update(store, now_ms=_now)

    assert summary.scanned == 3
    assert summary.derived == 2
    assert summary.skipped_non_player == 1
    derived = store.data("stats_cache_player_derived/1")
    assert derived["playerId"] == "1"
    assert derived["sum"] == 150
    assert derived["serverKey"] == "EU1"
    assert derived["lastUpdatedAt"] == datetime.datetime(2026, 1, 10, tzinfo=UTC)
    assert store.data("stats_cache_player_derived/9") is None

    meta = store.data(TOPLIST_META_PATH)
    assert meta["lastComputedAt"] == _now()
    assert meta["scopeChange"]["ALL_all_sum"]["changedSinceLastRebuild"] == 2
    assert meta["scopeChange"]["EU_EU1_sum"]["changedSinceLastRebuild"] == 1
    assert meta["scopeChange"]["FUSION_F3_sum"]["lastChangeAtMs"] == _now()


def test_run_update_only_reads_past_watermark(store):
    store.seed(TOPLIST_META_PATH, {"lastComputedAt": 1767225600000})
    store.seed("players/1/latest/latest", _latest(updated_at=datetime.datetime(2025, 12, 1, tzinfo=UTC)))
    store.seed("players/2/latest/latest", _latest(updated_at=datetime.datetime(2026, 1, 5, tzinfo=UTC)))

    summary = updater.run_update(store, now_ms=_now)

    assert summary.watermark_before == 1767225600000
    assert summary.derived == 1
    assert store.data("stats_cache_player_derived/1") is None


def test_run_update_is_idempotent_with_fixed_watermark(store):
    store.seed("players/1/latest/latest", _latest())

    updater.run_update(store, now_ms=_now)
    first = dict(store.data("stats_cache_player_derived/1"))
    store.seed(TOPLIST_META_PATH, {"lastComputedAt": 0})
    updater.run_update(store, now_ms=_now)

    assert store.data("stats_cache_player_derived/1") == first


def test_oversized_values_do_not_stall_the_watermark(store):
    raw = _latest()
    raw["level"] = "1e300"
    raw["values"] = {name: "1e308" for name in raw["values"]}
    store.seed("players/1/latest/latest", raw)

    summary = updater.run_update(store, now_ms=_now)

    assert summary.derived == 1
    derived = store.data("stats_cache_player_derived/1")
    assert derived["level"] == 2**63 - 1
    assert math.isfinite(derived["sum"])
    assert store.data(TOPLIST_META_PATH)["lastComputedAt"] == _now()


def test_stream_error_leaves_watermark_untouched(store):
    store.seed(TOPLIST_META_PATH, {"lastComputedAt": 5})
    store.seed("players/1/latest/latest", _latest())
    store.query_errors.append(FirestoreError(503, "unavailable", "UNAVAILABLE"))

    with pytest.raises(FirestoreError):
        updater.run_update(store, now_ms=_now)

    assert store.data(TOPLIST_META_PATH) == {"lastComputedAt": 5}


def test_stream_paginates(store):
    for pid in range(5):
        store.seed(
            f"players/{pid}/latest/latest",
            _latest(updated_at=datetime.datetime(2026, 1, 1, pid, tzinfo=UTC)),
        )

    summary = updater.run_update(store, page_size=2, now_ms=_now)

    assert summary.derived == 5
    assert len(store.queries) == 3


def test_refresh_candidates_merges_rows_per_server(store):
    store.seed("players/1/latest/latest", _latest())
    store.seed("players/2/latest/latest", _latest(strength=90))
    store.seed("players/3/latest/latest", _latest(server=""))

    summary = updater.run_update(store, refresh_candidates=True, now_ms=_now)

    assert summary.candidates_changed == ["EU1"]
    candidate = store.data(candidate_path("EU1"))
    assert [row["playerId"] for row in candidate["players"]] == ["2", "1"]
    assert candidate["meta"]["pendingSincePublish"] == 1
    assert store.data(candidate_path("all")) is None
