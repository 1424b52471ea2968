import pytest

from toplist_sync.classes.firestore_client import FirestoreError
from toplist_sync.services import candidate_snapshots as candidates


def _row(pid, total):
    return {"playerId": pid, "sum": total, "level": 10}


def test_candidate_doc_id():
    assert candidates.candidate_doc_id("EU1") == "snapshot_EU1_player_derived"
    assert candidates.candidate_path("F2") == "stats_cache_player_derived/snapshot_F2_player_derived"


def test_merge_replaces_existing_and_sorts():
    merged = candidates.merge_candidate_players(
        [_row("a", 10), _row("b", 30), "junk"],
        [_row("a", 50), _row("c", 30)],
        limit=5,
    )

    assert [row["playerId"] for row in merged] == ["a", "b", "c"]
    assert merged[0]["sum"] == 50


def test_merge_evicts_lowest_when_full():
    existing = [_row("a", 10), _row("b", 20)]

    merged = candidates.merge_candidate_players(existing, [_row("c", 15), _row("d", 5)], limit=2)

    assert [row["playerId"] for row in merged] == ["b", "c"]


def test_upsert_increments_pending_only_on_change(store):
    path = candidates.candidate_path("EU1")

    assert candidates.upsert_candidate_entries(store, "EU1", [_row("a", 10)]) is True
    assert candidates.upsert_candidate_entries(store, "EU1", [_row("a", 10)]) is False
    assert candidates.upsert_candidate_entries(store, "EU1", [_row("b", 20)]) is True

    data = store.data(path)
    assert data["server"] == "EU1"
    assert [row["playerId"] for row in data["players"]] == ["b", "a"]
    assert data["meta"]["pendingSincePublish"] == 2
    assert data["updatedAt"] == store.now


def test_upsert_retries_on_conflict(store, monkeypatch):
    store.seed(candidates.candidate_path("EU1"), {"players": [], "meta": {"pendingSincePublish": 4}})
    original = store.set_document
    failures = [FirestoreError(400, "version mismatch", "FAILED_PRECONDITION")]

    def flaky_set(path, data, **kwargs):
        if failures:
            raise failures.pop(0)
        return original(path, data, **kwargs)

    monkeypatch.setattr(store, "set_document", flaky_set)

    assert candidates.upsert_candidate_entries(store, "EU1", [_row("a", 1)]) is True
    assert store.data(candidates.candidate_path("EU1"))["meta"]["pendingSincePublish"] == 5


def test_upsert_gives_up_after_repeated_conflicts(store, monkeypatch):
    def always_conflict(path, data, **kwargs):
        raise FirestoreError(409, "exists", "ALREADY_EXISTS")

    monkeypatch.setattr(store, "set_document", always_conflict)

    with pytest.raises(candidates.CandidateConflictError):
        candidates.upsert_candidate_entries(store, "EU1", [_row("a", 1)], max_attempts=3)
