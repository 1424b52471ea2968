import datetime
import logging
import time
from collections import Counter, defaultdict
from dataclasses import dataclass, field
from typing import Any, Callable

from toplist_sync.classes.derivation import ALL_SERVER_KEY, build_snapshot_entry, derive
from toplist_sync.classes.firestore_client import FirestoreError, Query
from toplist_sync.classes.toplist_meta import load_toplist_meta, record_run
from toplist_sync.config import DEFAULT_CANDIDATE_LIMIT, DEFAULT_PAGE_SIZE
from toplist_sync.services.candidate_snapshots import (
    DERIVED_COLLECTION,
    CandidateConflictError,
    upsert_candidate_entries,
)

logger = logging.getLogger(__name__)

PLAYERS_COLLECTION = "players"
LATEST_COLLECTION_ID = "latest"
LATEST_DOC_ID = "latest"
WATERMARK_FIELD = "updatedAt"


def current_millis() -> int:
    return int(time.time() * 1000)


def millis_to_datetime(value: int) -> datetime.datetime:
    return datetime.datetime.fromtimestamp(value / 1000, tz=datetime.timezone.utc)


def player_id_from_latest_path(path: str) -> str | None:
    """Return the player id for ``players/{id}/latest/latest``, None for any other shape."""
    parts = path.strip("/").split("/")
    if len(parts) != 4:
        return None
    root, player_id, collection, doc_id = parts
    if root != PLAYERS_COLLECTION or collection != LATEST_COLLECTION_ID or doc_id != LATEST_DOC_ID:
        return None
    return player_id or None


def derived_path(player_id: str) -> str:
    return f"{DERIVED_COLLECTION}/{player_id}"


def build_latest_query(watermark_ms: int, page_size: int = DEFAULT_PAGE_SIZE) -> Query:
    return Query(
        collection_id=LATEST_COLLECTION_ID,
        filters=[(WATERMARK_FIELD, ">", millis_to_datetime(watermark_ms))],
        order_by=[(WATERMARK_FIELD, "asc")],
        page_size=page_size,
    )


@dataclass
class UpdateSummary:
    watermark_before: int
    watermark_after: int | None = None
    scanned: int = 0
    derived: int = 0
    skipped_non_player: int = 0
    scope_counts: dict[str, int] = field(default_factory=dict)
    candidates_changed: list[str] = field(default_factory=list)
    candidates_failed: list[str] = field(default_factory=list)

    def as_dict(self) -> dict[str, Any]:
        return {
            "watermarkBefore": self.watermark_before,
            "watermarkAfter": self.watermark_after,
            "scanned": self.scanned,
            "derived": self.derived,
            "skippedNonPlayer": self.skipped_non_player,
            "scopeCounts": dict(sorted(self.scope_counts.items())),
            "candidatesChanged": sorted(self.candidates_changed),
            "candidatesFailed": sorted(self.candidates_failed),
        }


def _refresh_candidates(
    client,
    entries_by_server: dict[str, list[dict[str, Any]]],
    candidate_limit: int,
    summary: UpdateSummary,
) -> None:
    for server_key in sorted(entries_by_server):
        try:
            changed = upsert_candidate_entries(
                client,
                server_key,
                entries_by_server[server_key],
                limit=candidate_limit,
            )
        except (FirestoreError, CandidateConflictError) as exc:
            # Counted, the watermark still advances.
            logger.warning("candidate refresh failed server=%s error=%s", server_key, exc)
            summary.candidates_failed.append(server_key)
            continue
        if changed:
            summary.candidates_changed.append(server_key)


def run_update(
    client,
    *,
    page_size: int = DEFAULT_PAGE_SIZE,
    refresh_candidates: bool = False,
    candidate_limit: int = DEFAULT_CANDIDATE_LIMIT,
    now_ms: Callable[[], int] = current_millis,
) -> UpdateSummary:
    """
    Re-derive every player whose latest document changed after the stored
    watermark and upsert it into the derived cache.

    The watermark only moves after the whole stream has been consumed; an
    error while streaming propagates and leaves it untouched, so the next
    run reprocesses the same window.

    Args:
        client: FirestoreClient (or a compatible double).
        page_size (int): documents per query page.
        refresh_candidates (bool): also merge the derived rows into the
            per-server latest-candidate documents.
        candidate_limit (int): bound on candidate list length.
        now_ms: clock returning epoch milliseconds.

    Returns:
        UpdateSummary: counters for the run.
    """
    started_ms = now_ms()
    meta = load_toplist_meta(client)
    summary = UpdateSummary(watermark_before=meta.last_computed_at)
    counts: Counter[str] = Counter()
    entries_by_server: dict[str, list[dict[str, Any]]] = defaultdict(list)

    logger.info("derived cache update started watermark=%d", meta.last_computed_at)
    for document in client.stream_query(build_latest_query(meta.last_computed_at, page_size)):
        summary.scanned += 1
        player_id = player_id_from_latest_path(document.path)
        if player_id is None:
            summary.skipped_non_player += 1
            logger.debug("skipping non-player document path=%s", document.path)
            continue

        record = derive(document.data, player_id=player_id)
        client.set_document(derived_path(player_id), record.to_document(), merge=True)
        summary.derived += 1
        counts.update(record.scope_ids())

        if refresh_candidates and record.server_key != ALL_SERVER_KEY:
            entry = build_snapshot_entry(record, last_scan=document.data.get("timestampRaw"))
            entry["playerId"] = player_id
            entries_by_server[record.server_key].append(entry)

    if entries_by_server:
        _refresh_candidates(client, entries_by_server, candidate_limit, summary)

    record_run(client, started_ms, counts)
    summary.watermark_after = started_ms
    summary.scope_counts = dict(counts)
    logger.info(
        "derived cache update finished scanned=%d derived=%d skipped=%d scopes=%d",
        summary.scanned,
        summary.derived,
        summary.skipped_non_player,
        len(counts),
    )
    return summary
