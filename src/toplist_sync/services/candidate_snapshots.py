import logging
from typing import Any, Iterable

from toplist_sync.classes.derivation import rank_entries, to_number_loose
from toplist_sync.classes.firestore_client import FirestoreError
from toplist_sync.classes.firestore_values import SERVER_TIMESTAMP, Increment
from toplist_sync.config import DEFAULT_CANDIDATE_LIMIT

logger = logging.getLogger(__name__)

DERIVED_COLLECTION = "stats_cache_player_derived"
SNAPSHOT_PREFIX = "snapshot_"
SNAPSHOT_SUFFIX = "_player_derived"
MAX_CONFLICT_ATTEMPTS = 5


class CandidateConflictError(RuntimeError):
    """The candidate document kept changing underneath the upsert."""


def candidate_doc_id(server_key: str) -> str:
    key = str(server_key or "all").strip() or "all"
    return f"{SNAPSHOT_PREFIX}{key}{SNAPSHOT_SUFFIX}"


def candidate_path(server_key: str) -> str:
    return f"{DERIVED_COLLECTION}/{candidate_doc_id(server_key)}"


def merge_candidate_players(
    existing: Any,
    entries: Iterable[dict[str, Any]],
    limit: int = DEFAULT_CANDIDATE_LIMIT,
) -> list[dict[str, Any]]:
    """
    Merge ranking rows into an existing candidate list without ever holding
    more than ``limit`` players; a newcomer only enters a full list by
    beating the current lowest sum.
    """
    by_id: dict[str, dict[str, Any]] = {}
    if isinstance(existing, list):
        for row in existing:
            if not isinstance(row, dict):
                continue
            player_id = str(row.get("playerId") or "")
            if player_id:
                by_id[player_id] = row

    for entry in entries:
        player_id = str(entry.get("playerId") or "")
        if not player_id:
            continue
        if player_id in by_id or len(by_id) < limit:
            by_id[player_id] = entry
            continue
        lowest_id = min(by_id, key=lambda pid: (to_number_loose(by_id[pid].get("sum")), pid))
        if to_number_loose(entry.get("sum")) > to_number_loose(by_id[lowest_id].get("sum")):
            del by_id[lowest_id]
            by_id[player_id] = entry

    return rank_entries(by_id.values(), limit)


def upsert_candidate_entries(
    client,
    server_key: str,
    entries: list[dict[str, Any]],
    *,
    limit: int = DEFAULT_CANDIDATE_LIMIT,
    max_attempts: int = MAX_CONFLICT_ATTEMPTS,
) -> bool:
    """
    Merge ``entries`` into the server's latest-candidate document.

    The write is guarded by the update time that was read (or by
    ``exists=false`` for a new document) and retried on conflict. When the
    ranked list changes, ``meta.pendingSincePublish`` is incremented in the
    same write.

    Returns:
        bool: True if the candidate list changed.
    """
    if not entries:
        return False
    path = candidate_path(server_key)

    for attempt in range(1, max_attempts + 1):
        document = client.get_document(path)
        existing = document.data.get("players") if document else None
        players = merge_candidate_players(existing, entries, limit)
        if isinstance(existing, list) and players == existing:
            logger.debug("candidate unchanged server=%s", server_key)
            return False

        data = {
            "server": server_key,
            "updatedAt": SERVER_TIMESTAMP,
            "players": players,
            "meta": {"pendingSincePublish": Increment(1)},
        }
        try:
            if document is not None:
                client.set_document(path, data, merge=True, precondition_update_time=document.update_time)
            else:
                client.set_document(path, data, merge=True, must_not_exist=True)
        except FirestoreError as exc:
            if not exc.is_precondition_failed:
                raise
            logger.info("candidate write conflict server=%s attempt=%d", server_key, attempt)
            continue
        logger.info("candidate updated server=%s players=%d", server_key, len(players))
        return True

    raise CandidateConflictError(f"candidate {path} still conflicting after {max_attempts} attempts")
