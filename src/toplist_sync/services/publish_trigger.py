"""
Publish the per-server latest toplist once enough candidate changes piled up.

Runs once per write to a ``snapshot_<code>_player_derived`` candidate document.
Delivery is at-least-once and may be concurrent for the same server, so the
counter reset after a publish is guarded by the update time of the write that
triggered it.
"""

import datetime
import logging
import math
import re
from dataclasses import dataclass
from typing import Any, Mapping, Optional

from toplist_sync.classes.firestore_client import FirestoreError
from toplist_sync.classes.firestore_values import SERVER_TIMESTAMP, decode_fields, parse_rfc3339
from toplist_sync.classes.publish_state import PublishState
from toplist_sync.config import DEFAULT_PUBLISH_THRESHOLD
from toplist_sync.services.candidate_snapshots import DERIVED_COLLECTION, SNAPSHOT_PREFIX

logger = logging.getLogger(__name__)

PUBLISH_THRESHOLD = DEFAULT_PUBLISH_THRESHOLD
PUBLIC_SERVERS_PATH = "stats_public/toplists_players_v1/lists/latest_toplists/servers"

OUTCOME_IGNORED = "ignored"
OUTCOME_DELETED = "deleted"
OUTCOME_UNCHANGED = "unchanged"
OUTCOME_PENDING = "pending"
OUTCOME_MIGRATED = "migrated"
OUTCOME_PUBLISHED = "published"
OUTCOME_UNRESOLVED_SERVER = "unresolved_server"
OUTCOME_SUPERSEDED = "superseded"

_CANDIDATE_DOC_ID = re.compile(r"^snapshot_(.+)_player_derived$")


@dataclass(frozen=True)
class CandidateWriteEvent:
    doc_id: str
    before: Optional[dict[str, Any]]
    after: Optional[dict[str, Any]]
    after_update_time: Optional[str] = None

    @classmethod
    def from_firestore_payload(cls, payload: Mapping[str, Any], resource: str = "") -> "CandidateWriteEvent":
        """Decode a Cloud Functions (gen1) Firestore ``write`` event."""
        value = payload.get("value") or {}
        old_value = payload.get("oldValue") or {}
        name = value.get("name") or old_value.get("name") or resource or ""
        return cls(
            doc_id=str(name).rstrip("/").rsplit("/", 1)[-1],
            before=decode_fields(old_value.get("fields") or {}) if old_value.get("name") else None,
            after=decode_fields(value.get("fields") or {}) if value.get("name") else None,
            after_update_time=value.get("updateTime"),
        )


def candidate_doc_path(doc_id: str) -> str:
    return f"{DERIVED_COLLECTION}/{doc_id}"


def public_snapshot_path(code: str) -> str:
    return f"{PUBLIC_SERVERS_PATH}/{code}"


def parse_server_code(doc_id: str, fallback: Any = None) -> Optional[str]:
    match = _CANDIDATE_DOC_ID.match(doc_id or "")
    if match and match.group(1).strip():
        return match.group(1).strip().upper()
    if isinstance(fallback, str) and fallback.strip():
        return fallback.strip().upper()
    return None


def to_millis(value: Any) -> Optional[float]:
    if isinstance(value, bool) or value is None:
        return None
    if isinstance(value, (int, float)):
        return value if math.isfinite(value) else None
    if isinstance(value, datetime.datetime):
        if value.tzinfo is None:
            value = value.replace(tzinfo=datetime.timezone.utc)
        return int(value.timestamp() * 1000)
    if isinstance(value, str) and value.strip():
        try:
            return int(parse_rfc3339(value.strip()).timestamp() * 1000)
        except ValueError:
            return None
    return None


def _text(value: Any) -> str:
    return "" if value is None else str(value)


def _pick_key(row: Any) -> str:
    if not isinstance(row, Mapping):
        return ""
    identifier = next(
        (row.get(key) for key in ("playerId", "id", "name") if row.get(key) is not None),
        "",
    )
    return f"{_text(identifier)}:{_text(row.get('sum'))}:{_text(row.get('level'))}"


def build_content_signature(data: Optional[Mapping[str, Any]]) -> str:
    """
    Cheap fingerprint of a candidate: content hash, updatedAt, list length and
    the first, middle and last rows. Changes confined to other interior rows
    are not detected.
    """
    if not data:
        return ""
    hash_value = data.get("hash") if isinstance(data.get("hash"), str) else data.get("contentHash")
    if not isinstance(hash_value, str):
        hash_value = ""
    millis = to_millis(data.get("updatedAt"))
    players = data.get("players")
    if not isinstance(players, list):
        players = []
    count = len(players)
    first = _pick_key(players[0]) if count else ""
    middle = _pick_key(players[count // 2]) if count > 2 else ""
    last = _pick_key(players[-1]) if count > 1 else first
    return "|".join([hash_value, "" if millis is None else str(millis), str(count), first, middle, last])


def _publish(client, code: str, data: Mapping[str, Any]) -> None:
    players = data.get("players")
    client.set_document(
        public_snapshot_path(code),
        {
            "server": code,
            "updatedAt": data.get("updatedAt"),
            "players": players if isinstance(players, list) else [],
            "publishedAt": SERVER_TIMESTAMP,
        },
        merge=True,
    )


def _same_instant(left: str, right: str) -> bool:
    if left == right:
        return True
    try:
        return parse_rfc3339(left) == parse_rfc3339(right)
    except ValueError:
        return False


def _event_is_current(client, event: CandidateWriteEvent) -> bool:
    """False when the candidate was written again (or deleted) after ``event``."""
    if not event.after_update_time:
        return True
    current = client.get_document(candidate_doc_path(event.doc_id))
    if current is None or not current.update_time:
        return False
    return _same_instant(current.update_time, event.after_update_time)


def _guarded_update(client, event: CandidateWriteEvent, updates: dict[Any, Any]) -> bool:
    try:
        client.update_document(
            candidate_doc_path(event.doc_id),
            updates,
            precondition_update_time=event.after_update_time,
        )
    except FirestoreError as exc:
        if not exc.is_precondition_failed:
            raise
        logger.info("candidate changed since event doc=%s, leaving it to the newer event", event.doc_id)
        return False
    return True


def handle_candidate_write(client, event: CandidateWriteEvent, *, threshold: int = PUBLISH_THRESHOLD) -> str:
    """
    Decide between no-op, legacy migration and publish for one candidate write.

    Returns:
        str: one of the ``OUTCOME_*`` constants.
    """
    if not event.doc_id.startswith(SNAPSHOT_PREFIX):
        return OUTCOME_IGNORED
    if event.after is None:
        logger.debug("candidate deleted doc=%s", event.doc_id)
        return OUTCOME_DELETED

    data = event.after
    before_signature = build_content_signature(event.before) if event.before is not None else ""
    after_signature = build_content_signature(data)
    content_changed = event.before is None or not before_signature or before_signature != after_signature

    state = PublishState.from_document(data)
    if not content_changed and not state.needs_legacy_cleanup:
        return OUTCOME_UNCHANGED

    should_publish = content_changed and state.pending is not None and state.pending >= threshold
    if not should_publish:
        updates = state.migration_updates()
        if not updates:
            logger.debug("candidate pending doc=%s pending=%s", event.doc_id, state.pending)
            return OUTCOME_PENDING
        if not _guarded_update(client, event, updates):
            return OUTCOME_SUPERSEDED
        logger.info("legacy publish fields migrated doc=%s keys=%s", event.doc_id, ",".join(state.legacy_keys))
        return OUTCOME_MIGRATED

    code = parse_server_code(event.doc_id, data.get("server"))
    if not code:
        logger.warning("cannot resolve server code doc=%s", event.doc_id)
        return OUTCOME_UNRESOLVED_SERVER

    if not _event_is_current(client, event):
        logger.info("candidate changed since event doc=%s, skipping stale publish", event.doc_id)
        return OUTCOME_SUPERSEDED
    _publish(client, code, data)
    logger.info("published latest toplist server=%s pending=%s", code, state.pending)
    if not _guarded_update(client, event, state.reset_updates(threshold)):
        return OUTCOME_SUPERSEDED
    return OUTCOME_PUBLISHED
