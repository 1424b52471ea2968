from __future__ import annotations

import logging
from dataclasses import dataclass, field
from typing import Any, Mapping

from toplist_sync.classes.firestore_values import Increment

logger = logging.getLogger(__name__)

TOPLIST_META_PATH = "stats_public/toplists_meta_v1"


def _to_int(value: Any) -> int | None:
    if value in (None, "") or isinstance(value, bool):
        return None
    try:
        return int(value)
    except (TypeError, ValueError):
        return None


@dataclass
class ScopeChange:
    last_change_at_ms: int | None = None
    changed_since_last_rebuild: int = 0
    last_rebuild_at_ms: int | None = None


@dataclass
class ToplistMeta:
    last_computed_at: int = 0
    scope_change: dict[str, ScopeChange] = field(default_factory=dict)

    @classmethod
    def from_document(cls, data: Mapping[str, Any] | None) -> "ToplistMeta":
        """
        Parse the control document; missing or malformed fields fall back to
        defaults so that a fresh database starts from watermark 0.
        """
        if not data:
            return cls()
        scopes: dict[str, ScopeChange] = {}
        raw_scopes = data.get("scopeChange")
        if isinstance(raw_scopes, dict):
            for scope_id, raw in raw_scopes.items():
                if not isinstance(raw, dict):
                    continue
                scopes[str(scope_id)] = ScopeChange(
                    last_change_at_ms=_to_int(raw.get("lastChangeAtMs")),
                    changed_since_last_rebuild=_to_int(raw.get("changedSinceLastRebuild")) or 0,
                    last_rebuild_at_ms=_to_int(raw.get("lastRebuildAtMs")),
                )
        return cls(last_computed_at=_to_int(data.get("lastComputedAt")) or 0, scope_change=scopes)


def load_toplist_meta(client) -> ToplistMeta:
    document = client.get_document(TOPLIST_META_PATH)
    meta = ToplistMeta.from_document(document.data if document else None)
    logger.debug("toplist meta watermark=%d scopes=%d", meta.last_computed_at, len(meta.scope_change))
    return meta


def build_run_update(started_ms: int, counts: Mapping[str, int]) -> dict[str, Any]:
    scope_change = {
        scope_id: {
            "changedSinceLastRebuild": Increment(count),
            "lastChangeAtMs": started_ms,
        }
        for scope_id, count in sorted(counts.items())
        if count > 0
    }
    update: dict[str, Any] = {"lastComputedAt": started_ms}
    if scope_change:
        update["scopeChange"] = scope_change
    return update


def record_run(client, started_ms: int, counts: Mapping[str, int]) -> None:
    """
    Advance the watermark and bump per-scope change counters in one merge
    write; the increments are server-side transforms.
    """
    client.set_document(TOPLIST_META_PATH, build_run_update(started_ms, counts), merge=True)
    logger.info("toplist meta watermark=%d scopes touched=%d", started_ms, len(counts))
