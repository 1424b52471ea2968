"""
Publish bookkeeping stored on a latest-candidate document.

Two encodings exist in the wild: the nested ``meta.pendingSincePublish``
map field and an older one where ``"meta.pendingSincePublish"`` is a literal
top-level key. Both are read into one ``PublishState``; writes only ever use
the nested form and delete the legacy keys.
"""

from __future__ import annotations

import math
from dataclasses import dataclass
from typing import Any, Mapping

from toplist_sync.classes.firestore_values import DELETE_FIELD, SERVER_TIMESTAMP

META_FIELD = "meta"
PENDING_FIELD = "pendingSincePublish"
LAST_PUBLISHED_FIELD = "lastPublishedAt"

NESTED_PENDING_PATH = (META_FIELD, PENDING_FIELD)
NESTED_LAST_PUBLISHED_PATH = (META_FIELD, LAST_PUBLISHED_FIELD)
LEGACY_PENDING_KEY = f"{META_FIELD}.{PENDING_FIELD}"
LEGACY_LAST_PUBLISHED_KEY = f"{META_FIELD}.{LAST_PUBLISHED_FIELD}"
LEGACY_KEYS = (LEGACY_PENDING_KEY, LEGACY_LAST_PUBLISHED_KEY)


def as_counter(value: Any) -> int | float | None:
    """Return a finite number for numeric input (numbers or numeric strings), else None."""
    if value is None or isinstance(value, bool):
        return None
    if isinstance(value, (int, float)):
        number = value
    elif isinstance(value, str) and value.strip():
        try:
            number = float(value.strip())
        except ValueError:
            return None
    else:
        return None
    if not math.isfinite(number):
        return None
    if isinstance(number, float) and number.is_integer():
        return int(number)
    return number


@dataclass(frozen=True)
class PublishState:
    pending: int | float | None
    nested_pending: int | float | None
    legacy_pending: int | float | None
    has_nested_last_published: bool
    legacy_last_published_at: Any
    legacy_keys: tuple[str, ...]

    @classmethod
    def from_document(cls, data: Mapping[str, Any]) -> "PublishState":
        meta = data.get(META_FIELD)
        if not isinstance(meta, Mapping):
            meta = {}
        nested_pending = as_counter(meta.get(PENDING_FIELD))
        legacy_pending = as_counter(data.get(LEGACY_PENDING_KEY))
        pending = nested_pending if nested_pending is not None else legacy_pending
        return cls(
            pending=pending,
            nested_pending=nested_pending,
            legacy_pending=legacy_pending,
            has_nested_last_published=LAST_PUBLISHED_FIELD in meta,
            legacy_last_published_at=data.get(LEGACY_LAST_PUBLISHED_KEY),
            legacy_keys=tuple(key for key in LEGACY_KEYS if key in data),
        )

    @property
    def needs_legacy_cleanup(self) -> bool:
        return bool(self.legacy_keys)

    def _legacy_deletes(self) -> dict[Any, Any]:
        return {(key,): DELETE_FIELD for key in self.legacy_keys}

    def migration_updates(self) -> dict[Any, Any]:
        """Copy legacy values forward where the nested form lacks them, then drop the legacy keys."""
        updates: dict[Any, Any] = {}
        if self.nested_pending is None and self.legacy_pending is not None:
            updates[NESTED_PENDING_PATH] = self.legacy_pending
        if not self.has_nested_last_published and self.legacy_last_published_at is not None:
            updates[NESTED_LAST_PUBLISHED_PATH] = self.legacy_last_published_at
        updates.update(self._legacy_deletes())
        return updates

    def reset_updates(self, threshold: int) -> dict[Any, Any]:
        """Post-publish write: carry the remainder over instead of zeroing."""
        if self.pending is None:
            raise ValueError("cannot reset an unresolved pending counter")
        remainder = self.pending % threshold
        if isinstance(remainder, float) and remainder.is_integer():
            remainder = int(remainder)
        updates: dict[Any, Any] = {
            NESTED_PENDING_PATH: remainder,
            NESTED_LAST_PUBLISHED_PATH: SERVER_TIMESTAMP,
        }
        updates.update(self._legacy_deletes())
        return updates
