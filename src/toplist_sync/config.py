"""toplist_sync configuration helpers."""

from __future__ import annotations

import json
import os
from dataclasses import dataclass, field
from pathlib import Path
from typing import Any

from toplist_sync.paths import repo_file

DEFAULT_DATABASE_ID = "(default)"
DEFAULT_PUBLISH_THRESHOLD = 100
DEFAULT_CANDIDATE_LIMIT = 500
DEFAULT_PAGE_SIZE = 500


@dataclass
class Settings:
    project_id: str | None = None
    database_id: str = DEFAULT_DATABASE_ID
    access_token: str | None = field(default=None, repr=False)
    publish_threshold: int = DEFAULT_PUBLISH_THRESHOLD
    candidate_limit: int = DEFAULT_CANDIDATE_LIMIT
    page_size: int = DEFAULT_PAGE_SIZE


def load_json_config(path: Path) -> dict[str, Any]:
    if not path.is_file():
        return {}
    data = json.loads(path.read_text(encoding="utf-8"))
    if not isinstance(data, dict):
        raise ValueError(f"Config file {path} must contain a JSON object")
    return data


def _positive_int(value: Any, name: str, default: int) -> int:
    if value in (None, ""):
        return default
    try:
        parsed = int(value)
    except (TypeError, ValueError) as exc:
        raise ValueError(f"{name} must be an integer, got {value!r}") from exc
    if parsed <= 0:
        raise ValueError(f"{name} must be positive, got {parsed}")
    return parsed


def resolve_settings(config_data: dict[str, Any]) -> Settings:
    firestore = config_data.get("firestore") or {}
    toplists = config_data.get("toplists") or {}

    project_id = os.getenv("FIRESTORE_PROJECT_ID") or firestore.get("project_id")
    database_id = os.getenv("FIRESTORE_DATABASE") or firestore.get("database_id") or DEFAULT_DATABASE_ID
    access_token = os.getenv("FIRESTORE_ACCESS_TOKEN") or None

    return Settings(
        project_id=project_id or None,
        database_id=database_id,
        access_token=access_token,
        publish_threshold=_positive_int(
            os.getenv("TOPLIST_PUBLISH_THRESHOLD") or toplists.get("publish_threshold"),
            "publish_threshold",
            DEFAULT_PUBLISH_THRESHOLD,
        ),
        candidate_limit=_positive_int(
            os.getenv("TOPLIST_CANDIDATE_LIMIT") or toplists.get("candidate_limit"),
            "candidate_limit",
            DEFAULT_CANDIDATE_LIMIT,
        ),
        page_size=_positive_int(
            os.getenv("TOPLIST_PAGE_SIZE") or toplists.get("page_size"),
            "page_size",
            DEFAULT_PAGE_SIZE,
        ),
    )


def load_settings() -> Settings:
    config_data = load_json_config(repo_file("config.json"))
    return resolve_settings(config_data)
