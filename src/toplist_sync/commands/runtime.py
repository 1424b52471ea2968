import json
from typing import Any, Optional

from dotenv import load_dotenv

from toplist_sync.classes.firestore_client import FirestoreClient
from toplist_sync.classes.firestore_session import create_client
from toplist_sync.config import Settings, load_settings
from toplist_sync.logging import configure_logging


def configure_runtime() -> Settings:
    load_dotenv()
    configure_logging()
    return load_settings()


def build_client(settings: Settings, project_id: Optional[str] = None) -> FirestoreClient:
    return create_client(settings, project_id=project_id)


def to_stable_json(payload: Any) -> str:
    return (
        json.dumps(
            payload,
            sort_keys=True,
            indent=2,
            separators=(",", ":"),
            ensure_ascii=True,
            default=str,
        )
        + "\n"
    )
