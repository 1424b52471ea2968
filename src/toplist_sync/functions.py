"""
Cloud Functions (1st gen) entrypoint.

Deploy ``publish_player_latest_toplists`` with trigger event
``providers/cloud.firestore/eventTypes/document.write`` on resource
``projects/{project}/databases/(default)/documents/stats_cache_player_derived/{docId}``.
"""

import logging
import os
from typing import Any

from toplist_sync.classes.firestore_client import FirestoreClient
from toplist_sync.classes.firestore_session import FirestoreSession, fetch_metadata_token
from toplist_sync.config import load_settings
from toplist_sync.logging import configure_logging
from toplist_sync.services.candidate_snapshots import SNAPSHOT_PREFIX
from toplist_sync.services.publish_trigger import OUTCOME_IGNORED, CandidateWriteEvent, handle_candidate_write

logger = logging.getLogger(__name__)


def _resource_name(context: Any) -> str:
    resource = getattr(context, "resource", "") or ""
    if isinstance(resource, dict):
        return str(resource.get("name") or "")
    return str(resource)


def _client_for_runtime() -> tuple[FirestoreClient, int]:
    settings = load_settings()
    project = settings.project_id or os.getenv("GOOGLE_CLOUD_PROJECT") or os.getenv("GCP_PROJECT")
    if not project:
        raise ValueError("Cannot determine the Firestore project for the trigger")
    token = settings.access_token or fetch_metadata_token()
    session = FirestoreSession(token).get_session()
    return FirestoreClient(session, project, database_id=settings.database_id), settings.publish_threshold


def publish_player_latest_toplists(data: dict, context: Any) -> str:
    configure_logging()
    event = CandidateWriteEvent.from_firestore_payload(data or {}, _resource_name(context))
    if not event.doc_id.startswith(SNAPSHOT_PREFIX):
        return OUTCOME_IGNORED
    client, threshold = _client_for_runtime()
    outcome = handle_candidate_write(client, event, threshold=threshold)
    logger.info("candidate write handled doc=%s outcome=%s", event.doc_id, outcome)
    return outcome
