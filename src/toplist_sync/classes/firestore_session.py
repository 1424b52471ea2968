import logging
from typing import Optional

import requests

from toplist_sync.classes.firestore_client import FirestoreClient
from toplist_sync.config import Settings

logger = logging.getLogger(__name__)

METADATA_TOKEN_URL = (
    "http://metadata.google.internal/computeMetadata/v1/instance/service-accounts/default/token"
)


class CredentialError(RuntimeError):
    """No bearer credential is available for the Firestore REST API."""


def fetch_metadata_token(timeout_sec: int = 5) -> str:
    """Read an access token from the GCE/Cloud Functions metadata server."""
    response = requests.get(METADATA_TOKEN_URL, headers={"Metadata-Flavor": "Google"}, timeout=timeout_sec)
    response.raise_for_status()
    token = str(response.json().get("access_token") or "")
    if not token:
        raise CredentialError("Metadata server returned no access_token")
    return token


class FirestoreSession:
    """Create and hold a requests.Session carrying a bearer credential."""

    def __init__(self, access_token: str) -> None:
        if not access_token:
            raise CredentialError("A bearer access token is required")
        self.session = self.setup_session(access_token)

    def get_session(self) -> requests.Session:
        """Return the configured requests session."""
        return self.session

    def setup_session(self, access_token: str) -> requests.Session:
        session = requests.Session()
        session.headers.update(
            {
                "Authorization": f"Bearer {access_token}",
                "Content-Type": "application/json",
            }
        )
        return session


def create_client(
    settings: Settings,
    *,
    project_id: Optional[str] = None,
    access_token: Optional[str] = None,
) -> FirestoreClient:
    """
    Build a FirestoreClient from settings, with optional explicit overrides.

    Raises:
        CredentialError: if no access token is configured.
        ValueError: if no project id is configured.
    """
    project = project_id or settings.project_id
    if not project:
        raise ValueError("Firestore project id missing (pass --project or set FIRESTORE_PROJECT_ID)")
    token = access_token or settings.access_token
    if not token:
        raise CredentialError(
            "FIRESTORE_ACCESS_TOKEN is not set; export a token, e.g. from `gcloud auth print-access-token`"
        )
    logger.debug("creating firestore client project=%s database=%s", project, settings.database_id)
    session = FirestoreSession(token).get_session()
    return FirestoreClient(session, project, database_id=settings.database_id)
