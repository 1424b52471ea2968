from __future__ import annotations

import logging
from dataclasses import dataclass, field, replace
from typing import Any, Iterator, Optional

import requests

from toplist_sync.classes.firestore_values import (
    DELETE_FIELD,
    SERVER_TIMESTAMP,
    DocumentReference,
    FieldPathLike,
    Increment,
    decode_fields,
    encode_field_path,
    encode_fields,
    encode_value,
    field_path_segments,
    get_path,
    iter_leaf_paths,
    nest_updates,
)

logger = logging.getLogger(__name__)

FIRESTORE_API_URL = "https://firestore.googleapis.com/v1"
NAME_FIELD = "__name__"

TRANSIENT_STATUS_CODES = {429, 503}
TRANSIENT_STATUSES = {"RESOURCE_EXHAUSTED", "UNAVAILABLE"}

_OPERATORS = {
    "==": "EQUAL",
    "!=": "NOT_EQUAL",
    "<": "LESS_THAN",
    "<=": "LESS_THAN_OR_EQUAL",
    ">": "GREATER_THAN",
    ">=": "GREATER_THAN_OR_EQUAL",
    "in": "IN",
    "array-contains": "ARRAY_CONTAINS",
}
_DIRECTIONS = {"asc": "ASCENDING", "desc": "DESCENDING"}


class FirestoreError(RuntimeError):
    """Non-2xx response from the Firestore REST API."""

    def __init__(self, status_code: int, message: str, status: str = "") -> None:
        super().__init__(f"Firestore request failed ({status_code} {status}): {message}")
        self.status_code = status_code
        self.status = status
        self.message = message

    @property
    def is_transient(self) -> bool:
        return self.status_code in TRANSIENT_STATUS_CODES or self.status in TRANSIENT_STATUSES

    @property
    def is_not_found(self) -> bool:
        return self.status_code == 404 or self.status == "NOT_FOUND"

    @property
    def is_missing_index(self) -> bool:
        return self.status == "FAILED_PRECONDITION" and "index" in self.message.lower()

    @property
    def is_precondition_failed(self) -> bool:
        if self.is_missing_index:
            return False
        return self.status in ("FAILED_PRECONDITION", "ALREADY_EXISTS", "ABORTED")

    @classmethod
    def from_response(cls, response: requests.Response) -> "FirestoreError":
        status = ""
        message = ""
        try:
            body = response.json()
        except ValueError:
            body = None
        if isinstance(body, list) and body:
            body = body[0]
        if isinstance(body, dict) and isinstance(body.get("error"), dict):
            status = str(body["error"].get("status") or "")
            message = str(body["error"].get("message") or "")
        if not message:
            message = (getattr(response, "text", "") or "")[:500]
        return cls(response.status_code, message, status)


@dataclass
class Document:
    path: str
    data: dict[str, Any]
    create_time: Optional[str] = None
    update_time: Optional[str] = None

    @property
    def id(self) -> str:
        return self.path.rsplit("/", 1)[-1]


@dataclass
class Query:
    """Collection (group) query; ``start_after`` holds one value per order-by field."""

    collection_id: str
    all_descendants: bool = True
    filters: list[tuple[str, str, Any]] = field(default_factory=list)
    order_by: list[tuple[str, str]] = field(default_factory=list)
    page_size: int = 500
    start_after: Optional[tuple[Any, ...]] = None

    def ordering(self) -> list[tuple[str, str]]:
        order = list(self.order_by)
        if not any(name == NAME_FIELD for name, _ in order):
            direction = order[-1][1] if order else "asc"
            order.append((NAME_FIELD, direction))
        return order

    def cursor_from(self, document: Document) -> tuple[Any, ...]:
        values: list[Any] = []
        for name, _direction in self.ordering():
            if name == NAME_FIELD:
                values.append(DocumentReference(document.path))
            else:
                values.append(get_path(document.data, name))
        return tuple(values)


class FirestoreClient:
    """
    Thin REST client for one Firestore database. Owns an authenticated
    requests.Session; every write goes through ``:commit`` so that masks,
    field deletes and transforms of a single call apply atomically.
    """

    def __init__(
        self,
        session: requests.Session,
        project_id: str,
        *,
        database_id: str = "(default)",
        timeout_sec: int = 30,
        api_url: str = FIRESTORE_API_URL,
    ) -> None:
        self.session = session
        self.project_id = project_id
        self.database_id = database_id
        self.timeout_sec = timeout_sec
        self.documents_root = f"projects/{project_id}/databases/{database_id}/documents"
        self.base_url = f"{api_url}/{self.documents_root}"

    # -----------------------
    # Utilities
    # -----------------------

    def full_name(self, path: str) -> str:
        return f"{self.documents_root}/{path.strip('/')}"

    def _relative_path(self, name: str) -> str:
        prefix = f"{self.documents_root}/"
        return name[len(prefix):] if name.startswith(prefix) else name

    def _document_from_json(self, body: dict[str, Any]) -> Document:
        return Document(
            path=self._relative_path(body["name"]),
            data=decode_fields(body.get("fields") or {}, documents_root=self.documents_root),
            create_time=body.get("createTime"),
            update_time=body.get("updateTime"),
        )

    def _encode(self, value: Any) -> dict[str, Any]:
        return encode_value(value, documents_root=self.documents_root)

    def _check(self, response: requests.Response) -> requests.Response:
        if response.status_code >= 400:
            raise FirestoreError.from_response(response)
        return response

    def _precondition(
        self,
        *,
        update_time: Optional[str] = None,
        exists: Optional[bool] = None,
    ) -> Optional[dict[str, Any]]:
        if update_time:
            return {"updateTime": update_time}
        if exists is not None:
            return {"exists": exists}
        return None

    def _build_write(
        self,
        path: str,
        updates: list[tuple[tuple[str, ...], Any]],
        *,
        use_mask: bool,
        precondition: Optional[dict[str, Any]],
    ) -> dict[str, Any]:
        fields: list[tuple[tuple[str, ...], Any]] = []
        masked: list[tuple[str, ...]] = []
        transforms: list[dict[str, Any]] = []
        for segments, value in updates:
            if value is SERVER_TIMESTAMP:
                transforms.append({"fieldPath": encode_field_path(segments), "setToServerValue": "REQUEST_TIME"})
            elif isinstance(value, Increment):
                transforms.append({"fieldPath": encode_field_path(segments), "increment": self._encode(value.amount)})
            elif value is DELETE_FIELD:
                masked.append(segments)
            else:
                fields.append((segments, value))
                masked.append(segments)

        write: dict[str, Any] = {
            "update": {
                "name": self.full_name(path),
                "fields": encode_fields(nest_updates(fields), documents_root=self.documents_root),
            }
        }
        if use_mask:
            write["updateMask"] = {"fieldPaths": [encode_field_path(segments) for segments in masked]}
        if transforms:
            write["updateTransforms"] = transforms
        if precondition:
            write["currentDocument"] = precondition
        return write

    # -----------------------
    # Public operations
    # -----------------------

    def get_document(self, path: str) -> Optional[Document]:
        response = self.session.get(f"{self.base_url}/{path.strip('/')}", timeout=self.timeout_sec)
        if response.status_code == 404:
            return None
        self._check(response)
        return self._document_from_json(response.json())

    def commit(self, writes: list[dict[str, Any]]) -> dict[str, Any]:
        response = self.session.post(
            f"{self.base_url}:commit",
            json={"writes": writes},
            timeout=self.timeout_sec,
        )
        self._check(response)
        return response.json()

    def set_document(
        self,
        path: str,
        data: dict[str, Any],
        *,
        merge: bool = False,
        precondition_update_time: Optional[str] = None,
        must_not_exist: bool = False,
    ) -> dict[str, Any]:
        """
        Write ``data`` to ``path``. With ``merge`` only the given leaf fields
        are touched; otherwise the document is replaced.
        """
        updates = list(iter_leaf_paths(data))
        if not merge and any(value is DELETE_FIELD for _, value in updates):
            raise ValueError("DELETE_FIELD requires merge=True")
        precondition = self._precondition(
            update_time=precondition_update_time,
            exists=False if must_not_exist else None,
        )
        write = self._build_write(path, updates, use_mask=merge, precondition=precondition)
        return self.commit([write])

    def update_document(
        self,
        path: str,
        updates: dict[FieldPathLike, Any],
        *,
        precondition_update_time: Optional[str] = None,
    ) -> dict[str, Any]:
        """Field-path update of an existing document (fails if it does not exist)."""
        pairs = [(field_path_segments(key), value) for key, value in updates.items()]
        precondition = self._precondition(update_time=precondition_update_time, exists=True)
        write = self._build_write(path, pairs, use_mask=True, precondition=precondition)
        return self.commit([write])

    def delete_document(self, path: str) -> None:
        response = self.session.delete(f"{self.base_url}/{path.strip('/')}", timeout=self.timeout_sec)
        self._check(response)

    def build_structured_query(self, query: Query) -> dict[str, Any]:
        structured: dict[str, Any] = {
            "from": [{"collectionId": query.collection_id, "allDescendants": query.all_descendants}],
            "limit": query.page_size,
        }
        filters = [
            {
                "fieldFilter": {
                    "field": {"fieldPath": encode_field_path(name)},
                    "op": _OPERATORS[op],
                    "value": self._encode(value),
                }
            }
            for name, op, value in query.filters
        ]
        if len(filters) == 1:
            structured["where"] = filters[0]
        elif filters:
            structured["where"] = {"compositeFilter": {"op": "AND", "filters": filters}}

        ordering = query.ordering()
        structured["orderBy"] = [
            {
                "field": {"fieldPath": name if name == NAME_FIELD else encode_field_path(name)},
                "direction": _DIRECTIONS[direction],
            }
            for name, direction in ordering
        ]
        if query.start_after is not None:
            structured["startAt"] = {
                "values": [self._encode(value) for value in query.start_after],
                "before": False,
            }
        return structured

    def run_query(self, query: Query) -> list[Document]:
        """Run one page of ``query``."""
        response = self.session.post(
            f"{self.base_url}:runQuery",
            json={"structuredQuery": self.build_structured_query(query)},
            timeout=self.timeout_sec,
        )
        self._check(response)
        documents: list[Document] = []
        for item in response.json() or []:
            if "error" in item:
                error = item["error"] or {}
                raise FirestoreError(
                    int(error.get("code") or 500),
                    str(error.get("message") or ""),
                    str(error.get("status") or ""),
                )
            if "document" in item:
                documents.append(self._document_from_json(item["document"]))
        return documents

    def stream_query(self, query: Query) -> Iterator[Document]:
        """Yield every match of ``query``, one page in memory at a time."""
        page_query = query
        while True:
            page = self.run_query(page_query)
            yield from page
            if len(page) < query.page_size:
                return
            page_query = replace(query, start_after=query.cursor_from(page[-1]))

    def list_document_paths(
        self,
        parent_path: str,
        collection_id: str,
        *,
        page_size: int = 300,
    ) -> Iterator[list[str]]:
        """Yield pages of document paths directly under ``parent_path/collection_id``."""
        url = f"{self.base_url}/{parent_path.strip('/')}/{collection_id}"
        page_token: Optional[str] = None
        while True:
            params: dict[str, Any] = {"pageSize": page_size}
            if page_token:
                params["pageToken"] = page_token
            response = self.session.get(url, params=params, timeout=self.timeout_sec)
            self._check(response)
            body = response.json() or {}
            paths = [self._relative_path(doc["name"]) for doc in body.get("documents") or []]
            if paths:
                yield paths
            page_token = body.get("nextPageToken")
            if not page_token:
                return
