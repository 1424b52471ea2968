import pytest

from toplist_sync.classes import firestore_client as client_module
from toplist_sync.classes.firestore_values import DELETE_FIELD, SERVER_TIMESTAMP, DocumentReference, Increment

ROOT = "projects/demo/databases/(default)/documents"
BASE = f"https://firestore.googleapis.com/v1/{ROOT}"


class FakeResponse:
    def __init__(self, status_code=200, payload=None, text=""):
        self.status_code = status_code
        self._payload = payload
        self.text = text

    def json(self):
        if self._payload is None:
            raise ValueError("no json")
        return self._payload


class FakeSession:
    def __init__(self, responses):
        self.responses = list(responses)
        self.requests = []

    def _next(self, method, url, **kwargs):
        self.requests.append((method, url, kwargs))
        return self.responses.pop(0)

    def get(self, url, **kwargs):
        return self._next("GET", url, **kwargs)

    def post(self, url, **kwargs):
        return self._next("POST", url, **kwargs)

    def delete(self, url, **kwargs):
        return self._next("DELETE", url, **kwargs)


def _client(responses):
    session = FakeSession(responses)
    return client_module.FirestoreClient(session, "demo"), session


def test_get_document_decodes_fields_and_returns_none_on_404():
    client, session = _client(
        [
            FakeResponse(
                200,
                {
                    "name": f"{ROOT}/players/1/latest/latest",
                    "fields": {"name": {"stringValue": "Hero"}},
                    "updateTime": "2026-01-01T00:00:00.000001Z",
                },
            ),
            FakeResponse(404, {"error": {"code": 404, "status": "NOT_FOUND", "message": "missing"}}),
        ]
    )

    document = client.get_document("players/1/latest/latest")

    assert document.path == "players/1/latest/latest"
    assert document.id == "latest"
    assert document.data == {"name": "Hero"}
    assert document.update_time == "2026-01-01T00:00:00.000001Z"
    assert client.get_document("players/2/latest/latest") is None
    assert session.requests[0][1] == f"{BASE}/players/1/latest/latest"


def test_set_document_merge_builds_mask_and_transforms():
    client, session = _client([FakeResponse(200, {"writeResults": [{}]})])

    client.set_document(
        "stats_public/toplists_meta_v1",
        {
            "lastComputedAt": 5,
            "scopeChange": {"EU_EU1_sum": {"changedSinceLastRebuild": Increment(2), "lastChangeAtMs": 5}},
            "publishedAt": SERVER_TIMESTAMP,
        },
        merge=True,
    )

    method, url, kwargs = session.requests[0]
    write = kwargs["json"]["writes"][0]
    assert (method, url) == ("POST", f"{BASE}:commit")
    assert write["update"]["name"] == f"{ROOT}/stats_public/toplists_meta_v1"
    assert write["updateMask"]["fieldPaths"] == ["lastComputedAt", "scopeChange.EU_EU1_sum.lastChangeAtMs"]
    assert write["updateTransforms"] == [
        {"fieldPath": "scopeChange.EU_EU1_sum.changedSinceLastRebuild", "increment": {"integerValue": "2"}},
        {"fieldPath": "publishedAt", "setToServerValue": "REQUEST_TIME"},
    ]
    assert "currentDocument" not in write


def test_update_document_deletes_legacy_key_with_precondition():
    client, session = _client([FakeResponse(200, {"writeResults": [{}]})])

    client.update_document(
        "stats_cache_player_derived/snapshot_EU1_player_derived",
        {("meta", "pendingSincePublish"): 3, ("meta.pendingSincePublish",): DELETE_FIELD},
        precondition_update_time="2026-01-01T00:00:00Z",
    )

    write = session.requests[0][2]["json"]["writes"][0]
    assert write["updateMask"]["fieldPaths"] == ["meta.pendingSincePublish", "`meta.pendingSincePublish`"]
    assert write["update"]["fields"] == {
        "meta": {"mapValue": {"fields": {"pendingSincePublish": {"integerValue": "3"}}}}
    }
    assert write["currentDocument"] == {"updateTime": "2026-01-01T00:00:00Z"}


def test_update_document_without_update_time_requires_existence():
    client, session = _client([FakeResponse(200, {})])

    client.update_document("a/b", {"x": 1})

    assert session.requests[0][2]["json"]["writes"][0]["currentDocument"] == {"exists": True}


def test_set_document_rejects_delete_without_merge():
    client, _session = _client([])

    with pytest.raises(ValueError):
        client.set_document("a/b", {"x": DELETE_FIELD})


def test_structured_query_appends_name_order_and_cursor():
    client, _session = _client([])
    query = client_module.Query(
        collection_id="scans",
        filters=[("server", "==", "EU1"), ("timestamp", ">=", 10)],
        order_by=[("playerId", "asc")],
        page_size=2,
        start_after=("7", DocumentReference("players/7/scans/1")),
    )

    structured = client.build_structured_query(query)

    assert structured["from"] == [{"collectionId": "scans", "allDescendants": True}]
    assert structured["where"]["compositeFilter"]["op"] == "AND"
    assert [order["field"]["fieldPath"] for order in structured["orderBy"]] == ["playerId", "__name__"]
    assert structured["startAt"] == {
        "values": [{"stringValue": "7"}, {"referenceValue": f"{ROOT}/players/7/scans/1"}],
        "before": False,
    }
    assert structured["limit"] == 2


def test_stream_query_paginates_with_cursor():
    def doc(pid):
        return {"document": {"name": f"{ROOT}/players/{pid}/latest/latest", "fields": {"playerId": {"stringValue": pid}}}}

    client, session = _client(
        [
            FakeResponse(200, [doc("1"), doc("2")]),
            FakeResponse(200, [doc("3"), {"readTime": "x"}]),
        ]
    )
    query = client_module.Query(collection_id="latest", order_by=[("playerId", "asc")], page_size=2)

    paths = [document.path for document in client.stream_query(query)]

    assert paths == ["players/1/latest/latest", "players/2/latest/latest", "players/3/latest/latest"]
    second = session.requests[1][2]["json"]["structuredQuery"]
    assert second["startAt"]["values"][0] == {"stringValue": "2"}


def test_run_query_raises_missing_index_error():
    client, _session = _client(
        [
            FakeResponse(
                400,
                [{"error": {"code": 400, "status": "FAILED_PRECONDITION", "message": "The query requires an index."}}],
            )
        ]
    )

    with pytest.raises(client_module.FirestoreError) as excinfo:
        client.run_query(client_module.Query(collection_id="scans"))

    assert excinfo.value.is_missing_index
    assert not excinfo.value.is_precondition_failed
    assert not excinfo.value.is_transient


def test_list_document_paths_follows_page_tokens():
    client, session = _client(
        [
            FakeResponse(200, {"documents": [{"name": f"{ROOT}/players/1/scans/a"}], "nextPageToken": "t1"}),
            FakeResponse(200, {"documents": [{"name": f"{ROOT}/players/1/scans/b"}]}),
        ]
    )

    pages = list(client.list_document_paths("players/1", "scans", page_size=1))

    assert pages == [["players/1/scans/a"], ["players/1/scans/b"]]
    assert session.requests[1][2]["params"] == {"pageSize": 1, "pageToken": "t1"}


@pytest.mark.parametrize(
    ("status_code", "status", "transient"),
    [(429, "RESOURCE_EXHAUSTED", True), (503, "UNAVAILABLE", True), (500, "INTERNAL", False), (404, "NOT_FOUND", False)],
)
def test_firestore_error_classification(status_code, status, transient):
    error = client_module.FirestoreError.from_response(
        FakeResponse(status_code, {"error": {"status": status, "message": "boom"}})
    )

    assert error.is_transient is transient
    assert error.is_not_found is (status_code == 404)
    assert error.message == "boom"
