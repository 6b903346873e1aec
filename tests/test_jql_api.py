"""
Tests for the JQL Engine FastAPI application.

Tests API endpoints for query conversion and execution, multi-index joins,
saved query CRUD operations and the health check. Uses TestClient with an
in-memory search client and a temporary saved query file.
"""

import pytest
from fastapi.testclient import TestClient

from jql_engine.api import ValidationState, create_app
from jql_engine.config import Settings
from jql_engine.sources import SearchResponse
from jql_engine.storage import SavedQueryStorage


RECORDS = {
    "patients": [
        {"pid": "p1", "name": "Ann"},
        {"pid": "p2", "name": "Bob"},
        {"pid": "p3", "name": "Cy"},
    ],
    "visits": [
        {"patient": "p1", "ward": "A"},
        {"patient": "p1", "ward": "B"},
        {"patient": "p2", "ward": "C"},
    ],
}


class RecordingSearchClient:
    """Serves fixed records per index and records every search call."""

    def __init__(self, records_by_index, fail_with=None):
        self.records_by_index = records_by_index
        self.fail_with = fail_with
        self.calls = []

    def search(self, index, query, from_=0, size=50, sort=None, source=True):
        self.calls.append({
            "index": index,
            "query": query,
            "from_": from_,
            "size": size,
            "sort": sort,
            "source": source,
        })
        if self.fail_with is not None:
            raise self.fail_with

        indexes = index.split(",") if isinstance(index, str) else list(index)
        hits = [
            {"_id": str(position), "_index": name, "_source": record}
            for name in indexes
            for position, record in enumerate(self.records_by_index.get(name, []))
        ]
        return SearchResponse(total=len(hits), hits=hits[from_:from_ + size], took=1)

    def ping(self):
        return self.fail_with is None


@pytest.fixture
def settings(tmp_path):
    """Settings with a small allow-list and a temporary store."""
    return Settings(
        allowed_indexes=["patients", "visits", "health-*"],
        project_index_mapping={"health": "health-data"},
        saved_queries_path=str(tmp_path / "saved_queries.json"),
    )


@pytest.fixture
def search_client():
    return RecordingSearchClient(RECORDS)


@pytest.fixture
def storage(settings):
    return SavedQueryStorage(settings.saved_queries_path)


@pytest.fixture
def client(settings, search_client, storage):
    """Create a test client with an in-memory search backend."""
    app = create_app(settings, search_client=search_client, saved_queries=storage)
    return TestClient(app)


def join_body(join_type="inner", right_source=None, **extra):
    body = {
        "joins": [{
            "left_source": {"type": "index", "id": "patients"},
            "right_source": right_source or {"type": "index", "id": "visits"},
            "left_field": "pid",
            "right_field": "patient",
            "join_type": join_type,
        }],
    }
    body.update(extra)
    return body


def create_saved_query(client, **overrides):
    payload = {
        "name": "Ward A visits",
        "description": "Visits to ward A",
        "jql": "project = visits AND ward = A",
        "tags": ["ward"],
    }
    payload.update(overrides)
    response = client.post("/api/saved-queries", json=payload)
    assert response.status_code == 200
    return response.json()


class TestQueryEndpoints:
    """Tests for JQL conversion, validation and execution."""

    def test_convert(self, client):
        """Test converting JQL into an Elasticsearch query."""
        response = client.post(
            "/api/query/convert",
            json={"jql": 'project = health AND status = "Open" order by created desc'},
        )

        assert response.status_code == 200
        data = response.json()
        assert data["indexes"] == ["health-data"]
        assert data["query"] == {"bool": {"must": [{"term": {"status.keyword": "Open"}}]}}
        assert data["sort"] == [{"created.keyword": {"order": "desc"}}]

    def test_convert_invalid_jql(self, client):
        """Test that invalid JQL returns a coded error."""
        response = client.post("/api/query/convert", json={"jql": "region in ()"})

        assert response.status_code == 400
        error = response.json()["error"]
        assert error["code"] == "INVALID_JQL"
        assert error["details"][0]["message"] == "IN operator requires at least one value"

    def test_validate(self, client):
        """Test validation with a warning for an unknown project."""
        response = client.post("/api/query/validate", json={"jql": "project = billing"})

        assert response.status_code == 200
        validation = ValidationState(**response.json())
        assert validation.is_valid
        assert validation.warnings == ["No valid indexes found for the specified projects"]

    def test_validate_empty(self, client):
        """Test that empty JQL is reported, not rejected."""
        response = client.post("/api/query/validate", json={"jql": ""})

        assert response.status_code == 200
        assert not response.json()["is_valid"]
        assert response.json()["errors"][0]["field"] == "jql"

    def test_execute(self, client, search_client):
        """Test executing a query against the resolved index."""
        response = client.post(
            "/api/query/execute",
            json={"jql": "project = patients AND name = Ann", "max_results": 10},
        )

        assert response.status_code == 200
        data = response.json()
        assert data["total"] == 3
        assert data["indexes"] == ["patients"]
        assert data["hits"][0]["source"] == {"pid": "p1", "name": "Ann"}
        assert search_client.calls[0]["size"] == 10
        assert search_client.calls[0]["query"] == {
            "bool": {"must": [{"term": {"name.keyword": "Ann"}}]}
        }

    def test_execute_applies_jql_limit(self, client, search_client):
        """Test that a JQL limit lowers the page size."""
        response = client.post("/api/query/execute", json={"jql": "project = patients limit 2"})

        assert response.status_code == 200
        assert len(response.json()["hits"]) == 2
        assert search_client.calls[0]["size"] == 2

    def test_execute_passes_fields(self, client, search_client):
        """Test that requested fields restrict the returned source."""
        client.post("/api/query/execute", json={"jql": "project = patients", "fields": ["pid"]})

        assert search_client.calls[0]["source"] == ["pid"]

    def test_execute_no_indexes(self, client, search_client):
        """Test that a query resolving to no index is refused."""
        response = client.post("/api/query/execute", json={"jql": "project = billing"})

        assert response.status_code == 403
        assert response.json()["error"]["code"] == "NO_INDEXES"
        assert search_client.calls == []

    def test_execute_upstream_error(self, settings, storage):
        """Test that backend failures keep their message."""
        failing = RecordingSearchClient(RECORDS, fail_with=RuntimeError("cluster unavailable"))
        client = TestClient(create_app(settings, search_client=failing, saved_queries=storage))

        response = client.post("/api/query/execute", json={"jql": "project = patients"})

        assert response.status_code == 502
        assert response.json()["error"] == {
            "code": "UPSTREAM_ERROR",
            "message": "cluster unavailable",
        }


class TestJoinEndpoints:
    """Tests for multi-index joins."""

    def test_inner_join(self, client):
        """Test a paginated inner join."""
        response = client.post("/api/multi-index-join", json=join_body(size=2))

        assert response.status_code == 200
        data = response.json()
        assert data["total_results"] == 3
        assert len(data["results"]) == 2
        assert data["results"][0]["consolidated_record"] == {
            "patients_pid": "p1",
            "patients_name": "Ann",
            "visits_patient": "p1",
            "visits_ward": "A",
            "_join_key": "p1",
        }
        assert data["join_summary"]["matched"] == 3
        assert data["aggregations"]["join_field_distribution"]["distribution"] == {"p1": 2, "p2": 1}
        assert data["aggregations"]["index_distribution"] == {"left": 3, "right": 3, "joined": 3}

    def test_from_offset(self, client):
        """Test the 'from' offset."""
        response = client.post("/api/multi-index-join", json=join_body("left", **{"from": 3}))

        data = response.json()
        assert data["total_results"] == 4
        assert [r["match_kind"] for r in data["results"]] == ["left_only"]
        assert data["results"][0]["right_record"] is None

    def test_invalid_join_type(self, client, search_client):
        """Test that a bad join type fails before fetching."""
        response = client.post("/api/multi-index-join", json=join_body("cross"))

        assert response.status_code == 400
        assert response.json()["error"]["code"] == "INVALID_JOIN_TYPE"
        assert search_client.calls == []

    def test_join_count(self, client):
        """Test that exactly one join is required."""
        body = join_body()
        body["joins"] = body["joins"] * 2

        response = client.post("/api/multi-index-join", json=body)
        assert response.status_code == 400
        assert response.json()["error"]["code"] == "UNSUPPORTED_JOIN_COUNT"

        response = client.post("/api/multi-index-join", json={"joins": []})
        assert response.status_code == 400

    def test_page_size_bounds(self, client):
        """Test request schema limits on size and from."""
        assert client.post("/api/multi-index-join", json=join_body(size=0)).status_code == 422
        assert client.post("/api/multi-index-join", json=join_body(size=1001)).status_code == 422
        assert client.post("/api/multi-index-join", json=join_body(**{"from": -1})).status_code == 422

    def test_join_saved_query_by_id(self, client, search_client):
        """Test that a saved query source given by id runs its stored query."""
        saved = create_saved_query(client)

        response = client.post(
            "/api/multi-index-join",
            json=join_body(right_source={"type": "savedQuery", "id": saved["id"]}),
        )

        assert response.status_code == 200
        record = response.json()["results"][0]["consolidated_record"]
        assert record["Ward A visits_ward"] == "A"
        assert search_client.calls[-1]["index"] == "visits"
        assert search_client.calls[-1]["query"] == {
            "bool": {"must": [{"term": {"ward.keyword": "A"}}]}
        }

    def test_join_unknown_saved_query(self, client):
        """Test that an unknown saved query id is a 404."""
        response = client.post(
            "/api/multi-index-join",
            json=join_body(right_source={"type": "savedQuery", "id": "missing"}),
        )

        assert response.status_code == 404
        assert response.json()["error"]["code"] == "NOT_FOUND"

    def test_join_upstream_error(self, settings, storage):
        """Test that fetch failures surface as upstream errors."""
        failing = RecordingSearchClient(RECORDS, fail_with=ConnectionError("timed out"))
        client = TestClient(create_app(settings, search_client=failing, saved_queries=storage))

        response = client.post("/api/multi-index-join", json=join_body())

        assert response.status_code == 502
        assert response.json()["error"]["message"] == "timed out"

    def test_preview(self, client):
        """Test the join preview."""
        response = client.get(
            "/api/multi-index-join/preview",
            params={
                "left_index": "patients",
                "right_index": "visits",
                "left_field": "pid",
                "right_field": "patient",
            },
        )

        assert response.status_code == 200
        data = response.json()
        assert data["possible_matches"] == 3
        assert len(data["preview"]) == 3
        assert data["sample_join_keys"] == {"p1": 2, "p2": 1}

    def test_preview_requires_fields(self, client):
        """Test that preview parameters are required."""
        response = client.get("/api/multi-index-join/preview", params={"left_index": "patients"})

        assert response.status_code == 422


class TestDirectQuery:
    """Tests for raw query DSL endpoints."""

    def test_direct_query(self, client, search_client):
        """Test running a query object against an allowed index."""
        response = client.post("/api/direct-query", json={
            "index": "patients",
            "query": {"match_all": {}},
            "size": 2,
        })

        assert response.status_code == 200
        data = response.json()
        assert data["index"] == "patients"
        assert data["from"] == 0
        assert data["total"] == 3
        assert [hit["source"]["pid"] for hit in data["hits"]] == ["p1", "p2"]
        assert search_client.calls[-1]["query"] == {"match_all": {}}
        assert search_client.calls[-1]["size"] == 2
        assert search_client.calls[-1]["source"] is True

    def test_direct_query_string_body(self, client, search_client):
        """Test that a JSON string query is decoded before searching."""
        response = client.post("/api/direct-query", json={
            "index": "visits",
            "query": '{"term": {"patient": "p1"}}',
            "from": 1,
            "_source": ["ward"],
        })

        assert response.status_code == 200
        assert search_client.calls[-1]["query"] == {"term": {"patient": "p1"}}
        assert search_client.calls[-1]["from_"] == 1
        assert search_client.calls[-1]["source"] == ["ward"]

    @pytest.mark.parametrize("query", ["{not json", "[1, 2]"])
    def test_direct_query_invalid_json(self, client, search_client, query):
        """Test that strings which are not JSON objects are rejected."""
        response = client.post("/api/direct-query", json={"index": "patients", "query": query})

        assert response.status_code == 400
        assert response.json()["error"]["code"] == "INVALID_JSON"
        assert search_client.calls == []

    def test_direct_query_disallowed_index(self, client, search_client):
        """Test that indexes outside the allow-list are refused."""
        response = client.post("/api/direct-query", json={"index": "billing", "query": {"match_all": {}}})

        assert response.status_code == 403
        assert response.json()["error"]["code"] == "ACCESS_DENIED"
        assert search_client.calls == []

    def test_direct_query_wildcard_index(self, client, search_client):
        """Test that indexes matching an allowed pattern are searched."""
        response = client.post("/api/direct-query", json={"index": "health-2024", "query": {"match_all": {}}})

        assert response.status_code == 200
        assert search_client.calls[-1]["index"] == "health-2024"

    @pytest.mark.parametrize("extra", [{"size": 0}, {"size": 1001}, {"from": -1}])
    def test_direct_query_page_bounds(self, client, search_client, extra):
        """Test that out-of-range paging is rejected before searching."""
        body = {"index": "patients", "query": {"match_all": {}}}
        body.update(extra)

        assert client.post("/api/direct-query", json=body).status_code == 422
        assert search_client.calls == []

    def test_direct_query_upstream_error(self, settings, storage):
        """Test that backend failures are reported as upstream errors."""
        failing = RecordingSearchClient(RECORDS, fail_with=RuntimeError("index closed"))
        client = TestClient(create_app(settings, search_client=failing, saved_queries=storage))

        response = client.post("/api/direct-query", json={"index": "patients", "query": {"match_all": {}}})

        assert response.status_code == 502
        assert response.json()["error"] == {"code": "UPSTREAM_ERROR", "message": "index closed"}

    def test_list_allowed_indexes(self, client):
        """Test listing the indexes direct queries may target."""
        response = client.get("/api/direct-query/indexes")

        assert response.status_code == 200
        assert response.json() == {"indexes": ["patients", "visits", "health-*"], "count": 3}


class TestSavedQueriesCrud:
    """Tests for saved query CRUD operations."""

    def test_list_empty(self, client):
        """Test listing when nothing is saved."""
        response = client.get("/api/saved-queries")

        assert response.status_code == 200
        assert response.json() == []

    def test_create(self, client):
        """Test creating a saved query compiles and resolves it."""
        saved = create_saved_query(client)

        assert saved["target_index"] == "visits"
        assert saved["query"] == {"bool": {"must": [{"term": {"ward.keyword": "A"}}]}}
        assert saved["execution_count"] == 0
        assert saved["last_executed_at"] is None

    def test_create_invalid_jql(self, client):
        """Test that invalid JQL is not saved."""
        response = client.post("/api/saved-queries", json={"name": "bad", "jql": " "})

        assert response.status_code == 400
        assert client.get("/api/saved-queries").json() == []

    def test_create_disallowed_target(self, client):
        """Test that an explicit target index must be allowed."""
        response = client.post(
            "/api/saved-queries",
            json={"name": "x", "jql": "ward = A", "target_index": "billing"},
        )

        assert response.status_code == 403
        assert response.json()["error"]["code"] == "ACCESS_DENIED"

    def test_create_without_indexes(self, client):
        """Test that a query resolving to no index is refused."""
        response = client.post("/api/saved-queries", json={"name": "x", "jql": "project = billing"})

        assert response.status_code == 403
        assert response.json()["error"]["code"] == "NO_INDEXES"

    def test_list_filters(self, client):
        """Test filtering by tag and target index."""
        create_saved_query(client)
        create_saved_query(client, name="Patients", jql="project = patients", tags=[])

        assert len(client.get("/api/saved-queries").json()) == 2
        assert [q["name"] for q in client.get("/api/saved-queries", params={"tag": "ward"}).json()] == ["Ward A visits"]
        assert [
            q["name"] for q in client.get("/api/saved-queries", params={"target_index": "patients"}).json()
        ] == ["Patients"]

    def test_get_by_id(self, client):
        """Test fetching one saved query."""
        saved = create_saved_query(client)

        response = client.get(f"/api/saved-queries/{saved['id']}")

        assert response.status_code == 200
        assert response.json()["name"] == "Ward A visits"

    def test_get_not_found(self, client):
        """Test fetching a missing saved query."""
        response = client.get("/api/saved-queries/missing")

        assert response.status_code == 404
        assert response.json()["error"]["code"] == "NOT_FOUND"

    def test_update_recompiles(self, client):
        """Test that changing the JQL recompiles the stored query."""
        saved = create_saved_query(client)

        response = client.put(
            f"/api/saved-queries/{saved['id']}",
            json={"jql": "project = patients AND name != Bob", "name": "Not Bob"},
        )

        assert response.status_code == 200
        updated = response.json()
        assert updated["name"] == "Not Bob"
        assert updated["target_index"] == "patients"
        assert updated["query"] == {"bool": {"must_not": [{"term": {"name.keyword": "Bob"}}]}}
        assert updated["created_at"] == saved["created_at"]

    def test_update_not_found(self, client):
        """Test updating a missing saved query."""
        response = client.put("/api/saved-queries/missing", json={"name": "x"})

        assert response.status_code == 404

    def test_delete(self, client):
        """Test deleting a saved query."""
        saved = create_saved_query(client)

        response = client.delete(f"/api/saved-queries/{saved['id']}")

        assert response.status_code == 200
        assert client.get(f"/api/saved-queries/{saved['id']}").status_code == 404
        assert client.delete(f"/api/saved-queries/{saved['id']}").status_code == 404

    def test_execute_saved_query(self, client, search_client):
        """Test running a saved query records the execution."""
        saved = create_saved_query(client)

        response = client.post(f"/api/saved-queries/{saved['id']}/execute", params={"max_results": 5})

        assert response.status_code == 200
        assert response.json()["indexes"] == ["visits"]
        assert search_client.calls[-1]["query"] == saved["query"]
        stored = client.get(f"/api/saved-queries/{saved['id']}").json()
        assert stored["execution_count"] == 1
        assert stored["last_executed_at"] is not None


class TestHealthCheck:
    """Tests for the health check endpoint."""

    def test_health_check(self, client):
        """Test health check with a reachable backend."""
        response = client.get("/health")

        assert response.status_code == 200
        assert response.json() == {"status": "healthy", "search": "up"}

    def test_health_check_backend_down(self, settings, storage):
        """Test health check with an unreachable backend."""
        failing = RecordingSearchClient(RECORDS, fail_with=RuntimeError("down"))
        client = TestClient(create_app(settings, search_client=failing, saved_queries=storage))

        assert client.get("/health").json()["search"] == "down"


class TestLoggingSetup:
    """Tests for when the application configures logging."""

    def test_import_leaves_logging_alone(self):
        """Test that importing the module keeps existing root handlers."""
        import importlib
        import logging

        import jql_engine.api

        root = logging.getLogger()
        marker = logging.NullHandler()
        root.addHandler(marker)
        level = root.level
        try:
            importlib.reload(jql_engine.api)
            assert marker in root.handlers
            assert root.level == level
        finally:
            root.removeHandler(marker)

    def test_startup_configures_logging(self, settings, search_client, storage, monkeypatch):
        """Test that logging is configured once when the app starts."""
        calls = []
        monkeypatch.setattr("jql_engine.api.setup_logging", lambda *args: calls.append(args))
        app = create_app(settings, search_client=search_client, saved_queries=storage)

        assert calls == []
        with TestClient(app) as client:
            assert client.get("/health").status_code == 200

        assert calls == [(settings.log_level, settings.log_file)]
