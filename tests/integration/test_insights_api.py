"""
Integration Tests for the Insights API.

Runs the FastAPI app against an in-memory SQLite store with a fake embedding
backend. The app lifespan is not started, so no real database is touched.
"""
import json
from uuid import uuid4

import pytest
from fastapi.testclient import TestClient

from config import get_settings
from insight_dedup.api.main import app
from insight_dedup.api.routers import insights_router
from insight_dedup.db.database import get_session, get_session_factory
from insight_dedup.db.models import JOB_COMPLETED
from insight_dedup.semantic.cluster_store import ClusterStore
from tests.helpers import unit

pytestmark = pytest.mark.integration

PREFIX = "/api/admin/insights"


@pytest.fixture
def client(db_session, session_factory, test_settings, fake_gateway):
    def _session():
        yield db_session

    app.dependency_overrides[get_session] = _session
    app.dependency_overrides[get_session_factory] = lambda: session_factory
    app.dependency_overrides[get_settings] = lambda: test_settings
    app.dependency_overrides[insights_router.get_gateway] = lambda: fake_gateway
    yield TestClient(app)
    app.dependency_overrides.clear()


@pytest.fixture
def pending_cluster(client, make_insight):
    """A pending new-group cluster of three close insights."""
    insights = [
        make_insight("OSPF is a link-state protocol", vector=unit(0)),
        make_insight("OSPF uses link-state routing", vector=unit(3)),
        make_insight("Link-state routing is what OSPF does", vector=unit(6)),
    ]
    response = client.post(f"{PREFIX}/cluster", json={})
    assert response.status_code == 200
    (cluster_id,) = response.json()["cluster_ids"]
    return cluster_id, insights


def _sse_events(body: str) -> list[dict]:
    return [json.loads(line[len("data: "):]) for line in body.splitlines() if line.startswith("data: ")]


class TestHealth:
    def test_root(self, client):
        response = client.get("/")

        assert response.status_code == 200
        assert response.json()["service"] == "insight-dedup"

    def test_health_reports_database(self, client, engine, monkeypatch):
        monkeypatch.setattr("insight_dedup.api.main.get_engine", lambda: engine)

        data = client.get("/health").json()

        assert data["status"] == "healthy"
        assert data["components"]["database"] == "ok"


class TestClusterEndpoint:
    def test_cluster_creates_proposals(self, client, make_insight):
        make_insight("A", vector=unit(0))
        make_insight("B", vector=unit(2))
        make_insight("C", vector=unit(90))

        data = client.post(f"{PREFIX}/cluster", json={"limit": 100}).json()

        assert data["processed"] == 3
        assert data["clusters_created"] == 1
        assert data["members_added"] == 2
        assert len(data["cluster_ids"]) == 1

    def test_cluster_by_source(self, client, make_insight):
        source = uuid4()
        make_insight("A", vector=unit(0), source_id=source)
        make_insight("B", vector=unit(2))

        data = client.post(f"{PREFIX}/cluster", json={"source_id": str(source)}).json()

        assert data["processed"] == 1
        assert data["clusters_created"] == 0


class TestClusterAll:
    def test_synchronous_run(self, client, fake_gateway, make_insight):
        make_insight("needs a vector")
        make_insight("A", vector=unit(0))
        make_insight("B", vector=unit(2))

        response = client.post(f"{PREFIX}/cluster-all", json={"batch_size": 10, "max_batches": 2})

        assert response.status_code == 200
        data = response.json()
        assert data["status"] == JOB_COMPLETED
        assert data["embeddings"]["processed"] == 1
        assert data["clustering"]["batches_processed"] >= 1
        assert fake_gateway.calls == ["needs a vector"]

    def test_empty_body_uses_defaults(self, client):
        response = client.post(f"{PREFIX}/cluster-all")

        assert response.status_code == 200
        assert response.json()["clustering"]["batches_processed"] == 0

    def test_streamed_run(self, client, make_insight):
        make_insight("A", vector=unit(0))
        make_insight("B", vector=unit(2))

        response = client.post(
            f"{PREFIX}/cluster-all",
            json={"skip_embeddings": True},
            headers={"Accept": "text/event-stream"},
        )

        assert response.status_code == 200
        assert response.headers["content-type"].startswith("text/event-stream")
        events = _sse_events(response.text)
        assert events[0]["stage"] == "embeddings"
        assert events[0]["skipped"] is True
        final = events[-1]
        assert final["done"] is True
        assert final["complete"] is True
        assert final["clusters_created"] == 1

    def test_second_job_conflicts(self, client, db_session):
        ClusterStore(db_session).create_job()

        response = client.post(f"{PREFIX}/cluster-all", json={"skip_embeddings": True})

        assert response.status_code == 409

    def test_second_streamed_job_reports_error_event(self, client, db_session):
        ClusterStore(db_session).create_job()

        response = client.post(
            f"{PREFIX}/cluster-all",
            json={"skip_embeddings": True},
            headers={"Accept": "text/event-stream"},
        )

        (event,) = _sse_events(response.text)
        assert event["error"] is True
        assert event["done"] is True
        assert "already processing" in event["message"]

    def test_status(self, client, make_insight):
        make_insight("no vector")
        make_insight("A", vector=unit(0))

        before = client.get(f"{PREFIX}/cluster-all/status").json()
        assert before["job"] is None
        assert before["missing_embeddings_count"] == 1
        assert before["unclustered_insights_count"] == 1
        assert before["needs_embeddings"] is True

        client.post(f"{PREFIX}/cluster-all", json={})
        after = client.get(f"{PREFIX}/cluster-all/status").json()

        assert after["job"]["status"] == JOB_COMPLETED
        assert after["missing_embeddings_count"] == 0
        assert after["needs_embeddings"] is False

    def test_generate_embeddings(self, client, make_insight):
        for i in range(3):
            make_insight(f"plain text {i}")

        data = client.post(f"{PREFIX}/generate-embeddings", json={"limit": 2}).json()

        assert data["total"] == 2
        assert data["processed"] == 2
        assert data["errors"] == 0


class TestReview:
    def test_merge(self, client, pending_cluster):
        cluster_id, (a, b, c) = pending_cluster

        response = client.post(
            f"{PREFIX}/merge",
            json={
                "cluster_id": cluster_id,
                "selected_raw_ids": [str(a.id), str(b.id)],
                "canonical_raw_id": str(a.id),
            },
        )

        assert response.status_code == 200
        data = response.json()
        assert data["canonical_statement"] == "OSPF is a link-state protocol"
        assert data["merged_count"] == 2

        cluster = client.get(f"{PREFIX}/clusters/{cluster_id}").json()
        assert cluster["status"] == "approved"
        selected = {m["raw_insight_id"]: m["is_selected"] for m in cluster["members"]}
        assert selected[str(a.id)] is True
        assert selected[str(c.id)] is False

    def test_merge_twice_conflicts(self, client, pending_cluster):
        cluster_id, (a, b, _c) = pending_cluster
        body = {"cluster_id": cluster_id, "selected_raw_ids": [str(a.id)], "canonical_raw_id": str(a.id)}

        assert client.post(f"{PREFIX}/merge", json=body).status_code == 200
        assert client.post(f"{PREFIX}/merge", json=body).status_code == 409

    def test_merge_with_bad_canonical(self, client, pending_cluster):
        cluster_id, (a, b, c) = pending_cluster

        response = client.post(
            f"{PREFIX}/merge",
            json={
                "cluster_id": cluster_id,
                "selected_raw_ids": [str(a.id)],
                "canonical_raw_id": str(c.id),
            },
        )

        assert response.status_code == 400

    def test_merge_requires_selection(self, client, pending_cluster):
        cluster_id, _ = pending_cluster

        response = client.post(f"{PREFIX}/merge", json={"cluster_id": cluster_id, "selected_raw_ids": []})

        assert response.status_code == 422

    def test_merge_unknown_cluster(self, client):
        response = client.post(
            f"{PREFIX}/merge",
            json={"cluster_id": str(uuid4()), "selected_raw_ids": [str(uuid4())]},
        )

        assert response.status_code == 404

    def test_reject(self, client, pending_cluster):
        cluster_id, _ = pending_cluster

        response = client.post(f"{PREFIX}/clusters/reject", json={"cluster_id": cluster_id})

        assert response.status_code == 200
        assert response.json()["status"] == "rejected"
        assert client.get(f"{PREFIX}/clusters").json() == []
        assert len(client.get(f"{PREFIX}/clusters", params={"status": "rejected"}).json()) == 1

    def test_list_clusters(self, client, pending_cluster):
        cluster_id, _ = pending_cluster

        clusters = client.get(f"{PREFIX}/clusters").json()

        assert [c["id"] for c in clusters] == [cluster_id]
        assert len(clusters[0]["members"]) == 3
        assert clusters[0]["members"][0]["statement"]

    def test_list_clusters_invalid_status(self, client):
        assert client.get(f"{PREFIX}/clusters", params={"status": "maybe"}).status_code == 400

    def test_get_missing_cluster(self, client):
        assert client.get(f"{PREFIX}/clusters/{uuid4()}").status_code == 404

    def test_merge_into_unique(self, client, make_insight, make_unique):
        unique = make_unique(unit(0))
        raw = make_insight("Picked by hand", vector=unit(70))

        response = client.post(
            f"{PREFIX}/merge-into-unique",
            json={"raw_insight_id": str(raw.id), "unique_insight_id": str(unique.id)},
        )

        assert response.status_code == 200
        assert response.json()["unique_insight_id"] == str(unique.id)

        again = client.post(
            f"{PREFIX}/merge-into-unique",
            json={"raw_insight_id": str(raw.id), "unique_insight_id": str(unique.id)},
        )
        assert again.status_code == 409

    def test_search_raw(self, client, make_insight):
        make_insight("VLANs segment broadcast domains", vector=unit(0))
        make_insight("Routers forward packets", vector=unit(45))

        results = client.get(f"{PREFIX}/search-raw", params={"q": "vlan"}).json()

        assert [r["statement"] for r in results] == ["VLANs segment broadcast domains"]

    def test_update_unique(self, client, make_unique):
        unique = make_unique(unit(0), "old")

        response = client.patch(f"{PREFIX}/unique/{unique.id}", json={"canonical_statement": "new"})

        assert response.status_code == 200
        assert response.json()["canonical_statement"] == "new"

    def test_update_missing_unique(self, client):
        response = client.patch(f"{PREFIX}/unique/{uuid4()}", json={"canonical_statement": "x"})

        assert response.status_code == 404
