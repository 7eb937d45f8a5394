import os

os.environ.setdefault("DB_BACKEND", "sqlite")
os.environ.setdefault("VECTOR_BACKEND", "python")
os.environ.setdefault("EMBEDDING_PROVIDER", "none")

import pytest
from fastapi.testclient import TestClient

from app.main import app


@pytest.fixture
def client(server_db):
    # no lifespan: the fixture database is already wired in
    return TestClient(app)


def test_root_lists_endpoints(client):
    response = client.get("/")
    assert response.status_code == 200
    payload = response.json()
    assert payload["service"] == "ReadGraph"
    assert payload["endpoints"]["jobs"] == "/jobs"


def test_job_lifecycle_over_http(client):
    created = client.post(
        "/jobs",
        json={"owner_id": "reader-1", "item_type": "note", "item_id": "n1", "priority": 7},
    )
    assert created.status_code == 200
    assert created.json()["created"] is True

    leased = client.post("/jobs/lease", json={"batch_size": 5}).json()
    assert leased["count"] == 1
    job = leased["jobs"][0]
    assert job["status"] == "processing"

    done = client.post(f"/jobs/{job['id']}/complete", json={"lease_token": job["lease_token"]})
    assert done.json()["job_status"] == "completed"

    again = client.post(f"/jobs/{job['id']}/complete", json={"lease_token": job["lease_token"]})
    assert again.status_code == 200
    assert again.json()["status"] == "noop"

    stats = client.get("/jobs/stats", params={"owner_id": "reader-1"}).json()
    assert stats["by_status"]["completed"] == 1
    assert stats["coverage"]["note"]["vectors"] == 0


def test_invalid_enqueue_is_bad_request(client):
    response = client.post(
        "/jobs",
        json={"owner_id": "reader-1", "item_type": "video", "item_id": "n1"},
    )
    assert response.status_code == 400
    assert response.json()["detail"]["field"] == "item_type"


def test_process_skips_without_provider(client):
    response = client.post("/jobs/process", json={})
    assert response.json() == {"status": "skipped", "reason": "embedding_disabled"}


def test_graph_routes(client):
    discovered = client.post("/owners/reader-1/graph/discover", json={"item_id": "X"})
    assert discovered.status_code == 200
    assert discovered.json()["edges_written"] == 0

    similar = client.get("/owners/reader-1/graph/items/X/similar")
    assert similar.status_code == 404

    related = client.get("/owners/reader-1/graph/items/X/related")
    assert related.json()["count"] == 0

    backfilled = client.post("/owners/reader-1/graph/backfill", json={})
    assert backfilled.json()["items_processed"] == 0


def test_vector_routes_link_and_respect_owner(client):
    stored = client.put("/owners/alice/graph/items/X/vector", json={"vector": [1, 0, 0, 0]})
    assert stored.status_code == 200
    linked = client.put("/owners/alice/graph/items/Y/vector", json={"vector": [1, 0.01, 0, 0]})
    assert linked.json()["edges_written"] == 2

    foreign = client.delete("/owners/mallory/graph/items/X/vector")
    assert foreign.status_code == 404

    related = client.get("/owners/alice/graph/items/X/related")
    assert related.json()["count"] == 1

    own = client.delete("/owners/alice/graph/items/X/vector")
    assert own.json()["vectors_deleted"] == 1


def test_recommendations_route(client):
    response = client.get("/owners/reader-1/recommendations")
    assert response.status_code == 200
    assert response.json()["results"] == []

    bad = client.get("/owners/reader-1/recommendations", params={"limit_per_signal": 0})
    assert bad.status_code == 400


def test_profile_routes(client):
    assert client.get("/owners/reader-1/interest-profile").status_code == 404

    recomputed = client.post("/owners/reader-1/interest-profile", json={})
    assert recomputed.status_code == 200
    assert recomputed.json()["profile"]["has_vector"] is False

    fetched = client.get("/owners/reader-1/interest-profile")
    assert fetched.status_code == 200

    similar = client.get("/owners/reader-1/similar-owners")
    assert similar.json()["results"] == []
    assert client.get("/owners/reader-1/similar-owners", params={"threshold": 3}).status_code == 400

    events = client.get("/owners/reader-1/audit-events").json()
    assert [event["event_type"] for event in events["events"]] == ["profile.recomputed"]


def test_cors_preflight_allows_reading_app(client):
    response = client.options(
        "/jobs",
        headers={
            "Origin": "http://localhost:3000",
            "Access-Control-Request-Method": "POST",
        },
    )
    assert response.status_code == 200
    assert response.headers["access-control-allow-origin"] == "http://localhost:3000"

    refused = client.options(
        "/jobs",
        headers={
            "Origin": "http://elsewhere.example",
            "Access-Control-Request-Method": "POST",
        },
    )
    assert refused.status_code == 400
