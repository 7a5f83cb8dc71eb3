from dataclasses import replace

from fastapi.testclient import TestClient

from sourceflow.main import app, get_pipeline

ROOT = "https://docs.example.com/"


def _site(fetcher) -> None:
    fetcher.add_page(
        ROOT,
        "Every compressor on the north line is inspected for oil leaks at the start of each shift.",
        links=("/alarms",),
    )
    fetcher.add_page(
        "https://docs.example.com/alarms",
        "High temperature alarms require the operator to reduce the load and notify maintenance staff.",
    )


def test_health_returns_ok(client: TestClient) -> None:
    response = client.get("/health")

    assert response.status_code == 200
    assert response.json() == {"status": "ok"}


def test_crawl_then_process_jobs(client: TestClient, fetcher) -> None:
    _site(fetcher)

    started = client.post("/crawl", json={"agent_id": "agent-1", "url": ROOT})
    assert started.status_code == 202
    body = started.json()
    assert body["success"] is True
    assert body["workflow_status"] == "CREATED"

    processed = client.post("/jobs/process", json={"max_jobs": 100})
    assert processed.status_code == 200
    assert processed.json()["failed"] == 0
    assert processed.json()["stats"]["completed"] == processed.json()["completed"]

    source = client.get(f"/sources/{body['source_id']}").json()["source"]
    assert source["workflow_status"] == "TRAINED"
    assert source["progress"] == 100
    assert source["total_pages"] == 2

    pages = client.get(f"/sources/{body['source_id']}/pages", params={"status": "completed"}).json()["pages"]
    assert [page["url"] for page in pages] == [ROOT, "https://docs.example.com/alarms"]


def test_create_source_endpoint(client: TestClient) -> None:
    response = client.post(
        "/sources",
        json={"agent_id": "agent-1", "source_type": "qa", "question": "Who resets the alarm?", "answer": "The shift lead."},
    )

    assert response.status_code == 201
    assert response.json()["workflow_status"] == "COMPLETED"
    assert response.json()["job_id"] is not None


def test_invalid_input_returns_400(client: TestClient) -> None:
    bad_url = client.post("/crawl", json={"agent_id": "agent-1", "url": "ftp://files.example.com/"})
    bad_pattern = client.post(
        "/crawl",
        json={"agent_id": "agent-1", "url": ROOT, "options": {"include_paths": ["/(broken/"]}},
    )
    missing_content = client.post("/sources", json={"agent_id": "agent-1", "source_type": "text"})

    assert bad_url.status_code == 400
    assert bad_url.json()["error_type"] == "ValidationError"
    assert bad_pattern.status_code == 400
    assert bad_pattern.json()["success"] is False
    assert missing_content.status_code == 400


def test_unknown_ids_return_404(client: TestClient) -> None:
    assert client.get("/sources/missing").status_code == 404
    assert client.get("/sources/missing/pages").status_code == 404
    assert client.post("/sources/missing/recrawl").status_code == 404
    assert client.post("/sources/missing/aggregate").status_code == 404
    assert client.delete("/sources/missing").status_code == 404
    assert client.get("/jobs/missing").status_code == 404


def test_busy_source_returns_409(client: TestClient) -> None:
    started = client.post("/crawl", json={"agent_id": "agent-1", "url": ROOT}).json()

    response = client.post(f"/sources/{started['source_id']}/recrawl")

    assert response.status_code == 409
    assert response.json()["error_type"] == "ConflictError"


def test_recrawl_page_endpoint(client: TestClient, fetcher) -> None:
    _site(fetcher)
    started = client.post("/crawl", json={"agent_id": "agent-1", "url": ROOT}).json()
    client.post("/jobs/process", json={"max_jobs": 100})

    response = client.post(
        f"/sources/{started['source_id']}/pages/recrawl",
        json={"url": "https://docs.example.com/alarms"},
    )

    assert response.status_code == 202
    assert response.json()["pages_requeued"] == 1
    assert response.json()["workflow_status"] == "CRAWLING"
    foreign = client.post(
        f"/sources/{started['source_id']}/pages/recrawl",
        json={"url": "https://other.example.com/alarms"},
    )
    assert foreign.status_code == 400
    assert client.post("/sources/missing/pages/recrawl", json={"url": ROOT}).status_code == 404


def test_active_crawl_limit_returns_429(make_pipeline, settings) -> None:
    pipeline = make_pipeline(replace(settings, max_active_crawls_per_agent=1))
    app.dependency_overrides[get_pipeline] = lambda: pipeline

    with TestClient(app) as client:
        assert client.post("/crawl", json={"agent_id": "agent-1", "url": ROOT}).status_code == 202
        response = client.post("/crawl", json={"agent_id": "agent-1", "url": "https://wiki.example.com/"})

    assert response.status_code == 429
    assert response.json()["error_type"] == "RateLimitedError"


def test_api_key_is_required_when_configured(make_pipeline, settings) -> None:
    pipeline = make_pipeline(replace(settings, api_key="secret"))
    app.dependency_overrides[get_pipeline] = lambda: pipeline

    with TestClient(app) as client:
        assert client.get("/health").status_code == 200
        assert client.get("/jobs").status_code == 401
        assert client.get("/jobs", headers={"X-Api-Key": "wrong"}).status_code == 401
        assert client.get("/jobs", headers={"X-Api-Key": "secret"}).status_code == 200


def test_job_listing_and_detail(client: TestClient) -> None:
    started = client.post("/crawl", json={"agent_id": "agent-1", "url": ROOT}).json()

    listed = client.get("/jobs", params={"job_type": "discover", "status": "pending"}).json()["jobs"]
    detail = client.get(f"/jobs/{started['job_id']}").json()["job"]

    assert [job["id"] for job in listed] == [started["job_id"]]
    assert detail["target_id"] == started["source_id"]
    assert detail["priority"] == 3
    assert detail["payload_json"]["job_type"] == "discover"
    assert client.get("/jobs", params={"status": "bogus"}).status_code == 400


def test_removal_retrain_and_recover_endpoints(client: TestClient) -> None:
    created = client.post(
        "/sources",
        json={
            "agent_id": "agent-1",
            "source_type": "text",
            "content": "Drain the condensate traps every morning and record the collected volume.",
        },
    ).json()
    client.post("/jobs/process", json={"max_jobs": 20})

    retrain = client.post("/agents/agent-1/retrain")
    assert retrain.status_code == 202
    assert retrain.json()["sources"] == 1
    assert client.post("/agents/agent-1/retrain").status_code == 409
    client.post("/jobs/process")

    removal = client.delete(f"/sources/{created['source_id']}")
    assert removal.status_code == 202
    assert removal.json()["workflow_status"] == "PENDING_REMOVAL"
    client.post("/jobs/process")
    assert client.get(f"/sources/{created['source_id']}").json()["source"]["workflow_status"] == "REMOVED"

    recovered = client.post("/jobs/recover")
    assert recovered.status_code == 200
    assert recovered.json()["requeued"] == 0
