from __future__ import annotations

from pathlib import Path
from typing import Generator, Tuple

import pytest
from fastapi.testclient import TestClient

from crosscheck.errors import ConfigError
from crosscheck.main import app
from crosscheck.routes import api as api_routes
from crosscheck.services import artifacts as artifacts_module
from crosscheck.services.artifacts import ArtifactStore
from crosscheck.services.orchestrator import BatchOrchestrator
from crosscheck.services.storage import LocalJsonStorage, ReportRepository, get_repository

from stubs import StubDriverFactory

BATCH_PAYLOAD = {
    "config": {
        "batchName": "API batch",
        "testConcurrency": 2,
        "browser": [
            {"width": 800, "height": 600, "name": "chrome"},
            {"deviceName": "iPhone X"},
        ],
    },
    "script": {
        "name": "homepage",
        "steps": [
            {"kind": "action", "name": "visit", "payload": {"url": "https://example.com"}},
            {"kind": "checkpoint", "tag": "home"},
        ],
    },
}


@pytest.fixture
def client(tmp_path: Path, monkeypatch: pytest.MonkeyPatch) -> Generator[Tuple[TestClient, ReportRepository, BatchOrchestrator], None, None]:
    """Provide an isolated TestClient backed by a stubbed orchestrator."""
    repo = ReportRepository(LocalJsonStorage(tmp_path / "state.json"))
    store = ArtifactStore(root=tmp_path / "artifacts")
    orchestrator = BatchOrchestrator(
        repo,
        store,
        driver_factory=StubDriverFactory(),
        auto_start=False,
        poll_interval=0.01,
        sleep=lambda seconds: None,
    )
    monkeypatch.setattr(api_routes, "get_orchestrator", lambda: orchestrator)
    monkeypatch.setattr(artifacts_module, "_artifact_store", store)
    app.dependency_overrides[get_repository] = lambda: repo
    with TestClient(app) as test_client:
        yield test_client, repo, orchestrator
    app.dependency_overrides.clear()


def test_ping(client) -> None:
    api, _repo, _orchestrator = client
    assert api.get("/api/orchestrator/ping").json() == {"status": "ok"}


def test_config_read_and_update(client) -> None:
    api, repo, _orchestrator = client

    resp = api.get("/api/config")
    assert resp.status_code == 200
    assert resp.json()["default_concurrency"] == 5

    resp = api.patch("/api/config", json={"default_concurrency": 8, "match_tolerance": 0.5})
    assert resp.status_code == 200
    assert resp.json()["default_concurrency"] == 8
    assert repo.get_config()["match_tolerance"] == 0.5

    resp = api.patch("/api/config", json={"default_concurrency": 64})
    assert resp.status_code == 400
    resp = api.patch("/api/config", json={"retry_attempts": 0})
    assert resp.status_code == 422


def test_batch_submission_and_report(client) -> None:
    api, _repo, orchestrator = client

    resp = api.post("/api/batches", json=BATCH_PAYLOAD)
    assert resp.status_code == 202
    batch_id = resp.json()["batch_id"]
    orchestrator.join()

    resp = api.get(f"/api/batches/{batch_id}")
    assert resp.status_code == 200
    body = resp.json()
    assert body["status"] == "finished"
    assert body["overall_status"] == "all_passed"
    assert body["summary"]["jobs_total"] == 2

    resp = api.get("/api/batches")
    assert [item["id"] for item in resp.json()] == [batch_id]

    jobs = api.get(f"/api/batches/{batch_id}/jobs").json()
    assert [job["job_id"] for job in jobs] == ["001-chrome-800x600", "002-iphone-x-portrait"]

    report = api.get(f"/api/batches/{batch_id}/report").json()
    assert report["batch_name"] == "API batch"
    assert report["overall_status"] == "all_passed"
    assert list(report["job_results"]) == ["001-chrome-800x600", "002-iphone-x-portrait"]
    observed = report["job_results"]["001-chrome-800x600"]["checkpoint_results"][0]["artifacts"]["observed"]

    resp = api.get(f"/artifacts/{observed}")
    assert resp.status_code == 200
    assert resp.headers["content-type"] == "image/png"


def test_invalid_batch_is_rejected(client) -> None:
    api, repo, _orchestrator = client
    payload = {"config": {"batch_name": "x", "environments": []}, "script": {"steps": []}}

    resp = api.post("/api/batches", json=payload)

    assert resp.status_code == 422
    assert repo.list_batches() == []


def test_config_error_maps_to_422(client, monkeypatch: pytest.MonkeyPatch) -> None:
    api, _repo, _orchestrator = client

    class _RejectingOrchestrator:
        def enqueue(self, config, script):
            raise ConfigError("Invalid batch configuration", ["concurrency: too low"])

    monkeypatch.setattr(api_routes, "get_orchestrator", lambda: _RejectingOrchestrator())
    resp = api.post("/api/batches", json=BATCH_PAYLOAD)

    assert resp.status_code == 422
    assert resp.json()["detail"]["problems"] == ["concurrency: too low"]


def test_missing_batches_and_pending_reports(client) -> None:
    api, repo, _orchestrator = client
    assert api.get("/api/batches/unknown").status_code == 404
    assert api.get("/api/batches/unknown/report").status_code == 404
    assert api.post("/api/batches/unknown/cancel").status_code == 404

    record = repo.create_batch({"batch_name": "Pending"})
    assert api.get(f"/api/batches/{record['id']}/report").status_code == 404


def test_cancel_and_delete_rules(client) -> None:
    api, repo, orchestrator = client
    running = repo.create_batch({"batch_name": "Running", "status": "executing"})
    assert api.delete(f"/api/batches/{running['id']}").status_code == 400

    resp = api.post("/api/batches", json=BATCH_PAYLOAD)
    batch_id = resp.json()["batch_id"]
    orchestrator.join()

    assert api.post(f"/api/batches/{batch_id}/cancel").status_code == 400
    assert api.delete(f"/api/batches/{batch_id}").status_code == 204
    assert api.get(f"/api/batches/{batch_id}").status_code == 404
    assert not (orchestrator.artifacts.root / "batches" / batch_id).exists()


def test_artifact_route_rejects_escapes(client, tmp_path: Path) -> None:
    api, _repo, _orchestrator = client
    (tmp_path / "secret.txt").write_text("secret", encoding="utf-8")

    assert api.get("/artifacts/%2e%2e/secret.txt").status_code == 404
    assert api.get("/artifacts/batches/missing.png").status_code == 404


def test_reset_baselines(client) -> None:
    api, _repo, orchestrator = client
    api.post("/api/batches", json=BATCH_PAYLOAD)
    orchestrator.join()
    baselines = orchestrator.artifacts.root / "baselines" / "crosscheck" / "homepage"
    assert baselines.is_dir()

    assert api.delete("/api/baselines/homepage", params={"app_name": "other"}).status_code == 204
    assert baselines.is_dir()
    assert api.delete("/api/baselines/homepage").status_code == 204
    assert not baselines.exists()

    resp = api.post("/api/batches", json=BATCH_PAYLOAD)
    orchestrator.join()
    report = api.get(f"/api/batches/{resp.json()['batch_id']}/report").json()
    verdicts = [
        checkpoint["verdict"]
        for result in report["job_results"].values()
        for checkpoint in result["checkpoint_results"]
    ]
    assert verdicts == ["baseline_created", "baseline_created"]
