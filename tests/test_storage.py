from __future__ import annotations

from pathlib import Path

import pytest

from crosscheck.services.storage import DEFAULT_CONFIG, LocalJsonStorage, ReportRepository


def _repo(path: Path) -> ReportRepository:
    return ReportRepository(LocalJsonStorage(path))


@pytest.mark.unit
def test_config_defaults_and_updates_persist(tmp_path: Path) -> None:
    path = tmp_path / "state.json"
    repo = _repo(path)
    assert repo.get_config() == DEFAULT_CONFIG

    repo.update_config({"default_concurrency": 8, "retry_attempts": 5, "headless": False, "match_tolerance": 1.5})

    reloaded = _repo(path).get_config()
    assert reloaded["default_concurrency"] == 8
    assert reloaded["retry_attempts"] == 5
    assert reloaded["retry_backoff_seconds"] == DEFAULT_CONFIG["retry_backoff_seconds"]
    assert reloaded["headless"] is False
    assert reloaded["match_tolerance"] == 1.5


@pytest.mark.unit
@pytest.mark.parametrize(
    "payload",
    [
        {"default_concurrency": 0},
        {"default_concurrency": 64},
        {"retry_attempts": 0},
        {"retry_backoff_seconds": -1},
        {"capture_post_wait_ms": -5},
        {"match_tolerance": 101},
    ],
)
def test_invalid_config_values_are_rejected(tmp_path: Path, payload) -> None:
    repo = _repo(tmp_path / "state.json")
    with pytest.raises(ValueError):
        repo.update_config(payload)


@pytest.mark.unit
def test_batch_lifecycle(tmp_path: Path) -> None:
    path = tmp_path / "state.json"
    repo = _repo(path)

    first = repo.create_batch({"batch_name": "One", "config": {"concurrency": 2}})
    second = repo.create_batch({"id": "fixed", "batch_name": "Two"})
    assert first["status"] == "queued"
    assert second["id"] == "fixed"
    assert {item["id"] for item in repo.list_batches()} == {first["id"], "fixed"}

    updated = repo.update_batch(first["id"], {"status": "executing", "note": None})
    assert updated["status"] == "executing"
    assert updated["updated_at"] >= first["updated_at"]

    repo.record_job_result(first["id"], {"job_id": "001-chrome-800x600", "status": "completed"})
    repo.record_job_result(first["id"], {"job_id": "002-pixel-2-portrait", "status": "failed"})
    stored = _repo(path).get_batch(first["id"])
    assert set(stored["jobs"]) == {"001-chrome-800x600", "002-pixel-2-portrait"}
    assert stored["report"] is None

    repo.delete_batch("fixed")
    assert repo.get_batch("fixed") is None
    assert repo.update_batch("fixed", {"status": "finished"}) is None
    assert repo.record_job_result("fixed", {"job_id": "x"}) is None
