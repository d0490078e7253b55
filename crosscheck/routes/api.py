from __future__ import annotations

from typing import Any, Dict, List

from fastapi import APIRouter, HTTPException

from crosscheck.constants import DEFAULT_APP_NAME
from crosscheck.errors import ConfigError
from crosscheck.schemas import BatchRecord, BatchReport, BatchRequest, BatchStatus, ConfigUpdate
from crosscheck.services.orchestrator import TERMINAL_STATUSES, get_orchestrator
from crosscheck.services.storage import ReportRepository, RepositoryDep

router = APIRouter(prefix="/api", tags=["api"])


def _require_batch(repo: ReportRepository, batch_id: str) -> Dict[str, Any]:
    record = repo.get_batch(batch_id)
    if not record:
        raise HTTPException(status_code=404, detail="Batch not found")
    return record


@router.get("/orchestrator/ping")
async def orchestrator_ping() -> Dict[str, str]:
    return {"status": "ok"}


# Config --------------------------------------------------------------------------
@router.get("/config")
async def read_config(repo: ReportRepository = RepositoryDep) -> Dict[str, Any]:
    return repo.get_config()


@router.patch("/config")
async def update_config(payload: ConfigUpdate, repo: ReportRepository = RepositoryDep) -> Dict[str, Any]:
    try:
        return repo.update_config(payload.model_dump(exclude_unset=True))
    except ValueError as exc:
        raise HTTPException(status_code=400, detail=str(exc)) from exc


# Batches -------------------------------------------------------------------------
@router.post("/batches", status_code=202)
async def create_batch(payload: BatchRequest) -> Dict[str, str]:
    orchestrator = get_orchestrator()
    try:
        batch_id = orchestrator.enqueue(payload.config, payload.script)
    except ConfigError as exc:
        raise HTTPException(status_code=422, detail={"message": str(exc), "problems": exc.problems}) from exc
    return {"batch_id": batch_id}


@router.get("/batches", response_model=List[BatchRecord])
async def list_batches(repo: ReportRepository = RepositoryDep) -> List[Dict[str, Any]]:
    return repo.list_batches()


@router.get("/batches/{batch_id}", response_model=BatchRecord)
async def get_batch(batch_id: str, repo: ReportRepository = RepositoryDep) -> Dict[str, Any]:
    return _require_batch(repo, batch_id)


@router.get("/batches/{batch_id}/jobs")
async def list_batch_jobs(batch_id: str, repo: ReportRepository = RepositoryDep) -> List[Dict[str, Any]]:
    record = _require_batch(repo, batch_id)
    jobs = list((record.get("jobs") or {}).values())
    return sorted(jobs, key=lambda item: (item.get("sequence", 0), item.get("job_id", "")))


@router.get("/batches/{batch_id}/report", response_model=BatchReport)
async def get_batch_report(batch_id: str, repo: ReportRepository = RepositoryDep) -> Dict[str, Any]:
    record = _require_batch(repo, batch_id)
    if not record.get("report"):
        raise HTTPException(status_code=404, detail="Report not available yet")
    return record["report"]


@router.post("/batches/{batch_id}/cancel", response_model=BatchRecord)
async def cancel_batch(batch_id: str, repo: ReportRepository = RepositoryDep) -> Dict[str, Any]:
    record = _require_batch(repo, batch_id)
    if record.get("status") in TERMINAL_STATUSES:
        raise HTTPException(status_code=400, detail="Finished batches cannot be cancelled.")
    orchestrator = get_orchestrator()
    orchestrator.cancel_batch(batch_id)
    updated = repo.get_batch(batch_id)
    assert updated is not None
    return updated


@router.delete("/batches/{batch_id}", status_code=204)
async def delete_batch(batch_id: str, repo: ReportRepository = RepositoryDep) -> None:
    record = repo.get_batch(batch_id)
    if not record:
        return None
    if record.get("status") in (BatchStatus.queued.value, BatchStatus.executing.value):
        raise HTTPException(status_code=400, detail="Cancel the batch before deleting it.")
    get_orchestrator().delete_batch(batch_id)
    return None


# Baselines -----------------------------------------------------------------------
@router.delete("/baselines/{test_name}", status_code=204)
async def reset_baselines(test_name: str, app_name: str = DEFAULT_APP_NAME) -> None:
    """Drop recorded baselines so the next run of the test records fresh ones."""
    get_orchestrator().artifacts.purge_baselines(app_name, test_name)
