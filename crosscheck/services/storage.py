from __future__ import annotations

import json
import threading
import uuid
from datetime import datetime, timezone
from pathlib import Path
from typing import Any, Dict, List, Optional

from fastapi import Depends

from crosscheck.constants import DEFAULT_CONCURRENCY

STATE_VERSION = 1

DEFAULT_CONFIG: Dict[str, Any] = {
    "default_concurrency": DEFAULT_CONCURRENCY,
    "retry_attempts": 3,
    "retry_backoff_seconds": 0.5,
    "retry_backoff_max_seconds": 8.0,
    "capture_post_wait_ms": 0,
    "headless": True,
    "match_tolerance": 0.0,
    "defer_verdicts": True,
    "artifacts_root": "artifacts",
    "base_url": None,
}


def _utcnow() -> str:
    """Return timezone-aware ISO timestamp."""
    return datetime.now(tz=timezone.utc).isoformat()


def _default_state() -> Dict[str, Any]:
    return {
        "version": STATE_VERSION,
        "batches": {},
        "config": dict(DEFAULT_CONFIG),
    }


class LocalJsonStorage:
    """Small collection store persisted to a single JSON file.

    Each top-level collection stores items keyed by their identifier. All
    writes are serialised through an internal lock and flushed immediately.
    """

    def __init__(self, path: Path) -> None:
        self._path = path
        self._lock = threading.Lock()
        self._state = self._load()

    def _load(self) -> Dict[str, Any]:
        if not self._path.exists():
            return _default_state()
        with self._path.open("r", encoding="utf-8") as handle:
            state = json.load(handle)
        state.setdefault("version", STATE_VERSION)
        state.setdefault("batches", {})
        config = state.setdefault("config", {})
        for key, value in DEFAULT_CONFIG.items():
            config.setdefault(key, value)
        for batch in state["batches"].values():
            batch.setdefault("jobs", {})
            batch.setdefault("report", None)
        return state

    def _persist(self) -> None:
        self._path.parent.mkdir(parents=True, exist_ok=True)
        with self._path.open("w", encoding="utf-8") as handle:
            json.dump(self._state, handle, indent=2, sort_keys=True)

    def _collection(self, name: str) -> Dict[str, Any]:
        return self._state.setdefault(name, {})

    def get_config(self) -> Dict[str, Any]:
        return self._state.setdefault("config", dict(DEFAULT_CONFIG))

    def update_config(self, **values: Any) -> Dict[str, Any]:
        with self._lock:
            config = self.get_config()
            for key, value in values.items():
                if value is not None:
                    config[key] = value
            self._persist()
            return dict(config)

    def upsert(self, collection: str, item_id: str, payload: Dict[str, Any]) -> Dict[str, Any]:
        with self._lock:
            self._collection(collection)[item_id] = payload
            self._persist()
            return payload

    def get(self, collection: str, item_id: str) -> Optional[Dict[str, Any]]:
        return self._collection(collection).get(item_id)

    def delete(self, collection: str, item_id: str) -> None:
        with self._lock:
            if item_id in self._collection(collection):
                del self._collection(collection)[item_id]
                self._persist()

    def list(self, collection: str) -> List[Dict[str, Any]]:
        with self._lock:
            return list(self._collection(collection).values())


class ReportRepository:
    """Batch records, job results and settings on top of LocalJsonStorage."""

    def __init__(self, storage: LocalJsonStorage) -> None:
        self._storage = storage
        self._lock = threading.Lock()

    # -- Config -------------------------------------------------------------------
    def get_config(self) -> Dict[str, Any]:
        config = self._storage.get_config()
        return {
            "default_concurrency": int(config.get("default_concurrency", DEFAULT_CONCURRENCY)),
            "retry_attempts": int(config.get("retry_attempts", 3)),
            "retry_backoff_seconds": float(config.get("retry_backoff_seconds", 0.5)),
            "retry_backoff_max_seconds": float(config.get("retry_backoff_max_seconds", 8.0)),
            "capture_post_wait_ms": int(config.get("capture_post_wait_ms", 0)),
            "headless": bool(config.get("headless", True)),
            "match_tolerance": float(config.get("match_tolerance", 0.0)),
            "defer_verdicts": bool(config.get("defer_verdicts", True)),
            "artifacts_root": str(config.get("artifacts_root", "artifacts")),
            "base_url": config.get("base_url") or None,
        }

    def set_default_concurrency(self, max_workers: int) -> Dict[str, Any]:
        if max_workers <= 0:
            raise ValueError("Concurrency must be a positive integer.")
        if max_workers > 32:
            raise ValueError("Concurrency cannot exceed 32 in this environment.")
        self._storage.update_config(default_concurrency=int(max_workers))
        return self.get_config()

    def set_retry_policy(
        self,
        *,
        attempts: Optional[int] = None,
        backoff_seconds: Optional[float] = None,
        max_backoff_seconds: Optional[float] = None,
    ) -> Dict[str, Any]:
        if attempts is not None and attempts < 1:
            raise ValueError("Retry attempts must be at least 1.")
        if backoff_seconds is not None and backoff_seconds < 0:
            raise ValueError("Retry backoff must be zero or greater.")
        if max_backoff_seconds is not None and max_backoff_seconds < 0:
            raise ValueError("Maximum retry backoff must be zero or greater.")
        self._storage.update_config(
            retry_attempts=attempts,
            retry_backoff_seconds=backoff_seconds,
            retry_backoff_max_seconds=max_backoff_seconds,
        )
        return self.get_config()

    def set_capture_post_wait_ms(self, milliseconds: int) -> Dict[str, Any]:
        if milliseconds < 0:
            raise ValueError("Capture stabilization delay must be zero or greater.")
        self._storage.update_config(capture_post_wait_ms=int(milliseconds))
        return self.get_config()

    def set_match_tolerance(self, percentage: float) -> Dict[str, Any]:
        if percentage < 0 or percentage > 100:
            raise ValueError("Match tolerance must be a percentage between 0 and 100.")
        self._storage.update_config(match_tolerance=float(percentage))
        return self.get_config()

    def update_config(self, payload: Dict[str, Any]) -> Dict[str, Any]:
        if payload.get("default_concurrency") is not None:
            self.set_default_concurrency(int(payload["default_concurrency"]))
        if any(payload.get(key) is not None for key in ("retry_attempts", "retry_backoff_seconds", "retry_backoff_max_seconds")):
            self.set_retry_policy(
                attempts=payload.get("retry_attempts"),
                backoff_seconds=payload.get("retry_backoff_seconds"),
                max_backoff_seconds=payload.get("retry_backoff_max_seconds"),
            )
        if payload.get("capture_post_wait_ms") is not None:
            self.set_capture_post_wait_ms(int(payload["capture_post_wait_ms"]))
        if payload.get("match_tolerance") is not None:
            self.set_match_tolerance(float(payload["match_tolerance"]))
        self._storage.update_config(
            headless=payload.get("headless"),
            defer_verdicts=payload.get("defer_verdicts"),
            base_url=payload.get("base_url"),
        )
        return self.get_config()

    # -- Batches ------------------------------------------------------------------
    def list_batches(self) -> List[Dict[str, Any]]:
        return sorted(self._storage.list("batches"), key=lambda it: it["created_at"], reverse=True)

    def get_batch(self, batch_id: str) -> Optional[Dict[str, Any]]:
        return self._storage.get("batches", batch_id)

    def create_batch(self, payload: Dict[str, Any]) -> Dict[str, Any]:
        now = _utcnow()
        batch_id = payload.get("id") or str(uuid.uuid4())
        record = {
            "id": batch_id,
            "batch_name": payload["batch_name"],
            "status": payload.get("status", "queued"),
            "config": payload.get("config"),
            "script": payload.get("script"),
            "overall_status": None,
            "summary": payload.get("summary") or {},
            "note": payload.get("note"),
            "jobs": {},
            "report": None,
            "created_at": now,
            "updated_at": now,
            "started_at": None,
            "completed_at": None,
        }
        return self._storage.upsert("batches", batch_id, record)

    def update_batch(self, batch_id: str, payload: Dict[str, Any]) -> Optional[Dict[str, Any]]:
        with self._lock:
            existing = self.get_batch(batch_id)
            if not existing:
                return None
            record = dict(existing)
            record.update({k: v for k, v in payload.items() if v is not None})
            record["updated_at"] = _utcnow()
            return self._storage.upsert("batches", batch_id, record)

    def record_job_result(self, batch_id: str, job_result: Dict[str, Any]) -> Optional[Dict[str, Any]]:
        with self._lock:
            existing = self.get_batch(batch_id)
            if not existing:
                return None
            record = dict(existing)
            jobs = dict(record.get("jobs") or {})
            jobs[job_result["job_id"]] = job_result
            record["jobs"] = jobs
            record["updated_at"] = _utcnow()
            return self._storage.upsert("batches", batch_id, record)

    def delete_batch(self, batch_id: str) -> None:
        self._storage.delete("batches", batch_id)


_repository: Optional[ReportRepository] = None


def get_repository() -> ReportRepository:
    """FastAPI dependency to retrieve the singleton repository instance."""
    global _repository
    if _repository is None:
        storage_path = Path("crosscheck.state.json")
        backend = LocalJsonStorage(storage_path)
        _repository = ReportRepository(backend)
    return _repository


RepositoryDep = Depends(get_repository)
