from __future__ import annotations

import logging
import queue
import threading
import time
from pathlib import Path
from typing import Callable, Dict, List, Optional, Tuple

from crosscheck.schemas import (
    BatchConfig,
    BatchReport,
    BatchStatus,
    InteractionScript,
    Job,
    JobResult,
)
from crosscheck.services.aggregator import finalize
from crosscheck.services.artifacts import ArtifactStore, set_artifact_store
from crosscheck.services.comparison import ComparisonClient, RetryingComparisonClient
from crosscheck.services.driver import DriverFactory, playwright_driver_factory
from crosscheck.services.local_compare import LocalComparisonService
from crosscheck.services.matrix import expand
from crosscheck.services.runner import JobRunner
from crosscheck.services.scheduler import Scheduler
from crosscheck.services.storage import ReportRepository, get_repository

LOGGER = logging.getLogger("crosscheck.orchestrator")

ClientFactory = Callable[[str], ComparisonClient]

TERMINAL_STATUSES = {
    BatchStatus.finished.value,
    BatchStatus.cancelled.value,
    BatchStatus.failed.value,
}


def _utcnow() -> str:
    return time.strftime("%Y-%m-%dT%H:%M:%SZ", time.gmtime())


class BatchOrchestrator:
    """Expand batches into jobs, run them and persist the resulting reports."""

    def __init__(
        self,
        repo: Optional[ReportRepository] = None,
        artifacts: Optional[ArtifactStore] = None,
        *,
        client_factory: Optional[ClientFactory] = None,
        driver_factory: Optional[DriverFactory] = None,
        auto_start: bool = True,
        poll_interval: float = 1.0,
        sleep: Callable[[float], None] = time.sleep,
    ) -> None:
        self._repo = repo or get_repository()
        config_defaults = self._repo.get_config()
        self._artifacts = artifacts or ArtifactStore(root=Path(config_defaults["artifacts_root"]))
        self._client_factory = client_factory or self._local_client
        self._driver_factory = driver_factory or playwright_driver_factory(
            headless=config_defaults["headless"],
            post_wait_ms=config_defaults["capture_post_wait_ms"],
            base_url=config_defaults["base_url"],
        )
        self._poll_interval = poll_interval
        self._sleep = sleep
        self._queue: "queue.Queue[Tuple[str, BatchConfig, List[Job]]]" = queue.Queue()
        self._cancel_events: Dict[str, threading.Event] = {}
        self._lock = threading.Lock()
        self._worker: Optional[threading.Thread] = None
        if auto_start:
            self._ensure_worker()

    @property
    def artifacts(self) -> ArtifactStore:
        return self._artifacts

    def _local_client(self, batch_id: str) -> ComparisonClient:
        config = self._repo.get_config()
        return LocalComparisonService(
            self._artifacts,
            batch_id=batch_id,
            defer_verdicts=config["defer_verdicts"],
            tolerance=config["match_tolerance"],
        )

    def _build_client(self, batch_id: str) -> ComparisonClient:
        config = self._repo.get_config()
        return RetryingComparisonClient(
            self._client_factory(batch_id),
            attempts=config["retry_attempts"],
            backoff_seconds=config["retry_backoff_seconds"],
            max_backoff_seconds=config["retry_backoff_max_seconds"],
            sleep=self._sleep,
        )

    def _cancel_event(self, batch_id: str) -> threading.Event:
        with self._lock:
            event = self._cancel_events.get(batch_id)
            if event is None:
                event = threading.Event()
                self._cancel_events[batch_id] = event
            return event

    def _create_record(self, config: BatchConfig, script: InteractionScript) -> Dict[str, object]:
        return self._repo.create_batch(
            {
                "batch_name": config.batch_name,
                "status": BatchStatus.queued.value,
                "config": config.model_dump(mode="json", exclude_none=True),
                "script": script.model_dump(mode="json"),
            }
        )

    def _process_batch(self, batch_id: str, config: BatchConfig, jobs: List[Job]) -> BatchReport:
        cancel_event = self._cancel_event(batch_id)
        LOGGER.info(
            "Starting batch %s '%s' (%s jobs, concurrency=%s)",
            batch_id,
            config.batch_name,
            len(jobs),
            config.concurrency,
        )
        self._repo.update_batch(
            batch_id,
            {
                "status": BatchStatus.executing.value,
                "started_at": _utcnow(),
                "summary": {"jobs_total": len(jobs)},
            },
        )

        def _on_result(result: JobResult) -> None:
            self._repo.record_job_result(batch_id, result.model_dump(mode="json"))

        try:
            runner = JobRunner(self._build_client(batch_id), self._driver_factory, cancel_event=cancel_event)
            scheduler = Scheduler(runner.run, cancel_event=cancel_event, poll_interval=self._poll_interval)
            results = scheduler.run_batch(jobs, config.concurrency, on_result=_on_result)
            report = finalize(config.batch_name, results)
        except Exception as exc:
            self._repo.update_batch(
                batch_id,
                {
                    "status": BatchStatus.failed.value,
                    "completed_at": _utcnow(),
                    "note": f"Batch aborted: {exc}",
                },
            )
            raise
        finally:
            with self._lock:
                self._cancel_events.pop(batch_id, None)

        final_status = BatchStatus.cancelled if cancel_event.is_set() else BatchStatus.finished
        self._repo.update_batch(
            batch_id,
            {
                "status": final_status.value,
                "overall_status": report.overall_status.value,
                "summary": report.summary.model_dump(),
                "report": report.model_dump(mode="json"),
                "completed_at": _utcnow(),
            },
        )
        LOGGER.info(
            "Completed batch %s: %s (%s) completed=%s failed=%s errored=%s",
            batch_id,
            final_status.value,
            report.overall_status.value,
            report.summary.jobs_completed,
            report.summary.jobs_failed,
            report.summary.jobs_errored,
        )
        return report

    def execute(self, config: BatchConfig, script: InteractionScript) -> Tuple[str, BatchReport]:
        """Run a batch in the calling thread and return its id and report."""
        jobs = expand(config, script)
        record = self._create_record(config, script)
        return record["id"], self._process_batch(record["id"], config, jobs)

    def enqueue(self, config: BatchConfig, script: InteractionScript) -> str:
        """Validate a batch and hand it to the background worker."""
        jobs = expand(config, script)
        record = self._create_record(config, script)
        batch_id = record["id"]
        self._cancel_event(batch_id)
        self._queue.put((batch_id, config, jobs))
        self._ensure_worker()
        return batch_id

    def cancel_batch(self, batch_id: str) -> bool:
        record = self._repo.get_batch(batch_id)
        if not record or record.get("status") in TERMINAL_STATUSES:
            return False
        with self._lock:
            event = self._cancel_events.get(batch_id)
        if event is None:
            return False
        LOGGER.info("Cancellation requested for batch %s", batch_id)
        event.set()
        return True

    def delete_batch(self, batch_id: str) -> None:
        self._artifacts.purge_batch(batch_id)
        self._repo.delete_batch(batch_id)

    def get_report(self, batch_id: str) -> Optional[BatchReport]:
        record = self._repo.get_batch(batch_id)
        if not record or not record.get("report"):
            return None
        return BatchReport.model_validate(record["report"])

    def _ensure_worker(self) -> None:
        if self._worker and self._worker.is_alive():
            return
        self._worker = threading.Thread(target=self._run_loop, daemon=True, name="crosscheck-orchestrator")
        self._worker.start()

    def _run_loop(self) -> None:
        while True:
            batch_id, config, jobs = self._queue.get()
            try:
                self._process_batch(batch_id, config, jobs)
            except Exception:
                LOGGER.exception("Unhandled error while processing batch %s", batch_id)
            finally:
                self._queue.task_done()

    def join(self) -> None:
        """Block until every enqueued batch has been processed."""
        self._queue.join()


_orchestrator: Optional[BatchOrchestrator] = None


def get_orchestrator() -> BatchOrchestrator:
    global _orchestrator
    if _orchestrator is None:
        _orchestrator = BatchOrchestrator()
        set_artifact_store(_orchestrator.artifacts)
    return _orchestrator
