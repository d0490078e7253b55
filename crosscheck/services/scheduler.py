from __future__ import annotations

import logging
import queue
import threading
import time
from collections import deque
from typing import Callable, Deque, Dict, List, Optional, Sequence

from crosscheck.errors import ConfigError
from crosscheck.schemas import Job, JobResult, JobState, JobStatus

LOGGER = logging.getLogger("crosscheck.scheduler")

CANCELLED_BEFORE_START = "cancelled before start"


def _utcnow() -> str:
    return time.strftime("%Y-%m-%dT%H:%M:%SZ", time.gmtime())


def _errored_result(job: Job, message: str) -> JobResult:
    now = _utcnow()
    return JobResult(
        job_id=job.id,
        sequence=job.sequence,
        environment=job.environment,
        status=JobStatus.errored,
        error=message,
        started_at=now,
        completed_at=now,
    )


class Scheduler:
    """Run jobs on a bounded pool of worker threads.

    At most ``concurrency`` jobs are dispatched at any time; each worker owns
    one job from start to finish. Results come back in completion order and
    every submitted job yields exactly one result, including jobs that were
    never started because the batch was cancelled.
    """

    def __init__(
        self,
        run_job: Callable[[Job], JobResult],
        *,
        cancel_event: Optional[threading.Event] = None,
        poll_interval: float = 1.0,
    ) -> None:
        self._run_job = run_job
        self._cancel_event = cancel_event or threading.Event()
        self._poll_interval = max(0.01, poll_interval)
        self._states: Dict[str, JobState] = {}
        self._max_active = 0

    @property
    def max_active(self) -> int:
        return self._max_active

    def states(self) -> Dict[str, JobState]:
        return dict(self._states)

    def cancel(self) -> None:
        LOGGER.info("Cancellation requested; no further jobs will be dispatched")
        self._cancel_event.set()

    def _work(self, job: Job, completion: "queue.Queue[JobResult]") -> None:
        result: Optional[JobResult] = None
        try:
            result = self._run_job(job)
        except Exception as exc:
            LOGGER.exception("Unhandled error while running job %s", job.id)
            result = _errored_result(job, f"{exc.__class__.__name__}: {exc}")
        finally:
            if result is None:
                result = _errored_result(job, "job runner aborted")
            completion.put(result)

    def _record(
        self,
        result: JobResult,
        results: List[JobResult],
        on_result: Optional[Callable[[JobResult], None]],
    ) -> None:
        self._states[result.job_id] = JobState(result.status.value)
        results.append(result)
        if on_result is None:
            return
        try:
            on_result(result)
        except Exception:
            LOGGER.exception("Result callback failed for job %s", result.job_id)

    def run_batch(
        self,
        jobs: Sequence[Job],
        concurrency: int,
        *,
        on_result: Optional[Callable[[JobResult], None]] = None,
    ) -> List[JobResult]:
        if not isinstance(concurrency, int) or concurrency < 1:
            raise ConfigError(f"Concurrency must be a positive integer (got {concurrency!r})")
        seen = set()
        for job in jobs:
            if job.id in seen:
                raise ValueError(f"Duplicate job id '{job.id}'")
            seen.add(job.id)

        self._states = {job.id: JobState.queued for job in jobs}
        self._max_active = 0
        completion: "queue.Queue[JobResult]" = queue.Queue()
        pending: Deque[Job] = deque(jobs)
        active: Dict[str, threading.Thread] = {}
        results: List[JobResult] = []

        LOGGER.info("Dispatching %s jobs with concurrency %s", len(pending), concurrency)
        while pending or active:
            while pending and len(active) < concurrency and not self._cancel_event.is_set():
                job = pending.popleft()
                thread = threading.Thread(
                    target=self._work,
                    args=(job, completion),
                    name=f"crosscheck-job-{job.id[:24]}",
                    daemon=True,
                )
                active[job.id] = thread
                self._states[job.id] = JobState.running
                self._max_active = max(self._max_active, len(active))
                thread.start()

            if self._cancel_event.is_set() and pending:
                LOGGER.info("Batch cancelled; skipping %s undispatched jobs", len(pending))
                while pending:
                    self._record(_errored_result(pending.popleft(), CANCELLED_BEFORE_START), results, on_result)

            if not active:
                break

            try:
                result = completion.get(timeout=self._poll_interval)
            except queue.Empty:
                continue

            thread = active.pop(result.job_id, None)
            if thread is not None:
                thread.join(timeout=5)
            self._record(result, results, on_result)

        return results
