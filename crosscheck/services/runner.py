from __future__ import annotations

import logging
import threading
import time
from typing import Dict, List, Optional

from crosscheck.errors import ActionError, CrossCheckError, FatalError, JobCancelled, TransientError
from crosscheck.schemas import (
    ActionStep,
    CheckpointResult,
    CheckpointStep,
    Job,
    JobResult,
    JobStatus,
    Verdict,
)
from crosscheck.services.comparison import ComparisonClient, SessionHandle
from crosscheck.services.driver import DriverFactory, UIDriver

LOGGER = logging.getLogger("crosscheck.runner")


def _utcnow() -> str:
    return time.strftime("%Y-%m-%dT%H:%M:%SZ", time.gmtime())


def _reconcile(
    recorded: List[CheckpointResult],
    resolved: List[CheckpointResult],
) -> List[CheckpointResult]:
    """Overlay the verdicts returned at close onto the recorded checkpoints.

    Results are matched by tag; recorded order is kept and checkpoints the
    service did not report back keep their submitted verdict.
    """
    by_tag: Dict[str, CheckpointResult] = {result.tag: result for result in resolved}
    return [by_tag.get(result.tag, result) for result in recorded]


class JobRunner:
    """Execute one interaction script against one environment."""

    def __init__(
        self,
        client: ComparisonClient,
        driver_factory: DriverFactory,
        *,
        cancel_event: Optional[threading.Event] = None,
    ) -> None:
        self._client = client
        self._driver_factory = driver_factory
        self._cancel_event = cancel_event

    def _check_cancelled(self) -> None:
        if self._cancel_event is not None and self._cancel_event.is_set():
            raise JobCancelled("cancelled")

    def _run_steps(self, job: Job, session: SessionHandle, driver: UIDriver, recorded: List[CheckpointResult]) -> None:
        total = len(job.script.steps)
        for index, step in enumerate(job.script.steps, 1):
            self._check_cancelled()
            label = f"{job.id} step {index}/{total}"
            if isinstance(step, ActionStep):
                LOGGER.debug("%s: action %s", label, step.name)
                driver.perform(step)
                continue
            if isinstance(step, CheckpointStep):
                LOGGER.debug("%s: checkpoint '%s' (%s)", label, step.tag, step.match_policy.value)
                state = driver.capture(full_page=step.full_page)
                result = self._client.submit_checkpoint(session, step.tag, step.match_policy, state)
                recorded.append(result)
                if result.verdict == Verdict.mismatch:
                    LOGGER.info("%s: checkpoint '%s' mismatched", label, step.tag)

    def run(self, job: Job) -> JobResult:
        started_at = _utcnow()
        LOGGER.info("Starting job %s (%s)", job.id, job.environment.key)

        try:
            self._check_cancelled()
            session = self._client.open_session(
                job.environment,
                job.test_name,
                job.batch_name,
                job_id=job.id,
                app_name=job.app_name,
            )
        except (FatalError, TransientError, JobCancelled) as exc:
            LOGGER.error("Job %s could not open a comparison session: %s", job.id, exc)
            return JobResult(
                job_id=job.id,
                sequence=job.sequence,
                environment=job.environment,
                status=JobStatus.errored,
                error=str(exc),
                started_at=started_at,
                completed_at=_utcnow(),
            )

        recorded: List[CheckpointResult] = []
        status = JobStatus.completed
        error: Optional[str] = None
        try:
            with self._driver_factory(job.environment) as driver:
                self._run_steps(job, session, driver, recorded)
        except ActionError as exc:
            status, error = JobStatus.failed, str(exc)
        except (FatalError, TransientError, JobCancelled) as exc:
            status, error = JobStatus.errored, str(exc)
        except CrossCheckError as exc:
            status, error = JobStatus.errored, str(exc)
        except Exception as exc:
            # Anything the driver raises outside the error taxonomy is a failed step.
            LOGGER.exception("Unexpected error in job %s", job.id)
            status, error = JobStatus.failed, f"{exc.__class__.__name__}: {exc}"
        finally:
            try:
                resolved = self._client.close_session(session)
            except (FatalError, TransientError) as exc:
                resolved = []
                if status == JobStatus.completed:
                    status, error = JobStatus.errored, f"close_session failed: {exc}"
                else:
                    LOGGER.warning("Job %s: close_session failed after %s: %s", job.id, status.value, exc)

        checkpoint_results = _reconcile(recorded, resolved)
        if status == JobStatus.failed:
            LOGGER.error("Job %s failed: %s", job.id, error)
        elif status == JobStatus.errored:
            LOGGER.error("Job %s errored: %s", job.id, error)
        else:
            LOGGER.info(
                "Job %s completed (%s checkpoints, %s passing)",
                job.id,
                len(checkpoint_results),
                sum(1 for result in checkpoint_results if result.verdict.passing),
            )
        return JobResult(
            job_id=job.id,
            sequence=job.sequence,
            environment=job.environment,
            status=status,
            checkpoint_results=checkpoint_results,
            error=error,
            started_at=started_at,
            completed_at=_utcnow(),
        )
