from __future__ import annotations

import logging
import time
from dataclasses import dataclass
from typing import Callable, List, Optional, TypeVar

from crosscheck.constants import DEFAULT_APP_NAME
from crosscheck.errors import FatalError, TransientError
from crosscheck.schemas import CheckpointResult, EnvironmentDescriptor, MatchPolicy
from crosscheck.services.driver import CapturedState

LOGGER = logging.getLogger("crosscheck.comparison")

T = TypeVar("T")


@dataclass(frozen=True)
class SessionHandle:
    id: str
    environment: EnvironmentDescriptor
    test_name: str
    batch_name: str
    job_id: Optional[str] = None
    app_name: str = DEFAULT_APP_NAME


class ComparisonClient:
    """Contract of the visual-comparison service.

    Every operation may raise ``TransientError`` (worth retrying) or
    ``FatalError`` (bad session, invalid input). ``close_session`` returns the
    final result of every checkpoint submitted on the session, in submission
    order, with deferred (``unresolved``) verdicts reconciled. A retried
    ``close_session`` may reach a session the service already released, so
    implementations must answer a repeated close with the same results.
    """

    def open_session(
        self,
        environment: EnvironmentDescriptor,
        test_name: str,
        batch_name: str,
        *,
        job_id: Optional[str] = None,
        app_name: str = DEFAULT_APP_NAME,
    ) -> SessionHandle:  # pragma: no cover - interface stub
        raise NotImplementedError

    def submit_checkpoint(
        self,
        session: SessionHandle,
        tag: str,
        match_policy: MatchPolicy,
        captured_state: CapturedState,
    ) -> CheckpointResult:  # pragma: no cover - interface stub
        raise NotImplementedError

    def close_session(self, session: SessionHandle) -> List[CheckpointResult]:  # pragma: no cover - interface stub
        raise NotImplementedError


class RetryingComparisonClient(ComparisonClient):
    """Retry transient faults of a wrapped client with exponential backoff.

    Fatal errors pass straight through. Once ``attempts`` tries have failed
    transiently the last fault is re-raised as ``FatalError``.
    """

    def __init__(
        self,
        inner: ComparisonClient,
        *,
        attempts: int = 3,
        backoff_seconds: float = 0.5,
        max_backoff_seconds: float = 8.0,
        sleep: Callable[[float], None] = time.sleep,
    ) -> None:
        if attempts < 1:
            raise ValueError("Retry attempts must be at least 1.")
        self._inner = inner
        self._attempts = attempts
        self._backoff = max(0.0, backoff_seconds)
        self._max_backoff = max(0.0, max_backoff_seconds)
        self._sleep = sleep

    def _delay(self, attempt: int) -> float:
        return min(self._backoff * (2 ** attempt), self._max_backoff)

    def _call(self, operation: str, func: Callable[[], T]) -> T:
        last_error: Optional[TransientError] = None
        for attempt in range(self._attempts):
            try:
                return func()
            except TransientError as exc:
                last_error = exc
                attempt_no = attempt + 1
                if attempt_no >= self._attempts:
                    break
                delay = self._delay(attempt)
                LOGGER.warning(
                    "Transient failure during %s (attempt %s/%s): %s; retrying in %.2fs",
                    operation,
                    attempt_no,
                    self._attempts,
                    exc,
                    delay,
                )
                if delay:
                    self._sleep(delay)
        raise FatalError(
            f"{operation} failed after {self._attempts} attempts: {last_error}"
        ) from last_error

    def open_session(
        self,
        environment: EnvironmentDescriptor,
        test_name: str,
        batch_name: str,
        *,
        job_id: Optional[str] = None,
        app_name: str = DEFAULT_APP_NAME,
    ) -> SessionHandle:
        return self._call(
            "open_session",
            lambda: self._inner.open_session(environment, test_name, batch_name, job_id=job_id, app_name=app_name),
        )

    def submit_checkpoint(
        self,
        session: SessionHandle,
        tag: str,
        match_policy: MatchPolicy,
        captured_state: CapturedState,
    ) -> CheckpointResult:
        return self._call(
            f"submit_checkpoint[{tag}]",
            lambda: self._inner.submit_checkpoint(session, tag, match_policy, captured_state),
        )

    def close_session(self, session: SessionHandle) -> List[CheckpointResult]:
        return self._call("close_session", lambda: self._inner.close_session(session))
