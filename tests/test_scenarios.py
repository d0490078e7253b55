from __future__ import annotations

from typing import List

import pytest

from crosscheck.errors import TransientError
from crosscheck.schemas import JobStatus, MatchPolicy, OverallStatus, Verdict
from crosscheck.services.aggregator import finalize
from crosscheck.services.comparison import RetryingComparisonClient
from crosscheck.services.matrix import expand
from crosscheck.services.runner import JobRunner
from crosscheck.services.scheduler import Scheduler

from stubs import (
    StubComparisonClient,
    StubDriverFactory,
    action,
    checkpoint,
    desktop,
    device,
    make_config,
    make_script,
)

ENVIRONMENTS = [desktop("chrome", 800, 600), device("iPhone X")]
SCRIPT = make_script(action("login"), checkpoint("main", MatchPolicy.layout))


def _run(client, drivers=None):
    jobs = expand(make_config(ENVIRONMENTS, concurrency=1), SCRIPT)
    runner = JobRunner(client, drivers or StubDriverFactory())
    results = Scheduler(runner.run, poll_interval=0.01).run_batch(jobs, 1)
    return finalize("Scenario", results)


@pytest.mark.unit
def test_all_environments_match() -> None:
    client = StubComparisonClient()
    report = _run(client)

    assert report.overall_status == OverallStatus.all_passed
    assert [result.status for result in report.ordered_results()] == [JobStatus.completed] * 2
    assert len(client.opened) == len(client.closed) == 2


@pytest.mark.unit
def test_mismatch_on_second_environment() -> None:
    client = StubComparisonClient(environment_verdicts={ENVIRONMENTS[1].key: {"main": Verdict.mismatch}})
    report = _run(client)

    first, second = report.ordered_results()
    assert first.checkpoint_results[0].verdict == Verdict.match
    assert second.checkpoint_results[0].verdict == Verdict.mismatch
    assert second.status == JobStatus.completed
    assert report.overall_status == OverallStatus.has_mismatches


@pytest.mark.unit
def test_action_failure_on_first_environment() -> None:
    client = StubComparisonClient()
    drivers = StubDriverFactory(failing_actions={ENVIRONMENTS[0].key: "login"})
    report = _run(client, drivers)

    first, second = report.ordered_results()
    assert first.status == JobStatus.failed
    assert first.checkpoint_results == []
    assert second.status == JobStatus.completed
    assert report.overall_status == OverallStatus.has_errors
    assert sorted(client.closed) == sorted(handle.id for handle in client.opened)


class FlakySubmitClient(StubComparisonClient):
    def __init__(self, failures: int) -> None:
        super().__init__()
        self.failures = failures
        self.attempts = 0

    def submit_checkpoint(self, session, tag, match_policy, captured_state):
        self.attempts += 1
        if self.attempts <= self.failures:
            raise TransientError("rate limited")
        return super().submit_checkpoint(session, tag, match_policy, captured_state)


@pytest.mark.unit
def test_transient_submit_errors_are_retried() -> None:
    sleeps: List[float] = []
    inner = FlakySubmitClient(failures=2)
    report = _run(RetryingComparisonClient(inner, attempts=3, sleep=sleeps.append))

    assert report.overall_status == OverallStatus.all_passed
    assert sleeps == [0.5, 1.0]


@pytest.mark.unit
def test_exhausted_retries_error_the_job() -> None:
    inner = FlakySubmitClient(failures=100)
    report = _run(RetryingComparisonClient(inner, attempts=2, sleep=lambda seconds: None))

    assert [result.status for result in report.ordered_results()] == [JobStatus.errored] * 2
    assert report.overall_status == OverallStatus.has_errors
    assert len(inner.closed) == 2
