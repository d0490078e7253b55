from __future__ import annotations

from typing import Dict, Iterable

from crosscheck.schemas import (
    BatchReport,
    BatchSummary,
    JobResult,
    JobStatus,
    OverallStatus,
    Verdict,
)


def compute_overall_status(results: Iterable[JobResult]) -> OverallStatus:
    """Errors outrank mismatches; a batch passes only if every job passed."""
    has_mismatch = False
    for result in results:
        if result.status in (JobStatus.failed, JobStatus.errored):
            return OverallStatus.has_errors
        if not result.passed:
            has_mismatch = True
    return OverallStatus.has_mismatches if has_mismatch else OverallStatus.all_passed


def summarize(results: Iterable[JobResult]) -> BatchSummary:
    summary = BatchSummary()
    for result in results:
        summary.jobs_total += 1
        if result.status == JobStatus.completed:
            summary.jobs_completed += 1
        elif result.status == JobStatus.failed:
            summary.jobs_failed += 1
        else:
            summary.jobs_errored += 1
        for checkpoint in result.checkpoint_results:
            summary.checkpoints_total += 1
            if checkpoint.verdict == Verdict.match:
                summary.checkpoints_matched += 1
            elif checkpoint.verdict == Verdict.mismatch:
                summary.checkpoints_mismatched += 1
            elif checkpoint.verdict == Verdict.unresolved:
                summary.checkpoints_unresolved += 1
            else:
                summary.baselines_created += 1
    return summary


def finalize(batch_name: str, results: Iterable[JobResult]) -> BatchReport:
    """Merge job results into an immutable batch report.

    The report only depends on the set of results, not on the order in which
    jobs completed.
    """
    ordered = sorted(results, key=lambda item: (item.sequence, item.job_id))
    job_results: Dict[str, JobResult] = {}
    for result in ordered:
        if result.job_id in job_results:
            raise ValueError(f"Duplicate result for job '{result.job_id}'")
        job_results[result.job_id] = result
    return BatchReport(
        batch_name=batch_name,
        job_results=job_results,
        overall_status=compute_overall_status(ordered),
        summary=summarize(ordered),
    )
