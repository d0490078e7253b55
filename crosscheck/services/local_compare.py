from __future__ import annotations

import logging
import threading
import uuid
from dataclasses import dataclass
from pathlib import Path
from typing import Dict, List, Optional

from PIL import Image, ImageChops, ImageFilter, ImageOps, UnidentifiedImageError

from crosscheck.constants import DEFAULT_APP_NAME
from crosscheck.errors import FatalError
from crosscheck.schemas import (
    CheckpointResult,
    DiffSummary,
    EnvironmentDescriptor,
    MatchPolicy,
    Verdict,
)
from crosscheck.services.artifacts import ArtifactStore
from crosscheck.services.comparison import ComparisonClient, SessionHandle
from crosscheck.services.driver import CapturedState

LOGGER = logging.getLogger("crosscheck.local_compare")

# Grayscale deltas at or below this value are ignored by the content policy.
CONTENT_THRESHOLD = 24
# Edge strength needed for a pixel to count as structure under the layout policy.
LAYOUT_EDGE_THRESHOLD = 32


def _pad_image(img: Image.Image, target_width: int, target_height: int) -> Image.Image:
    right = max(target_width - img.width, 0)
    bottom = max(target_height - img.height, 0)
    if right == 0 and bottom == 0:
        return img
    return ImageOps.expand(img, border=(0, 0, right, bottom), fill=(0, 0, 0, 0))


def _structure_mask(img: Image.Image) -> Image.Image:
    edges = img.convert("L").filter(ImageFilter.FIND_EDGES)
    mask = edges.point(lambda v: 255 if v > LAYOUT_EDGE_THRESHOLD else 0)
    # Tolerate one-pixel shifts from anti-aliasing.
    return mask.filter(ImageFilter.MaxFilter(3))


class DiffEngine:
    """Compare a baseline and an observed screenshot under a match policy."""

    def _difference(self, base_img: Image.Image, obs_img: Image.Image, policy: MatchPolicy) -> Image.Image:
        if policy == MatchPolicy.layout:
            return ImageChops.difference(_structure_mask(base_img), _structure_mask(obs_img))
        if policy == MatchPolicy.content:
            diff_gray = ImageChops.difference(base_img.convert("L"), obs_img.convert("L"))
            return diff_gray.point(lambda v: v if v > CONTENT_THRESHOLD else 0)
        # Any channel, alpha included, marks the pixel as changed.
        bands = ImageChops.difference(base_img, obs_img).split()
        diff = bands[0]
        for band in bands[1:]:
            diff = ImageChops.lighter(diff, band)
        return diff

    def generate(
        self,
        baseline_path: Path,
        observed_path: Path,
        policy: MatchPolicy,
        diff_path: Path,
        heatmap_path: Path,
    ) -> DiffSummary:
        with Image.open(baseline_path) as raw_base, Image.open(observed_path) as raw_obs:
            base_img = raw_base.convert("RGBA")
            obs_img = raw_obs.convert("RGBA")
        target_width = max(base_img.width, obs_img.width)
        target_height = max(base_img.height, obs_img.height)
        base_img = _pad_image(base_img, target_width, target_height)
        obs_img = _pad_image(obs_img, target_width, target_height)

        diff_gray = self._difference(base_img, obs_img, policy)
        total_pixels = diff_gray.width * diff_gray.height
        diff_pixels = total_pixels - diff_gray.histogram()[0]
        percentage = (diff_pixels / total_pixels * 100.0) if total_pixels else 0.0

        diff_alpha = diff_gray.point(lambda v: min(255, v * 4))
        diff_canvas = Image.new("RGBA", diff_gray.size, (0, 0, 0, 255))
        diff_overlay = Image.new("RGBA", diff_gray.size, (255, 193, 7, 0))
        diff_overlay.putalpha(diff_alpha)
        Image.alpha_composite(diff_canvas, diff_overlay).save(diff_path)

        heat_overlay = Image.new("RGBA", diff_gray.size, (255, 64, 0, 0))
        heat_overlay.putalpha(diff_alpha)
        Image.alpha_composite(obs_img, heat_overlay).save(heatmap_path)

        return DiffSummary(pixel_count=diff_pixels, percentage=round(percentage, 4))


@dataclass
class _Submission:
    tag: str
    job_key: str
    match_policy: MatchPolicy
    observed: Path
    result: CheckpointResult


class LocalComparisonService(ComparisonClient):
    """File-backed comparison service.

    Baselines live in the artifact store keyed by app, test, environment and
    tag. The first capture for a key becomes its baseline. With
    ``defer_verdicts`` every submission is answered ``unresolved`` and judged
    when the session closes, the way hosted services finish their diffs
    asynchronously. Closing a session again returns the results of the first
    close.
    """

    def __init__(
        self,
        artifacts: ArtifactStore,
        *,
        batch_id: str = "adhoc",
        defer_verdicts: bool = True,
        tolerance: float = 0.0,
        engine: Optional[DiffEngine] = None,
    ) -> None:
        self._artifacts = artifacts
        self._batch_id = batch_id
        self._defer = defer_verdicts
        self._tolerance = max(0.0, float(tolerance))
        self._engine = engine or DiffEngine()
        self._sessions: Dict[str, List[_Submission]] = {}
        self._closed: Dict[str, List[CheckpointResult]] = {}
        self._lock = threading.Lock()
        self._baseline_lock = threading.Lock()

    def open_session(
        self,
        environment: EnvironmentDescriptor,
        test_name: str,
        batch_name: str,
        *,
        job_id: Optional[str] = None,
        app_name: str = DEFAULT_APP_NAME,
    ) -> SessionHandle:
        handle = SessionHandle(
            id=str(uuid.uuid4()),
            environment=environment,
            test_name=test_name,
            batch_name=batch_name,
            job_id=job_id,
            app_name=app_name,
        )
        with self._lock:
            self._sessions[handle.id] = []
        LOGGER.debug("Opened session %s for %s", handle.id, environment.key)
        return handle

    def _submissions(self, session: SessionHandle) -> List[_Submission]:
        with self._lock:
            submissions = self._sessions.get(session.id)
        if submissions is None:
            raise FatalError(f"Unknown or closed session '{session.id}'")
        return submissions

    def _judge(self, session: SessionHandle, submission: _Submission) -> CheckpointResult:
        environment_key = session.environment.key
        artifacts = {"observed": self._artifacts.relative(submission.observed)}
        with self._baseline_lock:
            baseline = self._artifacts.baseline_path(
                session.app_name, session.test_name, environment_key, submission.tag
            )
            if not baseline.exists():
                self._artifacts.promote_to_baseline(
                    submission.observed, session.app_name, session.test_name, environment_key, submission.tag
                )
                artifacts["baseline"] = self._artifacts.relative(baseline)
                LOGGER.info("Recorded new baseline for '%s' on %s", submission.tag, environment_key)
                return CheckpointResult(
                    tag=submission.tag,
                    match_policy=submission.match_policy,
                    verdict=Verdict.baseline_created,
                    artifacts=artifacts,
                )

        diff_path = self._artifacts.checkpoint_path(self._batch_id, submission.job_key, submission.tag, "diff")
        heatmap_path = self._artifacts.checkpoint_path(self._batch_id, submission.job_key, submission.tag, "heatmap")
        try:
            diff = self._engine.generate(baseline, submission.observed, submission.match_policy, diff_path, heatmap_path)
        except (UnidentifiedImageError, OSError) as exc:
            raise FatalError(f"Could not compare '{submission.tag}' on {environment_key}: {exc}") from exc

        artifacts.update(
            {
                "baseline": self._artifacts.relative(baseline),
                "diff": self._artifacts.relative(diff_path),
                "heatmap": self._artifacts.relative(heatmap_path),
            }
        )
        percentage = diff.percentage or 0.0
        if diff.pixel_count and percentage > self._tolerance:
            verdict = Verdict.mismatch
        else:
            verdict = Verdict.match
        return CheckpointResult(
            tag=submission.tag,
            match_policy=submission.match_policy,
            verdict=verdict,
            diff=diff,
            artifacts=artifacts,
        )

    def submit_checkpoint(
        self,
        session: SessionHandle,
        tag: str,
        match_policy: MatchPolicy,
        captured_state: CapturedState,
    ) -> CheckpointResult:
        submissions = self._submissions(session)
        if not captured_state.image:
            raise FatalError(f"Checkpoint '{tag}' has no image data")
        job_key = session.job_id or session.environment.slug
        observed = self._artifacts.checkpoint_path(self._batch_id, job_key, tag)
        observed.write_bytes(captured_state.image)

        submission = _Submission(
            tag=tag,
            job_key=job_key,
            match_policy=match_policy,
            observed=observed,
            result=CheckpointResult(
                tag=tag,
                match_policy=match_policy,
                verdict=Verdict.unresolved,
                artifacts={"observed": self._artifacts.relative(observed)},
            ),
        )
        if not self._defer:
            submission.result = self._judge(session, submission)
        with self._lock:
            submissions.append(submission)
        return submission.result

    def close_session(self, session: SessionHandle) -> List[CheckpointResult]:
        with self._lock:
            if session.id in self._closed:
                return list(self._closed[session.id])
            submissions = self._sessions.get(session.id)
        if submissions is None:
            raise FatalError(f"Unknown session '{session.id}'")
        resolved: List[CheckpointResult] = []
        for submission in submissions:
            if submission.result.verdict == Verdict.unresolved:
                submission.result = self._judge(session, submission)
            resolved.append(submission.result)
        with self._lock:
            self._sessions.pop(session.id, None)
            self._closed[session.id] = resolved
        LOGGER.debug("Closed session %s (%s checkpoints)", session.id, len(resolved))
        return resolved
