from __future__ import annotations

import io
from pathlib import Path

import pytest
from PIL import Image

from crosscheck.errors import FatalError
from crosscheck.schemas import MatchPolicy, Verdict
from crosscheck.services.artifacts import ArtifactStore
from crosscheck.services.driver import CapturedState
from crosscheck.services.local_compare import LocalComparisonService

from stubs import make_png, desktop

BLUE = (0, 0, 255)
OFF_WHITE = (250, 250, 250)


def _run(service: LocalComparisonService, image: bytes, policy: MatchPolicy = MatchPolicy.strict, tag: str = "home"):
    session = service.open_session(desktop(), "homepage", "batch", job_id="001-chrome-800x600")
    submitted = service.submit_checkpoint(session, tag, policy, CapturedState(image=image))
    resolved = service.close_session(session)
    return submitted, resolved[0]


@pytest.fixture
def store(tmp_path: Path) -> ArtifactStore:
    return ArtifactStore(root=tmp_path / "artifacts")


@pytest.mark.unit
def test_first_capture_becomes_baseline(store: ArtifactStore) -> None:
    submitted, result = _run(LocalComparisonService(store), make_png())

    assert submitted.verdict == Verdict.unresolved
    assert result.verdict == Verdict.baseline_created
    assert (store.root / result.artifacts["baseline"]).is_file()
    assert (store.root / result.artifacts["observed"]).is_file()


@pytest.mark.unit
def test_identical_capture_matches(store: ArtifactStore) -> None:
    _run(LocalComparisonService(store, batch_id="first"), make_png())
    _, result = _run(LocalComparisonService(store, batch_id="second"), make_png())

    assert result.verdict == Verdict.match
    assert result.diff is not None and result.diff.pixel_count == 0
    assert result.artifacts["observed"].startswith("batches/second/")


@pytest.mark.unit
def test_changed_capture_mismatches_and_writes_diff_images(store: ArtifactStore) -> None:
    _run(LocalComparisonService(store, batch_id="first"), make_png())
    _, result = _run(LocalComparisonService(store, batch_id="second"), make_png(rect=(0, 0, 20, 20)))

    assert result.verdict == Verdict.mismatch
    assert result.diff.pixel_count > 0
    assert 0 < result.diff.percentage <= 100
    assert (store.root / result.artifacts["diff"]).is_file()
    assert (store.root / result.artifacts["heatmap"]).is_file()


@pytest.mark.unit
def test_size_change_is_a_mismatch(store: ArtifactStore) -> None:
    _run(LocalComparisonService(store, batch_id="first"), make_png(size=(40, 30)))
    _, result = _run(LocalComparisonService(store, batch_id="second"), make_png(size=(40, 40)))
    assert result.verdict == Verdict.mismatch


@pytest.mark.unit
def test_layout_policy_ignores_colour_changes(store: ArtifactStore) -> None:
    _run(LocalComparisonService(store, batch_id="first"), make_png(), MatchPolicy.layout)
    recolored = make_png(rect_color=BLUE)

    _, layout = _run(LocalComparisonService(store, batch_id="second"), recolored, MatchPolicy.layout)
    _, strict = _run(LocalComparisonService(store, batch_id="third"), recolored, MatchPolicy.strict)

    assert layout.verdict == Verdict.match
    assert strict.verdict == Verdict.mismatch


@pytest.mark.unit
def test_content_policy_ignores_faint_shading(store: ArtifactStore) -> None:
    _run(LocalComparisonService(store, batch_id="first"), make_png())
    shaded = make_png(background=OFF_WHITE)

    _, content = _run(LocalComparisonService(store, batch_id="second"), shaded, MatchPolicy.content)
    _, strict = _run(LocalComparisonService(store, batch_id="third"), shaded, MatchPolicy.strict)

    assert content.verdict == Verdict.match
    assert strict.verdict == Verdict.mismatch


@pytest.mark.unit
def test_tolerance_allows_small_differences(store: ArtifactStore) -> None:
    _run(LocalComparisonService(store, batch_id="first"), make_png(rect=None))
    _, result = _run(
        LocalComparisonService(store, batch_id="second", tolerance=5.0),
        make_png(rect=(0, 0, 1, 1)),
    )
    assert result.verdict == Verdict.match
    assert result.diff.pixel_count == 4


@pytest.mark.unit
def test_immediate_verdicts_when_not_deferred(store: ArtifactStore) -> None:
    submitted, resolved = _run(LocalComparisonService(store, defer_verdicts=False), make_png())
    assert submitted.verdict == Verdict.baseline_created
    assert resolved == submitted


@pytest.mark.unit
def test_closed_sessions_reject_submissions_but_close_again(store: ArtifactStore) -> None:
    service = LocalComparisonService(store)
    session = service.open_session(desktop(), "homepage", "batch")
    service.submit_checkpoint(session, "home", MatchPolicy.strict, CapturedState(image=make_png()))
    first = service.close_session(session)

    with pytest.raises(FatalError):
        service.submit_checkpoint(session, "late", MatchPolicy.strict, CapturedState(image=make_png()))
    assert service.close_session(session) == first
    assert [result.verdict for result in first] == [Verdict.baseline_created]


@pytest.mark.unit
def test_unknown_session_is_fatal(store: ArtifactStore) -> None:
    other = LocalComparisonService(store).open_session(desktop(), "homepage", "batch")

    with pytest.raises(FatalError):
        LocalComparisonService(store).close_session(other)


@pytest.mark.unit
def test_unreadable_capture_is_fatal(store: ArtifactStore) -> None:
    _run(LocalComparisonService(store, batch_id="first"), make_png())
    service = LocalComparisonService(store, batch_id="second")
    session = service.open_session(desktop(), "homepage", "batch")
    service.submit_checkpoint(session, "home", MatchPolicy.strict, CapturedState(image=b"not a png"))

    with pytest.raises(FatalError):
        service.close_session(session)


def _solid_png(color, size=(20, 20)) -> bytes:
    image = Image.new("RGBA", size, color)
    buffer = io.BytesIO()
    image.save(buffer, format="PNG")
    return buffer.getvalue()


@pytest.mark.unit
@pytest.mark.parametrize(
    "changed",
    [(200, 200, 201, 255), (200, 200, 200, 254)],
    ids=["one-unit-blue", "alpha-only"],
)
def test_strict_policy_counts_any_channel_change(store: ArtifactStore, changed) -> None:
    _run(LocalComparisonService(store, batch_id="first"), _solid_png((200, 200, 200, 255)))
    _, result = _run(LocalComparisonService(store, batch_id="second"), _solid_png(changed))

    assert result.verdict == Verdict.mismatch
    assert result.diff.pixel_count == 400
    assert result.diff.percentage == 100.0


@pytest.mark.unit
def test_strict_policy_sees_opaque_black_growth(store: ArtifactStore) -> None:
    _run(LocalComparisonService(store, batch_id="first"), _solid_png((0, 0, 0, 255), size=(20, 20)))
    _, result = _run(LocalComparisonService(store, batch_id="second"), _solid_png((0, 0, 0, 255), size=(20, 25)))

    assert result.verdict == Verdict.mismatch
    assert result.diff.pixel_count == 100


@pytest.mark.unit
def test_baselines_are_kept_per_app(store: ArtifactStore) -> None:
    def submit(app_name: str, image: bytes, batch_id: str):
        service = LocalComparisonService(store, batch_id=batch_id)
        session = service.open_session(desktop(), "homepage", "batch", app_name=app_name)
        service.submit_checkpoint(session, "home", MatchPolicy.strict, CapturedState(image=image))
        return service.close_session(session)[0]

    first = submit("shop", make_png(), "first")
    other = submit("blog", make_png(rect_color=BLUE), "second")
    again = submit("shop", make_png(), "third")

    assert first.verdict == Verdict.baseline_created
    assert other.verdict == Verdict.baseline_created
    assert again.verdict == Verdict.match
    assert first.artifacts["baseline"].startswith("baselines/shop/homepage/")
    assert other.artifacts["baseline"].startswith("baselines/blog/homepage/")
