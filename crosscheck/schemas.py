from __future__ import annotations

import re
from enum import Enum
from typing import Annotated, Any, Dict, List, Literal, Optional, Tuple, Union

from pydantic import AliasChoices, BaseModel, Field, field_validator, model_validator

from crosscheck.constants import DEFAULT_APP_NAME, DEFAULT_CONCURRENCY, DEFAULT_TEST_NAME


class Orientation(str, Enum):
    portrait = "portrait"
    landscape = "landscape"


class MatchPolicy(str, Enum):
    strict = "strict"
    layout = "layout"
    content = "content"


class Verdict(str, Enum):
    match = "match"
    mismatch = "mismatch"
    unresolved = "unresolved"
    baseline_created = "baseline_created"

    @property
    def passing(self) -> bool:
        return self in (Verdict.match, Verdict.baseline_created)


class JobState(str, Enum):
    created = "created"
    queued = "queued"
    running = "running"
    completed = "completed"
    failed = "failed"
    errored = "errored"


class JobStatus(str, Enum):
    completed = "completed"
    failed = "failed"
    errored = "errored"


class OverallStatus(str, Enum):
    all_passed = "all_passed"
    has_mismatches = "has_mismatches"
    has_errors = "has_errors"

    @property
    def exit_code(self) -> int:
        return {
            OverallStatus.all_passed: 0,
            OverallStatus.has_mismatches: 1,
            OverallStatus.has_errors: 2,
        }[self]


class BatchStatus(str, Enum):
    queued = "queued"
    executing = "executing"
    finished = "finished"
    cancelled = "cancelled"
    failed = "failed"


def _lower(value: Any) -> Any:
    if isinstance(value, str):
        return value.strip().lower()
    return value


class EnvironmentDescriptor(BaseModel):
    """One rendering target: a desktop browser viewport or an emulated device."""

    width: Optional[int] = None
    height: Optional[int] = None
    browser_name: Optional[str] = Field(
        default=None,
        validation_alias=AliasChoices("browser_name", "browserName", "name", "browser"),
    )
    device_name: Optional[str] = Field(
        default=None,
        validation_alias=AliasChoices("device_name", "deviceName"),
    )
    orientation: Optional[Orientation] = Field(
        default=None,
        validation_alias=AliasChoices("orientation", "screenOrientation"),
    )

    model_config = {"frozen": True}

    @model_validator(mode="before")
    @classmethod
    def default_orientation(cls, data: Any) -> Any:
        if not isinstance(data, dict):
            return data
        has_device = data.get("device_name") or data.get("deviceName")
        has_orientation = data.get("orientation") or data.get("screenOrientation")
        if has_device and not has_orientation:
            data = dict(data)
            data["orientation"] = Orientation.portrait.value
        return data

    @field_validator("orientation", mode="before")
    @classmethod
    def normalize_orientation(cls, value: Any) -> Any:
        return _lower(value)

    @field_validator("browser_name", mode="before")
    @classmethod
    def normalize_browser(cls, value: Any) -> Any:
        return _lower(value)

    @field_validator("width", "height")
    @classmethod
    def validate_positive(cls, value: Optional[int]) -> Optional[int]:
        if value is not None and value <= 0:
            raise ValueError("Viewport dimensions must be positive integers.")
        return value

    @model_validator(mode="after")
    def validate_shape(self) -> "EnvironmentDescriptor":
        desktop_fields = (self.width, self.height, self.browser_name)
        if self.device_name is not None:
            if any(value is not None for value in desktop_fields):
                raise ValueError(
                    "Environment must describe either a desktop browser or a mobile device, not both."
                )
            if not self.device_name.strip():
                raise ValueError("Device name cannot be blank.")
            return self
        if any(value is None for value in desktop_fields):
            raise ValueError("Desktop environments require width, height and browser_name.")
        if not self.browser_name:
            raise ValueError("Browser name cannot be blank.")
        if self.orientation is not None:
            raise ValueError("Orientation only applies to mobile devices.")
        return self

    @property
    def is_mobile(self) -> bool:
        return self.device_name is not None

    @property
    def key(self) -> str:
        if self.is_mobile:
            orientation = self.orientation or Orientation.portrait
            return f"{self.device_name} {orientation.value}"
        return f"{self.browser_name} {self.width}x{self.height}"

    @property
    def slug(self) -> str:
        return re.sub(r"[^a-z0-9]+", "-", self.key.lower()).strip("-")

    def __str__(self) -> str:
        return self.key


class ActionStep(BaseModel):
    kind: Literal["action"] = "action"
    name: str = Field(..., min_length=1, description="Action identifier, e.g. visit, click, fill.")
    payload: Dict[str, Any] = Field(default_factory=dict)

    model_config = {"frozen": True}

    @field_validator("name", mode="before")
    @classmethod
    def normalize_name(cls, value: Any) -> Any:
        return _lower(value)


class CheckpointStep(BaseModel):
    kind: Literal["checkpoint"] = "checkpoint"
    tag: str = Field(..., min_length=1)
    match_policy: MatchPolicy = Field(
        default=MatchPolicy.strict,
        validation_alias=AliasChoices("match_policy", "matchPolicy", "matchLevel"),
    )
    full_page: bool = Field(
        default=True,
        validation_alias=AliasChoices("full_page", "fullPage", "fully"),
    )

    model_config = {"frozen": True}

    @field_validator("match_policy", mode="before")
    @classmethod
    def normalize_policy(cls, value: Any) -> Any:
        return _lower(value)


Step = Annotated[Union[ActionStep, CheckpointStep], Field(discriminator="kind")]


class InteractionScript(BaseModel):
    """Ordered steps replayed unchanged against every environment."""

    name: str = DEFAULT_TEST_NAME
    steps: Tuple[Step, ...] = ()

    model_config = {"frozen": True}

    @field_validator("steps")
    @classmethod
    def validate_unique_tags(cls, steps: Tuple[Any, ...]) -> Tuple[Any, ...]:
        seen = set()
        for step in steps:
            if isinstance(step, CheckpointStep):
                if step.tag in seen:
                    raise ValueError(f"Checkpoint tag '{step.tag}' is used more than once.")
                seen.add(step.tag)
        return steps

    @property
    def checkpoints(self) -> List[CheckpointStep]:
        return [step for step in self.steps if isinstance(step, CheckpointStep)]


class BatchConfig(BaseModel):
    batch_name: str = Field(
        ...,
        min_length=1,
        validation_alias=AliasChoices("batch_name", "batchName"),
    )
    concurrency: int = Field(
        default=DEFAULT_CONCURRENCY,
        ge=1,
        validation_alias=AliasChoices("concurrency", "testConcurrency"),
    )
    environments: Tuple[EnvironmentDescriptor, ...] = Field(
        ...,
        min_length=1,
        validation_alias=AliasChoices("environments", "browser", "browsers"),
    )
    app_name: str = Field(
        default=DEFAULT_APP_NAME,
        validation_alias=AliasChoices("app_name", "appName"),
    )

    model_config = {"frozen": True}


class Job(BaseModel):
    id: str
    sequence: int
    batch_name: str
    app_name: str = DEFAULT_APP_NAME
    environment: EnvironmentDescriptor
    script: InteractionScript

    model_config = {"frozen": True}

    @property
    def test_name(self) -> str:
        return self.script.name


class DiffSummary(BaseModel):
    pixel_count: Optional[int] = None
    percentage: Optional[float] = None

    model_config = {"frozen": True}


class CheckpointResult(BaseModel):
    tag: str
    match_policy: MatchPolicy
    verdict: Verdict
    diff: Optional[DiffSummary] = None
    artifacts: Dict[str, str] = Field(default_factory=dict)

    model_config = {"frozen": True}


class JobResult(BaseModel):
    job_id: str
    sequence: int
    environment: EnvironmentDescriptor
    status: JobStatus
    checkpoint_results: List[CheckpointResult] = Field(default_factory=list)
    error: Optional[str] = None
    started_at: Optional[str] = None
    completed_at: Optional[str] = None

    model_config = {"frozen": True}

    @property
    def passed(self) -> bool:
        return self.status == JobStatus.completed and all(
            result.verdict.passing for result in self.checkpoint_results
        )


class BatchSummary(BaseModel):
    jobs_total: int = 0
    jobs_completed: int = 0
    jobs_failed: int = 0
    jobs_errored: int = 0
    checkpoints_total: int = 0
    checkpoints_matched: int = 0
    checkpoints_mismatched: int = 0
    checkpoints_unresolved: int = 0
    baselines_created: int = 0


class BatchReport(BaseModel):
    batch_name: str
    job_results: Dict[str, JobResult] = Field(default_factory=dict)
    overall_status: OverallStatus
    summary: BatchSummary = Field(default_factory=BatchSummary)

    model_config = {"frozen": True}

    @property
    def exit_code(self) -> int:
        return self.overall_status.exit_code

    def ordered_results(self) -> List[JobResult]:
        return sorted(self.job_results.values(), key=lambda item: (item.sequence, item.job_id))


class BatchRequest(BaseModel):
    config: BatchConfig
    script: InteractionScript


class BatchRecord(BaseModel):
    id: str
    batch_name: str
    status: BatchStatus
    overall_status: Optional[OverallStatus] = None
    summary: BatchSummary = Field(default_factory=BatchSummary)
    note: Optional[str] = None
    created_at: str
    updated_at: str
    started_at: Optional[str] = None
    completed_at: Optional[str] = None

    model_config = {"from_attributes": True}


class ConfigUpdate(BaseModel):
    default_concurrency: Optional[int] = Field(default=None, ge=1)
    retry_attempts: Optional[int] = Field(default=None, ge=1)
    retry_backoff_seconds: Optional[float] = Field(default=None, ge=0)
    retry_backoff_max_seconds: Optional[float] = Field(default=None, ge=0)
    capture_post_wait_ms: Optional[int] = Field(default=None, ge=0)
    headless: Optional[bool] = None
    match_tolerance: Optional[float] = Field(default=None, ge=0)
    defer_verdicts: Optional[bool] = None
    base_url: Optional[str] = None
