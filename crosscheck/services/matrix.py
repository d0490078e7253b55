from __future__ import annotations

import logging
from typing import Any, Dict, List, Mapping, Optional

from pydantic import ValidationError

from crosscheck.errors import ConfigError
from crosscheck.schemas import BatchConfig, InteractionScript, Job

LOGGER = logging.getLogger("crosscheck.matrix")


def _format_validation_error(exc: ValidationError) -> List[str]:
    problems: List[str] = []
    for error in exc.errors():
        location = ".".join(str(part) for part in error.get("loc", ()))
        message = error.get("msg", "invalid value")
        problems.append(f"{location}: {message}" if location else message)
    return problems


def load_batch_config(raw: Mapping[str, Any], *, overrides: Optional[Dict[str, Any]] = None) -> BatchConfig:
    """Validate a raw configuration mapping into a BatchConfig.

    Accepts both the native keys (``batch_name``, ``concurrency``,
    ``environments``) and the workshop-style keys (``batchName``,
    ``testConcurrency``, ``browser``). ``overrides`` take precedence over
    values from ``raw`` and are ignored when ``None``.
    """
    if not isinstance(raw, Mapping):
        raise ConfigError("Batch configuration must be a mapping")
    data = dict(raw)
    for key, value in (overrides or {}).items():
        if value is not None:
            data[key] = value
    try:
        return BatchConfig.model_validate(data)
    except ValidationError as exc:
        raise ConfigError("Invalid batch configuration", _format_validation_error(exc)) from exc


def load_script(raw: Any) -> InteractionScript:
    """Validate a raw script (a list of steps or a ``{name, steps}`` mapping)."""
    data = {"steps": raw} if isinstance(raw, list) else raw
    try:
        return InteractionScript.model_validate(data)
    except ValidationError as exc:
        raise ConfigError("Invalid interaction script", _format_validation_error(exc)) from exc


def expand(config: BatchConfig, script: InteractionScript) -> List[Job]:
    """Produce one job per environment, preserving configuration order."""
    environments = tuple(config.environments or ())
    problems: List[str] = []
    if not environments:
        problems.append("environments: at least one environment is required")
    if not isinstance(config.concurrency, int) or config.concurrency < 1:
        problems.append(f"concurrency: must be a positive integer (got {config.concurrency!r})")
    if problems:
        raise ConfigError("Invalid batch configuration", problems)

    jobs: List[Job] = []
    for sequence, environment in enumerate(environments, 1):
        jobs.append(
            Job(
                id=f"{sequence:03d}-{environment.slug}",
                sequence=sequence,
                batch_name=config.batch_name,
                app_name=config.app_name,
                environment=environment,
                script=script,
            )
        )
    LOGGER.debug("Expanded batch '%s' into %s jobs", config.batch_name, len(jobs))
    return jobs
