from __future__ import annotations

from typing import Iterable, Optional


class CrossCheckError(Exception):
    """Base class for orchestration failures."""


class ConfigError(CrossCheckError):
    """Batch configuration is malformed; the batch never starts."""

    def __init__(self, message: str, problems: Optional[Iterable[str]] = None) -> None:
        self.problems = list(problems or [])
        if self.problems:
            message = f"{message}: " + "; ".join(self.problems)
        super().__init__(message)


class TransientError(CrossCheckError):
    """Retriable infrastructure fault (network hiccup, busy service)."""


class FatalError(CrossCheckError):
    """Non-retriable infrastructure fault. Aborts the owning job only."""


class ActionError(CrossCheckError):
    """A UI action could not be performed."""

    def __init__(self, action: str, message: str) -> None:
        self.action = action
        super().__init__(f"Action '{action}' failed: {message}")


class JobCancelled(CrossCheckError):
    """Raised inside a job runner when the owning batch has been cancelled."""
