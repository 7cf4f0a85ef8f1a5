"""Failure taxonomy and helpers."""

from __future__ import annotations

from dataclasses import dataclass
from enum import Enum
from typing import Any

from patchforge.agents.coordinator import CoordinatorOutputError
from patchforge.agents.implementer import ImplementerInputError
from patchforge.agents.registry import MissingAgentError
from patchforge.agents.reviewer import ReviewVerdictError
from patchforge.change_plan import PlanValidationError
from patchforge.completion import ExhaustedRetries
from patchforge.models.base import ModelServiceError
from patchforge.patching import PatchError
from patchforge.state import ContextFrozenError
from patchforge.util.json_extract import JsonPayloadError
from patchforge.workflows.engine import PlanConstructionError


class FailureTag(str, Enum):
    """Standardized failure categories for reports and traces."""

    VALIDATION = "VALIDATION"
    TRANSIENT = "TRANSIENT"
    STEP_FAILURE = "STEP_FAILURE"
    USER_DENIAL = "USER_DENIAL"
    FATAL = "FATAL"


class StepFailedError(RuntimeError):
    """Raised by the step runner when an applied step fails its checks."""

    def __init__(self, message: str, denied: bool = False) -> None:
        self.denied = denied
        super().__init__(message)


def classify_error(error: BaseException) -> FailureTag:
    if isinstance(error, StepFailedError):
        return FailureTag.USER_DENIAL if error.denied else FailureTag.STEP_FAILURE
    if isinstance(
        error,
        (
            PlanValidationError,
            JsonPayloadError,
            ReviewVerdictError,
            CoordinatorOutputError,
            ImplementerInputError,
            PlanConstructionError,
        ),
    ):
        return FailureTag.VALIDATION
    if isinstance(error, (ExhaustedRetries, ModelServiceError)):
        return FailureTag.TRANSIENT
    if isinstance(error, PatchError):
        return FailureTag.STEP_FAILURE
    if isinstance(error, (MissingAgentError, ContextFrozenError)):
        return FailureTag.FATAL
    return FailureTag.STEP_FAILURE


@dataclass(frozen=True)
class FailureEvent:
    """Structured failure event for traces and reports."""

    tag: str
    reason: str
    details: dict[str, Any] | None = None

    @classmethod
    def from_error(cls, error: BaseException, **details: Any) -> "FailureEvent":
        return cls(tag=classify_error(error).value, reason=str(error), details=details or None)
