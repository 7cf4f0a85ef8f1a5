"""Change plan actions and strict payload validation."""

from __future__ import annotations

import json
from pathlib import Path
from typing import Annotated, Any, Literal, Union

from pydantic import BaseModel, ConfigDict, Field, TypeAdapter, ValidationError

from patchforge.util.json_extract import JsonPayloadError, parse_json_object


class EditAction(BaseModel):
    model_config = ConfigDict(extra="forbid")

    kind: Literal["edit"] = "edit"
    file: str = Field(min_length=1)
    description: str
    hints: str | None = None


class CommandAction(BaseModel):
    model_config = ConfigDict(extra="forbid")

    kind: Literal["command"] = "command"
    cmd: str = Field(min_length=1)
    expect: Literal["pass", "fail", "unknown"] = "pass"


class MessageAction(BaseModel):
    model_config = ConfigDict(extra="forbid")

    kind: Literal["message"] = "message"
    content: str


Action = Annotated[Union[EditAction, CommandAction, MessageAction], Field(discriminator="kind")]

_ACTION_ADAPTER: TypeAdapter[Any] = TypeAdapter(Action)


class ChangePlan(BaseModel):
    """Ordered actions produced by the planner; order is execution order."""

    model_config = ConfigDict(extra="forbid")

    actions: list[Action]

    def actionable(self) -> list[EditAction | CommandAction]:
        return [action for action in self.actions if not isinstance(action, MessageAction)]


class PlanValidationError(ValueError):
    """Raised when a change plan payload is malformed.

    ``issues`` lists ``{"field": "actions.0.file", "message": ...}`` entries.
    """

    def __init__(self, issues: list[dict[str, str]]) -> None:
        self.issues = issues
        summary = "; ".join(f"{item['field']}: {item['message']}" for item in issues)
        super().__init__(f"Invalid change plan: {summary}")

    @property
    def fields(self) -> list[str]:
        return [item["field"] for item in self.issues]


def _issues_from(exc: ValidationError) -> list[dict[str, str]]:
    issues: list[dict[str, str]] = []
    for error in exc.errors():
        location = ".".join(str(part) for part in error.get("loc", ()))
        issues.append({"field": location or "$", "message": error.get("msg", "invalid")})
    return issues


def validate_change_plan(payload: Any) -> ChangePlan:
    """Validate an untrusted payload into a fully typed ChangePlan."""
    if not isinstance(payload, dict):
        raise PlanValidationError([{"field": "$", "message": "Change plan must be an object"}])
    try:
        return ChangePlan.model_validate(payload)
    except ValidationError as exc:
        raise PlanValidationError(_issues_from(exc)) from exc


def validate_action(payload: Any) -> EditAction | CommandAction | MessageAction:
    try:
        return _ACTION_ADAPTER.validate_python(payload)
    except ValidationError as exc:
        raise PlanValidationError(_issues_from(exc)) from exc


def parse_change_plan(text: str) -> ChangePlan:
    """Decode model text that must consist of the plan object only."""
    try:
        payload = parse_json_object(text)
    except JsonPayloadError as exc:
        raise PlanValidationError([{"field": "$", "message": str(exc)}]) from exc
    return validate_change_plan(payload)


def load_change_plan(path: str | Path) -> ChangePlan:
    path_obj = Path(path)
    text = path_obj.read_text(encoding="utf-8")
    if path_obj.suffix in {".yaml", ".yml"}:
        try:
            import yaml  # type: ignore
        except ImportError as exc:  # pragma: no cover - optional
            raise PlanValidationError(
                [{"field": "$", "message": "Install patchforge[yaml] to load YAML plans."}]
            ) from exc
        payload = yaml.safe_load(text)
    else:
        try:
            payload = json.loads(text)
        except json.JSONDecodeError as exc:
            raise PlanValidationError([{"field": "$", "message": f"Invalid JSON: {exc.msg}"}]) from exc
    return validate_change_plan(payload)


def describe_action(action: EditAction | CommandAction | MessageAction) -> str:
    if isinstance(action, EditAction):
        return f"edit {action.file}: {action.description}"
    if isinstance(action, CommandAction):
        cmd = action.cmd if len(action.cmd) <= 60 else action.cmd[:57] + "..."
        return f"command '{cmd}' (expect {action.expect})"
    return f"message: {action.content[:60]}"
