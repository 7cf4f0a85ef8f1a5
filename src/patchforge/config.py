"""Configuration settings for patchforge."""

from __future__ import annotations

import json
from dataclasses import replace

from pydantic import Field
from pydantic_settings import BaseSettings, SettingsConfigDict

from patchforge.roles import DEFAULT_ROLE_CONFIGS, AgentRole, RoleConfig


class Settings(BaseSettings):
    """Runtime configuration loaded from environment variables or overrides."""

    model_config = SettingsConfigDict(env_prefix="", case_sensitive=False, populate_by_name=True)

    openai_api_key: str | None = Field(default=None, validation_alias="OPENAI_API_KEY")
    openai_base_url: str = Field(default="https://api.openai.com/v1", validation_alias="OPENAI_BASE_URL")
    openai_timeout_seconds: int = Field(default=60, validation_alias="OPENAI_TIMEOUT_SECONDS")
    openai_extra_headers: str | None = Field(default=None, validation_alias="OPENAI_EXTRA_HEADERS")

    coordinator_model: str = Field(default="o4-mini", validation_alias="PATCHFORGE_COORDINATOR_MODEL")
    planner_model: str = Field(default="o3", validation_alias="PATCHFORGE_PLANNER_MODEL")
    implementer_model: str = Field(default="o4-mini", validation_alias="PATCHFORGE_IMPLEMENTER_MODEL")
    verifier_model: str = Field(default="o4-mini", validation_alias="PATCHFORGE_VERIFIER_MODEL")
    reviewer_model: str = Field(default="o3", validation_alias="PATCHFORGE_REVIEWER_MODEL")
    model_override: str | None = Field(default=None, validation_alias="PATCHFORGE_MODEL")
    disabled_roles: str = Field(default="", validation_alias="PATCHFORGE_DISABLED_ROLES")
    baseline_model: str = Field(default="o3", validation_alias="PATCHFORGE_BASELINE_MODEL")

    max_retries: int = Field(default=5, validation_alias="PATCHFORGE_MAX_RETRIES")
    rate_limit_base_delay_seconds: float = Field(
        default=2.5, validation_alias="PATCHFORGE_RATE_LIMIT_BASE_DELAY"
    )
    max_steps: int = Field(default=20, validation_alias="PATCHFORGE_MAX_STEPS")
    workflow_timeout_seconds: float = Field(default=300, validation_alias="PATCHFORGE_TIMEOUT_SECONDS")
    max_recoveries: int = Field(default=2, validation_alias="PATCHFORGE_MAX_RECOVERIES")

    planner_history_window: int = Field(default=10, validation_alias="PATCHFORGE_PLANNER_HISTORY")
    verifier_history_window: int = Field(default=3, validation_alias="PATCHFORGE_VERIFIER_HISTORY")
    max_repo_files: int = Field(default=200, validation_alias="PATCHFORGE_MAX_REPO_FILES")

    build_command: str | None = Field(default=None, validation_alias="PATCHFORGE_BUILD_COMMAND")
    lint_command: str | None = Field(default=None, validation_alias="PATCHFORGE_LINT_COMMAND")
    test_command: str | None = Field(default=None, validation_alias="PATCHFORGE_TEST_COMMAND")
    command_timeout_seconds: float = Field(default=120, validation_alias="PATCHFORGE_COMMAND_TIMEOUT")

    repo_root: str = Field(default=".", validation_alias="PATCHFORGE_REPO_ROOT")
    workspace_dir: str = Field(default=".patchforge", validation_alias="PATCHFORGE_WORKSPACE")
    cache_dir: str | None = Field(default=None, validation_alias="PATCHFORGE_CACHE_DIR")
    prompts_dir: str | None = Field(default=None, validation_alias="PATCHFORGE_PROMPTS_DIR")
    auto_approve: bool = Field(default=False, validation_alias="PATCHFORGE_AUTO_APPROVE")
    read_only: bool = Field(default=False, validation_alias="PATCHFORGE_READ_ONLY")
    write_traces: bool = Field(default=True, validation_alias="PATCHFORGE_TRACES")
    log_level: str = Field(default="INFO", validation_alias="PATCHFORGE_LOG_LEVEL")

    def extra_headers(self) -> dict[str, str] | None:
        if not self.openai_extra_headers:
            return None
        return json.loads(self.openai_extra_headers)

    def disabled(self) -> set[AgentRole]:
        names = {item.strip().lower() for item in self.disabled_roles.split(",") if item.strip()}
        return {role for role in AgentRole if role.value in names}

    def role_configs(self) -> dict[AgentRole, RoleConfig]:
        models = {
            AgentRole.COORDINATOR: self.coordinator_model,
            AgentRole.PLANNER: self.planner_model,
            AgentRole.IMPLEMENTER: self.implementer_model,
            AgentRole.VERIFIER: self.verifier_model,
            AgentRole.REVIEWER: self.reviewer_model,
        }
        return {
            role: replace(config, model=self.model_override or models[role])
            for role, config in DEFAULT_ROLE_CONFIGS.items()
        }
