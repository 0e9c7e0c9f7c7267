"""Configuration for the workflow orchestrator.

Configuration is loaded from:
- environment variables
- and a local `.env` file (if present)

Nothing is required: every setting has a local-first default.
"""

from __future__ import annotations

from pathlib import Path
from typing import Literal

from pydantic import Field, field_validator
from pydantic_settings import BaseSettings, SettingsConfigDict


class OrchestratorSettings(BaseSettings):
    """Settings for the workflow engine, CLI and REST server.

    Environment variables:
    - LOG_LEVEL                           (optional)
    - LOG_FORMAT                          (optional, json | text)
    - ORCHESTRATOR_TASK_STATE_PATH        (optional)
    - ORCHESTRATOR_WORKFLOW_PATH          (optional)
    - ORCHESTRATOR_KNOWLEDGE_BASE_PATH    (optional)
    - ORCHESTRATOR_MAX_WORKERS            (optional)
    - ORCHESTRATOR_ARCHIVE_TERMINAL_TASKS (optional)
    - ORCHESTRATOR_GATE_MIN_CONFIDENCE    (optional)

    Notes:
        Pydantic-settings supports overriding the env file in tests via:
        `OrchestratorSettings(_env_file=path_to_env)`.
    """

    log_level: str = Field(
        default="INFO",
        validation_alias="LOG_LEVEL",
        description="Root logging level",
    )
    log_format: Literal["json", "text"] = Field(
        default="json",
        validation_alias="LOG_FORMAT",
        description="Log line format",
    )

    task_state_path: Path = Field(
        default=Path("agent_state/tasks.json"),
        validation_alias="ORCHESTRATOR_TASK_STATE_PATH",
        description="Path where task records are persisted",
    )
    workflow_path: Path | None = Field(
        default=None,
        validation_alias="ORCHESTRATOR_WORKFLOW_PATH",
        description="Default workflow definition (JSON) used when no --path is given",
    )
    knowledge_base_path: Path | None = Field(
        default=None,
        validation_alias="ORCHESTRATOR_KNOWLEDGE_BASE_PATH",
        description="Directory of markdown/text documents consulted by the decision gate",
    )

    max_workers: int = Field(
        default=4,
        ge=1,
        le=64,
        validation_alias="ORCHESTRATOR_MAX_WORKERS",
        description="Number of tasks driven in parallel",
    )
    archive_terminal_tasks: bool = Field(
        default=False,
        validation_alias="ORCHESTRATOR_ARCHIVE_TERMINAL_TASKS",
        description="Move done/failed tasks to the archive once they finish",
    )
    gate_min_confidence: float = Field(
        default=0.5,
        ge=0.0,
        le=1.0,
        validation_alias="ORCHESTRATOR_GATE_MIN_CONFIDENCE",
        description=(
            "Complexity assessments below this confidence are treated as ambiguous "
            "when a step's gate does not set its own threshold"
        ),
    )

    model_config = SettingsConfigDict(
        env_prefix="",
        env_file=".env",
        extra="ignore",
    )

    @field_validator("log_level")
    @classmethod
    def _normalise_level(cls, value: str) -> str:
        level = value.strip().upper()
        if level not in {"DEBUG", "INFO", "WARNING", "ERROR", "CRITICAL"}:
            raise ValueError(f"Unknown log level: {value!r}")
        return level
