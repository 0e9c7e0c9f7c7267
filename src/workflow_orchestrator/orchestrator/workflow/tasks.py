"""Task records tracked through a workflow graph.

The serialized field names (`id`, `status`, `current_step_id`, `history`,
`metadata`, `related_docs`, `depends_on`) are an interop surface; keep them stable.
"""

from __future__ import annotations

from datetime import UTC, datetime
from enum import Enum
from typing import Any

from pydantic import AliasChoices, BaseModel, ConfigDict, Field, field_validator

from .state_machine import TaskStatus


class HistoryOutcome(str, Enum):
    SUCCESS = "success"
    FAILURE = "failure"
    SUSPENDED = "suspended"
    RESUMED = "resumed"
    CANCELLED = "cancelled"


def utc_iso_now() -> str:
    return datetime.now(tz=UTC).isoformat()


class HistoryEntry(BaseModel):
    """One immutable line of task history. Corrections are new entries."""

    model_config = ConfigDict(frozen=True)

    step_id: str
    outcome: HistoryOutcome
    timestamp: str = Field(default_factory=utc_iso_now)
    actor: str
    detail: dict[str, Any] = Field(default_factory=dict)

    @field_validator("timestamp")
    @classmethod
    def _aware_iso(cls, value: str) -> str:
        parsed = datetime.fromisoformat(value)
        if parsed.tzinfo is None:
            parsed = parsed.replace(tzinfo=UTC)
        return parsed.isoformat()

    @property
    def recorded_at(self) -> datetime:
        return datetime.fromisoformat(self.timestamp)


class TaskRecord(BaseModel):
    model_config = ConfigDict(populate_by_name=True)

    task_id: str = Field(
        validation_alias=AliasChoices("id", "task_id"),
        serialization_alias="id",
        min_length=1,
    )
    status: TaskStatus = TaskStatus.PLANNED
    current_step_id: str = ""
    history: list[HistoryEntry] = Field(default_factory=list)
    metadata: dict[str, Any] = Field(default_factory=dict)
    related_docs: list[str] = Field(default_factory=list)
    depends_on: list[str] = Field(default_factory=list)

    @field_validator("related_docs", "depends_on")
    @classmethod
    def _dedupe(cls, value: list[str]) -> list[str]:
        return list(dict.fromkeys(value))

    def to_json(self) -> dict[str, Any]:
        return self.model_dump(mode="json", by_alias=True)

    @classmethod
    def from_json(cls, obj: dict[str, Any]) -> TaskRecord:
        return cls.model_validate(obj)

    def entries_for(self, step_id: str) -> list[HistoryEntry]:
        return [entry for entry in self.history if entry.step_id == step_id]

    def step_succeeded(self, step_id: str) -> bool:
        return any(entry.outcome == HistoryOutcome.SUCCESS for entry in self.entries_for(step_id))

    def pending_guidance(self, step_id: str) -> str | None:
        """Answer delivered for `step_id` since that step last ran, if any."""

        for entry in reversed(self.history):
            if entry.step_id != step_id:
                continue
            if entry.outcome == HistoryOutcome.RESUMED:
                answer = entry.detail.get("answer")
                return answer if isinstance(answer, str) else None
            return None
        return None

    def latest_outputs(self) -> dict[str, str]:
        """Outputs of successful steps, later steps overriding earlier ones."""

        merged: dict[str, str] = {}
        for entry in self.history:
            if entry.outcome != HistoryOutcome.SUCCESS:
                continue
            outputs = entry.detail.get("outputs")
            if isinstance(outputs, dict):
                merged.update({str(k): str(v) for k, v in outputs.items()})
        return merged
