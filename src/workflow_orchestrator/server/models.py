"""Pydantic models for the REST server."""

from __future__ import annotations

from typing import Any

from pydantic import BaseModel, Field

from workflow_orchestrator.orchestrator.workflow.engine import DEFAULT_ACTOR
from workflow_orchestrator.orchestrator.workflow.state_machine import TaskStatus
from workflow_orchestrator.orchestrator.workflow.tasks import HistoryOutcome


class ApiHistoryEntry(BaseModel):
    step_id: str
    outcome: HistoryOutcome
    timestamp: str
    actor: str
    detail: dict[str, Any] = Field(default_factory=dict)


class ApiTask(BaseModel):
    id: str
    status: TaskStatus
    current_step_id: str
    history: list[ApiHistoryEntry] = Field(default_factory=list)
    metadata: dict[str, Any] = Field(default_factory=dict)
    related_docs: list[str] = Field(default_factory=list)
    depends_on: list[str] = Field(default_factory=list)


class ResumeRequest(BaseModel):
    answer: str = Field(min_length=1)
    actor: str = DEFAULT_ACTOR
    run: bool = Field(default=True, description="Continue running the task in the background")


class CancelRequest(BaseModel):
    reason: str = ""
    actor: str = DEFAULT_ACTOR


class RunAccepted(BaseModel):
    task_id: str
    status: TaskStatus
