"""Immutable step and workflow definitions.

Definitions are authored once (usually as a JSON file) and never edited in
place. A changed workflow is published under a new version.
"""

from __future__ import annotations

import json
from pathlib import Path

from pydantic import BaseModel, ConfigDict, Field, ValidationError, field_validator, model_validator


class DefError(ValueError):
    """Raised for a malformed or duplicate step definition."""


class StepInput(BaseModel):
    """A named data requirement of a step, with a free-text constraint."""

    model_config = ConfigDict(frozen=True, extra="forbid")

    name: str = Field(min_length=1)
    constraint: str = ""
    required: bool = True


class StepOutput(BaseModel):
    model_config = ConfigDict(frozen=True, extra="forbid")

    name: str = Field(min_length=1)
    description: str = ""


class GateConfig(BaseModel):
    """Marks a step as requiring a Decision Gate evaluation before delegation."""

    model_config = ConfigDict(frozen=True, extra="forbid")

    keywords: tuple[str, ...] = ()
    min_confidence: float | None = Field(default=None, ge=0.0, le=1.0)
    min_content_length: int = Field(default=1, ge=1)


class StepDefinition(BaseModel):
    model_config = ConfigDict(frozen=True, extra="forbid")

    step_id: str = Field(min_length=1)
    title: str = ""
    description: str = ""
    depends_on: tuple[str, ...] = ()
    next_step: str = ""
    error_step: str = ""
    delegate_to: str = Field(min_length=1)
    inputs: tuple[StepInput, ...] = ()
    outputs: tuple[StepOutput, ...] = ()
    gate: GateConfig | None = None

    @field_validator("depends_on")
    @classmethod
    def _dedupe_depends_on(cls, value: tuple[str, ...]) -> tuple[str, ...]:
        return tuple(dict.fromkeys(value))

    @model_validator(mode="after")
    def _unique_contract_names(self) -> StepDefinition:
        for label, items in (("input", self.inputs), ("output", self.outputs)):
            names = [item.name for item in items]
            if len(names) != len(set(names)):
                raise ValueError(f"Duplicate {label} names in step {self.step_id!r}")
        return self

    @property
    def is_terminal(self) -> bool:
        return not self.next_step


class WorkflowDefinition(BaseModel):
    """A versioned, ordered sequence of step definitions."""

    model_config = ConfigDict(frozen=True, extra="forbid")

    workflow_id: str = Field(min_length=1)
    version: int = Field(default=1, ge=1)
    steps: tuple[StepDefinition, ...] = ()


def load_workflow_definition(path: Path) -> WorkflowDefinition:
    """Load a workflow definition from a JSON file.

    Raises:
        DefError: If the file is missing, not valid JSON, or does not match the layout.
    """

    try:
        raw = json.loads(path.read_text(encoding="utf-8"))
    except FileNotFoundError as e:
        raise DefError(f"Workflow definition not found: {path}") from e
    except json.JSONDecodeError as e:
        raise DefError(f"Workflow definition is not valid JSON: {path}: {e}") from e

    try:
        return WorkflowDefinition.model_validate(raw)
    except ValidationError as e:
        raise DefError(f"Invalid workflow definition in {path}: {e}") from e
