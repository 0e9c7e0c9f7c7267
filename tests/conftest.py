"""Test configuration and fixtures."""

from __future__ import annotations

import logging
from collections.abc import Callable, Iterator
from pathlib import Path

import pytest

from workflow_orchestrator.orchestrator.workflow.decision_gate import DecisionGate
from workflow_orchestrator.orchestrator.workflow.definitions import GateConfig, StepDefinition
from workflow_orchestrator.orchestrator.workflow.delegates import (
    Delegate,
    DelegateResult,
    DelegationRequest,
)
from workflow_orchestrator.orchestrator.workflow.knowledge import InMemoryKnowledgeBase
from workflow_orchestrator.orchestrator.workflow.step_store import StepDefinitionStore
from workflow_orchestrator.orchestrator.workflow.task_store import TaskRecordStore

MakeStep = Callable[..., StepDefinition]


class ScriptedDelegate(Delegate):
    """Records every request and replies from a per-step script (default: success)."""

    def __init__(self) -> None:
        self.requests: list[DelegationRequest] = []
        self._script: dict[str, list[DelegateResult | Exception]] = {}

    def script(self, step_id: str, *results: DelegateResult | Exception) -> None:
        self._script.setdefault(step_id, []).extend(results)

    def handle(self, request: DelegationRequest) -> DelegateResult:
        self.requests.append(request)
        queue = self._script.get(request.step_id)
        if not queue:
            return DelegateResult.success()
        result = queue[0] if len(queue) == 1 else queue.pop(0)
        if isinstance(result, Exception):
            raise result
        return result

    @property
    def called_steps(self) -> list[str]:
        return [r.step_id for r in self.requests]


@pytest.fixture(autouse=True)
def _restore_root_logging() -> Iterator[None]:
    """CLI tests reconfigure root logging; put it back afterwards."""
    root = logging.getLogger()
    handlers, level = list(root.handlers), root.level
    yield
    for handler in list(root.handlers):
        root.removeHandler(handler)
    for handler in handlers:
        root.addHandler(handler)
    root.setLevel(level)


@pytest.fixture
def make_step() -> MakeStep:
    """Build a step definition with test-friendly defaults."""

    def _make(step_id: str, **overrides: object) -> StepDefinition:
        fields: dict[str, object] = {"step_id": step_id, "delegate_to": "worker"}
        fields.update(overrides)
        return StepDefinition.model_validate(fields)

    return _make


@pytest.fixture
def make_workflow() -> Callable[..., StepDefinitionStore]:
    def _make(
        *steps: StepDefinition, workflow_id: str = "wf", version: int = 1
    ) -> StepDefinitionStore:
        store = StepDefinitionStore(workflow_id, version)
        for step in steps:
            store.register(step)
        store.publish()
        return store

    return _make


@pytest.fixture
def delegate() -> ScriptedDelegate:
    return ScriptedDelegate()


@pytest.fixture
def knowledge() -> InMemoryKnowledgeBase:
    return InMemoryKnowledgeBase()


@pytest.fixture
def gate(knowledge: InMemoryKnowledgeBase) -> DecisionGate:
    return DecisionGate(knowledge)


@pytest.fixture
def task_store() -> TaskRecordStore:
    return TaskRecordStore()


@pytest.fixture
def state_file(tmp_path: Path) -> Path:
    return tmp_path / "agent_state" / "tasks.json"


@pytest.fixture
def migrations_gate() -> GateConfig:
    return GateConfig(keywords=("migrations",))
