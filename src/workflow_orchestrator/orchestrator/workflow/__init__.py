"""Explicit workflow domain concepts.

This package introduces first-class types for:
- Step definitions and the published step graph
- Task records and their status state machine
- The decision gate that consults a knowledge source before delegation
- Delegates (roles) and the executor that invokes them
- The engine that drives tasks through the graph

Control flow is deterministic: only delegates perform open-ended work.
"""

from .decision_gate import Decision, DecisionGate, EscalationRequest, GateContext, GateDecision
from .definitions import (
    DefError,
    GateConfig,
    StepDefinition,
    StepInput,
    StepOutput,
    WorkflowDefinition,
    load_workflow_definition,
)
from .delegates import (
    CallableDelegate,
    Delegate,
    DelegateResult,
    DelegationRequest,
    TimeoutDelegate,
    UnboundRoleError,
)
from .engine import TaskBusyError, WorkflowEngine, apply_cancellation, apply_guidance
from .executor import StepExecutor, StepFailure, StepOutcome, StepSuccess, StepSuspended
from .knowledge import DirectoryKnowledgeBase, InMemoryKnowledgeBase, KnowledgeResult
from .state_machine import InvalidTransition, TaskStatus
from .step_store import GraphError, StepDefinitionStore, StepNotFound
from .task_store import ConflictError, TaskExistsError, TaskNotFound, TaskRecordStore
from .tasks import HistoryEntry, HistoryOutcome, TaskRecord

__all__ = [
    "CallableDelegate",
    "ConflictError",
    "Decision",
    "DecisionGate",
    "DefError",
    "Delegate",
    "DelegateResult",
    "DelegationRequest",
    "DirectoryKnowledgeBase",
    "EscalationRequest",
    "GateConfig",
    "GateContext",
    "GateDecision",
    "GraphError",
    "HistoryEntry",
    "HistoryOutcome",
    "InMemoryKnowledgeBase",
    "InvalidTransition",
    "KnowledgeResult",
    "StepDefinition",
    "StepDefinitionStore",
    "StepExecutor",
    "StepFailure",
    "StepInput",
    "StepNotFound",
    "StepOutcome",
    "StepOutput",
    "StepSuccess",
    "StepSuspended",
    "TaskBusyError",
    "TaskExistsError",
    "TaskNotFound",
    "TaskRecord",
    "TaskRecordStore",
    "TaskStatus",
    "TimeoutDelegate",
    "UnboundRoleError",
    "WorkflowDefinition",
    "WorkflowEngine",
    "apply_cancellation",
    "apply_guidance",
    "load_workflow_definition",
]
