"""Runs a single step of a task.

Each call makes exactly one history append and at most one status change,
applied together under the task's lock. Failures are never retried here;
they route to the step's `error_step` or fail the task.
"""

from __future__ import annotations

import json
import logging
from collections.abc import Mapping
from dataclasses import dataclass, field
from enum import Enum
from typing import Any

from workflow_orchestrator.orchestrator.logging import task_logger

from .decision_gate import DecisionGate, EscalationRequest, GateContext
from .definitions import StepDefinition
from .delegates import Delegate, DelegateResult, DelegationRequest
from .state_machine import InvalidTransition, TaskStatus
from .task_store import TaskRecordStore
from .tasks import HistoryEntry, HistoryOutcome, TaskRecord

logger = logging.getLogger(__name__)

ENGINE_ACTOR = "workflow-engine"
GUIDANCE_INPUT = "guidance"


class StepErrorKind(str, Enum):
    UNMET_DEPENDENCY = "unmet_dependency"
    MISSING_INPUT = "missing_input"
    DELEGATE_FAILURE = "delegate_failure"
    OUTPUT_CONTRACT = "output_contract"


@dataclass(frozen=True, slots=True)
class StepError:
    kind: StepErrorKind
    detail: str


@dataclass(frozen=True, slots=True)
class StepSuccess:
    outputs: dict[str, str] = field(default_factory=dict)


@dataclass(frozen=True, slots=True)
class StepFailure:
    error: StepError


@dataclass(frozen=True, slots=True)
class StepSuspended:
    reason: str
    escalation: EscalationRequest | None = None


StepOutcome = StepSuccess | StepFailure | StepSuspended


class StepExecutor:
    def __init__(
        self,
        tasks: TaskRecordStore,
        delegates: Mapping[str, Delegate],
        gate: DecisionGate | None = None,
    ) -> None:
        """
        Args:
            tasks: The task record store.
            delegates: step_id -> delegate, already resolved from each step's role.
            gate: Required when any step carries a gate configuration.
        """
        self._tasks = tasks
        self._delegates = dict(delegates)
        self._gate = gate

    def run(self, task_id: str, step: StepDefinition) -> StepOutcome:
        log = task_logger(logger, task_id, step.step_id)
        record = self._tasks.get(task_id)
        if record.status != TaskStatus.IN_PROGRESS:
            raise InvalidTransition(
                f"Task {task_id!r} is {record.status.value}; steps only run while in_progress"
            )
        if record.current_step_id != step.step_id:
            raise ValueError(
                f"Task {task_id!r} is at step {record.current_step_id!r}, not {step.step_id!r}"
            )

        unmet = [dep for dep in step.depends_on if not record.step_succeeded(dep)]
        if unmet:
            log.warning("Step dependencies unmet", extra={"unmet": unmet})
            failure = StepFailure(
                StepError(StepErrorKind.UNMET_DEPENDENCY, f"Unmet dependencies: {', '.join(unmet)}")
            )
            return self._finish(task_id, step, failure, actor=ENGINE_ACTOR)

        guidance = record.pending_guidance(step.step_id)
        context: dict[str, Any] = {
            "title": step.title,
            "description": step.description,
            "workflow_id": record.metadata.get("workflow_id", ""),
        }

        if step.gate is not None:
            if self._gate is None:
                raise RuntimeError(f"Step {step.step_id!r} requires a decision gate")
            decision = self._gate.evaluate(
                GateContext(
                    task_id=task_id,
                    step_id=step.step_id,
                    config=step.gate,
                    metadata=record.metadata,
                    guidance=guidance,
                )
            )
            context["gate_decision"] = decision.decision.value
            if decision.decision.suspends:
                suspended = StepSuspended(
                    reason=decision.decision.value, escalation=decision.escalation
                )
                return self._finish(task_id, step, suspended, actor=ENGINE_ACTOR)
            if decision.knowledge is not None:
                context["knowledge"] = decision.knowledge

        inputs, missing = _bind_inputs(record, step, guidance)
        if missing:
            failure = StepFailure(
                StepError(StepErrorKind.MISSING_INPUT, f"Missing inputs: {', '.join(missing)}")
            )
            return self._finish(task_id, step, failure, actor=ENGINE_ACTOR)

        request = DelegationRequest(
            task_id=task_id,
            step_id=step.step_id,
            role=step.delegate_to,
            inputs=inputs,
            context=context,
        )
        result = self._invoke(request)

        outcome: StepOutcome
        if not result.ok:
            outcome = StepFailure(
                StepError(StepErrorKind.DELEGATE_FAILURE, result.error_detail or "Delegate failed")
            )
        else:
            absent = [o.name for o in step.outputs if o.name not in result.outputs]
            if absent:
                outcome = StepFailure(
                    StepError(
                        StepErrorKind.OUTPUT_CONTRACT,
                        f"Delegate did not produce outputs: {', '.join(absent)}",
                    )
                )
            else:
                outcome = StepSuccess({str(k): str(v) for k, v in result.outputs.items()})
        return self._finish(task_id, step, outcome, actor=step.delegate_to)

    def _invoke(self, request: DelegationRequest) -> DelegateResult:
        log = task_logger(logger, request.task_id, request.step_id)
        delegate = self._delegates.get(request.step_id)
        if delegate is None:
            raise RuntimeError(f"No delegate bound for step {request.step_id!r}")

        log.info("Delegating step", extra={"role": request.role})
        try:
            result = delegate.handle(request)
        except Exception as e:
            log.exception("Delegate raised", extra={"role": request.role})
            return DelegateResult.failure(f"{type(e).__name__}: {e}")
        if not isinstance(result, DelegateResult):
            return DelegateResult.failure(
                f"Delegate returned {type(result).__name__}, expected DelegateResult"
            )
        return result

    def _finish(
        self, task_id: str, step: StepDefinition, outcome: StepOutcome, *, actor: str
    ) -> StepOutcome:
        log = task_logger(logger, task_id, step.step_id)
        with self._tasks.transaction(task_id):
            record = self._tasks.get(task_id)

            next_status: TaskStatus
            next_step: str | None = None
            detail: dict[str, Any]
            if isinstance(outcome, StepSuccess):
                history_outcome = HistoryOutcome.SUCCESS
                detail = {"outputs": dict(outcome.outputs)}
                if step.next_step:
                    next_status, next_step = TaskStatus.IN_PROGRESS, step.next_step
                else:
                    next_status = TaskStatus.DONE
            elif isinstance(outcome, StepFailure):
                history_outcome = HistoryOutcome.FAILURE
                detail = {"error_kind": outcome.error.kind.value, "error": outcome.error.detail}
                route = step.error_step
                if route and _already_routed(record, step.step_id, route):
                    log.warning(
                        "Error step already used for this failure; not re-entering",
                        extra={"error_step": route},
                    )
                    route = ""
                if route:
                    detail["routed_to"] = route
                    next_status, next_step = TaskStatus.IN_PROGRESS, route
                else:
                    next_status = TaskStatus.FAILED
            else:
                history_outcome = HistoryOutcome.SUSPENDED
                detail = {"reason": outcome.reason}
                if outcome.escalation is not None:
                    detail["escalation"] = outcome.escalation.to_json()
                next_status = TaskStatus.BLOCKED

            self._tasks.append_history(
                task_id,
                HistoryEntry(
                    step_id=step.step_id, outcome=history_outcome, actor=actor, detail=detail
                ),
                expected_length=len(record.history),
            )

            if record.status != TaskStatus.IN_PROGRESS:
                # Status was changed by someone else while the delegate ran.
                log.warning(
                    "Task left in_progress during step; outcome recorded only",
                    extra={"status": record.status.value},
                )
                return outcome

            self._tasks.set_status(
                task_id, next_status, expected=TaskStatus.IN_PROGRESS, current_step_id=next_step
            )

        if isinstance(outcome, StepFailure):
            log.warning(
                "Step failed",
                extra={"error_kind": outcome.error.kind.value, "routed_to": next_step or ""},
            )
        elif isinstance(outcome, StepSuspended):
            log.info("Step suspended", extra={"reason": outcome.reason})
        return outcome


def _already_routed(record: TaskRecord, step_id: str, error_step: str) -> bool:
    return any(
        entry.outcome == HistoryOutcome.FAILURE and entry.detail.get("routed_to") == error_step
        for entry in record.entries_for(step_id)
    )


def _as_input(value: object) -> str:
    if isinstance(value, str):
        return value
    return json.dumps(value, ensure_ascii=False, default=str)


def _bind_inputs(
    record: TaskRecord, step: StepDefinition, guidance: str | None
) -> tuple[dict[str, str], list[str]]:
    """Bind declared inputs from prior step outputs, then task metadata."""

    available: dict[str, str] = {k: _as_input(v) for k, v in record.metadata.items()}
    available.update(record.latest_outputs())

    inputs: dict[str, str] = {}
    missing: list[str] = []
    for spec in step.inputs:
        if spec.name in available:
            inputs[spec.name] = available[spec.name]
        elif spec.required:
            missing.append(spec.name)
    if guidance is not None:
        inputs[GUIDANCE_INPUT] = guidance
    return inputs, missing
