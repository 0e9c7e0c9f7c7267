"""Drives tasks through a published workflow graph.

Within one task, steps run strictly one after another. Distinct tasks run in
parallel on a thread pool. A task starts only once every task it depends on is
done; if any of them failed, the dependent task fails without running.
"""

from __future__ import annotations

import logging
import threading
from collections.abc import Iterable, Mapping
from concurrent.futures import Future, ThreadPoolExecutor, as_completed
from types import TracebackType
from typing import Any

from workflow_orchestrator.orchestrator.logging import task_logger

from .decision_gate import DecisionGate
from .definitions import DefError
from .delegates import Delegate, bind_roles
from .executor import ENGINE_ACTOR, StepExecutor
from .state_machine import InvalidTransition, TaskStatus, is_terminal, transition
from .step_store import StepDefinitionStore
from .task_store import TaskNotFound, TaskRecordStore
from .tasks import HistoryEntry, HistoryOutcome, TaskRecord

logger = logging.getLogger(__name__)

DEFAULT_ACTOR = "coordinator"


class TaskBusyError(RuntimeError):
    """Raised when a task is already being driven by another worker."""


def apply_guidance(
    tasks: TaskRecordStore, task_id: str, answer: str, *, actor: str = DEFAULT_ACTOR
) -> TaskRecord:
    """Resume a blocked task, recording the answer for its suspended step."""

    if not answer.strip():
        raise ValueError("Guidance answer must not be empty")
    with tasks.transaction(task_id):
        record = tasks.get(task_id)
        if record.status != TaskStatus.BLOCKED:
            raise InvalidTransition(
                f"Task {task_id!r} is {record.status.value}; only blocked tasks can be resumed"
            )
        tasks.append_history(
            task_id,
            HistoryEntry(
                step_id=record.current_step_id,
                outcome=HistoryOutcome.RESUMED,
                actor=actor,
                detail={"answer": answer},
            ),
            expected_length=len(record.history),
        )
        updated = tasks.set_status(task_id, TaskStatus.IN_PROGRESS, expected=TaskStatus.BLOCKED)
    task_logger(logger, task_id, record.current_step_id).info(
        "Task resumed with guidance", extra={"actor": actor}
    )
    return updated


def apply_cancellation(
    tasks: TaskRecordStore, task_id: str, reason: str = "", *, actor: str = DEFAULT_ACTOR
) -> TaskRecord:
    """Mark a not-yet-done task as failed, keeping its full history."""

    with tasks.transaction(task_id):
        record = tasks.get(task_id)
        transition(current=record.status, to=TaskStatus.FAILED)
        tasks.append_history(
            task_id,
            HistoryEntry(
                step_id=record.current_step_id,
                outcome=HistoryOutcome.CANCELLED,
                actor=actor,
                detail={"reason": reason},
            ),
            expected_length=len(record.history),
        )
        updated = tasks.set_status(task_id, TaskStatus.FAILED, expected=record.status)
    task_logger(logger, task_id).warning(
        "Task cancelled", extra={"actor": actor, "reason": reason}
    )
    return updated


class WorkflowEngine:
    def __init__(
        self,
        steps: StepDefinitionStore,
        tasks: TaskRecordStore,
        delegates: Mapping[str, Delegate],
        gate: DecisionGate | None = None,
        *,
        max_workers: int = 4,
        archive_terminal: bool = False,
    ) -> None:
        if not steps.published:
            steps.publish()
        if gate is None and any(step.gate is not None for step in steps.steps()):
            raise DefError(
                f"Workflow {steps.workflow_id!r} has gated steps but no decision gate was given"
            )

        self.steps = steps
        self.tasks = tasks
        self._executor = StepExecutor(tasks, bind_roles(steps.steps(), delegates), gate)
        self._archive_terminal = archive_terminal

        self._state_lock = threading.Lock()
        self._active: set[str] = set()
        self._cancel_requested: dict[str, tuple[str, str]] = {}
        self._pool = ThreadPoolExecutor(
            max_workers=max_workers, thread_name_prefix="workflow-task"
        )

    # -- lifecycle -------------------------------------------------------------

    def __enter__(self) -> WorkflowEngine:
        return self

    def __exit__(
        self,
        exc_type: type[BaseException] | None,
        exc: BaseException | None,
        tb: TracebackType | None,
    ) -> None:
        self.shutdown()

    def shutdown(self, wait: bool = True) -> None:
        self._pool.shutdown(wait=wait)

    # -- tasks -----------------------------------------------------------------

    def create_task(
        self,
        task_id: str,
        *,
        metadata: dict[str, Any] | None = None,
        related_docs: list[str] | None = None,
        depends_on: list[str] | None = None,
    ) -> TaskRecord:
        prerequisites = list(depends_on or [])
        if task_id in prerequisites:
            raise ValueError(f"Task {task_id!r} cannot depend on itself")
        unknown = [t for t in prerequisites if not self.tasks.exists(t)]
        if unknown:
            raise TaskNotFound(f"Unknown prerequisite tasks: {', '.join(unknown)}")

        stamped = {
            **(metadata or {}),
            "workflow_id": self.steps.workflow_id,
            "workflow_version": self.steps.version,
        }
        return self.tasks.create(
            task_id, metadata=stamped, related_docs=related_docs, depends_on=prerequisites
        )

    def run_task(self, task_id: str) -> TaskRecord:
        """Advance a task as far as it can go right now.

        Returns when the task is done, failed, blocked, or still waiting for
        prerequisite tasks.

        Raises:
            TaskBusyError: If another worker is already driving this task.
        """

        with self._state_lock:
            if task_id in self._active:
                raise TaskBusyError(f"Task {task_id!r} is already running")
            self._active.add(task_id)
        cancelled = False
        try:
            record = self._drive(task_id)
        finally:
            with self._state_lock:
                self._active.discard(task_id)
                # A request that raced past the last step boundary is applied here.
                request = self._cancel_requested.pop(task_id, None)
                if request is not None:
                    cancelled = self._cancel_now(task_id, request)
        return self._finalize(task_id) if cancelled else record

    def submit(self, task_id: str) -> Future[TaskRecord]:
        return self._pool.submit(self.run_task, task_id)

    def run_all(self, task_ids: Iterable[str] | None = None) -> dict[str, TaskRecord]:
        """Run tasks in parallel until none of them can make further progress."""

        if task_ids is None:
            ids = [r.task_id for r in self.tasks.list() if not is_terminal(r.status)]
        else:
            ids = list(dict.fromkeys(task_ids))

        pending = ids
        while pending:
            before = {t: _progress_marker(self.tasks.get(t)) for t in pending}
            runnable = [
                t
                for t in pending
                if self.tasks.get(t).status in (TaskStatus.PLANNED, TaskStatus.IN_PROGRESS)
            ]
            if not runnable:
                break

            futures = {self.submit(t): t for t in runnable}
            for future in as_completed(futures):
                try:
                    future.result()
                except TaskBusyError:
                    logger.warning(
                        "Task already running; skipped", extra={"task_id": futures[future]}
                    )

            after = {t: _progress_marker(self.tasks.get(t)) for t in runnable}
            if all(after[t] == before[t] for t in runnable):
                break
            pending = [t for t in runnable if self.tasks.get(t).status == TaskStatus.PLANNED]

        return {t: self.tasks.get(t) for t in ids}

    def resume(self, task_id: str, answer: str, *, actor: str = DEFAULT_ACTOR) -> TaskRecord:
        return apply_guidance(self.tasks, task_id, answer, actor=actor)

    def cancel(self, task_id: str, reason: str = "", *, actor: str = DEFAULT_ACTOR) -> TaskRecord:
        """Fail a task now if idle, otherwise at its next step boundary."""

        with self._state_lock:
            if task_id in self._active:
                self._cancel_requested[task_id] = (reason, actor)
                task_logger(logger, task_id).info(
                    "Cancellation requested; applies at next step boundary",
                    extra={"actor": actor},
                )
                return self.tasks.get(task_id)
            return apply_cancellation(self.tasks, task_id, reason, actor=actor)

    # -- internals -------------------------------------------------------------

    def _drive(self, task_id: str) -> TaskRecord:
        log = task_logger(logger, task_id)
        record = self.tasks.get(task_id)
        self._check_workflow_version(record)

        if record.status == TaskStatus.PLANNED:
            if self._apply_pending_cancel(task_id):
                return self._finalize(task_id)
            if not self._start(record):
                return self.tasks.get(task_id)

        while True:
            if self._apply_pending_cancel(task_id):
                break
            record = self.tasks.get(task_id)
            if record.status != TaskStatus.IN_PROGRESS:
                break
            step = self.steps.get(record.current_step_id)
            outcome = self._executor.run(task_id, step)
            log.debug(
                "Step finished",
                extra={"step_id": step.step_id, "outcome": type(outcome).__name__},
            )

        return self._finalize(task_id)

    def _start(self, record: TaskRecord) -> bool:
        """Move a planned task to its entry step once prerequisites allow."""

        log = task_logger(logger, record.task_id)
        statuses = {dep: self.tasks.get(dep).status for dep in record.depends_on}
        failed = sorted(dep for dep, status in statuses.items() if status == TaskStatus.FAILED)
        if failed:
            with self.tasks.transaction(record.task_id):
                current = self.tasks.get(record.task_id)
                self.tasks.append_history(
                    record.task_id,
                    HistoryEntry(
                        step_id=current.current_step_id,
                        outcome=HistoryOutcome.FAILURE,
                        actor=ENGINE_ACTOR,
                        detail={"error_kind": "prerequisite_failed", "prerequisites": failed},
                    ),
                    expected_length=len(current.history),
                )
                self.tasks.set_status(
                    record.task_id, TaskStatus.FAILED, expected=TaskStatus.PLANNED
                )
            log.warning("Prerequisite task failed", extra={"prerequisites": failed})
            self._finalize(record.task_id)
            return False

        waiting = sorted(dep for dep, status in statuses.items() if status != TaskStatus.DONE)
        if waiting:
            log.debug("Waiting for prerequisite tasks", extra={"prerequisites": waiting})
            return False

        entry = self.steps.entry_step
        self.tasks.set_status(
            record.task_id,
            TaskStatus.IN_PROGRESS,
            expected=TaskStatus.PLANNED,
            current_step_id=entry.step_id,
        )
        log.info("Task picked up", extra={"step_id": entry.step_id})
        return True

    def _apply_pending_cancel(self, task_id: str) -> bool:
        with self._state_lock:
            request = self._cancel_requested.pop(task_id, None)
        if request is None:
            return False
        return self._cancel_now(task_id, request)

    def _cancel_now(self, task_id: str, request: tuple[str, str]) -> bool:
        reason, actor = request
        try:
            apply_cancellation(self.tasks, task_id, reason, actor=actor)
        except InvalidTransition:
            task_logger(logger, task_id).warning(
                "Cancellation arrived after the task finished; ignored", extra={"actor": actor}
            )
            return False
        return True

    def _finalize(self, task_id: str) -> TaskRecord:
        record = self.tasks.get(task_id)
        if (
            self._archive_terminal
            and is_terminal(record.status)
            and not self.tasks.is_archived(task_id)
        ):
            return self.tasks.archive(task_id)
        return record

    def _check_workflow_version(self, record: TaskRecord) -> None:
        workflow_id = record.metadata.get("workflow_id", self.steps.workflow_id)
        version = record.metadata.get("workflow_version", self.steps.version)
        if workflow_id != self.steps.workflow_id or version != self.steps.version:
            raise ValueError(
                f"Task {record.task_id!r} belongs to workflow {workflow_id!r} v{version}, "
                f"not {self.steps.workflow_id!r} v{self.steps.version}"
            )


def _progress_marker(record: TaskRecord) -> tuple[TaskStatus, int]:
    return record.status, len(record.history)
