#!/usr/bin/env python3
"""Programmatic workflow run example.

This demonstrates using the orchestrator components directly:

* load settings from `.env`
* load and publish a workflow definition
* bind roles to delegates and run a task through the graph
* deliver guidance when the task blocks, then finish the run

Task state is persisted to `ORCHESTRATOR_TASK_STATE_PATH`.
"""

from __future__ import annotations

import argparse
from pathlib import Path
from typing import Sequence

from workflow_orchestrator.orchestrator.config import OrchestratorSettings
from workflow_orchestrator.orchestrator.logging import configure_logging
from workflow_orchestrator.orchestrator.workflow import (
    CallableDelegate,
    DecisionGate,
    DelegateResult,
    DelegationRequest,
    DirectoryKnowledgeBase,
    InMemoryKnowledgeBase,
    StepDefinitionStore,
    TaskRecordStore,
    TaskStatus,
    TimeoutDelegate,
    WorkflowEngine,
    load_workflow_definition,
)


def _parse_args(argv: Sequence[str] | None = None) -> argparse.Namespace:
    parser = argparse.ArgumentParser(description="Run one task through a workflow.")
    parser.add_argument(
        "--workflow",
        default=str(Path(__file__).with_name("review_workflow.json")),
        help="Workflow definition (JSON)",
    )
    parser.add_argument("--task-id", required=True, help="Task identifier")
    parser.add_argument("--request", required=True, help="What should be changed")
    parser.add_argument(
        "--complexity",
        default="simple",
        help="simple | routine | complex | novel | high-risk (anything else asks for guidance)",
    )
    parser.add_argument(
        "--answer",
        default="",
        help="Guidance to deliver if the task blocks (optional)",
    )
    return parser.parse_args(argv)


def plan(request: DelegationRequest) -> DelegateResult:
    return DelegateResult.success(plan=f"1. Understand: {request.inputs['request']}\n2. Change it")


def implement(request: DelegationRequest) -> DelegateResult:
    notes = request.context.get("knowledge", "")
    return DelegateResult.success(patch=f"diff for plan:\n{request.inputs['plan']}\n{notes}")


def review(request: DelegationRequest) -> DelegateResult:
    return DelegateResult.success(verdict="approved" if request.inputs["patch"] else "rejected")


def main(argv: Sequence[str] | None = None) -> int:
    args = _parse_args(argv)

    settings = OrchestratorSettings()
    configure_logging(settings.log_level, settings.log_format)

    steps = StepDefinitionStore.from_definition(load_workflow_definition(Path(args.workflow)))
    knowledge = (
        DirectoryKnowledgeBase(settings.knowledge_base_path)
        if settings.knowledge_base_path is not None
        else InMemoryKnowledgeBase()
    )
    gate = DecisionGate(knowledge, default_min_confidence=settings.gate_min_confidence)
    delegates = {
        "planner": CallableDelegate(plan),
        "developer": TimeoutDelegate(CallableDelegate(implement), timeout_seconds=60),
        "reviewer": CallableDelegate(review),
    }

    with WorkflowEngine(
        steps,
        TaskRecordStore(settings.task_state_path),
        delegates,
        gate,
        max_workers=settings.max_workers,
        archive_terminal=settings.archive_terminal_tasks,
    ) as engine:
        engine.create_task(
            args.task_id, metadata={"request": args.request, "complexity": args.complexity}
        )
        record = engine.run_task(args.task_id)

        if record.status == TaskStatus.BLOCKED and args.answer:
            engine.resume(args.task_id, args.answer, actor="example")
            record = engine.run_task(args.task_id)

    print(f"Task {record.task_id}: {record.status.value} at step {record.current_step_id!r}")
    for entry in record.history:
        print(f"  {entry.timestamp} {entry.step_id:<10} {entry.outcome.value:<10} {entry.actor}")
    print(f"Persisted to: {settings.task_state_path}")
    return 0


if __name__ == "__main__":
    raise SystemExit(main())
