"""CLI entrypoint for the local-first workflow orchestrator.

Operates on persisted state only: validating workflow definitions, exporting
task records, and delivering guidance/cancellation signals. Running tasks
requires delegates, which are wired up in code (see `examples/`).
"""

from __future__ import annotations

import argparse
import json
import logging
import sys
from collections.abc import Sequence
from pathlib import Path

from pydantic import ValidationError

from workflow_orchestrator import __version__
from workflow_orchestrator.orchestrator.config import OrchestratorSettings
from workflow_orchestrator.orchestrator.logging import configure_logging
from workflow_orchestrator.orchestrator.workflow.definitions import (
    DefError,
    load_workflow_definition,
)
from workflow_orchestrator.orchestrator.workflow.engine import (
    DEFAULT_ACTOR,
    apply_cancellation,
    apply_guidance,
)
from workflow_orchestrator.orchestrator.workflow.state_machine import InvalidTransition
from workflow_orchestrator.orchestrator.workflow.step_store import GraphError, StepDefinitionStore
from workflow_orchestrator.orchestrator.workflow.task_store import (
    ConflictError,
    TaskNotFound,
    TaskRecordStore,
)

logger = logging.getLogger(__name__)

EXIT_OK = 0
EXIT_FAILURE = 1
EXIT_USAGE = 2
EXIT_REJECTED = 3
EXIT_INVALID_WORKFLOW = 4


def build_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(
        prog="orchestrator",
        description="Local-first workflow orchestrator",
    )
    parser.add_argument(
        "--version", action="version", version=f"workflow-orchestrator {__version__}"
    )

    subparsers = parser.add_subparsers(dest="command", required=True)

    validate = subparsers.add_parser(
        "validate-workflow", help="Validate a workflow definition file (JSON)"
    )
    validate.add_argument(
        "--path",
        default=None,
        help="Workflow definition file (defaults to ORCHESTRATOR_WORKFLOW_PATH)",
    )

    show_task = subparsers.add_parser("show-task", help="Print one task record as JSON")
    show_task.add_argument("--task-id", required=True, help="Task identifier")

    export_tasks = subparsers.add_parser(
        "export-tasks", help="Print all task records as a JSON array"
    )
    export_tasks.add_argument(
        "--include-archived",
        action="store_true",
        help="Include retired (done/failed and archived) tasks",
    )

    resume = subparsers.add_parser(
        "resume-task", help="Deliver a guidance answer to a blocked task"
    )
    resume.add_argument("--task-id", required=True, help="Task identifier")
    resume.add_argument("--answer", required=True, help="Guidance answer for the suspended step")
    resume.add_argument("--actor", default=DEFAULT_ACTOR, help="Who is answering")

    cancel = subparsers.add_parser("cancel-task", help="Mark a task as failed")
    cancel.add_argument("--task-id", required=True, help="Task identifier")
    cancel.add_argument("--reason", default="", help="Why the task is cancelled")
    cancel.add_argument("--actor", default=DEFAULT_ACTOR, help="Who is cancelling")

    return parser


def _print_json(payload: object) -> None:
    print(json.dumps(payload, indent=2, ensure_ascii=False))


def _validate_workflow(args: argparse.Namespace, settings: OrchestratorSettings) -> int:
    path = Path(args.path) if args.path else settings.workflow_path
    if path is None:
        print("No workflow given: pass --path or set ORCHESTRATOR_WORKFLOW_PATH", file=sys.stderr)
        return EXIT_USAGE

    try:
        store = StepDefinitionStore.from_definition(load_workflow_definition(path))
    except GraphError as e:
        for problem in e.problems:
            print(f"error: {problem}", file=sys.stderr)
        return EXIT_INVALID_WORKFLOW
    except DefError as e:
        print(f"error: {e}", file=sys.stderr)
        return EXIT_INVALID_WORKFLOW

    print(
        f"Workflow {store.workflow_id!r} v{store.version} is valid: "
        f"{len(store)} steps (entry: {store.entry_step.step_id})"
    )
    return EXIT_OK


def main(argv: Sequence[str] | None = None) -> int:
    parser = build_parser()
    args = parser.parse_args(argv)

    try:
        settings = OrchestratorSettings()
    except ValidationError as e:
        # Logging isn't configured yet; print a clean message.
        print(f"Configuration error: {e}", file=sys.stderr)
        return EXIT_USAGE

    configure_logging(settings.log_level, settings.log_format)
    logger.debug("Command started", extra={"command": args.command})

    try:
        if args.command == "validate-workflow":
            return _validate_workflow(args, settings)

        tasks = TaskRecordStore(settings.task_state_path)

        if args.command == "show-task":
            _print_json(tasks.get(args.task_id).to_json())
            return EXIT_OK

        if args.command == "export-tasks":
            records = tasks.list(include_archived=args.include_archived)
            _print_json([r.to_json() for r in records])
            return EXIT_OK

        if args.command == "resume-task":
            record = apply_guidance(tasks, args.task_id, args.answer, actor=args.actor)
            print(f"Task {record.task_id} resumed at step {record.current_step_id}")
            return EXIT_OK

        if args.command == "cancel-task":
            record = apply_cancellation(tasks, args.task_id, args.reason, actor=args.actor)
            print(f"Task {record.task_id} cancelled")
            return EXIT_OK

        logger.error("Unknown command", extra={"command": args.command})
        return EXIT_USAGE

    except TaskNotFound as e:
        print(f"Task not found: {e.args[0]}", file=sys.stderr)
        return EXIT_FAILURE

    except (InvalidTransition, ConflictError, ValueError) as e:
        logger.warning(str(e), extra={"command": args.command})
        print(str(e), file=sys.stderr)
        return EXIT_REJECTED

    except Exception:
        logger.exception("Command failed")
        return EXIT_FAILURE


if __name__ == "__main__":
    raise SystemExit(main())
