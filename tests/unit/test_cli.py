"""Unit tests for the command line interface."""

from __future__ import annotations

import json
from pathlib import Path

import pytest

from workflow_orchestrator.orchestrator.main import (
    EXIT_FAILURE,
    EXIT_INVALID_WORKFLOW,
    EXIT_OK,
    EXIT_REJECTED,
    EXIT_USAGE,
    main,
)
from workflow_orchestrator.orchestrator.workflow.state_machine import TaskStatus
from workflow_orchestrator.orchestrator.workflow.task_store import TaskRecordStore
from workflow_orchestrator.orchestrator.workflow.tasks import HistoryEntry, HistoryOutcome

EXAMPLE_WORKFLOW = Path(__file__).resolve().parents[2] / "examples" / "review_workflow.json"


@pytest.fixture
def state_path(tmp_path: Path, monkeypatch: pytest.MonkeyPatch) -> Path:
    path = tmp_path / "agent_state" / "tasks.json"
    monkeypatch.chdir(tmp_path)
    monkeypatch.delenv("ORCHESTRATOR_WORKFLOW_PATH", raising=False)
    monkeypatch.setenv("LOG_LEVEL", "WARNING")
    monkeypatch.setenv("ORCHESTRATOR_TASK_STATE_PATH", str(path))
    return path


def _blocked_task(path: Path, task_id: str = "T1") -> None:
    store = TaskRecordStore(path)
    store.create(task_id)
    store.set_status(task_id, TaskStatus.IN_PROGRESS, current_step_id="implement")
    suspended = HistoryEntry(
        step_id="implement", outcome=HistoryOutcome.SUSPENDED, actor="workflow-engine"
    )
    store.append_history(task_id, suspended)
    store.set_status(task_id, TaskStatus.BLOCKED)


def test_validate_example_workflow(state_path: Path, capsys) -> None:
    assert main(["validate-workflow", "--path", str(EXAMPLE_WORKFLOW)]) == EXIT_OK
    out = capsys.readouterr().out
    assert "Workflow 'change-review' v1 is valid: 4 steps (entry: plan)" in out


def test_validate_uses_configured_path(
    state_path: Path, monkeypatch: pytest.MonkeyPatch, capsys
) -> None:
    assert main(["validate-workflow"]) == EXIT_USAGE

    monkeypatch.setenv("ORCHESTRATOR_WORKFLOW_PATH", str(EXAMPLE_WORKFLOW))
    assert main(["validate-workflow"]) == EXIT_OK


def test_validate_reports_every_graph_problem(state_path: Path, tmp_path: Path, capsys) -> None:
    path = tmp_path / "cyclic.json"
    path.write_text(
        json.dumps(
            {
                "workflow_id": "broken",
                "steps": [
                    {"step_id": "a", "delegate_to": "r", "next_step": "b"},
                    {"step_id": "b", "delegate_to": "r", "next_step": "a", "error_step": "zz"},
                ],
            }
        ),
        encoding="utf-8",
    )

    assert main(["validate-workflow", "--path", str(path)]) == EXIT_INVALID_WORKFLOW
    err = capsys.readouterr().err
    assert "cycle" in err
    assert "'zz'" in err


def test_validate_missing_file(state_path: Path, tmp_path: Path) -> None:
    code = main(["validate-workflow", "--path", str(tmp_path / "absent.json")])
    assert code == EXIT_INVALID_WORKFLOW


def test_show_and_export_tasks(state_path: Path, capsys) -> None:
    _blocked_task(state_path)

    assert main(["show-task", "--task-id", "T1"]) == EXIT_OK
    shown = json.loads(capsys.readouterr().out)
    assert shown["id"] == "T1"
    assert shown["status"] == "blocked"

    assert main(["export-tasks"]) == EXIT_OK
    exported = json.loads(capsys.readouterr().out)
    assert [t["id"] for t in exported] == ["T1"]

    assert main(["show-task", "--task-id", "nope"]) == EXIT_FAILURE


def test_export_include_archived(state_path: Path, capsys) -> None:
    store = TaskRecordStore(state_path)
    store.create("old")
    store.set_status("old", TaskStatus.FAILED)
    store.archive("old")

    assert main(["export-tasks"]) == EXIT_OK
    assert json.loads(capsys.readouterr().out) == []

    assert main(["export-tasks", "--include-archived"]) == EXIT_OK
    assert [t["id"] for t in json.loads(capsys.readouterr().out)] == ["old"]


def test_resume_task(state_path: Path, capsys) -> None:
    _blocked_task(state_path)

    code = main(["resume-task", "--task-id", "T1", "--answer", "use phase two", "--actor", "lead"])

    assert code == EXIT_OK
    assert "Task T1 resumed at step implement" in capsys.readouterr().out
    record = TaskRecordStore(state_path).get("T1")
    assert record.status == TaskStatus.IN_PROGRESS
    assert record.history[-1].detail == {"answer": "use phase two"}
    assert record.history[-1].actor == "lead"


def test_resume_rejected_for_non_blocked_task(state_path: Path, capsys) -> None:
    TaskRecordStore(state_path).create("T1")

    assert main(["resume-task", "--task-id", "T1", "--answer", "x"]) == EXIT_REJECTED
    assert "only blocked tasks" in capsys.readouterr().err


def test_cancel_task(state_path: Path, capsys) -> None:
    _blocked_task(state_path)

    assert main(["cancel-task", "--task-id", "T1", "--reason", "obsolete"]) == EXIT_OK
    assert "Task T1 cancelled" in capsys.readouterr().out
    record = TaskRecordStore(state_path).get("T1")
    assert record.status == TaskStatus.FAILED
    assert record.history[-1].outcome == HistoryOutcome.CANCELLED

    assert main(["cancel-task", "--task-id", "T1"]) == EXIT_REJECTED


def test_invalid_configuration(state_path: Path, monkeypatch: pytest.MonkeyPatch, capsys) -> None:
    monkeypatch.setenv("ORCHESTRATOR_MAX_WORKERS", "0")
    assert main(["export-tasks"]) == EXIT_USAGE
    assert "Configuration error" in capsys.readouterr().err
