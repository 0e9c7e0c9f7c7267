"""Unit tests for step registration and workflow graph validation."""

from __future__ import annotations

import json
import random
from pathlib import Path

import pytest

from workflow_orchestrator.orchestrator.workflow.definitions import (
    DefError,
    StepDefinition,
    load_workflow_definition,
)
from workflow_orchestrator.orchestrator.workflow.step_store import (
    GraphError,
    StepDefinitionStore,
    StepNotFound,
)


def _store(*steps: StepDefinition) -> StepDefinitionStore:
    store = StepDefinitionStore("wf")
    for step in steps:
        store.register(step)
    return store


def test_register_and_get(make_step) -> None:
    store = _store(make_step("S1", next_step="S2"), make_step("S2", depends_on=["S1"]))
    assert store.get("S2").depends_on == ("S1",)
    assert store.entry_step.step_id == "S1"
    with pytest.raises(StepNotFound):
        store.get("missing")


def test_duplicate_step_is_rejected_without_change(make_step) -> None:
    store = _store(make_step("S1", title="first"))
    with pytest.raises(DefError):
        store.register(make_step("S1", title="second"))
    assert store.get("S1").title == "first"
    assert len(store) == 1


def test_forward_dependency_is_rejected(make_step) -> None:
    store = _store(make_step("S1"))
    with pytest.raises(DefError):
        store.register(make_step("S2", depends_on=["S3"]))
    assert len(store) == 1


def test_published_store_is_read_only(make_step) -> None:
    store = _store(make_step("S1"))
    store.publish()
    assert store.published
    with pytest.raises(DefError):
        store.register(make_step("S2"))


def test_malformed_definition_is_rejected() -> None:
    with pytest.raises(ValueError):
        StepDefinition.model_validate({"step_id": "S1", "delegate_to": ""})
    with pytest.raises(ValueError):
        StepDefinition.model_validate(
            {"step_id": "S1", "delegate_to": "r", "inputs": [{"name": "a"}, {"name": "a"}]}
        )


def test_validate_rejects_dangling_references(make_step) -> None:
    store = _store(make_step("S1", next_step="nope"), make_step("S2", error_step="gone"))
    with pytest.raises(GraphError) as excinfo:
        store.validate()
    problems = " ".join(excinfo.value.problems)
    assert "nope" in problems
    assert "gone" in problems


def test_validate_rejects_success_cycle(make_step) -> None:
    store = _store(make_step("S1", next_step="S2"), make_step("S2", next_step="S1"))
    with pytest.raises(GraphError, match="cycle"):
        store.validate()


def test_validate_rejects_cycle_through_dependency(make_step) -> None:
    store = _store(make_step("S1"), make_step("S2", depends_on=["S1"], next_step="S1"))
    with pytest.raises(GraphError, match="cycle"):
        store.validate()


def test_validate_rejects_self_recovering_error_step(make_step) -> None:
    store = _store(make_step("S1", error_step="S1"))
    with pytest.raises(GraphError, match="itself"):
        store.validate()


def test_error_step_may_point_back_into_success_path(make_step) -> None:
    store = _store(
        make_step("S1", next_step="S2"),
        make_step("S2", error_step="EE1"),
        make_step("EE1", next_step="S2"),
    )
    store.validate()


def test_validate_rejects_empty_workflow() -> None:
    with pytest.raises(GraphError):
        StepDefinitionStore("empty").validate()


def test_load_workflow_definition(tmp_path: Path) -> None:
    path = tmp_path / "wf.json"
    path.write_text(
        json.dumps(
            {
                "workflow_id": "review",
                "version": 2,
                "steps": [
                    {"step_id": "a", "delegate_to": "planner", "next_step": "b"},
                    {"step_id": "b", "delegate_to": "reviewer", "depends_on": ["a"]},
                ],
            }
        ),
        encoding="utf-8",
    )
    store = StepDefinitionStore.from_definition(load_workflow_definition(path))
    assert store.workflow_id == "review"
    assert store.version == 2
    assert [s.step_id for s in store.steps()] == ["a", "b"]


def test_load_workflow_definition_errors(tmp_path: Path) -> None:
    with pytest.raises(DefError):
        load_workflow_definition(tmp_path / "missing.json")
    bad = tmp_path / "bad.json"
    bad.write_text("{not json", encoding="utf-8")
    with pytest.raises(DefError):
        load_workflow_definition(bad)
    wrong = tmp_path / "wrong.json"
    wrong.write_text(json.dumps({"workflow_id": "x", "steps": [{"step_id": "a"}]}))
    with pytest.raises(DefError):
        load_workflow_definition(wrong)


# -- randomized graphs ----------------------------------------------------------


def _expected_valid(steps: list[StepDefinition]) -> bool:
    """Independent oracle: reference resolution plus Kahn's topological sort."""
    ids = {s.step_id for s in steps}
    for s in steps:
        if s.next_step and s.next_step not in ids:
            return False
        if s.error_step and (s.error_step not in ids or s.error_step == s.step_id):
            return False

    edges: dict[str, set[str]] = {s.step_id: set() for s in steps}
    for s in steps:
        if s.next_step:
            edges[s.step_id].add(s.next_step)
        for dep in s.depends_on:
            edges[dep].add(s.step_id)
    indegree = dict.fromkeys(ids, 0)
    for targets in edges.values():
        for t in targets:
            indegree[t] += 1
    ready = [n for n, d in indegree.items() if d == 0]
    seen = 0
    while ready:
        node = ready.pop()
        seen += 1
        for t in edges[node]:
            indegree[t] -= 1
            if indegree[t] == 0:
                ready.append(t)
    return seen == len(ids)


def _random_steps(rng: random.Random, make_step) -> list[StepDefinition]:
    n = rng.randint(1, 8)
    ids = [f"S{i}" for i in range(n)]
    steps = []
    for i, step_id in enumerate(ids):
        roll = rng.random()
        if roll < 0.25:
            next_step = ""
        elif roll < 0.35:
            next_step = "ghost"
        elif roll < 0.5:
            # Backward edge: an intentional cycle candidate.
            next_step = rng.choice(ids[: i + 1])
        else:
            next_step = rng.choice(ids)
        error_roll = rng.random()
        if error_roll < 0.6:
            error_step = ""
        elif error_roll < 0.7:
            error_step = step_id
        elif error_roll < 0.75:
            error_step = "missing"
        else:
            error_step = rng.choice(ids)
        depends_on = rng.sample(ids[:i], k=rng.randint(0, min(2, i)))
        steps.append(
            make_step(step_id, next_step=next_step, error_step=error_step, depends_on=depends_on)
        )
    return steps


@pytest.mark.parametrize("seed", range(200))
def test_validate_matches_reference_on_random_graphs(seed: int, make_step) -> None:
    rng = random.Random(seed)
    steps = _random_steps(rng, make_step)
    store = _store(*steps)

    if _expected_valid(steps):
        store.validate()
    else:
        with pytest.raises(GraphError):
            store.validate()
