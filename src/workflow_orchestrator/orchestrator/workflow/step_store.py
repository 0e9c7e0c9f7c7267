"""Registry of step definitions for one published workflow version."""

from __future__ import annotations

import logging
from collections.abc import Iterator

from .definitions import DefError, StepDefinition, WorkflowDefinition

logger = logging.getLogger(__name__)


class GraphError(ValueError):
    """Raised when a workflow graph has a cycle or a dangling reference."""

    def __init__(self, problems: list[str]) -> None:
        self.problems = list(problems)
        super().__init__("; ".join(self.problems))


class StepNotFound(KeyError):
    pass


class StepDefinitionStore:
    """Holds the steps of a workflow in registration order.

    Registration is rejected whole (never partially applied). After `publish()`
    the store is read-only, so concurrent readers need no locking.
    """

    def __init__(self, workflow_id: str, version: int = 1) -> None:
        self.workflow_id = workflow_id
        self.version = version
        self._steps: dict[str, StepDefinition] = {}
        self._published = False

    @classmethod
    def from_definition(cls, definition: WorkflowDefinition) -> StepDefinitionStore:
        store = cls(definition.workflow_id, definition.version)
        for step in definition.steps:
            store.register(step)
        store.publish()
        return store

    @property
    def published(self) -> bool:
        return self._published

    @property
    def entry_step(self) -> StepDefinition:
        if not self._steps:
            raise StepNotFound("Workflow has no steps")
        return next(iter(self._steps.values()))

    def __len__(self) -> int:
        return len(self._steps)

    def steps(self) -> Iterator[StepDefinition]:
        return iter(self._steps.values())

    def register(self, step: StepDefinition) -> None:
        if self._published:
            raise DefError(
                f"Workflow {self.workflow_id!r} v{self.version} is published; "
                "publish a new version instead"
            )
        if step.step_id in self._steps:
            raise DefError(f"Duplicate step id: {step.step_id!r}")
        forward = [dep for dep in step.depends_on if dep not in self._steps]
        if forward:
            raise DefError(
                f"Step {step.step_id!r} depends on steps not yet defined: {', '.join(forward)}"
            )
        self._steps[step.step_id] = step

    def get(self, step_id: str) -> StepDefinition:
        try:
            return self._steps[step_id]
        except KeyError:
            raise StepNotFound(step_id) from None

    def validate(self) -> None:
        """Check references, success-path acyclicity and self-recovering error steps.

        Raises:
            GraphError: Listing every problem found. Nothing is mutated.
        """

        problems: list[str] = []
        if not self._steps:
            problems.append("Workflow has no steps")

        for step in self._steps.values():
            for dep in step.depends_on:
                if dep not in self._steps:
                    problems.append(f"{step.step_id}: depends_on references unknown step {dep!r}")
            if step.next_step and step.next_step not in self._steps:
                problems.append(
                    f"{step.step_id}: next_step references unknown step {step.next_step!r}"
                )
            if step.error_step and step.error_step not in self._steps:
                problems.append(
                    f"{step.step_id}: error_step references unknown step {step.error_step!r}"
                )
            if step.error_step and step.error_step == step.step_id:
                problems.append(f"{step.step_id}: error_step must not point to itself")

        cycle = self._find_success_cycle()
        if cycle:
            problems.append("Success path contains a cycle: " + " -> ".join(cycle))

        if problems:
            raise GraphError(problems)

    def publish(self) -> None:
        self.validate()
        self._published = True
        logger.info(
            "Workflow published",
            extra={
                "workflow_id": self.workflow_id,
                "version": self.version,
                "steps": len(self._steps),
            },
        )

    def _success_edges(self, step: StepDefinition) -> list[str]:
        edges = [step.next_step] if step.next_step in self._steps else []
        # A dependency must run before its dependents.
        edges.extend(
            other.step_id for other in self._steps.values() if step.step_id in other.depends_on
        )
        return edges

    def _find_success_cycle(self) -> list[str]:
        white, grey, black = 0, 1, 2
        color = dict.fromkeys(self._steps, white)
        stack: list[str] = []

        def visit(step_id: str) -> list[str]:
            color[step_id] = grey
            stack.append(step_id)
            for nxt in self._success_edges(self._steps[step_id]):
                if color[nxt] == grey:
                    return stack[stack.index(nxt) :] + [nxt]
                if color[nxt] == white:
                    found = visit(nxt)
                    if found:
                        return found
            stack.pop()
            color[step_id] = black
            return []

        for step_id in self._steps:
            if color[step_id] == white:
                found = visit(step_id)
                if found:
                    return found
        return []
