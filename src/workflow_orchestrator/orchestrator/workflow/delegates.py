"""Delegates: the roles that actually perform a step's work.

The engine never executes role logic itself. It builds a `DelegationRequest`
and hands it to the delegate bound to the step's role.
"""

from __future__ import annotations

import logging
from abc import ABC, abstractmethod
from collections.abc import Callable, Iterable, Mapping
from concurrent.futures import ThreadPoolExecutor
from concurrent.futures import TimeoutError as FutureTimeoutError
from dataclasses import dataclass, field
from typing import Any

from .definitions import DefError, StepDefinition

logger = logging.getLogger(__name__)


class UnboundRoleError(DefError):
    """Raised when a step's role has no delegate bound to it."""


@dataclass(frozen=True, slots=True)
class DelegationRequest:
    task_id: str
    step_id: str
    role: str
    inputs: dict[str, str]
    context: dict[str, Any] = field(default_factory=dict)


@dataclass(frozen=True, slots=True)
class DelegateResult:
    ok: bool
    outputs: dict[str, str] = field(default_factory=dict)
    error_detail: str = ""

    @staticmethod
    def success(**outputs: str) -> DelegateResult:
        return DelegateResult(ok=True, outputs=dict(outputs))

    @staticmethod
    def failure(error_detail: str) -> DelegateResult:
        return DelegateResult(ok=False, error_detail=error_detail)


class Delegate(ABC):
    """A role capable of performing steps."""

    @abstractmethod
    def handle(self, request: DelegationRequest) -> DelegateResult:
        """Perform the step described by `request`.

        Args:
            request: Task/step identity, bound inputs and extra context.

        Returns:
            The outcome. Raising is also treated as a failure by the executor.
        """


class CallableDelegate(Delegate):
    """Adapts a plain function to the delegate interface."""

    def __init__(
        self, fn: Callable[[DelegationRequest], DelegateResult], *, name: str = ""
    ) -> None:
        self._fn = fn
        self.name = name or getattr(fn, "__name__", "callable")

    def handle(self, request: DelegationRequest) -> DelegateResult:
        return self._fn(request)

    def __repr__(self) -> str:
        return f"CallableDelegate({self.name!r})"


class TimeoutDelegate(Delegate):
    """Bounds another delegate's run time, reporting a timeout as a failure.

    The wrapped call is not interrupted; its eventual result is discarded.
    """

    def __init__(self, inner: Delegate, *, timeout_seconds: float) -> None:
        if timeout_seconds <= 0:
            raise ValueError("timeout_seconds must be positive")
        self._inner = inner
        self._timeout_seconds = timeout_seconds

    def handle(self, request: DelegationRequest) -> DelegateResult:
        pool = ThreadPoolExecutor(max_workers=1, thread_name_prefix=f"delegate-{request.role}")
        try:
            future = pool.submit(self._inner.handle, request)
            return future.result(timeout=self._timeout_seconds)
        except FutureTimeoutError:
            logger.warning(
                "Delegate timed out",
                extra={
                    "task_id": request.task_id,
                    "step_id": request.step_id,
                    "role": request.role,
                    "timeout_seconds": self._timeout_seconds,
                },
            )
            return DelegateResult.failure(
                f"Delegate for role {request.role!r} timed out after {self._timeout_seconds}s"
            )
        finally:
            pool.shutdown(wait=False)


def bind_roles(
    steps: Iterable[StepDefinition], delegates: Mapping[str, Delegate]
) -> dict[str, Delegate]:
    """Resolve every step to its delegate once, before any task runs.

    Returns:
        step_id -> delegate.

    Raises:
        UnboundRoleError: Listing the roles with no delegate.
    """

    bound: dict[str, Delegate] = {}
    missing: dict[str, list[str]] = {}
    for step in steps:
        delegate = delegates.get(step.delegate_to)
        if delegate is None:
            missing.setdefault(step.delegate_to, []).append(step.step_id)
            continue
        bound[step.step_id] = delegate
    if missing:
        details = "; ".join(f"{role} (steps: {', '.join(ids)})" for role, ids in missing.items())
        raise UnboundRoleError(f"No delegate bound for roles: {details}")
    return bound
