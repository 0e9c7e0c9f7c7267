"""Mutable task records, serialized per task id.

`set_status` is the only way a task's status changes. Each task has its own
re-entrant lock; there is no global lock across tasks. When a path is given,
the store is persisted to JSON after every mutation so runs are restartable.
"""

from __future__ import annotations

import json
import logging
import os
import threading
from collections.abc import Iterator
from contextlib import contextmanager
from datetime import UTC, datetime
from pathlib import Path
from typing import Any

from pydantic import ValidationError

from .state_machine import InvalidTransition, TaskStatus, is_terminal, transition
from .tasks import HistoryEntry, TaskRecord

logger = logging.getLogger(__name__)


class TaskNotFound(KeyError):
    pass


class TaskExistsError(ValueError):
    pass


class ConflictError(RuntimeError):
    """Raised when a history append would race or reorder existing entries."""


class TaskRecordStore:
    def __init__(self, path: Path | None = None) -> None:
        self._path = path
        self._records: dict[str, TaskRecord] = {}
        self._archived: dict[str, TaskRecord] = {}
        self._task_locks: dict[str, threading.RLock] = {}
        # Guards the dicts above and file writes; never held across a task operation.
        self._index_lock = threading.Lock()
        if path is not None:
            self._load()

    # -- persistence ---------------------------------------------------------

    def _load(self) -> None:
        assert self._path is not None
        if not self._path.exists():
            return
        try:
            raw = json.loads(self._path.read_text(encoding="utf-8"))
            if not isinstance(raw, dict):
                raise ValueError("expected a JSON object with 'tasks' and 'archived'")
            loaded: dict[str, dict[str, TaskRecord]] = {"tasks": {}, "archived": {}}
            for key, target in loaded.items():
                items = raw.get(key) or []
                if not isinstance(items, list):
                    raise ValueError(f"'{key}' must be a list")
                for item in items:
                    record = TaskRecord.from_json(item)
                    target[record.task_id] = record
        except (ValueError, ValidationError) as e:
            self._quarantine(e)
            return
        self._records, self._archived = loaded["tasks"], loaded["archived"]
        logger.info(
            "Task state loaded",
            extra={
                "path": str(self._path),
                "tasks": len(self._records),
                "archived": len(self._archived),
            },
        )

    def _quarantine(self, error: Exception) -> None:
        """Move an unreadable state file aside so the next save cannot overwrite it."""

        assert self._path is not None
        stamp = datetime.now(tz=UTC).strftime("%Y%m%dT%H%M%S%f")
        moved = self._path.with_name(f"{self._path.name}.corrupt-{stamp}")
        os.replace(self._path, moved)
        logger.error(
            "Task state file is unreadable; moved aside and starting empty",
            extra={"path": str(self._path), "moved_to": str(moved), "error": str(error)},
        )

    def _save(self) -> None:
        if self._path is None:
            return
        with self._index_lock:
            payload = {
                "tasks": [r.to_json() for r in self._records.values()],
                "archived": [r.to_json() for r in self._archived.values()],
            }
            self._path.parent.mkdir(parents=True, exist_ok=True)
            # Readers only ever see a complete file.
            tmp = self._path.with_name(f"{self._path.name}.tmp")
            tmp.write_text(
                json.dumps(payload, indent=2, ensure_ascii=False) + "\n", encoding="utf-8"
            )
            os.replace(tmp, self._path)

    # -- locking -------------------------------------------------------------

    def _lock_for(self, task_id: str) -> threading.RLock:
        with self._index_lock:
            if task_id in self._archived:
                # Archived records are read-only, so their lock is not retained.
                return threading.RLock()
            lock = self._task_locks.get(task_id)
            if lock is None:
                lock = threading.RLock()
                self._task_locks[task_id] = lock
            return lock

    @contextmanager
    def transaction(self, task_id: str) -> Iterator[None]:
        """Hold the task's lock so several operations apply together."""

        with self._lock_for(task_id):
            yield

    def _live(self, task_id: str) -> TaskRecord:
        with self._index_lock:
            record = self._records.get(task_id) or self._archived.get(task_id)
        if record is None:
            raise TaskNotFound(task_id)
        return record

    # -- public API ----------------------------------------------------------

    def create(
        self,
        task_id: str,
        *,
        initial_status: TaskStatus = TaskStatus.PLANNED,
        metadata: dict[str, Any] | None = None,
        related_docs: list[str] | None = None,
        depends_on: list[str] | None = None,
    ) -> TaskRecord:
        with self._lock_for(task_id):
            with self._index_lock:
                if task_id in self._records or task_id in self._archived:
                    raise TaskExistsError(f"Task already exists: {task_id!r}")
                record = TaskRecord(
                    task_id=task_id,
                    status=initial_status,
                    metadata=dict(metadata or {}),
                    related_docs=list(related_docs or []),
                    depends_on=list(depends_on or []),
                )
                self._records[task_id] = record
            self._save()
            logger.info(
                "Task created", extra={"task_id": task_id, "status": initial_status.value}
            )
            return record.model_copy(deep=True)

    def get(self, task_id: str) -> TaskRecord:
        with self._index_lock:
            archived = self._archived.get(task_id)
            if archived is not None:
                return archived.model_copy(deep=True)
        with self._lock_for(task_id):
            return self._live(task_id).model_copy(deep=True)

    def exists(self, task_id: str) -> bool:
        with self._index_lock:
            return task_id in self._records or task_id in self._archived

    def list(self, *, include_archived: bool = False) -> list[TaskRecord]:
        with self._index_lock:
            records = list(self._records.values())
            if include_archived:
                records.extend(self._archived.values())
            return [r.model_copy(deep=True) for r in records]

    def is_archived(self, task_id: str) -> bool:
        with self._index_lock:
            return task_id in self._archived

    def append_history(
        self, task_id: str, entry: HistoryEntry, *, expected_length: int | None = None
    ) -> TaskRecord:
        """Append one history entry.

        Raises:
            ConflictError: If `expected_length` is stale or the entry predates the last one.
        """

        with self._lock_for(task_id):
            record = self._live(task_id)
            if self.is_archived(task_id):
                raise InvalidTransition(f"Task {task_id!r} is archived; its history is closed")
            if expected_length is not None and expected_length != len(record.history):
                raise ConflictError(
                    f"History of {task_id!r} has {len(record.history)} entries, "
                    f"expected {expected_length}"
                )
            if record.history and entry.recorded_at < record.history[-1].recorded_at:
                raise ConflictError(
                    f"History entry for {task_id!r} at {entry.timestamp} predates the last entry"
                )
            with self._index_lock:
                record.history.append(entry)
            self._save()
            logger.debug(
                "History appended",
                extra={
                    "task_id": task_id,
                    "step_id": entry.step_id,
                    "outcome": entry.outcome.value,
                    "actor": entry.actor,
                },
            )
            return record.model_copy(deep=True)

    def set_status(
        self,
        task_id: str,
        new_status: TaskStatus,
        *,
        expected: TaskStatus | None = None,
        current_step_id: str | None = None,
    ) -> TaskRecord:
        """Apply one status transition, failing closed on anything not allowed.

        Raises:
            InvalidTransition: The record is left unchanged.
        """

        with self._lock_for(task_id):
            record = self._live(task_id)
            if expected is not None and record.status != expected:
                raise InvalidTransition(
                    f"Task {task_id!r} is {record.status.value}, expected {expected.value}"
                )
            transition(current=record.status, to=new_status)
            if new_status == record.status and (
                current_step_id is None or current_step_id == record.current_step_id
            ):
                raise InvalidTransition(
                    f"Task {task_id!r} is already {new_status.value} at step "
                    f"{record.current_step_id!r}"
                )
            previous = record.status
            with self._index_lock:
                record.status = new_status
                if current_step_id is not None:
                    record.current_step_id = current_step_id
            self._save()
            logger.info(
                "Task status changed",
                extra={
                    "task_id": task_id,
                    "from_status": previous.value,
                    "to_status": new_status.value,
                    "step_id": record.current_step_id,
                },
            )
            return record.model_copy(deep=True)

    def archive(self, task_id: str) -> TaskRecord:
        """Retire a finished task. Archived tasks stay readable and are never deleted."""

        with self._lock_for(task_id):
            record = self._live(task_id)
            if not is_terminal(record.status):
                raise InvalidTransition(
                    f"Only done or failed tasks can be archived; {task_id!r} is "
                    f"{record.status.value}"
                )
            with self._index_lock:
                if task_id in self._records:
                    self._archived[task_id] = self._records.pop(task_id)
                self._task_locks.pop(task_id, None)
            self._save()
            logger.info("Task archived", extra={"task_id": task_id})
            return record.model_copy(deep=True)
