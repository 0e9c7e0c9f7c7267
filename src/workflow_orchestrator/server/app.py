"""FastAPI app factory.

Endpoints are intentionally thin wrappers over a `WorkflowEngine`. Delegates are
code, so the caller builds the engine and hands it in.
"""

from __future__ import annotations

import logging
from concurrent.futures import Future

from fastapi import FastAPI, HTTPException

from workflow_orchestrator import __version__
from workflow_orchestrator.orchestrator.workflow.engine import WorkflowEngine
from workflow_orchestrator.orchestrator.workflow.state_machine import InvalidTransition
from workflow_orchestrator.orchestrator.workflow.task_store import TaskNotFound
from workflow_orchestrator.orchestrator.workflow.tasks import TaskRecord
from workflow_orchestrator.server.models import ApiTask, CancelRequest, ResumeRequest, RunAccepted

logger = logging.getLogger(__name__)


def _to_api_task(record: TaskRecord) -> ApiTask:
    return ApiTask.model_validate(record.to_json())


def _log_background_failure(task_id: str, future: Future[TaskRecord]) -> None:
    exc = future.exception()
    if exc is not None:
        logger.error(
            "Background task run failed",
            extra={"task_id": task_id},
            exc_info=(type(exc), exc, exc.__traceback__),
        )


def create_app(engine: WorkflowEngine) -> FastAPI:
    app = FastAPI(
        title="Workflow Orchestrator",
        version=__version__,
        description="REST API for task records and guidance/cancellation signals.",
        openapi_url="/api/openapi.json",
        docs_url="/api/docs",
        redoc_url="/api/redoc",
    )

    # Expose the engine for request handlers that want to read it.
    app.state.engine = engine

    def _get_task(task_id: str) -> TaskRecord:
        try:
            return engine.tasks.get(task_id)
        except TaskNotFound:
            raise HTTPException(status_code=404, detail="Task not found") from None

    def _run_in_background(task_id: str) -> None:
        future = engine.submit(task_id)
        future.add_done_callback(lambda f: _log_background_failure(task_id, f))

    @app.get("/api/v1/health")
    def health() -> dict[str, str | int]:
        return {
            "status": "ok",
            "version": __version__,
            "workflow_id": engine.steps.workflow_id,
            "workflow_version": engine.steps.version,
        }

    @app.get("/api/v1/tasks", response_model=list[ApiTask])
    def list_tasks(include_archived: bool = False) -> list[ApiTask]:
        records = engine.tasks.list(include_archived=include_archived)
        return [_to_api_task(r) for r in records]

    @app.get("/api/v1/tasks/{task_id}", response_model=ApiTask)
    def get_task(task_id: str) -> ApiTask:
        return _to_api_task(_get_task(task_id))

    @app.post("/api/v1/tasks/{task_id}/resume", response_model=ApiTask)
    def resume_task(task_id: str, req: ResumeRequest) -> ApiTask:
        _get_task(task_id)
        try:
            record = engine.resume(task_id, req.answer, actor=req.actor)
        except InvalidTransition as e:
            raise HTTPException(status_code=409, detail=str(e)) from None
        if req.run:
            _run_in_background(task_id)
        return _to_api_task(record)

    @app.post("/api/v1/tasks/{task_id}/cancel", response_model=ApiTask)
    def cancel_task(task_id: str, req: CancelRequest) -> ApiTask:
        _get_task(task_id)
        try:
            record = engine.cancel(task_id, req.reason, actor=req.actor)
        except InvalidTransition as e:
            raise HTTPException(status_code=409, detail=str(e)) from None
        return _to_api_task(record)

    @app.post("/api/v1/tasks/{task_id}/run", response_model=RunAccepted, status_code=202)
    def run_task(task_id: str) -> RunAccepted:
        record = _get_task(task_id)
        _run_in_background(task_id)
        return RunAccepted(task_id=task_id, status=record.status)

    return app
