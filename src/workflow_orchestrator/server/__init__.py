"""FastAPI server adapter for workflow-orchestrator.

This module exposes a REST API over a running workflow engine.

Design intent:
- Keep workflow logic in `workflow_orchestrator.orchestrator.workflow`
- Keep server-specific concerns (routing, status codes, background runs) here
"""

from __future__ import annotations

__all__ = ["create_app"]

from workflow_orchestrator.server.app import create_app
