"""Local-first workflow orchestration components.

Provides:
- Settings loaded from .env
- Structured logging
- The workflow engine (step graph, task records, decision gate)
- A small CLI surface over persisted task state
"""
