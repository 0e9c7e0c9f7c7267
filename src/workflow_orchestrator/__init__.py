"""Workflow Orchestrator.

Drives tasks through a directed graph of named steps, delegating each step to
a role, routing failures to recovery steps, and suspending for guidance when a
step lacks the information it needs.
"""

__version__ = "0.1.0"

from workflow_orchestrator.orchestrator.config import OrchestratorSettings

__all__ = ["__version__", "OrchestratorSettings"]
