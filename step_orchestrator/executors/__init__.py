"""
Executors shipped with the orchestrator.

Only the generic delegation executor lives here; business executors are
supplied by the host application.
"""

from .delegation_executor import DelegationExecutor, DelegatedTask, AssignmentStrategy

__all__ = [
    "DelegationExecutor",
    "DelegatedTask",
    "AssignmentStrategy",
]
