"""
Core module - Store, execution loop, delegation and notifications
"""

from .event_bus import EventBus
from .task_store import TaskStore
from .executor_registry import ExecutorRegistry, BaseStepExecutor, step_executor, normalize_step_type
from .planner import Planner, SingleStepPlanner, StaticPlanner, ChatModelPlanner
from .workflow import WorkflowBuilder, LoopState
from .execution_loop import ExecutionLoop
from .delegation import DelegationCoordinator, PendingDelegation
from .notifications import NotificationPropagator
from .agent import StepBasedAgent

__all__ = [
    'EventBus',
    'TaskStore',
    'ExecutorRegistry',
    'BaseStepExecutor',
    'step_executor',
    'normalize_step_type',
    'Planner',
    'SingleStepPlanner',
    'StaticPlanner',
    'ChatModelPlanner',
    'WorkflowBuilder',
    'LoopState',
    'ExecutionLoop',
    'DelegationCoordinator',
    'PendingDelegation',
    'NotificationPropagator',
    'StepBasedAgent',
]
