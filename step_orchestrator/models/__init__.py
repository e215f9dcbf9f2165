"""
Models module - Data structures and enums for the Step Orchestrator
"""

from .enums import (
    TaskStatus,
    TaskType,
    ProjectStatus,
    ReplanType,
    StepResultType,
    StepResponseType,
    LoopPhase,
    TaskEventType,
)
from .task import Task, TaskProps, Project, ProjectMetadata, new_id
from .step_result import StepResult, StepResponse, UNIMPLEMENTED_COMPLETION
from .messages import Message, ChatClient
from .execution import ExecuteParams, ExecutionMode, StepDescriptor, Plan, PlanRequest
from .events import TaskEvent, ProjectEvent, TaskNotification

__all__ = [
    'TaskStatus',
    'TaskType',
    'ProjectStatus',
    'ReplanType',
    'StepResultType',
    'StepResponseType',
    'LoopPhase',
    'TaskEventType',
    'Task',
    'TaskProps',
    'Project',
    'ProjectMetadata',
    'new_id',
    'StepResult',
    'StepResponse',
    'UNIMPLEMENTED_COMPLETION',
    'Message',
    'ChatClient',
    'ExecuteParams',
    'ExecutionMode',
    'StepDescriptor',
    'Plan',
    'PlanRequest',
    'TaskEvent',
    'ProjectEvent',
    'TaskNotification',
]
