"""
Enums module - Task status and other enumeration types
"""

from enum import Enum


class TaskStatus(str, Enum):
    """Enumeration of possible task statuses"""
    PENDING = "pending"
    IN_PROGRESS = "in_progress"
    COMPLETED = "completed"
    CANCELLED = "cancelled"

    @property
    def is_terminal(self) -> bool:
        return self in (TaskStatus.COMPLETED, TaskStatus.CANCELLED)


class TaskType(str, Enum):
    """
    Well known task types.

    The set is open: a task's ``type`` may hold any string, these are the
    values the orchestrator itself routes on.
    """
    STANDARD = "standard"
    STEP = "step"
    RESEARCH = "research"
    RECURRING = "recurring"


class ProjectStatus(str, Enum):
    """Enumeration of project statuses"""
    ACTIVE = "active"
    COMPLETED = "completed"


class ReplanType(str, Enum):
    """Whether the planner should recompute the remaining steps"""
    NONE = "none"
    ALLOW = "allow"
    FORCE = "force"


class StepResultType(str, Enum):
    """Well known StepResult.type tags (open set)"""
    DELEGATION = "Delegation"
    TASK_CREATION = "TaskCreation"
    QUESTION = "Question"
    THINKING = "Thinking"
    VALIDATION = "Validation"
    FINAL_RESPONSE = "FinalResponse"
    ERROR = "Error"


class StepResponseType(str, Enum):
    """Well known StepResponse.type tags used for routing (open set)"""
    MESSAGE = "Message"
    QUESTION = "question"
    PLAN = "plan"
    TASKS = "tasks"
    COMPLETION_MESSAGE = "CompletionMessage"
    ERROR = "Error"


class LoopPhase(str, Enum):
    """Per-project execution loop state"""
    PLANNING = "planning"
    EXECUTING = "executing"
    PAUSED = "paused"
    DELEGATING = "delegating"
    ADVANCING = "advancing"
    DONE = "done"


class TaskEventType(str, Enum):
    """Events published by the task store"""
    TASK_ADDED = "task_added"
    TASK_ASSIGNED = "task_assigned"
    TASK_STARTED = "task_started"
    TASK_COMPLETED = "task_completed"
    TASK_CANCELLED = "task_cancelled"
    TASK_READY = "task_ready"
    PROJECT_COMPLETED = "project_completed"
    PROJECT_UPDATED = "project_updated"
    PROJECT_DELETED = "project_deleted"
