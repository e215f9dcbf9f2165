"""
Events module - Store lifecycle events and executor notifications
"""

from dataclasses import dataclass, field
from datetime import datetime
from typing import Optional, Dict, Any

from .enums import TaskEventType
from .task import Task, Project, new_id


@dataclass
class TaskEvent:
    """
    A task lifecycle event.

    ``parent_task`` is set when the task's project is itself a delegation,
    i.e. it resolves ``project.metadata.parent_task_id``.
    """
    event_type: TaskEventType
    task: Task
    project: Project
    parent_task: Optional[Task] = None
    source: str = "task_store"
    event_id: str = field(default_factory=new_id)
    timestamp: datetime = field(default_factory=datetime.now)

    def describe(self) -> Dict[str, Any]:
        return {
            "task_id": self.task.id,
            "project_id": self.project.id,
            "status": self.task.status.value,
            "parent_task_id": self.parent_task.id if self.parent_task else None,
        }


@dataclass
class ProjectEvent:
    """A project lifecycle event"""
    event_type: TaskEventType
    project: Project
    source: str = "task_store"
    event_id: str = field(default_factory=new_id)
    timestamp: datetime = field(default_factory=datetime.now)

    def describe(self) -> Dict[str, Any]:
        return {
            "project_id": self.project.id,
            "status": self.project.metadata.status.value,
            "parent_task_id": self.project.metadata.parent_task_id,
        }


@dataclass
class TaskNotification:
    """
    Delivered to the executor owning a root step when a plain worker task
    it created finishes.
    """
    event_type: TaskEventType
    task: Task
    project: Project
    step_task: Task
