"""
Task module - Task and Project structure definitions

Tasks and projects are plain dataclasses owned by the TaskStore. Typed
fields cover everything the orchestrator reads; executor specific values
go into the ``extra`` maps.
"""

from dataclasses import dataclass, field, fields
from datetime import datetime
from typing import Optional, Dict, Any, List, TYPE_CHECKING
import uuid

from .enums import TaskStatus, TaskType, ProjectStatus, LoopPhase

if TYPE_CHECKING:
    from .step_result import StepResult


def new_id() -> str:
    return str(uuid.uuid4())


@dataclass
class TaskProps:
    """Type specific payload of a task"""
    step_type: Optional[str] = None
    result: Optional["StepResult"] = None
    child_project_id: Optional[str] = None
    user_post_id: Optional[str] = None
    response_post_id: Optional[str] = None
    partial_post_id: Optional[str] = None
    awaiting_response: bool = False
    attached_artifact_ids: List[str] = field(default_factory=list)
    due_date: Optional[datetime] = None
    extra: Dict[str, Any] = field(default_factory=dict)

    def merge(self, values: Dict[str, Any]) -> "TaskProps":
        """Apply known fields directly and keep unknown keys in ``extra``."""
        known = {f.name for f in fields(self)}
        for key, value in values.items():
            if key == "extra":
                self.extra.update(value or {})
            elif key in known:
                setattr(self, key, value)
            else:
                self.extra[key] = value
        return self


@dataclass
class Task:
    """Individual unit of work inside a project"""
    description: str
    project_id: str = ""
    type: str = TaskType.STANDARD.value
    status: TaskStatus = TaskStatus.PENDING
    assignee: Optional[str] = None
    creator: str = "system"
    order: Optional[int] = None
    depends_on: Optional[str] = None
    props: TaskProps = field(default_factory=TaskProps)
    id: str = field(default_factory=new_id)
    created_at: datetime = field(default_factory=datetime.now)
    updated_at: datetime = field(default_factory=datetime.now)

    def __post_init__(self):
        if isinstance(self.props, dict):
            self.props = TaskProps().merge(self.props)
        if isinstance(self.type, TaskType):
            self.type = self.type.value
        self.status = TaskStatus(self.status)

    @property
    def is_step(self) -> bool:
        return self.type == TaskType.STEP.value

    @property
    def is_terminal(self) -> bool:
        return self.status.is_terminal

    def to_dict(self) -> Dict[str, Any]:
        return {
            "id": self.id,
            "project_id": self.project_id,
            "description": self.description,
            "type": self.type,
            "status": self.status.value,
            "assignee": self.assignee,
            "creator": self.creator,
            "order": self.order,
            "depends_on": self.depends_on,
            "step_type": self.props.step_type,
            "child_project_id": self.props.child_project_id,
            "result": self.props.result.to_dict() if self.props.result else None,
        }


@dataclass
class ProjectMetadata:
    """Project level metadata; ``parent_task_id`` is the delegation back-reference"""
    owner: Optional[str] = None
    status: ProjectStatus = ProjectStatus.ACTIVE
    parent_task_id: Optional[str] = None
    parent_project_id: Optional[str] = None
    original_post_id: Optional[str] = None
    description: Optional[str] = None
    tags: List[str] = field(default_factory=list)
    loop_state: Optional[LoopPhase] = None
    paused_task_id: Optional[str] = None
    extra: Dict[str, Any] = field(default_factory=dict)

    def merge(self, values: Dict[str, Any]) -> "ProjectMetadata":
        """Apply known fields directly and keep unknown keys in ``extra``."""
        known = {f.name for f in fields(self)}
        for key, value in values.items():
            if key == "extra":
                self.extra.update(value or {})
            elif key in known:
                setattr(self, key, value)
            else:
                self.extra[key] = value
        return self


@dataclass
class Project:
    """Named container of tasks"""
    name: str
    id: str = field(default_factory=new_id)
    tasks: Dict[str, Task] = field(default_factory=dict)
    metadata: ProjectMetadata = field(default_factory=ProjectMetadata)
    created_at: datetime = field(default_factory=datetime.now)

    def __post_init__(self):
        if isinstance(self.metadata, dict):
            self.metadata = ProjectMetadata().merge(self.metadata)

    @property
    def is_root(self) -> bool:
        return self.metadata.parent_task_id is None

    @property
    def is_completed(self) -> bool:
        return self.metadata.status == ProjectStatus.COMPLETED

    def all_tasks_terminal(self) -> bool:
        return all(task.is_terminal for task in self.tasks.values())

    def to_dict(self) -> Dict[str, Any]:
        return {
            "id": self.id,
            "name": self.name,
            "status": self.metadata.status.value,
            "owner": self.metadata.owner,
            "parent_task_id": self.metadata.parent_task_id,
            "loop_state": self.metadata.loop_state.value if self.metadata.loop_state else None,
            "tasks": [task.to_dict() for task in self.tasks.values()],
        }
