"""
Task Store - In-memory repository of tasks and projects

The store is the only shared mutable state of the orchestrator. Every
component reads and writes tasks and projects through it.

Key behaviours:
- Mutations run under a re-entrant lock; lifecycle events are published on
  the store's EventBus after the lock is released, so handlers may call
  back into the store.
- Task status only moves forward (pending -> in_progress -> completed or
  cancelled). Completing or cancelling a terminal task is a logged no-op.
- A task with a child project cannot complete before that project is terminal.
- A project whose tasks are all terminal is marked completed and
  ``project_completed`` is published exactly once per completion.
- Delegated projects reference their parent task by id only; the store keeps
  a ``parent_task_id -> child project ids`` index.

Usage:
    store = TaskStore()
    project = store.create_project("Quarterly report", owner="planner-agent")
    task = store.add_task(project.id, Task(description="Collect numbers"))
    store.assign_task_to_agent(task.id, "worker-agent")
    store.complete_task(task.id)
"""

import threading
from collections import defaultdict
from datetime import datetime
from itertools import count
from typing import Optional, Dict, Any, List, Iterable, Union, TYPE_CHECKING

from step_orchestrator.core.event_bus import EventBus
from step_orchestrator.models.enums import (
    TaskStatus,
    ProjectStatus,
    TaskEventType,
    LoopPhase,
)
from step_orchestrator.models.events import TaskEvent, ProjectEvent
from step_orchestrator.models.step_result import StepResult
from step_orchestrator.models.task import Task, Project, ProjectMetadata
from step_orchestrator.utils.exceptions import (
    InvalidParameterError,
    InvalidTransitionError,
    ProjectNotFoundError,
    StoreInvariantError,
    TaskNotFoundError,
)
from step_orchestrator.utils.logger import get_logger

if TYPE_CHECKING:
    from step_orchestrator.config.orchestrator_config import OrchestratorConfig

logger = get_logger(__name__)

MAX_DELEGATION_DEPTH = 10

Event = Union[TaskEvent, ProjectEvent]

# Fields update_task accepts; status changes go through the transition methods
_UPDATABLE_TASK_FIELDS = ("description", "type", "assignee", "order", "depends_on")


class TaskStore:
    """
    Thread-safe in-memory task and project repository.
    """

    def __init__(self, event_bus: Optional[EventBus] = None):
        self.event_bus = event_bus or EventBus()
        self._lock = threading.RLock()
        self._projects: Dict[str, Project] = {}
        self._task_project: Dict[str, str] = {}
        self._children_by_parent_task: Dict[str, List[str]] = defaultdict(list)
        self._insertion: Dict[str, int] = {}
        self._sequence = count()

    @classmethod
    def from_config(cls, config: "OrchestratorConfig") -> "TaskStore":
        """Store with an event bus sized by ``config.event_history_size``."""
        return cls(EventBus(
            enable_history=config.event_history_size > 0,
            history_max_size=config.event_history_size
        ))

    # ------------------------------------------------------------------
    # Projects
    # ------------------------------------------------------------------

    def add_project(self, project: Project) -> Project:
        """
        Register a project (and any tasks it already carries).

        Raises:
            StoreInvariantError: duplicate id, or ``parent_task_id`` does not
                resolve to a live task
        """
        with self._lock:
            if project.id in self._projects:
                raise StoreInvariantError(
                    f"Project {project.id} already exists",
                    details={"project_id": project.id}
                )

            parent_task_id = project.metadata.parent_task_id
            if parent_task_id is not None:
                parent_task = self._find_task(parent_task_id)
                if parent_task is None or parent_task.status == TaskStatus.CANCELLED:
                    raise StoreInvariantError(
                        f"Project {project.id} references parent task {parent_task_id} "
                        f"which does not resolve to a live task",
                        details={"project_id": project.id, "parent_task_id": parent_task_id}
                    )
                project.metadata.parent_project_id = parent_task.project_id
                self._children_by_parent_task[parent_task_id].append(project.id)

            self._projects[project.id] = project
            next_order = 1
            for task in project.tasks.values():
                self._index_task(project, task)
                if task.order is None:
                    task.order = next_order
                next_order = max(next_order, task.order + 1)

        logger.info(
            f"[STORE] Project added: {project.name} ({project.id})"
            + (f" delegated from task {parent_task_id}" if parent_task_id else "")
        )
        return project

    def create_project(
        self,
        name: str,
        tasks: Optional[Iterable[Task]] = None,
        metadata: Optional[Union[ProjectMetadata, Dict[str, Any]]] = None,
        **metadata_fields: Any
    ) -> Project:
        """
        Create and register a project, then add ``tasks`` one by one so the
        usual ``task_added``/``task_assigned`` events fire.

        Example:
            store.create_project("Research", owner="agent-1", parent_task_id=step.id)
        """
        if metadata is None:
            metadata = ProjectMetadata()
        elif isinstance(metadata, dict):
            metadata = ProjectMetadata().merge(metadata)
        metadata.merge(metadata_fields)

        project = self.add_project(Project(name=name, metadata=metadata))
        for task in tasks or []:
            self.add_task(project.id, task)
        return project

    def get_project(self, project_id: str) -> Optional[Project]:
        with self._lock:
            return self._projects.get(project_id)

    def require_project(self, project_id: str) -> Project:
        project = self.get_project(project_id)
        if project is None:
            raise ProjectNotFoundError(project_id)
        return project

    def list_projects(
        self,
        owner: Optional[str] = None,
        status: Optional[ProjectStatus] = None
    ) -> List[Project]:
        with self._lock:
            projects = list(self._projects.values())
        if owner is not None:
            projects = [p for p in projects if p.metadata.owner == owner]
        if status is not None:
            projects = [p for p in projects if p.metadata.status == status]
        return projects

    def update_project(
        self,
        project_id: str,
        name: Optional[str] = None,
        metadata: Optional[Dict[str, Any]] = None
    ) -> Project:
        """Rename a project and/or merge metadata fields (unknown keys land in ``extra``)."""
        with self._lock:
            project = self.require_project(project_id)
            if metadata and "parent_task_id" in metadata \
                    and metadata["parent_task_id"] != project.metadata.parent_task_id:
                raise StoreInvariantError(
                    f"parent_task_id of project {project_id} cannot be changed",
                    details={"project_id": project_id}
                )
            if metadata and "status" in metadata:
                raise InvalidParameterError(
                    "status", "project status is derived from its tasks"
                )
            if name is not None:
                project.name = name
            if metadata:
                project.metadata.merge(metadata)

        self._publish([ProjectEvent(TaskEventType.PROJECT_UPDATED, project)])
        return project

    def set_loop_state(
        self,
        project_id: str,
        phase: LoopPhase,
        paused_task_id: Optional[str] = None
    ) -> None:
        """Record the execution loop phase of a project (no event)."""
        with self._lock:
            project = self.require_project(project_id)
            project.metadata.loop_state = phase
            project.metadata.paused_task_id = paused_task_id if phase == LoopPhase.PAUSED else None

    def delete_project(self, project_id: str) -> bool:
        """
        Remove a project and its tasks.

        Child projects of its tasks are not removed; they become unreachable
        through ``get_child_projects`` but keep their own parent reference.
        """
        with self._lock:
            project = self._projects.pop(project_id, None)
            if project is None:
                return False
            for task_id in project.tasks:
                self._task_project.pop(task_id, None)
                self._children_by_parent_task.pop(task_id, None)
                self._insertion.pop(task_id, None)
            parent_task_id = project.metadata.parent_task_id
            if parent_task_id and project_id in self._children_by_parent_task.get(parent_task_id, []):
                self._children_by_parent_task[parent_task_id].remove(project_id)

        logger.info(f"[STORE] Project deleted: {project.name} ({project_id})")
        self._publish([ProjectEvent(TaskEventType.PROJECT_DELETED, project)])
        return True

    def cancel_project(self, project_id: str) -> List[Task]:
        """Cancel every non-terminal task of a project; returns the cancelled tasks."""
        events: List[Event] = []
        cancelled: List[Task] = []
        with self._lock:
            project = self.require_project(project_id)
            for task in self._sorted(project.tasks.values()):
                if not task.is_terminal:
                    self._set_status(task, TaskStatus.CANCELLED)
                    cancelled.append(task)
                    events.append(self._task_event(TaskEventType.TASK_CANCELLED, task))
            completion = self._check_project_completion(project)
            if completion:
                events.append(completion)

        if cancelled:
            logger.info(f"[STORE] Project {project_id} cancelled ({len(cancelled)} open tasks)")
        self._publish(events)
        return cancelled

    # ------------------------------------------------------------------
    # Tasks
    # ------------------------------------------------------------------

    def add_task(self, project_id: str, task: Task) -> Task:
        """
        Add a task to a project.

        Tasks without an explicit ``order`` are appended after the current
        highest order. Adding an open task to a completed project reopens it.
        """
        events: List[Event] = []
        with self._lock:
            project = self.require_project(project_id)
            if task.id in self._task_project:
                raise StoreInvariantError(
                    f"Task {task.id} already exists",
                    details={"task_id": task.id}
                )

            task.project_id = project_id
            if task.order is None:
                orders = [t.order for t in project.tasks.values() if t.order is not None]
                task.order = (max(orders) + 1) if orders else 1
            project.tasks[task.id] = task
            self._index_task(project, task)

            if project.is_completed and not task.is_terminal:
                project.metadata.status = ProjectStatus.ACTIVE
                logger.info(f"[STORE] Project {project.name} ({project.id}) reopened by new task")

            events.append(self._task_event(TaskEventType.TASK_ADDED, task))
            if task.assignee:
                events.append(self._task_event(TaskEventType.TASK_ASSIGNED, task))

        logger.debug(f"[STORE] Task added to {project.name}: {task.description} (order {task.order})")
        self._publish(events)
        return task

    def get_task_by_id(self, task_id: str) -> Optional[Task]:
        with self._lock:
            return self._find_task(task_id)

    def require_task(self, task_id: str) -> Task:
        task = self.get_task_by_id(task_id)
        if task is None:
            raise TaskNotFoundError(task_id)
        return task

    def get_project_tasks(self, project_id: str) -> List[Task]:
        """Tasks of a project sorted by ``order`` then insertion."""
        with self._lock:
            project = self.require_project(project_id)
            return self._sorted(project.tasks.values())

    def get_project_by_task_id(self, task_id: str) -> Optional[Project]:
        with self._lock:
            project_id = self._task_project.get(task_id)
            return self._projects.get(project_id) if project_id else None

    def assign_task_to_agent(self, task_id: str, agent_id: str) -> Task:
        with self._lock:
            task = self.require_task(task_id)
            task.assignee = agent_id
            task.updated_at = datetime.now()
            event = self._task_event(TaskEventType.TASK_ASSIGNED, task)

        logger.debug(f"[STORE] Task {task_id} assigned to {agent_id}")
        self._publish([event])
        return task

    def mark_task_in_progress(self, task_id: str, assignee: Optional[str] = None) -> Task:
        """
        Move a pending task to in_progress.

        Raises:
            InvalidTransitionError: the task is already completed or cancelled
        """
        with self._lock:
            task = self.require_task(task_id)
            if task.status == TaskStatus.IN_PROGRESS:
                logger.warning(f"[STORE] Task {task_id} is already in progress")
                return task
            if task.is_terminal:
                raise InvalidTransitionError(task_id, task.status.value, TaskStatus.IN_PROGRESS.value)
            if assignee:
                task.assignee = assignee
            self._set_status(task, TaskStatus.IN_PROGRESS)
            event = self._task_event(TaskEventType.TASK_STARTED, task)

        self._publish([event])
        return task

    def complete_task(self, task_id: str, result: Optional[StepResult] = None) -> Task:
        """
        Complete a task, optionally storing its StepResult.

        Raises:
            InvalidTransitionError: the task's child project is not terminal yet
        """
        events: List[Event] = []
        with self._lock:
            task = self.require_task(task_id)
            if task.is_terminal:
                logger.warning(
                    f"[STORE] Task {task_id} is already {task.status.value}, ignoring completion"
                )
                return task

            child_id = task.props.child_project_id
            if child_id:
                child = self._projects.get(child_id)
                if child is not None and not self._is_terminal_project(child):
                    raise InvalidTransitionError(
                        task_id, task.status.value, TaskStatus.COMPLETED.value,
                        reason=f"child project {child_id} is still active"
                    )

            if result is not None:
                task.props.result = result
            self._set_status(task, TaskStatus.COMPLETED)
            events.append(self._task_event(TaskEventType.TASK_COMPLETED, task))
            events.extend(self._ready_dependents(task))

            completion = self._check_project_completion(self._projects[task.project_id])
            if completion:
                events.append(completion)

        logger.info(f"[STORE] Task completed: {task.description} ({task_id})")
        self._publish(events)
        return task

    def cancel_task(self, task_id: str) -> Task:
        """Cancel a task. Child projects are cancelled by the notification propagator."""
        events: List[Event] = []
        with self._lock:
            task = self.require_task(task_id)
            if task.is_terminal:
                logger.warning(
                    f"[STORE] Task {task_id} is already {task.status.value}, ignoring cancellation"
                )
                return task

            self._set_status(task, TaskStatus.CANCELLED)
            events.append(self._task_event(TaskEventType.TASK_CANCELLED, task))

            completion = self._check_project_completion(self._projects[task.project_id])
            if completion:
                events.append(completion)

        logger.info(f"[STORE] Task cancelled: {task.description} ({task_id})")
        self._publish(events)
        return task

    def update_task(self, task_id: str, props: Optional[Dict[str, Any]] = None, **changes: Any) -> Task:
        """
        Update plain task fields and merge ``props``.

        Status cannot be changed here; use the transition methods.
        """
        if "status" in changes:
            raise InvalidParameterError(
                "status", "use mark_task_in_progress/complete_task/cancel_task"
            )
        unknown = set(changes) - set(_UPDATABLE_TASK_FIELDS)
        if unknown:
            raise InvalidParameterError(
                ", ".join(sorted(unknown)), "not an updatable task field"
            )

        events: List[Event] = []
        with self._lock:
            task = self.require_task(task_id)
            previous_assignee = task.assignee
            for key, value in changes.items():
                setattr(task, key, value)
            if props:
                task.props.merge(props)
            task.updated_at = datetime.now()
            if task.assignee and task.assignee != previous_assignee:
                events.append(self._task_event(TaskEventType.TASK_ASSIGNED, task))

        self._publish(events)
        return task

    def get_next_task(self, project_id: str, task_type: Optional[str] = None) -> Optional[Task]:
        """First non-terminal task of a project in (order, insertion) order."""
        for task in self.get_project_tasks(project_id):
            if task.is_terminal:
                continue
            if task_type is not None and task.type != task_type:
                continue
            return task
        return None

    def get_next_task_for_agent(self, agent_id: str, task_type: Optional[str] = None) -> Optional[Task]:
        """
        Next pending task assigned to an agent across all projects.

        Tasks with a future due date or an unfinished dependency are skipped;
        the rest are sorted by due date (undated last), then order.
        """
        now = datetime.now()
        with self._lock:
            candidates = []
            for project in self._projects.values():
                for task in project.tasks.values():
                    if task.assignee != agent_id or task.status != TaskStatus.PENDING:
                        continue
                    if task_type is not None and task.type != task_type:
                        continue
                    if task.props.due_date and task.props.due_date > now:
                        continue
                    if task.depends_on:
                        dependency = self._find_task(task.depends_on)
                        if dependency is None or dependency.status != TaskStatus.COMPLETED:
                            continue
                    candidates.append(task)

            candidates.sort(key=lambda t: (
                t.props.due_date or datetime.max,
                t.order if t.order is not None else 0,
                self._insertion.get(t.id, 0)
            ))
        return candidates[0] if candidates else None

    # ------------------------------------------------------------------
    # Delegation links
    # ------------------------------------------------------------------

    def get_child_projects(self, task_id: str) -> List[Project]:
        with self._lock:
            return [
                self._projects[pid]
                for pid in self._children_by_parent_task.get(task_id, [])
                if pid in self._projects
            ]

    def get_parent_task(self, project_id: str) -> Optional[Task]:
        with self._lock:
            project = self._projects.get(project_id)
            if project is None or project.metadata.parent_task_id is None:
                return None
            return self._find_task(project.metadata.parent_task_id)

    def get_root_task(self, task_id: str) -> Task:
        """
        Follow parent-task links up to the task that started the chain.

        Raises:
            StoreInvariantError: the chain is deeper than MAX_DELEGATION_DEPTH
        """
        with self._lock:
            task = self.require_task(task_id)
            for _ in range(MAX_DELEGATION_DEPTH):
                project = self._projects.get(task.project_id)
                if project is None or project.metadata.parent_task_id is None:
                    return task
                parent = self._find_task(project.metadata.parent_task_id)
                if parent is None:
                    return task
                task = parent

        raise StoreInvariantError(
            f"Delegation chain above task {task_id} exceeds {MAX_DELEGATION_DEPTH} levels",
            details={"task_id": task_id}
        )

    def is_project_terminal(self, project_id: str) -> bool:
        with self._lock:
            return self._is_terminal_project(self.require_project(project_id))

    # ------------------------------------------------------------------
    # Internals (call with the lock held)
    # ------------------------------------------------------------------

    def _index_task(self, project: Project, task: Task) -> None:
        task.project_id = project.id
        self._task_project[task.id] = project.id
        self._insertion[task.id] = next(self._sequence)

    def _find_task(self, task_id: str) -> Optional[Task]:
        project_id = self._task_project.get(task_id)
        if project_id is None:
            return None
        project = self._projects.get(project_id)
        return project.tasks.get(task_id) if project else None

    def _sorted(self, tasks: Iterable[Task]) -> List[Task]:
        return sorted(
            tasks,
            key=lambda t: (t.order if t.order is not None else 0, self._insertion.get(t.id, 0))
        )

    @staticmethod
    def _is_terminal_project(project: Project) -> bool:
        return project.is_completed or (bool(project.tasks) and project.all_tasks_terminal())

    @staticmethod
    def _set_status(task: Task, status: TaskStatus) -> None:
        task.status = status
        task.updated_at = datetime.now()

    def _task_event(self, event_type: TaskEventType, task: Task) -> TaskEvent:
        project = self._projects[task.project_id]
        parent_task = None
        if project.metadata.parent_task_id:
            parent_task = self._find_task(project.metadata.parent_task_id)
        return TaskEvent(event_type, task, project, parent_task)

    def _ready_dependents(self, task: Task) -> List[TaskEvent]:
        events = []
        for project in self._projects.values():
            for candidate in project.tasks.values():
                if candidate.depends_on == task.id and candidate.status == TaskStatus.PENDING:
                    events.append(self._task_event(TaskEventType.TASK_READY, candidate))
        return events

    def _check_project_completion(self, project: Project) -> Optional[ProjectEvent]:
        # The status flip under the lock makes completion fire once per episode
        if project.is_completed or not project.tasks or not project.all_tasks_terminal():
            return None
        project.metadata.status = ProjectStatus.COMPLETED
        logger.info(f"[STORE] Project completed: {project.name} ({project.id})")
        return ProjectEvent(TaskEventType.PROJECT_COMPLETED, project)

    def _publish(self, events: List[Event]) -> None:
        for event in events:
            self.event_bus.publish(event)
