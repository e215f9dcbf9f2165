"""
Notification Propagator - Routes store events to one agent's components

Subscribes to the store's EventBus on behalf of one agent and reacts to
the events that concern it:

- task_cancelled of any task
                   -> cancel every descendant project of the task
- task_completed / task_cancelled of a plain task the agent created
                   -> handle_task_notification on the executor of the root step
- project_completed of a project the agent owns
                   -> the agent's project completion hook
- task_assigned / task_ready of a plain task assigned to the agent
                   -> the agent's task queue callback

Delivery is synchronous on the publishing thread. The store publishes after
releasing its lock, so handlers may write back to the store.
"""

from typing import Optional, Callable, List

from step_orchestrator.core.executor_registry import ExecutorRegistry
from step_orchestrator.core.task_store import TaskStore
from step_orchestrator.models.enums import TaskEventType, TaskType, TaskStatus
from step_orchestrator.models.events import TaskEvent, ProjectEvent, TaskNotification
from step_orchestrator.models.task import Task, Project
from step_orchestrator.utils.logger import get_logger

logger = get_logger(__name__)


class NotificationPropagator:
    """
    Event subscriptions of one agent.

    Args:
        agent_id: The agent the propagator works for
        store: Shared task store (its event_bus is used)
        registry: The agent's executors, for task notifications
        on_project_completed: Called once per completion of a project the agent owns
        on_task_assigned: Called when a plain task becomes workable for the agent
    """

    def __init__(
        self,
        agent_id: str,
        store: TaskStore,
        registry: ExecutorRegistry,
        on_project_completed: Optional[Callable[[Project], None]] = None,
        on_task_assigned: Optional[Callable[[Task], None]] = None,
    ):
        self.agent_id = agent_id
        self.store = store
        self.registry = registry
        self.on_project_completed = on_project_completed
        self.on_task_assigned = on_task_assigned
        self._subscription_ids: List[str] = []

    @property
    def is_subscribed(self) -> bool:
        return bool(self._subscription_ids)

    def start(self) -> None:
        """Subscribe to the store's event bus (idempotent)."""
        if self._subscription_ids:
            return
        bus = self.store.event_bus
        name = f"propagator:{self.agent_id}"

        self._subscription_ids = [
            bus.subscribe(
                TaskEventType.TASK_CANCELLED,
                self._cascade_cancellation,
                subscriber_name=f"{name}:cascade",
                priority=1,
            ),
            bus.subscribe(
                TaskEventType.TASK_COMPLETED,
                self._notify_root_executor,
                subscriber_name=f"{name}:notify",
                filter_func=self._created_by_agent,
            ),
            bus.subscribe(
                TaskEventType.TASK_CANCELLED,
                self._notify_root_executor,
                subscriber_name=f"{name}:notify",
                filter_func=self._created_by_agent,
            ),
            bus.subscribe(
                TaskEventType.PROJECT_COMPLETED,
                self._project_completed,
                subscriber_name=f"{name}:project",
                filter_func=self._owned_by_agent,
            ),
            bus.subscribe(
                TaskEventType.TASK_ASSIGNED,
                self._task_assigned,
                subscriber_name=f"{name}:queue",
                filter_func=self._workable_for_agent,
                priority=8,
            ),
            bus.subscribe(
                TaskEventType.TASK_READY,
                self._task_assigned,
                subscriber_name=f"{name}:queue",
                filter_func=self._workable_for_agent,
                priority=8,
            ),
        ]
        logger.debug(f"[NOTIFY] {self.agent_id} subscribed to {len(self._subscription_ids)} event streams")

    def stop(self) -> None:
        for subscription_id in self._subscription_ids:
            self.store.event_bus.unsubscribe(subscription_id)
        self._subscription_ids = []

    # ------------------------------------------------------------------
    # Filters
    # ------------------------------------------------------------------

    def _created_by_agent(self, event: TaskEvent) -> bool:
        return event.task.creator == self.agent_id and event.task.type != TaskType.STEP.value

    def _owned_by_agent(self, event: ProjectEvent) -> bool:
        return event.project.metadata.owner == self.agent_id

    def _workable_for_agent(self, event: TaskEvent) -> bool:
        task = event.task
        return (
            task.assignee == self.agent_id
            and task.type == TaskType.STANDARD.value
            and task.status == TaskStatus.PENDING
        )

    # ------------------------------------------------------------------
    # Handlers
    # ------------------------------------------------------------------

    def _cascade_cancellation(self, event: TaskEvent) -> None:
        """Cancel all projects below the cancelled task, top down."""
        descendants = self._descendant_projects(event.task.id)
        if not descendants:
            return

        logger.info(
            f"[NOTIFY] Task '{event.task.description}' cancelled; "
            f"cancelling {len(descendants)} descendant projects"
        )
        for project in descendants:
            self.store.cancel_project(project.id)

    def _descendant_projects(self, task_id: str) -> List[Project]:
        found: List[Project] = []
        seen = set()
        frontier = [task_id]
        while frontier:
            current = frontier.pop(0)
            for child in self.store.get_child_projects(current):
                if child.id in seen:
                    continue
                seen.add(child.id)
                found.append(child)
                frontier.extend(t.id for t in self.store.get_project_tasks(child.id))
        return found

    def _notify_root_executor(self, event: TaskEvent) -> None:
        root = self.store.get_root_task(event.task.id)
        if root.id == event.task.id or not root.is_step:
            return

        executor = self.registry.get(root.props.step_type)
        if executor is None:
            logger.debug(
                f"[NOTIFY] No executor for root step type '{root.props.step_type}' "
                f"of task {event.task.id}"
            )
            return

        logger.debug(
            f"[NOTIFY] {event.event_type.value} for '{event.task.description}' "
            f"-> [{root.props.step_type}] {root.description}"
        )
        executor.handle_task_notification(TaskNotification(
            event_type=event.event_type,
            task=event.task,
            project=event.project,
            step_task=root,
        ))

    def _project_completed(self, event: ProjectEvent) -> None:
        if self.on_project_completed is not None:
            self.on_project_completed(event.project)

    def _task_assigned(self, event: TaskEvent) -> None:
        if self.on_task_assigned is not None:
            self.on_task_assigned(event.task)
