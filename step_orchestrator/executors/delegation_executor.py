"""
Delegation Executor - Hands a step's work to other agents

The executor asks an assignment strategy how to split the step into plain
tasks, creates a child project linked to the step, adds the tasks and only
then assigns them. Assigning last keeps a worker that finishes
synchronously from completing the child project before all of its tasks
exist.

Operations:
- execute: create the child project and return an async Delegation result
- on_child_project_complete: summarize the child's task results
- handle_task_notification: record progress of the delegated tasks

Example:
    def split(params):
        return [DelegatedTask("Collect numbers", assignee="analyst")]

    executor = DelegationExecutor(store, split)
"""

from dataclasses import dataclass, field
from typing import Optional, List, Dict, Any, Callable

from step_orchestrator.core.executor_registry import BaseStepExecutor, step_executor
from step_orchestrator.core.task_store import TaskStore
from step_orchestrator.models.enums import (
    StepResponseType,
    StepResultType,
    TaskStatus,
    TaskType,
)
from step_orchestrator.models.events import TaskNotification
from step_orchestrator.models.execution import ExecuteParams
from step_orchestrator.models.step_result import StepResult, StepResponse
from step_orchestrator.models.task import Task, Project
from step_orchestrator.utils.exceptions import InvalidParameterError
from step_orchestrator.utils.logger import get_logger

logger = get_logger(__name__)


@dataclass
class DelegatedTask:
    """
    One task of a delegation.

    ``depends_on`` is the index of an earlier task in the same delegation.
    """
    description: str
    assignee: Optional[str] = None
    type: str = TaskType.STANDARD.value
    depends_on: Optional[int] = None
    props: Dict[str, Any] = field(default_factory=dict)


AssignmentStrategy = Callable[[ExecuteParams], List[DelegatedTask]]


@step_executor("delegate", "Split the step into tasks for other agents and wait until they are done")
class DelegationExecutor(BaseStepExecutor):
    """
    Generic delegating executor.

    Args:
        store: Shared task store the child project is created in
        assign: Strategy returning the tasks to delegate for a step
    """

    def __init__(self, store: TaskStore, assign: AssignmentStrategy):
        self.store = store
        self.assign = assign
        self.notifications: List[TaskNotification] = []

    def execute(self, params: ExecuteParams) -> StepResult:
        delegated = list(self.assign(params) or [])
        if not delegated:
            logger.info(f"[DELEGATION] Nothing to delegate for '{params.step_goal}'")
            return StepResult(
                type=StepResultType.FINAL_RESPONSE.value,
                finished=True,
                response=StepResponse(
                    type=StepResponseType.MESSAGE.value,
                    status="Nothing to delegate",
                ),
            )

        for index, item in enumerate(delegated):
            if item.depends_on is not None and not 0 <= item.depends_on < index:
                raise InvalidParameterError(
                    "depends_on",
                    f"task {index} can only depend on an earlier task",
                    expected_type=f"int in [0, {index})",
                    actual_value=item.depends_on
                )

        child = self.store.create_project(
            f"Delegated: {params.step_goal[:80]}",
            owner=params.agent_id,
            parent_task_id=params.step.id,
            description=params.step_goal,
        )

        tasks: List[Task] = []
        for item in delegated:
            depends_on = tasks[item.depends_on].id if item.depends_on is not None else None
            tasks.append(self.store.add_task(child.id, Task(
                description=item.description,
                type=item.type,
                creator=params.agent_id,
                depends_on=depends_on,
                props=dict(item.props),
            )))

        for task, item in zip(tasks, delegated):
            if item.assignee:
                self.store.assign_task_to_agent(task.id, item.assignee)

        assignees = sorted({s.assignee for s in delegated if s.assignee})
        logger.info(
            f"[DELEGATION] '{params.step_goal}' split into {len(tasks)} tasks "
            f"for {assignees or 'unassigned'} (project {child.id})"
        )

        return StepResult(
            type=StepResultType.DELEGATION.value,
            is_async=True,
            project_id=child.id,
            response=StepResponse(
                type=StepResponseType.TASKS.value,
                status=f"Delegated {len(tasks)} tasks",
                data={"task_ids": [t.id for t in tasks], "assignees": assignees},
            ),
        )

    def on_child_project_complete(self, step_task: Task, child_project: Project) -> StepResult:
        tasks = self.store.get_project_tasks(child_project.id)
        completed = [t for t in tasks if t.status == TaskStatus.COMPLETED]
        cancelled = [t for t in tasks if t.status == TaskStatus.CANCELLED]

        messages = []
        artifact_ids: List[str] = []
        for task in completed:
            result = task.props.result
            if result is None:
                continue
            if result.response.message:
                messages.append(result.response.message)
            artifact_ids.extend(a for a in result.artifact_ids if a not in artifact_ids)

        status = f"{len(completed)} of {len(tasks)} delegated tasks completed"
        if cancelled:
            status += f", {len(cancelled)} cancelled"

        return StepResult(
            type=StepResultType.DELEGATION.value,
            finished=True,
            artifact_ids=artifact_ids,
            response=StepResponse(
                type=StepResponseType.COMPLETION_MESSAGE.value,
                message="\n\n".join(messages) or None,
                status=status,
                data={
                    "completed_task_ids": [t.id for t in completed],
                    "cancelled_task_ids": [t.id for t in cancelled],
                },
            ),
        )

    def handle_task_notification(self, notification: TaskNotification) -> None:
        self.notifications.append(notification)
        logger.debug(
            f"[DELEGATION] '{notification.task.description}' {notification.task.status.value} "
            f"under step '{notification.step_task.description}'"
        )
