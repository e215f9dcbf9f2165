"""
Delegation Coordinator - Parent/child project protocol

A step that hands its work to other agents returns an async StepResult
pointing at a child project whose ``parent_task_id`` is the step task.
The coordinator:

1. verifies that link (a mismatch raises DelegationInvariantViolation),
2. records ``child_project_id`` on the step, which stays in progress,
3. when the child project completes, asks the step's executor for the
   final result via ``on_child_project_complete`` and hands it to the
   execution loop, which completes the step and resumes the parent project.

A child project that never completes leaves its parent step in progress.
The coordinator does not time out on its own; ``find_stale_delegations``
and ``abandon_delegation`` let an external reaper bound that.
"""

import threading
from dataclasses import dataclass, field
from datetime import datetime, timedelta
from typing import Optional, Dict, List, TYPE_CHECKING

from step_orchestrator.core.executor_registry import ExecutorRegistry
from step_orchestrator.core.task_store import TaskStore
from step_orchestrator.models.enums import TaskStatus
from step_orchestrator.models.step_result import StepResult
from step_orchestrator.models.task import Task, Project
from step_orchestrator.utils.exceptions import (
    DelegationInvariantViolation,
    InvariantViolation,
    OrphanedChildProject,
    UnregisteredStepType,
    wrap_exception,
)
from step_orchestrator.utils.logger import get_logger

if TYPE_CHECKING:
    from step_orchestrator.core.execution_loop import ExecutionLoop

logger = get_logger(__name__)


@dataclass
class PendingDelegation:
    """A step waiting on its child project"""
    task_id: str
    project_id: str
    step_type: Optional[str]
    registered_at: datetime = field(default_factory=datetime.now)

    @property
    def age(self) -> timedelta:
        return datetime.now() - self.registered_at


class DelegationCoordinator:
    """
    Tracks the delegations started by one agent's steps.
    """

    def __init__(
        self,
        agent_id: str,
        store: TaskStore,
        registry: ExecutorRegistry,
        loop: "ExecutionLoop",
    ):
        self.agent_id = agent_id
        self.store = store
        self.registry = registry
        self.loop = loop
        self._lock = threading.Lock()
        self._pending: Dict[str, PendingDelegation] = {}
        self._abandoned: set = set()

    def register(self, step_task: Task, result: StepResult) -> Optional[StepResult]:
        """
        Record a delegation returned by ``step_task``'s executor.

        Returns the completion result right away when the child project is
        already terminal (its workers finished synchronously), else None.
        None also means a concurrent child completion already resolved it.

        Raises:
            DelegationInvariantViolation: the child project is missing or is
                not linked back to ``step_task``
        """
        child = self.store.get_project(result.project_id) if result.project_id else None
        if child is None:
            raise DelegationInvariantViolation(
                step_task.id,
                result.project_id,
                message=f"Step {step_task.id} delegated to unknown project {result.project_id}"
            )
        if child.metadata.parent_task_id != step_task.id:
            raise DelegationInvariantViolation(
                step_task.id, child.id, child.metadata.parent_task_id
            )

        self.store.update_task(step_task.id, props={"child_project_id": child.id, "result": result})
        with self._lock:
            self._pending[step_task.id] = PendingDelegation(
                task_id=step_task.id,
                project_id=child.id,
                step_type=step_task.props.step_type,
            )

        logger.info(
            f"[DELEGATION] Step '{step_task.description}' waiting on project "
            f"{child.name} ({child.id}, {len(child.tasks)} tasks)"
        )

        if self.store.is_project_terminal(child.id):
            logger.info(f"[DELEGATION] Project {child.id} already complete, resolving immediately")
            return self._resolve(step_task, child)
        return None

    def is_awaiting(self, task: Task) -> bool:
        with self._lock:
            if task.id in self._pending:
                return True
        return (
            task.status == TaskStatus.IN_PROGRESS
            and task.props.child_project_id is not None
            and task.props.result is not None
            and task.props.result.is_async
        )

    def on_child_project_completed(self, project: Project) -> Optional[StepResult]:
        """
        Resolve the step that delegated to ``project`` and resume its project.

        Returns the result applied to the step, or None when the project is
        not an outstanding delegation of this agent.
        """
        parent_task_id = project.metadata.parent_task_id
        if parent_task_id is None:
            return None

        step_task = self.store.get_task_by_id(parent_task_id)
        if step_task is None:
            logger.warning(
                f"[DELEGATION] Parent task {parent_task_id} of completed project {project.id} is gone"
            )
            return None

        with self._lock:
            if step_task.id in self._abandoned:
                return None

        if step_task.props.child_project_id != project.id:
            # Completed before register(); register() resolves it
            logger.debug(f"[DELEGATION] Project {project.id} is not registered on step {step_task.id} yet")
            return None

        if step_task.is_terminal:
            with self._lock:
                self._pending.pop(step_task.id, None)
            logger.debug(f"[DELEGATION] Step {step_task.id} already {step_task.status.value}")
            return None

        result = self._resolve(step_task, project)
        if result is None:
            return None
        self.loop.complete_step(step_task.id, result)
        return result

    def pending_delegations(self) -> List[PendingDelegation]:
        with self._lock:
            return list(self._pending.values())

    def find_stale_delegations(self, older_than: timedelta) -> List[PendingDelegation]:
        """Delegations registered longer than ``older_than`` ago whose child is still open."""
        stale = []
        for pending in self.pending_delegations():
            if pending.age < older_than:
                continue
            child = self.store.get_project(pending.project_id)
            if child is not None and self.store.is_project_terminal(child.id):
                continue
            stale.append(pending)
        return stale

    def abandon_delegation(self, task_id: str, message: Optional[str] = None) -> StepResult:
        """
        Give up on a delegation: cancel the child project and finish the step
        with an error result.
        """
        with self._lock:
            pending = self._pending.pop(task_id, None)
            self._abandoned.add(task_id)

        step_task = self.store.require_task(task_id)
        project_id = pending.project_id if pending else step_task.props.child_project_id
        waited = pending.age.total_seconds() if pending else None
        error = OrphanedChildProject(task_id, project_id or "unknown", waited)
        logger.warning(f"[DELEGATION] Abandoning delegation: {error.message}")

        if project_id and self.store.get_project(project_id) is not None:
            self.store.cancel_project(project_id)

        result = StepResult.error(
            message or f"Sorry, the delegated work for '{step_task.description}' did not complete.",
            data={"error": error.to_dict()},
        )
        self.loop.complete_step(task_id, result)
        return result

    def _resolve(self, step_task: Task, child: Project) -> Optional[StepResult]:
        # Only the caller that claims the pending entry runs the completion
        with self._lock:
            claimed = self._pending.pop(step_task.id, None)
        if claimed is None:
            logger.debug(f"[DELEGATION] Step {step_task.id} already resolved for project {child.id}")
            return None

        step_type = step_task.props.step_type or ""
        executor = self.registry.get(step_type)
        if executor is None:
            error = UnregisteredStepType(step_type, self.registry.step_types())
            logger.error(f"[DELEGATION] {error.message}")
            return StepResult.error(error.message, data={"error": error.to_dict()})

        try:
            result = executor.on_child_project_complete(step_task, child)
        except InvariantViolation:
            raise
        except Exception as e:
            error = wrap_exception(e, step_type, {"task_id": step_task.id})
            logger.error(f"[DELEGATION] Completion handler for [{step_type}] failed: {error}")
            return StepResult.error(self.loop.config.error_message, data={"error": error.to_dict()})

        if result.is_unimplemented_completion:
            logger.warning(
                f"[DELEGATION] Executor for [{step_type}] does not handle child completion; "
                f"completion of project {child.id} swallowed for step {step_task.id}"
            )

        if result.is_async and result.project_id == child.id:
            logger.warning(
                f"[DELEGATION] Executor for [{step_type}] kept waiting on completed project {child.id}; "
                f"finishing the step"
            )
            result.is_async = False
            result.finished = True

        logger.info(f"[DELEGATION] Project {child.name} complete; resolving step '{step_task.description}'")
        return result
