"""
Execution Loop - Per-project step dispatch

For one project at a time the loop plans steps, picks the next one,
invokes its executor and interprets the StepResult:

- finished                 -> complete the step, advance
- needs_user_input         -> complete the step, pause until resume()
- async with project_id    -> register the delegation, suspend the project
- neither                  -> progress update, the step stays in progress
- executor raised          -> error result (finished + needs_user_input) with an apology

Only one step of a project is ever in flight: the loop never advances past
an in-progress step, and runs requested for a project that is already
running are queued and drained by the active run. Different projects run
independently.

The graph itself is built by WorkflowBuilder (LangGraph); this module holds
the node implementations and the run/resume/complete_step entry points.
"""

import threading
import traceback
from collections import defaultdict, deque
from typing import Optional, Dict, List, Callable, Deque, Tuple, TYPE_CHECKING

from langgraph.errors import GraphRecursionError

from step_orchestrator.config.orchestrator_config import OrchestratorConfig
from step_orchestrator.core.executor_registry import ExecutorRegistry
from step_orchestrator.core.planner import Planner, SingleStepPlanner
from step_orchestrator.core.task_store import TaskStore
from step_orchestrator.core.workflow import LoopState, WorkflowBuilder
from step_orchestrator.models.enums import (
    LoopPhase,
    ReplanType,
    TaskStatus,
    TaskType,
)
from step_orchestrator.models.execution import (
    ExecuteParams,
    ExecutionMode,
    PlanRequest,
)
from step_orchestrator.models.messages import Message, ChatClient
from step_orchestrator.models.step_result import StepResult
from step_orchestrator.models.task import Task, Project
from step_orchestrator.utils.exceptions import (
    ConfigurationError,
    InvariantViolation,
    OrchestratorError,
    UnregisteredStepType,
    wrap_exception,
)
from step_orchestrator.utils.logger import get_logger

if TYPE_CHECKING:
    from step_orchestrator.core.delegation import DelegationCoordinator

logger = get_logger(__name__)


class ExecutionLoop:
    """
    Drives the step sequence of the projects owned by one agent.

    Args:
        agent_id: Agent that owns the projects and creates the step tasks
        store: Shared task store
        registry: Executors by step type
        planner: Step planner (default: one step of ``config.default_step_type``)
        config: Orchestrator settings
        chat_client: Optional chat transport for replies and status updates
    """

    def __init__(
        self,
        agent_id: str,
        store: TaskStore,
        registry: ExecutorRegistry,
        planner: Optional[Planner] = None,
        config: Optional[OrchestratorConfig] = None,
        chat_client: Optional[ChatClient] = None,
    ):
        self.agent_id = agent_id
        self.store = store
        self.registry = registry
        self.config = config or OrchestratorConfig()
        self.planner = planner or SingleStepPlanner(self.config.default_step_type)
        self.chat_client = chat_client
        self.coordinator: Optional["DelegationCoordinator"] = None

        self._guard = threading.Lock()
        self._active: set = set()
        self._queued: Dict[str, Deque[Callable[[], None]]] = defaultdict(deque)
        self._messages: Dict[str, Message] = {}

        self.app = WorkflowBuilder(self).compile()

    def attach_coordinator(self, coordinator: "DelegationCoordinator") -> None:
        self.coordinator = coordinator

    # ------------------------------------------------------------------
    # Entry points
    # ------------------------------------------------------------------

    def run(
        self,
        project_id: str,
        message: Optional[Message] = None,
        thread: Optional[List[Message]] = None,
        execution_mode: str = ExecutionMode.CONVERSATION,
    ) -> Optional[LoopPhase]:
        """
        Run a project until it is done, paused, delegating or blocked.

        A paused project is left alone; use resume(). Returns the project's
        loop phase, or None when the run was queued behind an active one.
        """
        project = self.store.require_project(project_id)
        if message is not None:
            self._messages[project_id] = message

        def action():
            current = self.store.require_project(project_id)
            if current.metadata.loop_state == LoopPhase.PAUSED:
                logger.info(f"[LOOP] Project {current.name} is paused, waiting for resume")
                return
            self._invoke({
                "project_id": project_id,
                "message": self._messages.get(project_id),
                "thread": list(thread or []),
                "execution_mode": execution_mode,
                "resumed": False,
            })

        return self._finish(project, self._schedule(project_id, action))

    def resume(
        self,
        project_id: str,
        message: Optional[Message] = None,
        thread: Optional[List[Message]] = None,
    ) -> Optional[LoopPhase]:
        """
        Continue a paused project with an inbound message.

        The message belongs to the paused conversation: when steps remain they
        continue, otherwise the planner is asked for new steps.
        """
        project = self.store.require_project(project_id)
        if message is not None:
            self._messages[project_id] = message

        def action():
            current = self.store.require_project(project_id)
            paused_task_id = current.metadata.paused_task_id
            if paused_task_id:
                paused_task = self.store.get_task_by_id(paused_task_id)
                if paused_task is not None:
                    self.store.update_task(paused_task_id, props={"awaiting_response": False})
            self.store.set_loop_state(project_id, LoopPhase.EXECUTING)

            steps = self._step_tasks(project_id)
            remaining = [t for t in steps if not t.is_terminal]
            if remaining:
                plan_reason = None
            elif steps:
                plan_reason = "resume"
            else:
                # The first plan never produced steps
                plan_reason = "initial"
            logger.info(
                f"[LOOP] Resuming {current.name} with {len(remaining)} remaining steps"
            )
            self._invoke({
                "project_id": project_id,
                "message": self._messages.get(project_id),
                "thread": list(thread or []),
                "execution_mode": ExecutionMode.CONVERSATION,
                "resumed": True,
                "plan_reason": plan_reason,
            })

        return self._finish(project, self._schedule(project_id, action))

    def complete_step(self, task_id: str, result: StepResult) -> Optional[LoopPhase]:
        """
        Apply a result for a step that is waiting in progress (delegation
        completion or an async executor finishing), then keep the project going.
        """
        project = self.store.get_project_by_task_id(task_id)
        if project is None:
            self.store.require_task(task_id)
            return None

        def action():
            task = self.store.require_task(task_id)
            if task.is_terminal:
                logger.info(f"[LOOP] Step {task_id} already {task.status.value}, ignoring late result")
                return
            advance, reason = self._handle_result(project, task, result)
            logger.debug(f"[LOOP] Late result for step {task_id}: {reason}")
            if advance:
                self._invoke({
                    "project_id": project.id,
                    "message": self._messages.get(project.id),
                    "thread": [],
                    "execution_mode": ExecutionMode.CONVERSATION,
                    "resumed": False,
                })

        return self._finish(project, self._schedule(project.id, action))

    def get_phase(self, project_id: str) -> Optional[LoopPhase]:
        return self.store.require_project(project_id).metadata.loop_state

    def is_running(self, project_id: str) -> bool:
        with self._guard:
            return project_id in self._active

    # ------------------------------------------------------------------
    # Run serialization
    # ------------------------------------------------------------------

    def _schedule(self, project_id: str, action: Callable[[], None]) -> bool:
        """Run ``action`` now, or queue it if the project is already running."""
        with self._guard:
            if project_id in self._active:
                self._queued[project_id].append(action)
                logger.debug(f"[LOOP] Project {project_id} is running, request queued")
                return False
            self._active.add(project_id)

        try:
            action()
            while True:
                with self._guard:
                    queue = self._queued.get(project_id)
                    if not queue:
                        self._queued.pop(project_id, None)
                        self._active.discard(project_id)
                        return True
                    next_action = queue.popleft()
                next_action()
        except BaseException:
            with self._guard:
                dropped = len(self._queued.pop(project_id, ()))
                self._active.discard(project_id)
            if dropped:
                logger.warning(f"[LOOP] Dropped {dropped} queued runs for project {project_id}")
            raise

    def _finish(self, project: Project, ran: bool) -> Optional[LoopPhase]:
        return project.metadata.loop_state if ran else None

    def _invoke(self, state: LoopState) -> LoopState:
        state.setdefault("steps_executed", 0)
        try:
            return self.app.invoke(state, config={"recursion_limit": self.config.recursion_limit})
        except GraphRecursionError:
            logger.error(
                f"[LOOP] Run of project {state['project_id']} hit the recursion limit "
                f"({self.config.recursion_limit}); stopping"
            )
            return state

    # ------------------------------------------------------------------
    # Graph nodes
    # ------------------------------------------------------------------

    def _plan_node(self, state: LoopState) -> LoopState:
        project = self.store.require_project(state["project_id"])
        reason = state.get("plan_reason")
        if reason is None and not self._step_tasks(project.id):
            reason = "initial"
        if reason is None:
            return {"plan_reason": None}

        planned = self._plan(project, reason, current_task=None, message=state.get("message"))
        if not planned and not self._step_tasks(project.id):
            self._reply(project, None, self.config.error_message)
            self.store.set_loop_state(project.id, LoopPhase.PAUSED)
            return {"plan_reason": None, "stopped": True, "stop_reason": "planning_failed"}
        return {"plan_reason": None}

    def _select_step_node(self, state: LoopState) -> LoopState:
        project_id = state["project_id"]
        project = self.store.require_project(project_id)

        if state.get("steps_executed", 0) >= self.config.max_steps_per_run:
            logger.warning(
                f"[LOOP] Project {project.name} reached max_steps_per_run "
                f"({self.config.max_steps_per_run}); stopping run"
            )
            return {"current_task_id": None, "stopped": True, "stop_reason": "step_limit"}

        parent_task = self.store.get_parent_task(project_id)
        if parent_task is not None and parent_task.status == TaskStatus.CANCELLED:
            logger.info(f"[LOOP] Parent task of {project.name} was cancelled; not advancing")
            self.store.set_loop_state(project_id, LoopPhase.DONE)
            return {"current_task_id": None, "stopped": True, "stop_reason": "cancelled"}

        task = self.store.get_next_task(project_id, TaskType.STEP.value)
        if task is None:
            logger.info(f"[LOOP] No remaining steps for {project.name}")
            self.store.set_loop_state(project_id, LoopPhase.DONE)
            return {"current_task_id": None, "stopped": True, "stop_reason": "done"}

        if task.status == TaskStatus.IN_PROGRESS:
            if self._is_awaiting(task):
                self.store.set_loop_state(project_id, LoopPhase.DELEGATING)
                return {"current_task_id": None, "stopped": True, "stop_reason": "delegating"}
            if not state.get("resumed"):
                logger.info(f"[LOOP] Step '{task.description}' is still in progress")
                return {"current_task_id": None, "stopped": True, "stop_reason": "in_progress"}

        return {"current_task_id": task.id, "stopped": False, "stop_reason": None}

    def _execute_step_node(self, state: LoopState) -> LoopState:
        project = self.store.require_project(state["project_id"])
        task = self.store.require_task(state["current_task_id"])

        self.store.set_loop_state(project.id, LoopPhase.EXECUTING)
        if task.status == TaskStatus.PENDING:
            self.store.mark_task_in_progress(task.id, assignee=self.agent_id)

        logger.info(f"[LOOP] Executing step [{task.props.step_type}] {task.description}")
        result = self._run_executor(project, task, state)

        return {
            "result": result,
            "resumed": False,
            "steps_executed": state.get("steps_executed", 0) + 1,
        }

    def _apply_result_node(self, state: LoopState) -> LoopState:
        project = self.store.require_project(state["project_id"])
        task = self.store.require_task(state["current_task_id"])

        advance, reason = self._handle_result(project, task, state["result"], state.get("message"))
        return {
            "current_task_id": None,
            "result": None,
            "stopped": not advance,
            "stop_reason": None if advance else reason,
        }

    # ------------------------------------------------------------------
    # Step execution
    # ------------------------------------------------------------------

    def _run_executor(self, project: Project, task: Task, state: LoopState) -> StepResult:
        step_type = task.props.step_type or ""
        executor = self.registry.get(step_type)
        if executor is None:
            error = UnregisteredStepType(step_type, self.registry.step_types())
            logger.error(f"[LOOP] {error.message}")
            return StepResult.error(
                error.message,
                replan=ReplanType.FORCE,
                data={"error": error.to_dict()},
            )

        params = self._build_params(project, task, state)
        try:
            result = executor.execute(params)
        except InvariantViolation:
            raise
        except Exception as e:
            error = wrap_exception(e, step_type, {"task_id": task.id})
            logger.error(f"[LOOP] Error executing step [{step_type}] {task.description}: {error}")
            logger.debug(traceback.format_exc())
            return StepResult.error(self.config.error_message, data={"error": error.to_dict()})

        if isinstance(result, dict):
            result = StepResult.from_dict(result)
        if not isinstance(result, StepResult):
            logger.error(f"[LOOP] Executor for [{step_type}] returned {type(result).__name__}")
            return StepResult.error(self.config.error_message)
        return result

    def _build_params(self, project: Project, task: Task, state: LoopState) -> ExecuteParams:
        message = state.get("message")
        previous_steps = [
            t for t in self._step_tasks(project.id)
            if t.id != task.id and t.status in (TaskStatus.COMPLETED, TaskStatus.IN_PROGRESS)
        ]
        previous_responses = [t.props.result.response for t in previous_steps if t.props.result]

        artifact_ids: List[str] = []
        for source in [task.props.attached_artifact_ids] + [
            t.props.result.artifact_ids for t in previous_steps if t.props.result
        ]:
            for artifact_id in source:
                if artifact_id not in artifact_ids:
                    artifact_ids.append(artifact_id)

        overall_goal = project.metadata.description or project.name
        goal = f"[Step: {task.description}] [Project: {project.name}]"
        if message is not None:
            goal += f" Solve the user's request: {message.text}"

        return ExecuteParams(
            agent_id=self.agent_id,
            goal=goal,
            step_goal=task.description,
            overall_goal=overall_goal,
            step=task,
            project=project,
            message=message,
            previous_responses=previous_responses,
            previous_steps=previous_steps,
            context_artifact_ids=artifact_ids,
            thread=list(state.get("thread") or []),
            execution_mode=state.get("execution_mode", ExecutionMode.CONVERSATION),
            partial_response=lambda text: self._post_partial(project, task, text),
        )

    # ------------------------------------------------------------------
    # Result interpretation
    # ------------------------------------------------------------------

    def _handle_result(
        self,
        project: Project,
        task: Task,
        result: StepResult,
        message: Optional[Message] = None,
    ) -> Tuple[bool, str]:
        """Apply a StepResult to its step. Returns (advance, reason)."""
        if self._is_cancelled(task):
            logger.info(f"[LOOP] Dropping result for cancelled step '{task.description}'")
            return False, "cancelled"

        self._post_response(project, task, result)

        if result.is_async:
            if result.project_id:
                immediate = self._coordinator().register(task, result)
                if immediate is not None:
                    return self._handle_result(project, task, immediate, message)
            else:
                self.store.update_task(task.id, props={"result": result})
            logger.info(f"[LOOP] Step '{task.description}' is waiting on background work")
            self.store.set_loop_state(project.id, LoopPhase.DELEGATING)
            return False, "delegating"

        if result.finished or result.needs_user_input:
            if self._should_replan(project, task, result):
                self._plan(project, "replan", current_task=task, message=message or self._messages.get(project.id))

            self.store.update_task(task.id, props={"awaiting_response": result.needs_user_input})
            self.store.complete_task(task.id, result)

            if result.needs_user_input:
                logger.info(f"[LOOP] Step '{task.description}' needs user input; pausing {project.name}")
                self.store.set_loop_state(project.id, LoopPhase.PAUSED, paused_task_id=task.id)
                return False, "paused"

            self.store.set_loop_state(project.id, LoopPhase.ADVANCING)
            return True, "advance"

        self.store.update_task(task.id, props={"result": result})
        logger.info(
            f"[LOOP] Step '{task.description}' reported progress: "
            f"{result.response.status or result.response.message or 'no details'}"
        )
        self.store.set_loop_state(project.id, LoopPhase.EXECUTING)
        return False, "in_progress"

    def _should_replan(self, project: Project, task: Task, result: StepResult) -> bool:
        if not (self.config.allow_replan and self.planner.allow_replan):
            return False
        if result.replan == ReplanType.FORCE:
            return True
        if result.replan == ReplanType.ALLOW:
            return not [
                t for t in self._step_tasks(project.id)
                if t.id != task.id and not t.is_terminal
            ]
        return False

    # ------------------------------------------------------------------
    # Planning
    # ------------------------------------------------------------------

    def _plan(
        self,
        project: Project,
        reason: str,
        current_task: Optional[Task],
        message: Optional[Message],
    ) -> bool:
        """Ask the planner for steps and materialize them. Returns False on planner failure."""
        self.store.set_loop_state(project.id, LoopPhase.PLANNING)

        steps = self._step_tasks(project.id)
        remaining = [
            t for t in steps
            if not t.is_terminal and (current_task is None or t.id != current_task.id)
        ]
        request = PlanRequest(
            project=project,
            goal=project.metadata.description or project.name,
            reason=reason,
            message=message,
            completed_steps=[t for t in steps if t.status == TaskStatus.COMPLETED],
            current_step=current_task,
            remaining_steps=remaining,
            available_step_types=self.registry.capabilities(),
        )

        try:
            plan = self.planner.plan_steps(request)
        except InvariantViolation:
            raise
        except Exception as e:
            error = e if isinstance(e, OrchestratorError) else wrap_exception(e, "planning")
            logger.error(f"[PLANNER] Planning ({reason}) failed for {project.name}: {error}")
            logger.debug(traceback.format_exc())
            return False

        if current_task is not None:
            base_order = current_task.order or 0
        else:
            terminal_orders = [t.order or 0 for t in steps if t.is_terminal]
            base_order = max(terminal_orders) if terminal_orders else 0

        if plan.reorders_tail:
            self._apply_tail(project, plan, remaining, base_order, message)
        else:
            self._insert_steps(project, plan, remaining, base_order, message)

        logger.info(
            f"[PLANNER] {project.name}: {len(plan.steps)} steps planned ({reason})"
            + (f" - {plan.reasoning}" if plan.reasoning else "")
        )
        return True

    def _insert_steps(self, project, plan, remaining: List[Task], base_order: int, message) -> None:
        count = len(plan.steps)
        if not count:
            return
        # Make room right after the current position
        for task in remaining:
            if (task.order or 0) > base_order:
                self.store.update_task(task.id, order=(task.order or 0) + count)
        for offset, descriptor in enumerate(plan.steps, start=1):
            self._add_step(project, descriptor, base_order + offset, message)

    def _apply_tail(self, project, plan, remaining: List[Task], base_order: int, message) -> None:
        kept = set()
        order = base_order
        for descriptor in plan.steps:
            order += 1
            if descriptor.existing_id:
                kept.add(descriptor.existing_id)
                self.store.update_task(descriptor.existing_id, order=order)
            else:
                self._add_step(project, descriptor, order, message)

        for task in remaining:
            if task.id not in kept and task.status == TaskStatus.PENDING:
                logger.info(f"[PLANNER] Dropping step '{task.description}' from the plan")
                self.store.cancel_task(task.id)

    def _add_step(self, project: Project, descriptor, order: int, message: Optional[Message]) -> Task:
        return self.store.add_task(project.id, Task(
            description=descriptor.description,
            type=TaskType.STEP.value,
            creator=self.agent_id,
            assignee=self.agent_id,
            order=order,
            props={
                "step_type": descriptor.step_type,
                "user_post_id": message.id if message is not None else None,
            },
        ))

    # ------------------------------------------------------------------
    # Chat side effects
    # ------------------------------------------------------------------

    def _post_response(self, project: Project, task: Task, result: StepResult) -> None:
        if result.response.status:
            self._post_partial(project, task, result.response.status)
        if not result.response.message:
            return
        if task.props.partial_post_id:
            # The final message replaces the partial post
            reply = self._finalize_partial(project, task, result.response.message, result.artifact_ids)
        else:
            reply = self._reply(project, task, result.response.message, result.artifact_ids)
        if reply is not None:
            self.store.update_task(task.id, props={"response_post_id": reply.id})

    def _reply(
        self,
        project: Project,
        task: Optional[Task],
        text: str,
        artifact_ids: Optional[List[str]] = None,
    ) -> Optional[Message]:
        message = self._messages.get(project.id)
        if self.chat_client is None or message is None:
            return None
        props = {"project_id": project.id, "artifact_ids": list(artifact_ids or [])}
        if task is not None:
            props["task_id"] = task.id
        try:
            return self.chat_client.reply(message, text, props)
        except Exception as e:
            logger.error(f"[LOOP] Failed to post reply for {project.name}: {e}")
            return None

    def _finalize_partial(
        self,
        project: Project,
        task: Task,
        text: str,
        artifact_ids: Optional[List[str]] = None,
    ) -> Optional[Message]:
        if self.chat_client is None or self._messages.get(project.id) is None:
            return None
        props = {
            "project_id": project.id,
            "artifact_ids": list(artifact_ids or []),
            "task_id": task.id,
            "partial": False,
        }
        try:
            post = self.chat_client.update_post(task.props.partial_post_id, text, props)
        except Exception as e:
            logger.error(f"[LOOP] Failed to finalize status post for {project.name}: {e}")
            return None
        self.store.update_task(task.id, props={"partial_post_id": None})
        return post

    def _post_partial(self, project: Project, task: Task, text: str) -> None:
        if self.chat_client is None:
            return
        try:
            if task.props.partial_post_id:
                self.chat_client.update_post(task.props.partial_post_id, text, {"partial": True})
                return
            post = self._reply(project, task, text)
            if post is not None:
                self.store.update_task(task.id, props={"partial_post_id": post.id})
        except Exception as e:
            logger.error(f"[LOOP] Failed to post status update for {project.name}: {e}")

    # ------------------------------------------------------------------
    # Helpers
    # ------------------------------------------------------------------

    def _step_tasks(self, project_id: str) -> List[Task]:
        return [t for t in self.store.get_project_tasks(project_id) if t.type == TaskType.STEP.value]

    def _is_cancelled(self, task: Task) -> bool:
        if task.status == TaskStatus.CANCELLED:
            return True
        parent_task = self.store.get_parent_task(task.project_id)
        return parent_task is not None and parent_task.status == TaskStatus.CANCELLED

    def _is_awaiting(self, task: Task) -> bool:
        if self.coordinator is not None and self.coordinator.is_awaiting(task):
            return True
        return bool(task.props.result and task.props.result.is_async)

    def _coordinator(self) -> "DelegationCoordinator":
        if self.coordinator is None:
            raise ConfigurationError(
                "coordinator", "ExecutionLoop needs a DelegationCoordinator to handle async results"
            )
        return self.coordinator
