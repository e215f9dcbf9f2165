"""
Agent module - StepBasedAgent wiring the orchestration components

One StepBasedAgent owns:
- an ExecutorRegistry with its step executors
- an ExecutionLoop driving its projects (LangGraph workflow)
- a DelegationCoordinator for steps that hand work to other agents
- a NotificationPropagator subscribed to the shared store's event bus

Agents share nothing but the TaskStore. Work is handed between them by
creating child projects and assigning tasks.
"""

import threading
from typing import Optional, List, Dict, Any, Iterable, Callable

from step_orchestrator.config.orchestrator_config import OrchestratorConfig
from step_orchestrator.core.delegation import DelegationCoordinator
from step_orchestrator.core.execution_loop import ExecutionLoop
from step_orchestrator.core.executor_registry import ExecutorRegistry, BaseStepExecutor
from step_orchestrator.core.notifications import NotificationPropagator
from step_orchestrator.core.planner import Planner
from step_orchestrator.core.task_store import TaskStore
from step_orchestrator.models.enums import (
    LoopPhase,
    StepResponseType,
    StepResultType,
    TaskStatus,
    TaskType,
)
from step_orchestrator.models.execution import ExecutionMode
from step_orchestrator.models.messages import Message, ChatClient
from step_orchestrator.models.step_result import StepResult, StepResponse
from step_orchestrator.models.task import Task, Project
from step_orchestrator.utils.logger import get_logger

logger = get_logger(__name__)


class StepBasedAgent:
    """
    An agent that accomplishes goals as ordered steps.

    Args:
        agent_id: Unique id; used as owner, creator and assignee in the store
        store: Shared TaskStore
        planner: Step planner (default: one step of ``config.default_step_type``)
        executors: Step executors to register (keyed by their @step_executor type)
        config: OrchestratorConfig (default: built from the environment)
        chat_client: Optional chat transport for replies
        name: Display name for logs
        auto_process_tasks: Work assigned tasks as soon as they are assigned
    """

    def __init__(
        self,
        agent_id: str,
        store: TaskStore,
        planner: Optional[Planner] = None,
        executors: Iterable[BaseStepExecutor] = (),
        config: Optional[OrchestratorConfig] = None,
        chat_client: Optional[ChatClient] = None,
        name: Optional[str] = None,
        auto_process_tasks: bool = True,
    ):
        self.agent_id = agent_id
        self.name = name or agent_id
        self.store = store
        self.config = config or OrchestratorConfig.from_env()
        self.auto_process_tasks = auto_process_tasks

        self.registry = ExecutorRegistry()
        for executor in executors:
            self.registry.register_executor(executor)

        self.loop = ExecutionLoop(
            agent_id=agent_id,
            store=store,
            registry=self.registry,
            planner=planner,
            config=self.config,
            chat_client=chat_client,
        )
        self.coordinator = DelegationCoordinator(agent_id, store, self.registry, self.loop)
        self.loop.attach_coordinator(self.coordinator)

        self.propagator = NotificationPropagator(
            agent_id,
            store,
            self.registry,
            on_project_completed=self.project_completed,
            on_task_assigned=self._on_task_assigned,
        )
        self.propagator.start()

        self._working = threading.Lock()
        self._completion_callbacks: List[Callable[[Project], None]] = []

        logger.info(
            f"[AGENT] {self.name} initialized with step types: {self.registry.step_types() or 'none'}"
        )

    # ------------------------------------------------------------------
    # Configuration
    # ------------------------------------------------------------------

    def register_executor(self, executor: BaseStepExecutor, step_type: Optional[str] = None) -> None:
        if step_type:
            self.registry.register(step_type, executor)
        else:
            self.registry.register_executor(executor)

    def get_executor_capabilities(self) -> Dict[str, str]:
        return self.registry.capabilities()

    def on_project_completed(self, callback: Callable[[Project], None]) -> None:
        """Register a callback invoked after each completion of a project this agent owns."""
        self._completion_callbacks.append(callback)

    def shutdown(self) -> None:
        self.propagator.stop()
        logger.info(f"[AGENT] {self.name} stopped listening for events")

    # ------------------------------------------------------------------
    # Conversations
    # ------------------------------------------------------------------

    def start_goal(
        self,
        goal: str,
        message: Optional[Message] = None,
        thread: Optional[List[Message]] = None,
        name: Optional[str] = None,
        **metadata: Any
    ) -> Project:
        """Create a root project for ``goal`` and run it."""
        project = self.store.create_project(
            name or goal[:80],
            owner=self.agent_id,
            description=goal,
            original_post_id=message.id if message is not None else None,
            **metadata
        )
        logger.info(f"[AGENT] {self.name} started project {project.name} ({project.id})")
        self.loop.run(project.id, message=message, thread=thread)
        return project

    def handle_message(self, message: Message, thread: Optional[List[Message]] = None) -> Project:
        """
        Route an inbound message.

        A message carrying the id of one of this agent's projects resumes it;
        anything else starts a new goal.
        """
        project_id = message.project_id
        if project_id:
            project = self.store.get_project(project_id)
            if project is not None and project.metadata.owner == self.agent_id:
                self.resume(project_id, message, thread)
                return project
            logger.warning(f"[AGENT] {self.name} got a message for unknown project {project_id}")
        return self.start_goal(message.text, message=message, thread=thread)

    def resume(
        self,
        project_id: str,
        message: Optional[Message] = None,
        thread: Optional[List[Message]] = None,
    ) -> Optional[LoopPhase]:
        return self.loop.resume(project_id, message=message, thread=thread)

    def cancel_project(self, project_id: str) -> List[Task]:
        """Cancel a project's open tasks; descendant projects follow through the propagator."""
        cancelled = self.store.cancel_project(project_id)
        logger.info(f"[AGENT] {self.name} cancelled project {project_id} ({len(cancelled)} tasks)")
        return cancelled

    # ------------------------------------------------------------------
    # Assigned work
    # ------------------------------------------------------------------

    @property
    def is_working(self) -> bool:
        return self._working.locked()

    def process_task_queue(self) -> int:
        """
        Work through pending plain tasks assigned to this agent.

        Returns the number of tasks started. A call made while the queue is
        already being processed returns 0; the active call picks the task up.
        """
        if not self._working.acquire(blocking=False):
            return 0
        started = 0
        try:
            while True:
                task = self.store.get_next_task_for_agent(self.agent_id, TaskType.STANDARD.value)
                if task is None:
                    break
                self.process_task(task)
                started += 1
        finally:
            self._working.release()
        if started:
            logger.info(f"[AGENT] {self.name} processed {started} assigned tasks")
        return started

    def process_task(self, task: Task) -> Project:
        """Run an assigned task as a child project of its own."""
        self.store.mark_task_in_progress(task.id, assignee=self.agent_id)
        child = self.store.create_project(
            f"Task: {task.description[:80]}",
            owner=self.agent_id,
            parent_task_id=task.id,
            description=task.description,
        )
        self.store.update_task(task.id, props={"child_project_id": child.id})
        logger.info(f"[AGENT] {self.name} working on '{task.description}' in project {child.id}")
        self.loop.run(child.id, execution_mode=ExecutionMode.TASK)
        return child

    def _on_task_assigned(self, task: Task) -> None:
        if self.auto_process_tasks:
            self.process_task_queue()

    # ------------------------------------------------------------------
    # Completion hook
    # ------------------------------------------------------------------

    def project_completed(self, project: Project) -> None:
        """
        Called once per completion of a project this agent owns.
        """
        logger.info(f"[AGENT] {self.name}: project {project.name} ({project.id}) completed")

        parent_task = self.store.get_parent_task(project.id)
        if parent_task is not None:
            if parent_task.is_step:
                self.coordinator.on_child_project_completed(project)
            elif not parent_task.is_terminal:
                self._roll_up(parent_task, project)

        step_types = {
            t.props.step_type for t in self.store.get_project_tasks(project.id)
            if t.is_step and t.props.step_type
        }
        for step_type in step_types:
            executor = self.registry.get(step_type)
            if executor is not None:
                executor.on_project_completed(project)

        for callback in self._completion_callbacks:
            callback(project)

    def _roll_up(self, parent_task: Task, project: Project) -> None:
        """Complete a plain task with the combined results of its child project."""
        tasks = self.store.get_project_tasks(project.id)
        results = [t.props.result for t in tasks if t.props.result is not None]

        messages = [r.response.message for r in results if r.response.message]
        statuses = [r.response.status for r in results if r.response.status]
        artifact_ids: List[str] = []
        for result in results:
            for artifact_id in result.artifact_ids:
                if artifact_id not in artifact_ids:
                    artifact_ids.append(artifact_id)

        cancelled = [t for t in tasks if t.status == TaskStatus.CANCELLED]
        summary = StepResult(
            type=StepResultType.FINAL_RESPONSE.value,
            finished=True,
            artifact_ids=artifact_ids,
            response=StepResponse(
                type=StepResponseType.COMPLETION_MESSAGE.value,
                message="\n\n".join(messages) or None,
                status="; ".join(statuses) or None,
                data={
                    "sub_project_results": [r.to_dict() for r in results],
                    "cancelled_tasks": len(cancelled),
                },
            ),
        )
        self.store.complete_task(parent_task.id, summary)
        logger.info(
            f"[AGENT] {self.name} completed '{parent_task.description}' "
            f"with {len(results)} results from project {project.id}"
        )
