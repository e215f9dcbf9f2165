"""
Step Executor Registry - Maps step types to executor instances

Executors implement the business logic of one step type. They are
registered once when an agent is built and looked up by step type at
dispatch time.

Usage:
    @step_executor("summarize", "Summarize the conversation so far")
    class SummarizeExecutor(BaseStepExecutor):
        def execute(self, params: ExecuteParams) -> StepResult:
            return StepResult(finished=True, response=StepResponse(message="..."))

    registry = ExecutorRegistry()
    registry.register_executor(SummarizeExecutor())
    result = registry.execute("summarize", params)
"""

from abc import ABC, abstractmethod
from typing import Optional, Dict, List, Callable, Type, TypeVar

from step_orchestrator.models.enums import StepResultType, StepResponseType
from step_orchestrator.models.events import TaskNotification
from step_orchestrator.models.execution import ExecuteParams
from step_orchestrator.models.step_result import (
    StepResult,
    StepResponse,
    UNIMPLEMENTED_COMPLETION,
)
from step_orchestrator.models.task import Task, Project
from step_orchestrator.utils.exceptions import ConfigurationError, UnregisteredStepType
from step_orchestrator.utils.logger import get_logger

logger = get_logger(__name__)

E = TypeVar("E", bound="BaseStepExecutor")


def normalize_step_type(step_type: str) -> str:
    """Planners sometimes wrap step types in brackets: ``[research]`` -> ``research``."""
    return step_type.strip().strip("[]").strip()


def step_executor(key: str, description: str) -> Callable[[Type[E]], Type[E]]:
    """
    Class decorator attaching the step type and its capability description.

    The description is what planners see when choosing step types.
    """
    def decorator(cls: Type[E]) -> Type[E]:
        cls.step_type = key
        cls.description = description
        return cls
    return decorator


class BaseStepExecutor(ABC):
    """
    Base class for step executors.

    Only ``execute`` is required. The hooks have defaults:
    - on_child_project_complete: returns an "unimplemented" error result so a
      delegation that completes is reported instead of hanging silently
    - handle_task_notification: no-op
    - on_project_completed: no-op
    """

    step_type: Optional[str] = None
    description: str = ""

    @abstractmethod
    def execute(self, params: ExecuteParams) -> StepResult:
        """Run the step."""

    def on_child_project_complete(self, step_task: Task, child_project: Project) -> StepResult:
        return StepResult(
            type=StepResultType.ERROR.value,
            finished=True,
            response=StepResponse(
                type=StepResponseType.ERROR.value,
                status=f"Executor for '{self.step_type}' does not handle child project completion",
                data={"reason": UNIMPLEMENTED_COMPLETION, "child_project_id": child_project.id},
            ),
        )

    def handle_task_notification(self, notification: TaskNotification) -> None:
        return None

    def on_project_completed(self, project: Project) -> None:
        return None


class ExecutorRegistry:
    """Registration table ``step_type -> executor``."""

    def __init__(self):
        self._executors: Dict[str, BaseStepExecutor] = {}

    def register(self, step_type: str, executor: BaseStepExecutor) -> None:
        """
        Register an executor for a step type.

        Raises:
            ConfigurationError: the step type is already registered
        """
        key = normalize_step_type(step_type)
        if not key:
            raise ConfigurationError("step_type", "must not be empty")
        if key in self._executors:
            raise ConfigurationError(
                setting_name="step_type",
                message=f"an executor is already registered for '{key}'",
                actual_value=type(self._executors[key]).__name__
            )
        self._executors[key] = executor
        logger.debug(f"Registered executor {type(executor).__name__} for step type '{key}'")

    def register_executor(self, executor: BaseStepExecutor) -> None:
        """Register an executor under the key given by its @step_executor decorator."""
        if not executor.step_type:
            raise ConfigurationError(
                setting_name="step_type",
                message=f"{type(executor).__name__} has no step type; use @step_executor or register()"
            )
        self.register(executor.step_type, executor)

    def get(self, step_type: Optional[str]) -> Optional[BaseStepExecutor]:
        if not step_type:
            return None
        return self._executors.get(normalize_step_type(step_type))

    def execute(self, step_type: str, params: ExecuteParams) -> StepResult:
        """
        Dispatch to the registered executor.

        Raises:
            UnregisteredStepType: no executor handles ``step_type``
        """
        executor = self.get(step_type)
        if executor is None:
            raise UnregisteredStepType(step_type, self.step_types())
        return executor.execute(params)

    def step_types(self) -> List[str]:
        return list(self._executors)

    def capabilities(self) -> Dict[str, str]:
        """Step type -> description, for planners."""
        return {
            key: executor.description or type(executor).__name__
            for key, executor in self._executors.items()
        }

    def executors(self) -> List[BaseStepExecutor]:
        return list(self._executors.values())

    def __contains__(self, step_type: str) -> bool:
        return self.get(step_type) is not None

    def __len__(self) -> int:
        return len(self._executors)
