"""
Execution module - Inputs handed to executors and planners
"""

from dataclasses import dataclass, field
from typing import Optional, Dict, Any, List, Callable

from .messages import Message
from .step_result import StepResponse
from .task import Task, Project


class ExecutionMode:
    """How a project run was triggered"""
    CONVERSATION = "conversation"
    TASK = "task"


@dataclass
class ExecuteParams:
    """
    Everything an executor receives for one step.

    Attributes:
        agent_id: Agent running the step
        goal: Combined goal text (step, project and request)
        step_goal: The step task's own description
        overall_goal: The project's goal (name or description)
        step: The step task being executed
        project: The project owning the step
        message: Inbound message that triggered the run, if any
        previous_responses: Responses of earlier steps in this project
        previous_steps: Earlier step tasks (completed or in progress)
        context_artifact_ids: Artifacts attached to the step or earlier steps
        thread: Conversation history supplied by the host
        execution_mode: ExecutionMode.CONVERSATION or ExecutionMode.TASK
        partial_response: Callback that posts an interim status update
    """
    agent_id: str
    goal: str
    step_goal: str
    overall_goal: str
    step: Task
    project: Project
    message: Optional[Message] = None
    previous_responses: List[StepResponse] = field(default_factory=list)
    previous_steps: List[Task] = field(default_factory=list)
    context_artifact_ids: List[str] = field(default_factory=list)
    thread: List[Message] = field(default_factory=list)
    execution_mode: str = ExecutionMode.CONVERSATION
    partial_response: Optional[Callable[[str], None]] = None

    @property
    def step_id(self) -> str:
        return self.step.id

    @property
    def project_id(self) -> str:
        return self.project.id


@dataclass
class StepDescriptor:
    """
    One planned step.

    ``existing_id`` refers to a pending step that the planner keeps; a plan
    using it describes the complete remaining tail of the project.
    """
    step_type: str
    description: str
    existing_id: Optional[str] = None

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> "StepDescriptor":
        return cls(
            step_type=data.get("stepType") or data.get("step_type") or data.get("type", ""),
            description=data.get("description", ""),
            existing_id=data.get("existingId") or data.get("existing_id"),
        )


@dataclass
class Plan:
    """Ordered step descriptors returned by a planner"""
    steps: List[StepDescriptor] = field(default_factory=list)
    reasoning: Optional[str] = None

    @property
    def reorders_tail(self) -> bool:
        return any(step.existing_id for step in self.steps)


@dataclass
class PlanRequest:
    """Input for a planner invocation"""
    project: Project
    goal: str
    reason: str = "initial"
    message: Optional[Message] = None
    completed_steps: List[Task] = field(default_factory=list)
    current_step: Optional[Task] = None
    remaining_steps: List[Task] = field(default_factory=list)
    available_step_types: Dict[str, str] = field(default_factory=dict)
