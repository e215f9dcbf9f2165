"""
Planners - Turn a goal into an ordered list of step descriptors

The execution loop asks its planner for steps when a project has none,
when a step forces a replan, or when an allowed replan finds no remaining
steps. Planners only describe steps; the loop materializes them as tasks.

Available planners:
- SingleStepPlanner: one step of the default step type (used when none is configured)
- StaticPlanner: fixed step list, handy for scripted agents and tests
- ChatModelPlanner: asks a LangChain chat model for a JSON plan
"""

import json
from abc import ABC, abstractmethod
from typing import Optional, List, Iterable, Union, Tuple

from langchain_core.language_models import BaseChatModel
from langchain_core.messages import HumanMessage, SystemMessage

from step_orchestrator.config.orchestrator_config import OrchestratorConfig
from step_orchestrator.core.executor_registry import normalize_step_type
from step_orchestrator.models.execution import Plan, PlanRequest, StepDescriptor
from step_orchestrator.utils.exceptions import ConfigurationError, PlanningError
from step_orchestrator.utils.llm_client import (
    create_chat_model,
    invoke_with_rate_limit,
    parse_json_response,
)
from step_orchestrator.utils.logger import get_logger
from step_orchestrator.utils.rate_limiter import RateLimiter

logger = get_logger(__name__)

StepSpec = Union[StepDescriptor, Tuple[str, str]]


class Planner(ABC):
    """Base planner."""

    #: when False, replan requests from step results are ignored
    allow_replan: bool = True

    @abstractmethod
    def plan_steps(self, request: PlanRequest) -> Plan:
        """Return the steps to add (or the full remaining tail when reordering)."""


class SingleStepPlanner(Planner):
    """Plans exactly one step of a fixed type for the current goal."""

    allow_replan = False

    def __init__(self, step_type: str):
        self.step_type = step_type

    def plan_steps(self, request: PlanRequest) -> Plan:
        return Plan(steps=[StepDescriptor(self.step_type, "Determine next step")])


def _as_descriptor(entry: StepSpec) -> StepDescriptor:
    if isinstance(entry, StepDescriptor):
        return entry
    step_type, description = entry
    return StepDescriptor(step_type=step_type, description=description)


class StaticPlanner(Planner):
    """
    Returns a fixed step list for the first plan and ``replan_steps`` for
    every later request.
    """

    def __init__(
        self,
        steps: Iterable[StepSpec],
        replan_steps: Optional[Iterable[StepSpec]] = None,
        allow_replan: bool = True
    ):
        self.steps = [_as_descriptor(s) for s in steps]
        self.replan_steps = [_as_descriptor(s) for s in (replan_steps or [])]
        self.allow_replan = allow_replan
        self.requests: List[PlanRequest] = []

    def plan_steps(self, request: PlanRequest) -> Plan:
        self.requests.append(request)
        if request.reason == "initial":
            return Plan(steps=list(self.steps))
        return Plan(steps=list(self.replan_steps))


PLANNER_SYSTEM_PROMPT = """You plan work for an agent that executes one step at a time.
Each step must use one of the available step types.
Respond only with valid JSON of the form:
{"reasoning": "...", "steps": [{"stepType": "...", "description": "...", "existingId": "optional id of a remaining step to keep"}]}
When replanning, either return only the new steps to insert after the current step,
or return the complete remaining sequence, referencing kept steps by existingId.
Steps you do not reference in a complete sequence are cancelled."""


class ChatModelPlanner(Planner):
    """
    Planner backed by a LangChain chat model.

    Args:
        llm: Any BaseChatModel (ChatAnthropic in production)
        rate_limiter: Limiter waited on before each call (default: shared limiter)
        max_steps: Upper bound on steps accepted from one response
        allow_replan: Whether step results may trigger replanning
    """

    def __init__(
        self,
        llm: BaseChatModel,
        rate_limiter: Optional[RateLimiter] = None,
        max_steps: int = 10,
        allow_replan: bool = True
    ):
        self.llm = llm
        self.rate_limiter = rate_limiter
        self.max_steps = max_steps
        self.allow_replan = allow_replan

    @classmethod
    def from_config(cls, config: OrchestratorConfig, max_steps: int = 10) -> "ChatModelPlanner":
        """
        Build the planner from ``config.llm`` and ``config.rate_limit``.

        Raises:
            ConfigurationError: no LLM is configured
        """
        if config.llm is None:
            raise ConfigurationError(
                "llm", "ChatModelPlanner needs an LLM configuration (set ANTHROPIC_API_KEY)"
            )
        return cls(
            create_chat_model(config.llm),
            rate_limiter=RateLimiter.from_config(config.rate_limit),
            max_steps=max_steps,
            allow_replan=config.allow_replan,
        )

    def plan_steps(self, request: PlanRequest) -> Plan:
        logger.info(f"[PLANNER] Planning ({request.reason}) for project {request.project.id}")

        response = invoke_with_rate_limit(
            self.llm,
            [
                SystemMessage(content=PLANNER_SYSTEM_PROMPT),
                HumanMessage(content=self._build_prompt(request)),
            ],
            rate_limiter=self.rate_limiter,
        )
        content = getattr(response, "content", str(response))
        if isinstance(content, list):
            content = "".join(
                part.get("text", "") if isinstance(part, dict) else str(part) for part in content
            )

        try:
            data = parse_json_response(content)
        except ValueError as e:
            raise PlanningError(str(e), raw_response=content) from e

        raw_steps = data.get("steps")
        if not isinstance(raw_steps, list):
            raise PlanningError("response has no 'steps' list", raw_response=content)

        available = set(request.available_step_types)
        remaining_ids = {t.id for t in request.remaining_steps}
        steps: List[StepDescriptor] = []
        for raw in raw_steps[:self.max_steps]:
            if not isinstance(raw, dict):
                continue
            descriptor = StepDescriptor.from_dict(raw)
            descriptor.step_type = normalize_step_type(descriptor.step_type)
            if available and descriptor.step_type not in available:
                logger.warning(f"[PLANNER] Dropping step with unknown type '{descriptor.step_type}'")
                continue
            if descriptor.existing_id and descriptor.existing_id not in remaining_ids:
                descriptor.existing_id = None
            steps.append(descriptor)

        if not steps and request.reason == "initial":
            raise PlanningError("no usable steps in response", raw_response=content)

        logger.info(f"[PLANNER] Planned {len(steps)} steps: {[s.step_type for s in steps]}")
        return Plan(steps=steps, reasoning=data.get("reasoning"))

    @staticmethod
    def _build_prompt(request: PlanRequest) -> str:
        completed = [
            {
                "stepType": t.props.step_type,
                "description": t.description,
                "result": t.props.result.response.message if t.props.result else None,
            }
            for t in request.completed_steps
        ]
        remaining = [
            {"id": t.id, "stepType": t.props.step_type, "description": t.description}
            for t in request.remaining_steps
        ]
        sections = [
            f"Goal: {request.goal}",
            f"Reason for planning: {request.reason}",
            "Available step types:\n" + json.dumps(request.available_step_types, indent=2),
        ]
        if request.message is not None:
            sections.append(f"Latest user message: {request.message.text}")
        if completed:
            sections.append("Completed steps:\n" + json.dumps(completed, indent=2))
        if request.current_step is not None:
            sections.append(
                f"Current step: [{request.current_step.props.step_type}] "
                f"{request.current_step.description}"
            )
        if remaining:
            sections.append("Remaining steps:\n" + json.dumps(remaining, indent=2))
        return "\n\n".join(sections)
