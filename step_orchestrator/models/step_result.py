"""
StepResult module - Return contract of an executor invocation

The orchestrator only looks at the control flags (finished,
needs_user_input, is_async, replan), the delegation target and
``response.type``; everything else is passed through untouched.
"""

from dataclasses import dataclass, field
from typing import Optional, Dict, Any, List

from .enums import ReplanType, StepResultType, StepResponseType

UNIMPLEMENTED_COMPLETION = "unimplemented_child_completion"


@dataclass
class StepResponse:
    """Typed payload consumed by renderers"""
    type: Optional[str] = None
    message: Optional[str] = None
    status: Optional[str] = None
    reasoning: Optional[str] = None
    data: Dict[str, Any] = field(default_factory=dict)

    def to_dict(self) -> Dict[str, Any]:
        return {
            "type": self.type,
            "message": self.message,
            "status": self.status,
            "reasoning": self.reasoning,
            "data": dict(self.data),
        }

    @classmethod
    def from_dict(cls, data: Optional[Dict[str, Any]]) -> "StepResponse":
        data = data or {}
        return cls(
            type=data.get("type"),
            message=data.get("message"),
            status=data.get("status"),
            reasoning=data.get("reasoning"),
            data=dict(data.get("data") or {}),
        )


@dataclass
class StepResult:
    """
    Result of one executor invocation.

    Attributes:
        finished: Step is done and the loop may advance
        needs_user_input: Step is done but the loop pauses for the user
        is_async: Step spawned background work (serialized as ``async``)
        replan: Whether the planner should recompute the remaining steps
        project_id: Delegation target project
        task_id: Delegation target task
        artifact_ids: Produced artifacts (opaque ids)
        type: Result type tag
        goal: Optional restated goal
        response: Payload for renderers
    """
    finished: bool = False
    needs_user_input: bool = False
    is_async: bool = False
    replan: ReplanType = ReplanType.NONE
    project_id: Optional[str] = None
    task_id: Optional[str] = None
    artifact_ids: List[str] = field(default_factory=list)
    type: Optional[str] = None
    goal: Optional[str] = None
    response: StepResponse = field(default_factory=StepResponse)

    def __post_init__(self):
        self.replan = ReplanType(self.replan)
        if isinstance(self.response, dict):
            self.response = StepResponse.from_dict(self.response)

    @property
    def is_delegation(self) -> bool:
        return self.is_async and self.project_id is not None

    @property
    def is_unimplemented_completion(self) -> bool:
        return self.response.data.get("reason") == UNIMPLEMENTED_COMPLETION

    @classmethod
    def error(
        cls,
        message: str,
        status: Optional[str] = None,
        replan: ReplanType = ReplanType.NONE,
        data: Optional[Dict[str, Any]] = None
    ) -> "StepResult":
        """Terminal error result that surfaces ``message`` to the user."""
        return cls(
            type=StepResultType.ERROR.value,
            finished=True,
            needs_user_input=True,
            replan=replan,
            response=StepResponse(
                type=StepResponseType.ERROR.value,
                message=message,
                status=status,
                data=dict(data or {}),
            ),
        )

    def to_dict(self) -> Dict[str, Any]:
        return {
            "type": self.type,
            "finished": self.finished,
            "needsUserInput": self.needs_user_input,
            "async": self.is_async,
            "replan": self.replan.value,
            "projectId": self.project_id,
            "taskId": self.task_id,
            "artifactIds": list(self.artifact_ids),
            "goal": self.goal,
            "response": self.response.to_dict(),
        }

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> "StepResult":
        """
        Parse both the canonical shape and the legacy one.

        Legacy results carry ``allowReplan: bool`` instead of ``replan``;
        True maps to ReplanType.ALLOW and False to ReplanType.NONE.
        """
        if "replan" in data and data["replan"] is not None:
            replan = ReplanType(data["replan"])
        elif "allowReplan" in data:
            replan = ReplanType.ALLOW if data["allowReplan"] else ReplanType.NONE
        else:
            replan = ReplanType.NONE

        def pick(*keys, default=None):
            for key in keys:
                if key in data:
                    return data[key]
            return default

        return cls(
            finished=bool(pick("finished", default=False)),
            needs_user_input=bool(pick("needsUserInput", "needs_user_input", default=False)),
            is_async=bool(pick("async", "is_async", default=False)),
            replan=replan,
            project_id=pick("projectId", "project_id"),
            task_id=pick("taskId", "task_id"),
            artifact_ids=list(pick("artifactIds", "artifact_ids", default=None) or []),
            type=data.get("type"),
            goal=data.get("goal"),
            response=StepResponse.from_dict(data.get("response")),
        )
