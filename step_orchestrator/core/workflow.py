"""
Workflow module - LangGraph graph behind the per-project execution loop
"""

from typing import TypedDict, Optional, List, Literal, TYPE_CHECKING

from langgraph.graph import StateGraph, END

from step_orchestrator.models.messages import Message
from step_orchestrator.models.step_result import StepResult
from step_orchestrator.utils.logger import get_logger

if TYPE_CHECKING:
    from step_orchestrator.core.execution_loop import ExecutionLoop

logger = get_logger(__name__)


class LoopState(TypedDict, total=False):
    """State carried through one run of a project's loop"""
    project_id: str
    message: Optional[Message]
    thread: List[Message]
    execution_mode: str
    resumed: bool
    plan_reason: Optional[str]
    current_task_id: Optional[str]
    result: Optional[StepResult]
    steps_executed: int
    stopped: bool
    stop_reason: Optional[str]


class WorkflowBuilder:
    """
    Builds the LangGraph workflow for one project's step sequence.

    Workflow:
    1. Plan -> materialize step tasks when the project has none (or a replan was requested)
    2. Select Step -> next non-terminal step by order; stop when done, paused or delegating
    3. Execute Step -> run the registered executor for the step type
    4. Apply Result -> complete, pause, delegate or keep the step in progress
       (loops back to Select Step while the project can advance)
    """

    def __init__(self, loop: "ExecutionLoop"):
        """
        Args:
            loop: The ExecutionLoop providing the node implementations
        """
        self.loop = loop

    def build(self) -> StateGraph:
        workflow = StateGraph(LoopState)

        workflow.add_node("plan", self.loop._plan_node)
        workflow.add_node("select_step", self.loop._select_step_node)
        workflow.add_node("execute_step", self.loop._execute_step_node)
        workflow.add_node("apply_result", self.loop._apply_result_node)

        workflow.set_entry_point("plan")

        workflow.add_conditional_edges(
            "plan",
            self._route_unless_stopped,
            {
                "continue": "select_step",
                "stop": END
            }
        )

        workflow.add_conditional_edges(
            "select_step",
            self._route_after_select_step,
            {
                "execute_step": "execute_step",
                "stop": END
            }
        )

        workflow.add_edge("execute_step", "apply_result")

        workflow.add_conditional_edges(
            "apply_result",
            self._route_unless_stopped,
            {
                "continue": "select_step",
                "stop": END
            }
        )

        return workflow

    def compile(self):
        return self.build().compile()

    @staticmethod
    def _route_unless_stopped(state: LoopState) -> Literal["continue", "stop"]:
        return "stop" if state.get("stopped") else "continue"

    @staticmethod
    def _route_after_select_step(state: LoopState) -> Literal["execute_step", "stop"]:
        if state.get("stopped") or not state.get("current_task_id"):
            logger.debug(f"[LOOP] Stopping run: {state.get('stop_reason')}")
            return "stop"
        return "execute_step"
