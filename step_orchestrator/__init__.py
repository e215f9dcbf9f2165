"""
Step Orchestrator - LangGraph-based step and task orchestration for agents

Agents accomplish multi-step goals by decomposing a goal into an ordered
sequence of steps, each run by a pluggable executor. A step may hand its
work to other agents through a child project and resume once that project
completes.

Installation:
pip install langgraph langchain-anthropic langchain-core python-dotenv

Configuration:
    Create a .env file (all settings optional):

    AGENT_MAX_STEPS_PER_RUN=50
    AGENT_ALLOW_REPLAN=true
    AGENT_LOG_LEVEL=INFO
    ANTHROPIC_API_KEY=sk-ant-...   # only needed by ChatModelPlanner

Example:
    >>> from step_orchestrator import StepBasedAgent, TaskStore, StaticPlanner
    >>>
    >>> store = TaskStore()
    >>> agent = StepBasedAgent(
    ...     "assistant",
    ...     store,
    ...     planner=StaticPlanner([("answer", "Answer the question")]),
    ...     executors=[AnswerExecutor()],
    ... )
    >>> project = agent.start_goal("What changed last week?")
"""

__version__ = "1.0.0"
__all__ = [
    'StepBasedAgent',
    'TaskStore',
    'EventBus',
    'ExecutionLoop',
    'ExecutorRegistry',
    'BaseStepExecutor',
    'step_executor',
    'StaticPlanner',
    'ChatModelPlanner',
    'DelegationExecutor',
    'DelegatedTask',
    'OrchestratorConfig',
    'EnvConfig',
    'Task',
    'Project',
    'StepResult',
    'StepResponse',
    'ExecuteParams',
    'TaskStatus',
    'ReplanType',
]

from step_orchestrator.core import (
    StepBasedAgent,
    TaskStore,
    EventBus,
    ExecutionLoop,
    ExecutorRegistry,
    BaseStepExecutor,
    step_executor,
    StaticPlanner,
    ChatModelPlanner,
)
from step_orchestrator.executors import DelegationExecutor, DelegatedTask
from step_orchestrator.config import OrchestratorConfig, EnvConfig
from step_orchestrator.models import (
    Task,
    Project,
    StepResult,
    StepResponse,
    ExecuteParams,
    TaskStatus,
    ReplanType,
)
