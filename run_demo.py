#!/usr/bin/env python
"""
Step Orchestrator - Demo Execution

Two agents share one task store. The lead plans a goal as steps and
delegates the research step to the analyst, who works each delegated task
in its own project. When an API key is configured the lead plans with the
chat model planner, otherwise with a fixed step list.
"""

from step_orchestrator import (
    BaseStepExecutor,
    ChatModelPlanner,
    DelegatedTask,
    DelegationExecutor,
    EnvConfig,
    ExecuteParams,
    OrchestratorConfig,
    StaticPlanner,
    StepBasedAgent,
    StepResponse,
    StepResult,
    TaskStore,
    step_executor,
)
from step_orchestrator.utils.logger import initialize_logging


@step_executor("research", "Research one question and report the findings")
class ResearchExecutor(BaseStepExecutor):
    def execute(self, params: ExecuteParams) -> StepResult:
        return StepResult(
            finished=True,
            response=StepResponse(message=f"Findings for '{params.overall_goal}': looks promising."),
        )


@step_executor("summarize", "Summarize the results of earlier steps")
class SummarizeExecutor(BaseStepExecutor):
    def execute(self, params: ExecuteParams) -> StepResult:
        findings = [r.message for r in params.previous_responses if r.message]
        return StepResult(
            finished=True,
            response=StepResponse(
                message="Summary:\n" + "\n".join(f"- {f}" for f in findings),
            ),
        )


def split_research(params: ExecuteParams):
    return [
        DelegatedTask(f"{params.step_goal}: languages", assignee="analyst"),
        DelegatedTask(f"{params.step_goal}: use cases", assignee="analyst", depends_on=0),
    ]


def main():
    """Main entry point for the orchestrator demo."""
    print("=" * 70)
    print("Step Orchestrator - Demo Execution")
    print("=" * 70)
    print()

    print("Step 1: Loading configuration from .env...")
    EnvConfig.load_env_file()
    initialize_logging()
    config = OrchestratorConfig.from_env()
    print(f"          - Max Steps Per Run: {config.max_steps_per_run}")
    print(f"          - Allow Replan: {config.allow_replan}")
    print(f"          - LLM Planner: {'yes' if config.llm else 'no (static plan)'}")
    print()

    store = TaskStore.from_config(config)

    if config.llm:
        planner = ChatModelPlanner.from_config(config)
    else:
        planner = StaticPlanner([
            ("delegate", "Research the top programming languages of 2026"),
            ("summarize", "Summarize the research"),
        ])

    print("Step 2: Creating agents...")
    lead = StepBasedAgent(
        "lead",
        store,
        planner=planner,
        executors=[DelegationExecutor(store, split_research), SummarizeExecutor()],
        config=config,
    )
    analyst = StepBasedAgent(
        "analyst",
        store,
        planner=StaticPlanner([("research", "Research the question")]),
        executors=[ResearchExecutor()],
        config=config,
    )
    print(f"        lead: {sorted(lead.get_executor_capabilities())}")
    print(f"        analyst: {sorted(analyst.get_executor_capabilities())}")
    print()

    goal = "List the top 5 programming languages in 2026 and their primary use cases"
    print("Step 3: Starting goal...")
    print(f"        Goal: {goal}")
    print()

    try:
        project = lead.start_goal(goal)

        print()
        print("=" * 70)
        print(f"Project {project.id} finished in phase: {project.metadata.loop_state.value}")
        print("=" * 70)
        for step in store.get_project_tasks(project.id):
            result = step.props.result
            print(f"  [{step.props.step_type}] {step.description} -> {step.status.value}")
            if result and result.response.message:
                print("      " + result.response.message.replace("\n", "\n      "))

    except KeyboardInterrupt:
        print()
        print("Demo interrupted by user.")
    finally:
        lead.shutdown()
        analyst.shutdown()


if __name__ == "__main__":
    main()
