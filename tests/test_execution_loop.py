"""
Tests for the per-project execution loop: ordering, pausing, replanning,
async steps and failure handling.
"""

import pytest

from step_orchestrator.config import DEFAULT_ERROR_MESSAGE
from step_orchestrator.core.agent import StepBasedAgent
from step_orchestrator.core.planner import Planner, StaticPlanner
from step_orchestrator.core.task_store import TaskStore
from step_orchestrator.models import (
    LoopPhase,
    Message,
    Plan,
    ReplanType,
    StepDescriptor,
    StepResponse,
    StepResult,
    Task,
    TaskStatus,
)
from step_orchestrator.utils.exceptions import (
    DelegationInvariantViolation,
    InvalidTransitionError,
)
from tests.fakes import (
    RecordingChatClient,
    ScriptedExecutor,
    add_step,
    finished,
    make_config,
)


class ReorderingPlanner(Planner):
    """Plans A, B, C; on replan keeps only the last remaining step and appends D."""

    def __init__(self):
        self.requests = []

    def plan_steps(self, request):
        self.requests.append(request)
        if request.reason == "initial":
            return Plan(steps=[
                StepDescriptor("record", "A"),
                StepDescriptor("record", "B"),
                StepDescriptor("record", "C"),
            ])
        keep = request.remaining_steps[-1]
        return Plan(steps=[
            StepDescriptor("record", keep.description, existing_id=keep.id),
            StepDescriptor("record", "D"),
        ])


class FailingPlanner(Planner):
    def plan_steps(self, request):
        raise RuntimeError("model unavailable")


class FlakyPlanner(Planner):
    """Fails on the first call; afterwards plans one step for an initial request only."""

    def __init__(self):
        self.reasons = []

    def plan_steps(self, request):
        self.reasons.append(request.reason)
        if len(self.reasons) == 1:
            raise RuntimeError("model unavailable")
        if request.reason != "initial":
            return Plan(steps=[])
        return Plan(steps=[StepDescriptor("record", "Answer")])


class LoopTestBase:
    def setup_method(self):
        self.store = TaskStore()
        self.chat = RecordingChatClient()

    def build(self, executors, planner=None, **config):
        self.agent = StepBasedAgent(
            "agent",
            self.store,
            planner=planner,
            executors=executors,
            config=make_config(**config),
            chat_client=self.chat,
        )
        return self.agent

    def steps(self, project):
        return self.store.get_project_tasks(project.id)


class TestStepOrdering(LoopTestBase):
    """Steps run in (order, insertion) order."""

    def test_existing_steps_run_by_order_then_insertion(self):
        recorder = ScriptedExecutor("record")
        agent = self.build([recorder])
        project = self.store.create_project("Ordered", owner="agent")
        add_step(self.store, project.id, "record", "A", order=2)
        add_step(self.store, project.id, "record", "B", order=1)
        add_step(self.store, project.id, "record", "C", order=1)

        phase = agent.loop.run(project.id)

        assert recorder.executed == ["B", "C", "A"]
        assert phase == LoopPhase.DONE
        assert all(t.status == TaskStatus.COMPLETED for t in self.steps(project))

    def test_initial_plan_is_materialized(self):
        recorder = ScriptedExecutor("record")
        planner = StaticPlanner([("record", "Gather"), ("record", "Answer")])
        agent = self.build([recorder], planner)

        project = agent.start_goal("Write the summary")

        assert recorder.executed == ["Gather", "Answer"]
        assert [t.order for t in self.steps(project)] == [1, 2]
        assert planner.requests[0].reason == "initial"
        assert "record" in planner.requests[0].available_step_types
        assert recorder.completed_projects[0].id == project.id

    def test_default_planner_uses_default_step_type(self):
        recorder = ScriptedExecutor("record")
        agent = self.build([recorder], default_step_type="record")

        agent.start_goal("Anything")

        assert recorder.executed == ["Determine next step"]

    def test_execute_params(self):
        recorder = ScriptedExecutor("record", [finished("first", artifact_ids=["doc-1"])])
        planner = StaticPlanner([("record", "Gather"), ("record", "Answer")])
        agent = self.build([recorder], planner)
        message = Message("What happened?")

        agent.start_goal("Explain the outage", message=message)

        params = recorder.calls[1]
        assert params.step_goal == "Answer"
        assert params.overall_goal == "Explain the outage"
        assert params.message is message
        assert [r.message for r in params.previous_responses] == ["first"]
        assert [t.description for t in params.previous_steps] == ["Gather"]
        assert params.context_artifact_ids == ["doc-1"]
        assert "What happened?" in params.goal

    def test_step_limit_per_run(self):
        recorder = ScriptedExecutor("record")
        planner = StaticPlanner([("record", "one"), ("record", "two"), ("record", "three")])
        agent = self.build([recorder], planner, max_steps_per_run=2)

        project = agent.start_goal("Count")
        assert recorder.executed == ["one", "two"]

        agent.loop.run(project.id)
        assert recorder.executed == ["one", "two", "three"]

    def test_run_requested_while_running_is_queued(self):
        recorder = ScriptedExecutor("record")
        agent = self.build([recorder], StaticPlanner([("record", "only")]))
        observed = []

        def reenter(params):
            observed.append(agent.loop.is_running(params.project_id))
            observed.append(agent.loop.run(params.project_id))
            return finished()

        recorder.script.append(reenter)
        project = agent.start_goal("Re-enter")

        assert observed == [True, None]
        assert recorder.executed == ["only"]
        assert agent.loop.is_running(project.id) is False


class TestPauseAndResume(LoopTestBase):
    """needs_user_input halts the project until resume."""

    def test_needs_user_input_pauses(self):
        question = StepResult(
            finished=True,
            needs_user_input=True,
            response=StepResponse(message="Which template?"),
        )
        ask = ScriptedExecutor("ask", [question])
        recorder = ScriptedExecutor("record")
        planner = StaticPlanner([("ask", "Choose template"), ("record", "Render")])
        agent = self.build([ask, recorder], planner)

        project = agent.start_goal("Make a slide deck", message=Message("Make a slide deck"))

        ask_step, render_step = self.steps(project)
        assert ask_step.status == TaskStatus.COMPLETED
        assert ask_step.props.awaiting_response is True
        assert render_step.status == TaskStatus.PENDING
        assert project.metadata.loop_state == LoopPhase.PAUSED
        assert project.metadata.paused_task_id == ask_step.id
        assert "Which template?" in self.chat.texts

        agent.loop.run(project.id)
        assert recorder.calls == []

        follow_up = Message("The blue one", props={"project_id": project.id})
        assert agent.handle_message(follow_up).id == project.id

        assert recorder.executed == ["Render"]
        assert recorder.calls[0].message.text == "The blue one"
        assert ask_step.props.awaiting_response is False
        assert len(planner.requests) == 1

    def test_resume_without_remaining_steps_plans(self):
        question = StepResult(finished=True, needs_user_input=True)
        ask = ScriptedExecutor("ask", [question])
        recorder = ScriptedExecutor("record")
        planner = StaticPlanner([("ask", "Clarify")], replan_steps=[("record", "Follow up")])
        agent = self.build([ask, recorder], planner)

        project = agent.start_goal("Vague request")
        agent.resume(project.id, Message("More details", props={"project_id": project.id}))

        assert planner.requests[-1].reason == "resume"
        assert recorder.executed == ["Follow up"]

    def test_message_for_unknown_project_starts_new_goal(self):
        recorder = ScriptedExecutor("record")
        agent = self.build([recorder], StaticPlanner([("record", "Answer")]))

        project = agent.handle_message(Message("Hello", props={"project_id": "missing"}))

        assert project.metadata.description == "Hello"
        assert recorder.executed == ["Answer"]


class TestFailures(LoopTestBase):
    """Executor failures never escape the loop."""

    def test_executor_exception_becomes_apology(self):
        boom = ScriptedExecutor("boom", [RuntimeError("kaput")])
        agent = self.build([boom], StaticPlanner([("boom", "Explode")]))

        project = agent.start_goal("Crash please", message=Message("Crash please"))

        step = self.steps(project)[0]
        result = step.props.result
        assert step.status == TaskStatus.COMPLETED
        assert result.finished and result.needs_user_input
        assert result.response.message == DEFAULT_ERROR_MESSAGE
        assert result.response.data["error"]["error_code"] == "EXECUTOR_THREW"
        assert self.chat.texts == [DEFAULT_ERROR_MESSAGE]
        assert project.metadata.loop_state == LoopPhase.PAUSED

    def test_unregistered_step_type_forces_replan(self):
        recorder = ScriptedExecutor("record")
        planner = StaticPlanner([("mystery", "Do magic")], replan_steps=[("record", "Apologize")])
        agent = self.build([recorder], planner)

        project = agent.start_goal("Magic")

        mystery, apology = self.steps(project)
        assert mystery.props.result.response.message == (
            "Step type 'mystery' not supported. Only use available types."
        )
        assert mystery.props.result.replan == ReplanType.FORCE
        assert planner.requests[-1].reason == "replan"
        assert apology.description == "Apologize"
        assert apology.status == TaskStatus.PENDING
        assert project.metadata.loop_state == LoopPhase.PAUSED

    def test_planning_failure_replies_with_error(self):
        agent = self.build([ScriptedExecutor("record")], FailingPlanner())

        project = agent.start_goal("Plan this", message=Message("Plan this"))

        assert self.steps(project) == []
        assert self.chat.texts == [DEFAULT_ERROR_MESSAGE]
        assert project.metadata.loop_state == LoopPhase.PAUSED

    def test_retry_after_failed_first_plan_plans_from_scratch(self):
        recorder = ScriptedExecutor("record")
        planner = FlakyPlanner()
        agent = self.build([recorder], planner)
        project = agent.start_goal("Plan this", message=Message("Plan this"))
        assert project.metadata.loop_state == LoopPhase.PAUSED

        agent.handle_message(Message("try again", props={"project_id": project.id}))

        assert planner.reasons == ["initial", "initial"]
        assert recorder.executed == ["Answer"]
        assert project.metadata.loop_state == LoopPhase.DONE

    def test_non_step_result_is_rejected(self):
        weird = ScriptedExecutor("weird", [lambda params: "not a result"])
        agent = self.build([weird], StaticPlanner([("weird", "Return junk")]))

        project = agent.start_goal("Junk")

        assert self.steps(project)[0].props.result.response.message == DEFAULT_ERROR_MESSAGE

    def test_result_for_cancelled_step_is_dropped(self):
        recorder = ScriptedExecutor("record")
        agent = self.build([recorder], StaticPlanner([("record", "Self cancel"), ("record", "Next")]))
        store = self.store

        def cancel_self(params):
            store.cancel_task(params.step.id)
            return finished("ignored")

        recorder.script.append(cancel_self)
        project = agent.start_goal("Cancel")

        first, second = self.steps(project)
        assert first.status == TaskStatus.CANCELLED
        assert first.props.result is None
        assert second.status == TaskStatus.PENDING


class TestReplanning(LoopTestBase):
    """Replan rules and step insertion."""

    def test_allow_replan_ignored_while_steps_remain(self):
        recorder = ScriptedExecutor("record", [finished(replan=ReplanType.ALLOW)])
        planner = StaticPlanner([("record", "A"), ("record", "B")], replan_steps=[("record", "X")])
        agent = self.build([recorder], planner)

        agent.start_goal("Allow")

        assert recorder.executed == ["A", "B"]
        assert len(planner.requests) == 1

    def test_allow_replan_when_last_step(self):
        recorder = ScriptedExecutor("record", [finished(replan=ReplanType.ALLOW)])
        planner = StaticPlanner([("record", "A")], replan_steps=[("record", "X")])
        agent = self.build([recorder], planner)

        agent.start_goal("Allow")

        assert recorder.executed == ["A", "X"]

    def test_force_replan_inserts_after_current(self):
        recorder = ScriptedExecutor("record", [finished(replan=ReplanType.FORCE)])
        planner = StaticPlanner(
            [("record", "A"), ("record", "B")],
            replan_steps=[("record", "X"), ("record", "Y")],
        )
        agent = self.build([recorder], planner)

        project = agent.start_goal("Force")

        assert recorder.executed == ["A", "X", "Y", "B"]
        assert [t.order for t in self.steps(project)] == [1, 2, 3, 4]
        assert planner.requests[-1].current_step.description == "A"

    def test_tail_reorder_cancels_unmentioned_steps(self):
        recorder = ScriptedExecutor("record", [finished(replan=ReplanType.FORCE)])
        agent = self.build([recorder], ReorderingPlanner())

        project = agent.start_goal("Reorder")

        assert recorder.executed == ["A", "C", "D"]
        statuses = {t.description: t.status for t in self.steps(project)}
        assert statuses["B"] == TaskStatus.CANCELLED

    def test_planner_can_disable_replanning(self):
        recorder = ScriptedExecutor("record", [finished(replan=ReplanType.FORCE)])
        planner = StaticPlanner([("record", "A")], replan_steps=[("record", "X")], allow_replan=False)
        agent = self.build([recorder], planner)

        agent.start_goal("No replan")

        assert recorder.executed == ["A"]
        assert len(planner.requests) == 1

    def test_config_can_disable_replanning(self):
        recorder = ScriptedExecutor("record", [finished(replan=ReplanType.FORCE)])
        planner = StaticPlanner([("record", "A")], replan_steps=[("record", "X")])
        agent = self.build([recorder], planner, allow_replan=False)

        agent.start_goal("No replan")

        assert recorder.executed == ["A"]

    def test_legacy_dict_result(self):
        recorder = ScriptedExecutor("record", [lambda params: {"finished": True, "allowReplan": True}])
        planner = StaticPlanner([("record", "A")], replan_steps=[("record", "X")])
        agent = self.build([recorder], planner)

        agent.start_goal("Legacy")

        assert recorder.executed == ["A", "X"]


class TestProgressAndAsync(LoopTestBase):
    """Steps that stay in progress."""

    def test_progress_keeps_step_in_progress(self):
        recorder = ScriptedExecutor("record", [StepResult(response=StepResponse(status="50% done"))])
        agent = self.build([recorder], StaticPlanner([("record", "Long"), ("record", "After")]))

        project = agent.start_goal("Progress")
        long_step, after = self.steps(project)
        assert long_step.status == TaskStatus.IN_PROGRESS
        assert after.status == TaskStatus.PENDING

        agent.loop.run(project.id)
        assert recorder.executed == ["Long"]

        agent.loop.complete_step(long_step.id, finished("all done"))
        assert long_step.status == TaskStatus.COMPLETED
        assert recorder.executed == ["Long", "After"]

    def test_async_without_project_waits_for_complete_step(self):
        recorder = ScriptedExecutor("record", [StepResult(is_async=True)])
        agent = self.build([recorder], StaticPlanner([("record", "Background"), ("record", "After")]))

        project = agent.start_goal("Async")
        background = self.steps(project)[0]
        assert project.metadata.loop_state == LoopPhase.DELEGATING

        agent.loop.complete_step(background.id, finished())
        assert recorder.executed == ["Background", "After"]

    def test_late_result_for_terminal_step_ignored(self):
        recorder = ScriptedExecutor("record")
        agent = self.build([recorder], StaticPlanner([("record", "Only")]))
        project = agent.start_goal("Late")
        step = self.steps(project)[0]
        original = step.props.result

        agent.loop.complete_step(step.id, finished("late"))

        assert step.props.result is original

    def test_final_message_replaces_partial_post(self):
        def talk(params):
            params.partial_response("Looking things up")
            return StepResult(
                finished=True,
                response=StepResponse(status="Found 3 results", message="Here you go"),
            )

        recorder = ScriptedExecutor("record", [talk])
        agent = self.build([recorder], StaticPlanner([("record", "Search")]))

        project = agent.start_goal("Search", message=Message("Search"))

        step = self.steps(project)[0]
        partial_post = self.chat.replies[0]
        assert self.chat.texts == ["Looking things up"]
        assert [u["text"] for u in self.chat.updates] == ["Found 3 results", "Here you go"]
        assert self.chat.updates[0]["props"] == {"partial": True}
        final = self.chat.updates[1]
        assert final["post_id"] == partial_post.id
        assert final["props"]["partial"] is False
        assert final["props"]["task_id"] == step.id
        assert step.props.partial_post_id is None
        assert step.props.response_post_id == partial_post.id

    def test_reply_without_partial_post(self):
        recorder = ScriptedExecutor("record", [finished("All done")])
        agent = self.build([recorder], StaticPlanner([("record", "Answer")]))

        project = agent.start_goal("Answer", message=Message("Answer"))

        step = self.steps(project)[0]
        assert self.chat.texts == ["All done"]
        assert self.chat.updates == []
        assert step.props.response_post_id == self.chat.replies[0].id


class TestDelegatingStep(LoopTestBase):
    """A step that waits on a child project."""

    def test_step_completes_when_child_project_completes(self):
        store = self.store

        def delegate(params):
            child = store.create_project(
                "child-1", owner="agent", parent_task_id=params.step.id, tasks=[Task("sole task")]
            )
            return StepResult(is_async=True, project_id=child.id)

        delegator = ScriptedExecutor("delegate", [delegate], completion=finished("child finished"))
        recorder = ScriptedExecutor("record")
        planner = StaticPlanner([("record", "A"), ("delegate", "B")])
        agent = self.build([delegator, recorder], planner)

        project = agent.start_goal("Delegate")

        a, b = self.steps(project)
        assert a.status == TaskStatus.COMPLETED
        assert b.status == TaskStatus.IN_PROGRESS
        assert project.metadata.loop_state == LoopPhase.DELEGATING
        child = store.get_project(b.props.child_project_id)
        assert child.name == "child-1"
        assert len(self.steps(project)) == 2

        with pytest.raises(InvalidTransitionError):
            store.complete_task(b.id)

        store.complete_task(store.get_project_tasks(child.id)[0].id)

        assert b.status == TaskStatus.COMPLETED
        assert b.props.result.response.message == "child finished"
        assert [p.id for p in delegator.completed_children] == [child.id]
        assert project.metadata.loop_state == LoopPhase.DONE
        assert agent.coordinator.pending_delegations() == []

    def test_unimplemented_child_completion_is_reported(self):
        store = self.store

        def delegate(params):
            child = store.create_project(
                "child", owner="agent", parent_task_id=params.step.id, tasks=[Task("sub")]
            )
            return StepResult(is_async=True, project_id=child.id)

        delegator = ScriptedExecutor("delegate", [delegate])
        agent = self.build([delegator], StaticPlanner([("delegate", "B")]))

        project = agent.start_goal("Delegate")
        step = self.steps(project)[0]
        child_id = step.props.child_project_id
        store.complete_task(store.get_project_tasks(child_id)[0].id)

        assert step.status == TaskStatus.COMPLETED
        assert step.props.result.is_unimplemented_completion

    def test_mismatched_delegation_raises(self):
        store = self.store

        def bad(params):
            unrelated = store.create_project("unrelated", tasks=[Task("x")])
            return StepResult(is_async=True, project_id=unrelated.id)

        agent = self.build([ScriptedExecutor("delegate", [bad])], StaticPlanner([("delegate", "B")]))

        with pytest.raises(DelegationInvariantViolation):
            agent.start_goal("Bad delegation")

    def test_delegation_to_unknown_project_raises(self):
        bad = ScriptedExecutor("delegate", [StepResult(is_async=True, project_id="nowhere")])
        agent = self.build([bad], StaticPlanner([("delegate", "B")]))

        with pytest.raises(DelegationInvariantViolation):
            agent.start_goal("Bad delegation")


class TestAgentFacade(LoopTestBase):
    """Agent level hooks around the loop."""

    def test_completion_callbacks_and_capabilities(self):
        recorder = ScriptedExecutor("record", description="Record the step")
        agent = self.build([recorder], StaticPlanner([("record", "Only step")]))
        completed = []
        agent.on_project_completed(completed.append)

        project = agent.start_goal("Short goal")

        assert [p.id for p in completed] == [project.id]
        assert agent.get_executor_capabilities() == {"record": "Record the step"}
        assert agent.loop.get_phase(project.id) == LoopPhase.DONE

    def test_register_executor_under_custom_type(self):
        agent = self.build([])

        agent.register_executor(ScriptedExecutor("record"), step_type="[archive]")

        assert "archive" in agent.get_executor_capabilities()

    def test_shutdown_stops_completion_hook(self):
        recorder = ScriptedExecutor("record")
        agent = self.build([recorder])
        completed = []
        agent.on_project_completed(completed.append)
        agent.shutdown()

        project = self.store.create_project("Manual", owner="agent", tasks=[Task("only")])
        self.store.complete_task(self.steps(project)[0].id)

        assert completed == []
        assert agent.propagator.is_subscribed is False
