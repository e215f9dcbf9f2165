"""
Tests for the planners and the chat model helpers they rely on.
"""

import json

import pytest
from langchain_core.language_models.fake_chat_models import FakeListChatModel

from step_orchestrator.config import LLMConfig, OrchestratorConfig, RateLimitConfig
from step_orchestrator.core.planner import ChatModelPlanner, SingleStepPlanner, StaticPlanner
from step_orchestrator.models import PlanRequest, Project, StepDescriptor, Task, TaskType
from step_orchestrator.utils.exceptions import ConfigurationError, LLMError, PlanningError
from step_orchestrator.utils.llm_client import invoke_with_rate_limit, parse_json_response
from step_orchestrator.utils.rate_limiter import RateLimiter

STEP_TYPES = {
    "research": "Look things up",
    "summarize": "Summarize findings",
}


def make_request(reason="initial", remaining=None):
    project = Project(name="Write a market report")
    return PlanRequest(
        project=project,
        goal=project.name,
        reason=reason,
        remaining_steps=remaining or [],
        available_step_types=dict(STEP_TYPES),
    )


def llm_planner(*responses):
    llm = FakeListChatModel(responses=list(responses))
    return ChatModelPlanner(llm, rate_limiter=RateLimiter(0, 0, 0))


class ExplodingModel:
    def invoke(self, messages, **kwargs):
        raise RuntimeError("connection reset")


class TestSimplePlanners:
    """Planners without a model behind them."""

    def test_single_step_planner(self):
        planner = SingleStepPlanner("next-step")

        plan = planner.plan_steps(make_request())

        assert [s.step_type for s in plan.steps] == ["next-step"]
        assert planner.allow_replan is False

    def test_static_planner_initial_and_replan(self):
        planner = StaticPlanner(
            [("research", "Find sources"), StepDescriptor("summarize", "Write it up")],
            replan_steps=[("summarize", "Shorter summary")],
        )

        initial = planner.plan_steps(make_request())
        replanned = planner.plan_steps(make_request(reason="replan"))

        assert [s.description for s in initial.steps] == ["Find sources", "Write it up"]
        assert [s.description for s in replanned.steps] == ["Shorter summary"]
        assert [r.reason for r in planner.requests] == ["initial", "replan"]
        assert not initial.reorders_tail

    def test_static_planner_without_replan_steps(self):
        planner = StaticPlanner([("research", "Find sources")])

        assert planner.plan_steps(make_request(reason="replan")).steps == []


class TestChatModelPlanner:
    """Parsing of chat model plans."""

    def test_plain_json_plan(self):
        planner = llm_planner(json.dumps({
            "reasoning": "Research first",
            "steps": [
                {"stepType": "research", "description": "Find sources"},
                {"stepType": "[summarize]", "description": "Write it up"},
            ],
        }))

        plan = planner.plan_steps(make_request())

        assert [s.step_type for s in plan.steps] == ["research", "summarize"]
        assert plan.reasoning == "Research first"

    def test_fenced_json_plan(self):
        planner = llm_planner(
            "Here is the plan:\n```json\n"
            '{"steps": [{"stepType": "research", "description": "Find sources"}]}\n```'
        )

        plan = planner.plan_steps(make_request())

        assert [s.description for s in plan.steps] == ["Find sources"]

    def test_unknown_step_types_dropped(self):
        planner = llm_planner(json.dumps({"steps": [
            {"stepType": "translate", "description": "Translate"},
            {"stepType": "research", "description": "Find sources"},
        ]}))

        plan = planner.plan_steps(make_request())

        assert [s.step_type for s in plan.steps] == ["research"]

    def test_max_steps_caps_plan(self):
        steps = [{"stepType": "research", "description": f"Source {i}"} for i in range(5)]
        planner = llm_planner(json.dumps({"steps": steps}))
        planner.max_steps = 2

        assert len(planner.plan_steps(make_request()).steps) == 2

    def test_existing_ids_must_reference_remaining_steps(self):
        kept = Task("Write it up", type=TaskType.STEP.value, props={"step_type": "summarize"})
        planner = llm_planner(json.dumps({"steps": [
            {"stepType": "research", "description": "More sources", "existingId": "missing"},
            {"stepType": "summarize", "description": "Write it up", "existingId": kept.id},
        ]}))

        plan = planner.plan_steps(make_request(reason="replan", remaining=[kept]))

        assert [s.existing_id for s in plan.steps] == [None, kept.id]
        assert plan.reorders_tail

    def test_invalid_json_raises_planning_error(self):
        planner = llm_planner("I would start with some research.")

        with pytest.raises(PlanningError) as exc_info:
            planner.plan_steps(make_request())

        assert exc_info.value.error_code == "PLANNING_ERROR"
        assert exc_info.value.raw_response == "I would start with some research."

    def test_missing_steps_list(self):
        planner = llm_planner('{"reasoning": "nothing to do"}')

        with pytest.raises(PlanningError):
            planner.plan_steps(make_request())

    def test_empty_initial_plan_rejected_but_empty_replan_allowed(self):
        planner = llm_planner('{"steps": []}', '{"steps": []}')

        with pytest.raises(PlanningError):
            planner.plan_steps(make_request())
        assert planner.plan_steps(make_request(reason="replan")).steps == []

    def test_model_failure_raises_llm_error(self):
        planner = ChatModelPlanner(ExplodingModel(), rate_limiter=RateLimiter(0, 0, 0))

        with pytest.raises(LLMError) as exc_info:
            planner.plan_steps(make_request())

        assert exc_info.value.details["original_error"] == "connection reset"

    def test_from_config_requires_llm(self):
        with pytest.raises(ConfigurationError):
            ChatModelPlanner.from_config(OrchestratorConfig())

    def test_from_config(self):
        config = OrchestratorConfig(
            allow_replan=False,
            llm=LLMConfig(api_key="test-key"),
            rate_limit=RateLimitConfig(requests_per_minute=30, min_request_delay=0),
        )

        planner = ChatModelPlanner.from_config(config, max_steps=3)

        assert planner.allow_replan is False
        assert planner.max_steps == 3
        assert planner.rate_limiter.requests_per_minute == 30


class TestLLMHelpers:
    """parse_json_response and invoke_with_rate_limit."""

    def test_parse_plain_object(self):
        assert parse_json_response('{"a": 1}') == {"a": 1}

    def test_parse_bare_fence(self):
        assert parse_json_response('```\n{"a": 1}\n```') == {"a": 1}

    def test_parse_object_inside_prose(self):
        assert parse_json_response('Sure! {"a": 1} Hope that helps.') == {"a": 1}

    @pytest.mark.parametrize("content", ["", "[1, 2]", "not json", None])
    def test_parse_rejects(self, content):
        with pytest.raises(ValueError):
            parse_json_response(content)

    def test_invoke_returns_model_response(self):
        llm = FakeListChatModel(responses=["hello"])

        response = invoke_with_rate_limit(llm, ["hi"], rate_limiter=RateLimiter(0, 0, 0))

        assert response.content == "hello"

    def test_invoke_records_request_on_limiter(self):
        limiter = RateLimiter(requests_per_minute=100, requests_per_second=0, min_request_delay=0)

        invoke_with_rate_limit(FakeListChatModel(responses=["ok"]), ["hi"], rate_limiter=limiter)

        assert limiter.get_stats()["requests_in_window"] == 1
