"""
Unit tests for task_planner.py
Tests intent templates, plan attributes, validation and Kahn batching.
"""
import pytest

from mall_assistant.core.exceptions import PlanStructureError, UsageError
from mall_assistant.core.models import ConversationContext, RecentMessage, UserIntent
from mall_assistant.orchestration.task_planner import (
    ExecutionPlan,
    PlanEntities,
    PlanIssueKind,
    PlanStrategy,
    Task,
    TaskPlanner,
)


@pytest.fixture
def planner():
    return TaskPlanner()


@pytest.fixture
def merchant():
    return PlanEntities(merchant_id="M001", merchant_name="海底捞火锅")


def actions(plan):
    return [t.action for t in plan.tasks]


class TestIntentTemplates:
    """Test per-intent task templates."""

    def test_solution_recommend_template(self, planner, merchant):
        plan = planner.plan(UserIntent.SOLUTION_RECOMMEND, merchant)

        assert actions(plan) == ["detect_risks", "diagnose", "match_cases", "generate_solution"]
        deps = {t.id: t.depends_on for t in plan.tasks}
        assert deps == {"t1": [], "t2": [], "t3": ["t2"], "t4": ["t2", "t3"]}
        assert plan.strategy == PlanStrategy.RULE_ENGINE

    def test_health_query_without_follow_up(self, planner, merchant):
        plan = planner.plan(UserIntent.HEALTH_QUERY, merchant)

        assert actions(plan) == ["analyze_health"]
        assert plan.parallelizable is False

    def test_health_query_speculative_follow_up_from_recent_messages(self, planner, merchant):
        context = ConversationContext(recent_messages=[RecentMessage(content="营收下降了很多")])

        plan = planner.plan(UserIntent.HEALTH_QUERY, merchant, context)

        assert actions(plan) == ["analyze_health", "detect_risks"]
        assert plan.tasks[1].depends_on == ["t1"]

    def test_health_query_speculative_follow_up_after_diagnosis(self, planner, merchant):
        context = ConversationContext(last_intent=UserIntent.RISK_DIAGNOSIS)

        plan = planner.plan(UserIntent.HEALTH_QUERY, merchant, context)

        assert "detect_risks" in actions(plan)

    def test_only_last_three_messages_are_considered(self, planner, merchant):
        context = ConversationContext(recent_messages=[
            RecentMessage(content="有什么风险"),
            RecentMessage(content="好的"),
            RecentMessage(content="谢谢"),
            RecentMessage(content="再看看"),
        ])

        plan = planner.plan(UserIntent.HEALTH_QUERY, merchant, context)

        assert actions(plan) == ["analyze_health"]

    def test_risk_statistics_defaults_to_count_by_risk_level(self, planner):
        plan = planner.plan(UserIntent.RISK_STATISTICS, PlanEntities())

        assert actions(plan) == ["aggregate"]
        params = plan.tasks[0].params
        assert params["operation"] == "count"
        assert params["group_by"] == "riskLevel"
        assert plan.strategy == PlanStrategy.HYBRID

    def test_health_overview_defaults_to_average_score(self, planner):
        plan = planner.plan(UserIntent.HEALTH_OVERVIEW, PlanEntities())

        params = plan.tasks[0].params
        assert params["operation"] == "avg"
        assert params["field"] == "totalScore"

    def test_aggregation_query_keeps_request_slots(self, planner):
        entities = PlanEntities(operation="sum", field="revenue", filters={"category": ["餐饮-火锅"]})

        plan = planner.plan(UserIntent.AGGREGATION_QUERY, entities)

        params = plan.tasks[0].params
        assert params["operation"] == "sum"
        assert params["field"] == "revenue"
        assert params["filters"] == {"category": ["餐饮-火锅"]}

    def test_comparison_template_carries_target(self, planner):
        entities = PlanEntities(merchants=["海底捞", "星巴克"], comparison_target="merchant_vs_merchant")

        plan = planner.plan(UserIntent.COMPARISON_QUERY, entities)

        assert actions(plan) == ["compare"]
        assert plan.tasks[0].params["merchants"] == ["海底捞", "星巴克"]
        assert plan.tasks[0].params["comparison_target"] == "merchant_vs_merchant"

    def test_composite_template(self, planner, merchant):
        plan = planner.plan(UserIntent.COMPOSITE_QUERY, merchant)

        assert actions(plan) == ["analyze_health", "detect_risks", "diagnose"]
        assert plan.parallelizable is True

    @pytest.mark.parametrize("intent", [UserIntent.GENERAL_CHAT, UserIntent.TREND_ANALYSIS, UserIntent.UNKNOWN])
    def test_no_task_intents_fall_back_to_generation(self, planner, intent):
        plan = planner.plan(intent, PlanEntities())

        assert plan.tasks == []
        assert plan.strategy == PlanStrategy.GENERATIVE_FALLBACK


class TestPlanAttributes:
    """Test parallelizability and confidence scoring."""

    def test_parallelizable_when_two_tasks_are_independent(self, planner, merchant):
        plan = planner.plan(UserIntent.RISK_DIAGNOSIS, merchant)

        assert plan.parallelizable is True

    def test_confidence_penalizes_extra_tasks(self, planner, merchant):
        # 4 tasks (-0.1) and 3 edges (no penalty)
        plan = planner.plan(UserIntent.SOLUTION_RECOMMEND, merchant)

        assert plan.confidence == pytest.approx(0.9)

    def test_confidence_boosted_by_expected_follow_up(self, planner, merchant):
        context = ConversationContext(last_intent=UserIntent.HEALTH_QUERY)

        plan = planner.plan(UserIntent.SOLUTION_RECOMMEND, merchant, context)

        assert plan.confidence == pytest.approx(1.0)

    def test_confidence_is_clamped(self, planner):
        tasks = [Task(id=f"t{i}", action="diagnose", params={"merchant_id": "M001"}) for i in range(12)]

        assert planner._calculate_confidence(tasks, ConversationContext()) == pytest.approx(0.3)


class TestValidatePlan:
    """Test structural validation."""

    def test_planner_output_is_valid(self, planner, merchant):
        for intent in (UserIntent.SOLUTION_RECOMMEND, UserIntent.RISK_DIAGNOSIS, UserIntent.COMPOSITE_QUERY):
            assert planner.validate_plan(planner.plan(intent, merchant)).valid

    @pytest.mark.parametrize("intent", [
        UserIntent.HEALTH_QUERY,
        UserIntent.RISK_DIAGNOSIS,
        UserIntent.SOLUTION_RECOMMEND,
        UserIntent.COMPOSITE_QUERY,
        UserIntent.RISK_STATISTICS,
    ])
    def test_self_dependency_is_a_cycle(self, planner, merchant, intent):
        plan = planner.plan(intent, merchant)
        for task in plan.tasks:
            broken = plan.model_copy(deep=True)
            target = next(t for t in broken.tasks if t.id == task.id)
            target.depends_on.append(target.id)

            result = planner.validate_plan(broken)

            assert result.valid is False
            assert result.has(PlanIssueKind.CYCLE)

    def test_two_task_cycle(self, planner):
        plan = ExecutionPlan(
            intent=UserIntent.RISK_DIAGNOSIS,
            strategy=PlanStrategy.RULE_ENGINE,
            tasks=[
                Task(id="a", action="diagnose", params={"merchant_id": "M1"}, depends_on=["b"]),
                Task(id="b", action="diagnose", params={"merchant_id": "M1"}, depends_on=["a"]),
            ],
        )

        assert planner.validate_plan(plan).has(PlanIssueKind.CYCLE)

    def test_dangling_dependency(self, planner):
        plan = ExecutionPlan(
            intent=UserIntent.RISK_DIAGNOSIS,
            strategy=PlanStrategy.RULE_ENGINE,
            tasks=[Task(id="t1", action="diagnose", params={"merchant_id": "M1"}, depends_on=["t9"])],
        )

        result = planner.validate_plan(plan)

        assert not result.valid
        assert result.has(PlanIssueKind.DANGLING_DEPENDENCY)
        assert not result.has(PlanIssueKind.CYCLE)
        assert "t9" in result.errors[0]

    def test_missing_merchant_id(self, planner):
        plan = planner.plan(UserIntent.RISK_DIAGNOSIS, PlanEntities())

        result = planner.validate_plan(plan)

        assert not result.valid
        assert result.has(PlanIssueKind.MISSING_MERCHANT_ID)
        assert len(result.issues) == 3

    def test_missing_merchant_id_raises_usage_error_on_request(self, planner):
        result = planner.validate_plan(planner.plan(UserIntent.HEALTH_QUERY, PlanEntities()))

        with pytest.raises(UsageError):
            result.raise_for_usage_errors()

    def test_entity_independent_actions_need_no_merchant(self, planner):
        plan = planner.plan(UserIntent.AGGREGATION_QUERY, PlanEntities())

        assert planner.validate_plan(plan).valid

    def test_merchant_vs_merchant_compare_needs_no_merchant_id(self, planner):
        plan = planner.plan(
            UserIntent.COMPARISON_QUERY,
            PlanEntities(merchants=["海底捞", "星巴克"], comparison_target="merchant_vs_merchant"),
        )

        assert planner.validate_plan(plan).valid

    def test_validation_does_not_raise_for_structural_errors(self, planner):
        plan = ExecutionPlan(
            intent=UserIntent.RISK_DIAGNOSIS,
            strategy=PlanStrategy.RULE_ENGINE,
            tasks=[Task(id="t1", action="diagnose", params={"merchant_id": "M1"}, depends_on=["t1", "t7"])],
        )

        result = planner.validate_plan(plan)
        result.raise_for_usage_errors()

        assert {i.kind for i in result.issues} == {PlanIssueKind.CYCLE, PlanIssueKind.DANGLING_DEPENDENCY}


class TestExecutionOrder:
    """Test Kahn batching."""

    def test_diamond_graph(self):
        tasks = [
            Task(id="A", action="x"),
            Task(id="B", action="x", depends_on=["A"]),
            Task(id="C", action="x", depends_on=["A"]),
            Task(id="D", action="x", depends_on=["B", "C"]),
        ]

        assert TaskPlanner.get_execution_order(tasks) == [["A"], ["B", "C"], ["D"]]

    def test_solution_plan_batches(self, planner, merchant):
        plan = planner.plan(UserIntent.SOLUTION_RECOMMEND, merchant)

        assert TaskPlanner.get_execution_order(plan.tasks) == [["t1", "t2"], ["t3"], ["t4"]]

    def test_batch_keeps_plan_order(self):
        tasks = [Task(id="z", action="x"), Task(id="a", action="x"), Task(id="m", action="x")]

        assert TaskPlanner.get_execution_order(tasks) == [["z", "a", "m"]]

    def test_empty_task_list(self):
        assert TaskPlanner.get_execution_order([]) == []

    def test_cycle_raises_plan_structure_error(self):
        tasks = [
            Task(id="a", action="x", depends_on=["b"]),
            Task(id="b", action="x", depends_on=["a"]),
        ]

        with pytest.raises(PlanStructureError):
            TaskPlanner.get_execution_order(tasks)
