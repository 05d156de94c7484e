"""
Integration tests for query_pipeline.py
Runs whole turns through the LangGraph pipeline against in-memory data.
"""
from unittest.mock import MagicMock

import pytest

from mall_assistant.agents.boundary_checker import BoundaryViolation
from mall_assistant.agents.entity_disambiguation_agent import DisambiguationResult, DisambiguationStatus
from mall_assistant.core.exceptions import UsageError
from mall_assistant.core.models import (
    AggregationResult,
    ComparisonResult,
    ConversationContext,
    QueryType,
    UserIntent,
)
from mall_assistant.agents.intent_classifier import QuerySlots
from mall_assistant.orchestration.aggregation_executor import AggregationExecutor
from mall_assistant.orchestration.comparison_executor import ComparisonExecutor
from mall_assistant.orchestration.query_pipeline import (
    QueryPipeline,
    TurnStatus,
    build_analytical_plan,
    is_set_level,
)
from mall_assistant.repositories.merchant_repository import MerchantRepository


def build_pipeline(repository, history_provider):
    return QueryPipeline(
        repository=repository,
        aggregation_executor=AggregationExecutor(history_provider=history_provider),
        comparison_executor=ComparisonExecutor(history_provider=history_provider),
    )


@pytest.fixture
def pipeline(repository, history_provider):
    return build_pipeline(repository, history_provider)


@pytest.fixture
def ambiguous_pipeline(make_merchant, history_provider):
    repository = MerchantRepository([
        make_merchant("X1", "星光天地汇", floor="L2"),
        make_merchant("X2", "星光天地里", floor="L3"),
    ])
    return build_pipeline(repository, history_provider)


class TestSingleMerchantTurns:
    """Test turns about one merchant."""

    def test_health_query(self, pipeline):
        outcome = pipeline.run("海底捞火锅最近怎么样")

        assert outcome.status == TurnStatus.COMPLETED
        assert outcome.intent.intent == UserIntent.HEALTH_QUERY
        assert outcome.merchant_id == "M001"
        assert outcome.merchant_name == "海底捞火锅"
        assert outcome.batches == [["t1"]]
        assert outcome.results["t1"]["merchant_id"] == "M001"
        assert outcome.results["t1"]["weakest_metric"] == "经营表现"

    def test_short_name_resolves(self, pipeline):
        outcome = pipeline.run("海底捞最近怎么样")

        assert outcome.status == TurnStatus.COMPLETED
        assert outcome.merchant_id == "M001"
        assert [c.merchant_id for c in outcome.candidates] == ["M001", "M008"]

    def test_pronoun_follow_up_uses_context(self, pipeline):
        context = ConversationContext(prior_merchant_id="M002", prior_merchant_name="星巴克咖啡")

        outcome = pipeline.run("它有什么风险", context=context)

        assert outcome.status == TurnStatus.COMPLETED
        assert outcome.intent.intent == UserIntent.RISK_DIAGNOSIS
        assert outcome.merchant_id == "M002"
        assert outcome.batches == [["t1", "t2"], ["t3"]]
        assert outcome.results["t1"]["signals"] == []
        assert outcome.results["t2"]["status"] == "delegated"

    def test_comparison_with_resolved_merchant(self, pipeline):
        outcome = pipeline.run("海底捞火锅和同类商户对比")

        assert outcome.status == TurnStatus.COMPLETED
        result = outcome.results["t1"]
        assert isinstance(result, ComparisonResult)
        assert result.target == "same_category"
        assert result.current.merchant_id == "M001"

    def test_resolution_override_skips_recognition(self, ambiguous_pipeline):
        choice = DisambiguationResult.resolved("X2", "星光天地里", 1.0, "用户明确选择")

        outcome = ambiguous_pipeline.run("星光天地怎么样", resolution=choice)

        assert outcome.status == TurnStatus.COMPLETED
        assert outcome.candidates == []
        assert outcome.merchant_id == "X2"
        assert outcome.results["t1"]["merchant_id"] == "X2"


class TestShortCircuits:
    """Test turns that end before execution."""

    def test_ambiguity_asks_for_clarification(self, ambiguous_pipeline):
        outcome = ambiguous_pipeline.run("星光天地怎么样")

        assert outcome.status == TurnStatus.NEEDS_CLARIFICATION
        assert outcome.disambiguation.status == DisambiguationStatus.NEEDS_CLARIFICATION
        assert [c.merchant_id for c in outcome.disambiguation.candidates] == ["X1", "X2"]
        assert "1. 星光天地汇" in outcome.message
        assert outcome.plan is None
        assert outcome.results == {}

    def test_no_match_for_merchant_bound_intent(self, pipeline):
        outcome = pipeline.run("麦当劳怎么样")

        assert outcome.status == TurnStatus.NO_MATCH
        assert outcome.intent.intent == UserIntent.HEALTH_QUERY
        assert outcome.plan is None
        assert outcome.merchant_id is None

    def test_general_chat_falls_back_to_generation(self, pipeline):
        outcome = pipeline.run("你好")

        assert outcome.status == TurnStatus.FALLBACK
        assert outcome.plan is not None
        assert outcome.plan.tasks == []
        assert outcome.results == {}

    def test_missing_merchant_reported_as_error(self, pipeline):
        outcome = pipeline.run("对比海底捞和麦当劳")

        assert outcome.status == TurnStatus.ERROR
        assert outcome.message == "Merchant not found: 麦当劳"

    def test_empty_input_raises(self, pipeline):
        with pytest.raises(UsageError):
            pipeline.run("  ")


class TestBoundaryAndContextSwitch:
    """Test refusals and context switches ahead of classification."""

    def test_modification_is_refused(self, pipeline):
        outcome = pipeline.run("把海底捞火锅的租金改成5万")

        assert outcome.status == TurnStatus.OUT_OF_SCOPE
        assert outcome.boundary.violation == BoundaryViolation.MODIFICATION
        assert outcome.message.startswith("😅 我无法直接修改数据")
        assert outcome.intent is None
        assert outcome.plan is None
        assert outcome.results == {}

    def test_refused_turn_never_reaches_classifier(self, repository, history_provider):
        classifier = MagicMock()
        pipeline = QueryPipeline(
            repository=repository,
            classifier=classifier,
            aggregation_executor=AggregationExecutor(history_provider=history_provider),
            comparison_executor=ComparisonExecutor(history_provider=history_provider),
        )

        outcome = pipeline.run("删除星巴克咖啡的档案")

        assert outcome.status == TurnStatus.OUT_OF_SCOPE
        classifier.classify.assert_not_called()

    def test_prediction_needs_human(self, pipeline):
        outcome = pipeline.run("预测海底捞火锅下季度营收")

        assert outcome.status == TurnStatus.OUT_OF_SCOPE
        assert outcome.boundary.needs_human is True
        assert outcome.boundary.violation == BoundaryViolation.PREDICTION

    def test_switch_drops_carried_merchant(self, pipeline):
        context = ConversationContext(prior_merchant_id="M002", prior_merchant_name="星巴克咖啡")

        outcome = pipeline.run("换个商户看看风险呢", context=context)

        assert outcome.context_switched is True
        assert outcome.status == TurnStatus.NO_MATCH
        assert outcome.merchant_id is None

    def test_follow_up_keeps_carried_merchant(self, pipeline):
        context = ConversationContext(prior_merchant_id="M002", prior_merchant_name="星巴克咖啡")

        outcome = pipeline.run("它有什么风险", context=context)

        assert outcome.context_switched is False
        assert outcome.merchant_id == "M002"

    def test_resolution_override_is_not_screened_again(self, ambiguous_pipeline):
        choice = DisambiguationResult.resolved("X2", "星光天地里", 1.0, "用户明确选择")

        outcome = ambiguous_pipeline.run("星光天地未来怎么样", resolution=choice)

        assert outcome.status == TurnStatus.COMPLETED
        assert outcome.boundary is None
        assert outcome.merchant_id == "X2"


class TestSetLevelTurns:
    """Test aggregations and head-to-head comparisons."""

    def test_risk_statistics(self, pipeline):
        outcome = pipeline.run("有几家高风险商户？")

        assert outcome.status == TurnStatus.COMPLETED
        assert outcome.intent.intent == UserIntent.RISK_STATISTICS
        assert outcome.candidates == []
        assert outcome.disambiguation is None
        result = outcome.results["t1"]
        assert isinstance(result, AggregationResult)
        assert result.total == 2
        assert result.breakdown == {"high": 1, "critical": 1}
        assert {m.id for m in result.merchant_list} == {"M001", "M007"}

    def test_health_overview_for_category(self, pipeline):
        outcome = pipeline.run("餐饮商户平均健康度是多少")

        result = outcome.results["t1"]
        assert outcome.intent.intent == UserIntent.HEALTH_OVERVIEW
        assert result.operation.value == "avg"
        # M001 45, M002 88, M005 58, M007 28, M008 64
        assert result.total == pytest.approx((45 + 88 + 58 + 28 + 64) / 5)
        assert len(result.merchant_list) == 5

    def test_merchant_vs_merchant(self, pipeline):
        outcome = pipeline.run("对比海底捞和星巴克")

        assert outcome.status == TurnStatus.COMPLETED
        assert outcome.candidates == []
        result = outcome.results["t1"]
        assert result.target == "merchant_vs_merchant"
        assert (result.current.merchant_id, result.baseline.merchant_id) == ("M001", "M002")

    def test_snapshot_argument_overrides_repository(self, pipeline, make_merchant):
        snapshot = (make_merchant("S1", "甲店", risk_level="high"),)

        outcome = pipeline.run("有几家高风险商户", snapshot=snapshot)

        assert outcome.results["t1"].total == 1


class TestHelpers:

    def test_is_set_level(self):
        assert is_set_level(UserIntent.AGGREGATION_QUERY, QuerySlots())
        assert is_set_level(UserIntent.COMPARISON_QUERY, QuerySlots(merchants=["甲", "乙"]))
        assert not is_set_level(UserIntent.COMPARISON_QUERY, QuerySlots())
        assert not is_set_level(UserIntent.HEALTH_QUERY, QuerySlots())

    def test_build_analytical_plan(self):
        plan = build_analytical_plan(QueryType.AGGREGATION, {
            "operation": "avg",
            "field": "totalScore",
            "group_by": "riskLevel",
            "filters": {"floor": ["L1"]},
            "time_range": {"period": "last_month"},
        })

        assert plan.aggregation.operation.value == "avg"
        assert plan.aggregation.group_by == "riskLevel"
        assert plan.entities.filters.floor == ["L1"]
        assert plan.entities.time_range.period == "last_month"
