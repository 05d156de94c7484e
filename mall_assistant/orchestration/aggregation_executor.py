"""
Aggregation Executor - set-valued statistics over the merchant snapshot.

filter -> (time range) -> group -> reduce -> compare to baseline

Supported operations: count, sum, avg, max, min.
Group-by selectors: riskLevel, category, floor.
"""
import logging
from typing import Dict, List, Optional, Sequence

from mall_assistant.core.exceptions import UsageError
from mall_assistant.core.models import (
    AggregationConfig,
    AggregationOperation,
    AggregationResult,
    AnalyticalPlan,
    BaselineComparison,
    Merchant,
    MerchantSummary,
    QueryFilters,
    TimeRange,
)
from mall_assistant.services.history_provider import HistoryProvider, SimulatedHistoryProvider
from mall_assistant.services.query_cache import QueryCache
from mall_assistant.utils.formatting import clean_number, format_percentage
from mall_assistant.utils.merchant_fields import (
    FIELD_SELECTORS,
    GROUP_SELECTORS,
    get_field_value,
    get_group_key,
)

logger = logging.getLogger(__name__)

OPERATION_NAMES = {
    AggregationOperation.COUNT: "计数",
    AggregationOperation.SUM: "求和",
    AggregationOperation.AVG: "平均值",
    AggregationOperation.MAX: "最大值",
    AggregationOperation.MIN: "最小值",
}


def apply_filters(merchants: Sequence[Merchant], filters: Optional[QueryFilters]) -> List[Merchant]:
    """
    Keep merchants matching every present filter.

    Absent or empty filter fields do not restrict. Score bounds are inclusive.
    """
    filtered = list(merchants)
    if filters is None:
        return filtered

    if filters.risk_level:
        filtered = [m for m in filtered if m.risk_level in filters.risk_level]
    if filters.category:
        filtered = [m for m in filtered if m.category in filters.category]
    if filters.floor:
        filtered = [m for m in filtered if m.floor in filters.floor]
    if filters.health_score_min is not None:
        filtered = [m for m in filtered if m.total_score >= filters.health_score_min]
    if filters.health_score_max is not None:
        filtered = [m for m in filtered if m.total_score <= filters.health_score_max]
    return filtered


def validate_config(config: AggregationConfig) -> None:
    """
    Reject malformed requests before touching the data, so an empty
    filtered set does not hide a bad selector.

    Raises:
        UsageError: Missing or unknown field selector, unknown group-by
    """
    if config.operation != AggregationOperation.COUNT:
        if not config.field:
            raise UsageError(f"{config.operation.value} operation requires a field")
        if config.field not in FIELD_SELECTORS:
            raise UsageError(
                f"Unknown field selector '{config.field}'. Expected one of: {', '.join(FIELD_SELECTORS)}"
            )
    if config.group_by and config.group_by not in GROUP_SELECTORS:
        raise UsageError(
            f"Unknown group-by selector '{config.group_by}'. Expected one of: {', '.join(GROUP_SELECTORS)}"
        )


def reduce_values(merchants: Sequence[Merchant], operation: AggregationOperation, field: Optional[str]):
    """
    Apply one reduction to a set of merchants.

    Returns:
        count -> int; sum/avg -> number (avg of nothing is 0);
        max/min -> number, or None for an empty set

    Raises:
        UsageError: sum/avg/max/min without a field, or an unknown field
    """
    if operation == AggregationOperation.COUNT:
        return len(merchants)

    if not field:
        raise UsageError(f"{operation.value} operation requires a field")

    values = [get_field_value(m, field) for m in merchants]
    if operation == AggregationOperation.SUM:
        return sum(values)
    if operation == AggregationOperation.AVG:
        return sum(values) / len(values) if values else 0
    if not values:
        return None
    if operation == AggregationOperation.MAX:
        return max(values)
    return min(values)


class AggregationExecutor:
    """
    Executes aggregation requests against a dataset snapshot.

    Pure function of (plan, snapshot) apart from the history provider, which
    is simulated until real historical data exists.
    """

    def __init__(
        self,
        history_provider: Optional[HistoryProvider] = None,
        cache: Optional[QueryCache] = None
    ):
        """
        Args:
            history_provider: Baseline source for comparisons
                (defaults to SimulatedHistoryProvider)
            cache: Optional result cache; the caller owns invalidation
        """
        self.history_provider = history_provider or SimulatedHistoryProvider()
        self.cache = cache

    def execute(self, plan: AnalyticalPlan, merchants: Sequence[Merchant]) -> AggregationResult:
        """
        Run an aggregation.

        Args:
            plan: Analytical plan (filters, time range, aggregation config,
                optional comparison target)
            merchants: Immutable dataset snapshot

        Returns:
            AggregationResult carrying the filtered merchant list

        Raises:
            UsageError: Missing/unknown field selector or unknown group-by
        """
        cache_key = None
        if self.cache is not None:
            cache_key = QueryCache.generate_cache_key(plan, merchants)
            hit, cached = self.cache.get(cache_key)
            if hit:
                logger.info("⚡ Aggregation cache hit")
                return cached.model_copy(deep=True)

        result = self._execute(plan, merchants)

        if cache_key is not None:
            self.cache.set(cache_key, result.model_copy(deep=True))
        return result

    def _execute(self, plan: AnalyticalPlan, merchants: Sequence[Merchant]) -> AggregationResult:
        entities = plan.entities
        config = plan.aggregation or AggregationConfig()
        validate_config(config)

        filtered = apply_filters(merchants, entities.filters)
        if entities.time_range is not None:
            filtered = self._apply_time_range(filtered, entities.time_range)

        logger.info(
            f"🧮 Aggregating {config.operation.value}"
            f"{'(' + config.field + ')' if config.field else ''}"
            f"{' by ' + config.group_by if config.group_by else ''} "
            f"over {len(filtered)}/{len(merchants)} merchants"
        )

        if config.group_by:
            breakdown = self._group_by(filtered, config)
            if config.operation == AggregationOperation.COUNT:
                total = len(filtered)
            else:
                total = sum(v for v in breakdown.values() if v is not None)
        else:
            breakdown = None
            total = reduce_values(filtered, config.operation, config.field)

        comparison = None
        if entities.comparison_target:
            comparison = self._compare(total, entities.comparison_target, entities.time_range)

        return AggregationResult(
            operation=config.operation,
            total=total,
            breakdown=breakdown,
            comparison=comparison,
            time_range=entities.time_range or TimeRange(period="current_month"),
            filters=entities.filters or QueryFilters(),
            merchant_list=[
                MerchantSummary(
                    id=m.id,
                    name=m.name,
                    risk_level=m.risk_level,
                    total_score=m.total_score,
                    category=m.category,
                )
                for m in filtered
            ],
        )

    @staticmethod
    def _apply_time_range(merchants: List[Merchant], time_range: TimeRange) -> List[Merchant]:
        # Records carry no per-period history yet; every record counts as current.
        logger.warning(f"⏱️ Time range filtering not yet implemented (period={time_range.period}); using all records")
        return merchants

    @staticmethod
    def _group_by(merchants: List[Merchant], config: AggregationConfig) -> Dict[str, object]:
        groups: Dict[str, List[Merchant]] = {}
        for merchant in merchants:
            groups.setdefault(get_group_key(merchant, config.group_by), []).append(merchant)

        return {
            key: reduce_values(members, config.operation, config.field)
            for key, members in groups.items()
        }

    def _compare(self, total, comparison_target: str, time_range: Optional[TimeRange]) -> BaselineComparison:
        baseline = self.history_provider.aggregate_baseline(total, comparison_target, time_range)
        raw_delta = (total or 0) - baseline
        return BaselineComparison(
            baseline=baseline,
            delta=clean_number(raw_delta),
            percentage=format_percentage(raw_delta, baseline),
        )

    @staticmethod
    def format_result(result: AggregationResult) -> str:
        """Plain-text rendering of a result (used by the fallback formatter)."""
        lines = [
            f"聚合操作：{OPERATION_NAMES[result.operation]}",
            f"结果：{clean_number(result.total) if result.total is not None else '无数据'}",
        ]
        if result.breakdown:
            lines.append("")
            lines.append("分组统计：")
            for key, value in result.breakdown.items():
                lines.append(f"  {key}: {clean_number(value)}")
        if result.comparison:
            lines.append("")
            lines.append("对比分析：")
            lines.append(f"  基准值：{clean_number(result.comparison.baseline)}")
            lines.append(f"  变化：{clean_number(result.comparison.delta)} ({result.comparison.percentage})")
        return "\n".join(lines)
