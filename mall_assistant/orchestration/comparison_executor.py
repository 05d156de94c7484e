"""
Comparison Executor - one merchant against a baseline.

Comparison targets:
- last_month / last_week / last_year: same merchant, prior period
  (from the HistoryProvider)
- same_category: mean of same-category peers, excluding the merchant
- same_floor: mean of same-floor peers, excluding the merchant
- merchant_vs_merchant: two named merchants head to head

A missing or unknown target degrades to the time comparison.
"""
import logging
from collections import Counter
from typing import Any, Dict, List, Optional, Sequence, Tuple, Union

from mall_assistant.core.exceptions import MerchantNotFoundError, UsageError
from mall_assistant.core.models import (
    AnalyticalPlan,
    ComparisonResult,
    ComparisonSide,
    Merchant,
    MerchantRef,
    RiskLevel,
)
from mall_assistant.services.history_provider import (
    HistoryProvider,
    SimulatedHistoryProvider,
    baseline_time_range,
)
from mall_assistant.utils.formatting import clean_number, format_delta, round_half_up
from mall_assistant.utils.merchant_fields import COMPARISON_FIELDS, extract_merchant_data

logger = logging.getLogger(__name__)

TIME_TARGETS = {"last_month", "last_week", "last_year"}
DEFAULT_TIME_TARGET = "last_month"

COMPARISON_LABELS = {
    "last_month": "上月",
    "last_week": "上周",
    "last_year": "去年同期",
    "same_category": "同类商户平均",
    "same_floor": "同楼层平均",
}

DEFAULT_RISK_LEVEL = RiskLevel.MEDIUM.value

# Insight thresholds
TIME_HEALTH_THRESHOLD = 5
TIME_REVENUE_RATIO = 0.1
PEER_HEALTH_THRESHOLD = 10
PEER_REVENUE_RATIO = 0.2


def _find_merchant(
    merchants: Sequence[Merchant],
    merchant_id: Optional[str],
    merchant_name: Optional[str]
) -> Merchant:
    """Lookup by id, else by exact name."""
    if merchant_id:
        for merchant in merchants:
            if merchant.id == merchant_id:
                return merchant
    elif merchant_name:
        for merchant in merchants:
            if merchant.name == merchant_name:
                return merchant
    raise MerchantNotFoundError(merchant_name or merchant_id or "<none>")


def _ref_parts(ref: Union[MerchantRef, str, Dict[str, Any]]) -> Tuple[Optional[str], str]:
    if isinstance(ref, str):
        return None, ref
    if isinstance(ref, dict):
        return ref.get("id"), ref.get("name") or ""
    return ref.id, ref.name


def _find_by_reference(merchants: Sequence[Merchant], ref: Union[MerchantRef, str, Dict[str, Any]]) -> Merchant:
    """
    Id first when the reference carries one, then exact name, then
    containment either way. Blank names never match.
    """
    merchant_id, name = _ref_parts(ref)
    if merchant_id:
        for merchant in merchants:
            if merchant.id == merchant_id:
                return merchant
    name = name.strip()
    if not name:
        raise MerchantNotFoundError(merchant_id or "<blank>")
    for merchant in merchants:
        if merchant.name == name:
            return merchant
    for merchant in merchants:
        if name in merchant.name or merchant.name in name:
            return merchant
    raise MerchantNotFoundError(name)


def calculate_peer_average(peers: Sequence[Merchant]) -> Dict[str, Any]:
    """
    Mean of each comparison field over peers.

    Integers for scores and money (half-up), one decimal for the rent ratio,
    and the most common risk level (first seen wins ties). No peers gives
    zeros and the default 'medium' risk level.
    """
    if not peers:
        average: Dict[str, Any] = {field: 0 for field in COMPARISON_FIELDS}
        average["riskLevel"] = DEFAULT_RISK_LEVEL
        return average

    rows = [extract_merchant_data(m) for m in peers]
    average = {}
    for field in COMPARISON_FIELDS:
        mean = sum(row[field] for row in rows) / len(rows)
        average[field] = round_half_up(mean, 1) if field == "rentToSalesRatio" else round_half_up(mean)
    average["riskLevel"] = most_common_risk_level(peers)
    return average


def most_common_risk_level(merchants: Sequence[Merchant]) -> str:
    if not merchants:
        return DEFAULT_RISK_LEVEL
    # Counter.most_common keeps first-seen order among equal counts
    return Counter(m.risk_level.value for m in merchants).most_common(1)[0][0]


def calculate_delta(current: Dict[str, Any], baseline: Dict[str, Any]) -> Dict[str, str]:
    """Per-field '<signed abs> (<signed pct>)' for fields present on both sides."""
    delta = {}
    for field in COMPARISON_FIELDS:
        if field in current and field in baseline:
            delta[field] = format_delta(current[field], baseline[field])
    return delta


class ComparisonExecutor:
    """Dispatches a comparison by target and generates insights."""

    def __init__(self, history_provider: Optional[HistoryProvider] = None):
        self.history_provider = history_provider or SimulatedHistoryProvider()

    def execute(self, plan: AnalyticalPlan, merchants: Sequence[Merchant]) -> ComparisonResult:
        """
        Run a comparison.

        Args:
            plan: Analytical plan with merchant id/name (or two merchants)
                and a comparison target
            merchants: Immutable dataset snapshot

        Returns:
            ComparisonResult with per-field deltas and 1-4 insights

        Raises:
            MerchantNotFoundError: Referenced merchant is not in the snapshot
            UsageError: merchant_vs_merchant with fewer than two merchants
        """
        target = plan.entities.comparison_target

        if target == "merchant_vs_merchant":
            return self._merchant_comparison(plan, merchants)
        if target == "same_category":
            return self._peer_comparison(plan, merchants, "category")
        if target == "same_floor":
            return self._peer_comparison(plan, merchants, "floor")
        if target not in TIME_TARGETS:
            logger.warning(f"⚠️ Comparison target {target!r} not supported, falling back to {DEFAULT_TIME_TARGET}")
            target = DEFAULT_TIME_TARGET
        return self._time_comparison(plan, merchants, target)

    # ------------------------------------------------------------------
    # Shapes
    # ------------------------------------------------------------------

    def _time_comparison(self, plan: AnalyticalPlan, merchants: Sequence[Merchant], target: str) -> ComparisonResult:
        current = _find_merchant(merchants, plan.entities.merchant_id, plan.entities.merchant_name)
        current_data = extract_merchant_data(current)
        baseline = self.history_provider.merchant_baseline(current, target)

        return ComparisonResult(
            target=target,
            current=ComparisonSide(
                merchant_id=current.id,
                merchant_name=current.name,
                data=current_data,
                time_range=plan.entities.time_range,
            ),
            baseline=ComparisonSide(
                merchant_id=current.id,
                merchant_name=current.name,
                data=baseline,
                time_range=baseline_time_range(target),
                label=COMPARISON_LABELS[target],
            ),
            delta=calculate_delta(current_data, baseline),
            insights=self._time_insights(current_data, baseline),
        )

    def _peer_comparison(self, plan: AnalyticalPlan, merchants: Sequence[Merchant], attribute: str) -> ComparisonResult:
        current = _find_merchant(merchants, plan.entities.merchant_id, plan.entities.merchant_name)
        group_value = getattr(current, attribute)
        peers = [m for m in merchants if getattr(m, attribute) == group_value and m.id != current.id]

        current_data = extract_merchant_data(current)
        baseline = calculate_peer_average(peers)

        if attribute == "category":
            target = "same_category"
            insights = self._category_insights(current_data, baseline, len(peers))
        else:
            target = "same_floor"
            insights = self._floor_insights(current_data, baseline, len(peers))

        if peers:
            delta = calculate_delta(current_data, baseline)
        else:
            delta = {field: "N/A" for field in COMPARISON_FIELDS}

        return ComparisonResult(
            target=target,
            current=ComparisonSide(merchant_id=current.id, merchant_name=current.name, data=current_data),
            baseline=ComparisonSide(data=baseline, label=f"{group_value}商户平均（{len(peers)}家）"),
            delta=delta,
            insights=insights,
        )

    def _merchant_comparison(self, plan: AnalyticalPlan, merchants: Sequence[Merchant]) -> ComparisonResult:
        refs = plan.entities.merchants
        if len(refs) < 2:
            raise UsageError("merchant_vs_merchant comparison needs two merchants")

        first = _find_by_reference(merchants, refs[0])
        second = _find_by_reference(merchants, refs[1])
        first_data = extract_merchant_data(first)
        second_data = extract_merchant_data(second)

        return ComparisonResult(
            target="merchant_vs_merchant",
            current=ComparisonSide(merchant_id=first.id, merchant_name=first.name, data=first_data),
            baseline=ComparisonSide(
                merchant_id=second.id,
                merchant_name=second.name,
                data=second_data,
                label=second.name,
            ),
            delta=calculate_delta(first_data, second_data),
            insights=self._merchant_insights(first, second),
        )

    # ------------------------------------------------------------------
    # Insights
    # ------------------------------------------------------------------

    @staticmethod
    def _time_insights(current: Dict[str, Any], baseline: Dict[str, Any]) -> List[str]:
        insights = []

        health_diff = clean_number(current["totalScore"] - baseline["totalScore"])
        if health_diff > TIME_HEALTH_THRESHOLD:
            insights.append(f"健康度提升显著（+{health_diff}分）")
        elif health_diff < -TIME_HEALTH_THRESHOLD:
            insights.append(f"健康度下降需关注（{health_diff}分）")

        revenue_diff = current["revenue"] - baseline["revenue"]
        if baseline["revenue"] and abs(revenue_diff) > baseline["revenue"] * TIME_REVENUE_RATIO:
            pct = abs(revenue_diff / baseline["revenue"] * 100)
            insights.append(f"营收增长{pct:.1f}%" if revenue_diff > 0 else f"营收下滑{pct:.1f}%")

        if current["riskLevel"] != baseline["riskLevel"]:
            insights.append(f"风险等级从{baseline['riskLevel']}变为{current['riskLevel']}")

        if not insights:
            insights.append("各项指标与上期基本持平")
        return insights

    @staticmethod
    def _category_insights(current: Dict[str, Any], baseline: Dict[str, Any], peer_count: int) -> List[str]:
        if peer_count == 0:
            return ["暂无同类商户可供对比"]

        insights = []
        health_diff = clean_number(current["totalScore"] - baseline["totalScore"])
        if health_diff > PEER_HEALTH_THRESHOLD:
            insights.append(f"健康度高于同类平均{health_diff}分")
        elif health_diff < -PEER_HEALTH_THRESHOLD:
            insights.append(f"健康度低于同类平均{abs(health_diff)}分")
        else:
            insights.append("健康度接近同类平均水平")

        revenue_diff = current["revenue"] - baseline["revenue"]
        if abs(revenue_diff) > baseline["revenue"] * PEER_REVENUE_RATIO:
            insights.append("营收显著高于同类平均" if revenue_diff > 0 else "营收显著低于同类平均")

        insights.append(f"对比了{peer_count}家同类商户")
        return insights

    @staticmethod
    def _floor_insights(current: Dict[str, Any], baseline: Dict[str, Any], peer_count: int) -> List[str]:
        if peer_count == 0:
            return ["暂无同楼层商户可供对比"]

        insights = []
        health_diff = clean_number(current["totalScore"] - baseline["totalScore"])
        if health_diff > 0:
            insights.append(f"表现优于同楼层平均{health_diff}分")
        elif health_diff < 0:
            insights.append(f"表现低于同楼层平均{abs(health_diff)}分")

        insights.append(f"对比了{peer_count}家同楼层商户")
        return insights

    @staticmethod
    def _merchant_insights(first: Merchant, second: Merchant) -> List[str]:
        insights = []
        a, b = clean_number(first.total_score), clean_number(second.total_score)
        if a > b:
            insights.append(f"{first.name}健康度更优（{a} vs {b}）")
        elif a < b:
            insights.append(f"{second.name}健康度更优（{b} vs {a}）")
        else:
            insights.append("两家商户健康度相当")

        if first.risk_level != second.risk_level:
            insights.append(
                f"风险等级不同：{first.name}为{first.risk_level.value}，{second.name}为{second.risk_level.value}"
            )

        if first.category != second.category:
            insights.append(f"业态不同：{first.category} vs {second.category}")
        return insights
