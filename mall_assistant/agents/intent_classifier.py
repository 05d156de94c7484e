"""
Intent and Slot Detection for merchant assistant queries.

Rule-based, keyword-weighted classification:
- Intent: what the user wants (health, risk diagnosis, remedy, data, set
  statistics, comparison, ...)
- Slots: filters, time range, group-by, aggregation operation and field,
  comparison target and the merchant names of a head-to-head comparison

Both are deterministic and need no model call.
"""
import logging
import re
from typing import Dict, Iterable, List, Optional, Tuple

from pydantic import BaseModel, Field

from mall_assistant.core.exceptions import UsageError
from mall_assistant.core.models import (
    AggregationConfig,
    AggregationOperation,
    Merchant,
    QueryFilters,
    RiskLevel,
    TimeRange,
    UserIntent,
)

logger = logging.getLogger(__name__)


class IntentResult(BaseModel):
    """Structured result from intent detection."""
    intent: UserIntent = Field(..., description="Detected user intent")
    confidence: float = Field(0.0, ge=0, le=1, description="Confidence score (0.0 to 1.0)")
    keywords: List[str] = Field(default_factory=list, description="Keywords that triggered the intent")


class QuerySlots(BaseModel):
    """Slot values extracted from one utterance."""
    filters: Optional[QueryFilters] = None
    time_range: Optional[TimeRange] = None
    aggregation: Optional[AggregationConfig] = None
    comparison_target: Optional[str] = None
    merchants: List[str] = Field(default_factory=list, description="Names for merchant-vs-merchant comparisons")


# ============================================================================
# KEYWORD TABLES
# ============================================================================

# (intent, priority, {keyword: weight}) for single-merchant intents
INTENT_PATTERNS: List[Tuple[UserIntent, int, Dict[str, int]]] = [
    (UserIntent.HEALTH_QUERY, 2, {
        "怎么样": 10, "健康": 10, "评分": 10, "状况": 8, "情况": 8, "表现": 8,
        "最近": 5, "现在": 5, "当前": 5, "分数": 8, "得分": 8,
    }),
    (UserIntent.RISK_DIAGNOSIS, 3, {
        "风险": 15, "问题": 12, "诊断": 15, "检测": 10, "分析": 10,
        "隐患": 12, "异常": 10, "预警": 12, "危机": 12,
    }),
    (UserIntent.SOLUTION_RECOMMEND, 3, {
        "方案": 15, "建议": 15, "措施": 15, "推荐": 12, "怎么办": 12, "如何": 10,
        "帮扶": 12, "改善": 10, "提升": 10, "解决": 10, "策略": 10,
    }),
    (UserIntent.DATA_QUERY, 1, {
        "营收": 10, "收入": 10, "销售": 10, "客流": 10, "满意度": 10,
        "租金": 10, "成本": 10, "数据": 8, "指标": 8, "多少": 8,
    }),
    (UserIntent.ARCHIVE_QUERY, 1, {
        "档案": 15, "资料": 10, "合同": 10, "基本信息": 12,
    }),
]

MIN_INTENT_SCORE = 5
FALLBACK_CONFIDENCE = 0.3
RULE_CONFIDENCE = 0.85

COMPARISON_KEYWORDS = ["对比", "比较", "vs", "相比", "比一比"]
AGGREGATION_KEYWORDS = [
    "多少家", "几家", "几个商户", "多少个商户", "哪些商户", "数量", "统计",
    "总共", "所有商户", "全部商户", "平均", "合计", "总计", "分布", "排名",
]
TREND_KEYWORDS = ["趋势", "走势", "变化曲线"]
COMPOSITE_KEYWORDS = ["全面", "综合", "全方位"]
OVERVIEW_KEYWORDS = ["整体健康", "平均健康", "健康度分布", "健康概况"]

NORMALIZE_PATTERN = re.compile(r"[\s，。！？；：“”‘’\"'（）()【】《》?!,.;:]")


def _normalize(text: str) -> str:
    return NORMALIZE_PATTERN.sub("", text.lower().strip())


def _matched(text: str, keywords: Iterable[str]) -> List[str]:
    return [kw for kw in keywords if kw in text]


# ============================================================================
# INTENT CLASSIFIER
# ============================================================================

class IntentClassifier:
    """
    Keyword-weighted intent classifier.

    Set-level requests (comparisons, statistics, trends) are detected first by
    keyword rules; otherwise each single-merchant pattern scores
    sum(weight of matched keywords) * priority and the top score wins.
    """

    def __init__(self):
        self._max_possible_score = max(
            sum(weights.values()) * priority for _, priority, weights in INTENT_PATTERNS
        )

    def classify(self, text: str) -> IntentResult:
        """
        Classify a user utterance.

        Args:
            text: Raw user input

        Returns:
            IntentResult; general_chat at 0.3 when nothing scores at least 5

        Raises:
            UsageError: If the input is empty
        """
        if not text or not text.strip():
            raise UsageError("Empty user input")

        normalized = _normalize(text)

        rule_result = self._classify_by_rules(normalized)
        if rule_result is not None:
            logger.info(f"🎯 Intent (rule): {rule_result.intent.value} via {rule_result.keywords}")
            return rule_result

        scores = []
        for intent, priority, weights in INTENT_PATTERNS:
            matched = _matched(normalized, weights)
            score = sum(weights[kw] for kw in matched)
            if score > 0:
                scores.append((intent, score * priority, matched))

        scores.sort(key=lambda item: item[1], reverse=True)

        if not scores or scores[0][1] < MIN_INTENT_SCORE:
            return IntentResult(intent=UserIntent.GENERAL_CHAT, confidence=FALLBACK_CONFIDENCE)

        intent, score, matched = scores[0]
        confidence = min(score / (self._max_possible_score * 0.5), 1.0)
        logger.info(f"🎯 Intent: {intent.value} (score={score}, confidence={confidence:.2f})")
        return IntentResult(intent=intent, confidence=confidence, keywords=matched)

    @staticmethod
    def _classify_by_rules(normalized: str) -> Optional[IntentResult]:
        matched = _matched(normalized, COMPARISON_KEYWORDS)
        if matched:
            return IntentResult(intent=UserIntent.COMPARISON_QUERY, confidence=RULE_CONFIDENCE, keywords=matched)

        matched = _matched(normalized, AGGREGATION_KEYWORDS)
        if matched:
            if "风险" in normalized:
                intent = UserIntent.RISK_STATISTICS
            elif _matched(normalized, OVERVIEW_KEYWORDS):
                intent = UserIntent.HEALTH_OVERVIEW
            else:
                intent = UserIntent.AGGREGATION_QUERY
            return IntentResult(intent=intent, confidence=RULE_CONFIDENCE, keywords=matched)

        matched = _matched(normalized, OVERVIEW_KEYWORDS)
        if matched:
            return IntentResult(intent=UserIntent.HEALTH_OVERVIEW, confidence=RULE_CONFIDENCE, keywords=matched)

        matched = _matched(normalized, TREND_KEYWORDS)
        if matched:
            return IntentResult(intent=UserIntent.TREND_ANALYSIS, confidence=0.8, keywords=matched)

        matched = _matched(normalized, COMPOSITE_KEYWORDS)
        if matched:
            return IntentResult(intent=UserIntent.COMPOSITE_QUERY, confidence=0.8, keywords=matched)

        return None

    def is_confident(self, result: IntentResult, threshold: float = 0.6) -> bool:
        return result.confidence >= threshold


# ============================================================================
# SLOT EXTRACTION
# ============================================================================

TIME_KEYWORDS = [
    (("今天", "今日"), "current_day"),
    (("本周", "这周"), "current_week"),
    (("本月", "这个月"), "current_month"),
    (("上月", "上个月"), "last_month"),
    (("去年", "上年"), "last_year"),
    (("最近", "近期"), "last_week"),
]

COMPARISON_TARGET_KEYWORDS = [
    (("上月", "上个月"), "last_month"),
    (("上周", "上星期"), "last_week"),
    (("去年", "同期"), "last_year"),
    (("同类", "同业态"), "same_category"),
    (("同层", "同楼层"), "same_floor"),
]

GROUP_BY_KEYWORDS = [
    (("按风险", "分风险", "风险分布", "各风险等级"), "riskLevel"),
    (("按业态", "分业态", "各业态"), "category"),
    (("按楼层", "分楼层", "各楼层"), "floor"),
]

# Checked in order; the first hit names the field
FIELD_KEYWORDS = [
    (("租售比",), "rentToSalesRatio"),
    (("健康", "评分", "得分", "分数"), "totalScore"),
    (("营收", "收入", "销售"), "revenue"),
    (("租金",), "rent"),
    (("面积",), "area"),
    (("满意度", "评价", "口碑"), "customerReview"),
    (("收缴", "缴费"), "collection"),
    (("抗风险",), "riskResistance"),
]

OPERATION_KEYWORDS = [
    (("平均",), AggregationOperation.AVG),
    (("最高", "最大", "最多"), AggregationOperation.MAX),
    (("最低", "最小", "最少"), AggregationOperation.MIN),
    (("总营收", "总收入", "总租金", "总面积", "合计", "总和", "总计"), AggregationOperation.SUM),
]

# Fields assumed when an operation needs one but the user named none
DEFAULT_FIELDS = {
    AggregationOperation.SUM: "revenue",
    AggregationOperation.AVG: "totalScore",
    AggregationOperation.MAX: "totalScore",
    AggregationOperation.MIN: "totalScore",
}

FLOOR_PATTERN = re.compile(r"(?:(?<![a-z0-9])([lb])(\d+)|(\d+)(?:楼|层))")
SCORE_MAX_PATTERN = re.compile(r"(\d+)分以下")
SCORE_MIN_PATTERN = re.compile(r"(\d+)分以上")

VERSUS_PATTERNS = [
    re.compile(r"(?:对比|比较)([一-龥\w]+?)和([一-龥\w]+)"),
    re.compile(r"([一-龥]{2,10})(?:vs|对比)([一-龥]{2,10})"),
    re.compile(r"([一-龥]{2,10})和([一-龥]{2,10})(?:比较|对比)"),
]


def _first_hit(text: str, table):
    for keywords, value in table:
        if any(kw in text for kw in keywords):
            return value
    return None


def _extract_risk_levels(text: str) -> List[RiskLevel]:
    levels: List[RiskLevel] = []
    if "高风险" in text or "风险高" in text:
        levels.extend([RiskLevel.HIGH, RiskLevel.CRITICAL])
    if "中风险" in text:
        levels.append(RiskLevel.MEDIUM)
    if "低风险" in text:
        levels.append(RiskLevel.LOW)
    if "无风险" in text:
        levels.append(RiskLevel.NONE)
    return levels


def _extract_categories(text: str, merchants: Iterable[Merchant]) -> List[str]:
    """Full category strings whose macro or micro part is mentioned."""
    categories: List[str] = []
    for merchant in merchants:
        if merchant.category in categories:
            continue
        if merchant.macro_category in text or merchant.micro_category in text:
            categories.append(merchant.category)
    return categories


def _extract_floors(text: str) -> List[str]:
    floors: List[str] = []
    for prefix, number, chinese_number in FLOOR_PATTERN.findall(text):
        floor = f"{prefix.upper()}{number}" if prefix else f"L{chinese_number}"
        if floor not in floors:
            floors.append(floor)
    return floors


def extract_versus_merchants(text: str) -> List[str]:
    """
    Pull two merchant names out of a head-to-head comparison.

    Example:
        >>> extract_versus_merchants("对比海底捞和星巴克")
        ['海底捞', '星巴克']
    """
    normalized = _normalize(text)
    for pattern in VERSUS_PATTERNS:
        match = pattern.search(normalized)
        if match:
            names = [match.group(1), match.group(2)]
            # "海底捞和上月对比" names a period, not a second merchant
            if any(_first_hit(name, COMPARISON_TARGET_KEYWORDS) for name in names):
                return []
            return names
    return []


def extract_slots(text: str, merchants: Iterable[Merchant] = ()) -> QuerySlots:
    """
    Extract filters, time range, aggregation and comparison slots.

    Args:
        text: Raw user input
        merchants: Dataset snapshot, used to expand category mentions
            ("餐饮") into the full category strings present in the data

    Returns:
        QuerySlots with only the slots that were mentioned
    """
    normalized = _normalize(text or "")

    filters = QueryFilters()
    risk_levels = _extract_risk_levels(normalized)
    if risk_levels:
        filters.risk_level = risk_levels
    categories = _extract_categories(normalized, merchants)
    if categories:
        filters.category = categories
    floors = _extract_floors(normalized)
    if floors and not any(kw in normalized for kw in ("同层", "同楼层")):
        filters.floor = floors
    score_max = SCORE_MAX_PATTERN.search(normalized)
    if score_max:
        filters.health_score_max = float(score_max.group(1))
    score_min = SCORE_MIN_PATTERN.search(normalized)
    if score_min:
        filters.health_score_min = float(score_min.group(1))

    period = _first_hit(normalized, TIME_KEYWORDS)

    operation = _first_hit(normalized, OPERATION_KEYWORDS) or AggregationOperation.COUNT
    field = None
    if operation != AggregationOperation.COUNT:
        field = _first_hit(normalized, FIELD_KEYWORDS) or DEFAULT_FIELDS[operation]

    versus = extract_versus_merchants(normalized) if _matched(normalized, COMPARISON_KEYWORDS) else []
    target = "merchant_vs_merchant" if len(versus) == 2 else _first_hit(normalized, COMPARISON_TARGET_KEYWORDS)

    return QuerySlots(
        filters=filters if filters.model_dump(exclude_none=True) else None,
        time_range=TimeRange(period=period) if period else None,
        aggregation=AggregationConfig(
            operation=operation,
            field=field,
            group_by=_first_hit(normalized, GROUP_BY_KEYWORDS),
        ),
        comparison_target=target,
        merchants=versus,
    )
