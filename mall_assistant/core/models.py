"""
Shared data models for the mall assistant query core.

Merchant records come from the dashboard's JSON store, which uses camelCase
keys; every model here accepts either the alias or the snake_case name.
"""
from enum import Enum
from typing import Any, Dict, List, Optional, Union

from pydantic import BaseModel, ConfigDict, Field


# ============================================================================
# ENUMS
# ============================================================================

class RiskLevel(str, Enum):
    """Risk buckets, ordered none < low < medium < high < critical."""
    NONE = "none"
    LOW = "low"
    MEDIUM = "medium"
    HIGH = "high"
    CRITICAL = "critical"

    @property
    def rank(self) -> int:
        return list(RiskLevel).index(self)


class UserIntent(str, Enum):
    """Intents produced by the classifier and consumed by the planner."""
    # single merchant
    HEALTH_QUERY = "health_query"
    RISK_DIAGNOSIS = "risk_diagnosis"
    SOLUTION_RECOMMEND = "solution_recommend"
    DATA_QUERY = "data_query"
    ARCHIVE_QUERY = "archive_query"

    # aggregation
    AGGREGATION_QUERY = "aggregation_query"
    RISK_STATISTICS = "risk_statistics"
    HEALTH_OVERVIEW = "health_overview"

    # comparison / trend
    COMPARISON_QUERY = "comparison_query"
    TREND_ANALYSIS = "trend_analysis"

    COMPOSITE_QUERY = "composite_query"

    GENERAL_CHAT = "general_chat"
    UNKNOWN = "unknown"


class QueryType(str, Enum):
    SINGLE_MERCHANT = "single_merchant"
    AGGREGATION = "aggregation"
    COMPARISON = "comparison"


class AggregationOperation(str, Enum):
    COUNT = "count"
    SUM = "sum"
    AVG = "avg"
    MAX = "max"
    MIN = "min"


# ============================================================================
# MERCHANT RECORD
# ============================================================================

class MerchantMetrics(BaseModel):
    """Five health sub-metrics, each 0-100."""
    model_config = ConfigDict(populate_by_name=True, frozen=True)

    collection: float = Field(..., ge=0, le=100, description="Rent collection progress")
    operational: float = Field(..., ge=0, le=100, description="Operating performance")
    site_quality: float = Field(..., ge=0, le=100, alias="siteQuality", description="On-site store quality")
    customer_review: float = Field(..., ge=0, le=100, alias="customerReview", description="Customer satisfaction")
    risk_resistance: float = Field(..., ge=0, le=100, alias="riskResistance", description="Financial risk resistance")


class Merchant(BaseModel):
    """
    A merchant record as seen by the query core (read-only).

    risk_level is a bucketing of total_score maintained by the health
    calculator elsewhere; nothing in this package recomputes it.
    """
    model_config = ConfigDict(populate_by_name=True, frozen=True)

    id: str
    name: str
    category: str = Field(..., description="'<macro>-<micro>', e.g. '餐饮-火锅'")
    floor: str
    shop_number: str = Field("", alias="shopNumber")
    area: float = 0
    rent: float = 0
    last_month_revenue: float = Field(0, alias="lastMonthRevenue")
    rent_to_sales_ratio: float = Field(0, alias="rentToSalesRatio")
    status: str = "operating"
    risk_level: RiskLevel = Field(..., alias="riskLevel")
    total_score: float = Field(..., ge=0, le=100, alias="totalScore")
    metrics: MerchantMetrics
    created_at: Optional[str] = Field(None, alias="createdAt")
    updated_at: Optional[str] = Field(None, alias="updatedAt")

    @property
    def macro_category(self) -> str:
        return self.category.split("-", 1)[0]

    @property
    def micro_category(self) -> str:
        parts = self.category.split("-", 1)
        return parts[1] if len(parts) > 1 else parts[0]


# ============================================================================
# CONVERSATION CONTEXT
# ============================================================================

class RecentMessage(BaseModel):
    content: str
    metadata: Optional[Dict[str, Any]] = None


class ConversationContext(BaseModel):
    """Per-turn context supplied by the conversation service."""
    model_config = ConfigDict(populate_by_name=True)

    prior_merchant_id: Optional[str] = Field(None, alias="priorMerchantId")
    prior_merchant_name: Optional[str] = Field(None, alias="priorMerchantName")
    last_intent: Optional[UserIntent] = Field(None, alias="lastIntent")
    recent_messages: List[RecentMessage] = Field(default_factory=list, alias="recentMessages")


# ============================================================================
# ANALYTICAL REQUEST
# ============================================================================

class TimeRange(BaseModel):
    model_config = ConfigDict(populate_by_name=True)

    period: str = Field(
        "current_month",
        description="current_day|current_week|current_month|current_year|last_day|last_week|last_month|last_year|custom"
    )
    start_date: Optional[str] = Field(None, alias="startDate")
    end_date: Optional[str] = Field(None, alias="endDate")


class QueryFilters(BaseModel):
    """Absent or empty fields mean 'no restriction'."""
    model_config = ConfigDict(populate_by_name=True)

    risk_level: Optional[List[RiskLevel]] = Field(None, alias="riskLevel")
    category: Optional[List[str]] = None
    floor: Optional[List[str]] = None
    health_score_min: Optional[float] = Field(None, alias="healthScoreMin")
    health_score_max: Optional[float] = Field(None, alias="healthScoreMax")


class AggregationConfig(BaseModel):
    model_config = ConfigDict(populate_by_name=True)

    operation: AggregationOperation = AggregationOperation.COUNT
    field: Optional[str] = Field(None, description="Numeric selector, required for sum/avg/max/min")
    group_by: Optional[str] = Field(None, alias="groupBy", description="riskLevel | category | floor")


class MerchantRef(BaseModel):
    id: Optional[str] = None
    name: str


class ResolvedEntities(BaseModel):
    model_config = ConfigDict(populate_by_name=True)

    merchant_id: Optional[str] = Field(None, alias="merchantId")
    merchant_name: Optional[str] = Field(None, alias="merchantName")
    merchants: List[Union[MerchantRef, str]] = Field(
        default_factory=list,
        description="Two entries for merchant-vs-merchant comparisons"
    )
    filters: Optional[QueryFilters] = None
    time_range: Optional[TimeRange] = Field(None, alias="timeRange")
    comparison_target: Optional[str] = Field(None, alias="comparisonTarget")


class AnalyticalPlan(BaseModel):
    """Executor-facing request: what to compute and over which records."""
    model_config = ConfigDict(populate_by_name=True)

    query_type: QueryType = Field(QueryType.AGGREGATION, alias="queryType")
    entities: ResolvedEntities = Field(default_factory=ResolvedEntities)
    aggregation: Optional[AggregationConfig] = None


# ============================================================================
# RESULTS
# ============================================================================

class MerchantSummary(BaseModel):
    """A cited record; lets the text generator name real merchants."""
    id: str
    name: str
    risk_level: RiskLevel
    total_score: float
    category: str


class BaselineComparison(BaseModel):
    baseline: float
    delta: float
    percentage: str


class AggregationResult(BaseModel):
    operation: AggregationOperation
    total: Optional[Union[int, float]] = None
    breakdown: Optional[Dict[str, Union[int, float, None]]] = None
    comparison: Optional[BaselineComparison] = None
    time_range: TimeRange = Field(default_factory=TimeRange)
    filters: QueryFilters = Field(default_factory=QueryFilters)
    merchant_list: List[MerchantSummary] = Field(default_factory=list)


class ComparisonSide(BaseModel):
    merchant_id: Optional[str] = None
    merchant_name: Optional[str] = None
    data: Dict[str, Any] = Field(default_factory=dict)
    time_range: Optional[TimeRange] = None
    label: Optional[str] = None


class ComparisonResult(BaseModel):
    target: str
    current: ComparisonSide
    baseline: ComparisonSide
    delta: Dict[str, str] = Field(default_factory=dict)
    insights: List[str] = Field(default_factory=list)
