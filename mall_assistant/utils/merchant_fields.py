"""
Field selectors over merchant records.

Selectors use the dashboard's camelCase names because that is what the
intent/entity layer (and the LLM prompts) speak.
"""
from typing import Any, Callable, Dict

from mall_assistant.core.exceptions import UsageError
from mall_assistant.core.models import Merchant

FIELD_SELECTORS: Dict[str, Callable[[Merchant], float]] = {
    "totalScore": lambda m: m.total_score,
    "health": lambda m: m.total_score,
    "revenue": lambda m: m.last_month_revenue,
    "rent": lambda m: m.rent,
    "rentToSalesRatio": lambda m: m.rent_to_sales_ratio,
    "area": lambda m: m.area,
    "collection": lambda m: m.metrics.collection,
    "operational": lambda m: m.metrics.operational,
    "siteQuality": lambda m: m.metrics.site_quality,
    "customerReview": lambda m: m.metrics.customer_review,
    "riskResistance": lambda m: m.metrics.risk_resistance,
}

GROUP_SELECTORS: Dict[str, Callable[[Merchant], str]] = {
    "riskLevel": lambda m: m.risk_level.value,
    "category": lambda m: m.category,
    "floor": lambda m: m.floor,
}

# Numeric fields reported by the comparison executor, in display order
COMPARISON_FIELDS = [
    "totalScore",
    "revenue",
    "rent",
    "rentToSalesRatio",
    "collection",
    "operational",
    "siteQuality",
    "customerReview",
    "riskResistance",
]


def get_field_value(merchant: Merchant, field: str) -> float:
    """
    Read a numeric field by selector name.

    Raises:
        UsageError: If the selector is not known
    """
    selector = FIELD_SELECTORS.get(field)
    if selector is None:
        raise UsageError(
            f"Unknown field selector '{field}'. Expected one of: {', '.join(FIELD_SELECTORS)}"
        )
    return selector(merchant)


def get_group_key(merchant: Merchant, group_by: str) -> str:
    selector = GROUP_SELECTORS.get(group_by)
    if selector is None:
        raise UsageError(
            f"Unknown group-by selector '{group_by}'. Expected one of: {', '.join(GROUP_SELECTORS)}"
        )
    return selector(merchant)


def extract_merchant_data(merchant: Merchant) -> Dict[str, Any]:
    """Flatten a merchant into the comparison data shape."""
    data: Dict[str, Any] = {"riskLevel": merchant.risk_level.value}
    for field in COMPARISON_FIELDS:
        data[field] = get_field_value(merchant, field)
    return data
