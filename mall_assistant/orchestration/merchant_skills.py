"""
Rule-based merchant skills dispatched by the query pipeline.

analyze_health and detect_risks are computed here from the snapshot;
diagnose, match_cases and generate_solution are delegated to the text
generation backend, which receives the merchant record verbatim.
"""
import logging
from typing import Any, Callable, Dict, List, Sequence

from mall_assistant.core.exceptions import MerchantNotFoundError
from mall_assistant.core.models import Merchant
from mall_assistant.utils.merchant_fields import extract_merchant_data

logger = logging.getLogger(__name__)

METRIC_LABELS = {
    "collection": "租金缴纳",
    "operational": "经营表现",
    "siteQuality": "现场品质",
    "customerReview": "顾客满意度",
    "riskResistance": "抗风险能力",
}

# Risk signal thresholds
RENT_RATIO_WARNING = 0.25
RENT_RATIO_HIGH = 0.30
PASSING_SCORE = 60
LOW_OPERATIONAL_SCORE = 40


def _find(merchants: Sequence[Merchant], merchant_id: str) -> Merchant:
    for merchant in merchants:
        if merchant.id == merchant_id:
            return merchant
    raise MerchantNotFoundError(merchant_id)


def analyze_health(params: Dict[str, Any], merchants: Sequence[Merchant]) -> Dict[str, Any]:
    merchant = _find(merchants, params["merchant_id"])
    data = extract_merchant_data(merchant)
    metrics = {key: data[key] for key in METRIC_LABELS}
    weakest = min(metrics, key=metrics.get)
    return {
        "merchant_id": merchant.id,
        "merchant_name": merchant.name,
        "category": merchant.category,
        "floor": merchant.floor,
        "total_score": merchant.total_score,
        "risk_level": merchant.risk_level.value,
        "metrics": metrics,
        "weakest_metric": METRIC_LABELS[weakest],
    }


def detect_risks(params: Dict[str, Any], merchants: Sequence[Merchant]) -> Dict[str, Any]:
    """
    Flag risk signals from the record's current values.

    Returns:
        Dict with merchant_id, risk_level and a list of
        {type, severity, message} signals (possibly empty)
    """
    merchant = _find(merchants, params["merchant_id"])
    signals: List[Dict[str, str]] = []

    ratio = merchant.rent_to_sales_ratio
    if ratio >= RENT_RATIO_HIGH:
        signals.append({
            "type": "high_rent_ratio",
            "severity": "high",
            "message": f"租售比达到{ratio * 100:.1f}%，超过30%高风险线",
        })
    elif ratio > RENT_RATIO_WARNING:
        signals.append({
            "type": "high_rent_ratio",
            "severity": "medium",
            "message": f"租售比达到{ratio * 100:.1f}%，超过行业警戒线25%",
        })

    if merchant.metrics.operational < LOW_OPERATIONAL_SCORE:
        signals.append({
            "type": "low_revenue",
            "severity": "high",
            "message": f"经营表现评分{merchant.metrics.operational:g}分，营收压力较大",
        })

    if merchant.metrics.customer_review < PASSING_SCORE:
        signals.append({
            "type": "customer_complaint",
            "severity": "medium",
            "message": f"顾客满意度评分{merchant.metrics.customer_review:g}分，低于60分及格线",
        })

    if merchant.metrics.collection < PASSING_SCORE:
        signals.append({
            "type": "rent_arrears",
            "severity": "medium",
            "message": f"租金缴纳评分{merchant.metrics.collection:g}分，存在欠缴风险",
        })

    logger.info(f"🚨 {merchant.id}: {len(signals)} risk signal(s)")
    return {
        "merchant_id": merchant.id,
        "merchant_name": merchant.name,
        "risk_level": merchant.risk_level.value,
        "signals": signals,
    }


def delegated(action: str) -> Callable[[Dict[str, Any], Sequence[Merchant]], Dict[str, Any]]:
    """Handler for actions answered by the text generation backend."""
    def handler(params: Dict[str, Any], merchants: Sequence[Merchant]) -> Dict[str, Any]:
        merchant_id = params.get("merchant_id")
        record = extract_merchant_data(_find(merchants, merchant_id)) if merchant_id else None
        return {"action": action, "status": "delegated", "merchant_id": merchant_id, "record": record}
    return handler


SKILL_HANDLERS = {
    "analyze_health": analyze_health,
    "detect_risks": detect_risks,
    "diagnose": delegated("diagnose"),
    "match_cases": delegated("match_cases"),
    "generate_solution": delegated("generate_solution"),
}
