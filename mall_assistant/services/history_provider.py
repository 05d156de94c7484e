"""
Historical baselines for comparisons.

No historical time-series exists for merchants yet, so the only
implementation is SimulatedHistoryProvider, which fabricates a prior period by
applying a random fluctuation to current values. Swap in a real provider
(backed by monthly snapshots) without touching the executors.
"""
import logging
import random
from abc import ABC, abstractmethod
from typing import Any, Dict, Optional

from mall_assistant.core.models import Merchant, TimeRange
from mall_assistant.utils.formatting import round_half_up
from mall_assistant.utils.merchant_fields import extract_merchant_data

logger = logging.getLogger(__name__)

BASELINE_PERIODS = {
    "last_month": "last_month",
    "last_week": "last_week",
    "last_year": "last_year",
}

# Fluctuation bands for simulated baselines
AGGREGATE_FLUCTUATION = (0.85, 1.10)
MERCHANT_FLUCTUATION = (0.85, 1.15)

# Health scores live on a 0-100 scale; a scaled prior period must stay on it
SCORE_FIELDS = {"totalScore", "collection", "operational", "siteQuality", "customerReview", "riskResistance"}
SCORE_RANGE = (0, 100)


def baseline_time_range(comparison_target: Optional[str]) -> TimeRange:
    """Map a comparison target onto the period it refers to (defaults to last month)."""
    return TimeRange(period=BASELINE_PERIODS.get(comparison_target or "", "last_month"))


class HistoryProvider(ABC):
    """Interface for looking up prior-period values."""

    @abstractmethod
    def aggregate_baseline(
        self,
        current_total: Optional[float],
        comparison_target: str,
        time_range: Optional[TimeRange] = None
    ) -> float:
        """Return the aggregate value for the baseline period."""
        pass

    @abstractmethod
    def merchant_baseline(self, merchant: Merchant, comparison_target: str) -> Dict[str, Any]:
        """Return one merchant's data (comparison data shape) for the baseline period."""
        pass


class SimulatedHistoryProvider(HistoryProvider):
    """
    SIMULATED history: baselines are random perturbations of current values.

    Results are reproducible when a seed is given, which is what tests rely on.
    Rent is treated as unchanged period over period, and scaled health scores
    are clamped to 0-100.
    """

    def __init__(self, seed: Optional[int] = None):
        self._random = random.Random(seed)
        logger.warning("⚠️ Using SimulatedHistoryProvider: comparison baselines are synthetic")

    def _fluctuation(self, band) -> float:
        low, high = band
        return low + self._random.random() * (high - low)

    def aggregate_baseline(
        self,
        current_total: Optional[float],
        comparison_target: str,
        time_range: Optional[TimeRange] = None
    ) -> float:
        total = current_total or 0
        return round_half_up(total * self._fluctuation(AGGREGATE_FLUCTUATION))

    def merchant_baseline(self, merchant: Merchant, comparison_target: str) -> Dict[str, Any]:
        data = extract_merchant_data(merchant)
        factor = self._fluctuation(MERCHANT_FLUCTUATION)

        baseline = {}
        for field, value in data.items():
            if field == "riskLevel" or field == "rent":
                baseline[field] = value
            elif field == "rentToSalesRatio":
                baseline[field] = round_half_up(value * factor, 1)
            elif field in SCORE_FIELDS:
                low, high = SCORE_RANGE
                baseline[field] = min(high, max(low, round_half_up(value * factor)))
            else:
                baseline[field] = round_half_up(value * factor)
        return baseline
