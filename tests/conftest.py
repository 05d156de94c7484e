"""
Pytest configuration file.

This file is automatically loaded by pytest before any tests run.
It sets up the test environment configuration and shared fixtures.
"""
import os
import sys
from pathlib import Path

# Set APP_ENV to test before any other imports
os.environ['APP_ENV'] = 'test'
# Keep the response composer on its deterministic formatter
os.environ['OPENAI_API_KEY'] = ''
os.environ['HISTORY_RANDOM_SEED'] = '7'

# Add the project root to the Python path
project_root = Path(__file__).parent.parent
sys.path.insert(0, str(project_root))

import pytest

from mall_assistant.core.models import Merchant
from mall_assistant.repositories.merchant_repository import MerchantRepository
from mall_assistant.repositories.sample_data import SAMPLE_MERCHANTS
from mall_assistant.services.history_provider import SimulatedHistoryProvider


def build_merchant(merchant_id, name, **overrides):
    """Build a Merchant with sensible defaults; overrides use snake_case names."""
    metrics = {
        "collection": 80,
        "operational": 75,
        "site_quality": 70,
        "customer_review": 78,
        "risk_resistance": 72,
    }
    metrics.update(overrides.pop("metrics", {}))
    record = {
        "id": merchant_id,
        "name": name,
        "category": "零售-服饰",
        "floor": "L1",
        "shop_number": "101",
        "area": 100,
        "rent": 10000,
        "last_month_revenue": 100000,
        "rent_to_sales_ratio": 0.1,
        "risk_level": "low",
        "total_score": 80,
        "metrics": metrics,
    }
    record.update(overrides)
    return Merchant.model_validate(record)


@pytest.fixture
def make_merchant():
    return build_merchant


@pytest.fixture
def sample_merchants():
    """The bundled sample dataset as models."""
    return [Merchant.model_validate(m) for m in SAMPLE_MERCHANTS]


@pytest.fixture
def risk_level_merchants():
    """Six merchants spanning all five risk levels (two 'high')."""
    return [
        build_merchant("R1", "甲店", risk_level="none", total_score=90, category="餐饮-饮品", floor="L1"),
        build_merchant("R2", "乙店", risk_level="low", total_score=80, category="餐饮-正餐", floor="L1"),
        build_merchant("R3", "丙店", risk_level="medium", total_score=60, category="零售-服饰", floor="L2"),
        build_merchant("R4", "丁店", risk_level="high", total_score=45, category="餐饮-正餐", floor="L2"),
        build_merchant("R5", "戊店", risk_level="high", total_score=40, category="零售-服饰", floor="L3"),
        build_merchant("R6", "己店", risk_level="critical", total_score=25, category="餐饮-饮品", floor="L3"),
    ]


@pytest.fixture
def repository(sample_merchants):
    return MerchantRepository(sample_merchants)


@pytest.fixture
def history_provider():
    return SimulatedHistoryProvider(seed=42)
