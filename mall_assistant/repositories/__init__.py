"""
Repositories package for merchant data access.
"""

from mall_assistant.repositories.merchant_repository import (
    MerchantRepository,
    get_merchant_repository
)

__all__ = [
    'MerchantRepository',
    'get_merchant_repository'
]
