"""
Exceptions raised by the query core.

Structural plan problems (cycles, dangling dependencies) are NOT exceptions;
they are reported by validate_plan() so the caller can replan or fall back.
Ambiguity is not an error either, it is a needs-clarification outcome.
"""


class AssistantError(Exception):
    """Base class for query core errors."""


class UsageError(AssistantError, ValueError):
    """
    Malformed request from the orchestrating layer.

    Examples: sum/avg/max/min without a field selector, an unknown field or
    group-by selector, a task that needs a merchant but has none.
    """


class MerchantNotFoundError(AssistantError, LookupError):
    """A merchant reference (id or name) is not in the dataset snapshot."""

    def __init__(self, reference: str):
        self.reference = reference
        super().__init__(f"Merchant not found: {reference}")


class PlanStructureError(AssistantError):
    """Task graph could not be ordered (undetected cycle or dangling edge)."""
