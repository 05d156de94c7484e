"""
Typed state for the per-turn query graph.
"""
from typing import Any, Dict, List, Optional, Tuple, TypedDict

from mall_assistant.core.models import ConversationContext, Merchant


class QueryState(TypedDict, total=False):
    """
    State flowing through the query graph for one user turn.

    Attributes:
        text: Raw user utterance
        snapshot: Immutable merchant snapshot shared by every stage
        context: Conversation context for this user
        resolution_override: Pre-resolved merchant (a clarification reply)
        boundary: BoundaryCheck for a refused request
        context_switched: True when the carried merchant was dropped
        intent: IntentResult from the classifier
        slots: QuerySlots (filters, time range, aggregation, comparison)
        candidates: Ranked EntityCandidates
        disambiguation: DisambiguationResult, or None for set-level requests
        plan: ExecutionPlan
        validation: PlanValidationResult
        batches: Kahn batches of task ids
        results: Output per task id
        status: completed | out_of_scope | needs_clarification | no_match |
            fallback | error
        message: Refusal, clarification prompt, fallback reason or error text
    """
    text: str
    snapshot: Tuple[Merchant, ...]
    context: ConversationContext
    resolution_override: Optional[Any]
    boundary: Optional[Any]
    context_switched: bool
    intent: Any
    slots: Any
    candidates: List[Any]
    disambiguation: Optional[Any]
    plan: Any
    validation: Any
    batches: List[List[str]]
    results: Dict[str, Any]
    status: str
    message: Optional[str]
