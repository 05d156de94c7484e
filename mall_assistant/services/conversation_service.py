"""
Conversation Service

Keeps per-user conversational state in memory:
- the merchant the user last talked about (for pronoun / omission follow-ups)
- the last classified intent
- a bounded list of recent messages (PII-redacted)
- a pending clarification: the utterance that triggered it and its short-list

State is process-local and lost on restart. A conversation idle for longer
than CONVERSATION_CONTEXT_TTL_HOURS is forgotten, and an unanswered
clarification expires after PENDING_CLARIFICATION_TTL_HOURS.
"""
import logging
import time
from typing import Any, Callable, Dict, List, Optional

from pydantic import BaseModel, Field

from mall_assistant.agents.entity_recognition_agent import EntityCandidate
from mall_assistant.config import (
    CONVERSATION_CONTEXT_TTL_HOURS,
    CONVERSATION_MAX_MESSAGES,
    PENDING_CLARIFICATION_TTL_HOURS,
)
from mall_assistant.core.models import ConversationContext, RecentMessage
from mall_assistant.orchestration.query_pipeline import QueryOutcome, TurnStatus
from mall_assistant.security.pii_redactor import PIIRedactionFilter, redact_pii

logger = logging.getLogger(__name__)
logger.addFilter(PIIRedactionFilter())


class PendingClarification(BaseModel):
    """A clarification prompt waiting for the user's choice."""
    text: str
    candidates: List[EntityCandidate] = Field(default_factory=list)
    created_at: float = Field(default_factory=time.time)


class ConversationState(BaseModel):
    context: ConversationContext = Field(default_factory=ConversationContext)
    pending: Optional[PendingClarification] = None
    updated_at: float = Field(default_factory=time.time)


class ConversationService:
    """
    In-memory store of conversation context keyed by user id.

    Example:
        >>> service = ConversationService()
        >>> service.get_context("u1").prior_merchant_id is None
        True
    """

    def __init__(
        self,
        max_messages: int = CONVERSATION_MAX_MESSAGES,
        ttl_hours: float = CONVERSATION_CONTEXT_TTL_HOURS,
        pending_ttl_hours: float = PENDING_CLARIFICATION_TTL_HOURS,
        clock: Callable[[], float] = time.time
    ):
        """
        Args:
            max_messages: Recent messages kept per user
            ttl_hours: Idle time after which a user's state is dropped
            pending_ttl_hours: Lifetime of an unanswered clarification
            clock: Time source, injectable for tests
        """
        self.max_messages = max_messages
        self.ttl_seconds = ttl_hours * 3600
        self.pending_ttl_seconds = pending_ttl_hours * 3600
        self._clock = clock
        self._states: Dict[str, ConversationState] = {}

    def _live_state(self, user_id: str) -> Optional[ConversationState]:
        """The user's state, or None if absent or idle past the TTL."""
        state = self._states.get(user_id)
        if state is None:
            return None
        idle = self._clock() - state.updated_at
        if idle >= self.ttl_seconds:
            del self._states[user_id]
            logger.info(f"⌛ Conversation for user {user_id} expired (idle {idle:.0f}s)")
            return None
        return state

    def evict_expired(self) -> int:
        """Drop every idle conversation. Returns the number removed."""
        now = self._clock()
        expired = [uid for uid, state in self._states.items() if now - state.updated_at >= self.ttl_seconds]
        for user_id in expired:
            del self._states[user_id]
        if expired:
            logger.info(f"🧹 Evicted {len(expired)} idle conversation(s)")
        return len(expired)

    def get_context(self, user_id: str) -> ConversationContext:
        """Return a copy of the user's context (empty for unknown or expired users)."""
        state = self._live_state(user_id)
        if state is None:
            return ConversationContext()
        return state.context.model_copy(deep=True)

    def get_pending_clarification(self, user_id: str) -> Optional[PendingClarification]:
        state = self._live_state(user_id)
        if state is None or state.pending is None:
            return None
        if self._clock() - state.pending.created_at >= self.pending_ttl_seconds:
            logger.info(f"⌛ Pending clarification for user {user_id} expired")
            state.pending = None
            return None
        return state.pending

    def record_turn(self, user_id: str, text: str, outcome: QueryOutcome) -> ConversationContext:
        """
        Fold a finished turn into the user's conversation state.

        Args:
            user_id: The user's ID
            text: Raw user utterance (redacted before it is stored)
            outcome: What the pipeline produced for the turn

        Returns:
            The updated context
        """
        self.evict_expired()
        now = self._clock()
        state = self._states.setdefault(user_id, ConversationState(updated_at=now))
        context = state.context

        metadata: Dict[str, Any] = {"status": outcome.status}
        if outcome.intent is not None:
            context.last_intent = outcome.intent.intent
            metadata["intent"] = outcome.intent.intent.value

        if outcome.merchant_id:
            context.prior_merchant_id = outcome.merchant_id
            context.prior_merchant_name = outcome.merchant_name
            metadata["merchant_id"] = outcome.merchant_id
        elif outcome.context_switched:
            context.prior_merchant_id = None
            context.prior_merchant_name = None

        context.recent_messages.append(RecentMessage(content=redact_pii(text), metadata=metadata))
        if len(context.recent_messages) > self.max_messages:
            context.recent_messages = context.recent_messages[-self.max_messages:]

        if outcome.status == TurnStatus.NEEDS_CLARIFICATION and outcome.disambiguation is not None:
            state.pending = PendingClarification(
                text=text,
                candidates=list(outcome.disambiguation.candidates),
                created_at=now,
            )
            logger.info(
                f"❓ Pending clarification for user {user_id}: "
                f"{len(state.pending.candidates)} candidate(s)"
            )
        else:
            state.pending = None

        state.updated_at = now
        logger.info(
            f"💾 Context saved for user {user_id}: merchant={context.prior_merchant_id}, "
            f"messages={len(context.recent_messages)}"
        )
        return context.model_copy(deep=True)

    def clear_pending_clarification(self, user_id: str) -> None:
        state = self._live_state(user_id)
        if state is not None:
            state.pending = None

    def clear_conversation(self, user_id: str) -> bool:
        """
        Forget everything about a user.

        Returns:
            True if there was state to delete
        """
        existed = self._states.pop(user_id, None) is not None
        logger.info(f"🗑️ Cleared conversation for user {user_id} (existed={existed})")
        return existed

    def __len__(self) -> int:
        return len(self._states)
