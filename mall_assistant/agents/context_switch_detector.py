"""
Context Switch Detector.

Spots utterances where the user moves away from the merchant carried over
from the previous turn ("换一家", "看看别的"), so the prior merchant is not
inferred for an omitted subject. A newly named merchant needs no detection:
recognition already ranks explicit matches above the context candidate.
"""
import logging
from typing import Optional

from pydantic import BaseModel

from mall_assistant.core.models import ConversationContext

logger = logging.getLogger(__name__)

SWITCH_KEYWORDS = ["换", "其他", "另一个", "别的", "换个", "看看别的"]

# Comparisons talk about several merchants at once; they keep the context
COMPARISON_KEYWORDS = ["对比", "比较", "vs", "和", "跟"]


class ContextSwitch(BaseModel):
    should_switch: bool
    confidence: float
    reason: str


def detect_switch(text: str, context: Optional[ConversationContext] = None) -> ContextSwitch:
    """
    Decide whether the utterance leaves the carried merchant behind.

    Args:
        text: Raw user utterance
        context: Current conversation context

    Returns:
        ContextSwitch; should_switch is False when there is nothing to leave
    """
    if context is None or not context.prior_merchant_id:
        return ContextSwitch(should_switch=False, confidence=1.0, reason="无上下文商户")

    lowered = text.lower()
    if any(kw in lowered for kw in COMPARISON_KEYWORDS):
        return ContextSwitch(should_switch=False, confidence=0.9, reason="用户想进行对比，不是切换上下文")
    if any(kw in text for kw in SWITCH_KEYWORDS):
        return ContextSwitch(should_switch=True, confidence=0.8, reason="用户使用了切换关键词")
    return ContextSwitch(should_switch=False, confidence=1.0, reason="无切换意图")


def drop_prior_merchant(context: ConversationContext) -> ConversationContext:
    """Copy of the context without the carried merchant."""
    logger.info(f"🔀 Context switch: leaving prior merchant {context.prior_merchant_id}")
    return context.model_copy(update={"prior_merchant_id": None, "prior_merchant_name": None})
