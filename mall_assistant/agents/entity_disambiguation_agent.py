"""
Entity Disambiguation Agent.

Decides, from ranked candidates, whether one merchant can be accepted or the
user has to be asked. Ambiguity is a normal outcome (needs_clarification),
not an error.
"""
import logging
import re
from enum import Enum
from typing import List, Optional

from pydantic import BaseModel, Field

from mall_assistant.agents.entity_recognition_agent import EntityCandidate, MatchSource
from mall_assistant.core.models import ConversationContext

logger = logging.getLogger(__name__)


# Decision thresholds
DECISIVE_GAP = 0.3
EXACT_ACCEPT_CONFIDENCE = 0.9
CLARIFY_BELOW_CONFIDENCE = 0.85
SHORTLIST_SIZE = 3
LOW_CONFIDENCE_WARNING = 0.5

SOURCE_DESCRIPTIONS = {
    MatchSource.EXACT: "精确匹配",
    MatchSource.FUZZY: "模糊匹配",
    MatchSource.PARTIAL: "部分匹配",
    MatchSource.CONTEXT: "上下文推断",
}

ORDINAL_PATTERN = re.compile(r"^(\d+)$")


class DisambiguationStatus(str, Enum):
    RESOLVED = "resolved"
    NO_MATCH = "no_match"
    NEEDS_CLARIFICATION = "needs_clarification"


class DisambiguationResult(BaseModel):
    """
    Outcome of disambiguation. Exactly one shape holds:

    - resolved: merchant_id, merchant_name, confidence, reason, low_certainty
    - no_match: reason only
    - needs_clarification: candidates (1-3) and clarification_prompt

    Build instances through the classmethod constructors.
    """
    status: DisambiguationStatus
    merchant_id: Optional[str] = None
    merchant_name: Optional[str] = None
    confidence: float = Field(0.0, ge=0, le=1)
    low_certainty: bool = False
    reason: Optional[str] = None
    candidates: List[EntityCandidate] = Field(default_factory=list)
    clarification_prompt: Optional[str] = None

    @classmethod
    def resolved(
        cls,
        merchant_id: str,
        merchant_name: str,
        confidence: float,
        reason: str,
        low_certainty: bool = False
    ) -> "DisambiguationResult":
        return cls(
            status=DisambiguationStatus.RESOLVED,
            merchant_id=merchant_id,
            merchant_name=merchant_name,
            confidence=confidence,
            reason=reason,
            low_certainty=low_certainty,
        )

    @classmethod
    def no_match(cls, reason: str) -> "DisambiguationResult":
        return cls(status=DisambiguationStatus.NO_MATCH, reason=reason)

    @classmethod
    def needs_clarification(
        cls,
        candidates: List[EntityCandidate],
        prompt: str,
        reason: str
    ) -> "DisambiguationResult":
        return cls(
            status=DisambiguationStatus.NEEDS_CLARIFICATION,
            candidates=list(candidates),
            clarification_prompt=prompt,
            reason=reason,
        )

    @property
    def is_resolved(self) -> bool:
        return self.status == DisambiguationStatus.RESOLVED

    @property
    def needs_input(self) -> bool:
        return self.status == DisambiguationStatus.NEEDS_CLARIFICATION


class ValidationOutcome(BaseModel):
    valid: bool
    warning: Optional[str] = None


def generate_clarification_prompt(candidates: List[EntityCandidate]) -> str:
    """
    Numbered clarification prompt.

    Example:
        >>> print(generate_clarification_prompt(shortlist))
        ⚠️ 我不太确定您指的是哪个商户，请选择：
        <BLANKLINE>
        1. 海底捞火锅
        2. 海底捞外卖站
        <BLANKLINE>
        或者直接告诉我完整的商户名称。
    """
    options = "\n".join(f"{i}. {c.merchant_name}" for i, c in enumerate(candidates, start=1))
    return f"⚠️ 我不太确定您指的是哪个商户，请选择：\n\n{options}\n\n或者直接告诉我完整的商户名称。"


class EntityDisambiguationService:
    """Rule-based candidate selection with a clarification fallback."""

    def disambiguate(
        self,
        candidates: List[EntityCandidate],
        text: str = "",
        context: Optional[ConversationContext] = None
    ) -> DisambiguationResult:
        """
        Pick one merchant or ask the user.

        Rules, evaluated in order on the top two candidates:
        1. none            -> no_match
        2. exactly one     -> accept it
        3. gap > 0.3       -> accept the first
        4. first is exact with confidence >= 0.9 -> accept the first
        5. first came from context, second did not -> accept the second
        6. first < 0.85    -> needs_clarification with the top 3
        7. otherwise       -> accept the first, flagged low_certainty

        Args:
            candidates: Output of EntityRecognitionService.recognize()
            text: Raw user input (kept for logging)
            context: Conversation context (unused by the rules)

        Returns:
            DisambiguationResult in exactly one of its three shapes
        """
        if not candidates:
            logger.info("🤷 No merchant candidates")
            return DisambiguationResult.no_match("未找到匹配的商户")

        ranked = sorted(candidates, key=lambda c: c.confidence, reverse=True)

        if len(ranked) == 1:
            only = ranked[0]
            return DisambiguationResult.resolved(
                only.merchant_id,
                only.merchant_name,
                only.confidence,
                f"唯一候选，来源：{SOURCE_DESCRIPTIONS[only.source]}",
            )

        return self._resolve_multiple(ranked)

    def _resolve_multiple(self, ranked: List[EntityCandidate]) -> DisambiguationResult:
        best, second = ranked[0], ranked[1]
        gap = round(best.confidence - second.confidence, 6)

        if gap > DECISIVE_GAP:
            return DisambiguationResult.resolved(
                best.merchant_id,
                best.merchant_name,
                best.confidence,
                f"最高置信度候选，显著优于其他候选（差距{gap * 100:.0f}%）",
            )

        if best.source == MatchSource.EXACT and best.confidence >= EXACT_ACCEPT_CONFIDENCE:
            return DisambiguationResult.resolved(
                best.merchant_id, best.merchant_name, best.confidence, "精确匹配，优先选择"
            )

        if best.source == MatchSource.CONTEXT and second.source != MatchSource.CONTEXT:
            return DisambiguationResult.resolved(
                second.merchant_id,
                second.merchant_name,
                second.confidence,
                "用户明确提到的商户优先于上下文推断",
            )

        if best.confidence < CLARIFY_BELOW_CONFIDENCE:
            shortlist = ranked[:SHORTLIST_SIZE]
            logger.info(f"❓ Asking user to choose between {[c.merchant_name for c in shortlist]}")
            return DisambiguationResult.needs_clarification(
                shortlist,
                generate_clarification_prompt(shortlist),
                "多个候选置信度接近，需要用户确认",
            )

        return DisambiguationResult.resolved(
            best.merchant_id,
            best.merchant_name,
            best.confidence,
            "选择最高置信度候选，但存在其他可能",
            low_certainty=True,
        )

    @staticmethod
    def validate_result(result: DisambiguationResult) -> ValidationOutcome:
        """
        Check the shape invariant of a result.

        Returns:
            valid=False with a system-error message for a broken shape;
            valid=True with a user-facing warning for a resolved result
            below 0.5 confidence; plain valid=True otherwise.
        """
        if result.status == DisambiguationStatus.NEEDS_CLARIFICATION:
            if not result.candidates:
                return ValidationOutcome(valid=False, warning="❌ 系统错误：需要消歧但没有候选实体")
            if result.merchant_id is not None:
                return ValidationOutcome(valid=False, warning="❌ 系统错误：消歧结果同时包含已确认商户和候选列表")
            return ValidationOutcome(valid=True)

        if result.status == DisambiguationStatus.RESOLVED:
            if not result.merchant_id or result.candidates:
                return ValidationOutcome(valid=False, warning="❌ 系统错误：已确认结果缺少商户或包含候选列表")
            if result.confidence < LOW_CONFIDENCE_WARNING:
                return ValidationOutcome(
                    valid=True,
                    warning="⚠️ 提示：我对这个理解不太确定，如果不对请告诉我。",
                )
            return ValidationOutcome(valid=True)

        if result.merchant_id is not None or result.candidates:
            return ValidationOutcome(valid=False, warning="❌ 系统错误：未匹配结果不应包含商户或候选列表")
        return ValidationOutcome(valid=True)

    @staticmethod
    def parse_user_choice(
        reply: str,
        candidates: List[EntityCandidate]
    ) -> Optional[DisambiguationResult]:
        """
        Map a reply to a clarification prompt onto one of its candidates.

        A bare 1-based number selects by position; otherwise the first
        candidate whose name appears in the reply wins.

        Returns:
            Resolved result at confidence 1.0, or None (caller re-prompts)
        """
        reply = (reply or "").strip()

        ordinal = ORDINAL_PATTERN.match(reply)
        if ordinal:
            index = int(ordinal.group(1)) - 1
            if 0 <= index < len(candidates):
                selected = candidates[index]
                return DisambiguationResult.resolved(
                    selected.merchant_id, selected.merchant_name, 1.0, "用户明确选择"
                )

        for candidate in candidates:
            if candidate.merchant_name in reply:
                return DisambiguationResult.resolved(
                    candidate.merchant_id, candidate.merchant_name, 1.0, "用户明确指定商户名称"
                )

        return None
