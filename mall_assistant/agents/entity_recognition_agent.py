"""
Entity Recognition Agent for merchant references in user utterances.

Turns free text into a ranked list of candidate merchants. Four strategies run
in fixed precedence and their results are merged:

1. exact   - the normalized input contains a full merchant name (1.0)
2. fuzzy   - the input contains the name minus its category suffix (0.85);
             when that short name points at exactly one merchant and no
             full name matched, it counts as exact ("海底捞" for "海底捞火锅")
3. partial - length-ratio / longest-common-substring similarity (ratio)
4. context - the prior turn's merchant, only for omitted-subject inputs (0.6)

Recognition never raises: an empty list is a valid answer.
"""
import logging
import re
from enum import Enum
from typing import Iterable, List, Optional

from pydantic import BaseModel, Field

from mall_assistant.core.models import ConversationContext, Merchant
from mall_assistant.security.pii_redactor import PIIRedactionFilter, redact_pii

logger = logging.getLogger(__name__)
logger.addFilter(PIIRedactionFilter())


# ============================================================================
# MODELS
# ============================================================================

class MatchSource(str, Enum):
    EXACT = "exact"
    FUZZY = "fuzzy"
    PARTIAL = "partial"
    CONTEXT = "context"


class EntityCandidate(BaseModel):
    """A provisional (merchant, confidence, provenance) triple."""
    merchant_id: str = Field(..., description="Merchant id in the dataset")
    merchant_name: str = Field(..., description="Display name")
    confidence: float = Field(..., ge=0, le=1)
    source: MatchSource
    matched_text: Optional[str] = Field(None, description="Text span that produced the match")


# ============================================================================
# MATCHING CONSTANTS
# ============================================================================

EXACT_CONFIDENCE = 1.0
FUZZY_CONFIDENCE = 0.85
CONTEXT_CONFIDENCE = 0.6

# A candidate at or above this suppresses context inference
CONTEXT_SUPPRESSION_CONFIDENCE = 0.8

MIN_CORE_LENGTH = 2
MIN_LCS_LENGTH = 2

SENTENCE_PARTICLES = ["呢", "吧", "啊", "呀", "哦", "哈", "嘛", "咯"]
PUNCTUATION_PATTERN = re.compile(r"[，。！？；：“”‘’\"'（）()【】《》?!,.;:]")
WHITESPACE_PATTERN = re.compile(r"\s+")

# Stripped in this order, each anchored at the end of the name
CATEGORY_SUFFIXES = [
    "火锅", "咖啡", "餐厅", "面包店", "甜品店", "奶茶店",
    "服装", "超市", "便利店", "书店", "花店",
    "珠宝", "黄金", "钻石", "翡翠", "玉器",
    "影院", "健身房", "美容院", "理发店", "药店",
    "店", "馆", "坊", "阁", "轩", "居", "廊", "城", "街",
    "专卖店", "专卖", "工厂", "工坊",
]

PRONOUNS = ["它", "他", "她", "这个", "那个", "该", "这", "那", "这家", "那家"]

OMISSION_PATTERNS = [
    re.compile(r"^(最近|近期|现在)?(怎么样|如何|怎样)"),
    re.compile(r"^有.*吗\??\s*$"),
    re.compile(r"^(是否|是不是|有没有)"),
    re.compile(r"^(需要|应该|可以|能否)"),
    re.compile(r"^(怎么|如何)(帮扶|解决|处理|改善)"),
    re.compile(r"^(查看|查询|看看|了解)"),
    re.compile(r"^(营收|健康度|风险|客流|满意度)"),
]


# ============================================================================
# TEXT HELPERS
# ============================================================================

def normalize(text: str) -> str:
    """
    Normalize text before matching.

    Removes sentence-final particles, lower-cases, trims and strips all
    whitespace and punctuation.

    Example:
        >>> normalize("海底捞 火锅呢？")
        '海底捞火锅'
    """
    for particle in SENTENCE_PARTICLES:
        text = text.replace(particle, "")
    text = text.lower().strip()
    text = WHITESPACE_PATTERN.sub("", text)
    return PUNCTUATION_PATTERN.sub("", text)


def strip_category_suffixes(name: str) -> str:
    for suffix in CATEGORY_SUFFIXES:
        if name.endswith(suffix):
            name = name[: -len(suffix)]
    return name


def longest_common_substring(a: str, b: str) -> str:
    """Classic O(len(a) * len(b)) DP; returns the first longest run found in a."""
    best_length = 0
    best_end = 0
    previous = [0] * (len(b) + 1)
    for i in range(1, len(a) + 1):
        current = [0] * (len(b) + 1)
        for j in range(1, len(b) + 1):
            if a[i - 1] == b[j - 1]:
                current[j] = previous[j - 1] + 1
                if current[j] > best_length:
                    best_length = current[j]
                    best_end = i
        previous = current
    return a[best_end - best_length:best_end]


def partial_threshold(input_length: int) -> float:
    """Shorter inputs need a closer match: 0.6 at <=3 chars down to 0.3 at >=6."""
    if input_length <= 3:
        return 0.6
    if input_length >= 6:
        return 0.3
    return 0.6 - (input_length - 3) * 0.1


def similarity(normalized_input: str, normalized_name: str) -> float:
    if not normalized_input or not normalized_name:
        return 0.0
    if normalized_name in normalized_input:
        return len(normalized_name) / len(normalized_input)
    if normalized_input in normalized_name:
        return len(normalized_input) / len(normalized_name)
    lcs = longest_common_substring(normalized_input, normalized_name)
    if len(lcs) >= MIN_LCS_LENGTH:
        return len(lcs) / max(len(normalized_input), len(normalized_name))
    return 0.0


def is_pronoun_or_omitted(text: str) -> bool:
    """True if the raw input refers back to an earlier subject or omits it."""
    if any(pronoun in text for pronoun in PRONOUNS):
        return True
    return any(pattern.search(text) for pattern in OMISSION_PATTERNS)


# ============================================================================
# SERVICE
# ============================================================================

class EntityRecognitionService:
    """
    Recognizes merchant references against a dataset snapshot.

    The merchant list is fixed at construction so a single turn always sees
    one consistent dataset.
    """

    def __init__(self, merchants: Iterable[Merchant]):
        self._merchants = list(merchants)
        self._normalized_names = [normalize(m.name) for m in self._merchants]

    def recognize(
        self,
        text: str,
        context: Optional[ConversationContext] = None
    ) -> List[EntityCandidate]:
        """
        Recognize merchant candidates in user input.

        Args:
            text: Raw user utterance
            context: Optional conversation context (prior merchant)

        Returns:
            Deduplicated candidates sorted by descending confidence
            (stable on ties). Empty if nothing matched.

        Example:
            >>> service = EntityRecognitionService(merchants)
            >>> [c.source for c in service.recognize("海底捞火锅最近怎么样")]
            [<MatchSource.EXACT: 'exact'>]
        """
        normalized = normalize(text or "")
        candidates: List[EntityCandidate] = []

        exact = self._exact_match(normalized)
        fuzzy = self._fuzzy_match(normalized)
        if exact is None and len(fuzzy) == 1:
            exact = self._promote_unique_core(fuzzy.pop())
        if exact:
            candidates.append(exact)
        candidates.extend(fuzzy)
        candidates.extend(self._partial_match(normalized))

        if context and self._should_use_context(text or "", candidates):
            context_candidate = self._context_match(context)
            if context_candidate:
                candidates.append(context_candidate)

        result = self._deduplicate(candidates)
        result.sort(key=lambda c: c.confidence, reverse=True)

        logger.debug(
            f"🔎 Recognized {len(result)} candidate(s) in '{redact_pii(text or '')}': "
            f"{[(c.merchant_name, round(c.confidence, 2), c.source.value) for c in result]}"
        )
        return result

    def _exact_match(self, normalized: str) -> Optional[EntityCandidate]:
        for merchant, name in zip(self._merchants, self._normalized_names):
            if name and name in normalized:
                return EntityCandidate(
                    merchant_id=merchant.id,
                    merchant_name=merchant.name,
                    confidence=EXACT_CONFIDENCE,
                    source=MatchSource.EXACT,
                    matched_text=merchant.name,
                )
        return None

    def _fuzzy_match(self, normalized: str) -> List[EntityCandidate]:
        matches = []
        for merchant, name in zip(self._merchants, self._normalized_names):
            core = strip_category_suffixes(name)
            if len(core) >= MIN_CORE_LENGTH and core in normalized:
                matches.append(EntityCandidate(
                    merchant_id=merchant.id,
                    merchant_name=merchant.name,
                    confidence=FUZZY_CONFIDENCE,
                    source=MatchSource.FUZZY,
                    matched_text=core,
                ))
        return matches

    @staticmethod
    def _promote_unique_core(candidate: EntityCandidate) -> EntityCandidate:
        return candidate.model_copy(update={"confidence": EXACT_CONFIDENCE, "source": MatchSource.EXACT})

    def _partial_match(self, normalized: str) -> List[EntityCandidate]:
        matches = []
        threshold = partial_threshold(len(normalized))
        for merchant, name in zip(self._merchants, self._normalized_names):
            score = similarity(normalized, name)
            if score > threshold:
                matches.append(EntityCandidate(
                    merchant_id=merchant.id,
                    merchant_name=merchant.name,
                    confidence=min(score, 1.0),
                    source=MatchSource.PARTIAL,
                    matched_text=name,
                ))
        return matches

    @staticmethod
    def _should_use_context(text: str, candidates: List[EntityCandidate]) -> bool:
        if any(c.confidence >= CONTEXT_SUPPRESSION_CONFIDENCE for c in candidates):
            return False
        return is_pronoun_or_omitted(text)

    @staticmethod
    def _context_match(context: ConversationContext) -> Optional[EntityCandidate]:
        if not context.prior_merchant_id or not context.prior_merchant_name:
            return None
        return EntityCandidate(
            merchant_id=context.prior_merchant_id,
            merchant_name=context.prior_merchant_name,
            confidence=CONTEXT_CONFIDENCE,
            source=MatchSource.CONTEXT,
        )

    @staticmethod
    def _deduplicate(candidates: List[EntityCandidate]) -> List[EntityCandidate]:
        best = {}
        for candidate in candidates:
            existing = best.get(candidate.merchant_id)
            if existing is None or candidate.confidence > existing.confidence:
                best[candidate.merchant_id] = candidate
        return list(best.values())


def recognize_entities(
    text: str,
    merchants: Iterable[Merchant],
    context: Optional[ConversationContext] = None
) -> List[EntityCandidate]:
    """Convenience wrapper: build a service over `merchants` and recognize."""
    return EntityRecognitionService(merchants).recognize(text, context)
