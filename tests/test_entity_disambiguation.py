"""
Unit tests for entity_disambiguation_agent.py
Tests the decision rules, the result shape validator and reply parsing.
"""
import pytest

from mall_assistant.agents.entity_disambiguation_agent import (
    DisambiguationResult,
    DisambiguationStatus,
    EntityDisambiguationService,
    generate_clarification_prompt,
)
from mall_assistant.agents.entity_recognition_agent import EntityCandidate, MatchSource


def candidate(merchant_id, name, confidence, source=MatchSource.PARTIAL):
    return EntityCandidate(merchant_id=merchant_id, merchant_name=name, confidence=confidence, source=source)


def populated_shapes(result: DisambiguationResult) -> int:
    """How many of the three result shapes a result carries data for."""
    shapes = 0
    if result.merchant_id is not None:
        shapes += 1
    if result.candidates:
        shapes += 1
    if result.status == DisambiguationStatus.NO_MATCH:
        shapes += 1
    return shapes


@pytest.fixture
def service():
    return EntityDisambiguationService()


class TestDecisionRules:
    """Test the seven rules in order."""

    def test_no_candidates_is_no_match(self, service):
        result = service.disambiguate([], "麦当劳怎么样")

        assert result.status == DisambiguationStatus.NO_MATCH
        assert result.merchant_id is None
        assert result.candidates == []

    def test_single_candidate_is_accepted(self, service):
        result = service.disambiguate([candidate("M001", "海底捞火锅", 0.4)])

        assert result.is_resolved
        assert result.merchant_id == "M001"
        assert result.confidence == pytest.approx(0.4)

    def test_large_gap_accepts_first(self, service):
        result = service.disambiguate([
            candidate("M001", "海底捞火锅", 0.85, MatchSource.FUZZY),
            candidate("M008", "海底捞外卖站", 0.5),
        ])

        assert result.is_resolved
        assert result.merchant_id == "M001"
        assert not result.low_certainty

    def test_gap_of_exactly_point_three_is_not_decisive(self, service):
        result = service.disambiguate([
            candidate("A", "甲", 0.8),
            candidate("B", "乙", 0.5),
        ])

        assert result.status == DisambiguationStatus.NEEDS_CLARIFICATION

    def test_exact_match_accepted_when_gap_is_small(self, service):
        result = service.disambiguate([
            candidate("M001", "海底捞火锅", 1.0, MatchSource.EXACT),
            candidate("M008", "海底捞外卖站", 0.85, MatchSource.FUZZY),
        ])

        assert result.is_resolved
        assert result.merchant_id == "M001"
        assert result.reason == "精确匹配，优先选择"

    def test_gap_and_exact_rules_agree_on_first_candidate(self, service):
        """When both the gap rule and the exact rule apply, the exact match wins either way."""
        result = service.disambiguate([
            candidate("M001", "海底捞火锅", 1.0, MatchSource.EXACT),
            candidate("M008", "海底捞外卖站", 0.375),
        ])

        assert result.is_resolved
        assert result.merchant_id == "M001"
        assert result.confidence == 1.0
        assert not result.low_certainty

    def test_explicit_mention_beats_context(self, service):
        result = service.disambiguate([
            candidate("M002", "星巴克咖啡", 0.6, MatchSource.CONTEXT),
            candidate("M005", "绿茶餐厅", 0.5),
        ])

        assert result.is_resolved
        assert result.merchant_id == "M005"

    def test_close_low_confidence_candidates_need_clarification(self, service):
        result = service.disambiguate([
            candidate("A", "海底捞火锅", 0.82),
            candidate("B", "海底捞外卖站", 0.80),
        ])

        assert result.status == DisambiguationStatus.NEEDS_CLARIFICATION
        assert 2 <= len(result.candidates) <= 3
        assert result.merchant_id is None
        assert "1. 海底捞火锅" in result.clarification_prompt
        assert "2. 海底捞外卖站" in result.clarification_prompt

    def test_clarification_shortlist_is_capped_at_three(self, service):
        result = service.disambiguate([
            candidate("A", "甲", 0.7),
            candidate("B", "乙", 0.68),
            candidate("C", "丙", 0.66),
            candidate("D", "丁", 0.64),
        ])

        assert [c.merchant_id for c in result.candidates] == ["A", "B", "C"]

    def test_candidates_are_ranked_before_rules_apply(self, service):
        result = service.disambiguate([
            candidate("B", "乙", 0.5),
            candidate("A", "甲", 0.9),
        ])

        assert result.merchant_id == "A"

    def test_high_confidence_tie_accepted_with_low_certainty(self, service):
        result = service.disambiguate([
            candidate("M001", "海底捞火锅", 0.85, MatchSource.FUZZY),
            candidate("M009", "海底捞餐厅", 0.85, MatchSource.FUZZY),
        ])

        assert result.is_resolved
        assert result.merchant_id == "M001"
        assert result.low_certainty

    @pytest.mark.parametrize("confidences", [
        (0.9, 0.1), (0.82, 0.8), (0.85, 0.85), (0.6, 0.6, 0.6), (1.0, 0.99), (0.3, 0.2),
    ])
    def test_exactly_one_shape_populated(self, service, confidences):
        candidates = [candidate(f"M{i}", f"商户{i}", c) for i, c in enumerate(confidences)]

        result = service.disambiguate(candidates)

        assert populated_shapes(result) == 1
        assert service.validate_result(result).valid


class TestValidateResult:
    """Test the shape validator."""

    def test_clarification_without_candidates_is_system_error(self):
        broken = DisambiguationResult(status=DisambiguationStatus.NEEDS_CLARIFICATION)

        outcome = EntityDisambiguationService.validate_result(broken)

        assert not outcome.valid
        assert outcome.warning == "❌ 系统错误：需要消歧但没有候选实体"

    def test_low_confidence_resolution_is_valid_with_warning(self):
        result = DisambiguationResult.resolved("M001", "海底捞火锅", 0.4, "唯一候选")

        outcome = EntityDisambiguationService.validate_result(result)

        assert outcome.valid
        assert outcome.warning == "⚠️ 提示：我对这个理解不太确定，如果不对请告诉我。"

    def test_confident_resolution_has_no_warning(self):
        result = DisambiguationResult.resolved("M001", "海底捞火锅", 0.9, "唯一候选")

        outcome = EntityDisambiguationService.validate_result(result)

        assert outcome.valid
        assert outcome.warning is None

    def test_no_match_with_merchant_is_invalid(self):
        broken = DisambiguationResult(status=DisambiguationStatus.NO_MATCH, merchant_id="M001")

        assert not EntityDisambiguationService.validate_result(broken).valid


class TestParseUserChoice:
    """Test mapping a clarification reply back to a candidate."""

    def setup_method(self):
        self.shortlist = [
            candidate("M001", "海底捞火锅", 0.82),
            candidate("M008", "海底捞外卖站", 0.80),
        ]

    def test_ordinal_selects_by_position(self):
        result = EntityDisambiguationService.parse_user_choice("2", self.shortlist)

        assert result.is_resolved
        assert result.merchant_id == "M008"
        assert result.confidence == 1.0

    def test_ordinal_with_whitespace(self):
        result = EntityDisambiguationService.parse_user_choice(" 1 ", self.shortlist)

        assert result.merchant_id == "M001"

    def test_name_in_reply_selects_candidate(self):
        result = EntityDisambiguationService.parse_user_choice("我说的是海底捞外卖站", self.shortlist)

        assert result.merchant_id == "M008"
        assert result.confidence == 1.0

    def test_out_of_range_ordinal_returns_none(self):
        assert EntityDisambiguationService.parse_user_choice("5", self.shortlist) is None

    def test_unrelated_reply_returns_none(self):
        assert EntityDisambiguationService.parse_user_choice("都不是", self.shortlist) is None


class TestClarificationPrompt:

    def test_prompt_is_numbered(self):
        prompt = generate_clarification_prompt([
            candidate("M001", "海底捞火锅", 0.82),
            candidate("M008", "海底捞外卖站", 0.80),
        ])

        assert prompt == (
            "⚠️ 我不太确定您指的是哪个商户，请选择：\n\n"
            "1. 海底捞火锅\n2. 海底捞外卖站\n\n"
            "或者直接告诉我完整的商户名称。"
        )
