"""
Boundary Checker - keeps the assistant read-only and inside its remit.

Runs before intent classification. Two kinds of refusal:
- out of scope: data modification, batch operations, sensitive data and
  system administration
- needs a human: forecasts and professional (legal, tax, investment) advice

Each refusal carries a reason and a suggested alternative for the user.
"""
import logging
from enum import Enum
from typing import Callable, List, Optional, Tuple

from pydantic import BaseModel, Field

from mall_assistant.security.pii_redactor import PIIRedactionFilter, redact_pii

logger = logging.getLogger(__name__)
logger.addFilter(PIIRedactionFilter())


class BoundaryViolation(str, Enum):
    MODIFICATION = "modification"
    BATCH_OPERATION = "batch_operation"
    SENSITIVE_DATA = "sensitive_data"
    SYSTEM_ADMIN = "system_admin"
    PREDICTION = "prediction"
    PROFESSIONAL_ADVICE = "professional_advice"


class BoundaryCheck(BaseModel):
    """Verdict for one utterance; `allowed` is False for every violation."""
    allowed: bool = True
    violation: Optional[BoundaryViolation] = None
    reason: Optional[str] = None
    suggested_action: Optional[str] = None
    needs_human: bool = False
    keywords: List[str] = Field(default_factory=list)

    @property
    def message(self) -> str:
        """User-facing refusal text ('' when allowed)."""
        if self.allowed:
            return ""
        if self.needs_human:
            return f"⚠️ {self.reason}\n\n{self.suggested_action}"
        return f"😅 {self.reason}\n\n💡 建议：{self.suggested_action}"


# ============================================================================
# RULE TABLES
# ============================================================================

MODIFICATION_KEYWORDS = ["修改", "删除", "更新", "设置", "调整为", "改成", "改为"]

# "所有商户" / "全部商户" are read-side statistics; they only count as a batch
# operation together with an action verb.
BATCH_KEYWORDS = ["批量", "一键"]
SCOPE_KEYWORDS = ["所有", "全部"]
BATCH_ACTION_KEYWORDS = ["发送", "通知", "催缴", "关闭", "执行", "导出"]

SENSITIVE_KEYWORDS = ["银行", "账号", "密码", "身份证", "合同", "协议"]
SYSTEM_ADMIN_KEYWORDS = ["配置", "权限", "用户管理", "系统设置", "数据库"]

PREDICTION_KEYWORDS = ["预测", "未来", "明年", "下个月会", "趋势会"]
PROFESSIONAL_KEYWORDS = ["法律", "合规", "税务", "财务建议", "投资"]

HUMAN_FOLLOW_UP = "如有疑问，请联系运营团队获取专业支持。"


def _hits(text: str, keywords: List[str]) -> List[str]:
    return [kw for kw in keywords if kw in text]


def _batch_hits(text: str) -> List[str]:
    hits = _hits(text, BATCH_KEYWORDS)
    if hits:
        return hits
    scope = _hits(text, SCOPE_KEYWORDS)
    actions = _hits(text, BATCH_ACTION_KEYWORDS)
    return scope + actions if scope and actions else []


# (violation, detector, reason, suggested action), checked in this order
SCOPE_RULES: List[Tuple[BoundaryViolation, Callable[[str], List[str]], str, str]] = [
    (BoundaryViolation.MODIFICATION, lambda t: _hits(t, MODIFICATION_KEYWORDS),
     "我无法直接修改数据", "请前往商户管理页面进行修改，或联系管理员"),
    (BoundaryViolation.BATCH_OPERATION, _batch_hits,
     "批量操作需要人工审核", "请明确具体商户和操作内容"),
    (BoundaryViolation.SENSITIVE_DATA, lambda t: _hits(t, SENSITIVE_KEYWORDS),
     "该信息涉及商户隐私", "请联系商户运营经理获取授权"),
    (BoundaryViolation.SYSTEM_ADMIN, lambda t: _hits(t, SYSTEM_ADMIN_KEYWORDS),
     "系统管理操作需要管理员权限", "请联系系统管理员处理"),
]

HUMAN_RULES: List[Tuple[BoundaryViolation, List[str], str]] = [
    (BoundaryViolation.PREDICTION, PREDICTION_KEYWORDS, "系统无法预测未来，建议基于历史数据分析趋势"),
    (BoundaryViolation.PROFESSIONAL_ADVICE, PROFESSIONAL_KEYWORDS, "此类问题需要专业人士意见，建议咨询法务/财务部门"),
]


class BoundaryChecker:
    """Keyword rules deciding whether the assistant may answer a request."""

    def check_boundary(self, text: str) -> BoundaryCheck:
        """
        Refuse requests the assistant must never act on.

        Rules in order: modification, batch operation, sensitive data,
        system administration. The first hit wins.
        """
        for violation, detector, reason, suggestion in SCOPE_RULES:
            hits = detector(text)
            if hits:
                return BoundaryCheck(
                    allowed=False,
                    violation=violation,
                    reason=reason,
                    suggested_action=suggestion,
                    keywords=hits,
                )
        return BoundaryCheck()

    @staticmethod
    def check_uncertainty(text: str) -> BoundaryCheck:
        """Hand forecasts and professional-advice questions to a person."""
        for violation, keywords, reason in HUMAN_RULES:
            hits = _hits(text, keywords)
            if hits:
                return BoundaryCheck(
                    allowed=False,
                    violation=violation,
                    reason=reason,
                    suggested_action=HUMAN_FOLLOW_UP,
                    needs_human=True,
                    keywords=hits,
                )
        return BoundaryCheck()

    def check(self, text: str) -> BoundaryCheck:
        """Scope rules first, then the needs-a-human rules."""
        result = self.check_boundary(text)
        if result.allowed:
            result = self.check_uncertainty(text)
        if not result.allowed:
            logger.warning(
                f"🚧 Request refused ({result.violation.value}, keywords={result.keywords}): "
                f"'{redact_pii(text)}'"
            )
        return result
