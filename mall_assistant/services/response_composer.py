"""
Response composer: turns a turn's structured outcome into user-facing text.

Results are handed to the chat model verbatim, including the merchant
records they were computed over, and the model is told to cite only those.
If no model is configured or the call fails, a deterministic formatter
produces the text instead.
"""
import json
import logging
from typing import Any, List, Optional

from langchain_core.language_models import BaseChatModel
from langchain_core.messages import BaseMessage, HumanMessage, SystemMessage
from pydantic import BaseModel

from mall_assistant.config import OPENAI_API_KEY, OPENAI_MODEL, OPENAI_TEMPERATURE, USE_LLM
from mall_assistant.core.models import AggregationResult, ComparisonResult
from mall_assistant.orchestration.aggregation_executor import AggregationExecutor
from mall_assistant.orchestration.query_pipeline import QueryOutcome, TurnStatus
from mall_assistant.security.pii_redactor import redact_pii
from mall_assistant.utils.formatting import clean_number, format_number

logger = logging.getLogger(__name__)


SYSTEM_PROMPT = """你是商场运营助手，帮助招商和运营人员了解商户经营状况。

规则：
1. 只使用下方"查询结果"中的数据回答，不要编造任何商户、数字或结论。
2. 提到商户时，只能引用 merchant_list / 记录中出现的商户名称。
3. 结果为空时，明确告诉用户没有符合条件的商户。
4. 回答简洁、专业，使用中文，可适当使用列表。
5. 标注为"delegated"的任务（诊断、案例匹配、帮扶方案）请基于提供的商户记录给出建议，并说明依据。"""

HELP_MESSAGE = (
    "您可以这样问我：\n"
    "• 海底捞火锅最近怎么样？\n"
    "• 有几家高风险商户？\n"
    "• 餐饮商户平均健康度是多少？\n"
    "• 海底捞火锅和上月对比"
)

RISK_LEVEL_NAMES = {
    "none": "无风险",
    "low": "低风险",
    "medium": "中风险",
    "high": "高风险",
    "critical": "极高风险",
}


def to_jsonable(value: Any) -> Any:
    if isinstance(value, BaseModel):
        return value.model_dump(mode="json", exclude_none=True)
    if isinstance(value, dict):
        return {k: to_jsonable(v) for k, v in value.items()}
    if isinstance(value, (list, tuple)):
        return [to_jsonable(v) for v in value]
    return value


class ResponseComposer:
    """Grounded response text via an injected chat model, with a rule-based fallback."""

    def __init__(self, llm: Optional[BaseChatModel] = None, use_llm: bool = USE_LLM):
        """
        Args:
            llm: Chat model to use. If None and use_llm is set, a ChatOpenAI
                model is created lazily from configuration.
            use_llm: Whether to call a model at all
        """
        self._llm = llm
        self.use_llm = use_llm

    def _get_llm(self) -> Optional[BaseChatModel]:
        if self._llm is not None:
            return self._llm
        if not self.use_llm or not OPENAI_API_KEY:
            return None
        from langchain_openai import ChatOpenAI
        self._llm = ChatOpenAI(model=OPENAI_MODEL, temperature=OPENAI_TEMPERATURE, api_key=OPENAI_API_KEY)
        return self._llm

    def compose(self, outcome: QueryOutcome) -> str:
        """
        Produce the reply text for a turn.

        Refusal, clarification, no-match and error outcomes are answered
        deterministically; completed and fallback turns go to the model when
        one is available.
        """
        if outcome.status in (TurnStatus.OUT_OF_SCOPE, TurnStatus.NEEDS_CLARIFICATION):
            return outcome.message or ""
        if outcome.status == TurnStatus.NO_MATCH:
            return f"🤷 没有找到您提到的商户，请提供完整的商户名称。\n\n{HELP_MESSAGE}"
        if outcome.status == TurnStatus.ERROR:
            return f"❌ 查询失败：{outcome.message}"

        llm = self._get_llm()
        if llm is not None:
            try:
                response = llm.invoke(self.build_messages(outcome))
                text = response.content if isinstance(response.content, str) else str(response.content)
                logger.info(f"✅ LLM message generated ({len(text)} chars)")
                return text
            except Exception as e:
                logger.exception(f"❌ LLM response generation failed, using fallback formatter: {e}")

        return self.format_fallback(outcome)

    def build_messages(self, outcome: QueryOutcome) -> List[BaseMessage]:
        """System + human messages with the results serialized verbatim."""
        payload = {
            "intent": outcome.intent.intent.value if outcome.intent else None,
            "merchant": {"id": outcome.merchant_id, "name": outcome.merchant_name} if outcome.merchant_id else None,
            "results": to_jsonable(outcome.results),
        }
        human = (
            f"用户问题：{redact_pii(outcome.text)}\n\n"
            f"查询结果：\n{json.dumps(payload, ensure_ascii=False, indent=2)}"
        )
        return [SystemMessage(content=SYSTEM_PROMPT), HumanMessage(content=human)]

    # ------------------------------------------------------------------
    # Deterministic formatting
    # ------------------------------------------------------------------

    def format_fallback(self, outcome: QueryOutcome) -> str:
        if outcome.status == TurnStatus.FALLBACK or not outcome.results:
            return f"🤖 这个问题我暂时无法用数据回答。\n\n{HELP_MESSAGE}"

        sections = []
        for result in outcome.results.values():
            if isinstance(result, AggregationResult):
                sections.append(self.format_aggregation(result))
            elif isinstance(result, ComparisonResult):
                sections.append(self.format_comparison(result))
            elif isinstance(result, dict):
                sections.append(self.format_skill(result))
        return "\n\n".join(s for s in sections if s)

    @staticmethod
    def format_aggregation(result: AggregationResult) -> str:
        text = AggregationExecutor.format_result(result)
        if result.merchant_list:
            names = "、".join(m.name for m in result.merchant_list[:10])
            more = f" 等{len(result.merchant_list)}家" if len(result.merchant_list) > 10 else ""
            text += f"\n\n涉及商户：{names}{more}"
        else:
            text += "\n\n没有符合条件的商户。"
        return text

    @staticmethod
    def format_comparison(result: ComparisonResult) -> str:
        baseline_name = result.baseline.label or result.baseline.merchant_name or "基准"
        lines = [f"📊 {result.current.merchant_name} vs {baseline_name}"]
        for field, delta in result.delta.items():
            lines.append(f"  {field}: {delta}")
        if result.insights:
            lines.append("")
            lines.append("洞察：")
            lines.extend(f"• {insight}" for insight in result.insights)
        return "\n".join(lines)

    @staticmethod
    def format_skill(result: dict) -> str:
        if "total_score" in result:
            risk = RISK_LEVEL_NAMES.get(result["risk_level"], result["risk_level"])
            return (
                f"🏬 {result['merchant_name']}（{result['category']}，{result['floor']}）\n"
                f"健康度：{format_number(result['total_score'])}分，风险等级：{risk}\n"
                f"最薄弱指标：{result['weakest_metric']}"
            )
        if "signals" in result:
            if not result["signals"]:
                return f"✅ {result['merchant_name']} 暂未发现明显风险信号"
            lines = [f"🚨 {result['merchant_name']} 风险信号："]
            lines.extend(f"• [{s['severity']}] {s['message']}" for s in result["signals"])
            return "\n".join(lines)
        if result.get("status") == "delegated":
            # Needs the text generation backend; nothing to add offline
            return ""
        return json.dumps({k: clean_number(v) if isinstance(v, float) else v for k, v in result.items()},
                          ensure_ascii=False)
