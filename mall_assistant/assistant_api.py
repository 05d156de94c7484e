from contextlib import asynccontextmanager
from typing import Any, Dict, Optional

from fastapi import FastAPI, Request
from fastapi.middleware.cors import CORSMiddleware
from pydantic import BaseModel, ValidationError, field_validator

from mall_assistant import __version__
from mall_assistant.agents.entity_disambiguation_agent import (
    EntityDisambiguationService,
    generate_clarification_prompt,
)
from mall_assistant.config import (
    CORS_ALLOW_CREDENTIALS,
    CORS_ALLOW_HEADERS,
    CORS_ALLOW_METHODS,
    CORS_MAX_AGE,
    CORS_ORIGINS,
    ENABLE_PII_REDACTION,
    HISTORY_RANDOM_SEED,
    LOG_LEVEL,
    QUERY_CACHE_ENABLED,
    QUERY_CACHE_MAX_SIZE,
    QUERY_CACHE_TTL_SECONDS,
)
from mall_assistant.core.exceptions import AssistantError
from mall_assistant.logging_config import get_logger, setup_logging
from mall_assistant.orchestration.aggregation_executor import AggregationExecutor
from mall_assistant.orchestration.comparison_executor import ComparisonExecutor
from mall_assistant.orchestration.query_pipeline import QueryOutcome, QueryPipeline, TurnStatus
from mall_assistant.repositories.merchant_repository import get_merchant_repository
from mall_assistant.services.conversation_service import ConversationService
from mall_assistant.services.history_provider import SimulatedHistoryProvider
from mall_assistant.services.query_cache import QueryCache
from mall_assistant.services.response_composer import ResponseComposer, to_jsonable

# Setup logging with PII redaction
setup_logging(log_level=LOG_LEVEL, enable_pii_redaction=ENABLE_PII_REDACTION)
logger = get_logger("mall_assistant.api")

MAX_MESSAGE_LENGTH = 2000


class QueryRequest(BaseModel):
    user_id: str
    message: str

    @field_validator("user_id")
    @classmethod
    def validate_user_id(cls, v):
        if not v or not v.strip():
            raise ValueError("User ID cannot be empty")
        return v.strip()

    @field_validator("message")
    @classmethod
    def validate_message(cls, v):
        if not v or not v.strip():
            raise ValueError("Message cannot be empty")
        if len(v) > MAX_MESSAGE_LENGTH:
            raise ValueError(f"Message too long (max {MAX_MESSAGE_LENGTH} characters)")
        return v


class ClarifyRequest(BaseModel):
    user_id: str
    reply: str

    @field_validator("user_id", "reply")
    @classmethod
    def validate_not_empty(cls, v):
        if not v or not v.strip():
            raise ValueError("Field cannot be empty")
        return v.strip()


@asynccontextmanager
async def lifespan(app: FastAPI):
    """Handle application startup and shutdown events."""
    logger.info(f"Starting Mall Assistant API with {len(repository)} merchants...")
    yield
    logger.info("Shutdown complete")


app = FastAPI(
    title="Mall Assistant API",
    description="Conversational query core for mall merchant operations",
    version=__version__,
    lifespan=lifespan
)

logger.info(f"🔒 CORS:mode - Allowing origins: {CORS_ORIGINS}")
app.add_middleware(
    CORSMiddleware,
    allow_origins=CORS_ORIGINS,
    allow_credentials=CORS_ALLOW_CREDENTIALS,
    allow_methods=CORS_ALLOW_METHODS,
    allow_headers=CORS_ALLOW_HEADERS,
    max_age=CORS_MAX_AGE,
)

# Shared components; the cache is flushed whenever the dataset changes
repository = get_merchant_repository()
query_cache = QueryCache(
    max_size=QUERY_CACHE_MAX_SIZE,
    ttl_seconds=QUERY_CACHE_TTL_SECONDS,
    enabled=QUERY_CACHE_ENABLED,
)
query_cache.attach(repository)
history_provider = SimulatedHistoryProvider(seed=HISTORY_RANDOM_SEED)

pipeline = QueryPipeline(
    repository=repository,
    aggregation_executor=AggregationExecutor(history_provider=history_provider, cache=query_cache),
    comparison_executor=ComparisonExecutor(history_provider=history_provider),
)
composer = ResponseComposer()
conversations = ConversationService()


def _validation_message(e: ValidationError) -> str:
    if not e.errors():
        return "Invalid request format"
    msg = e.errors()[0].get("msg", "")
    # pydantic prefixes custom validator errors with "Value error, "
    return msg.replace("Value error, ", "") or "Invalid request format"


def build_response(outcome: QueryOutcome, message: str) -> Dict[str, Any]:
    """Shape a finished turn into the API response body."""
    merchant = None
    if outcome.merchant_id:
        merchant = {"id": outcome.merchant_id, "name": outcome.merchant_name}

    data: Dict[str, Any] = {"results": to_jsonable(outcome.results)}
    if outcome.boundary is not None:
        data["boundary"] = {
            "violation": outcome.boundary.violation.value,
            "needs_human": outcome.boundary.needs_human,
            "suggested_action": outcome.boundary.suggested_action,
        }
    if outcome.disambiguation is not None and outcome.disambiguation.candidates:
        data["candidates"] = [
            {"merchant_id": c.merchant_id, "merchant_name": c.merchant_name, "confidence": c.confidence}
            for c in outcome.disambiguation.candidates
        ]
    if outcome.plan is not None:
        data["plan"] = {
            "plan_id": outcome.plan.plan_id,
            "strategy": outcome.plan.strategy.value,
            "tasks": [task.action for task in outcome.plan.tasks],
            "batches": outcome.batches,
        }

    return {
        "success": outcome.status not in (TurnStatus.ERROR, TurnStatus.OUT_OF_SCOPE),
        "message": message,
        "status": outcome.status,
        "intent": outcome.intent.intent.value if outcome.intent else None,
        "merchant": merchant,
        "data": data,
    }


@app.post("/api/assistant/query", response_model=Dict[str, Any])
async def receive_query(http_request: Request) -> Dict[str, Any]:
    """
    Run one conversational turn for a user.

    Example:
        POST /api/assistant/query
        {"user_id": "u-1", "message": "有几家高风险商户？"}

        Response:
        {
            "success": true,
            "message": "📊 统计数量: 2 ...",
            "status": "completed",
            "intent": "risk_statistics",
            "merchant": null,
            "data": {...}
        }
    """
    try:
        request_data = await http_request.json()
        request = QueryRequest(**request_data)

        context = conversations.get_context(request.user_id)
        outcome = pipeline.run(request.message, context=context)
        message = composer.compose(outcome)
        conversations.record_turn(request.user_id, request.message, outcome)

        return build_response(outcome, message)

    except ValidationError as e:
        error_msg = _validation_message(e)
        logger.warning(f"Validation failed: {error_msg}")
        return {"success": False, "message": error_msg}

    except AssistantError as e:
        logger.warning(f"⚠️ Query rejected: {e}")
        return {"success": False, "message": str(e)}

    except Exception as e:
        logger.exception(f"Unexpected error in API endpoint: {e}")
        return {"success": False, "message": "An unexpected error occurred"}


@app.post("/api/assistant/clarify", response_model=Dict[str, Any])
async def receive_clarification(http_request: Request) -> Dict[str, Any]:
    """
    Answer a pending clarification prompt.

    The reply may be the 1-based number of a listed candidate or a text
    containing one candidate's name. The original question is then re-run
    with that merchant. An unrecognized reply repeats the prompt.
    """
    try:
        request_data = await http_request.json()
        request = ClarifyRequest(**request_data)

        pending = conversations.get_pending_clarification(request.user_id)
        if pending is None:
            return {"success": False, "message": "No pending clarification for this user"}

        choice = EntityDisambiguationService.parse_user_choice(request.reply, pending.candidates)
        if choice is None:
            logger.info(f"❓ Unrecognized clarification reply from user {request.user_id}")
            prompt: Optional[str] = None
            if pending.candidates:
                prompt = generate_clarification_prompt(pending.candidates)
            return {
                "success": True,
                "message": prompt or "请告诉我完整的商户名称。",
                "status": TurnStatus.NEEDS_CLARIFICATION,
                "intent": None,
                "merchant": None,
                "data": {"candidates": [c.model_dump(mode="json") for c in pending.candidates]},
            }

        context = conversations.get_context(request.user_id)
        outcome = pipeline.run(pending.text, context=context, resolution=choice)
        message = composer.compose(outcome)
        conversations.record_turn(request.user_id, pending.text, outcome)

        return build_response(outcome, message)

    except ValidationError as e:
        error_msg = _validation_message(e)
        logger.warning(f"Validation failed: {error_msg}")
        return {"success": False, "message": error_msg}

    except AssistantError as e:
        logger.warning(f"⚠️ Clarification rejected: {e}")
        return {"success": False, "message": str(e)}

    except Exception as e:
        logger.exception(f"Unexpected error in clarification endpoint: {e}")
        return {"success": False, "message": "An unexpected error occurred"}


@app.delete("/api/assistant/conversation/{user_id}")
async def clear_conversation_history(user_id: str) -> Dict[str, Any]:
    """
    Clear conversation context (prior merchant, recent messages, pending
    clarification) for a user.

    Example:
        DELETE /api/assistant/conversation/u-1

        Response:
        {
            "success": true,
            "message": "Conversation history cleared successfully"
        }
    """
    existed = conversations.clear_conversation(user_id)
    if existed:
        return {"success": True, "message": "Conversation history cleared successfully"}
    return {"success": True, "message": "No conversation history to clear"}


@app.get("/health")
async def health_check() -> Dict[str, Any]:
    return {
        "status": "healthy",
        "version": __version__,
        "merchants": len(repository),
        "cache": query_cache.get_stats(),
    }
