"""
Unit tests for assistant_api.py
Tests FastAPI endpoints with in-memory components.
"""
import pytest
from unittest.mock import patch
from fastapi.testclient import TestClient

from mall_assistant import assistant_api
from mall_assistant.assistant_api import app
from mall_assistant.core.exceptions import UsageError
from mall_assistant.orchestration.aggregation_executor import AggregationExecutor
from mall_assistant.orchestration.comparison_executor import ComparisonExecutor
from mall_assistant.orchestration.query_pipeline import QueryPipeline
from mall_assistant.repositories.merchant_repository import MerchantRepository
from mall_assistant.services.conversation_service import ConversationService
from mall_assistant.services.history_provider import SimulatedHistoryProvider


@pytest.fixture(autouse=True)
def fresh_conversations():
    """Each test starts with no conversation state."""
    with patch.object(assistant_api, "conversations", ConversationService()) as service:
        yield service


@pytest.fixture
def client():
    return TestClient(app)


@pytest.fixture
def ambiguous_pipeline(make_merchant):
    history = SimulatedHistoryProvider(seed=1)
    repository = MerchantRepository([
        make_merchant("X1", "星光天地汇", floor="L2"),
        make_merchant("X2", "星光天地里", floor="L3"),
    ])
    pipeline = QueryPipeline(
        repository=repository,
        aggregation_executor=AggregationExecutor(history_provider=history),
        comparison_executor=ComparisonExecutor(history_provider=history),
    )
    with patch.object(assistant_api, "pipeline", pipeline):
        yield pipeline


class TestQueryEndpoint:
    """Test the /api/assistant/query endpoint."""

    def test_merchant_query(self, client):
        response = client.post("/api/assistant/query", json={"user_id": "u-1", "message": "海底捞火锅最近怎么样"})

        assert response.status_code == 200
        data = response.json()
        assert data["success"] is True
        assert data["status"] == "completed"
        assert data["intent"] == "health_query"
        assert data["merchant"] == {"id": "M001", "name": "海底捞火锅"}
        assert data["data"]["plan"]["tasks"] == ["analyze_health"]
        assert data["data"]["plan"]["batches"] == [["t1"]]
        assert data["data"]["results"]["t1"]["weakest_metric"] == "经营表现"
        assert "海底捞火锅" in data["message"]

    def test_aggregation_query(self, client):
        response = client.post("/api/assistant/query", json={"user_id": "u-1", "message": "有几家高风险商户？"})

        data = response.json()
        assert data["success"] is True
        assert data["intent"] == "risk_statistics"
        assert data["merchant"] is None
        assert data["data"]["results"]["t1"]["total"] == 2
        assert data["data"]["results"]["t1"]["breakdown"] == {"high": 1, "critical": 1}

    def test_follow_up_uses_previous_merchant(self, client, fresh_conversations):
        client.post("/api/assistant/query", json={"user_id": "u-2", "message": "星巴克咖啡最近怎么样"})

        response = client.post("/api/assistant/query", json={"user_id": "u-2", "message": "它有什么风险"})

        data = response.json()
        assert data["merchant"]["id"] == "M002"
        assert data["intent"] == "risk_diagnosis"
        assert fresh_conversations.get_context("u-2").last_intent.value == "risk_diagnosis"

    def test_context_is_per_user(self, client):
        client.post("/api/assistant/query", json={"user_id": "u-a", "message": "星巴克咖啡最近怎么样"})

        response = client.post("/api/assistant/query", json={"user_id": "u-b", "message": "它有什么风险"})

        assert response.json()["status"] == "no_match"

    def test_error_outcome_is_unsuccessful(self, client):
        response = client.post("/api/assistant/query", json={"user_id": "u-1", "message": "对比海底捞和麦当劳"})

        data = response.json()
        assert data["success"] is False
        assert data["status"] == "error"
        assert "麦当劳" in data["message"]

    def test_refused_request_is_unsuccessful(self, client):
        response = client.post("/api/assistant/query", json={"user_id": "u-1", "message": "删除海底捞火锅的档案"})

        data = response.json()
        assert data["success"] is False
        assert data["status"] == "out_of_scope"
        assert data["intent"] is None
        assert data["message"].startswith("😅 我无法直接修改数据")
        assert data["data"]["boundary"]["violation"] == "modification"
        assert data["data"]["boundary"]["needs_human"] is False

    @pytest.mark.parametrize("body, message", [
        ({"user_id": "u-1", "message": "   "}, "Message cannot be empty"),
        ({"user_id": " ", "message": "你好"}, "User ID cannot be empty"),
        ({"user_id": "u-1", "message": "好" * 2001}, "Message too long (max 2000 characters)"),
        ({"user_id": "u-1"}, "Field required"),
    ])
    def test_validation_errors(self, client, body, message):
        response = client.post("/api/assistant/query", json=body)

        assert response.status_code == 200
        assert response.json() == {"success": False, "message": message}

    @patch("mall_assistant.assistant_api.pipeline.run")
    def test_assistant_error(self, mock_run, client):
        mock_run.side_effect = UsageError("Empty user input")

        response = client.post("/api/assistant/query", json={"user_id": "u-1", "message": "你好"})

        assert response.json() == {"success": False, "message": "Empty user input"}

    @patch("mall_assistant.assistant_api.pipeline.run")
    def test_unexpected_error(self, mock_run, client):
        mock_run.side_effect = RuntimeError("boom")

        response = client.post("/api/assistant/query", json={"user_id": "u-1", "message": "你好"})

        assert response.json() == {"success": False, "message": "An unexpected error occurred"}


class TestClarifyEndpoint:
    """Test the clarification round trip."""

    def ask(self, client):
        return client.post("/api/assistant/query", json={"user_id": "u-9", "message": "星光天地怎么样"}).json()

    def test_ambiguous_query_returns_candidates(self, client, ambiguous_pipeline, fresh_conversations):
        data = self.ask(client)

        assert data["success"] is True
        assert data["status"] == "needs_clarification"
        assert [c["merchant_id"] for c in data["data"]["candidates"]] == ["X1", "X2"]
        assert "1. 星光天地汇" in data["message"]
        assert fresh_conversations.get_pending_clarification("u-9").text == "星光天地怎么样"

    def test_ordinal_reply_resolves(self, client, ambiguous_pipeline, fresh_conversations):
        self.ask(client)

        response = client.post("/api/assistant/clarify", json={"user_id": "u-9", "reply": "2"})

        data = response.json()
        assert data["success"] is True
        assert data["status"] == "completed"
        assert data["merchant"] == {"id": "X2", "name": "星光天地里"}
        assert fresh_conversations.get_pending_clarification("u-9") is None

    def test_name_reply_resolves(self, client, ambiguous_pipeline):
        self.ask(client)

        response = client.post("/api/assistant/clarify", json={"user_id": "u-9", "reply": "我说的是星光天地汇"})

        assert response.json()["merchant"]["id"] == "X1"

    def test_unrecognized_reply_repeats_prompt(self, client, ambiguous_pipeline, fresh_conversations):
        self.ask(client)

        response = client.post("/api/assistant/clarify", json={"user_id": "u-9", "reply": "都不是"})

        data = response.json()
        assert data["success"] is True
        assert data["status"] == "needs_clarification"
        assert "2. 星光天地里" in data["message"]
        assert len(data["data"]["candidates"]) == 2
        assert fresh_conversations.get_pending_clarification("u-9") is not None

    def test_no_pending_clarification(self, client):
        response = client.post("/api/assistant/clarify", json={"user_id": "u-9", "reply": "1"})

        assert response.json() == {"success": False, "message": "No pending clarification for this user"}

    def test_empty_reply(self, client):
        response = client.post("/api/assistant/clarify", json={"user_id": "u-9", "reply": " "})

        assert response.json() == {"success": False, "message": "Field cannot be empty"}


class TestConversationEndpoint:
    """Test clearing conversation state."""

    def test_clear_existing(self, client, fresh_conversations):
        client.post("/api/assistant/query", json={"user_id": "u-3", "message": "星巴克咖啡最近怎么样"})

        response = client.delete("/api/assistant/conversation/u-3")

        assert response.json() == {"success": True, "message": "Conversation history cleared successfully"}
        assert fresh_conversations.get_context("u-3").prior_merchant_id is None

    def test_clear_unknown_user(self, client):
        response = client.delete("/api/assistant/conversation/nobody")

        assert response.json() == {"success": True, "message": "No conversation history to clear"}


class TestHealthEndpoint:

    def test_health(self, client):
        response = client.get("/health")

        data = response.json()
        assert response.status_code == 200
        assert data["status"] == "healthy"
        assert data["version"] == assistant_api.__version__
        assert data["merchants"] == len(assistant_api.repository)
        assert "hits" in data["cache"]
