"""Tests for the HTTP chat server."""

import pytest
from starlette.testclient import TestClient

from service_copilot import __version__
from service_copilot.app import Components, build_components
from service_copilot.core.store import InMemoryBusinessStore
from service_copilot.llm.fake_model import FakeModelService
from service_copilot.orchestration.state_store import InMemoryConversationStore
from service_copilot.server.gateway import ChatGateway
from service_copilot.server.server import ChatServer
from service_copilot.tools.permissions import SubscriptionTier
from service_copilot.tools.results import ToolContext
from tests.fixtures.sample_data import OTHER_USER_ID, USER_ID

HEADERS = {"X-User-Id": USER_ID}


@pytest.fixture
def components(business_store: InMemoryBusinessStore) -> Components:
    return build_components(
        business_store=business_store,
        state_store=InMemoryConversationStore(),
        model=FakeModelService(),
    )


@pytest.fixture
def chat_server(components: Components) -> ChatServer:
    return ChatServer(components.gateway, components.ledger)


@pytest.fixture
def test_client(chat_server: ChatServer) -> TestClient:
    return TestClient(chat_server.create_app())


class TestConversationEndpoints:
    """Test suite for conversation lifecycle endpoints."""

    @pytest.mark.unit
    def test_health_check(self, test_client: TestClient) -> None:
        response = test_client.get("/health")

        assert response.status_code == 200
        assert response.json() == {
            "status": "healthy",
            "service": "service-copilot",
            "version": __version__,
            "idempotency_conflicts": 0,
        }

    @pytest.mark.unit
    def test_missing_user_header(self, test_client: TestClient) -> None:
        response = test_client.post("/api/conversations")

        assert response.status_code == 401
        assert "X-User-Id" in response.json()["error"]

    @pytest.mark.unit
    def test_create_and_get_conversation(self, test_client: TestClient) -> None:
        created = test_client.post("/api/conversations", headers=HEADERS)
        conversation_id = created.json()["conversation_id"]

        info = test_client.get(f"/api/conversations/{conversation_id}", headers=HEADERS)

        assert created.status_code == 201
        assert created.json()["state"] == "IDLE"
        assert info.status_code == 200
        assert info.json()["version"] == 0
        assert info.json()["message_count"] == 0

    @pytest.mark.unit
    def test_get_conversation_of_another_user(self, test_client: TestClient) -> None:
        created = test_client.post("/api/conversations", headers=HEADERS)
        conversation_id = created.json()["conversation_id"]

        response = test_client.get(
            f"/api/conversations/{conversation_id}", headers={"X-User-Id": OTHER_USER_ID}
        )

        assert response.status_code == 404


class TestChatEndpoint:
    """Test suite for the chat endpoint."""

    @pytest.mark.unit
    def test_chat_starts_conversation(self, test_client: TestClient) -> None:
        response = test_client.post(
            "/api/chat", json={"message": "list customers"}, headers=HEADERS
        )

        assert response.status_code == 200
        data = response.json()
        assert data["conversation_id"]
        assert data["state"] == "IDLE"
        assert data["message"] == "Found 2 result(s)."
        assert data["executed_tools"][0]["tool"] == "customers.search"
        assert data["token_usage"]["input_tokens"] == 20

    @pytest.mark.unit
    def test_create_customer_conversation(
        self, test_client: TestClient, business_store: InMemoryBusinessStore
    ) -> None:
        first = test_client.post(
            "/api/chat", json={"message": "create customer"}, headers=HEADERS
        ).json()
        conversation_id = first["conversation_id"]

        second = test_client.post(
            "/api/chat",
            json={"message": "Bob's Garage", "conversation_id": conversation_id},
            headers=HEADERS,
        ).json()
        third = test_client.post(
            "/api/chat",
            json={"message": "yes", "conversation_id": conversation_id},
            headers=HEADERS,
        ).json()

        assert first["state"] == "PLANNING"
        assert first["plan"]["missing_fields"] == ["name"]
        assert second["state"] == "AWAITING_CONFIRMATION"
        assert third["state"] == "IDLE"
        assert third["message"] == "Customer created successfully."
        assert third["data"]["name"] == "Bob's Garage"

    @pytest.mark.unit
    def test_invalid_json(self, test_client: TestClient) -> None:
        response = test_client.post(
            "/api/chat",
            content="not json",
            headers={**HEADERS, "Content-Type": "application/json"},
        )

        assert response.status_code == 400
        assert "Invalid JSON" in response.json()["error"]

    @pytest.mark.unit
    @pytest.mark.parametrize(
        "body", [{}, {"message": ""}, {"message": "x" * 4001}, ["not", "an", "object"]]
    )
    def test_invalid_request(self, test_client: TestClient, body: object) -> None:
        response = test_client.post("/api/chat", json=body, headers=HEADERS)

        assert response.status_code == 400
        assert "Invalid request format" in response.json()["error"]

    @pytest.mark.unit
    def test_unknown_conversation(self, test_client: TestClient) -> None:
        response = test_client.post(
            "/api/chat",
            json={"message": "hi", "conversation_id": "missing"},
            headers=HEADERS,
        )

        assert response.status_code == 404

    @pytest.mark.unit
    def test_rate_limit(self, components: Components) -> None:
        gateway = ChatGateway(
            components.orchestrator,
            components.state_store,
            components.business_store,
            max_requests_per_minute=1,
        )
        client = TestClient(ChatServer(gateway, components.ledger).create_app())

        first = client.post("/api/chat", json={"message": "hi"}, headers=HEADERS)
        second = client.post("/api/chat", json={"message": "hi"}, headers=HEADERS)

        assert first.status_code == 200
        assert second.status_code == 429


class TestLifespan:
    @pytest.mark.unit
    def test_sweeper_runs_while_serving(self, chat_server: ChatServer) -> None:
        with TestClient(chat_server.create_app()) as client:
            assert client.get("/health").status_code == 200
            assert chat_server.ledger._sweeper_task is not None

        assert chat_server.ledger._sweeper_task is None


class TestHealthMetrics:
    @pytest.mark.unit
    async def test_reused_key_shows_in_health(
        self, components: Components, chat_server: ChatServer
    ) -> None:
        context = ToolContext(user_id=USER_ID, tier=SubscriptionTier.PROFESSIONAL)
        await components.executor.execute(
            "customers.create", {"name": "Bob", "idempotencyKey": "k1"}, context
        )
        replay = await components.executor.execute(
            "customers.create", {"name": "Robert", "idempotencyKey": "k1"}, context
        )

        response = TestClient(chat_server.create_app()).get("/health")

        assert replay.replayed is True
        assert response.json()["idempotency_conflicts"] == 1
