"""HTTP chat server exposing the orchestration engine."""

import argparse
import logging
from collections.abc import AsyncIterator
from contextlib import asynccontextmanager

import uvicorn
from pydantic import ValidationError
from starlette.applications import Starlette
from starlette.requests import Request
from starlette.responses import JSONResponse
from starlette.routing import Route

from service_copilot import __version__
from service_copilot.config import DEFAULT_HOST, DEFAULT_PORT
from service_copilot.errors import ConversationNotFoundError, RateLimitExceededError
from service_copilot.server.gateway import ChatGateway
from service_copilot.server.models import (
    ChatRequest,
    CreateConversationResponse,
    HealthResponse,
)
from service_copilot.tools.idempotency import IdempotencyLedger
from service_copilot.utils.env import configure_logging

USER_ID_HEADER = "X-User-Id"


class ChatServer:
    """Starlette app around a ChatGateway.

    Caller identity comes from the ``X-User-Id`` header set by an upstream
    authentication proxy.
    """

    def __init__(self, gateway: ChatGateway, ledger: IdempotencyLedger):
        self.gateway = gateway
        self.ledger = ledger
        self.logger = logging.getLogger(__name__)

    @staticmethod
    def _user_id(request: Request) -> str | None:
        user_id = request.headers.get(USER_ID_HEADER, "").strip()
        return user_id or None

    @staticmethod
    def _unauthorized() -> JSONResponse:
        return JSONResponse({"error": f"Missing {USER_ID_HEADER} header"}, status_code=401)

    async def create_conversation_endpoint(self, request: Request) -> JSONResponse:
        """Start a new conversation for the caller."""
        user_id = self._user_id(request)
        if not user_id:
            return self._unauthorized()

        snapshot = await self.gateway.create_conversation(user_id)
        response = CreateConversationResponse(
            conversation_id=snapshot.conversation_id,
            state=snapshot.state.value,
            created_at=snapshot.created_at.isoformat(),
        )
        return JSONResponse(response.model_dump(), status_code=201)

    async def chat_endpoint(self, request: Request) -> JSONResponse:
        """Send a message and receive the assistant's reply."""
        user_id = self._user_id(request)
        if not user_id:
            return self._unauthorized()

        try:
            body = await request.json()
        except ValueError as e:
            return JSONResponse({"error": f"Invalid JSON: {str(e)}"}, status_code=400)

        try:
            chat_request = ChatRequest(**body)
        except (ValidationError, TypeError) as e:
            return JSONResponse(
                {"error": f"Invalid request format: {str(e)}"}, status_code=400
            )

        try:
            response = await self.gateway.chat(
                user_id,
                chat_request,
                ip_address=request.client.host if request.client else None,
                user_agent=request.headers.get("user-agent"),
            )
        except RateLimitExceededError as e:
            return JSONResponse({"error": str(e)}, status_code=429)
        except ConversationNotFoundError as e:
            return JSONResponse({"error": str(e)}, status_code=404)

        return JSONResponse(response.model_dump(mode="json"))

    async def get_conversation_endpoint(self, request: Request) -> JSONResponse:
        """Get conversation state and metadata."""
        user_id = self._user_id(request)
        if not user_id:
            return self._unauthorized()

        conversation_id = request.path_params["conversation_id"]
        try:
            info = await self.gateway.get_conversation(user_id, conversation_id)
        except ConversationNotFoundError as e:
            return JSONResponse({"error": str(e)}, status_code=404)
        return JSONResponse(info.model_dump(mode="json"))

    async def health_check(self, request: Request) -> JSONResponse:
        response = HealthResponse(
            status="healthy",
            service="service-copilot",
            version=__version__,
            idempotency_conflicts=self.ledger.conflict_count,
        )
        return JSONResponse(response.model_dump())

    @asynccontextmanager
    async def lifespan(self, app: Starlette) -> AsyncIterator[None]:
        self.ledger.start_sweeper()
        try:
            yield
        finally:
            await self.ledger.stop_sweeper()

    def create_app(self) -> Starlette:
        """Create the Starlette application with routes."""
        routes = [
            Route("/api/conversations", self.create_conversation_endpoint, methods=["POST"]),
            Route(
                "/api/conversations/{conversation_id}",
                self.get_conversation_endpoint,
                methods=["GET"],
            ),
            Route("/api/chat", self.chat_endpoint, methods=["POST"]),
            Route("/health", self.health_check, methods=["GET"]),
        ]
        return Starlette(routes=routes, lifespan=self.lifespan)


def main() -> None:
    """Main entry point for the chat server."""
    from service_copilot.app import build_components

    parser = argparse.ArgumentParser(
        description="Service Copilot chat server - HTTP API for the orchestration engine"
    )
    parser.add_argument("--host", default=DEFAULT_HOST, help="Host to bind to")
    parser.add_argument(
        "--port", type=int, default=DEFAULT_PORT, help="Port to listen on"
    )
    parser.add_argument(
        "--verbose", action="store_true", help="Enable debug logging"
    )
    args = parser.parse_args()

    configure_logging(args.verbose)
    components = build_components()
    server = ChatServer(components.gateway, components.ledger)

    logging.getLogger(__name__).info(
        f"Service Copilot server starting on http://{args.host}:{args.port}"
    )
    uvicorn.run(server.create_app(), host=args.host, port=args.port)


if __name__ == "__main__":
    main()
