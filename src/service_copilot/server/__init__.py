"""HTTP chat server and gateway for the orchestration engine."""

from service_copilot.server.gateway import ChatGateway
from service_copilot.server.models import (
    ChatRequest,
    ChatResponse,
    ConversationInfoResponse,
    CreateConversationResponse,
    HealthResponse,
)
from service_copilot.server.server import ChatServer, main

__all__ = [
    # Server
    "ChatServer",
    "ChatGateway",
    "main",
    # Models
    "ChatRequest",
    "ChatResponse",
    "ConversationInfoResponse",
    "CreateConversationResponse",
    "HealthResponse",
]
