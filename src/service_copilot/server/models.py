"""Pydantic models for chat server requests and responses."""

from typing import Any

from pydantic import BaseModel, Field

from service_copilot.llm.model_service import TokenUsage
from service_copilot.orchestration.state import ExecutedTool, PendingPlan


class CreateConversationResponse(BaseModel):
    conversation_id: str
    state: str
    created_at: str


class ChatRequest(BaseModel):
    """A user message, optionally continuing an existing conversation."""

    message: str = Field(min_length=1, max_length=4000)
    conversation_id: str | None = None


class ChatResponse(BaseModel):
    conversation_id: str
    message: str
    state: str
    plan: PendingPlan | None = None
    data: Any = None
    executed_tools: list[ExecutedTool] | None = None
    token_usage: TokenUsage | None = None


class ConversationInfoResponse(BaseModel):
    conversation_id: str
    state: str
    pending_plan: PendingPlan | None = None
    billing_preview_id: str | None = None
    version: int
    message_count: int
    created_at: str
    updated_at: str


class HealthResponse(BaseModel):
    """Health check response."""

    status: str
    service: str
    version: str
    idempotency_conflicts: int = 0
