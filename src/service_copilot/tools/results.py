"""Execution context and the uniform result envelope returned by every tool."""

from typing import Any, Literal

from pydantic import BaseModel, Field

from service_copilot.core.models import CamelModel
from service_copilot.errors import ToolErrorCode
from service_copilot.tools.permissions import SubscriptionTier


class ToolContext(BaseModel):
    """Who is calling a tool and from where."""

    user_id: str
    conversation_id: str | None = None
    tier: SubscriptionTier = SubscriptionTier.FREE
    ip_address: str | None = None
    user_agent: str | None = None


class AffectedEntity(CamelModel):
    entity_type: str
    id: str
    action: Literal["read", "created"]


class ToolResult(CamelModel):
    success: bool
    data: Any = None
    error: str | None = None
    error_code: ToolErrorCode | None = None
    affected_entities: list[AffectedEntity] = Field(default_factory=list)
    replayed: bool = False

    @classmethod
    def ok(
        cls, data: Any, affected_entities: list[AffectedEntity] | None = None
    ) -> "ToolResult":
        return cls(success=True, data=data, affected_entities=affected_entities or [])

    @classmethod
    def failure(cls, error_code: ToolErrorCode, message: str) -> "ToolResult":
        return cls(success=False, error=message, error_code=error_code)
