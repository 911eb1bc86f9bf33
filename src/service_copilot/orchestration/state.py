"""Conversation protocol states, persisted snapshots and reply classification."""

import re
from datetime import datetime
from enum import Enum
from typing import Any, Literal

from pydantic import BaseModel, Field, model_validator

from service_copilot.core.models import CamelModel
from service_copilot.llm.decoder import PlanResponse
from service_copilot.llm.model_service import TokenUsage


class ConversationState(str, Enum):
    IDLE = "IDLE"
    PLANNING = "PLANNING"
    AWAITING_CONFIRMATION = "AWAITING_CONFIRMATION"
    EXECUTING = "EXECUTING"


class PendingPlan(CamelModel):
    """In-flight state-changing action awaiting inputs or confirmation.

    Plans are replaced, never edited: ``merge`` returns a new plan.
    ``missing_fields`` is kept distinct and disjoint from the collected keys.
    """

    action: str
    tool: str
    collected_fields: dict[str, Any] = Field(default_factory=dict)
    missing_fields: list[str] = Field(default_factory=list)
    params: dict[str, Any] = Field(default_factory=dict)

    @model_validator(mode="after")
    def _normalize_missing_fields(self) -> "PendingPlan":
        seen: list[str] = []
        for field in self.missing_fields:
            if field not in seen and field not in self.collected_fields:
                seen.append(field)
        self.missing_fields = seen
        return self

    @classmethod
    def from_plan(cls, plan: PlanResponse) -> "PendingPlan":
        return cls(
            action=plan.action,
            tool=plan.action,
            collected_fields=dict(plan.collected_fields),
            missing_fields=list(plan.missing_fields),
            params=dict(plan.collected_fields),
        )

    @classmethod
    def from_tool_call(cls, tool: str, params: dict[str, Any]) -> "PendingPlan":
        return cls(
            action=tool,
            tool=tool,
            collected_fields=dict(params),
            missing_fields=[],
            params=dict(params),
        )

    def merge(
        self, collected_fields: dict[str, Any], missing_fields: list[str]
    ) -> "PendingPlan":
        """New plan with ``collected_fields`` layered over the current ones."""
        return PendingPlan(
            action=self.action,
            tool=self.tool,
            collected_fields={**self.collected_fields, **collected_fields},
            missing_fields=list(missing_fields),
            params={**self.params, **collected_fields},
        )

    def execution_params(self) -> dict[str, Any]:
        return {**self.params, **self.collected_fields}

    @property
    def is_complete(self) -> bool:
        return not self.missing_fields


class Message(BaseModel):
    role: Literal["user", "assistant"]
    content: str
    created_at: datetime


class ConversationSnapshot(BaseModel):
    """Persisted per-conversation protocol state.

    ``version`` increases on every successful save and guards against
    concurrent turns overwriting each other.
    """

    conversation_id: str
    user_id: str
    state: ConversationState = ConversationState.IDLE
    pending_plan: PendingPlan | None = None
    billing_preview_id: str | None = None
    last_execution: dict[str, Any] | None = None
    version: int = 0
    created_at: datetime
    updated_at: datetime

    def transition(
        self,
        state: ConversationState,
        pending_plan: PendingPlan | None = None,
        **changes: Any,
    ) -> "ConversationSnapshot":
        return self.model_copy(
            update={"state": state, "pending_plan": pending_plan, **changes}
        )


class ExecutedTool(CamelModel):
    tool: str
    success: bool
    result: Any = None
    error: str | None = None
    error_code: str | None = None


class OrchestrationResult(CamelModel):
    message: str
    state: ConversationState
    pending_plan: PendingPlan | None = None
    data: Any = None
    executed_tools: list[ExecutedTool] = Field(default_factory=list)
    token_usage: TokenUsage | None = None


# Reply classification

REJECTION_PATTERN = re.compile(
    r"^(?:please\s+|no,?\s+)?"
    r"(no|n|nope|nah|cancel|stop|abort|never ?mind|forget it|don'?t)"
    r"(?:\s+(?:it|that|this|the operation))?(?:[.!,]|$)",
    re.IGNORECASE,
)
MODIFICATION_PATTERN = re.compile(
    r"\b(change|modify|edit|update|adjust|correct|fix)\b", re.IGNORECASE
)
CONFIRMATION_PATTERN = re.compile(
    r"^(yes|y|yep|yeah|ok|okay|sure|confirm|confirmed|i confirm|yes,? confirm|"
    r"yes,? i confirm|go ahead|proceed|do it)[.!]*$",
    re.IGNORECASE,
)


class ReplyKind(str, Enum):
    REJECTION = "REJECTION"
    MODIFICATION = "MODIFICATION"
    CONFIRMATION = "CONFIRMATION"
    AMBIGUOUS = "AMBIGUOUS"


def is_rejection(message: str) -> bool:
    text = message.strip()
    return bool(REJECTION_PATTERN.match(text))


def is_modification_request(message: str) -> bool:
    return bool(MODIFICATION_PATTERN.search(message))


def is_confirmation(message: str) -> bool:
    return bool(CONFIRMATION_PATTERN.match(message.strip()))


def classify_reply(message: str) -> ReplyKind:
    """Classify a reply to a confirmation request; rejection wins over the rest."""
    if is_rejection(message):
        return ReplyKind.REJECTION
    if is_modification_request(message):
        return ReplyKind.MODIFICATION
    if is_confirmation(message):
        return ReplyKind.CONFIRMATION
    return ReplyKind.AMBIGUOUS
