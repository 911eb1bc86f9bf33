"""Error taxonomy for tool results and exceptions raised across components."""

from enum import Enum


class ToolErrorCode(str, Enum):
    """Stable codes returned in tool result envelopes.

    Callers branch on these, never on the human-readable error text.
    """

    ENTITY_NOT_FOUND = "ENTITY_NOT_FOUND"
    ENTITY_NOT_OWNED = "ENTITY_NOT_OWNED"
    VALIDATION_ERROR = "VALIDATION_ERROR"
    PLAN_LIMIT_EXCEEDED = "PLAN_LIMIT_EXCEEDED"
    PREVIEW_REQUIRED = "PREVIEW_REQUIRED"
    PREVIEW_EXPIRED = "PREVIEW_EXPIRED"
    IDEMPOTENCY_CONFLICT = "IDEMPOTENCY_CONFLICT"
    PERMISSION_DENIED = "PERMISSION_DENIED"
    UNKNOWN_TOOL = "UNKNOWN_TOOL"
    INTERNAL_ERROR = "INTERNAL_ERROR"


class ServiceCopilotError(Exception):
    """Base class for exceptions raised by this package."""


class StaleStateError(ServiceCopilotError):
    """A conversation snapshot was written by another turn since it was loaded."""

    def __init__(self, conversation_id: str, expected: int, actual: int):
        super().__init__(
            f"Conversation {conversation_id} is at version {actual}, expected {expected}"
        )
        self.conversation_id = conversation_id
        self.expected = expected
        self.actual = actual


class ConversationNotFoundError(ServiceCopilotError):
    """Conversation does not exist or belongs to another user."""


class PreviewAlreadyConsumedError(ServiceCopilotError):
    """A charge preview was consumed between validation and commit."""


class StoreUnavailableError(ServiceCopilotError):
    """A backing store could not be reached or answered with a server error."""


class RateLimitExceededError(ServiceCopilotError):
    """Caller sent too many messages in the current window."""
