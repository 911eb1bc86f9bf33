"""Tolerant decoding of semi-structured model output into typed intents.

The model is asked to answer with one JSON object tagged by ``type``. In
practice it wraps the object in prose or markdown fences, so extraction tries
progressively looser strategies before treating the reply as plain text.
"""

import json
import logging
import re
from enum import Enum
from typing import Annotated, Any, Literal

from pydantic import BaseModel, Field, TypeAdapter, ValidationError

from service_copilot.core.models import CamelModel
from service_copilot.utils.constants import CHARGE_COMMIT_OPERATION, WRITE_OPERATIONS

logger = logging.getLogger(__name__)

RESPONSE_TYPES = ("PLAN", "CALL_TOOL", "ASK_USER", "RESPONSE")

JSON_FENCE_PATTERN = re.compile(r"```json\s*([\s\S]*?)```", re.IGNORECASE)
GENERIC_FENCE_PATTERN = re.compile(r"```[a-zA-Z]*\s*([\s\S]*?)```")
TYPED_OBJECT_PATTERN = re.compile(r'\{[\s\S]*"type"\s*:\s*"[A-Z_]+"')


class PlanResponse(CamelModel):
    """Proposed state-changing action, possibly still missing inputs."""

    type: Literal["PLAN"] = "PLAN"
    action: str
    collected_fields: dict[str, Any] = Field(default_factory=dict)
    missing_fields: list[str] = Field(default_factory=list)
    suggested_actions: list[str] = Field(default_factory=list)
    requires_confirmation: bool = True
    message: str | None = None


class ToolCallResponse(CamelModel):
    type: Literal["CALL_TOOL"] = "CALL_TOOL"
    tool: str
    params: dict[str, Any] = Field(default_factory=dict)


class AskUserResponse(CamelModel):
    type: Literal["ASK_USER"] = "ASK_USER"
    question: str
    context: str | None = None
    options: list[str] | None = None


class InformativeResponse(CamelModel):
    type: Literal["RESPONSE"] = "RESPONSE"
    message: str
    data: Any = None


AgentResponse = Annotated[
    PlanResponse | ToolCallResponse | AskUserResponse | InformativeResponse,
    Field(discriminator="type"),
]

_response_adapter: TypeAdapter[AgentResponse] = TypeAdapter(AgentResponse)


class DecodeOutcome(str, Enum):
    """How a decode attempt ended, independent of the variant produced."""

    STRUCTURED = "STRUCTURED"
    PLAIN_TEXT = "PLAIN_TEXT"
    UNKNOWN_TYPE = "UNKNOWN_TYPE"
    SCHEMA_ERROR = "SCHEMA_ERROR"
    EMPTY = "EMPTY"


class DecodeResult(BaseModel):
    success: bool
    outcome: DecodeOutcome
    response: AgentResponse | None = None
    error: str | None = None
    raw_text: str | None = None


def _format_validation_error(error: ValidationError) -> str:
    return ", ".join(
        f"{'.'.join(str(part) for part in issue['loc'])}: {issue['msg']}"
        for issue in error.errors()
    )


def _load_object(text: str) -> dict[str, Any] | None:
    """Parse ``text`` as JSON, returning it only when it is an object."""
    try:
        parsed = json.loads(text)
    except (json.JSONDecodeError, ValueError, RecursionError):
        return None
    return parsed if isinstance(parsed, dict) else None


def _scan_balanced_object(text: str, start: int) -> str | None:
    """Return the brace-balanced substring opening at ``start``.

    Braces inside string literals are ignored.
    """
    depth = 0
    in_string = False
    escaped = False
    for index in range(start, len(text)):
        char = text[index]
        if in_string:
            if escaped:
                escaped = False
            elif char == "\\":
                escaped = True
            elif char == '"':
                in_string = False
            continue
        if char == '"':
            in_string = True
        elif char == "{":
            depth += 1
        elif char == "}":
            depth -= 1
            if depth == 0:
                return text[start : index + 1]
    return None


def extract_json_object(content: str) -> dict[str, Any] | None:
    """Find the first JSON object in model output.

    Tries, in order: the whole trimmed text, every ```json fence, every
    generic fence, then a brace scan from the first ``{`` that precedes a
    ``"type": "UPPER_CASE"`` key.
    """
    trimmed = content.strip()

    parsed = _load_object(trimmed)
    if parsed is not None:
        return parsed

    for pattern in (JSON_FENCE_PATTERN, GENERIC_FENCE_PATTERN):
        for match in pattern.finditer(content):
            parsed = _load_object(match.group(1).strip())
            if parsed is not None:
                return parsed

    match = TYPED_OBJECT_PATTERN.search(content)
    if match:
        candidate = _scan_balanced_object(content, match.start())
        if candidate:
            return _load_object(candidate)

    return None


def decode_response(content: str | None) -> DecodeResult:
    """Decode raw model text into one of the four response variants.

    Args:
        content: Raw completion text

    Returns:
        DecodeResult. ``success`` is False only for blank input and for objects
        whose recognized ``type`` carries invalid fields.
    """
    if content is None or not content.strip():
        return DecodeResult(
            success=False,
            outcome=DecodeOutcome.EMPTY,
            error="Empty or invalid content",
        )

    trimmed = content.strip()
    payload = extract_json_object(content)

    if payload is None:
        return DecodeResult(
            success=True,
            outcome=DecodeOutcome.PLAIN_TEXT,
            response=InformativeResponse(message=trimmed),
        )

    response_type = payload.get("type")
    if response_type not in RESPONSE_TYPES:
        logger.warning(f"Unknown response type in model output: {response_type!r}")
        return DecodeResult(
            success=True,
            outcome=DecodeOutcome.UNKNOWN_TYPE,
            response=InformativeResponse(message=trimmed),
        )

    try:
        response = _response_adapter.validate_python(payload)
    except ValidationError as e:
        error = _format_validation_error(e)
        logger.warning(f"Invalid {response_type} structure: {error}")
        return DecodeResult(
            success=False,
            outcome=DecodeOutcome.SCHEMA_ERROR,
            error=f"Invalid response structure: {error}",
            raw_text=content,
        )

    return DecodeResult(success=True, outcome=DecodeOutcome.STRUCTURED, response=response)


def is_plan(response: Any) -> bool:
    return isinstance(response, PlanResponse)


def is_tool_call(response: Any) -> bool:
    return isinstance(response, ToolCallResponse)


def is_ask_user(response: Any) -> bool:
    return isinstance(response, AskUserResponse)


def is_informative(response: Any) -> bool:
    return isinstance(response, InformativeResponse)


def plan_has_missing_fields(plan: PlanResponse) -> bool:
    return len(plan.missing_fields) > 0


def plan_ready_for_confirmation(plan: PlanResponse) -> bool:
    return not plan.missing_fields and plan.requires_confirmation


def is_write_operation(name: str) -> bool:
    return name in WRITE_OPERATIONS


def is_charge_commit_operation(name: str) -> bool:
    return name == CHARGE_COMMIT_OPERATION
