"""Pattern-based model service for offline development and tests."""

import json
import logging
import re
from collections.abc import Callable
from typing import Any

from service_copilot.llm.model_service import (
    ChatMessage,
    Completion,
    ModelService,
    TokenUsage,
)

ResponseFactory = Callable[[re.Match, list[ChatMessage]], dict[str, Any]]

EXTRACTION_ACTION_PATTERN = re.compile(r"^Action: (?P<action>\S+)$", re.MULTILINE)
EXTRACTION_MISSING_PATTERN = re.compile(r"^Missing fields: (?P<fields>.+)$", re.MULTILINE)

DEFAULT_MESSAGE = (
    "I'm not sure what you need. I can help with:\n"
    '- Customers: "create customer Jane Doe"\n'
    '- Work orders: "list work orders"\n'
    '- Quotes: "list quotes"\n'
    '- Charges: "list charges"'
)


class FakeModelService(ModelService):
    """Answers with canned wire-format JSON chosen by regex on the last user message.

    When the system prompt is a field-extraction prompt, the user's reply is
    assigned to the first missing field.
    """

    def __init__(self) -> None:
        self.logger = logging.getLogger(__name__)
        self.patterns: list[tuple[re.Pattern, ResponseFactory]] = self._create_patterns()
        self.calls: list[list[ChatMessage]] = []

    async def complete(
        self, messages: list[ChatMessage], temperature: float, max_tokens: int
    ) -> Completion:
        self.calls.append(messages)
        last_user = next(
            (m.content for m in reversed(messages) if m.role == "user"), ""
        ).strip()
        self.logger.debug(f"Fake model processing: {last_user[:100]}")

        system = next((m.content for m in messages if m.role == "system"), "")
        extraction = self._extraction_response(system, last_user)
        if extraction is not None:
            return self._completion(extraction)

        for pattern, factory in self.patterns:
            match = pattern.search(last_user)
            if match:
                return self._completion(factory(match, messages))

        return self._completion({"type": "RESPONSE", "message": DEFAULT_MESSAGE})

    @staticmethod
    def _completion(payload: dict[str, Any]) -> Completion:
        content = json.dumps(payload)
        output_tokens = max(1, len(content) // 4)
        return Completion(
            content=content,
            usage=TokenUsage(
                input_tokens=20,
                output_tokens=output_tokens,
                total_tokens=20 + output_tokens,
            ),
        )

    @staticmethod
    def _extraction_response(system: str, reply: str) -> dict[str, Any] | None:
        action = EXTRACTION_ACTION_PATTERN.search(system)
        missing = EXTRACTION_MISSING_PATTERN.search(system)
        if not action or not missing:
            return None
        fields = [f.strip() for f in missing.group("fields").split(",") if f.strip()]
        if not fields:
            return None
        return {
            "type": "PLAN",
            "action": action.group("action"),
            "collectedFields": {fields[0]: reply},
            "missingFields": fields[1:],
        }

    def _create_patterns(self) -> list[tuple[re.Pattern, ResponseFactory]]:
        def create_customer_named(match: re.Match, _: list[ChatMessage]) -> dict:
            name = match.group(1).strip()
            return {
                "type": "PLAN",
                "action": "customers.create",
                "collectedFields": {"name": name},
                "missingFields": [],
                "message": f'I will create the customer "{name}".',
            }

        def create_customer(match: re.Match, _: list[ChatMessage]) -> dict:
            return {
                "type": "PLAN",
                "action": "customers.create",
                "collectedFields": {},
                "missingFields": ["name"],
                "message": "What is the customer's name?",
            }

        def list_customers(match: re.Match, _: list[ChatMessage]) -> dict:
            return {
                "type": "CALL_TOOL",
                "tool": "customers.search",
                "params": {"query": "", "limit": 20, "offset": 0},
            }

        def list_work_orders(match: re.Match, _: list[ChatMessage]) -> dict:
            return {"type": "CALL_TOOL", "tool": "workOrders.search", "params": {}}

        def list_quotes(match: re.Match, _: list[ChatMessage]) -> dict:
            return {"type": "CALL_TOOL", "tool": "quotes.search", "params": {}}

        def list_charges(match: re.Match, _: list[ChatMessage]) -> dict:
            return {"type": "CALL_TOOL", "tool": "billing.searchCharges", "params": {}}

        def charge(match: re.Match, _: list[ChatMessage]) -> dict:
            return {
                "type": "ASK_USER",
                "question": "Which customer should be charged, and how (PIX, boleto or credit card)?",
                "options": ["PIX", "Boleto", "Credit card", "Cancel"],
            }

        def greeting(match: re.Match, _: list[ChatMessage]) -> dict:
            return {
                "type": "RESPONSE",
                "message": "Hi! How can I help with your customers, work orders, quotes or charges today?",
            }

        def thanks(match: re.Match, _: list[ChatMessage]) -> dict:
            return {"type": "RESPONSE", "message": "You're welcome!"}

        return [
            (re.compile(r"(?:create|add|new|register)\s+(?:a\s+)?customer\s+(.+)", re.I), create_customer_named),
            (re.compile(r"(?:create|add|new|register)\s+(?:a\s+)?customer$", re.I), create_customer),
            (re.compile(r"(?:list|show|search|find)\s+(?:my\s+)?customers?", re.I), list_customers),
            (re.compile(r"(?:list|show|search|find)\s+(?:my\s+)?work\s*orders?", re.I), list_work_orders),
            (re.compile(r"(?:list|show|search|find)\s+(?:my\s+)?quotes?", re.I), list_quotes),
            (re.compile(r"(?:list|show|search|find)\s+(?:my\s+)?charges?", re.I), list_charges),
            (re.compile(r"\b(?:charge|bill|invoice|boleto|pix)\b", re.I), charge),
            (re.compile(r"^(?:hi|hello|hey|good (?:morning|afternoon|evening))[.!]*$", re.I), greeting),
            (re.compile(r"\b(?:thanks|thank you|thx)\b", re.I), thanks),
        ]
