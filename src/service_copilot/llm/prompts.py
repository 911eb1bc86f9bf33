"""Prompt templates for the orchestrator's model calls."""

import json
from typing import Any

from service_copilot.tools.registry import TOOL_METADATA

AGENT_SYSTEM_PROMPT = """You are Service Copilot, an assistant for field-service businesses.
You help the user manage customers, work orders, quotes and charges.

Conversation state: {conversation_state}

Available tools:
{available_tools}

Always answer with exactly one JSON object using one of these shapes:

1. Propose a state-changing action (never execute writes directly):
{{"type": "PLAN", "action": "<tool name>", "collectedFields": {{...}}, "missingFields": [...], "requiresConfirmation": true, "message": "<optional text>"}}

2. Run a read-only tool:
{{"type": "CALL_TOOL", "tool": "<tool name>", "params": {{...}}}}

3. Ask the user a question:
{{"type": "ASK_USER", "question": "<question>", "options": ["<optional>", "..."]}}

4. Plain answer:
{{"type": "RESPONSE", "message": "<text>"}}

Rules:
- Only use tools from the list above.
- Charges require billing.previewCharge before billing.createCharge.
- Never invent ids; search first when you do not know one.
"""

KB_CONTEXT_BLOCK = """

---

{kb_context}

---

Use the knowledge-base articles above to answer support questions. Cite them when relevant."""

EXTRACTION_PROMPT = """The user is providing information for a pending operation.
Action: {action}
Collected fields: {collected_fields}
Missing fields: {missing_fields}

Extract values for the missing fields from the user's message. Answer with:
{{"type": "PLAN", "action": "{action}", "collectedFields": {{<previous and new fields>}}, "missingFields": [<fields still missing>], "requiresConfirmation": true}}
"""


def format_tool_list(tool_names: list[str]) -> str:
    lines = []
    for name in tool_names:
        meta = TOOL_METADATA.get(name)
        lines.append(f"- {name}: {meta.description if meta else name}")
    return "\n".join(lines)


def format_agent_prompt(
    tool_names: list[str],
    conversation_state: str = "IDLE - new request",
    kb_context: str | None = None,
) -> str:
    prompt = AGENT_SYSTEM_PROMPT.format(
        conversation_state=conversation_state,
        available_tools=format_tool_list(tool_names),
    )
    if kb_context:
        prompt += KB_CONTEXT_BLOCK.format(kb_context=kb_context)
    return prompt


def format_extraction_prompt(
    action: str, collected_fields: dict[str, Any], missing_fields: list[str]
) -> str:
    return EXTRACTION_PROMPT.format(
        action=action,
        collected_fields=json.dumps(collected_fields, default=str),
        missing_fields=", ".join(missing_fields),
    )
