"""User-facing text for plan summaries and tool outcomes."""

import json
from typing import Any

from service_copilot.utils.constants import IDEMPOTENCY_KEY_PARAMS

ACTION_NAMES = {
    "customers.create": "Create customer",
    "workOrders.create": "Create work order",
    "quotes.create": "Create quote",
    "billing.previewCharge": "Charge preview",
    "billing.createCharge": "Create charge",
}

SUCCESS_MESSAGES = {
    "customers.create": "Customer created successfully.",
    "workOrders.create": "Work order created successfully.",
    "quotes.create": "Quote created successfully.",
    "billing.previewCharge": "Charge preview ready. Do you want to create this charge?",
    "billing.createCharge": "Charge created successfully.",
}

CONFIRMATION_QUESTION = "Do you want to confirm this operation?"
BILLING_WARNING = (
    "WARNING: this operation will create a REAL charge.\n"
    'Confirm the operation? (reply "yes, confirm")'
)
CONFIRMATION_REPROMPT = 'Please reply "yes" to confirm or "no" to cancel.'
CANCELLED_MESSAGE = "Operation cancelled."
MODIFICATION_PROMPT = "What would you like to change?"
BUSY_MESSAGE = "An operation is already running. Please wait."
FORMAT_ERROR_MESSAGE = "Sorry, I couldn't understand the model's answer. Could you rephrase?"
APOLOGY_MESSAGE = "Sorry, something went wrong while processing your message. Please try again."
STALE_STATE_MESSAGE = (
    "This conversation was updated by another request. Please send your message again."
)
PREVIEW_REQUIRED_MESSAGE = (
    "A charge preview is required before creating the actual charge."
)


def _format_value(value: Any) -> str:
    if isinstance(value, (dict, list)):
        return json.dumps(value, default=str)
    return str(value)


def format_plan_summary(action: str, params: dict[str, Any]) -> str:
    """Summarize a plan's action and parameters for confirmation."""
    lines = [
        f"- {key}: {_format_value(value)}"
        for key, value in params.items()
        if key not in IDEMPOTENCY_KEY_PARAMS
    ]
    title = ACTION_NAMES.get(action, action)
    return f"**{title}**\n\n" + "\n".join(lines)


def format_confirmation_request(action: str, params: dict[str, Any]) -> str:
    summary = format_plan_summary(action, params)
    if action.startswith("billing."):
        return f"{summary}\n\n{BILLING_WARNING}"
    return f"{summary}\n\n{CONFIRMATION_QUESTION}"


def format_missing_fields(action: str, missing_fields: list[str]) -> str:
    fields = "\n".join(f"- {field}" for field in missing_fields)
    return f"To run {action}, I still need:\n{fields}"


def format_success_message(tool: str, data: Any) -> str:
    return SUCCESS_MESSAGES.get(tool, "Operation completed successfully.")


def format_read_result(tool: str, data: Any) -> str:
    if not data:
        return "No results found."
    if isinstance(data, dict) and isinstance(data.get("items"), list):
        if not data["items"]:
            return "No results found."
        return f"Found {data.get('total') or len(data['items'])} result(s)."
    return "Data retrieved successfully."


def format_upgrade_message(operation: str, tier: str) -> str:
    return (
        f"Your {tier} plan does not include {operation}. "
        "Upgrade your subscription to use this feature."
    )


def format_preview_result(data: dict[str, Any]) -> str:
    """Describe a charge preview, its problems and whether it can be committed."""
    preview = data.get("preview", {})
    lines = [
        f"**Charge preview** for {preview.get('customerName')}",
        f"- value: {preview.get('value')}",
        f"- billingType: {preview.get('billingType')}",
        f"- dueDate: {preview.get('dueDate')}",
    ]
    if data.get("errors"):
        lines.append("\nErrors:")
        lines.extend(f"- {error}" for error in data["errors"])
    if data.get("warnings"):
        lines.append("\nWarnings:")
        lines.extend(f"- {warning}" for warning in data["warnings"])
    if data.get("valid"):
        lines.append(f"\n{SUCCESS_MESSAGES['billing.previewCharge']}")
    else:
        lines.append("\nThis charge cannot be created until the errors are fixed.")
    return "\n".join(lines)
