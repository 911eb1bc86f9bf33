"""Tool metadata table, handler registry and the subscription permission gate."""

from collections.abc import Awaitable, Callable
from typing import Literal

from pydantic import BaseModel

from service_copilot.tools.permissions import (
    SubscriptionTier,
    ToolPermission,
    tier_has_permission,
)
from service_copilot.tools.results import ToolContext, ToolResult

ToolHandler = Callable[[BaseModel, ToolContext], Awaitable[ToolResult]]


class ToolMetadata(BaseModel):
    permission: ToolPermission
    side_effect: Literal["none", "write"]
    idempotent: bool = True
    description: str


TOOL_METADATA: dict[str, ToolMetadata] = {
    "customers.search": ToolMetadata(
        permission=ToolPermission.CUSTOMERS_READ,
        side_effect="none",
        description="Search customers by name, email, phone or tax id",
    ),
    "customers.get": ToolMetadata(
        permission=ToolPermission.CUSTOMERS_READ,
        side_effect="none",
        description="Get one customer, optionally with payments, work orders and quotes",
    ),
    "customers.create": ToolMetadata(
        permission=ToolPermission.CUSTOMERS_WRITE,
        side_effect="write",
        description="Create a customer (requires confirmation)",
    ),
    "workOrders.search": ToolMetadata(
        permission=ToolPermission.WORK_ORDERS_READ,
        side_effect="none",
        description="Search work orders by customer, status or scheduled date",
    ),
    "workOrders.get": ToolMetadata(
        permission=ToolPermission.WORK_ORDERS_READ,
        side_effect="none",
        description="Get one work order",
    ),
    "workOrders.create": ToolMetadata(
        permission=ToolPermission.WORK_ORDERS_WRITE,
        side_effect="write",
        description="Create a work order for a customer (requires confirmation)",
    ),
    "quotes.search": ToolMetadata(
        permission=ToolPermission.QUOTES_READ,
        side_effect="none",
        description="Search quotes by customer, status or creation date",
    ),
    "quotes.get": ToolMetadata(
        permission=ToolPermission.QUOTES_READ,
        side_effect="none",
        description="Get one quote",
    ),
    "quotes.create": ToolMetadata(
        permission=ToolPermission.QUOTES_WRITE,
        side_effect="write",
        description="Create a quote for a customer (requires confirmation)",
    ),
    "billing.getCharge": ToolMetadata(
        permission=ToolPermission.BILLING_READ,
        side_effect="none",
        description="Get one charge",
    ),
    "billing.searchCharges": ToolMetadata(
        permission=ToolPermission.BILLING_READ,
        side_effect="none",
        description="Search charges, optionally only overdue ones",
    ),
    "billing.previewCharge": ToolMetadata(
        permission=ToolPermission.BILLING_READ,
        side_effect="none",
        description="Validate a charge and return a preview without creating it",
    ),
    "billing.createCharge": ToolMetadata(
        permission=ToolPermission.BILLING_WRITE,
        side_effect="write",
        description="Create a real charge from a preview (requires confirmation)",
    ),
    "kb.search": ToolMetadata(
        permission=ToolPermission.KB_READ,
        side_effect="none",
        description="Search the help-center knowledge base",
    ),
}


class ToolEntry(BaseModel):
    name: str
    handler: ToolHandler
    params_model: type[BaseModel]
    metadata: ToolMetadata

    model_config = {"arbitrary_types_allowed": True}


class ToolRegistry:
    """Maps operation names to their handler, parameter model and metadata."""

    def __init__(self, metadata: dict[str, ToolMetadata] | None = None) -> None:
        self.metadata = metadata if metadata is not None else TOOL_METADATA
        self._entries: dict[str, ToolEntry] = {}

    def register(
        self, name: str, handler: ToolHandler, params_model: type[BaseModel]
    ) -> ToolEntry:
        """Register a handler for an operation declared in the metadata table.

        Raises:
            KeyError: The operation has no metadata entry
        """
        if name not in self.metadata:
            raise KeyError(f"No metadata declared for tool {name}")
        entry = ToolEntry(
            name=name,
            handler=handler,
            params_model=params_model,
            metadata=self.metadata[name],
        )
        self._entries[name] = entry
        return entry

    def resolve(self, name: str) -> ToolEntry | None:
        return self._entries.get(name)

    def names(self) -> list[str]:
        return list(self._entries)


class PermissionGate:
    """Decides which operations a subscription tier may use."""

    def __init__(self, metadata: dict[str, ToolMetadata] | None = None) -> None:
        self.metadata = metadata if metadata is not None else TOOL_METADATA

    def list_available(self, tier: SubscriptionTier) -> list[str]:
        return [
            name
            for name, meta in self.metadata.items()
            if tier_has_permission(tier, meta.permission)
        ]

    def is_allowed(self, operation: str, tier: SubscriptionTier) -> bool:
        meta = self.metadata.get(operation)
        if meta is None:
            return False
        return tier_has_permission(tier, meta.permission)

    def required_permission(self, operation: str) -> ToolPermission | None:
        meta = self.metadata.get(operation)
        return meta.permission if meta else None
