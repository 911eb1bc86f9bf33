"""Tool executor: maps operation names to owner-scoped business data reads and writes."""

import logging
from abc import ABC, abstractmethod
from collections.abc import Callable
from datetime import date, datetime, timedelta, timezone
from typing import Any
from uuid import uuid4

from pydantic import BaseModel, ValidationError

from service_copilot.config import PREVIEW_TTL_MINUTES
from service_copilot.core.knowledge_base import HttpKnowledgeBase
from service_copilot.core.models import BillingMethod, ChargePreview, EntityKind
from service_copilot.core.store import BusinessStore, Range
from service_copilot.errors import PreviewAlreadyConsumedError, ToolErrorCode
from service_copilot.tools.idempotency import IdempotencyLedger
from service_copilot.tools.params import (
    BillingCreateChargeParams,
    BillingGetChargeParams,
    BillingPreviewChargeParams,
    BillingSearchChargesParams,
    CustomersCreateParams,
    CustomersGetParams,
    CustomersSearchParams,
    KbSearchParams,
    QuotesCreateParams,
    QuotesGetParams,
    QuotesSearchParams,
    WorkOrdersCreateParams,
    WorkOrdersGetParams,
    WorkOrdersSearchParams,
)
from service_copilot.tools.registry import PermissionGate, ToolEntry, ToolRegistry
from service_copilot.tools.results import AffectedEntity, ToolContext, ToolResult
from service_copilot.utils.constants import HIGH_CHARGE_VALUE, MIN_CHARGE_VALUE

OPEN_CHARGE_STATUSES = ("PENDING", "OVERDUE")
RELATED_RECORDS_LIMIT = 10
KB_MIN_SCORE = 0.5


class EntityLimitPolicy(ABC):
    """Decides whether an owner may create another entity of a kind."""

    @abstractmethod
    async def can_create(
        self, store: BusinessStore, kind: EntityKind, owner: str
    ) -> bool: ...


class AllowAllLimits(EntityLimitPolicy):
    async def can_create(
        self, store: BusinessStore, kind: EntityKind, owner: str
    ) -> bool:
        return True


class StaticQuotaLimits(EntityLimitPolicy):
    """Fixed per-kind maxima counted against the owner's existing records."""

    def __init__(self, limits: dict[EntityKind, int]) -> None:
        self.limits = limits

    async def can_create(
        self, store: BusinessStore, kind: EntityKind, owner: str
    ) -> bool:
        maximum = self.limits.get(kind)
        if maximum is None:
            return True
        return await store.count(kind, owner) < maximum


def _utcnow() -> datetime:
    return datetime.now(timezone.utc)


def _format_validation_error(error: ValidationError) -> str:
    return "; ".join(
        f"{'.'.join(str(part) for part in issue['loc']) or 'params'}: {issue['msg']}"
        for issue in error.errors()
    )


def _day_range(lower: date | None, upper: date | None) -> Range:
    """Inclusive day bounds usable against both date and datetime strings."""
    return (
        lower.isoformat() if lower else None,
        f"{upper.isoformat()}T23:59:59.999999" if upper else None,
    )


def _read(entity_type: str, items: list[dict]) -> list[AffectedEntity]:
    return [AffectedEntity(entity_type=entity_type, id=i["id"], action="read") for i in items]


def _page(items: list[dict], total: int, limit: int, offset: int) -> dict[str, Any]:
    return {
        "items": items,
        "total": total,
        "hasMore": offset + len(items) < total,
        "limit": limit,
        "offset": offset,
    }


class ToolExecutor:
    """Runs registered tools for a caller.

    ``execute`` is the single entry point: registry lookup, permission gate,
    parameter validation, idempotency for keyed writes, then the handler.
    Business-rule violations come back as failed ToolResults, never as
    exceptions.
    """

    def __init__(
        self,
        store: BusinessStore,
        knowledge_base: HttpKnowledgeBase | None = None,
        ledger: IdempotencyLedger | None = None,
        gate: PermissionGate | None = None,
        limits: EntityLimitPolicy | None = None,
        preview_ttl: timedelta = timedelta(minutes=PREVIEW_TTL_MINUTES),
        clock: Callable[[], datetime] = _utcnow,
    ) -> None:
        self.store = store
        self.knowledge_base = knowledge_base
        self.ledger = ledger or IdempotencyLedger()
        self.gate = gate or PermissionGate()
        self.limits = limits or AllowAllLimits()
        self.preview_ttl = preview_ttl
        self.clock = clock
        self.logger = logging.getLogger(__name__)
        self.registry = ToolRegistry()
        self._register_tools()

    def _register_tools(self) -> None:
        tools: list[tuple[str, Any, type[BaseModel]]] = [
            ("customers.search", self.customers_search, CustomersSearchParams),
            ("customers.get", self.customers_get, CustomersGetParams),
            ("customers.create", self.customers_create, CustomersCreateParams),
            ("workOrders.search", self.work_orders_search, WorkOrdersSearchParams),
            ("workOrders.get", self.work_orders_get, WorkOrdersGetParams),
            ("workOrders.create", self.work_orders_create, WorkOrdersCreateParams),
            ("quotes.search", self.quotes_search, QuotesSearchParams),
            ("quotes.get", self.quotes_get, QuotesGetParams),
            ("quotes.create", self.quotes_create, QuotesCreateParams),
            ("billing.getCharge", self.billing_get_charge, BillingGetChargeParams),
            ("billing.searchCharges", self.billing_search_charges, BillingSearchChargesParams),
            ("billing.previewCharge", self.billing_preview_charge, BillingPreviewChargeParams),
            ("billing.createCharge", self.billing_create_charge, BillingCreateChargeParams),
            ("kb.search", self.kb_search, KbSearchParams),
        ]
        for name, handler, params_model in tools:
            self.registry.register(name, handler, params_model)

    async def execute(
        self, name: str, raw_params: dict[str, Any] | None, context: ToolContext
    ) -> ToolResult:
        """Execute one operation on behalf of ``context.user_id``.

        Args:
            name: Operation name, e.g. ``customers.create``
            raw_params: Unvalidated parameters from the model or caller
            context: Caller identity and subscription tier

        Returns:
            ToolResult envelope
        """
        entry = self.registry.resolve(name)
        if entry is None:
            return ToolResult.failure(ToolErrorCode.UNKNOWN_TOOL, f"Unknown tool: {name}")

        if not self.gate.is_allowed(name, context.tier):
            return ToolResult.failure(
                ToolErrorCode.PERMISSION_DENIED,
                f"Your {context.tier.value} plan does not include {name}",
            )

        try:
            params = entry.params_model.model_validate(raw_params or {})
        except ValidationError as e:
            return ToolResult.failure(
                ToolErrorCode.VALIDATION_ERROR,
                f"Invalid parameters for {name}: {_format_validation_error(e)}",
            )

        key = getattr(params, "idempotency_key", None)
        try:
            if entry.metadata.side_effect == "write" and key:
                return await self.ledger.execute_with_idempotency(
                    context.user_id,
                    name,
                    key,
                    params.model_dump(by_alias=True, mode="json", exclude_none=True),
                    lambda: entry.handler(params, context),
                )
            return await entry.handler(params, context)
        except Exception as e:
            self.logger.error(f"{name} failed: {e}")
            return ToolResult.failure(ToolErrorCode.INTERNAL_ERROR, f"Failed to run {name}")

    def entry(self, name: str) -> ToolEntry | None:
        return self.registry.resolve(name)

    # Customers

    async def customers_search(
        self, params: CustomersSearchParams, context: ToolContext
    ) -> ToolResult:
        page = await self.store.search(
            EntityKind.CUSTOMERS,
            context.user_id,
            query=params.query or None,
            equals={"isDelinquent": params.has_overdue_payments},
            limit=params.limit,
            offset=params.offset,
        )
        return ToolResult.ok(
            _page(page.items, page.total, params.limit, params.offset),
            _read("customer", page.items),
        )

    async def customers_get(
        self, params: CustomersGetParams, context: ToolContext
    ) -> ToolResult:
        customer = await self.store.get(EntityKind.CUSTOMERS, params.id, context.user_id)
        if customer is None:
            return ToolResult.failure(ToolErrorCode.ENTITY_NOT_FOUND, "Customer not found")

        related = [
            (params.include_payments, "payments", EntityKind.CHARGES),
            (params.include_work_orders, "workOrders", EntityKind.WORK_ORDERS),
            (params.include_quotes, "quotes", EntityKind.QUOTES),
        ]
        for wanted, field, kind in related:
            if wanted:
                page = await self.store.search(
                    kind,
                    context.user_id,
                    equals={"customerId": customer["id"]},
                    limit=RELATED_RECORDS_LIMIT,
                )
                customer[field] = page.items

        return ToolResult.ok(
            customer,
            [AffectedEntity(entity_type="customer", id=customer["id"], action="read")],
        )

    async def customers_create(
        self, params: CustomersCreateParams, context: ToolContext
    ) -> ToolResult:
        if not await self.limits.can_create(self.store, EntityKind.CUSTOMERS, context.user_id):
            return ToolResult.failure(
                ToolErrorCode.PLAN_LIMIT_EXCEEDED,
                "You have reached the maximum number of customers for your plan",
            )

        fields = params.model_dump(by_alias=True, exclude={"idempotency_key"}, exclude_none=True)
        fields["isDelinquent"] = False
        customer = await self.store.create(EntityKind.CUSTOMERS, fields, context.user_id)
        return ToolResult.ok(
            {
                "id": customer["id"],
                "name": customer["name"],
                "email": customer.get("email"),
                "phone": customer.get("phone"),
                "createdAt": customer["createdAt"],
            },
            [AffectedEntity(entity_type="customer", id=customer["id"], action="created")],
        )

    # Work orders

    async def work_orders_search(
        self, params: WorkOrdersSearchParams, context: ToolContext
    ) -> ToolResult:
        page = await self.store.search(
            EntityKind.WORK_ORDERS,
            context.user_id,
            query=params.query,
            equals={"customerId": params.customer_id, "status": params.status},
            ranges={
                "scheduledDate": _day_range(
                    params.scheduled_date_from, params.scheduled_date_to
                )
            },
            limit=params.limit,
            offset=params.offset,
        )
        return ToolResult.ok(
            _page(page.items, page.total, params.limit, params.offset),
            _read("workOrder", page.items),
        )

    async def work_orders_get(
        self, params: WorkOrdersGetParams, context: ToolContext
    ) -> ToolResult:
        work_order = await self.store.get(EntityKind.WORK_ORDERS, params.id, context.user_id)
        if work_order is None:
            return ToolResult.failure(ToolErrorCode.ENTITY_NOT_FOUND, "Work order not found")
        return ToolResult.ok(
            work_order,
            [AffectedEntity(entity_type="workOrder", id=work_order["id"], action="read")],
        )

    async def work_orders_create(
        self, params: WorkOrdersCreateParams, context: ToolContext
    ) -> ToolResult:
        customer = await self.store.get(
            EntityKind.CUSTOMERS, params.customer_id, context.user_id
        )
        if customer is None:
            return ToolResult.failure(ToolErrorCode.ENTITY_NOT_FOUND, "Customer not found")

        if not await self.limits.can_create(self.store, EntityKind.WORK_ORDERS, context.user_id):
            return ToolResult.failure(
                ToolErrorCode.PLAN_LIMIT_EXCEEDED,
                "You have reached the maximum number of work orders for your plan",
            )

        items = [
            {**item.model_dump(by_alias=True), "totalPrice": item.total_price}
            for item in params.items
        ]
        work_order = await self.store.create(
            EntityKind.WORK_ORDERS,
            {
                "customerId": customer["id"],
                "customerName": customer["name"],
                "title": params.title,
                "description": params.description,
                "scheduledDate": params.scheduled_date.isoformat() if params.scheduled_date else None,
                "items": items,
                "totalValue": round(sum(item.total_price for item in params.items), 2),
                "status": "SCHEDULED",
            },
            context.user_id,
        )
        return ToolResult.ok(
            {
                "id": work_order["id"],
                "title": work_order["title"],
                "status": work_order["status"],
                "totalValue": work_order["totalValue"],
                "customerName": customer["name"],
                "createdAt": work_order["createdAt"],
            },
            [AffectedEntity(entity_type="workOrder", id=work_order["id"], action="created")],
        )

    # Quotes

    async def quotes_search(
        self, params: QuotesSearchParams, context: ToolContext
    ) -> ToolResult:
        page = await self.store.search(
            EntityKind.QUOTES,
            context.user_id,
            query=params.query,
            equals={"customerId": params.customer_id, "status": params.status},
            ranges={"createdAt": _day_range(params.created_from, params.created_to)},
            limit=params.limit,
            offset=params.offset,
        )
        return ToolResult.ok(
            _page(page.items, page.total, params.limit, params.offset),
            _read("quote", page.items),
        )

    async def quotes_get(self, params: QuotesGetParams, context: ToolContext) -> ToolResult:
        quote = await self.store.get(EntityKind.QUOTES, params.id, context.user_id)
        if quote is None:
            return ToolResult.failure(ToolErrorCode.ENTITY_NOT_FOUND, "Quote not found")
        return ToolResult.ok(
            quote, [AffectedEntity(entity_type="quote", id=quote["id"], action="read")]
        )

    async def quotes_create(
        self, params: QuotesCreateParams, context: ToolContext
    ) -> ToolResult:
        customer = await self.store.get(
            EntityKind.CUSTOMERS, params.customer_id, context.user_id
        )
        if customer is None:
            return ToolResult.failure(ToolErrorCode.ENTITY_NOT_FOUND, "Customer not found")

        if not await self.limits.can_create(self.store, EntityKind.QUOTES, context.user_id):
            return ToolResult.failure(
                ToolErrorCode.PLAN_LIMIT_EXCEEDED,
                "You have reached the maximum number of quotes for your plan",
            )

        quote = await self.store.create(
            EntityKind.QUOTES,
            {
                "customerId": customer["id"],
                "customerName": customer["name"],
                "description": params.description,
                "validUntil": params.valid_until.isoformat() if params.valid_until else None,
                "items": [
                    {**item.model_dump(by_alias=True), "totalPrice": item.total_price}
                    for item in params.items
                ],
                "totalValue": round(sum(item.total_price for item in params.items), 2),
                "status": "DRAFT",
            },
            context.user_id,
        )
        return ToolResult.ok(
            {
                "id": quote["id"],
                "status": quote["status"],
                "totalValue": quote["totalValue"],
                "customerName": customer["name"],
                "createdAt": quote["createdAt"],
            },
            [AffectedEntity(entity_type="quote", id=quote["id"], action="created")],
        )

    # Billing

    def _with_overdue_flag(self, charge: dict[str, Any]) -> dict[str, Any]:
        today = self.clock().date().isoformat()
        due = str(charge.get("dueDate") or "")
        charge["isOverdue"] = bool(due) and due[:10] < today and (
            charge.get("status") in OPEN_CHARGE_STATUSES
        )
        return charge

    async def billing_get_charge(
        self, params: BillingGetChargeParams, context: ToolContext
    ) -> ToolResult:
        charge = await self.store.get(EntityKind.CHARGES, params.id, context.user_id)
        if charge is None:
            return ToolResult.failure(ToolErrorCode.ENTITY_NOT_FOUND, "Charge not found")
        return ToolResult.ok(
            self._with_overdue_flag(charge),
            [AffectedEntity(entity_type="charge", id=charge["id"], action="read")],
        )

    async def billing_search_charges(
        self, params: BillingSearchChargesParams, context: ToolContext
    ) -> ToolResult:
        equals: dict[str, Any] = {
            "customerId": params.customer_id,
            "status": params.status,
            "billingType": params.billing_type.value if params.billing_type else None,
        }
        due_to = params.due_date_to
        if params.overdue_only:
            yesterday = self.clock().date() - timedelta(days=1)
            due_to = min(due_to, yesterday) if due_to else yesterday
            equals["status"] = list(OPEN_CHARGE_STATUSES)
        ranges = {"dueDate": _day_range(params.due_date_from, due_to)}

        page = await self.store.search(
            EntityKind.CHARGES,
            context.user_id,
            equals=equals,
            ranges=ranges,
            limit=params.limit,
            offset=params.offset,
        )
        items = [self._with_overdue_flag(charge) for charge in page.items]

        matched = items
        if page.total > len(items):
            everything = await self.store.search(
                EntityKind.CHARGES,
                context.user_id,
                equals=equals,
                ranges=ranges,
                limit=page.total,
            )
            matched = everything.items

        data = _page(items, page.total, params.limit, params.offset)
        data["totalValue"] = round(sum(float(c.get("value") or 0) for c in matched), 2)
        return ToolResult.ok(data, _read("charge", items))

    async def billing_preview_charge(
        self, params: BillingPreviewChargeParams, context: ToolContext
    ) -> ToolResult:
        customer = await self.store.get(
            EntityKind.CUSTOMERS, params.customer_id, context.user_id
        )
        if customer is None:
            return ToolResult.failure(ToolErrorCode.ENTITY_NOT_FOUND, "Customer not found")

        warnings: list[str] = []
        errors: list[str] = []

        if not await self.store.is_payment_integration_active(context.user_id):
            errors.append("Payment integration is not active")

        now = self.clock()
        today = now.date()
        if params.due_date < today:
            warnings.append("Due date is in the past")
        if params.billing_type == BillingMethod.BOLETO and params.due_date < today + timedelta(days=1):
            warnings.append("Boleto requires at least 1 business day")
        if params.billing_type == BillingMethod.CREDIT_CARD and not customer.get("email"):
            warnings.append("Credit card charges require customer email")

        has_payment_profile = bool(customer.get("paymentCustomerId"))
        if not has_payment_profile:
            warnings.append("Customer will be registered with the payment provider automatically")
            if not customer.get("taxId"):
                warnings.append("Customer tax id is recommended for payment provider registration")

        if params.value < MIN_CHARGE_VALUE:
            errors.append(f"Minimum charge value is {MIN_CHARGE_VALUE:.2f}")
        if params.value > HIGH_CHARGE_VALUE:
            warnings.append(
                f"Values above {HIGH_CHARGE_VALUE:,.2f} may require additional validation"
            )

        preview = await self.store.create_preview(
            ChargePreview(
                id=str(uuid4()),
                user_id=context.user_id,
                customer_id=customer["id"],
                customer_name=customer["name"],
                value=params.value,
                billing_type=params.billing_type,
                due_date=params.due_date.isoformat(),
                description=params.description,
                valid=not errors,
                warnings=warnings,
                errors=errors,
                customer_has_payment_profile=has_payment_profile,
                created_at=now,
                expires_at=now + self.preview_ttl,
            )
        )

        return ToolResult.ok(
            {
                "previewId": preview.id,
                "valid": preview.valid,
                "preview": {
                    "customerId": preview.customer_id,
                    "customerName": preview.customer_name,
                    "billingType": preview.billing_type.value,
                    "value": preview.value,
                    "dueDate": preview.due_date,
                    "description": preview.description,
                },
                "warnings": warnings,
                "errors": errors,
                "customerHasPaymentProfile": has_payment_profile,
                "expiresAt": preview.expires_at.isoformat(),
            }
        )

    async def billing_create_charge(
        self, params: BillingCreateChargeParams, context: ToolContext
    ) -> ToolResult:
        if not params.preview_id:
            return ToolResult.failure(
                ToolErrorCode.PREVIEW_REQUIRED, "A charge preview is required first"
            )

        preview = await self.store.get_preview(params.preview_id)
        if preview is None:
            return ToolResult.failure(ToolErrorCode.PREVIEW_REQUIRED, "Preview not found")
        if preview.user_id != context.user_id:
            return ToolResult.failure(
                ToolErrorCode.ENTITY_NOT_OWNED, "Preview does not belong to you"
            )

        now = self.clock()
        if preview.is_expired(now):
            return ToolResult.failure(ToolErrorCode.PREVIEW_EXPIRED, "Preview has expired")
        if preview.is_consumed:
            return ToolResult.failure(
                ToolErrorCode.IDEMPOTENCY_CONFLICT, "Preview has already been used"
            )
        if not preview.valid:
            return ToolResult.failure(ToolErrorCode.VALIDATION_ERROR, "Preview is not valid")

        try:
            charge = await self.store.consume_preview(
                preview.id,
                {
                    "customerId": preview.customer_id,
                    "customerName": preview.customer_name,
                    "value": preview.value,
                    "billingType": preview.billing_type.value,
                    "dueDate": preview.due_date,
                    "description": preview.description,
                    "status": "PENDING",
                    "externalId": f"ext_{uuid4().hex}",
                },
                now,
            )
        except PreviewAlreadyConsumedError:
            return ToolResult.failure(
                ToolErrorCode.IDEMPOTENCY_CONFLICT, "Preview has already been used"
            )

        return ToolResult.ok(
            {
                "id": charge["id"],
                "externalId": charge["externalId"],
                "status": charge["status"],
                "billingType": charge["billingType"],
                "value": charge["value"],
                "dueDate": charge["dueDate"],
                "createdAt": charge["createdAt"],
            },
            [AffectedEntity(entity_type="charge", id=charge["id"], action="created")],
        )

    # Knowledge base

    async def kb_search(self, params: KbSearchParams, context: ToolContext) -> ToolResult:
        if self.knowledge_base is None:
            return ToolResult.failure(
                ToolErrorCode.INTERNAL_ERROR, "Knowledge base is not configured"
            )
        self.logger.info(f"kb.search: query={params.query!r}, category={params.category}")
        response = await self.knowledge_base.search(
            params.query,
            top_k=params.limit,
            min_score=KB_MIN_SCORE,
            category=params.category,
        )
        return ToolResult.ok(
            {
                "results": [
                    {
                        "content": result.content,
                        "source": result.title or result.id,
                        "relevanceScore": result.score,
                        "category": params.category or result.category or "general",
                    }
                    for result in response.results
                ],
                "totalResults": response.total_results,
            }
        )
