"""Validated parameter structs, one per tool operation."""

from datetime import date
from typing import Literal

from pydantic import Field

from service_copilot.core.models import BillingMethod, CamelModel


class PageParams(CamelModel):
    limit: int = Field(default=20, ge=1, le=100)
    offset: int = Field(default=0, ge=0)


class WriteParams(CamelModel):
    """Base for side-effecting operations; carries the client idempotency key."""

    idempotency_key: str | None = None


# Customers


class CustomersSearchParams(PageParams):
    query: str = ""
    has_overdue_payments: bool | None = None


class CustomersGetParams(CamelModel):
    id: str = Field(min_length=1)
    include_payments: bool = False
    include_work_orders: bool = False
    include_quotes: bool = False


class CustomersCreateParams(WriteParams):
    name: str = Field(min_length=1, max_length=200)
    email: str | None = None
    phone: str | None = None
    tax_id: str | None = None
    address: str | None = None
    city: str | None = None
    state: str | None = None
    zip_code: str | None = None
    notes: str | None = None


# Work orders and quotes


class LineItem(CamelModel):
    name: str = Field(min_length=1)
    quantity: float = Field(gt=0)
    unit_price: float = Field(ge=0)
    type: Literal["SERVICE", "PRODUCT"] = "SERVICE"

    @property
    def total_price(self) -> float:
        return round(self.quantity * self.unit_price, 2)


class WorkOrdersSearchParams(PageParams):
    customer_id: str | None = None
    status: str | None = None
    scheduled_date_from: date | None = None
    scheduled_date_to: date | None = None
    query: str | None = None


class WorkOrdersGetParams(CamelModel):
    id: str = Field(min_length=1)


class WorkOrdersCreateParams(WriteParams):
    customer_id: str = Field(min_length=1)
    title: str = Field(min_length=1, max_length=200)
    description: str | None = None
    scheduled_date: date | None = None
    items: list[LineItem] = Field(default_factory=list)


class QuotesSearchParams(PageParams):
    customer_id: str | None = None
    status: str | None = None
    query: str | None = None
    created_from: date | None = None
    created_to: date | None = None


class QuotesGetParams(CamelModel):
    id: str = Field(min_length=1)


class QuotesCreateParams(WriteParams):
    customer_id: str = Field(min_length=1)
    description: str | None = None
    valid_until: date | None = None
    items: list[LineItem] = Field(min_length=1)


# Billing


class BillingGetChargeParams(CamelModel):
    id: str = Field(min_length=1)


class BillingSearchChargesParams(PageParams):
    customer_id: str | None = None
    status: str | None = None
    billing_type: BillingMethod | None = None
    due_date_from: date | None = None
    due_date_to: date | None = None
    overdue_only: bool = False


class BillingPreviewChargeParams(CamelModel):
    customer_id: str = Field(min_length=1)
    value: float = Field(gt=0)
    billing_type: BillingMethod
    due_date: date
    description: str | None = None


class BillingCreateChargeParams(WriteParams):
    preview_id: str | None = None


# Knowledge base


class KbSearchParams(CamelModel):
    query: str = Field(min_length=1)
    category: str | None = None
    limit: int = Field(default=5, ge=1, le=20)
