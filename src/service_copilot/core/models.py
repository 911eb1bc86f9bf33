"""Typed records shared by the business store and the tool executor."""

from datetime import datetime
from enum import Enum
from typing import Any

from pydantic import BaseModel, ConfigDict, Field
from pydantic.alias_generators import to_camel


class CamelModel(BaseModel):
    """Base model serialized with camelCase keys, accepting either spelling."""

    model_config = ConfigDict(
        alias_generator=to_camel, populate_by_name=True, extra="ignore"
    )


class EntityKind(str, Enum):
    """Business entity collections exposed by the data store."""

    CUSTOMERS = "customers"
    WORK_ORDERS = "workOrders"
    QUOTES = "quotes"
    CHARGES = "charges"


class BillingMethod(str, Enum):
    PIX = "PIX"
    BOLETO = "BOLETO"
    CREDIT_CARD = "CREDIT_CARD"
    UNDEFINED = "UNDEFINED"


class SearchPage(BaseModel):
    """One page of search results plus the unpaginated total."""

    items: list[dict[str, Any]] = Field(default_factory=list)
    total: int = 0


class ChargePreview(CamelModel):
    """Validated, not-yet-committed charge proposal.

    A preview is single use: once ``consumed_at`` is set it can never back
    another charge.
    """

    id: str
    user_id: str
    customer_id: str
    customer_name: str
    value: float
    billing_type: BillingMethod
    due_date: str
    description: str | None = None
    valid: bool
    warnings: list[str] = Field(default_factory=list)
    errors: list[str] = Field(default_factory=list)
    customer_has_payment_profile: bool = False
    created_at: datetime
    expires_at: datetime
    consumed_at: datetime | None = None

    def is_expired(self, now: datetime) -> bool:
        return now >= self.expires_at

    @property
    def is_consumed(self) -> bool:
        return self.consumed_at is not None
