"""Business data store interface and the in-process implementation."""

import asyncio
import copy
import logging
from abc import ABC, abstractmethod
from datetime import datetime, timedelta, timezone
from typing import Any
from uuid import uuid4

from service_copilot.core.models import ChargePreview, EntityKind, SearchPage
from service_copilot.errors import PreviewAlreadyConsumedError

# Fields matched by free-text ``query`` per entity kind.
SEARCH_FIELDS: dict[EntityKind, tuple[str, ...]] = {
    EntityKind.CUSTOMERS: ("name", "email", "phone", "taxId", "city"),
    EntityKind.WORK_ORDERS: ("title", "description"),
    EntityKind.QUOTES: ("description",),
    EntityKind.CHARGES: ("description",),
}

Range = tuple[Any | None, Any | None]

# How long a preview stays retrievable after it expires.
PREVIEW_RETENTION = timedelta(hours=1)


class BusinessStore(ABC):
    """Owner-scoped access to customers, work orders, quotes and charges.

    Every read and write takes the owning user id; records belonging to a
    different owner are invisible.
    """

    @abstractmethod
    async def search(
        self,
        kind: EntityKind,
        owner: str,
        query: str | None = None,
        equals: dict[str, Any] | None = None,
        ranges: dict[str, Range] | None = None,
        limit: int = 20,
        offset: int = 0,
    ) -> SearchPage:
        """Search records of ``kind``.

        Args:
            kind: Entity collection to search
            owner: Owning user id
            query: Case-insensitive substring matched against text fields
            equals: Exact field matches; a list value means membership
            ranges: Inclusive ``(lower, upper)`` bounds per field, either may be None
            limit: Page size
            offset: Records to skip

        Returns:
            SearchPage with the requested page and the total match count
        """

    @abstractmethod
    async def get(self, kind: EntityKind, entity_id: str, owner: str) -> dict | None:
        """Fetch one record, or None when missing or owned by someone else."""

    @abstractmethod
    async def create(self, kind: EntityKind, fields: dict[str, Any], owner: str) -> dict:
        """Insert a record and return it with ``id``, ``userId`` and ``createdAt``."""

    @abstractmethod
    async def count(self, kind: EntityKind, owner: str) -> int: ...

    @abstractmethod
    async def create_preview(self, preview: ChargePreview) -> ChargePreview: ...

    @abstractmethod
    async def get_preview(self, preview_id: str) -> ChargePreview | None:
        """Fetch a preview regardless of owner; callers check ownership."""

    @abstractmethod
    async def consume_preview(
        self, preview_id: str, charge_fields: dict[str, Any], now: datetime
    ) -> dict:
        """Mark the preview consumed and create the charge in one step.

        Raises:
            PreviewAlreadyConsumedError: The preview was consumed concurrently
        """

    @abstractmethod
    async def is_payment_integration_active(self, owner: str) -> bool: ...

    @abstractmethod
    async def get_subscription_tier(self, owner: str) -> str | None: ...


def _matches(
    record: dict[str, Any],
    kind: EntityKind,
    query: str | None,
    equals: dict[str, Any],
    ranges: dict[str, Range],
) -> bool:
    if query:
        needle = query.lower()
        haystack = [str(record.get(field) or "") for field in SEARCH_FIELDS[kind]]
        if not any(needle in value.lower() for value in haystack):
            return False

    for field, expected in equals.items():
        if expected is None:
            continue
        actual = record.get(field)
        if isinstance(expected, (list, tuple, set, frozenset)):
            if actual not in expected:
                return False
        elif actual != expected:
            return False

    for field, (lower, upper) in ranges.items():
        actual = record.get(field)
        if lower is None and upper is None:
            continue
        if actual is None:
            return False
        if lower is not None and str(actual) < str(lower):
            return False
        if upper is not None and str(actual) > str(upper):
            return False

    return True


class InMemoryBusinessStore(BusinessStore):
    """Dictionary-backed store used by tests, the CLI and local development."""

    def __init__(self) -> None:
        self.logger = logging.getLogger(__name__)
        self._records: dict[EntityKind, dict[str, dict[str, Any]]] = {
            kind: {} for kind in EntityKind
        }
        self._previews: dict[str, ChargePreview] = {}
        self._integrations: dict[str, bool] = {}
        self._tiers: dict[str, str] = {}
        self._lock = asyncio.Lock()
        self.create_calls: dict[EntityKind, int] = {kind: 0 for kind in EntityKind}

    # Seeding helpers

    def seed(self, kind: EntityKind, owner: str, records: list[dict[str, Any]]) -> list[dict]:
        """Insert records synchronously, keeping any ``id`` they already carry."""
        stored = []
        for fields in records:
            record = self._new_record(fields, owner)
            self._records[kind][record["id"]] = record
            stored.append(copy.deepcopy(record))
        return stored

    def set_payment_integration(self, owner: str, active: bool) -> None:
        self._integrations[owner] = active

    def set_subscription_tier(self, owner: str, tier: str) -> None:
        self._tiers[owner] = tier

    @staticmethod
    def _new_record(fields: dict[str, Any], owner: str) -> dict[str, Any]:
        record = {key: value for key, value in fields.items() if value is not None}
        record.setdefault("id", str(uuid4()))
        record.setdefault("createdAt", datetime.now(timezone.utc).isoformat())
        record["userId"] = owner
        return record

    # BusinessStore

    async def search(
        self,
        kind: EntityKind,
        owner: str,
        query: str | None = None,
        equals: dict[str, Any] | None = None,
        ranges: dict[str, Range] | None = None,
        limit: int = 20,
        offset: int = 0,
    ) -> SearchPage:
        matched = [
            record
            for record in self._records[kind].values()
            if record["userId"] == owner
            and _matches(record, kind, query, equals or {}, ranges or {})
        ]
        matched.sort(key=lambda record: record.get("createdAt", ""), reverse=True)
        page = matched[offset : offset + limit]
        return SearchPage(items=copy.deepcopy(page), total=len(matched))

    async def get(self, kind: EntityKind, entity_id: str, owner: str) -> dict | None:
        record = self._records[kind].get(entity_id)
        if record is None or record["userId"] != owner:
            return None
        return copy.deepcopy(record)

    async def create(self, kind: EntityKind, fields: dict[str, Any], owner: str) -> dict:
        async with self._lock:
            record = self._new_record(fields, owner)
            self._records[kind][record["id"]] = record
            self.create_calls[kind] += 1
        return copy.deepcopy(record)

    async def count(self, kind: EntityKind, owner: str) -> int:
        return sum(1 for record in self._records[kind].values() if record["userId"] == owner)

    async def create_preview(self, preview: ChargePreview) -> ChargePreview:
        async with self._lock:
            self._prune_previews(preview.created_at)
            self._previews[preview.id] = preview.model_copy(deep=True)
        return preview

    def _prune_previews(self, now: datetime) -> None:
        cutoff = now - PREVIEW_RETENTION
        stale = [
            preview_id
            for preview_id, preview in self._previews.items()
            if preview.is_expired(cutoff)
        ]
        for preview_id in stale:
            del self._previews[preview_id]

    async def get_preview(self, preview_id: str) -> ChargePreview | None:
        preview = self._previews.get(preview_id)
        return preview.model_copy(deep=True) if preview else None

    async def consume_preview(
        self, preview_id: str, charge_fields: dict[str, Any], now: datetime
    ) -> dict:
        async with self._lock:
            preview = self._previews.get(preview_id)
            if preview is None or preview.is_consumed:
                raise PreviewAlreadyConsumedError(
                    f"Preview {preview_id} is no longer available"
                )
            self._previews[preview_id] = preview.model_copy(update={"consumed_at": now})
            record = self._new_record(charge_fields, preview.user_id)
            self._records[EntityKind.CHARGES][record["id"]] = record
            self.create_calls[EntityKind.CHARGES] += 1
        self.logger.info(f"Consumed preview {preview_id} into charge {record['id']}")
        return copy.deepcopy(record)

    async def is_payment_integration_active(self, owner: str) -> bool:
        return self._integrations.get(owner, False)

    async def get_subscription_tier(self, owner: str) -> str | None:
        return self._tiers.get(owner)
