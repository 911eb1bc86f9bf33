"""REST client implementation of the business data store."""

import logging
from datetime import datetime
from typing import Any

import httpx

from service_copilot.config import BUSINESS_API_URL
from service_copilot.core.models import ChargePreview, EntityKind, SearchPage
from service_copilot.core.store import BusinessStore, Range
from service_copilot.errors import PreviewAlreadyConsumedError, StoreUnavailableError
from service_copilot.utils.constants import USER_AGENT


class HttpBusinessStore(BusinessStore):
    """Client for the business data REST API."""

    def __init__(self, base_url: str = BUSINESS_API_URL, timeout: float = 10.0) -> None:
        self.base_url = base_url.rstrip("/")
        self.timeout = timeout
        self.logger = logging.getLogger(__name__)

    async def _make_request(
        self,
        method: str,
        path: str,
        params: dict[str, Any] | None = None,
        json: Any = None,
    ) -> httpx.Response:
        """Send one request to the business API.

        Args:
            method: HTTP method
            path: Path relative to the base URL
            params: Query string parameters; None values are dropped
            json: JSON request body

        Returns:
            The response for any status below 500 so callers can map 404/409

        Raises:
            StoreUnavailableError: Transport failure or server error
        """
        url = f"{self.base_url}{path}"
        query = {key: value for key, value in (params or {}).items() if value is not None}
        try:
            async with httpx.AsyncClient(headers={"User-Agent": USER_AGENT}) as client:
                response = await client.request(
                    method, url, params=query, json=json, timeout=self.timeout
                )
        except httpx.HTTPError as e:
            self.logger.error(f"Request failed for {method} {url}: {e}")
            raise StoreUnavailableError(f"Business API unreachable: {e}") from e

        if response.status_code >= 500:
            self.logger.error(f"{method} {url} returned {response.status_code}")
            raise StoreUnavailableError(
                f"Business API error {response.status_code} for {path}"
            )
        return response

    @staticmethod
    def _json_or_raise(response: httpx.Response) -> Any:
        try:
            response.raise_for_status()
        except httpx.HTTPStatusError as e:
            raise StoreUnavailableError(str(e)) from e
        return response.json()

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
        params: dict[str, Any] = {
            "userId": owner,
            "q": query,
            "limit": limit,
            "offset": offset,
        }
        for field, value in (equals or {}).items():
            if isinstance(value, (list, tuple, set, frozenset)):
                params[field] = ",".join(str(item) for item in value)
            else:
                params[field] = value
        for field, (lower, upper) in (ranges or {}).items():
            params[f"{field}From"] = lower
            params[f"{field}To"] = upper

        response = await self._make_request("GET", f"/{kind.value}", params=params)
        return SearchPage(**self._json_or_raise(response))

    async def get(self, kind: EntityKind, entity_id: str, owner: str) -> dict | None:
        response = await self._make_request(
            "GET", f"/{kind.value}/{entity_id}", params={"userId": owner}
        )
        if response.status_code == 404:
            return None
        return self._json_or_raise(response)

    async def create(self, kind: EntityKind, fields: dict[str, Any], owner: str) -> dict:
        response = await self._make_request(
            "POST", f"/{kind.value}", json={**fields, "userId": owner}
        )
        return self._json_or_raise(response)

    async def count(self, kind: EntityKind, owner: str) -> int:
        response = await self._make_request(
            "GET", f"/{kind.value}/count", params={"userId": owner}
        )
        return int(self._json_or_raise(response).get("count", 0))

    async def create_preview(self, preview: ChargePreview) -> ChargePreview:
        response = await self._make_request(
            "POST",
            "/charge-previews",
            json=preview.model_dump(by_alias=True, mode="json"),
        )
        return ChargePreview.model_validate(self._json_or_raise(response))

    async def get_preview(self, preview_id: str) -> ChargePreview | None:
        response = await self._make_request("GET", f"/charge-previews/{preview_id}")
        if response.status_code == 404:
            return None
        return ChargePreview.model_validate(self._json_or_raise(response))

    async def consume_preview(
        self, preview_id: str, charge_fields: dict[str, Any], now: datetime
    ) -> dict:
        response = await self._make_request(
            "POST",
            f"/charge-previews/{preview_id}/consume",
            json={"consumedAt": now.isoformat(), "charge": charge_fields},
        )
        if response.status_code in (404, 409):
            raise PreviewAlreadyConsumedError(
                f"Preview {preview_id} is no longer available"
            )
        return self._json_or_raise(response)

    async def is_payment_integration_active(self, owner: str) -> bool:
        response = await self._make_request(
            "GET", f"/users/{owner}/payment-integration"
        )
        if response.status_code == 404:
            return False
        return bool(self._json_or_raise(response).get("active", False))

    async def get_subscription_tier(self, owner: str) -> str | None:
        response = await self._make_request("GET", f"/users/{owner}/subscription")
        if response.status_code == 404:
            return None
        return self._json_or_raise(response).get("tier")
