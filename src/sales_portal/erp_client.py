"""Async client for the Business Central OData sales API.

Every collection is fetched fresh per call; only the OAuth2 bearer token is
cached. Transport failures and non-2xx answers surface as
:class:`~sales_portal.errors.UpstreamUnavailable`.
"""

from __future__ import annotations

import asyncio
import json
import time
from datetime import date
from decimal import Decimal
from typing import Any, Callable, List, Optional, Type, TypeVar

import httpx

from . import log
from .data_manager import ErpSettings
from .erp_models import (
    Customer,
    InventoryBalance,
    InvoiceLine,
    Item,
    Location,
    PostedInvoice,
    SalesIntegrationResponse,
    SalesOrderPayload,
    SalesPerson,
    SalesPrice,
)
from .errors import UpstreamUnavailable


T = TypeVar("T")

# Seconds shaved off ``expires_in`` so a token is never used at the edge of expiry.
TOKEN_EXPIRY_MARGIN = 60


def _json_default(value: Any) -> Any:
    if isinstance(value, Decimal):
        return float(value)
    if isinstance(value, date):
        return value.isoformat()
    raise TypeError(f"Object of type {type(value).__name__} is not JSON serializable")


def odata_filter(field: str, value: str) -> str:
    """Render ``field eq 'value'`` with OData quote escaping."""
    escaped = str(value).replace("'", "''")
    return f"{field} eq '{escaped}'"


class BusinessCentralClient:
    """Fetches ERP snapshots and posts sales orders.

    ``client`` lets callers (and tests) inject a preconfigured
    ``httpx.AsyncClient``; otherwise one is created with the configured
    timeout. ``retry_delay`` is the base back-off between GET attempts.
    """

    def __init__(
        self,
        settings: ErpSettings,
        *,
        client: Optional[httpx.AsyncClient] = None,
        clock: Callable[[], float] = time.monotonic,
        retry_delay: float = 0.5,
    ) -> None:
        self._settings = settings
        self._owns_client = client is None
        self._client = client or httpx.AsyncClient(timeout=httpx.Timeout(settings.timeout_seconds))
        self._clock = clock
        self._retry_delay = retry_delay
        self._token: Optional[str] = None
        self._token_expires_at = 0.0
        self._token_lock = asyncio.Lock()

    @property
    def base_url(self) -> str:
        return self._settings.base_url

    async def __aenter__(self) -> "BusinessCentralClient":
        return self

    async def __aexit__(self, *exc_info: object) -> None:
        await self.aclose()

    async def aclose(self) -> None:
        if self._owns_client:
            await self._client.aclose()

    async def get_access_token(self) -> str:
        """Return a cached bearer token, refreshing it when expired.

        Concurrent callers that find the token expired wait on one refresh
        instead of each requesting their own.
        """
        if self._token and self._clock() < self._token_expires_at:
            return self._token

        async with self._token_lock:
            if self._token and self._clock() < self._token_expires_at:
                return self._token
            self._token, lifetime = await self._request_token()
            self._token_expires_at = self._clock() + max(lifetime - TOKEN_EXPIRY_MARGIN, 0)
            log.info("Obtained ERP access token valid for %s seconds", lifetime)
            return self._token

    async def _request_token(self) -> tuple[str, int]:
        form = {
            "client_id": self._settings.client_id,
            "client_secret": self._settings.client_secret,
            "grant_type": "client_credentials",
            "scope": self._settings.scope,
        }
        try:
            response = await self._client.post(self._settings.token_endpoint, data=form)
        except httpx.HTTPError as exc:
            log.error("Token request failed: %s", exc)
            raise UpstreamUnavailable("Failed to obtain access token.", retryable=True) from exc

        if response.is_error:
            log.error("Token endpoint answered %s", response.status_code)
            raise UpstreamUnavailable(
                f"Failed to obtain access token. Status: {response.status_code}",
                status_code=response.status_code,
                retryable=response.status_code >= 500,
            )

        body = response.json()
        try:
            return str(body["access_token"]), int(body.get("expires_in", 0))
        except (KeyError, TypeError, ValueError) as exc:
            raise UpstreamUnavailable("Token endpoint returned an unexpected body.") from exc

    async def _authorized_headers(self) -> dict[str, str]:
        token = await self.get_access_token()
        return {"Authorization": f"Bearer {token}", "Accept": "application/json"}

    async def _get_json(self, path: str, params: dict[str, str]) -> Any:
        url = f"{self.base_url}/{path}"
        attempts = self._settings.max_retries + 1
        attempt = 0
        while True:
            attempt += 1
            try:
                headers = await self._authorized_headers()
                response = await self._client.get(url, params=params, headers=headers)
                if response.is_error:
                    raise UpstreamUnavailable(
                        f"API request failed. Status: {response.status_code}",
                        status_code=response.status_code,
                        retryable=response.status_code >= 500,
                    )
                return json.loads(response.content, parse_float=Decimal)
            except httpx.HTTPError as exc:
                failure = UpstreamUnavailable(f"API request to '{path}' failed: {exc}", retryable=True)
                failure.__cause__ = exc
            except UpstreamUnavailable as exc:
                failure = exc
            except ValueError as exc:
                raise UpstreamUnavailable(f"API response from '{path}' is not valid JSON.") from exc

            if not failure.retryable or attempt == attempts:
                log.error("GET %s failed after %d attempt(s): %s", path, attempt, failure)
                raise failure
            log.warning("GET %s failed (attempt %d of %d), retrying: %s", path, attempt, attempts, failure)
            await asyncio.sleep(self._retry_delay * attempt)

    async def _get_collection(
        self,
        path: str,
        model: Type[T],
        *,
        expand: Optional[str] = None,
        filter_field: Optional[str] = None,
        filter_value: Optional[str] = None,
    ) -> List[T]:
        params: dict[str, str] = {}
        if expand:
            params["$expand"] = expand
        if filter_field and filter_value:
            params["$filter"] = odata_filter(filter_field, filter_value)

        body = await self._get_json(path, params)
        values = body.get("value") if isinstance(body, dict) else None
        if values is None:
            log.warning("ERP collection '%s' returned no 'value' array", path)
            return []
        records = [model.from_payload(entry) for entry in values if entry]  # type: ignore[attr-defined]
        log.debug("Fetched %d record(s) from '%s'", len(records), path)
        return records

    async def get_customers(self, filter_field: Optional[str] = None, filter_value: Optional[str] = None) -> List[Customer]:
        return await self._get_collection("customers", Customer, filter_field=filter_field, filter_value=filter_value)

    async def get_locations(self, filter_field: Optional[str] = None, filter_value: Optional[str] = None) -> List[Location]:
        return await self._get_collection("locations", Location, filter_field=filter_field, filter_value=filter_value)

    async def get_sales_people(self, filter_field: Optional[str] = None, filter_value: Optional[str] = None) -> List[SalesPerson]:
        return await self._get_collection("salesPeople", SalesPerson, filter_field=filter_field, filter_value=filter_value)

    async def get_items(self, filter_field: Optional[str] = None, filter_value: Optional[str] = None) -> List[Item]:
        return await self._get_collection(
            "items", Item, expand="itemsubstitutions", filter_field=filter_field, filter_value=filter_value
        )

    async def get_inventory(self, filter_field: Optional[str] = None, filter_value: Optional[str] = None) -> List[InventoryBalance]:
        return await self._get_collection(
            "inventoryBalances", InventoryBalance, filter_field=filter_field, filter_value=filter_value
        )

    async def get_sales_prices(self, filter_field: Optional[str] = None, filter_value: Optional[str] = None) -> List[SalesPrice]:
        return await self._get_collection("salesPrices", SalesPrice, filter_field=filter_field, filter_value=filter_value)

    async def get_invoice_lines(self, filter_field: Optional[str] = None, filter_value: Optional[str] = None) -> List[InvoiceLine]:
        return await self._get_collection(
            "postedInvoiceLines", InvoiceLine, filter_field=filter_field, filter_value=filter_value
        )

    async def get_posted_invoices(self, filter_field: Optional[str] = None, filter_value: Optional[str] = None) -> List[PostedInvoice]:
        return await self._get_collection(
            "postedInvoices",
            PostedInvoice,
            expand="postedInvoiceLines",
            filter_field=filter_field,
            filter_value=filter_value,
        )

    async def post_sales_order(self, payload: SalesOrderPayload) -> SalesIntegrationResponse:
        """POST one sales order to ``salesIntegrations``. Never retried.

        Raises:
            UpstreamUnavailable: On transport errors or a non-2xx answer.
        """
        url = f"{self.base_url}/salesIntegrations"
        body = json.dumps(payload.to_payload(), default=_json_default)
        headers = await self._authorized_headers()
        headers["Content-Type"] = "application/json"
        try:
            response = await self._client.post(
                url,
                params={"$expand": "salesIntegrationLines"},
                content=body,
                headers=headers,
            )
        except httpx.HTTPError as exc:
            log.error("POST salesIntegrations for order %s failed: %s", payload.order_no, exc)
            raise UpstreamUnavailable(f"API post failed: {exc}", retryable=True) from exc

        if response.is_error:
            log.error(
                "POST salesIntegrations for order %s answered %s: %s",
                payload.order_no,
                response.status_code,
                response.text,
            )
            raise UpstreamUnavailable(
                f"API post failed. Status: {response.status_code}",
                status_code=response.status_code,
                retryable=response.status_code >= 500,
            )

        log.info("Posted order %s to the ERP", payload.order_no)
        if not response.content.strip():
            return SalesIntegrationResponse(order_no=payload.order_no)
        # Any 2xx means the ERP holds the order, whatever the body looks like.
        try:
            document = json.loads(response.content, parse_float=Decimal)
        except ValueError:
            document = None
        if not isinstance(document, dict):
            log.warning(
                "ERP accepted order %s with an unreadable body: %.200s",
                payload.order_no,
                response.text,
            )
            return SalesIntegrationResponse(order_no=payload.order_no)
        return SalesIntegrationResponse.from_payload(document)


__all__ = ["BusinessCentralClient", "odata_filter", "TOKEN_EXPIRY_MARGIN"]
