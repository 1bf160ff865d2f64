"""Shared pytest fixtures and utilities for sales portal tests."""

from __future__ import annotations

import asyncio
import json
import sys
import uuid
from collections import defaultdict
from dataclasses import dataclass
from decimal import Decimal
from pathlib import Path
from typing import Any, Callable, Iterator

import httpx
import pytest

# Ensure source packages are importable without installation.
PROJECT_ROOT = Path(__file__).resolve().parents[1]
SRC_DIR = PROJECT_ROOT / "src"

if str(SRC_DIR) not in sys.path:
    sys.path.insert(0, str(SRC_DIR))

from sales_portal import constants, data_manager  # noqa: E402
from sales_portal.erp_models import SalesIntegrationResponse, SalesOrderPayload  # noqa: E402
from sales_portal.identity import UserDirectory  # noqa: E402
from sales_portal.lifecycle import OrderLifecycleEngine  # noqa: E402
from sales_portal.order_store import OrderStore, WorkbookSession  # noqa: E402
from sales_portal.reporting import OrderReportingAggregator  # noqa: E402
from sales_portal.setup_excel import create_store_workbook  # noqa: E402
from sales_portal.validation import OrderValidator  # noqa: E402

DEFAULT_SCHEMA_VERSION = constants.EXPECTED_SCHEMA_VERSION
DEFAULT_SALESPERSON_CODE = "SP-DEFAULT"
ERP_BASE_URL = "https://erp.example.test/api/asttrum/sales/v1.0/companies(c0ffee)"
TOKEN_ENDPOINT = "https://login.example.test/tenant/oauth2/v2.0/token"
_CONFIG_TEMPLATE = (
    "[System]\n"
    "DataFile = {data_file}\n"
    "SchemaVersion = {schema_version}\n\n"
    "[Defaults]\n"
    "DefaultSalesPerson = {default_salesperson_code}\n\n"
    "[BusinessCentral]\n"
    "BaseUrl = {base_url}\n"
    "MaxRetries = 1\n\n"
    "[OAuth]\n"
    "ClientId = portal-client\n"
    "ClientSecret = portal-secret\n"
    "TokenEndpoint = {token_endpoint}\n"
)


@dataclass(frozen=True)
class ConfigBundle:
    """Container bundling together config metadata for tests."""

    directory: Path
    config_path: Path
    workbook_path: Path
    default_salesperson_code: str
    schema_version: str


@pytest.fixture(scope="session", autouse=True)
def _restore_sys_path() -> Iterator[None]:
    """Ensure sys.path modifications are undone after the test session."""

    original = sys.path.copy()
    try:
        yield
    finally:
        sys.path[:] = original


@pytest.fixture
def run() -> Callable[..., Any]:
    """Drive a coroutine to completion on a fresh event loop."""

    return asyncio.run


@pytest.fixture
def workbook_factory(tmp_path: Path) -> Callable[..., Path]:
    """Factory that creates an initialized order workbook in a temp folder."""

    def _create_workbook(
        *,
        subdir: str | None = None,
        default_salesperson_code: str = DEFAULT_SALESPERSON_CODE,
        filename: str = "orders.xlsx",
    ) -> Path:
        base_dir = tmp_path if subdir is None else tmp_path / subdir
        base_dir.mkdir(parents=True, exist_ok=True)
        workbook_path = base_dir / filename
        create_store_workbook(workbook_path, default_salesperson_code=default_salesperson_code, overwrite=True)
        return workbook_path

    return _create_workbook


@pytest.fixture
def store_workbook_path(workbook_factory: Callable[..., Path]) -> Path:
    """Return a fresh order workbook ready for use in a test."""

    return workbook_factory(subdir=f"workbook_{uuid.uuid4().hex}")


@pytest.fixture
def config_factory(tmp_path: Path, workbook_factory: Callable[..., Path]) -> Callable[..., ConfigBundle]:
    """Provide a callable that creates config/workbook bundles on demand."""

    def _create_config(
        *,
        make_relative: bool = False,
        schema_version: str = DEFAULT_SCHEMA_VERSION,
        default_salesperson_code: str = DEFAULT_SALESPERSON_CODE,
        extra: str = "",
    ) -> ConfigBundle:
        bundle_id = uuid.uuid4().hex
        bundle_dir = tmp_path / f"bundle_{bundle_id}"
        bundle_dir.mkdir(parents=True, exist_ok=True)
        workbook_path = workbook_factory(
            subdir=f"bundle_{bundle_id}",
            default_salesperson_code=default_salesperson_code,
        )
        data_file_entry = workbook_path.name if make_relative else str(workbook_path)
        config_path = bundle_dir / "config.ini"
        config_path.write_text(
            _CONFIG_TEMPLATE.format(
                data_file=data_file_entry,
                schema_version=schema_version,
                default_salesperson_code=default_salesperson_code,
                base_url=ERP_BASE_URL,
                token_endpoint=TOKEN_ENDPOINT,
            )
            + extra
        )
        return ConfigBundle(
            directory=bundle_dir,
            config_path=config_path,
            workbook_path=workbook_path,
            default_salesperson_code=default_salesperson_code,
            schema_version=schema_version,
        )

    return _create_config


@pytest.fixture
def config_file(config_factory: Callable[..., ConfigBundle]) -> Path:
    """Convenience fixture returning only the config path."""

    return config_factory().config_path


# ---------------------------------------------------------------------------
# ERP fakes
# ---------------------------------------------------------------------------


class FakeDirectory:
    """In-memory stand-in for the Business Central client.

    Collections are plain lists of ERP model instances. ``failures`` maps a
    collection name (or ``"post_sales_order"``) to the exception raised when
    it is requested; ``calls`` records the order in which collections were
    requested.
    """

    def __init__(self) -> None:
        self.customers: list = []
        self.locations: list = []
        self.sales_people: list = []
        self.items: list = []
        self.inventory: list = []
        self.sales_prices: list = []
        self.invoice_lines: list = []
        self.posted_invoices: list = []
        self.failures: dict[str, Exception] = {}
        self.calls: list[str] = []
        self.posted: list[SalesOrderPayload] = []
        self.closed = False

    async def _answer(self, name: str, values: list) -> list:
        self.calls.append(name)
        if name in self.failures:
            raise self.failures[name]
        return list(values)

    async def get_customers(self, *args: Any, **kwargs: Any) -> list:
        return await self._answer("customers", self.customers)

    async def get_locations(self, *args: Any, **kwargs: Any) -> list:
        return await self._answer("locations", self.locations)

    async def get_sales_people(self, *args: Any, **kwargs: Any) -> list:
        return await self._answer("sales_people", self.sales_people)

    async def get_items(self, *args: Any, **kwargs: Any) -> list:
        return await self._answer("items", self.items)

    async def get_inventory(self, *args: Any, **kwargs: Any) -> list:
        return await self._answer("inventory", self.inventory)

    async def get_sales_prices(self, *args: Any, **kwargs: Any) -> list:
        return await self._answer("sales_prices", self.sales_prices)

    async def get_invoice_lines(self, *args: Any, **kwargs: Any) -> list:
        return await self._answer("invoice_lines", self.invoice_lines)

    async def get_posted_invoices(self, *args: Any, **kwargs: Any) -> list:
        return await self._answer("posted_invoices", self.posted_invoices)

    async def post_sales_order(self, payload: SalesOrderPayload) -> SalesIntegrationResponse:
        self.calls.append("post_sales_order")
        if "post_sales_order" in self.failures:
            raise self.failures["post_sales_order"]
        self.posted.append(payload)
        return SalesIntegrationResponse(order_no=payload.order_no, customer_no=payload.customer_no)

    async def aclose(self) -> None:
        self.closed = True


class ErpStub:
    """Routes ``httpx.MockTransport`` requests to canned ERP answers.

    GET requests answer ``{"value": collections[name]}`` unless a response
    was queued for that collection name. Token requests hand out numbered
    tokens.
    """

    def __init__(self) -> None:
        self.collections: dict[str, list[dict[str, Any]]] = {}
        self.queued: dict[str, list[Any]] = defaultdict(list)
        self.requests: list[httpx.Request] = []
        self.token_requests = 0

    def handler(self, request: httpx.Request) -> httpx.Response:
        self.requests.append(request)
        if request.url.host == "login.example.test":
            self.token_requests += 1
            return httpx.Response(
                200, json={"access_token": f"token-{self.token_requests}", "expires_in": 3600}
            )

        name = request.url.path.rsplit("/", 1)[-1]
        if self.queued[name]:
            queued = self.queued[name].pop(0)
            if isinstance(queued, Exception):
                raise queued
            return queued
        if request.method == "POST":
            return httpx.Response(201, json=json.loads(request.content))
        return httpx.Response(200, json={"value": self.collections.get(name, [])})

    def requests_to(self, name: str, method: str = "GET") -> list[httpx.Request]:
        return [
            request
            for request in self.requests
            if request.method == method and request.url.path.rsplit("/", 1)[-1] == name
        ]

    def transport(self) -> httpx.MockTransport:
        return httpx.MockTransport(self.handler)


@pytest.fixture
def erp_stub() -> ErpStub:
    return ErpStub()


@pytest.fixture
def erp_settings() -> data_manager.ErpSettings:
    return data_manager.ErpSettings(
        base_url=ERP_BASE_URL,
        client_id="portal-client",
        client_secret="portal-secret",
        token_endpoint=TOKEN_ENDPOINT,
        max_retries=1,
    )


@pytest.fixture
def fake_directory() -> FakeDirectory:
    return FakeDirectory()


# ---------------------------------------------------------------------------
# Service fixtures
# ---------------------------------------------------------------------------


@pytest.fixture
def session(store_workbook_path: Path) -> WorkbookSession:
    workbook = data_manager.open_workbook(store_workbook_path)
    return WorkbookSession(workbook=workbook, data_file=store_workbook_path)


@pytest.fixture
def store(session: WorkbookSession) -> OrderStore:
    return OrderStore(session)


@pytest.fixture
def users(session: WorkbookSession) -> UserDirectory:
    return UserDirectory(session)


@pytest.fixture
def policy() -> data_manager.OrderPolicy:
    return data_manager.OrderPolicy()


@pytest.fixture
def validator(fake_directory: FakeDirectory, policy: data_manager.OrderPolicy) -> OrderValidator:
    return OrderValidator(fake_directory, policy)


@pytest.fixture
def engine(
    store: OrderStore,
    fake_directory: FakeDirectory,
    users: UserDirectory,
    validator: OrderValidator,
) -> OrderLifecycleEngine:
    return OrderLifecycleEngine(store, fake_directory, users, validator)


@pytest.fixture
def reporting(
    store: OrderStore,
    fake_directory: FakeDirectory,
    users: UserDirectory,
    policy: data_manager.OrderPolicy,
) -> OrderReportingAggregator:
    return OrderReportingAggregator(store, fake_directory, users, policy)


@pytest.fixture
def seeded_users(users: UserDirectory, run: Callable[..., Any]) -> dict[str, int]:
    """Register a coordinator and two salespeople next to the seeded admin.

    Returns a mapping of role nicknames to user ids.
    """

    coordinator = run(users.add_user("casey", constants.Role.SALES_COORDINATOR, "SP-COORD", ["L1"]))
    sam = run(users.add_user("sam", constants.Role.SALES_PERSON, "SP01", ["L1", "L2"]))
    robin = run(users.add_user("robin", constants.Role.SALES_PERSON, "SP02", ["L2"]))
    return {"admin": 1, "coordinator": coordinator.user_id, "sam": sam.user_id, "robin": robin.user_id}


@pytest.fixture
def order_row_factory() -> Callable[..., data_manager.OrderRow]:
    """Build order rows with sensible defaults for direct store writes."""

    def _make(**overrides: Any) -> data_manager.OrderRow:
        values: dict[str, Any] = {
            "order_number": 0,
            "customer_code": "C1",
            "location_code": "L1",
            "order_date_iso": "2026-01-15T09:30:00+00:00",
            "status": constants.OrderStatus.PENDING,
            "total_amount": Decimal("100.00"),
            "salesperson_code": "SP01",
            "payment_method_code": "CASH",
        }
        values.update(overrides)
        return data_manager.OrderRow(**values)

    return _make
