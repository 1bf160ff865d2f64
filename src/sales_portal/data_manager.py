"""Data access layer for the sales portal.

This module provides low-level helpers that read from and write to the
order store workbook. Business logic belongs elsewhere.

The public API is designed around three responsibilities:

1. Configuration handling: finding and parsing ``config.ini``.
2. Workbook lifecycle: opening, validating, and persisting the Excel file.
3. Sheet operations: loading structured records and appending or updating
   individual rows.
"""


from __future__ import annotations

import configparser
from dataclasses import dataclass, field
from decimal import Decimal
from pathlib import Path
from typing import Iterable, Optional, Sequence, Any

from openpyxl.workbook import Workbook
import openpyxl

from . import log
from .constants import DEFAULT_EXCLUDED_LOCATIONS, OrderStatus, SheetName


CONFIG_FILE_NAME = "config.ini"
ORDERS_SHEET = SheetName.ORDERS.value
ORDER_ITEMS_SHEET = SheetName.ORDER_ITEMS.value
USERS_SHEET = SheetName.USERS.value
USER_ROLES_SHEET = SheetName.USER_ROLES.value

DEFAULT_API_PATH = "asttrum/sales/v1.0"
DEFAULT_SCOPE = "https://api.businesscentral.dynamics.com/.default"
DEFAULT_TIMEOUT_SECONDS = 30.0
DEFAULT_MAX_RETRIES = 1

SHEET_COLUMNS: dict[str, tuple[str, ...]] = {
    ORDERS_SHEET: (
        "OrderNumber",
        "CustomerCode",
        "LocationCode",
        "OrderDate",
        "Status",
        "TotalAmount",
        "SalespersonCode",
        "PaymentMethodCode",
        "Note",
        "RejectReason",
        "TrackingNumber",
        "DeliveryPersonName",
        "DeliveryDate",
        "Version",
    ),
    ORDER_ITEMS_SHEET: (
        "OrderItemID",
        "OrderNumber",
        "ItemCode",
        "Description",
        "Quantity",
        "UnitPrice",
        "DiscountPercent",
    ),
    USERS_SHEET: (
        "UserID",
        "UserName",
        "RoleID",
        "SalespersonCode",
        "LocationCodes",
        "IsActive",
    ),
    USER_ROLES_SHEET: ("RoleID", "RoleName"),
}


@dataclass(frozen=True)
class ErpSettings:
    """Connection settings for the Business Central OData API."""

    base_url: str
    client_id: str
    client_secret: str
    token_endpoint: str
    scope: str = DEFAULT_SCOPE
    timeout_seconds: float = DEFAULT_TIMEOUT_SECONDS
    max_retries: int = DEFAULT_MAX_RETRIES


@dataclass(frozen=True)
class OrderPolicy:
    """Business rule switches read from the optional ``[Policy]`` section."""

    enforce_credit_limit: bool = False
    enforce_stock_quantity: bool = False
    admin_merges_open_orders: bool = False
    coordinator_location_scope: bool = False
    excluded_locations: tuple[str, ...] = DEFAULT_EXCLUDED_LOCATIONS


@dataclass(frozen=True)
class ConfigSettings:
    """Typed representation of the ``config.ini`` settings we care about."""

    data_file: Path
    schema_version: str
    default_salesperson_code: str
    erp: ErpSettings
    policy: OrderPolicy = field(default_factory=OrderPolicy)


@dataclass(frozen=True)
class OrderRow:
    """In-memory view of a row from the ``Orders`` sheet."""

    order_number: int
    customer_code: str
    location_code: str
    order_date_iso: str
    status: OrderStatus
    total_amount: Decimal
    salesperson_code: str
    payment_method_code: str
    note: Optional[str] = None
    reject_reason: Optional[str] = None
    tracking_number: Optional[str] = None
    delivery_person_name: Optional[str] = None
    delivery_date_iso: Optional[str] = None
    version: int = 1


@dataclass(frozen=True)
class OrderItemRow:
    """In-memory view of a row from the ``OrderItems`` sheet."""

    order_item_id: int
    order_number: int
    item_code: str
    description: str
    quantity: Decimal
    unit_price: Decimal
    discount_percent: Decimal


@dataclass(frozen=True)
class UserRow:
    """In-memory view of a row from the ``Users`` sheet."""

    user_id: int
    user_name: str
    role_id: int
    salesperson_code: str
    location_codes: tuple[str, ...]
    is_active: bool


@dataclass(frozen=True)
class RoleRow:
    """In-memory view of a row from the ``UserRoles`` sheet."""

    role_id: int
    role_name: str


def find_config_file(explicit_path: Optional[Path] = None) -> Path:
    """Locate the configuration file that controls how the data layer behaves.

    If the caller provides ``explicit_path`` the value is returned immediately
    without any verification, which allows the caller to deliberately target a
    non-standard location. When no explicit path is given the function walks up
    from the current working directory toward the filesystem root looking for a
    file named ``CONFIG_FILE_NAME``. The first match that exists on disk is
    considered authoritative.

    Args:
        explicit_path (Path | None): Optional path to use instead of performing
            the upward search. May be relative to the current working directory.

    Returns:
        Path: The path provided by the caller or the discovered configuration
            file. The path is *not* resolved or validated when supplied
            explicitly.

    Raises:
        FileNotFoundError: If the search exhausts all parent directories without
            finding ``CONFIG_FILE_NAME``.
    """

    if explicit_path:
        return explicit_path

    current = Path.cwd()
    for p in (current, *current.parents):
        candidate = p / CONFIG_FILE_NAME
        if candidate.exists():
            return candidate

    raise FileNotFoundError(
        f"Configuration file not found: {CONFIG_FILE_NAME}")


def read_config(config_path: Path) -> configparser.ConfigParser:
    """Load ``config.ini`` and return a populated ``ConfigParser`` instance.

    The function expands user home references (``~``), resolves the absolute
    path, and validates that the file exists before parsing it. Callers receive
    the ``ConfigParser`` even if individual sections are missing; validation of
    required entries happens in :func:`parse_settings`.

    Args:
        config_path (Path): Path to the configuration file, relative or
            absolute.

    Returns:
        configparser.ConfigParser: Initialized parser containing the raw
            configuration data.

    Raises:
        FileNotFoundError: If ``config_path`` does not exist after expansion and
            resolution.
    """

    config_path = config_path.expanduser().resolve()
    if not config_path.exists():
        raise FileNotFoundError(f"Configuration file not found: {config_path}")

    parser = configparser.ConfigParser()
    parser.read(config_path)
    return parser


def parse_settings(parser: configparser.ConfigParser, *, base_path: Optional[Path] = None) -> ConfigSettings:
    """Convert a ``ConfigParser`` into strongly typed :class:`ConfigSettings`.

    The function validates that all required options are present under the
    expected sections and normalizes the configured data file path. Relative
    paths are expanded against ``base_path`` when provided, or against the
    current working directory as a fallback. The ``[BusinessCentral]`` and
    ``[OAuth]`` sections are folded into :class:`ErpSettings`; the optional
    ``[Policy]`` section into :class:`OrderPolicy`.

    Args:
        parser (configparser.ConfigParser): Parsed configuration data.
        base_path (Path | None): Directory to use as the anchor for relative
            ``DataFile`` entries. Defaults to :func:`Path.cwd` when omitted.

    Returns:
        ConfigSettings: Immutable settings container with resolved data file
            path, schema version, default salesperson, ERP connection settings
            and order policy.

    Raises:
        KeyError: If one of the required sections or options is missing from the
            configuration.
        ValueError: If a numeric or boolean option cannot be parsed.
    """

    try:
        data_file_raw = parser.get("System", "DataFile")
        schema_version = parser.get("System", "SchemaVersion")
        default_salesperson = parser.get("Defaults", "DefaultSalesPerson")
        erp = parse_erp_settings(parser)
    except (configparser.NoSectionError, configparser.NoOptionError) as exc:
        raise KeyError(f"Missing required configuration entry: {exc}") from exc

    data_file_path = Path(data_file_raw)
    if not data_file_path.is_absolute():
        if base_path is None:
            base_path = Path.cwd()
        data_file_path = (base_path / data_file_path).resolve()

    return ConfigSettings(
        data_file=data_file_path,
        schema_version=schema_version,
        default_salesperson_code=default_salesperson,
        erp=erp,
        policy=parse_policy(parser),
    )


def parse_erp_settings(parser: configparser.ConfigParser) -> ErpSettings:
    """Build :class:`ErpSettings` from the ``[BusinessCentral]`` and ``[OAuth]`` sections.

    ``BaseUrl`` overrides the URL derived from ``EnvironmentName``,
    ``CompanyId`` and ``ApiPath``. The ``configparser`` lookup errors are left
    for :func:`parse_settings` to translate.
    """

    section = "BusinessCentral"
    base_url = parser.get(section, "BaseUrl", fallback="").strip()
    if not base_url:
        environment = parser.get(section, "EnvironmentName")
        company_id = parser.get(section, "CompanyId")
        api_path = parser.get(section, "ApiPath", fallback=DEFAULT_API_PATH).strip("/")
        base_url = (
            f"https://api.businesscentral.dynamics.com/v2.0/{environment}"
            f"/api/{api_path}/companies({company_id})"
        )

    return ErpSettings(
        base_url=base_url.rstrip("/"),
        client_id=parser.get("OAuth", "ClientId"),
        client_secret=parser.get("OAuth", "ClientSecret"),
        token_endpoint=parser.get("OAuth", "TokenEndpoint"),
        scope=parser.get("OAuth", "Scope", fallback=DEFAULT_SCOPE),
        timeout_seconds=parser.getfloat(section, "TimeoutSeconds", fallback=DEFAULT_TIMEOUT_SECONDS),
        max_retries=parser.getint(section, "MaxRetries", fallback=DEFAULT_MAX_RETRIES),
    )


def parse_policy(parser: configparser.ConfigParser) -> OrderPolicy:
    """Read the optional ``[Policy]`` section; every flag defaults to off."""

    if not parser.has_section("Policy"):
        return OrderPolicy()

    section = "Policy"
    excluded_raw = parser.get(section, "ExcludedLocations", fallback=None)
    excluded = (
        split_codes(excluded_raw) if excluded_raw is not None else DEFAULT_EXCLUDED_LOCATIONS
    )
    return OrderPolicy(
        enforce_credit_limit=parser.getboolean(section, "EnforceCreditLimit", fallback=False),
        enforce_stock_quantity=parser.getboolean(section, "EnforceStockQuantity", fallback=False),
        admin_merges_open_orders=parser.getboolean(section, "AdminMergesOpenOrders", fallback=False),
        coordinator_location_scope=parser.getboolean(section, "CoordinatorLocationScope", fallback=False),
        excluded_locations=excluded,
    )


def split_codes(raw: Optional[str]) -> tuple[str, ...]:
    """Split a comma separated code list, dropping blanks."""
    if not raw:
        return ()
    return tuple(part.strip() for part in str(raw).split(",") if part.strip())


def open_workbook(data_file: Path) -> Workbook:
    """Open the order store workbook and return a live ``openpyxl`` workbook.

    The provided path is expanded (supporting ``~``), resolved to its absolute
    form, and verified for existence. Callers must retain the resolved path and
    provide it back to :func:`save_workbook` when persisting changes.

    Args:
        data_file (Path): Filesystem path to the workbook file.

    Returns:
        Workbook: ``openpyxl`` workbook instance backed by the provided file.

    Raises:
        FileNotFoundError: If ``data_file`` does not exist after expansion and
            resolution.
        KeyError: If one of the sheets listed in ``SHEET_COLUMNS`` is missing.
    """

    data_file = Path(data_file).expanduser().resolve()
    if not data_file.exists():
        raise FileNotFoundError(f"Workbook not found: {data_file}")

    wb = openpyxl.load_workbook(data_file)
    missing = [name for name in SHEET_COLUMNS if name not in wb.sheetnames]
    if missing:
        log.error("Workbook '%s' is missing sheets: %s", data_file, ", ".join(missing))
        raise KeyError(f"Workbook is missing sheets: {', '.join(missing)}")
    return wb


def save_workbook(workbook: Workbook, destination: Path) -> None:
    """Persist the workbook to disk at an explicitly provided destination.

    Parent directories are created on demand.

    Args:
        workbook (Workbook): Workbook instance to persist.
        destination (Path): Filesystem path that should receive the serialized
            workbook.
    """

    dest = Path(destination).expanduser().resolve()
    dest.parent.mkdir(parents=True, exist_ok=True)
    workbook.save(dest)


def _iter_sheet(workbook: Workbook, sheet_name: str) -> Iterable[Sequence[object]]:
    sheet = workbook[sheet_name]
    for raw in sheet.iter_rows(min_row=2, values_only=True):
        # skip fully empty rows
        if any(cell is not None for cell in raw):
            yield raw


def iter_orders(workbook: Workbook) -> Iterable[OrderRow]:
    """Iterate over order records stored on the ``Orders`` worksheet.

    The iterator skips the header row and any fully empty rows. Each remaining
    row is converted into an :class:`OrderRow` via :func:`deserialize_order`.
    Rows come back in sheet order, which is also insertion order.

    Args:
        workbook (Workbook): Workbook containing the ``Orders`` sheet.

    Yields:
        OrderRow: One structured row for each meaningful record in the sheet.
    """

    for raw in _iter_sheet(workbook, ORDERS_SHEET):
        yield deserialize_order(raw)


def iter_order_items(workbook: Workbook) -> Iterable[OrderItemRow]:
    """Iterate over the ``OrderItems`` worksheet and yield typed records."""

    for raw in _iter_sheet(workbook, ORDER_ITEMS_SHEET):
        yield deserialize_order_item(raw)


def iter_users(workbook: Workbook) -> Iterable[UserRow]:
    """Iterate over the ``Users`` worksheet and yield typed records."""

    for raw in _iter_sheet(workbook, USERS_SHEET):
        yield deserialize_user(raw)


def iter_roles(workbook: Workbook) -> Iterable[RoleRow]:
    for raw in _iter_sheet(workbook, USER_ROLES_SHEET):
        yield deserialize_role(raw)


def append_order(workbook: Workbook, record: OrderRow) -> None:
    """Append an order record to the ``Orders`` worksheet.

    The dataclass is serialized into the exact column ordering expected by the
    sheet before being appended.

    Args:
        workbook (Workbook): Workbook whose orders sheet should be modified.
        record (OrderRow): Structured order data ready for persistence.
    """

    workbook[ORDERS_SHEET].append(serialize_order(record))


def append_order_item(workbook: Workbook, record: OrderItemRow) -> None:
    """Append an order line to the ``OrderItems`` worksheet.

    Numerical fields remain :class:`~decimal.Decimal` instances after
    serialization, allowing Excel to preserve precision when the workbook is
    saved.
    """

    workbook[ORDER_ITEMS_SHEET].append(serialize_order_item(record))


def truncate_sheet(workbook: Workbook, sheet_name: str, last_row: int) -> None:
    """Delete every row below ``last_row`` in ``sheet_name``.

    Used to drop rows appended in memory when the save that should have
    followed them failed.
    """

    worksheet = workbook[sheet_name]
    extra = worksheet.max_row - last_row
    if extra > 0:
        worksheet.delete_rows(last_row + 1, extra)


def append_user(workbook: Workbook, record: UserRow) -> None:
    workbook[USERS_SHEET].append(serialize_user(record))


def append_role(workbook: Workbook, record: RoleRow) -> None:
    workbook[USER_ROLES_SHEET].append(serialize_role(record))


def update_order_fields(workbook: Workbook, order_number: int, *, field_values: dict[str, Any]) -> None:
    """Update selected columns for an existing order.

    The function locates the row whose ``OrderNumber`` matches
    ``order_number``, validates that each requested field exists in the header
    row, and then writes the provided values into the corresponding cells. Only
    the specified fields are modified, leaving other columns untouched.

    Args:
        workbook (Workbook): Workbook containing the orders sheet.
        order_number (int): Identifier used to locate the target row.
        field_values (dict[str, Any]): Mapping of column names to replacement
            values.

    Raises:
        KeyError: If the order or any referenced column cannot be found.
    """

    row_index = locate_row(workbook, ORDERS_SHEET, "OrderNumber", order_number)
    if row_index is None:
        raise KeyError(f"Order not found: {order_number}")

    sheet = workbook[ORDERS_SHEET]
    headers = list(sheet[1])
    header_map = {cell.value: idx + 1 for idx, cell in enumerate(headers)}

    for column, value in field_values.items():
        if column not in header_map:
            raise KeyError(f"Unknown order field: {column}")
        sheet.cell(row=row_index, column=header_map[column], value=value)


def read_order_at(workbook: Workbook, row_index: int) -> OrderRow:
    """Deserialize the order stored at a 1-based worksheet row."""
    sheet = workbook[ORDERS_SHEET]
    raw = next(sheet.iter_rows(min_row=row_index, max_row=row_index, values_only=True))
    return deserialize_order(raw)


def locate_row(workbook: Workbook, sheet_name: str, key_column: str, key_value: object) -> Optional[int]:
    """Find a row by matching a key value within the specified worksheet.

    The function constructs a mapping from header titles to column indices,
    verifies that ``key_column`` exists, and scans the worksheet for the first
    row whose value equals ``key_value``. The header row itself is not
    considered during matching.

    Args:
        workbook (Workbook): Workbook providing access to ``sheet_name``.
        sheet_name (str): Name of the worksheet to search.
        key_column (str): Header title identifying the column that stores the
            lookup key.
        key_value (object): Value to match within the key column.

    Returns:
        int | None: 1-based Excel row index when a match is found, otherwise
            ``None``.

    Raises:
        KeyError: If ``key_column`` is not present in the worksheet header.
    """

    sheet = workbook[sheet_name]
    header_cells = list(sheet[1])
    header_map = {cell.value: idx + 1 for idx, cell in enumerate(header_cells)}
    if key_column not in header_map:
        raise KeyError(f"Unknown column: {key_column}")

    key_col_index = header_map[key_column]

    for row_idx, row in enumerate(sheet.iter_rows(min_row=2, values_only=True), start=2):
        cell_value = row[key_col_index - 1]
        if cell_value == key_value:
            return row_idx

    return None


def serialize_order(record: OrderRow) -> list[object]:
    """Convert an order dataclass into the ``Orders`` column ordering.

    Args:
        record (OrderRow): Structured order data to transform.

    Returns:
        list[object]: Values ordered to match ``SHEET_COLUMNS[ORDERS_SHEET]``.
            The status is written as its plain string value.
    """

    return [
        record.order_number,
        record.customer_code,
        record.location_code,
        record.order_date_iso,
        record.status.value,
        record.total_amount,
        record.salesperson_code,
        record.payment_method_code,
        record.note,
        record.reject_reason,
        record.tracking_number,
        record.delivery_person_name,
        record.delivery_date_iso,
        record.version,
    ]


def serialize_order_item(record: OrderItemRow) -> list[object]:
    return [
        record.order_item_id,
        record.order_number,
        record.item_code,
        record.description,
        record.quantity,
        record.unit_price,
        record.discount_percent,
    ]


def serialize_user(record: UserRow) -> list[object]:
    """Convert a user dataclass into the ``Users`` column ordering.

    Assigned location codes are stored as one comma separated cell.
    """

    return [
        record.user_id,
        record.user_name,
        record.role_id,
        record.salesperson_code,
        ",".join(record.location_codes),
        record.is_active,
    ]


def serialize_role(record: RoleRow) -> list[object]:
    return [record.role_id, record.role_name]


def _to_decimal(raw: object, default: str = "0") -> Decimal:
    return Decimal(str(raw)) if raw is not None else Decimal(default)


def _to_optional_str(raw: object) -> Optional[str]:
    return str(raw) if raw is not None else None


def deserialize_order(raw_row: Sequence[object]) -> OrderRow:
    """Convert a raw worksheet row into a strongly typed order record.

    Decimal-compatible columns are normalized into :class:`~decimal.Decimal`
    instances to preserve precision, optional columns remain ``None`` when the
    sheet leaves them blank, and the status text is mapped back onto
    :class:`OrderStatus`.

    Args:
        raw_row (Sequence[object]): Raw cell values from the orders row in
            their worksheet order.

    Returns:
        OrderRow: Dataclass reflecting the row contents with consistent Python
            types.

    Raises:
        ValueError: If the status cell holds an unknown value.
    """

    (
        order_number,
        customer_code,
        location_code,
        order_date_iso,
        status,
        total_amount_raw,
        salesperson_code,
        payment_method_code,
        note,
        reject_reason,
        tracking_number,
        delivery_person_name,
        delivery_date_iso,
        version,
    ) = tuple(raw_row[:14])

    return OrderRow(
        order_number=int(order_number),
        customer_code=str(customer_code) if customer_code is not None else "",
        location_code=str(location_code) if location_code is not None else "",
        order_date_iso=str(order_date_iso) if order_date_iso is not None else "",
        status=OrderStatus(str(status)),
        total_amount=_to_decimal(total_amount_raw, "0.00"),
        salesperson_code=str(salesperson_code) if salesperson_code is not None else "",
        payment_method_code=str(payment_method_code) if payment_method_code is not None else "",
        note=_to_optional_str(note),
        reject_reason=_to_optional_str(reject_reason),
        tracking_number=_to_optional_str(tracking_number),
        delivery_person_name=_to_optional_str(delivery_person_name),
        delivery_date_iso=_to_optional_str(delivery_date_iso),
        version=int(version) if version is not None else 1,
    )


def deserialize_order_item(raw_row: Sequence[object]) -> OrderItemRow:
    """Convert a raw worksheet row into a strongly typed order line."""

    (
        order_item_id,
        order_number,
        item_code,
        description,
        quantity_raw,
        unit_price_raw,
        discount_raw,
    ) = tuple(raw_row[:7])

    return OrderItemRow(
        order_item_id=int(order_item_id),
        order_number=int(order_number),
        item_code=str(item_code) if item_code is not None else "",
        description=str(description) if description is not None else "",
        quantity=_to_decimal(quantity_raw),
        unit_price=_to_decimal(unit_price_raw, "0.00"),
        discount_percent=_to_decimal(discount_raw),
    )


def deserialize_user(raw_row: Sequence[object]) -> UserRow:
    """Convert a raw worksheet row into a strongly typed user record.

    The function coerces identifier fields to ``int``, splits the location
    list and uses ``bool`` coercion for the active flag to hide underlying
    spreadsheet encodings.
    """

    user_id, user_name, role_id, salesperson_code, location_codes, is_active = tuple(raw_row[:6])
    return UserRow(
        user_id=int(user_id),
        user_name=str(user_name) if user_name is not None else "",
        role_id=int(role_id),
        salesperson_code=str(salesperson_code) if salesperson_code is not None else "",
        location_codes=split_codes(_to_optional_str(location_codes)),
        is_active=bool(is_active),
    )


def deserialize_role(raw_row: Sequence[object]) -> RoleRow:
    role_id, role_name = tuple(raw_row[:2])
    return RoleRow(role_id=int(role_id), role_name=str(role_name))
