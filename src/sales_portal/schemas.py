"""Request and view models exchanged with callers of the sales portal.

Requests describe user intent (submit an order, move an order to another
status). Views are request-scoped projections that join order store rows with
ERP snapshots; none of them is persisted.
"""

from __future__ import annotations

from dataclasses import dataclass, field
from datetime import date, datetime
from decimal import Decimal
from typing import Any, Mapping, Optional

from .constants import OrderStatus


@dataclass(frozen=True)
class OrderItemRequest:
    """One requested order line."""

    item_code: str
    description: str
    quantity: Decimal
    unit_price: Decimal
    discount_percent: Decimal = Decimal("0")

    @classmethod
    def from_mapping(cls, data: Mapping[str, Any]) -> "OrderItemRequest":
        return cls(
            item_code=str(data["item_code"]),
            description=str(data.get("description") or ""),
            quantity=Decimal(str(data["quantity"])),
            unit_price=Decimal(str(data["unit_price"])),
            discount_percent=Decimal(str(data.get("discount_percent", 0))),
        )


@dataclass(frozen=True)
class OrderRequest:
    """User intent for submitting a new sales order."""

    customer_code: str
    location_code: str
    payment_method_code: str
    total_amount: Decimal
    items: tuple[OrderItemRequest, ...]
    special_note: Optional[str] = None

    @classmethod
    def from_mapping(cls, data: Mapping[str, Any]) -> "OrderRequest":
        """Build a request from decoded JSON.

        Raises:
            KeyError: If a required field is missing.
            decimal.InvalidOperation: If a numeric field is not a number.
        """
        return cls(
            customer_code=str(data["customer_code"]),
            location_code=str(data["location_code"]),
            payment_method_code=str(data.get("payment_method_code") or ""),
            total_amount=Decimal(str(data["total_amount"])),
            items=tuple(OrderItemRequest.from_mapping(item) for item in data.get("items") or ()),
            special_note=data.get("special_note"),
        )


@dataclass(frozen=True)
class UpdateOrderRequest:
    """User intent for moving an order to ``status``.

    ``expected_version`` is optional; when supplied the update is refused if
    the stored order has moved on since the caller read it.
    """

    order_number: int
    status: OrderStatus
    reject_reason: Optional[str] = None
    tracking_number: Optional[str] = None
    delivery_person_name: Optional[str] = None
    delivery_date: Optional[date] = None
    note: Optional[str] = None
    expected_version: Optional[int] = None

    @property
    def has_delivery_details(self) -> bool:
        return any(
            value is not None
            for value in (self.tracking_number, self.delivery_person_name, self.delivery_date)
        )


@dataclass(frozen=True)
class OrderItemReturn:
    item_code: str
    description: str
    quantity: Decimal
    unit_price: Decimal
    discount_percent: Decimal


@dataclass(frozen=True)
class OrderReturn:
    """Order joined with display names, its lines and any invoice evidence."""

    order_number: int
    customer_name: str
    salesperson_name: str
    location: str
    order_date: datetime
    payment_method_type: str
    total_amount: Decimal
    status: OrderStatus
    special_note: str
    ordered_items: list[OrderItemReturn]
    version: int
    invoice_number: Optional[str] = None
    invoiced_items: Optional[list[OrderItemReturn]] = None
    reject_reason: Optional[str] = None
    delivery_date: Optional[str] = None
    tracking_number: Optional[str] = None
    delivery_person_name: Optional[str] = None


@dataclass(frozen=True)
class OrderStatusSummary:
    pending_count: int
    delivered_count: int
    rejected_count: int


@dataclass(frozen=True)
class CustomerInvoice:
    customer_code: str
    customer_name: str
    invoice_document_no: str
    invoice_date: Optional[date]
    invoiced_amount: Decimal
    due_amount: Decimal


@dataclass(frozen=True)
class CustomerInvoiceReturn:
    total_due_amount: Decimal
    customer_invoices: list[CustomerInvoice] = field(default_factory=list)


@dataclass(frozen=True)
class InvoiceSummary:
    invoice_no: str
    order_no: Optional[str]
    invoice_date: Optional[date]
    pdc_amount: Decimal
    due_amount: Decimal
    total_amount: Decimal


@dataclass(frozen=True)
class CustomerWiseInvoices:
    customer_no: str
    total_due_amount: Decimal
    total_pdc_amount: Decimal
    invoices: list[InvoiceSummary] = field(default_factory=list)


@dataclass(frozen=True)
class StockItem:
    """Item stocked at one location, with its display stock figure."""

    item_code: str
    item_name: str
    location: str
    stock: str
    unit_price: Decimal
    item_category: str
    category: str
    sub_category: str
    description: str
    description2: str
    unit_of_measure: str
    size: str
    reorder_quantity: Decimal


@dataclass(frozen=True)
class LocationSummary:
    location_code: str
    location_name: str


@dataclass(frozen=True)
class OrderCustomer:
    customer_code: str
    customer_name: str
    due_amount: Decimal
    credit_allowed: bool
    credit_limit: Decimal
    balance_credit: Decimal
    payment_term_code: str
    payment_method_code: str


@dataclass(frozen=True)
class LocationByItemInventory:
    location_code: str
    inventory: str


@dataclass(frozen=True)
class SubstituteItem:
    item_code: str
    item_name: str
    unit_price: Decimal


@dataclass(frozen=True)
class OrderItemDetails:
    item_code: str
    item_name: str
    unit_price: Decimal
    location_wise_inventory: list[LocationByItemInventory]
    substitute_item: Optional[SubstituteItem] = None


@dataclass(frozen=True)
class OrderCreationDetails:
    """Everything an order form needs: locations, customers and items."""

    locations: list[LocationSummary]
    customers: list[OrderCustomer]
    items: list[OrderItemDetails]


__all__ = [
    "OrderItemRequest",
    "OrderRequest",
    "UpdateOrderRequest",
    "OrderItemReturn",
    "OrderReturn",
    "OrderStatusSummary",
    "CustomerInvoice",
    "CustomerInvoiceReturn",
    "InvoiceSummary",
    "CustomerWiseInvoices",
    "StockItem",
    "LocationSummary",
    "OrderCustomer",
    "LocationByItemInventory",
    "SubstituteItem",
    "OrderItemDetails",
    "OrderCreationDetails",
]
