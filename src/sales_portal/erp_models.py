"""Typed snapshots of the Business Central OData collections.

Each dataclass mirrors one entity of the ERP's JSON contract and is built from
a raw ``value`` element through ``from_payload``. Money and quantity fields are
normalized to :class:`~decimal.Decimal`; missing text fields become empty
strings so that joins never trip over ``None`` codes.
"""

from __future__ import annotations

from dataclasses import dataclass, field
from datetime import date
from decimal import Decimal, InvalidOperation
from typing import Any, Mapping, Optional


def _text(payload: Mapping[str, Any], key: str) -> str:
    value = payload.get(key)
    return str(value) if value is not None else ""


def _decimal(payload: Mapping[str, Any], key: str) -> Decimal:
    value = payload.get(key)
    if value is None or value == "":
        return Decimal("0")
    try:
        return Decimal(str(value))
    except InvalidOperation:
        return Decimal("0")


def _int(payload: Mapping[str, Any], key: str) -> int:
    value = payload.get(key)
    try:
        return int(value) if value is not None else 0
    except (TypeError, ValueError):
        return 0


@dataclass(frozen=True)
class Customer:
    no: str
    name: str
    credit_limit: Decimal
    credit_allowed: bool
    balance: Decimal
    payment_terms_code: str = ""
    payment_method_code: str = ""
    salesperson_code: str = ""
    address: str = ""
    phone_no: str = ""
    email: str = ""

    @property
    def available_credit(self) -> Decimal:
        return self.credit_limit - self.balance

    @classmethod
    def from_payload(cls, payload: Mapping[str, Any]) -> "Customer":
        return cls(
            no=_text(payload, "no"),
            name=_text(payload, "name"),
            credit_limit=_decimal(payload, "creditLimitLCY"),
            credit_allowed=bool(payload.get("creditAllowed", False)),
            balance=_decimal(payload, "balanceLCY"),
            payment_terms_code=_text(payload, "paymentTermsCode"),
            payment_method_code=_text(payload, "paymentMethodCode"),
            salesperson_code=_text(payload, "salespersonCode"),
            address=_text(payload, "address"),
            phone_no=_text(payload, "phoneNo"),
            email=_text(payload, "eMail"),
        )


@dataclass(frozen=True)
class Location:
    code: str
    name: str

    @classmethod
    def from_payload(cls, payload: Mapping[str, Any]) -> "Location":
        return cls(code=_text(payload, "code"), name=_text(payload, "name"))


@dataclass(frozen=True)
class SalesPerson:
    code: str
    name: str
    email: str = ""
    phone_no: str = ""

    @classmethod
    def from_payload(cls, payload: Mapping[str, Any]) -> "SalesPerson":
        return cls(
            code=_text(payload, "code"),
            name=_text(payload, "name"),
            email=_text(payload, "eMail"),
            phone_no=_text(payload, "phoneNo"),
        )


@dataclass(frozen=True)
class ItemSubstitution:
    substitute_no: str
    description: str

    @classmethod
    def from_payload(cls, payload: Mapping[str, Any]) -> "ItemSubstitution":
        return cls(substitute_no=_text(payload, "substituteNo"), description=_text(payload, "description"))


@dataclass(frozen=True)
class Item:
    """Catalogue item, fetched with its substitutions expanded."""

    no: str
    description: str
    system_id: str = ""
    description2: str = ""
    unit_of_measure: str = ""
    size: str = ""
    reorder_quantity: Decimal = Decimal("0")
    reorder_point: Decimal = Decimal("0")
    item_category_code: str = ""
    parent_category_code: str = ""
    child_category_code: str = ""
    substitutions: tuple[ItemSubstitution, ...] = ()

    @classmethod
    def from_payload(cls, payload: Mapping[str, Any]) -> "Item":
        substitutions = tuple(
            ItemSubstitution.from_payload(entry) for entry in payload.get("itemsubstitutions") or ()
        )
        return cls(
            no=_text(payload, "no"),
            description=_text(payload, "description"),
            system_id=_text(payload, "systemId"),
            description2=_text(payload, "description2"),
            unit_of_measure=_text(payload, "unitOfMeasure"),
            size=_text(payload, "size"),
            reorder_quantity=_decimal(payload, "reorderQuantity"),
            reorder_point=_decimal(payload, "reorderPoint"),
            item_category_code=_text(payload, "itemCategoryCode"),
            parent_category_code=_text(payload, "parentCategoryCode"),
            child_category_code=_text(payload, "childCategoryCode"),
            substitutions=substitutions,
        )


@dataclass(frozen=True)
class InventoryBalance:
    item_no: str
    location_code: str
    inventory: Decimal

    @classmethod
    def from_payload(cls, payload: Mapping[str, Any]) -> "InventoryBalance":
        return cls(
            item_no=_text(payload, "itemNo"),
            location_code=_text(payload, "locationCode"),
            inventory=_decimal(payload, "inventory"),
        )


@dataclass(frozen=True)
class SalesPrice:
    item_no: str
    unit_price: Decimal
    unit_of_measure_code: str = ""

    @classmethod
    def from_payload(cls, payload: Mapping[str, Any]) -> "SalesPrice":
        return cls(
            item_no=_text(payload, "itemNo"),
            unit_price=_decimal(payload, "unitPrice"),
            unit_of_measure_code=_text(payload, "unitOfMeasureCode"),
        )


@dataclass(frozen=True)
class InvoiceLine:
    """One posted invoice line; ``order_no`` is the ERP's free-text reference."""

    document_no: str
    order_no: str
    item_no: str
    description: str
    quantity: Decimal
    unit_price: Decimal
    line_discount: Decimal
    line_no: int = 0
    customer_no: str = ""
    amount: Decimal = Decimal("0")

    @classmethod
    def from_payload(cls, payload: Mapping[str, Any]) -> "InvoiceLine":
        return cls(
            document_no=_text(payload, "documentNo"),
            order_no=_text(payload, "orderNo"),
            item_no=_text(payload, "no"),
            description=_text(payload, "description"),
            quantity=_decimal(payload, "quantity"),
            unit_price=_decimal(payload, "unitPrice"),
            line_discount=_decimal(payload, "lineDiscount"),
            line_no=_int(payload, "lineNo"),
            customer_no=_text(payload, "customerNo"),
            amount=_decimal(payload, "amount"),
        )


@dataclass(frozen=True)
class PostedInvoice:
    document_no: str
    order_no: str
    customer_no: str
    amount: Decimal
    remaining_amount: Decimal
    pdc_amount: Decimal
    lines: tuple[InvoiceLine, ...] = ()

    @classmethod
    def from_payload(cls, payload: Mapping[str, Any]) -> "PostedInvoice":
        return cls(
            document_no=_text(payload, "no"),
            order_no=_text(payload, "orderNo"),
            customer_no=_text(payload, "sellToCustomerNo"),
            amount=_decimal(payload, "amount"),
            remaining_amount=_decimal(payload, "remainingAmount"),
            pdc_amount=_decimal(payload, "pdcAmount"),
            lines=tuple(InvoiceLine.from_payload(line) for line in payload.get("postedInvoiceLines") or ()),
        )


@dataclass(frozen=True)
class SalesOrderLine:
    line_no: int
    item_no: str
    description: str
    location: str
    quantity: Decimal
    unit_price: Decimal
    line_discount: Decimal

    def to_payload(self) -> dict[str, Any]:
        return {
            "lineNo": self.line_no,
            "itemNo": self.item_no,
            "description": self.description,
            "location": self.location,
            "quantity": self.quantity,
            "unitPrice": self.unit_price,
            "lineDiscount": self.line_discount,
        }


@dataclass(frozen=True)
class SalesOrderPayload:
    """Body POSTed to ``salesIntegrations`` when an order starts processing."""

    order_no: str
    customer_no: str
    order_date: date
    salesperson_code: str
    payment_method_code: str
    payment_term_code: str
    lines: tuple[SalesOrderLine, ...] = field(default_factory=tuple)

    def to_payload(self) -> dict[str, Any]:
        return {
            "orderNo": self.order_no,
            "customerNo": self.customer_no,
            "orderDate": self.order_date.strftime("%Y-%m-%d"),
            "salespersonCode": self.salesperson_code,
            "paymentMethodCode": self.payment_method_code,
            "paymentTermCode": self.payment_term_code,
            "salesIntegrationLines": [line.to_payload() for line in self.lines],
        }


@dataclass(frozen=True)
class SalesIntegrationResponse:
    order_no: str
    customer_no: str = ""
    order_date: str = ""
    etag: str = ""

    @classmethod
    def from_payload(cls, payload: Mapping[str, Any]) -> "SalesIntegrationResponse":
        return cls(
            order_no=_text(payload, "orderNo"),
            customer_no=_text(payload, "customerNo"),
            order_date=_text(payload, "orderDate"),
            etag=_text(payload, "@odata.etag"),
        )


ORDER_REFERENCE_MISSING = "missing"
ORDER_REFERENCE_UNPARSABLE = "unparsable"


@dataclass(frozen=True)
class OrderReference:
    """Outcome of reading a local order number out of an ERP ``orderNo`` field.

    Exactly one of ``order_number`` and ``error`` is set.
    """

    raw: str
    order_number: Optional[int] = None
    error: Optional[str] = None

    @property
    def is_valid(self) -> bool:
        return self.order_number is not None

    def matches(self, order_number: int) -> bool:
        return self.order_number is not None and self.order_number == order_number


def parse_order_reference(raw: Optional[str]) -> OrderReference:
    """Parse the trimmed ``orderNo`` text as a plain integer.

    Blank text yields ``error="missing"``; anything that is not an optionally
    signed run of digits yields ``error="unparsable"``.
    """
    text = (raw or "").strip()
    if not text:
        return OrderReference(raw=raw or "", error=ORDER_REFERENCE_MISSING)
    digits = text[1:] if text[0] in "+-" else text
    if not digits.isascii() or not digits.isdigit():
        return OrderReference(raw=raw or "", error=ORDER_REFERENCE_UNPARSABLE)
    return OrderReference(raw=raw or "", order_number=int(text))


__all__ = [
    "Customer",
    "Location",
    "SalesPerson",
    "Item",
    "ItemSubstitution",
    "InventoryBalance",
    "SalesPrice",
    "InvoiceLine",
    "PostedInvoice",
    "SalesOrderLine",
    "SalesOrderPayload",
    "SalesIntegrationResponse",
    "OrderReference",
    "parse_order_reference",
    "ORDER_REFERENCE_MISSING",
    "ORDER_REFERENCE_UNPARSABLE",
]
