"""Read-side projections joining stored orders with ERP snapshots.

The aggregator never writes. Each operation fetches the ERP collections it
needs concurrently, joins them in memory and answers with a
:class:`~sales_portal.errors.ServiceResult`. Joins between invoices and local
orders go through :func:`~sales_portal.erp_models.parse_order_reference`.
"""

from __future__ import annotations

import asyncio
from collections import defaultdict
from datetime import UTC, date, datetime
from decimal import Decimal
from typing import Dict, Iterable, List, Mapping, Optional, Sequence

from . import data_manager, log
from .constants import OrderStatus, Role, can_view_all_customers, can_view_all_orders
from .data_manager import OrderPolicy
from .erp_client import BusinessCentralClient
from .erp_models import (
    ORDER_REFERENCE_MISSING,
    ORDER_REFERENCE_UNPARSABLE,
    Customer,
    InventoryBalance,
    InvoiceLine,
    Item,
    Location,
    PostedInvoice,
    SalesPrice,
    parse_order_reference,
)
from .errors import ServiceResult
from .identity import UserDirectory, UserProfile
from .order_store import OrderStore
from .schemas import (
    CustomerInvoice,
    CustomerInvoiceReturn,
    CustomerWiseInvoices,
    InvoiceSummary,
    LocationByItemInventory,
    LocationSummary,
    OrderCreationDetails,
    OrderCustomer,
    OrderItemDetails,
    OrderItemReturn,
    OrderReturn,
    OrderStatusSummary,
    StockItem,
    SubstituteItem,
)


OPEN_STATUSES = (OrderStatus.PENDING, OrderStatus.PROCESSING)


def format_quantity(value: Decimal) -> str:
    """Render a quantity without a trailing ``.0`` for whole numbers."""
    if value == value.to_integral_value():
        return str(value.quantize(Decimal(1)))
    return str(value.normalize())


def format_stock(reorder_point: Decimal, inventory: Decimal) -> str:
    """Stock text shown to sales staff.

    Items with a reorder point never reveal stock above it; those show
    ``"{reorder_point}+"`` instead.
    """
    if reorder_point == 0 or inventory <= reorder_point:
        return format_quantity(inventory)
    return f"{format_quantity(reorder_point)}+"


def first_price_by_item(prices: Iterable[SalesPrice]) -> Dict[str, Decimal]:
    lookup: Dict[str, Decimal] = {}
    for price in prices:
        if price.item_no and price.item_no not in lookup:
            lookup[price.item_no] = price.unit_price
    return lookup


def group_invoice_lines(lines: Iterable[InvoiceLine]) -> Dict[int, List[InvoiceLine]]:
    """Index invoice lines by the local order number they reference.

    Lines with blank references are skipped silently; unparsable ones are
    counted and logged.
    """
    grouped: Dict[int, List[InvoiceLine]] = defaultdict(list)
    unparsable = 0
    for line in lines:
        reference = parse_order_reference(line.order_no)
        if reference.order_number is not None:
            grouped[reference.order_number].append(line)
        elif reference.error == ORDER_REFERENCE_UNPARSABLE:
            unparsable += 1
    if unparsable:
        log.warning("Skipped %d invoice line(s) with unparsable order references", unparsable)
    return grouped


def summarize_invoices(invoices: Iterable[PostedInvoice]) -> Dict[str, CustomerWiseInvoices]:
    """Group posted invoices per customer with due and PDC totals.

    Invoice dates are left unset; callers that display them resolve dates
    against the order store.
    """
    grouped: Dict[str, List[InvoiceSummary]] = defaultdict(list)
    for invoice in invoices:
        grouped[invoice.customer_no].append(
            InvoiceSummary(
                invoice_no=invoice.document_no,
                order_no=invoice.order_no or None,
                invoice_date=None,
                pdc_amount=invoice.pdc_amount,
                due_amount=invoice.remaining_amount,
                total_amount=invoice.amount,
            )
        )
    return {
        customer_no: CustomerWiseInvoices(
            customer_no=customer_no,
            total_due_amount=sum((s.due_amount for s in summaries), Decimal("0")),
            total_pdc_amount=sum((s.pdc_amount for s in summaries), Decimal("0")),
            invoices=summaries,
        )
        for customer_no, summaries in grouped.items()
    }


def _item_return(item: data_manager.OrderItemRow) -> OrderItemReturn:
    return OrderItemReturn(
        item_code=item.item_code,
        description=item.description,
        quantity=item.quantity,
        unit_price=item.unit_price,
        discount_percent=item.discount_percent,
    )


def _invoiced_item_return(line: InvoiceLine) -> OrderItemReturn:
    return OrderItemReturn(
        item_code=line.item_no,
        description=line.description,
        quantity=line.quantity,
        unit_price=line.unit_price,
        discount_percent=line.line_discount,
    )


class OrderReportingAggregator:
    """Builds order listings, summaries, invoice views and catalogue views."""

    def __init__(
        self,
        store: OrderStore,
        directory: BusinessCentralClient,
        users: UserDirectory,
        policy: OrderPolicy,
    ) -> None:
        self._store = store
        self._directory = directory
        self._users = users
        self._policy = policy

    @staticmethod
    def _today() -> date:
        return datetime.now(UTC).date()

    def _is_excluded(self, location_code: str) -> bool:
        return location_code in self._policy.excluded_locations

    async def _orders_visible_to(self, profile: UserProfile, status: OrderStatus) -> List[data_manager.OrderRow]:
        if profile.role is Role.SALES_COORDINATOR and self._policy.coordinator_location_scope:
            return await self._store.list_by_status_and_locations(profile.user.location_codes, status)
        if can_view_all_orders(profile.role):
            return await self._store.list_by_status(status)
        return await self._store.list_by_status_and_salesperson(profile.salesperson_code, status)

    async def _candidate_orders(self, profile: UserProfile, status: OrderStatus) -> List[data_manager.OrderRow]:
        statuses: Sequence[OrderStatus] = (status,)
        if self._policy.admin_merges_open_orders and profile.role is Role.ADMIN and status in OPEN_STATUSES:
            statuses = OPEN_STATUSES
        orders: List[data_manager.OrderRow] = []
        for candidate_status in statuses:
            orders.extend(await self._orders_visible_to(profile, candidate_status))
        return orders

    async def list_orders(self, user_id: int, status: OrderStatus) -> ServiceResult:
        """List the orders of ``status`` the user may see, fully joined.

        Admins and coordinators see every salesperson's orders; everyone else
        sees only orders stamped with their own salesperson code. Delivered
        orders carry the first matching invoice number and the invoiced lines.
        The store's ordering is preserved.
        """
        log.info("Listing %s orders for user %s", status.value, user_id)
        try:
            profile = await self._users.get_profile(user_id)
            if profile is None:
                log.warning("User %s not found while listing orders", user_id)
                return ServiceResult.fail("User not found")

            orders = await self._candidate_orders(profile, status)
            if not orders:
                log.info("No %s orders found for user %s", status.value, user_id)
                return ServiceResult.ok("No orders found", data=[])

            items = await self._store.list_items_by_order_numbers(order.order_number for order in orders)
            items_by_order: Dict[int, List[data_manager.OrderItemRow]] = defaultdict(list)
            for item in items:
                items_by_order[item.order_number].append(item)

            wants_invoices = status is OrderStatus.DELIVERED
            fetches = [
                self._directory.get_customers(),
                self._directory.get_sales_people(),
                self._directory.get_locations(),
            ]
            if wants_invoices:
                fetches.append(self._directory.get_invoice_lines())
            results = await asyncio.gather(*fetches)
            customers, sales_people, locations = results[:3]
            invoice_lines = group_invoice_lines(results[3]) if wants_invoices else {}

            customer_names = {c.no: c.name for c in customers}
            salesperson_names = {s.code: s.name for s in sales_people}
            location_names = {loc.code: loc.name for loc in locations}

            views = [
                self._order_view(
                    order,
                    items_by_order.get(order.order_number, []),
                    invoice_lines.get(order.order_number, []),
                    customer_names,
                    salesperson_names,
                    location_names,
                )
                for order in orders
            ]
        except Exception:
            log.exception("Failed to list %s orders for user %s", status.value, user_id)
            return ServiceResult.fail("Failed to retrieve orders. Please try again later.")

        log.info("Retrieved %d %s order(s) for user %s", len(views), status.value, user_id)
        return ServiceResult.ok("Orders retrieved", data=views)

    @staticmethod
    def _order_view(
        order: data_manager.OrderRow,
        items: Sequence[data_manager.OrderItemRow],
        invoice_lines: Sequence[InvoiceLine],
        customer_names: Mapping[str, str],
        salesperson_names: Mapping[str, str],
        location_names: Mapping[str, str],
    ) -> OrderReturn:
        delivered = order.status is OrderStatus.DELIVERED
        invoiced_items: Optional[List[OrderItemReturn]] = None
        invoice_number: Optional[str] = None
        if delivered and invoice_lines:
            invoice_number = invoice_lines[0].document_no
            invoiced_items = [_invoiced_item_return(line) for line in invoice_lines]

        return OrderReturn(
            order_number=order.order_number,
            customer_name=customer_names.get(order.customer_code, ""),
            salesperson_name=salesperson_names.get(order.salesperson_code, ""),
            location=location_names.get(order.location_code) or order.location_code,
            order_date=datetime.fromisoformat(order.order_date_iso),
            payment_method_type=order.payment_method_code,
            total_amount=order.total_amount,
            status=order.status,
            special_note=order.note or "",
            ordered_items=[_item_return(item) for item in items],
            version=order.version,
            invoice_number=invoice_number,
            invoiced_items=invoiced_items,
            reject_reason=order.reject_reason,
            delivery_date=order.delivery_date_iso if delivered else None,
            tracking_number=order.tracking_number if delivered else None,
            delivery_person_name=order.delivery_person_name if delivered else None,
        )

    async def order_status_summary(self, user_id: int) -> ServiceResult:
        """Count the user's visible Pending, Delivered and Rejected orders."""
        try:
            profile = await self._users.get_profile(user_id)
            if profile is None:
                log.warning("User %s not found while summarizing orders", user_id)
                return ServiceResult.fail("User not found")

            pending, delivered, rejected = await asyncio.gather(
                self._orders_visible_to(profile, OrderStatus.PENDING),
                self._orders_visible_to(profile, OrderStatus.DELIVERED),
                self._orders_visible_to(profile, OrderStatus.REJECTED),
            )
        except Exception:
            log.exception("Failed to summarize orders for user %s", user_id)
            return ServiceResult.fail("Failed to retrieve order status summary. Please try again later.")

        summary = OrderStatusSummary(
            pending_count=len(pending),
            delivered_count=len(delivered),
            rejected_count=len(rejected),
        )
        log.info(
            "Order summary for user %s: %d order(s) in total",
            user_id,
            summary.pending_count + summary.delivered_count + summary.rejected_count,
        )
        return ServiceResult.ok("Order status summary retrieved", data=summary)

    async def _order_dates(self, references: Iterable[Optional[int]]) -> Dict[int, date]:
        numbers = {number for number in references if number is not None}
        orders = await self._store.list_by_numbers(numbers)
        return {order.order_number: datetime.fromisoformat(order.order_date_iso).date() for order in orders}

    def _invoice_date(self, order_no: str, order_dates: Mapping[int, date]) -> Optional[date]:
        """Blank references have no date; unknown orders fall back to today."""
        reference = parse_order_reference(order_no)
        if reference.error == ORDER_REFERENCE_MISSING:
            return None
        if reference.order_number is None:
            return self._today()
        return order_dates.get(reference.order_number, self._today())

    @staticmethod
    def _customers_for(profile: UserProfile, customers: Sequence[Customer]) -> List[Customer]:
        if can_view_all_customers(profile.role):
            return list(customers)
        if profile.role is Role.SALES_PERSON:
            return [c for c in customers if c.salesperson_code == profile.salesperson_code]
        return []

    async def customer_invoices(self, user_id: int) -> ServiceResult:
        """Posted invoices of the customers the user may see, with total due."""
        log.info("Retrieving customer invoices for user %s", user_id)
        try:
            profile = await self._users.get_profile(user_id)
            if profile is None:
                log.warning("User %s not found while retrieving invoices", user_id)
                return ServiceResult.fail("User not found")

            customers, invoices = await asyncio.gather(
                self._directory.get_customers(),
                self._directory.get_posted_invoices(),
            )
            visible = self._customers_for(profile, customers)
            if not visible:
                return ServiceResult.ok(
                    "No customers assigned",
                    data=CustomerInvoiceReturn(total_due_amount=Decimal("0"), customer_invoices=[]),
                )

            customer_names = {c.no: c.name for c in visible}
            relevant = [invoice for invoice in invoices if invoice.customer_no in customer_names]
            order_dates = await self._order_dates(
                parse_order_reference(invoice.order_no).order_number for invoice in relevant
            )
            rows = [
                CustomerInvoice(
                    customer_code=invoice.customer_no,
                    customer_name=customer_names.get(invoice.customer_no, ""),
                    invoice_document_no=invoice.document_no,
                    invoice_date=self._invoice_date(invoice.order_no, order_dates),
                    invoiced_amount=invoice.amount,
                    due_amount=invoice.remaining_amount,
                )
                for invoice in relevant
            ]
        except Exception:
            log.exception("Failed to retrieve invoices for user %s", user_id)
            return ServiceResult.fail("Failed to retrieve invoices. Please try again later.")

        total_due = sum((row.due_amount for row in rows), Decimal("0"))
        log.info("Retrieved %d invoice(s) for user %s", len(rows), user_id)
        return ServiceResult.ok(
            "Customer invoices retrieved",
            data=CustomerInvoiceReturn(total_due_amount=total_due, customer_invoices=rows),
        )

    async def customer_invoice_details(self, customer_code: str) -> ServiceResult:
        """Open invoices (due above zero) of one customer with recomputed totals.

        A customer without invoices is not an error: ``data`` is ``None``.
        """
        log.info("Retrieving invoice details for customer '%s'", customer_code)
        try:
            summaries = summarize_invoices(await self._directory.get_posted_invoices())
            customer = summaries.get(customer_code)
            if customer is None:
                log.warning("No invoices found for customer '%s'", customer_code)
                return ServiceResult.ok("No invoices found", data=None)

            open_invoices = [inv for inv in customer.invoices if inv.due_amount > 0]
            order_dates = await self._order_dates(
                parse_order_reference(inv.order_no).order_number for inv in open_invoices
            )
            dated = [
                InvoiceSummary(
                    invoice_no=inv.invoice_no,
                    order_no=inv.order_no,
                    invoice_date=self._invoice_date(inv.order_no or "", order_dates),
                    pdc_amount=inv.pdc_amount,
                    due_amount=inv.due_amount,
                    total_amount=inv.total_amount,
                )
                for inv in open_invoices
            ]
        except Exception:
            log.exception("Failed to retrieve invoices for customer '%s'", customer_code)
            return ServiceResult.fail(
                f"Failed to retrieve customer-wise invoices for customer {customer_code}. Please try again later."
            )

        return ServiceResult.ok(
            "Customer invoices retrieved",
            data=CustomerWiseInvoices(
                customer_no=customer_code,
                total_due_amount=sum((inv.due_amount for inv in dated), Decimal("0")),
                total_pdc_amount=sum((inv.pdc_amount for inv in dated), Decimal("0")),
                invoices=dated,
            ),
        )

    async def sales_stock_details(self) -> ServiceResult:
        """Stock per item and location, for every non-excluded location."""
        log.info("Retrieving sales stock details")
        try:
            inventory, items, prices, locations = await asyncio.gather(
                self._directory.get_inventory(),
                self._directory.get_items(),
                self._directory.get_sales_prices(),
                self._directory.get_locations(),
            )
            balances: Dict[tuple[str, str], InventoryBalance] = {}
            for balance in inventory:
                if balance.item_no and balance.location_code:
                    balances.setdefault((balance.item_no, balance.location_code), balance)
            price_lookup = first_price_by_item(prices)
            shown_locations = [loc for loc in locations if loc.code and not self._is_excluded(loc.code)]

            stock = [
                StockItem(
                    item_code=item.no,
                    item_name=item.description,
                    location=location.name or location.code,
                    stock=format_stock(item.reorder_point, balances[(item.no, location.code)].inventory),
                    unit_price=price_lookup.get(item.no, Decimal("0")),
                    item_category=item.item_category_code,
                    category=item.parent_category_code,
                    sub_category=item.child_category_code,
                    description=item.description,
                    description2=item.description2,
                    unit_of_measure=item.unit_of_measure,
                    size=item.size,
                    reorder_quantity=item.reorder_quantity,
                )
                for item in items
                if item.no
                for location in shown_locations
                if (item.no, location.code) in balances
            ]
        except Exception:
            log.exception("Failed to retrieve stock details")
            return ServiceResult.fail("Failed to retrieve stock details. Please try again later.")

        log.info("Retrieved %d stock item(s)", len(stock))
        return ServiceResult.ok("Stock details retrieved", data=stock)

    async def order_creation_details(self, user_id: int) -> ServiceResult:
        """Locations, customers and items a user may put on a new order.

        Admins see everything. Other users see their assigned locations, the
        customers carrying their salesperson code and the items in stock at
        their locations.
        """
        log.info("Retrieving order creation details for user %s", user_id)
        try:
            profile = await self._users.get_profile(user_id)
            if profile is None:
                log.warning("User %s not found while building order creation details", user_id)
                return ServiceResult.fail("User not found")

            is_admin = profile.role is Role.ADMIN
            assigned = set(profile.user.location_codes)
            if not is_admin and not assigned:
                log.warning("User %s has no locations assigned", user_id)
                return ServiceResult.fail("User has no locations assigned.")

            locations, customers, items, prices, inventory, invoices = await asyncio.gather(
                self._directory.get_locations(),
                self._directory.get_customers(),
                self._directory.get_items(),
                self._directory.get_sales_prices(),
                self._directory.get_inventory(),
                self._directory.get_posted_invoices(),
            )
            for kind, collection in (("location", locations), ("customer", customers), ("item", items)):
                if not collection:
                    log.warning("%s data not available", kind.capitalize())
                    return ServiceResult.fail(f"No {kind} data found.")

            if is_admin:
                shown_locations: Sequence[Location] = locations
                shown_customers: Sequence[Customer] = customers
                shown_inventory: Sequence[InventoryBalance] = inventory
                shown_items: Sequence[Item] = items
            else:
                shown_locations = [loc for loc in locations if loc.code in assigned]
                if not shown_locations:
                    log.warning("None of user %s's locations exist in the ERP", user_id)
                    return ServiceResult.fail("No valid location data found for user.")
                shown_customers = [c for c in customers if c.salesperson_code == profile.salesperson_code]
                shown_inventory = [b for b in inventory if b.location_code in assigned and b.inventory > 0]
                stocked = {b.item_no for b in shown_inventory}
                shown_items = [item for item in items if item.no in stocked]

            due_lookup = {code: cwi.total_due_amount for code, cwi in summarize_invoices(invoices).items()}
            details = OrderCreationDetails(
                locations=[
                    LocationSummary(location_code=loc.code, location_name=loc.name)
                    for loc in shown_locations
                    if not self._is_excluded(loc.code)
                ],
                customers=[self._order_customer(c, due_lookup) for c in shown_customers],
                items=self._item_details(shown_items, first_price_by_item(prices), shown_inventory),
            )
        except Exception:
            log.exception("Failed to retrieve order creation details for user %s", user_id)
            return ServiceResult.fail("Error while retrieving order creation details")

        log.info(
            "Order creation details for user %s: %d location(s), %d customer(s), %d item(s)",
            user_id,
            len(details.locations),
            len(details.customers),
            len(details.items),
        )
        return ServiceResult.ok("Order creation details retrieved", data=details)

    @staticmethod
    def _order_customer(customer: Customer, due_lookup: Mapping[str, Decimal]) -> OrderCustomer:
        return OrderCustomer(
            customer_code=customer.no,
            customer_name=customer.name,
            due_amount=due_lookup.get(customer.no, Decimal("0")),
            credit_allowed=customer.credit_allowed,
            credit_limit=customer.credit_limit,
            balance_credit=customer.balance,
            payment_term_code=customer.payment_terms_code,
            payment_method_code=customer.payment_method_code,
        )

    @staticmethod
    def _item_details(
        items: Sequence[Item],
        price_lookup: Mapping[str, Decimal],
        inventory: Sequence[InventoryBalance],
    ) -> List[OrderItemDetails]:
        by_item: Dict[str, List[InventoryBalance]] = defaultdict(list)
        for balance in inventory:
            by_item[balance.item_no].append(balance)

        details: List[OrderItemDetails] = []
        for item in items:
            substitute: Optional[SubstituteItem] = None
            if item.substitutions:
                first = item.substitutions[0]
                substitute = SubstituteItem(
                    item_code=first.substitute_no,
                    item_name=first.description,
                    unit_price=price_lookup.get(first.substitute_no, Decimal("0")),
                )
            details.append(
                OrderItemDetails(
                    item_code=item.no,
                    item_name=item.description,
                    unit_price=price_lookup.get(item.no, Decimal("0")),
                    location_wise_inventory=[
                        LocationByItemInventory(location_code=b.location_code, inventory=format_quantity(b.inventory))
                        for b in by_item.get(item.no, [])
                    ],
                    substitute_item=substitute,
                )
            )
        return details


__all__ = [
    "OrderReportingAggregator",
    "format_quantity",
    "format_stock",
    "first_price_by_item",
    "group_invoice_lines",
    "summarize_invoices",
]
