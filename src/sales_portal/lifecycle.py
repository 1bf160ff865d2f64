"""Order lifecycle engine: submission, status transitions and reconciliation.

An order moves ``Pending -> Processing -> Delivered`` and may be rejected from
either of the first two states. ``Delivered`` additionally requires a posted
ERP invoice line whose ``orderNo`` parses to the order number, and an order
only becomes ``Processing`` once the ERP has accepted the sales order.

Public operations answer with :class:`~sales_portal.errors.ServiceResult`;
domain exceptions raised below them are translated at the method boundary.
"""

from __future__ import annotations

import asyncio
import weakref
from dataclasses import replace
from datetime import UTC, datetime
from decimal import Decimal
from typing import Mapping, Optional

from . import data_manager, log
from .constants import OrderStatus
from .erp_client import BusinessCentralClient
from .erp_models import (
    ORDER_REFERENCE_UNPARSABLE,
    SalesIntegrationResponse,
    SalesOrderLine,
    SalesOrderPayload,
    parse_order_reference,
)
from .errors import (
    ConcurrencyConflict,
    InconsistentState,
    NotFoundError,
    ServiceResult,
    UpstreamUnavailable,
    ValidationFailed,
)
from .identity import UserDirectory
from .order_store import OrderStore
from .schemas import OrderRequest, UpdateOrderRequest
from .validation import OrderValidator


TRANSITIONS: Mapping[OrderStatus, tuple[OrderStatus, ...]] = {
    OrderStatus.PENDING: (OrderStatus.PROCESSING, OrderStatus.REJECTED),
    OrderStatus.PROCESSING: (OrderStatus.DELIVERED, OrderStatus.REJECTED),
    OrderStatus.DELIVERED: (),
    OrderStatus.REJECTED: (),
}

SUBMIT_FAILED = "Order submission failed. Please try again."
UPDATE_FAILED = "Unexpected error updating order status."


def allowed_next_statuses(status: OrderStatus) -> tuple[OrderStatus, ...]:
    """Return the statuses reachable from ``status`` in one step."""
    return TRANSITIONS.get(status, ())


def is_valid_transition(current: OrderStatus, new: OrderStatus) -> bool:
    return new in allowed_next_statuses(current)


def describe_invalid_transition(current: OrderStatus, new: OrderStatus) -> str:
    allowed = ", ".join(status.value for status in allowed_next_statuses(current)) or "none"
    return (
        f"Invalid status transition from {current.value} to {new.value}. "
        f"Allowed next statuses: {allowed}"
    )


def require_valid_order_request(request: OrderRequest) -> None:
    """Validate the shape of a submission before the ERP is consulted.

    Raises:
        ValidationFailed: If the order has no lines, a non-positive total, or a
            line with a non-positive quantity, a negative unit price, or a
            discount outside ``0..100``.
    """
    if not request.customer_code or not request.location_code:
        raise ValidationFailed("Customer and location are required")
    if not request.items:
        raise ValidationFailed("At least one order item is required")
    if request.total_amount <= Decimal("0"):
        raise ValidationFailed("Order total must be greater than zero")
    for item in request.items:
        if item.quantity <= Decimal("0"):
            raise ValidationFailed(f"Quantity for item {item.item_code} must be greater than zero")
        if item.unit_price < Decimal("0"):
            raise ValidationFailed(f"Unit price for item {item.item_code} cannot be negative")
        if not Decimal("0") <= item.discount_percent <= Decimal("100"):
            raise ValidationFailed(f"Discount for item {item.item_code} must be between 0 and 100")


def require_valid_status_request(request: UpdateOrderRequest) -> None:
    """Check that the request carries exactly the fields its target status uses.

    Raises:
        ValidationFailed: If delivery details are missing for ``Delivered``,
            supplied for any other status, or a reject reason accompanies a
            status other than ``Rejected``.
    """
    if request.status is OrderStatus.DELIVERED:
        if not (request.tracking_number or "").strip() or not (request.delivery_person_name or "").strip() or request.delivery_date is None:
            raise ValidationFailed(
                "Tracking number, delivery person name and delivery date are required to mark an order as Delivered."
            )
    elif request.has_delivery_details:
        raise ValidationFailed("Delivery details can only be supplied when marking an order as Delivered.")

    if request.reject_reason and request.status is not OrderStatus.REJECTED:
        raise ValidationFailed("A reject reason can only be supplied when rejecting an order.")


async def check_invoiced(directory: BusinessCentralClient, order: data_manager.OrderRow) -> bool:
    """Return ``True`` when a posted invoice line references ``order``.

    ``False`` means "cannot confirm": the line list may be empty, contain no
    match, or be unreachable. Unparsable references are logged apart from the
    plain no-match case.
    """
    try:
        lines = await directory.get_invoice_lines()
    except Exception:
        log.exception("Invoice line fetch failed while checking order %s", order.order_number)
        return False

    if not lines:
        log.warning("No posted invoice lines available while checking order %s", order.order_number)
        return False

    unparsable = 0
    for line in lines:
        reference = parse_order_reference(line.order_no)
        if reference.matches(order.order_number):
            log.info("Order %s is invoiced on document '%s'", order.order_number, line.document_no)
            return True
        if reference.error == ORDER_REFERENCE_UNPARSABLE:
            unparsable += 1
            log.debug("Invoice '%s' carries unparsable order reference '%s'", line.document_no, line.order_no)

    if unparsable:
        log.warning(
            "%d invoice line(s) carry unparsable order references while checking order %s",
            unparsable,
            order.order_number,
        )
    log.warning("No posted invoice found for order %s", order.order_number)
    return False


async def post_order_to_erp(
    directory: BusinessCentralClient,
    store: OrderStore,
    order: data_manager.OrderRow,
) -> SalesIntegrationResponse:
    """Push ``order`` and its lines to the ERP's ``salesIntegrations`` endpoint.

    Payment method and payment terms come from the current customer snapshot.

    Raises:
        NotFoundError: If the customer or the location is unknown to the ERP.
        UpstreamUnavailable: If a lookup or the POST itself fails.
    """
    customers, locations = await asyncio.gather(directory.get_customers(), directory.get_locations())

    customer = next((c for c in customers if c.no == order.customer_code), None)
    if customer is None:
        log.warning("Customer '%s' not found in the ERP while pushing order %s", order.customer_code, order.order_number)
        raise NotFoundError(f"Customer {order.customer_code} not found in external API.")

    location = next((loc for loc in locations if loc.code == order.location_code), None)
    if location is None:
        log.warning("Location '%s' not found in the ERP while pushing order %s", order.location_code, order.order_number)
        raise NotFoundError(f"Location {order.location_code} not found in external API.")

    items = await store.list_items(order.order_number)
    payload = SalesOrderPayload(
        order_no=str(order.order_number),
        customer_no=order.customer_code,
        order_date=datetime.fromisoformat(order.order_date_iso).date(),
        salesperson_code=order.salesperson_code,
        payment_method_code=customer.payment_method_code,
        payment_term_code=customer.payment_terms_code,
        lines=tuple(
            SalesOrderLine(
                line_no=item.order_item_id,
                item_no=item.item_code,
                description=item.description,
                location=location.code,
                quantity=item.quantity,
                unit_price=item.unit_price,
                line_discount=item.discount_percent,
            )
            for item in items
        ),
    )
    return await directory.post_sales_order(payload)


class OrderLifecycleEngine:
    """Coordinates submissions and status changes against store and ERP."""

    def __init__(
        self,
        store: OrderStore,
        directory: BusinessCentralClient,
        users: UserDirectory,
        validator: OrderValidator,
    ) -> None:
        self._store = store
        self._directory = directory
        self._users = users
        self._validator = validator
        # An entry lives only while some update holds or awaits its lock.
        self._order_locks: weakref.WeakValueDictionary[int, asyncio.Lock] = weakref.WeakValueDictionary()

    def _lock_for(self, order_number: int) -> asyncio.Lock:
        lock = self._order_locks.get(order_number)
        if lock is None:
            lock = asyncio.Lock()
            self._order_locks[order_number] = lock
        return lock

    async def submit_order(self, user_id: int, request: OrderRequest) -> ServiceResult:
        """Validate and store a new ``Pending`` order with its lines.

        Credit is always checked before inventory; a failed check is returned
        verbatim and nothing is written. On success ``data`` holds the new
        order number.
        """
        log.info("Submitting order for user %s, customer '%s'", user_id, request.customer_code)
        try:
            user = await self._users.get_user_by_id(user_id)
            if user is None:
                log.warning("User %s not found while submitting an order", user_id)
                return ServiceResult.fail("User not found")

            require_valid_order_request(request)

            credit = await self._validator.validate_customer_credit(request.customer_code, request.total_amount)
            if not credit.success:
                return credit

            stock = await self._validator.validate_inventory(request.items, request.location_code)
            if not stock.success:
                return stock

            order = data_manager.OrderRow(
                order_number=0,
                customer_code=request.customer_code,
                location_code=request.location_code,
                order_date_iso=datetime.now(UTC).isoformat(),
                status=OrderStatus.PENDING,
                total_amount=request.total_amount,
                salesperson_code=user.salesperson_code,
                payment_method_code=request.payment_method_code,
                note=request.special_note,
            )
            order_number = await self._store.add_order_with_items(
                order,
                [
                    data_manager.OrderItemRow(
                        order_item_id=0,
                        order_number=0,
                        item_code=item.item_code,
                        description=item.description,
                        quantity=item.quantity,
                        unit_price=item.unit_price,
                        discount_percent=item.discount_percent,
                    )
                    for item in request.items
                ],
            )
        except ValidationFailed as exc:
            log.warning("Rejected order submission for user %s: %s", user_id, exc)
            return ServiceResult.fail(str(exc))
        except Exception:
            log.exception("Order submission failed for user %s", user_id)
            return ServiceResult.fail(SUBMIT_FAILED)

        log.info("Order %s submitted by user %s", order_number, user_id)
        return ServiceResult.ok("Order submitted successfully", data=order_number)

    async def update_order_status(self, request: UpdateOrderRequest) -> ServiceResult:
        """Move an order to ``request.status`` if the transition is legal.

        Updates for one order number run one at a time. The stored status is
        left untouched whenever the result is a failure.
        """
        order_number = request.order_number
        log.info("Updating order %s to %s", order_number, request.status.value)
        async with self._lock_for(order_number):
            try:
                return await self._apply_status_update(request)
            except (NotFoundError, ValidationFailed, ConcurrencyConflict, InconsistentState) as exc:
                log.warning("Status update for order %s refused: %s", order_number, exc)
                return ServiceResult.fail(str(exc))
            except Exception:
                log.exception("Unexpected error updating order %s", order_number)
                return ServiceResult.fail(UPDATE_FAILED)

    async def _apply_status_update(self, request: UpdateOrderRequest) -> ServiceResult:
        order_number = request.order_number
        order = await self._store.get_order(order_number)
        if order is None:
            raise NotFoundError(f"Order {order_number} not found.")

        if request.expected_version is not None and request.expected_version != order.version:
            raise ConcurrencyConflict(
                f"Order {order_number} was modified by another request. Reload and try again."
            )

        if order.status is request.status:
            raise ValidationFailed(f"Order {order_number} is already {order.status.value}.")
        if not is_valid_transition(order.status, request.status):
            raise ValidationFailed(describe_invalid_transition(order.status, request.status))

        require_valid_status_request(request)

        if request.status is OrderStatus.DELIVERED:
            return await self._deliver(order, request)
        if request.status is OrderStatus.PROCESSING:
            return await self._start_processing(order)
        return await self._reject(order, request)

    async def _deliver(self, order: data_manager.OrderRow, request: UpdateOrderRequest) -> ServiceResult:
        if not await check_invoiced(self._directory, order):
            raise InconsistentState(
                f"Order {order.order_number} cannot be updated to Delivered status as it is not invoiced."
            )

        delivered = replace(
            order,
            status=OrderStatus.DELIVERED,
            tracking_number=request.tracking_number,
            delivery_person_name=request.delivery_person_name,
            delivery_date_iso=request.delivery_date.isoformat() if request.delivery_date else None,
            note=request.note if request.note is not None else order.note,
        )
        stored = await self._store.update_order(delivered, expected_version=order.version)
        log.info("Order %s marked as Delivered after invoice check", order.order_number)
        return ServiceResult.ok("Order status updated to Delivered.", data=stored.version)

    async def _start_processing(self, order: data_manager.OrderRow) -> ServiceResult:
        try:
            await post_order_to_erp(self._directory, self._store, order)
        except UpstreamUnavailable:
            log.exception("Failed to send order %s to the ERP; it stays %s", order.order_number, order.status.value)
            return ServiceResult.fail(f"Failed to send Order {order.order_number} to external API.")

        try:
            stored = await self._store.update_order(
                replace(order, status=OrderStatus.PROCESSING), expected_version=order.version
            )
        except ConcurrencyConflict as exc:
            log.error("Order %s was posted to the ERP but changed locally before it could be marked Processing", order.order_number)
            raise InconsistentState(
                f"Order {order.order_number} was sent to external API but changed locally before it "
                "could be marked Processing. Reload and try again."
            ) from exc
        log.info("Order %s posted to the ERP and marked Processing", order.order_number)
        return ServiceResult.ok("Order status updated successfully.", data=stored.version)

    async def _reject(self, order: data_manager.OrderRow, request: UpdateOrderRequest) -> ServiceResult:
        reason: Optional[str] = (request.reject_reason or "").strip() or None
        if reason is None:
            log.warning("Order %s rejected without a reason", order.order_number)
        stored = await self._store.update_order(
            replace(order, status=OrderStatus.REJECTED, reject_reason=reason),
            expected_version=order.version,
        )
        log.info("Order %s rejected", order.order_number)
        return ServiceResult.ok("Order status updated successfully.", data=stored.version)


__all__ = [
    "OrderLifecycleEngine",
    "TRANSITIONS",
    "allowed_next_statuses",
    "is_valid_transition",
    "describe_invalid_transition",
    "require_valid_order_request",
    "require_valid_status_request",
    "check_invoiced",
    "post_order_to_erp",
]
