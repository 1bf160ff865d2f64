"""Credit and inventory checks run before an order is accepted.

Both checks read fresh ERP snapshots and never write anything. Each answers
with a :class:`~sales_portal.errors.ServiceResult` whose message is shown to
the user verbatim when the check fails.
"""

from __future__ import annotations

from decimal import Decimal
from typing import Sequence

from . import log
from .data_manager import OrderPolicy
from .erp_client import BusinessCentralClient
from .errors import ServiceResult, UpstreamUnavailable
from .schemas import OrderItemRequest


CREDIT_CHECK_FAILED = "Error during credit validation"
INVENTORY_CHECK_FAILED = "Error during inventory validation"


class OrderValidator:
    def __init__(self, directory: BusinessCentralClient, policy: OrderPolicy) -> None:
        self._directory = directory
        self._policy = policy

    async def validate_customer_credit(self, customer_code: str, order_total: Decimal) -> ServiceResult:
        """Check that ``customer_code`` may buy ``order_total`` on credit.

        The available-credit comparison only runs when the policy enforces
        credit limits.
        """
        try:
            customers = await self._directory.get_customers()
        except UpstreamUnavailable:
            log.exception("Customer fetch failed while validating credit for '%s'", customer_code)
            return ServiceResult.fail(CREDIT_CHECK_FAILED)

        if not customers:
            log.warning("Customer data not available from the ERP")
            return ServiceResult.fail("Customer data not available")

        customer = next((c for c in customers if c.no == customer_code), None)
        if customer is None:
            log.warning("Customer '%s' not found during credit validation", customer_code)
            return ServiceResult.fail(f"Customer {customer_code} not found")

        if not customer.credit_allowed:
            log.warning("Customer '%s' is not allowed credit purchases", customer_code)
            return ServiceResult.fail("Customer is not allowed credit purchases")

        if self._policy.enforce_credit_limit and order_total > customer.available_credit:
            log.warning(
                "Order total %s exceeds available credit %s for customer '%s'",
                order_total,
                customer.available_credit,
                customer_code,
            )
            return ServiceResult.fail(
                f"Order exceeds available credit (Limit: {customer.credit_limit}, "
                f"Balance: {customer.balance}, Order total: {order_total})"
            )

        return ServiceResult.ok("Credit validation passed")

    async def validate_inventory(self, items: Sequence[OrderItemRequest], location_code: str) -> ServiceResult:
        """Check every requested item against the stock held at ``location_code``.

        Validation stops at the first failing item. The on-hand quantity is
        only compared when the policy enforces stock quantities.
        """
        try:
            inventory = await self._directory.get_inventory()
        except UpstreamUnavailable:
            log.exception("Inventory fetch failed while validating location '%s'", location_code)
            return ServiceResult.fail(INVENTORY_CHECK_FAILED)

        if not inventory:
            log.warning("Inventory data not available from the ERP")
            return ServiceResult.fail("Inventory data not available")

        on_hand: dict[str, Decimal] = {}
        for balance in inventory:
            if balance.location_code == location_code:
                on_hand[balance.item_no] = on_hand.get(balance.item_no, Decimal("0")) + balance.inventory

        if not on_hand:
            log.warning("No inventory rows found for location '%s'", location_code)
            return ServiceResult.fail(f"No inventory data found for location: {location_code}")

        for item in items:
            available = on_hand.get(item.item_code)
            if available is None:
                log.warning("Item '%s' not stocked at location '%s'", item.item_code, location_code)
                return ServiceResult.fail(
                    f"Item {item.item_code} not found in inventory at location {location_code}"
                )
            if self._policy.enforce_stock_quantity and available < item.quantity:
                log.warning(
                    "Insufficient stock for item '%s' at '%s' (available=%s, requested=%s)",
                    item.item_code,
                    location_code,
                    available,
                    item.quantity,
                )
                return ServiceResult.fail(
                    f"Insufficient stock for item {item.item_code} "
                    f"(Available: {available}, Requested: {item.quantity})"
                )

        return ServiceResult.ok("Inventory validation passed")


__all__ = ["OrderValidator", "CREDIT_CHECK_FAILED", "INVENTORY_CHECK_FAILED"]
