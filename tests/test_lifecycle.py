"""Tests for order submission, status transitions and invoice reconciliation."""

from __future__ import annotations

import asyncio
from dataclasses import replace
from datetime import date
from decimal import Decimal

import pytest

from sales_portal import data_manager, lifecycle
from sales_portal.constants import OrderStatus
from sales_portal.erp_models import Customer, InventoryBalance, InvoiceLine, Location
from sales_portal.errors import ConcurrencyConflict, UpstreamUnavailable
from sales_portal.schemas import OrderItemRequest, OrderRequest, UpdateOrderRequest


def _invoice_line(order_no: str, document_no: str = "INV-1") -> InvoiceLine:
    return InvoiceLine(
        document_no=document_no,
        order_no=order_no,
        item_no="ITEM-1",
        description="Widget",
        quantity=Decimal("2"),
        unit_price=Decimal("50"),
        line_discount=Decimal("0"),
    )


def _order_request(**overrides) -> OrderRequest:
    values = {
        "customer_code": "C1",
        "location_code": "L1",
        "payment_method_code": "CASH",
        "total_amount": Decimal("100"),
        "items": (
            OrderItemRequest(
                item_code="ITEM-1",
                description="Widget",
                quantity=Decimal("2"),
                unit_price=Decimal("50"),
            ),
        ),
        "special_note": "ring twice",
    }
    values.update(overrides)
    return OrderRequest(**values)


def _delivered_request(order_number: int = 1, **overrides) -> UpdateOrderRequest:
    values = {
        "order_number": order_number,
        "status": OrderStatus.DELIVERED,
        "tracking_number": "TRK-1",
        "delivery_person_name": "Dana",
        "delivery_date": date(2026, 2, 1),
    }
    values.update(overrides)
    return UpdateOrderRequest(**values)


@pytest.fixture
def erp_world(fake_directory):
    """ERP data under which order 1 for customer C1 at L1 can be accepted."""

    fake_directory.customers = [
        Customer(
            no="C1",
            name="Acme",
            credit_limit=Decimal("1000"),
            credit_allowed=True,
            balance=Decimal("0"),
            payment_terms_code="30D",
            payment_method_code="BANK",
        )
    ]
    fake_directory.locations = [Location(code="L1", name="Main warehouse")]
    fake_directory.inventory = [InventoryBalance(item_no="ITEM-1", location_code="L1", inventory=Decimal("10"))]
    return fake_directory


@pytest.fixture
def stored_order(run, store, order_row_factory):
    """Store an order with one line and return a helper that moves it to ``status``."""

    def _store(status: OrderStatus = OrderStatus.PENDING) -> data_manager.OrderRow:
        number = run(store.add_order(order_row_factory()))
        run(
            store.add_order_items(
                [
                    data_manager.OrderItemRow(
                        order_item_id=0,
                        order_number=number,
                        item_code="ITEM-1",
                        description="Widget",
                        quantity=Decimal("2"),
                        unit_price=Decimal("50"),
                        discount_percent=Decimal("0"),
                    )
                ]
            )
        )
        order = run(store.get_order(number))
        if status is not OrderStatus.PENDING:
            order = run(store.update_order(replace(order, status=status)))
        return order

    return _store


# ---------------------------------------------------------------------------
# Transition table
# ---------------------------------------------------------------------------


@pytest.mark.parametrize(
    ("current", "new", "expected"),
    [
        (OrderStatus.PENDING, OrderStatus.PROCESSING, True),
        (OrderStatus.PENDING, OrderStatus.REJECTED, True),
        (OrderStatus.PENDING, OrderStatus.DELIVERED, False),
        (OrderStatus.PROCESSING, OrderStatus.DELIVERED, True),
        (OrderStatus.PROCESSING, OrderStatus.REJECTED, True),
        (OrderStatus.PROCESSING, OrderStatus.PENDING, False),
        (OrderStatus.DELIVERED, OrderStatus.REJECTED, False),
        (OrderStatus.REJECTED, OrderStatus.PENDING, False),
    ],
)
def test_is_valid_transition(current, new, expected):
    assert lifecycle.is_valid_transition(current, new) is expected


def test_terminal_statuses_allow_nothing():
    assert lifecycle.allowed_next_statuses(OrderStatus.DELIVERED) == ()
    assert lifecycle.allowed_next_statuses(OrderStatus.REJECTED) == ()


# ---------------------------------------------------------------------------
# Submission
# ---------------------------------------------------------------------------


def test_submit_order_stores_pending_order_and_lines(run, engine, store, seeded_users, erp_world):
    result = run(engine.submit_order(seeded_users["sam"], _order_request()))

    assert result.success
    assert result.message == "Order submitted successfully"
    assert result.data == 1
    order = run(store.get_order(1))
    assert order.status is OrderStatus.PENDING
    assert order.salesperson_code == "SP01"
    assert order.note == "ring twice"
    assert [item.item_code for item in run(store.list_items(1))] == ["ITEM-1"]


def test_submit_order_checks_credit_before_inventory(run, engine, store, seeded_users, erp_world):
    erp_world.customers = [replace(erp_world.customers[0], credit_allowed=False)]

    result = run(engine.submit_order(seeded_users["sam"], _order_request()))

    assert result.message == "Customer is not allowed credit purchases"
    assert "inventory" not in erp_world.calls
    assert run(store.list_by_status(OrderStatus.PENDING)) == []


def test_submit_order_inventory_failure_writes_nothing(run, engine, store, seeded_users, erp_world):
    erp_world.inventory = [InventoryBalance(item_no="ITEM-9", location_code="L1", inventory=Decimal("1"))]

    result = run(engine.submit_order(seeded_users["sam"], _order_request()))

    assert result.message == "Item ITEM-1 not found in inventory at location L1"
    assert erp_world.calls == ["customers", "inventory"]
    assert run(store.list_by_status(OrderStatus.PENDING)) == []


def test_submit_order_unknown_user(run, engine, erp_world):
    result = run(engine.submit_order(404, _order_request()))

    assert not result.success
    assert result.message == "User not found"
    assert erp_world.calls == []


@pytest.mark.parametrize(
    ("overrides", "message"),
    [
        ({"items": ()}, "At least one order item is required"),
        ({"total_amount": Decimal("0")}, "Order total must be greater than zero"),
        ({"customer_code": ""}, "Customer and location are required"),
    ],
)
def test_submit_order_rejects_malformed_requests(run, engine, seeded_users, erp_world, overrides, message):
    result = run(engine.submit_order(seeded_users["sam"], _order_request(**overrides)))

    assert not result.success
    assert result.message == message


def test_submit_order_store_failure_leaves_no_order(run, engine, store, seeded_users, erp_world, monkeypatch):
    def broken(workbook, record):
        raise OSError("disk full")

    monkeypatch.setattr(data_manager, "append_order_item", broken)

    result = run(engine.submit_order(seeded_users["sam"], _order_request()))

    assert result.message == lifecycle.SUBMIT_FAILED
    assert run(store.get_order(1)) is None
    assert run(store.list_items(1)) == []


def test_submit_order_unknown_user_wins_over_malformed_request(run, engine, erp_world):
    result = run(engine.submit_order(404, _order_request(items=())))

    assert result.message == "User not found"


# ---------------------------------------------------------------------------
# Status updates
# ---------------------------------------------------------------------------


def test_pending_to_delivered_lists_allowed_statuses(run, engine, store, stored_order):
    stored_order()

    result = run(engine.update_order_status(_delivered_request()))

    assert not result.success
    assert result.message == (
        "Invalid status transition from Pending to Delivered. Allowed next statuses: Processing, Rejected"
    )
    assert run(store.get_order(1)).status is OrderStatus.PENDING


def test_processing_posts_order_to_erp(run, engine, store, stored_order, erp_world):
    stored_order()

    result = run(engine.update_order_status(UpdateOrderRequest(order_number=1, status=OrderStatus.PROCESSING)))

    assert result.success
    assert result.message == "Order status updated successfully."
    assert result.data == 2
    [payload] = erp_world.posted
    assert payload.order_no == "1"
    assert payload.order_date == date(2026, 1, 15)
    assert payload.payment_method_code == "BANK"
    assert payload.payment_term_code == "30D"
    assert [(line.item_no, line.location) for line in payload.lines] == [("ITEM-1", "L1")]
    assert run(store.get_order(1)).status is OrderStatus.PROCESSING


def test_failed_push_leaves_order_pending(run, engine, store, stored_order, erp_world):
    stored_order()
    erp_world.failures["post_sales_order"] = UpstreamUnavailable("API post failed. Status: 500", status_code=500)

    result = run(engine.update_order_status(UpdateOrderRequest(order_number=1, status=OrderStatus.PROCESSING)))

    assert result.message == "Failed to send Order 1 to external API."
    assert run(store.get_order(1)).status is OrderStatus.PENDING


def test_conflict_after_push_is_reported(run, engine, store, stored_order, erp_world, monkeypatch):
    stored_order()

    async def conflicting(order, *, expected_version=None):
        raise ConcurrencyConflict("Order 1 has version 3, expected 1.")

    monkeypatch.setattr(store, "update_order", conflicting)

    result = run(engine.update_order_status(UpdateOrderRequest(order_number=1, status=OrderStatus.PROCESSING)))

    assert not result.success
    assert result.message.startswith("Order 1 was sent to external API but changed locally")
    assert len(erp_world.posted) == 1


def test_push_requires_customer_in_erp(run, engine, store, stored_order, erp_world):
    stored_order()
    erp_world.customers = []

    result = run(engine.update_order_status(UpdateOrderRequest(order_number=1, status=OrderStatus.PROCESSING)))

    assert result.message == "Customer C1 not found in external API."
    assert erp_world.posted == []
    assert run(store.get_order(1)).status is OrderStatus.PENDING


def test_delivered_requires_matching_invoice(run, engine, store, stored_order, erp_world):
    stored_order(OrderStatus.PROCESSING)
    erp_world.invoice_lines = [_invoice_line("abc"), _invoice_line("11"), _invoice_line("")]

    result = run(engine.update_order_status(_delivered_request()))

    assert result.message == "Order 1 cannot be updated to Delivered status as it is not invoiced."
    assert run(store.get_order(1)).status is OrderStatus.PROCESSING


def test_delivered_after_invoice_records_delivery_details(run, engine, store, stored_order, erp_world):
    stored_order(OrderStatus.PROCESSING)
    erp_world.invoice_lines = [_invoice_line("abc"), _invoice_line(" 1 ")]

    result = run(engine.update_order_status(_delivered_request(note="left at gate")))

    assert result.success
    assert result.message == "Order status updated to Delivered."
    order = run(store.get_order(1))
    assert order.status is OrderStatus.DELIVERED
    assert order.tracking_number == "TRK-1"
    assert order.delivery_person_name == "Dana"
    assert order.delivery_date_iso == "2026-02-01"
    assert order.note == "left at gate"


def test_delivered_requires_delivery_details(run, engine, store, stored_order, erp_world):
    stored_order(OrderStatus.PROCESSING)
    erp_world.invoice_lines = [_invoice_line("1")]

    result = run(engine.update_order_status(_delivered_request(tracking_number=" ")))

    assert not result.success
    assert result.message.startswith("Tracking number, delivery person name and delivery date are required")
    assert "invoice_lines" not in erp_world.calls


def test_delivery_details_refused_for_other_statuses(run, engine, store, stored_order):
    stored_order()

    result = run(
        engine.update_order_status(
            UpdateOrderRequest(order_number=1, status=OrderStatus.REJECTED, tracking_number="TRK-1")
        )
    )

    assert result.message == "Delivery details can only be supplied when marking an order as Delivered."
    assert run(store.get_order(1)).status is OrderStatus.PENDING


def test_reject_reason_refused_for_processing(run, engine, store, stored_order, erp_world):
    stored_order()

    result = run(
        engine.update_order_status(
            UpdateOrderRequest(order_number=1, status=OrderStatus.PROCESSING, reject_reason="no stock")
        )
    )

    assert result.message == "A reject reason can only be supplied when rejecting an order."
    assert erp_world.posted == []


def test_reject_then_repeat_fails(run, engine, store, stored_order):
    stored_order()
    reject = UpdateOrderRequest(order_number=1, status=OrderStatus.REJECTED, reject_reason=" duplicate ")

    first = run(engine.update_order_status(reject))
    second = run(engine.update_order_status(reject))

    assert first.success
    assert second.message == "Order 1 is already Rejected."
    order = run(store.get_order(1))
    assert order.reject_reason == "duplicate"
    assert order.version == 2


def test_reject_without_reason_is_allowed(run, engine, store, stored_order):
    stored_order(OrderStatus.PROCESSING)

    result = run(engine.update_order_status(UpdateOrderRequest(order_number=1, status=OrderStatus.REJECTED)))

    assert result.success
    assert run(store.get_order(1)).reject_reason is None


def test_terminal_orders_report_no_allowed_statuses(run, engine, stored_order):
    stored_order(OrderStatus.REJECTED)

    result = run(engine.update_order_status(UpdateOrderRequest(order_number=1, status=OrderStatus.PROCESSING)))

    assert result.message == (
        "Invalid status transition from Rejected to Processing. Allowed next statuses: none"
    )


def test_unknown_order_number(run, engine):
    result = run(engine.update_order_status(UpdateOrderRequest(order_number=99, status=OrderStatus.REJECTED)))

    assert result.message == "Order 99 not found."


def test_stale_expected_version_is_refused(run, engine, store, stored_order):
    stored_order()

    result = run(
        engine.update_order_status(
            UpdateOrderRequest(order_number=1, status=OrderStatus.REJECTED, expected_version=7)
        )
    )

    assert result.message == "Order 1 was modified by another request. Reload and try again."
    assert run(store.get_order(1)).status is OrderStatus.PENDING


def test_concurrent_updates_apply_once(run, engine, store, stored_order):
    stored_order()
    reject = UpdateOrderRequest(order_number=1, status=OrderStatus.REJECTED, reject_reason="duplicate")

    async def race():
        return await asyncio.gather(engine.update_order_status(reject), engine.update_order_status(reject))

    results = run(race())

    assert sorted(result.success for result in results) == [False, True]
    assert run(store.get_order(1)).version == 2


def test_order_locks_are_released_after_updates(run, engine, stored_order):
    for _ in range(3):
        stored_order()

    for number in (1, 2, 3):
        run(engine.update_order_status(UpdateOrderRequest(order_number=number, status=OrderStatus.REJECTED)))

    assert len(engine._order_locks) == 0


# ---------------------------------------------------------------------------
# Invoice reconciliation
# ---------------------------------------------------------------------------


def test_check_invoiced_is_false_when_erp_unreachable(run, fake_directory, order_row_factory):
    fake_directory.failures["invoice_lines"] = UpstreamUnavailable("down")

    assert run(lifecycle.check_invoiced(fake_directory, order_row_factory(order_number=1))) is False


def test_check_invoiced_is_false_on_malformed_invoice_data(run, fake_directory, order_row_factory):
    fake_directory.failures["invoice_lines"] = AttributeError("'str' object has no attribute 'get'")

    assert run(lifecycle.check_invoiced(fake_directory, order_row_factory(order_number=1))) is False


def test_deliver_reports_not_invoiced_on_malformed_invoice_data(run, engine, store, stored_order, fake_directory):
    stored_order(OrderStatus.PROCESSING)
    fake_directory.failures["invoice_lines"] = ValueError("bad payload")

    result = run(engine.update_order_status(_delivered_request()))

    assert result.message == "Order 1 cannot be updated to Delivered status as it is not invoiced."
    assert run(store.get_order(1)).status is OrderStatus.PROCESSING


def test_check_invoiced_is_false_without_lines(run, fake_directory, order_row_factory):
    assert run(lifecycle.check_invoiced(fake_directory, order_row_factory(order_number=1))) is False


def test_check_invoiced_matches_parsed_reference(run, fake_directory, order_row_factory):
    fake_directory.invoice_lines = [_invoice_line("1001")]

    assert run(lifecycle.check_invoiced(fake_directory, order_row_factory(order_number=1001))) is True
    assert run(lifecycle.check_invoiced(fake_directory, order_row_factory(order_number=100))) is False
