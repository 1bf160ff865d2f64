"""Order store backed by the ``Orders`` and ``OrderItems`` worksheets.

The store holds no business rules. It assigns sequential identifiers, answers
the queries the lifecycle engine and the reporting layer need, and guards
updates with the optimistic ``Version`` column. Every write is saved to disk
before the call returns.
"""

from __future__ import annotations

import asyncio
from dataclasses import dataclass, field, replace
from pathlib import Path
from typing import Callable, Iterable, List, Optional, Sequence, TypeVar

from openpyxl.workbook import Workbook

from . import data_manager, log
from .constants import OrderStatus
from .errors import ConcurrencyConflict, NotFoundError

T = TypeVar("T")


@dataclass
class WorkbookSession:
    """Live workbook plus the path it is saved to.

    ``lock`` serializes writers; the order store and the user directory share
    one session so their saves never interleave.
    """

    workbook: Workbook
    data_file: Path
    lock: asyncio.Lock = field(default_factory=asyncio.Lock, repr=False)

    async def persist(self) -> None:
        await asyncio.to_thread(data_manager.save_workbook, self.workbook, self.data_file)
        log.debug("Persisted workbook '%s'", self.data_file)


class OrderStore:
    """Async facade over the order worksheets."""

    def __init__(self, session: WorkbookSession) -> None:
        self._session = session

    @property
    def _workbook(self) -> Workbook:
        return self._session.workbook

    def _orders(self) -> List[data_manager.OrderRow]:
        return list(data_manager.iter_orders(self._workbook))

    def _items(self) -> List[data_manager.OrderItemRow]:
        return list(data_manager.iter_order_items(self._workbook))

    async def _append_and_persist(self, append: Callable[[], T]) -> T:
        """Run ``append`` and save, dropping the new rows again if either fails.

        Must be called with the session lock held.
        """
        marks = {
            name: self._workbook[name].max_row
            for name in (data_manager.ORDERS_SHEET, data_manager.ORDER_ITEMS_SHEET)
        }
        try:
            result = append()
            await self._session.persist()
        except Exception:
            for name, last_row in marks.items():
                data_manager.truncate_sheet(self._workbook, name, last_row)
            log.error("Discarded unsaved order rows after a failed write")
            raise
        return result

    def _append_items(self, items: Sequence[data_manager.OrderItemRow], order_number: Optional[int] = None) -> List[data_manager.OrderItemRow]:
        next_id = _next_id(row.order_item_id for row in self._items())
        stored: List[data_manager.OrderItemRow] = []
        for offset, item in enumerate(items):
            row = replace(item, order_item_id=next_id + offset)
            if order_number is not None:
                row = replace(row, order_number=order_number)
            data_manager.append_order_item(self._workbook, row)
            stored.append(row)
        return stored

    def _append_order(self, order: data_manager.OrderRow) -> int:
        order_number = _next_id(row.order_number for row in self._orders())
        data_manager.append_order(self._workbook, replace(order, order_number=order_number, version=1))
        return order_number

    async def add_order(self, order: data_manager.OrderRow) -> int:
        """Append ``order`` under the next order number and return that number.

        The number on the incoming row is ignored; the store assigns
        ``max(existing) + 1`` (``1`` for an empty sheet) and resets the
        version to ``1``.
        """
        async with self._session.lock:
            order_number = await self._append_and_persist(lambda: self._append_order(order))
        log.info("Stored order %s for customer '%s'", order_number, order.customer_code)
        return order_number

    async def add_order_items(self, items: Sequence[data_manager.OrderItemRow]) -> List[data_manager.OrderItemRow]:
        """Append order lines, assigning each a store-wide sequential id."""
        if not items:
            return []
        async with self._session.lock:
            stored = await self._append_and_persist(lambda: self._append_items(items))
        log.info("Stored %d line(s) for order %s", len(stored), stored[0].order_number)
        return stored

    async def add_order_with_items(
        self, order: data_manager.OrderRow, items: Sequence[data_manager.OrderItemRow]
    ) -> int:
        """Store an order and its lines in one save.

        The lines are renumbered onto the new order number. Either both land
        on disk or neither stays in the workbook.
        """

        def append() -> int:
            order_number = self._append_order(order)
            self._append_items(items, order_number)
            return order_number

        async with self._session.lock:
            order_number = await self._append_and_persist(append)
        log.info(
            "Stored order %s with %d line(s) for customer '%s'",
            order_number,
            len(items),
            order.customer_code,
        )
        return order_number

    async def get_order(self, order_number: int) -> Optional[data_manager.OrderRow]:
        for order in self._orders():
            if order.order_number == order_number:
                return order
        return None

    async def list_by_status(self, status: OrderStatus) -> List[data_manager.OrderRow]:
        return [order for order in self._orders() if order.status == status]

    async def list_by_status_and_salesperson(self, salesperson_code: str, status: OrderStatus) -> List[data_manager.OrderRow]:
        return [
            order
            for order in self._orders()
            if order.status == status and order.salesperson_code == salesperson_code
        ]

    async def list_by_status_and_locations(self, location_codes: Iterable[str], status: OrderStatus) -> List[data_manager.OrderRow]:
        wanted = set(location_codes)
        return [
            order
            for order in self._orders()
            if order.status == status and order.location_code in wanted
        ]

    async def list_by_numbers(self, order_numbers: Iterable[int]) -> List[data_manager.OrderRow]:
        wanted = set(order_numbers)
        if not wanted:
            return []
        return [order for order in self._orders() if order.order_number in wanted]

    async def list_items_by_order_numbers(self, order_numbers: Iterable[int]) -> List[data_manager.OrderItemRow]:
        wanted = set(order_numbers)
        if not wanted:
            return []
        return [item for item in self._items() if item.order_number in wanted]

    async def list_items(self, order_number: int) -> List[data_manager.OrderItemRow]:
        return await self.list_items_by_order_numbers([order_number])

    async def update_order(self, order: data_manager.OrderRow, *, expected_version: Optional[int] = None) -> data_manager.OrderRow:
        """Overwrite the mutable columns of a stored order.

        The stored ``Version`` must equal ``expected_version`` (or
        ``order.version`` when omitted); the written row carries the next
        version and is returned.

        Raises:
            NotFoundError: If the order number is not stored.
            ConcurrencyConflict: If the stored version differs.
        """
        expected = order.version if expected_version is None else expected_version
        async with self._session.lock:
            row_index = data_manager.locate_row(
                self._workbook, data_manager.ORDERS_SHEET, "OrderNumber", order.order_number
            )
            if row_index is None:
                raise NotFoundError(f"Order {order.order_number} not found.")
            current = data_manager.read_order_at(self._workbook, row_index)
            if current.version != expected:
                log.warning(
                    "Stale write for order %s: expected version %s, stored %s",
                    order.order_number,
                    expected,
                    current.version,
                )
                raise ConcurrencyConflict(
                    f"Order {order.order_number} was modified by another request. Reload and try again."
                )

            updated = replace(order, version=current.version + 1)
            data_manager.update_order_fields(
                self._workbook, order.order_number, field_values=_mutable_fields(updated)
            )
            try:
                await self._session.persist()
            except Exception:
                data_manager.update_order_fields(
                    self._workbook, order.order_number, field_values=_mutable_fields(current)
                )
                log.error("Restored order %s after a failed save", order.order_number)
                raise
        log.info(
            "Updated order %s to %s (version %s)",
            updated.order_number,
            updated.status.value,
            updated.version,
        )
        return updated


def _mutable_fields(order: data_manager.OrderRow) -> dict:
    return {
        "Status": order.status.value,
        "Note": order.note,
        "RejectReason": order.reject_reason,
        "TrackingNumber": order.tracking_number,
        "DeliveryPersonName": order.delivery_person_name,
        "DeliveryDate": order.delivery_date_iso,
        "Version": order.version,
    }


def _next_id(existing: Iterable[int]) -> int:
    return max(existing, default=0) + 1


__all__ = ["OrderStore", "WorkbookSession"]
