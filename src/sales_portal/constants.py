"""Enumerations shared across the sales portal modules.

The order store, the lifecycle engine and the reporting layer all key their
behaviour off these values, so they live in one place instead of being
repeated as string literals.
"""

from __future__ import annotations

from enum import Enum


# Store workbook layout version expected by the runtime.
EXPECTED_SCHEMA_VERSION = "1.0.0"

# Location codes hidden from stock and order-creation listings.
DEFAULT_EXCLUDED_LOCATIONS: tuple[str, ...] = ("SEDAW-SNS", "SEDAW-SKM")


class OrderStatus(str, Enum):
    """Lifecycle states of a sales order."""

    PENDING = "Pending"
    PROCESSING = "Processing"
    DELIVERED = "Delivered"
    REJECTED = "Rejected"

    @property
    def is_terminal(self) -> bool:
        return self in (OrderStatus.DELIVERED, OrderStatus.REJECTED)


class Role(str, Enum):
    """Closed set of user roles with the capabilities reporting relies on."""

    ADMIN = "Admin"
    SALES_COORDINATOR = "SalesCoordinator"
    SALES_PERSON = "SalesPerson"

    @classmethod
    def from_name(cls, name: str | None) -> "Role | None":
        """Return the role for ``name`` or ``None`` when it is not recognised."""
        if name is None:
            return None
        try:
            return cls(name.strip())
        except ValueError:
            return None


def can_view_all_orders(role: Role | None) -> bool:
    """Admins and coordinators see every salesperson's orders."""
    return role in (Role.ADMIN, Role.SALES_COORDINATOR)


def can_view_all_customers(role: Role | None) -> bool:
    return role in (Role.ADMIN, Role.SALES_COORDINATOR)


class SheetName(str, Enum):
    """Enumerate the workbook sheet names managed by the data layer."""

    ORDERS = "Orders"
    ORDER_ITEMS = "OrderItems"
    USERS = "Users"
    USER_ROLES = "UserRoles"


__all__ = [
    "EXPECTED_SCHEMA_VERSION",
    "DEFAULT_EXCLUDED_LOCATIONS",
    "OrderStatus",
    "Role",
    "SheetName",
    "can_view_all_orders",
    "can_view_all_customers",
]
