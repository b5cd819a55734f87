"""Enumerations and fixed identifiers shared across the Sigma admin modules.

Centralises the storage keys, wire values, and reporting thresholds so that the
storage layer, the business rules, and the CLI agree on a single source of
truth.
"""

from __future__ import annotations

from decimal import Decimal
from enum import Enum


class OrderStatus(str, Enum):
    """Lifecycle states of an order."""

    PENDING = "PENDING"
    CONFIRMED = "CONFIRMED"
    SHIPPED = "SHIPPED"
    CANCELLED = "CANCELLED"


class PaymentMethod(str, Enum):
    """Enumerate supported payment mechanisms for orders."""

    COD = "COD"
    BANK_TRANSFER = "BANK_TRANSFER"


class TransactionType(str, Enum):
    """Direction of an inventory movement."""

    IMPORT = "IMPORT"
    EXPORT = "EXPORT"


class ProductStatus(str, Enum):
    ACTIVE = "active"
    DRAFT = "draft"
    ARCHIVED = "archived"


class EntityKind(str, Enum):
    """Entity collections owned by the storage layer."""

    PRODUCTS = "products"
    ORDERS = "orders"
    TRANSACTIONS = "transactions"
    CUSTOMERS = "customers"


# Key under which each collection is persisted in local storage.
STORAGE_KEYS = {
    EntityKind.PRODUCTS: "sigma_vie_products",
    EntityKind.ORDERS: "sigma_vie_orders",
    EntityKind.TRANSACTIONS: "sigma_vie_transactions",
    EntityKind.CUSTOMERS: "sigma_vie_customers",
}

# Endpoint segment used by the remote API for each collection.
REMOTE_ENDPOINTS = {
    EntityKind.PRODUCTS: "products",
    EntityKind.ORDERS: "orders",
    EntityKind.TRANSACTIONS: "inventory",
    EntityKind.CUSTOMERS: "customers",
}

OUTBOX_KEY = "sigma_vie_outbox"
DEAD_LETTER_KEY = "sigma_vie_outbox_dead"

# Statuses each order status may move to.
ALLOWED_STATUS_TRANSITIONS = {
    OrderStatus.PENDING: frozenset({OrderStatus.CONFIRMED, OrderStatus.CANCELLED}),
    OrderStatus.CONFIRMED: frozenset({OrderStatus.SHIPPED, OrderStatus.CANCELLED}),
    OrderStatus.SHIPPED: frozenset(),
    OrderStatus.CANCELLED: frozenset(),
}

LOW_STOCK_THRESHOLD = 5
CHART_NAME_LIMIT = 20

# Customer segmentation boundaries on lifetime spend.
POTENTIAL_SPEND_FLOOR = Decimal("1000000")
PREMIUM_SPEND_FLOOR = Decimal("5000000")


__all__ = [
    "OrderStatus",
    "PaymentMethod",
    "TransactionType",
    "ProductStatus",
    "EntityKind",
    "STORAGE_KEYS",
    "REMOTE_ENDPOINTS",
    "OUTBOX_KEY",
    "DEAD_LETTER_KEY",
    "ALLOWED_STATUS_TRANSITIONS",
    "LOW_STOCK_THRESHOLD",
    "CHART_NAME_LIMIT",
    "POTENTIAL_SPEND_FLOOR",
    "PREMIUM_SPEND_FLOOR",
]
