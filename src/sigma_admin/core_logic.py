"""Business logic layer for the Sigma admin console.

This module holds the rules that sit on top of the cached entity stores:
product CRUD, stock adjustment, order creation, the order status state
machine, and manual inventory adjustments. It reaches local storage and the
remote API only through the :class:`~sigma_admin.storage.CollectionStore`
instances bundled in a :class:`RuntimeContext`.
"""

from __future__ import annotations

import random
import re
import threading
import time
import uuid
from concurrent.futures import Executor, ThreadPoolExecutor
from dataclasses import dataclass, field, replace
from datetime import UTC, datetime
from decimal import Decimal
from pathlib import Path
from typing import Callable, Dict, List, Optional, Sequence, Tuple, Union

from . import data_manager, log
from .constants import (
    ALLOWED_STATUS_TRANSITIONS,
    EntityKind,
    OrderStatus,
    PaymentMethod,
    ProductStatus,
    TransactionType,
)
from .data_manager import Customer, InventoryTransaction, Order, Product, Variant
from .events import EventBus
from .remote import OfflineRemote, RemoteClient, RemoteCollaborator
from .storage import CollectionStore
from .sync import DrainReport, SyncOutbox, SyncWorker


class BusinessRuleViolation(Exception):
    """Raised when a requested operation violates a domain constraint."""


class MissingReferenceError(BusinessRuleViolation):
    """Raised when a referenced product, order, or customer is unknown."""


class InsufficientStockError(BusinessRuleViolation):
    """Raised when a request asks for more units than are available."""

    def __init__(self, available: int, requested: int):
        super().__init__(f"Only {available} unit(s) left for this selection, {requested} requested")
        self.available = available
        self.requested = requested


class InvalidStatusTransition(BusinessRuleViolation):
    """Raised when an order cannot move from its current status to the requested one."""


@dataclass(frozen=True)
class RuntimeContext:
    """Container for configuration, stores, and sync machinery used by the BLL."""

    settings: data_manager.ConfigSettings
    storage: data_manager.LocalStorage
    remote: RemoteCollaborator
    bus: EventBus
    outbox: SyncOutbox
    products: CollectionStore[Product]
    orders: CollectionStore[Order]
    transactions: CollectionStore[InventoryTransaction]
    customers: CollectionStore[Customer]
    executor: Optional[Executor] = None
    worker: Optional[SyncWorker] = None
    _locks: Dict[str, threading.Lock] = field(default_factory=dict, repr=False, compare=False)
    _locks_guard: threading.Lock = field(default_factory=threading.Lock, repr=False, compare=False)


@dataclass(frozen=True)
class ShippingInfo:
    """Delivery snapshot when the recipient differs from the ordering customer."""

    name: str
    phone: str
    address: str


@dataclass(frozen=True)
class OrderCommand:
    """User intent for placing an order."""

    customer: Customer
    product_id: int
    quantity: int
    payment_method: PaymentMethod = PaymentMethod.COD
    shipping_fee: Decimal = Decimal("0")
    size: Optional[str] = None
    color: Optional[str] = None
    shipping: Optional[ShippingInfo] = None
    note: Optional[str] = None
    timestamp: Optional[datetime] = None


@dataclass(frozen=True)
class OrderResult:
    """Outcome of :func:`create_order`, surfaced directly to the operator."""

    success: bool
    message: str
    order: Optional[Order] = None


@dataclass(frozen=True)
class InventoryAdjustmentCommand:
    """User intent for a manual stock import or export."""

    product_id: int
    type: TransactionType
    quantity: int
    note: Optional[str] = None
    size: Optional[str] = None
    color: Optional[str] = None
    timestamp: Optional[datetime] = None


# ---------------------------------------------------------------------------
# Context lifecycle
# ---------------------------------------------------------------------------


def build_runtime_context(
    settings: data_manager.ConfigSettings,
    *,
    remote: Optional[RemoteCollaborator] = None,
    executor: Optional[Executor] = None,
    merge_on_read: bool = False,
    clock: Callable[[], float] = time.time,
) -> RuntimeContext:
    """Wire local storage, the remote client, the outbox, and the four stores.

    When ``remote`` is omitted a :class:`RemoteClient` is created from the
    settings, or an :class:`OfflineRemote` when the API is disabled or has no
    base URL. Without an ``executor`` stores never merge in the background:
    with ``merge_on_read`` the first stale read merges inline, otherwise
    callers use :func:`sync_all` or ``store.refresh()`` explicitly.
    """

    storage = data_manager.LocalStorage(settings.data_dir)
    if remote is None:
        if settings.remote_enabled and settings.remote_base_url:
            remote = RemoteClient(settings.remote_base_url, timeout=settings.remote_timeout)
        else:
            remote = OfflineRemote()
    bus = EventBus()
    outbox = SyncOutbox(
        storage,
        remote,
        max_attempts=settings.max_attempts,
        backoff_seconds=settings.backoff_seconds,
        clock=clock,
    )

    def _store(entity: EntityKind, **options) -> CollectionStore:
        return CollectionStore(
            entity,
            storage,
            remote,
            outbox,
            bus,
            max_age=settings.max_age,
            executor=executor,
            merge_on_read=merge_on_read,
            clock=clock,
            **options,
        )

    return RuntimeContext(
        settings=settings,
        storage=storage,
        remote=remote,
        bus=bus,
        outbox=outbox,
        products=_store(EntityKind.PRODUCTS),
        orders=_store(EntityKind.ORDERS, keep_local_on_empty_remote=True),
        transactions=_store(EntityKind.TRANSACTIONS),
        customers=_store(EntityKind.CUSTOMERS),
        executor=executor,
    )


def load_runtime_context(
    config_path: Optional[Path] = None,
    *,
    background: bool = False,
    merge_on_read: bool = False,
    remote: Optional[RemoteCollaborator] = None,
) -> RuntimeContext:
    """Load configuration settings and assemble a :class:`RuntimeContext`.

    Args:
        config_path (Path | None): Optional override path for the configuration
            file. When omitted the data layer searches upward from the current
            working directory.
        background (bool): When ``True`` a single-thread executor performs
            merges on stale reads and a :class:`SyncWorker` drains the outbox.
        merge_on_read (bool): Without ``background``, merge each collection
            inline on its first stale read.
        remote (RemoteCollaborator | None): Optional remote override.

    Raises:
        FileNotFoundError: If the configuration file cannot be located.
        KeyError: When mandatory configuration options are missing.
    """

    located_config = data_manager.find_config_file(config_path)
    resolved_config = Path(located_config).expanduser().resolve()
    parser = data_manager.read_config(resolved_config)
    settings = data_manager.parse_settings(parser, base_path=resolved_config.parent)
    executor = ThreadPoolExecutor(max_workers=1, thread_name_prefix="sigma-merge") if background else None
    context = build_runtime_context(settings, remote=remote, executor=executor, merge_on_read=merge_on_read)
    if background and context.remote.online:
        worker = SyncWorker(context.outbox)
        worker.start()
        context = replace(context, worker=worker)
    log.info("Loaded runtime context for data directory '%s'", settings.data_dir)
    return context


def close_context(context: RuntimeContext) -> None:
    """Stop the background worker and executor owned by ``context``."""

    if context.worker is not None:
        context.worker.stop(timeout=5)
    if context.executor is not None:
        context.executor.shutdown(wait=True)


def sync_all(context: RuntimeContext) -> DrainReport:
    """Merge every collection with the remote API, then drain the outbox."""

    for store in (context.products, context.orders, context.transactions, context.customers):
        store.refresh()
    return context.outbox.drain()


def _lock_for(context: RuntimeContext, name: str) -> threading.Lock:
    with context._locks_guard:
        lock = context._locks.get(name)
        if lock is None:
            lock = threading.Lock()
            context._locks[name] = lock
        return lock


# ---------------------------------------------------------------------------
# Small helpers
# ---------------------------------------------------------------------------


def _resolve_timestamp(candidate: Optional[datetime]) -> datetime:
    return candidate if candidate is not None else datetime.now(UTC)


def _to_millis(moment: datetime) -> int:
    return int(moment.timestamp() * 1000)


def parse_price(price: str) -> Decimal:
    """Extract the numeric amount from a display price such as ``"350.000đ"``.

    Every non-digit character is discarded, matching how prices are typed in
    the catalog (thousands separators and currency suffixes). Unparseable
    input yields zero.
    """

    digits = re.sub(r"[^0-9]", "", price or "")
    return Decimal(digits) if digits else Decimal("0")


def generate_order_id(*, when: Optional[datetime] = None) -> str:
    """Return ``ORD-<epoch ms>-<0..999>``."""

    millis = _to_millis(_resolve_timestamp(when))
    return f"ORD-{millis}-{random.randrange(1000)}"


def generate_transaction_id(*, when: Optional[datetime] = None) -> str:
    millis = _to_millis(_resolve_timestamp(when))
    return f"{millis}{uuid.uuid4().hex[:9]}"


def require_positive_quantity(quantity: int) -> None:
    """Validate that a quantity is strictly positive.

    Raises:
        ValueError: If ``quantity`` is zero or negative.
    """
    if quantity <= 0:
        log.error("Quantity validation failed: %s", quantity)
        raise ValueError("Quantity must be greater than zero")


def require_nonnegative_money(amount: Decimal) -> None:
    if amount < Decimal("0"):
        log.error("Monetary value validation failed: %s", amount)
        raise ValueError("Amount must be zero or positive")


def _matches_variant(variant: Variant, size: Optional[str], color: Optional[str]) -> bool:
    return variant.size == (size or "") and variant.color == (color or "")


def describe_variant(size: Optional[str], color: Optional[str]) -> str:
    parts = []
    if size:
        parts.append(f"Size: {size}")
    if color:
        parts.append(f"Color: {color}")
    return ", ".join(parts)


# ---------------------------------------------------------------------------
# Products
# ---------------------------------------------------------------------------


def list_products(context: RuntimeContext) -> List[Product]:
    return context.products.list()


def get_product(context: RuntimeContext, product_id: int) -> Product:
    """Resolve a product by id from the local cache.

    Raises:
        MissingReferenceError: If the product is not cached locally.
    """
    product = context.products.get(product_id)
    if product is None:
        log.warning("Product lookup failed for id '%s'", product_id)
        raise MissingReferenceError(f"Unknown product id: {product_id}")
    return product


def add_product(
    context: RuntimeContext,
    *,
    name: str,
    price: str,
    stock: int = 0,
    variants: Sequence[Variant] = (),
    sku: str = "",
    category: str = "",
    brand: str = "",
    status: ProductStatus = ProductStatus.ACTIVE,
    import_price: str = "",
    description: str = "",
    image_url: str = "",
    sizes: Sequence[str] = (),
    colors: Sequence[str] = (),
) -> Product:
    """Create a product with a millisecond-timestamp id and cache it.

    Raises:
        ValueError: If the name is blank or the stock is negative.
    """
    if not name.strip():
        raise ValueError("Product name must not be empty")
    if stock < 0:
        raise ValueError("Stock must be zero or positive")

    existing_ids = {p.id for p in context.products.list()}
    product_id = _to_millis(_resolve_timestamp(None))
    while product_id in existing_ids:
        product_id += 1

    product = Product(
        id=product_id,
        name=name.strip(),
        price=price,
        stock=stock,
        variants=tuple(variants),
        sku=sku,
        category=category,
        brand=brand,
        status=status,
        import_price=import_price,
        description=description,
        image_url=image_url,
        sizes=tuple(sizes),
        colors=tuple(colors),
    )
    return context.products.add(product)


def update_product(context: RuntimeContext, product: Product) -> bool:
    return context.products.update(product)


def delete_product(context: RuntimeContext, product_id: int) -> bool:
    return context.products.remove(product_id)


def apply_stock_delta(product: Product, delta: int, size: Optional[str] = None, color: Optional[str] = None) -> Product:
    """Return a copy of ``product`` with ``delta`` applied to its stock.

    When a size or color is given, the matching variant shifts by ``delta``
    or, if none matches, a new variant is appended with ``stock = delta``.
    The aggregate stock always shifts by ``delta``. There is no floor:
    callers validate availability first.
    """

    variants = product.variants
    if size or color:
        shifted = []
        found = False
        for variant in variants:
            if not found and _matches_variant(variant, size, color):
                shifted.append(replace(variant, stock=variant.stock + delta))
                found = True
            else:
                shifted.append(variant)
        if not found:
            shifted.append(Variant(size=size or "", color=color or "", stock=delta))
        variants = tuple(shifted)
    return replace(product, stock=product.stock + delta, variants=variants)


def update_product_stock(
    context: RuntimeContext,
    product_id: int,
    delta: int,
    size: Optional[str] = None,
    color: Optional[str] = None,
) -> bool:
    """Shift a product's stock by ``delta`` through the generic update path.

    Returns:
        bool: ``False`` when the product is unknown, ``True`` otherwise.
    """

    updated = context.products.mutate(product_id, lambda p: apply_stock_delta(p, delta, size, color))
    if updated is None:
        return False
    log.info(
        "Adjusted stock of product '%s' by %+d%s (now %d)",
        product_id,
        delta,
        f" [{describe_variant(size, color)}]" if size or color else "",
        updated.stock,
    )
    return True


def resolve_available_stock(product: Product, size: Optional[str] = None, color: Optional[str] = None) -> int:
    """Return the stock that can be sold for the given selection.

    With a size or color selected only the matching variant counts; an unknown
    combination, including any selection on a product without variants, has
    nothing available. Otherwise the aggregate stock applies.
    """

    if size or color:
        for variant in product.variants:
            if _matches_variant(variant, size, color):
                return variant.stock
        return 0
    return product.stock


# ---------------------------------------------------------------------------
# Inventory transactions
# ---------------------------------------------------------------------------


def list_transactions(context: RuntimeContext) -> List[InventoryTransaction]:
    return context.transactions.list()


def add_transaction(
    context: RuntimeContext,
    *,
    product_id: int,
    product_name: str,
    type: TransactionType,
    quantity: int,
    note: Optional[str] = None,
    size: Optional[str] = None,
    color: Optional[str] = None,
    order_id: Optional[str] = None,
    timestamp: Optional[datetime] = None,
) -> InventoryTransaction:
    """Append an inventory transaction to the log and queue it for sync."""

    moment = _resolve_timestamp(timestamp)
    transaction = InventoryTransaction(
        id=generate_transaction_id(when=moment),
        product_id=product_id,
        product_name=product_name,
        type=type,
        quantity=quantity,
        timestamp=_to_millis(moment),
        note=note,
        selected_size=size or None,
        selected_color=color or None,
        order_id=order_id,
    )
    context.transactions.add(transaction)
    log.info(
        "Recorded %s transaction '%s' for product '%s' (quantity=%s)",
        type.value,
        transaction.id,
        product_id,
        quantity,
    )
    return transaction


def adjust_inventory(context: RuntimeContext, command: InventoryAdjustmentCommand) -> InventoryTransaction:
    """Validate and apply a manual stock import or export.

    Raises:
        MissingReferenceError: If the product is unknown.
        BusinessRuleViolation: If a required size or color is missing.
        InsufficientStockError: If an export exceeds the current stock.
        ValueError: If the quantity is not positive.
    """

    require_positive_quantity(command.quantity)
    with _lock_for(context, f"product:{command.product_id}"):
        product = get_product(context, command.product_id)
        if product.sizes and not command.size:
            raise BusinessRuleViolation(f"Select a size for product '{product.name}'")
        if product.colors and not command.color:
            raise BusinessRuleViolation(f"Select a color for product '{product.name}'")

        change = command.quantity if command.type == TransactionType.IMPORT else -command.quantity
        if command.type == TransactionType.EXPORT:
            current = resolve_available_stock(product, command.size, command.color)
            if current < command.quantity:
                log.warning(
                    "Rejected export of %d from product '%s': only %d in stock",
                    command.quantity,
                    product.id,
                    current,
                )
                raise InsufficientStockError(current, command.quantity)

        update_product_stock(context, product.id, change, command.size, command.color)

    note = command.note or ""
    if command.size:
        note += f" [Size: {command.size}]"
    if command.color:
        note += f" [Color: {command.color}]"
    return add_transaction(
        context,
        product_id=product.id,
        product_name=product.name,
        type=command.type,
        quantity=command.quantity,
        note=note.strip() or None,
        size=command.size,
        color=command.color,
        timestamp=command.timestamp,
    )


# ---------------------------------------------------------------------------
# Customers
# ---------------------------------------------------------------------------


def list_customers(context: RuntimeContext) -> List[Customer]:
    return context.customers.list()


def get_customer(context: RuntimeContext, customer_id: str) -> Customer:
    customer = context.customers.get(customer_id)
    if customer is None:
        log.warning("Customer lookup failed for id '%s'", customer_id)
        raise MissingReferenceError(f"Unknown customer id: {customer_id}")
    return customer


def add_customer(
    context: RuntimeContext,
    *,
    full_name: str,
    email: Optional[str] = None,
    phone_number: Optional[str] = None,
    address: Optional[str] = None,
    created_at: Optional[datetime] = None,
) -> Customer:
    """Register a customer, rejecting duplicate email addresses or phone numbers."""

    if not full_name.strip():
        raise ValueError("Customer name must not be empty")
    for existing in context.customers.list():
        if email and existing.email == email:
            raise BusinessRuleViolation("This email address is already registered")
        if phone_number and existing.phone_number == phone_number:
            raise BusinessRuleViolation("This phone number is already registered")
    millis = _to_millis(_resolve_timestamp(created_at))
    customer = Customer(
        id=f"CUST-{millis}",
        full_name=full_name.strip(),
        created_at=millis,
        email=email,
        phone_number=phone_number,
        address=address,
    )
    return context.customers.add(customer)


# ---------------------------------------------------------------------------
# Orders
# ---------------------------------------------------------------------------


def list_orders(context: RuntimeContext) -> List[Order]:
    return context.orders.list()


def get_order(context: RuntimeContext, order_id: str) -> Order:
    order = context.orders.get(order_id)
    if order is None:
        log.warning("Order lookup failed for id '%s'", order_id)
        raise MissingReferenceError(f"Unknown order id: {order_id}")
    return order


def orders_for_customer(context: RuntimeContext, customer_id: str) -> List[Order]:
    return [order for order in context.orders.list() if order.customer_id == customer_id]


def build_order(command: OrderCommand, product: Product, *, order_id: str, timestamp: datetime) -> Order:
    """Materialize an :class:`OrderCommand` into an order snapshot.

    The total is the catalog unit price times the quantity plus the shipping
    fee. Customer contact falls back from email to phone number.
    """

    customer = command.customer
    subtotal = parse_price(product.price) * command.quantity
    shipping = command.shipping
    return Order(
        id=order_id,
        customer_id=customer.id,
        customer_name=customer.full_name,
        customer_contact=customer.email or customer.phone_number or "N/A",
        customer_address=customer.address or "Not provided",
        product_id=product.id,
        product_name=product.name,
        quantity=command.quantity,
        total_price=subtotal + command.shipping_fee,
        status=OrderStatus.PENDING,
        timestamp=_to_millis(timestamp),
        payment_method=command.payment_method,
        shipping_fee=command.shipping_fee,
        product_size=command.size or None,
        product_color=command.color or None,
        shipping_name=shipping.name if shipping else None,
        shipping_phone=shipping.phone if shipping else None,
        shipping_address=shipping.address if shipping else None,
        note=command.note,
    )


def create_order(context: RuntimeContext, command: OrderCommand) -> OrderResult:
    """Place an order: check stock, decrement it, store the order, log an EXPORT.

    The product is re-read from the store so the check never runs against a
    stale copy, and the read-check-decrement sequence holds the product's lock.
    Domain failures are returned as an unsuccessful :class:`OrderResult`
    instead of being raised; nothing is mutated in that case.
    """

    try:
        require_positive_quantity(command.quantity)
        require_nonnegative_money(command.shipping_fee)
        with _lock_for(context, f"product:{command.product_id}"):
            product = get_product(context, command.product_id)
            available = resolve_available_stock(product, command.size, command.color)
            if available < command.quantity:
                log.warning(
                    "Rejected order for product '%s': requested %d, available %d",
                    product.id,
                    command.quantity,
                    available,
                )
                raise InsufficientStockError(available, command.quantity)

            moment = _resolve_timestamp(command.timestamp)
            order = build_order(command, product, order_id=generate_order_id(when=moment), timestamp=moment)
            if not update_product_stock(context, product.id, -command.quantity, command.size, command.color):
                return OrderResult(False, "Stock could not be updated, please try again")
    except (BusinessRuleViolation, ValueError) as exc:
        return OrderResult(False, str(exc))

    context.orders.add(order)

    variant = describe_variant(command.size, command.color)
    add_transaction(
        context,
        product_id=product.id,
        product_name=f"{product.name} ({variant})" if variant else product.name,
        type=TransactionType.EXPORT,
        quantity=command.quantity,
        note=f"Online order from {command.customer.full_name} ({order.id}) [{command.payment_method.value}]",
        size=command.size,
        color=command.color,
        order_id=order.id,
        timestamp=moment,
    )
    log.info(
        "Created order '%s' for product '%s' (quantity=%d, total=%s)",
        order.id,
        product.id,
        order.quantity,
        order.total_price,
    )
    return OrderResult(True, "Order placed successfully", order)


def update_order_status(context: RuntimeContext, order_id: str, new_status: Union[OrderStatus, str]) -> Order:
    """Move an order through the status state machine.

    Requesting the status an order already has is a no-op. Moving into
    ``CANCELLED`` returns the ordered quantity to stock and records one
    compensating IMPORT transaction; because a cancelled order can never be
    cancelled again, the restock happens at most once.

    Raises:
        MissingReferenceError: If the order is unknown.
        InvalidStatusTransition: If the transition is not allowed.
        ValueError: If ``new_status`` is not a known status.
    """

    target = OrderStatus(new_status)
    with _lock_for(context, f"order:{order_id}"):
        order = get_order(context, order_id)
        if order.status == target:
            log.info("Order '%s' is already %s; nothing to do", order_id, target.value)
            return order
        if target not in ALLOWED_STATUS_TRANSITIONS[order.status]:
            log.error("Rejected status change of '%s' from %s to %s", order_id, order.status.value, target.value)
            raise InvalidStatusTransition(f"Cannot move order {order_id} from {order.status.value} to {target.value}")

        if target == OrderStatus.CANCELLED:
            _restock_cancelled_order(context, order)

        updated = context.orders.mutate(order_id, lambda o: replace(o, status=target))
    log.info("Order '%s' moved from %s to %s", order_id, order.status.value, target.value)
    return updated if updated is not None else replace(order, status=target)


def _restock_cancelled_order(context: RuntimeContext, order: Order) -> Optional[InventoryTransaction]:
    with _lock_for(context, f"product:{order.product_id}"):
        restocked = update_product_stock(context, order.product_id, order.quantity, order.product_size, order.product_color)
    if not restocked:
        log.warning("Product '%s' of cancelled order '%s' no longer exists; stock not restored", order.product_id, order.id)
        return None
    return add_transaction(
        context,
        product_id=order.product_id,
        product_name=order.product_name,
        type=TransactionType.IMPORT,
        quantity=order.quantity,
        note=f"Stock returned after cancelling order {order.id}",
        size=order.product_size,
        color=order.product_color,
        order_id=order.id,
    )


def pending_order_count(orders: Sequence[Order]) -> int:
    return sum(1 for order in orders if order.status == OrderStatus.PENDING)


def split_csv_option(raw: Optional[str]) -> Tuple[str, ...]:
    """Split a comma-separated option such as ``"S, M, L"`` into clean values."""

    if not raw:
        return ()
    return tuple(part.strip() for part in raw.split(",") if part.strip())
