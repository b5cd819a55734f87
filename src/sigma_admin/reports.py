"""Read-only reports and dashboard metrics derived from the cached collections.

Builders take plain record sequences so they can be exercised without a
runtime context; the ``*_for`` helpers read the stores of a
:class:`~sigma_admin.core_logic.RuntimeContext` and delegate.

Timestamps are bucketed in local time unless a ``tz`` is given.
"""

from __future__ import annotations

from dataclasses import asdict, dataclass
from datetime import date, datetime, timedelta, tzinfo
from decimal import Decimal
from typing import Any, Dict, List, Optional, Sequence, Tuple

from . import log
from .constants import (
    CHART_NAME_LIMIT,
    LOW_STOCK_THRESHOLD,
    POTENTIAL_SPEND_FLOOR,
    PREMIUM_SPEND_FLOOR,
    OrderStatus,
    TransactionType,
)
from .data_manager import Customer, InventoryTransaction, Order, Product


GROWTH_WINDOW_MONTHS = 6
DAILY_WINDOW_DAYS = 7
YEARLY_WINDOW_YEARS = 5

SEGMENT_REGULAR = "Regular (<1M)"
SEGMENT_POTENTIAL = "Potential (1M-5M)"
SEGMENT_PREMIUM = "Premium (>5M)"


@dataclass(frozen=True)
class InventoryReportRow:
    id: int
    sku: str
    name: str
    imported: int
    exported: int
    stock: int


@dataclass(frozen=True)
class GrowthPoint:
    name: str
    new: int
    total: int


@dataclass(frozen=True)
class ChartPoint:
    """One bar or slice in a chart: a label, a value, and optional extras."""

    name: str
    value: Any
    revenue: Optional[Decimal] = None
    full_name: Optional[str] = None


@dataclass(frozen=True)
class SalesDay:
    raw_date: str
    date: str
    quantity: int
    revenue: Decimal


@dataclass(frozen=True)
class DashboardMetrics:
    stock_data: Tuple[ChartPoint, ...]
    daily_sales: Tuple[ChartPoint, ...]
    monthly_sales: Tuple[ChartPoint, ...]
    quarterly_sales: Tuple[ChartPoint, ...]
    yearly_sales: Tuple[ChartPoint, ...]
    sales_by_product: Tuple[ChartPoint, ...]
    sales_by_day: Tuple[SalesDay, ...]
    low_stock_products: Tuple[Product, ...]
    revenue_today: Decimal
    pending_orders: int
    product_count: int


def rows_from(items: Sequence[Any]) -> List[Dict[str, Any]]:
    """Flatten report dataclasses into dictionaries for the export writers.

    ``None`` fields are dropped so optional chart extras do not become empty
    columns.
    """

    return [{k: v for k, v in asdict(item).items() if v is not None} for item in items]


def _local_datetime(millis: int, tz: Optional[tzinfo]) -> datetime:
    return datetime.fromtimestamp(millis / 1000, tz)


def _current(now: Optional[datetime], tz: Optional[tzinfo]) -> datetime:
    if now is None:
        return datetime.now(tz)
    if tz is not None and now.tzinfo is not None:
        return now.astimezone(tz)
    return now


def truncate_label(name: str, limit: int = CHART_NAME_LIMIT) -> str:
    return name[:limit] + "..." if len(name) > limit else name


def _valid_orders(orders: Sequence[Order]) -> List[Order]:
    return [o for o in orders if o.status != OrderStatus.CANCELLED]


# ---------------------------------------------------------------------------
# Reports
# ---------------------------------------------------------------------------


def inventory_report(
    products: Sequence[Product], transactions: Sequence[InventoryTransaction]
) -> List[InventoryReportRow]:
    """Summarise imported, exported, and current stock per product.

    Imported and exported totals are summed from the transaction log; the
    stock column is the product's own aggregate stock, which stays the source
    of truth even when the log is incomplete.
    """

    imported: Dict[str, int] = {}
    exported: Dict[str, int] = {}
    for transaction in transactions:
        key = str(transaction.product_id)
        bucket = imported if transaction.type == TransactionType.IMPORT else exported
        bucket[key] = bucket.get(key, 0) + transaction.quantity

    rows = [
        InventoryReportRow(
            id=product.id,
            sku=product.sku,
            name=product.name,
            imported=imported.get(str(product.id), 0),
            exported=exported.get(str(product.id), 0),
            stock=product.stock,
        )
        for product in products
    ]
    log.debug("Built inventory report for %d products", len(rows))
    return rows


def _month_start(year: int, month: int) -> Tuple[int, int]:
    # Normalises a month offset that may have run below January.
    while month < 1:
        month += 12
        year -= 1
    return year, month


def customer_growth(
    customers: Sequence[Customer],
    *,
    now: Optional[datetime] = None,
    tz: Optional[tzinfo] = None,
) -> List[GrowthPoint]:
    """New and cumulative customer counts for the last six calendar months.

    Labels read ``M/YYYY``. The running total starts with every customer
    created before the first month of the window.
    """

    today = _current(now, tz)
    months: List[Tuple[int, int]] = [
        _month_start(today.year, today.month - offset) for offset in range(GROWTH_WINDOW_MONTHS - 1, -1, -1)
    ]
    counts = {month: 0 for month in months}
    window_start = months[0]
    running_total = 0
    for customer in customers:
        created = _local_datetime(customer.created_at, tz)
        key = (created.year, created.month)
        if key in counts:
            counts[key] += 1
        elif key < window_start:
            running_total += 1

    points = []
    for year, month in months:
        running_total += counts[(year, month)]
        points.append(GrowthPoint(name=f"{month}/{year}", new=counts[(year, month)], total=running_total))
    return points


def customer_spend(orders: Sequence[Order]) -> Dict[str, Decimal]:
    """Lifetime spend per customer id over non-cancelled orders."""

    spend: Dict[str, Decimal] = {}
    for order in _valid_orders(orders):
        spend[order.customer_id] = spend.get(order.customer_id, Decimal("0")) + order.total_price
    return spend


def classify_spend(total: Decimal) -> str:
    if total > PREMIUM_SPEND_FLOOR:
        return SEGMENT_PREMIUM
    if total >= POTENTIAL_SPEND_FLOOR:
        return SEGMENT_POTENTIAL
    return SEGMENT_REGULAR


def customer_segments(customers: Sequence[Customer], orders: Sequence[Order]) -> List[ChartPoint]:
    """Count customers per spend segment.

    Every customer id seen on an order is classified by spend; registered
    customers without a valid order count as regular. Empty segments are
    omitted.
    """

    counts = {SEGMENT_REGULAR: 0, SEGMENT_POTENTIAL: 0, SEGMENT_PREMIUM: 0}
    spend = customer_spend(orders)
    for total in spend.values():
        counts[classify_spend(total)] += 1
    counts[SEGMENT_REGULAR] += sum(1 for c in customers if c.id not in spend)
    return [ChartPoint(name=name, value=value) for name, value in counts.items() if value > 0]


# ---------------------------------------------------------------------------
# Dashboard
# ---------------------------------------------------------------------------


def low_stock_products(products: Sequence[Product], threshold: int = LOW_STOCK_THRESHOLD) -> List[Product]:
    return [p for p in products if p.stock < threshold]


def dashboard_metrics(
    products: Sequence[Product],
    orders: Sequence[Order],
    *,
    now: Optional[datetime] = None,
    tz: Optional[tzinfo] = None,
) -> DashboardMetrics:
    """Compute every figure shown on the admin dashboard.

    Sales figures ignore cancelled orders. Daily buckets cover the last seven
    days including today, monthly and quarterly buckets the current year, and
    yearly buckets the last five years. The per-day list covers every day
    with sales, newest first.
    """

    today = _current(now, tz).date()
    valid = _valid_orders(orders)

    stock_data = tuple(ChartPoint(name=truncate_label(p.name), value=p.stock, full_name=p.name) for p in products)

    window_days = [today - timedelta(days=offset) for offset in range(DAILY_WINDOW_DAYS - 1, -1, -1)]
    daily: Dict[date, List[Any]] = {day: [0, Decimal("0")] for day in window_days}
    monthly = [0] * 12
    quarterly = [0] * 4
    yearly = {year: 0 for year in range(today.year - YEARLY_WINDOW_YEARS + 1, today.year + 1)}
    by_product: Dict[str, int] = {p.name: 0 for p in products}
    by_day: Dict[date, List[Any]] = {}

    for order in valid:
        placed = _local_datetime(order.timestamp, tz)
        day = placed.date()
        if day in daily:
            daily[day][0] += order.quantity
            daily[day][1] += order.total_price
        if placed.year == today.year:
            monthly[placed.month - 1] += order.quantity
            quarterly[(placed.month - 1) // 3] += order.quantity
        if placed.year in yearly:
            yearly[placed.year] += order.quantity
        by_product[order.product_name] = by_product.get(order.product_name, 0) + order.quantity
        bucket = by_day.setdefault(day, [0, Decimal("0")])
        bucket[0] += order.quantity
        bucket[1] += order.total_price

    daily_sales = tuple(
        ChartPoint(name=day.strftime("%d/%m"), value=qty, revenue=revenue) for day, (qty, revenue) in daily.items()
    )
    sales_by_product = tuple(
        sorted(
            (ChartPoint(name=truncate_label(name), value=qty, full_name=name) for name, qty in by_product.items()),
            key=lambda point: point.value,
            reverse=True,
        )
    )
    sales_by_day = tuple(
        SalesDay(raw_date=day.isoformat(), date=day.strftime("%d/%m/%Y"), quantity=qty, revenue=revenue)
        for day, (qty, revenue) in sorted(by_day.items(), reverse=True)
    )

    return DashboardMetrics(
        stock_data=stock_data,
        daily_sales=daily_sales,
        monthly_sales=tuple(ChartPoint(name=f"M{i + 1}", value=v) for i, v in enumerate(monthly)),
        quarterly_sales=tuple(ChartPoint(name=f"Q{i + 1}", value=v) for i, v in enumerate(quarterly)),
        yearly_sales=tuple(ChartPoint(name=str(year), value=v) for year, v in yearly.items()),
        sales_by_product=sales_by_product,
        sales_by_day=sales_by_day,
        low_stock_products=tuple(low_stock_products(products)),
        revenue_today=daily[today][1],
        pending_orders=sum(1 for o in orders if o.status == OrderStatus.PENDING),
        product_count=len(products),
    )


# ---------------------------------------------------------------------------
# Context helpers
# ---------------------------------------------------------------------------


def inventory_report_for(context) -> List[InventoryReportRow]:
    return inventory_report(context.products.list(), context.transactions.list())


def customer_growth_for(context, **options) -> List[GrowthPoint]:
    return customer_growth(context.customers.list(), **options)


def customer_segments_for(context) -> List[ChartPoint]:
    return customer_segments(context.customers.list(), context.orders.list())


def dashboard_metrics_for(context, **options) -> DashboardMetrics:
    return dashboard_metrics(context.products.list(), context.orders.list(), **options)
