"""Data access layer for the Sigma admin console.

This module provides the low-level helpers that read from and write to the
local key-value storage that backs every cached entity collection. Business
rules belong elsewhere.

The public API is designed around three responsibilities:

1. Configuration handling: finding and parsing ``config.ini``.
2. Local storage: one JSON document per key inside the configured data
   directory, written atomically.
3. Record mapping: typed dataclasses for every entity and the converters that
   translate them to and from the wire/JSON representation.
"""


from __future__ import annotations

import configparser
import json
import os
from dataclasses import dataclass, field
from decimal import Decimal, InvalidOperation
from pathlib import Path
from typing import Any, Callable, Dict, List, Mapping, Optional, Tuple

from . import log
from .constants import EntityKind, OrderStatus, PaymentMethod, ProductStatus, TransactionType


CONFIG_FILE_NAME = "config.ini"


@dataclass(frozen=True)
class ConfigSettings:
    """Typed representation of the ``config.ini`` settings we care about."""

    data_dir: Path
    store_name: str
    store_phone: str = ""
    store_address: str = ""
    store_public_url: str = ""
    remote_base_url: Optional[str] = None
    remote_timeout: float = 5.0
    remote_enabled: bool = True
    max_age: float = 0.0
    max_attempts: int = 5
    backoff_seconds: float = 2.0


@dataclass(frozen=True)
class Variant:
    """Stock sub-record of a product for one (size, color) pair."""

    size: str
    color: str
    stock: int


@dataclass(frozen=True)
class Product:
    """Catalog entry as cached locally and exchanged with the remote API."""

    id: int
    name: str
    price: str
    stock: int
    variants: Tuple[Variant, ...] = ()
    sku: str = ""
    category: str = ""
    brand: str = ""
    status: ProductStatus = ProductStatus.ACTIVE
    import_price: str = ""
    description: str = ""
    image_url: str = ""
    sizes: Tuple[str, ...] = ()
    colors: Tuple[str, ...] = ()


@dataclass(frozen=True)
class Customer:
    id: str
    full_name: str
    created_at: int
    email: Optional[str] = None
    phone_number: Optional[str] = None
    address: Optional[str] = None


@dataclass(frozen=True)
class Order:
    """Order snapshot, including denormalised customer and product fields."""

    id: str
    customer_id: str
    customer_name: str
    customer_contact: str
    customer_address: str
    product_id: int
    product_name: str
    quantity: int
    total_price: Decimal
    status: OrderStatus
    timestamp: int
    payment_method: PaymentMethod = PaymentMethod.COD
    shipping_fee: Decimal = Decimal("0")
    product_size: Optional[str] = None
    product_color: Optional[str] = None
    shipping_name: Optional[str] = None
    shipping_phone: Optional[str] = None
    shipping_address: Optional[str] = None
    note: Optional[str] = None


@dataclass(frozen=True)
class InventoryTransaction:
    """Append-only record of a stock movement."""

    id: str
    product_id: int
    product_name: str
    type: TransactionType
    quantity: int
    timestamp: int
    note: Optional[str] = None
    selected_size: Optional[str] = None
    selected_color: Optional[str] = None
    order_id: Optional[str] = None


@dataclass(frozen=True)
class RecordCodec:
    """Bundle of converters that describe how one entity is persisted."""

    serialize: Callable[[Any], Dict[str, Any]]
    deserialize: Callable[[Mapping[str, Any]], Any]
    sort_key: Optional[Callable[[Any], int]] = field(default=None)


def find_config_file(explicit_path: Optional[Path] = None) -> Path:
    """Locate the configuration file that controls how the data layer behaves.

    If the caller provides ``explicit_path`` the value is returned immediately
    without any verification. Otherwise the function walks up from the current
    working directory toward the filesystem root looking for a file named
    ``CONFIG_FILE_NAME``; the first match is authoritative.

    Args:
        explicit_path (Path | None): Optional path to use instead of performing
            the upward search.

    Returns:
        Path: The path provided by the caller or the discovered configuration
            file.

    Raises:
        FileNotFoundError: If no ``CONFIG_FILE_NAME`` exists in the working
            directory or any of its parents.
    """

    if explicit_path:
        return explicit_path

    current = Path.cwd()
    for p in (current, *current.parents):
        candidate = p / CONFIG_FILE_NAME
        if candidate.exists():
            return candidate

    raise FileNotFoundError(
        f"Configuration file not found: {CONFIG_FILE_NAME}")


def read_config(config_path: Path) -> configparser.ConfigParser:
    """Load ``config.ini`` and return a populated ``ConfigParser`` instance.

    Args:
        config_path (Path): Path to the configuration file, relative or
            absolute. ``~`` is expanded.

    Returns:
        configparser.ConfigParser: Parser containing the raw configuration.

    Raises:
        FileNotFoundError: If ``config_path`` does not exist.
    """

    config_path = config_path.expanduser().resolve()
    if not config_path.exists():
        raise FileNotFoundError(f"Configuration file not found: {config_path}")

    parser = configparser.ConfigParser()
    parser.read(config_path, encoding="utf-8")
    return parser


def parse_settings(parser: configparser.ConfigParser, *, base_path: Optional[Path] = None) -> ConfigSettings:
    """Convert a ``ConfigParser`` into strongly typed :class:`ConfigSettings`.

    ``Storage.DataDir`` and ``Store.Name`` are required; every other entry
    falls back to the :class:`ConfigSettings` defaults. A relative data
    directory is anchored at ``base_path`` (or the working directory) and
    resolved to an absolute path. An empty ``Remote.BaseUrl`` leaves the store
    in offline mode.

    Raises:
        KeyError: If a required section or option is missing.
        ValueError: If a numeric or boolean option cannot be parsed.
    """

    try:
        data_dir_raw = parser.get("Storage", "DataDir")
        store_name = parser.get("Store", "Name")
    except (configparser.NoSectionError, configparser.NoOptionError) as exc:
        raise KeyError(f"Missing required configuration entry: {exc}") from exc

    data_dir = Path(data_dir_raw).expanduser()
    if not data_dir.is_absolute():
        if base_path is None:
            base_path = Path.cwd()
        data_dir = (base_path / data_dir).resolve()

    base_url = parser.get("Remote", "BaseUrl", fallback="").strip() or None

    return ConfigSettings(
        data_dir=data_dir,
        store_name=store_name,
        store_phone=parser.get("Store", "Phone", fallback=""),
        store_address=parser.get("Store", "Address", fallback=""),
        store_public_url=parser.get("Store", "PublicUrl", fallback=""),
        remote_base_url=base_url.rstrip("/") if base_url else None,
        remote_timeout=parser.getfloat("Remote", "Timeout", fallback=5.0),
        remote_enabled=parser.getboolean("Remote", "Enabled", fallback=True),
        max_age=parser.getfloat("Sync", "MaxAge", fallback=0.0),
        max_attempts=parser.getint("Sync", "MaxAttempts", fallback=5),
        backoff_seconds=parser.getfloat("Sync", "BackoffSeconds", fallback=2.0),
    )


class LocalStorage:
    """Persisted key-value storage holding one JSON document per key.

    Each key maps to ``<data_dir>/<key>.json``. Writes go through a temporary
    file followed by :func:`os.replace` so a crash never leaves a half-written
    document behind.
    """

    def __init__(self, data_dir: Path):
        self.data_dir = Path(data_dir).expanduser().resolve()

    def _path_for(self, key: str) -> Path:
        return self.data_dir / f"{key}.json"

    def get_item(self, key: str) -> Optional[str]:
        path = self._path_for(key)
        if not path.exists():
            return None
        return path.read_text(encoding="utf-8")

    def set_item(self, key: str, value: str) -> None:
        path = self._path_for(key)
        path.parent.mkdir(parents=True, exist_ok=True)
        tmp = path.with_suffix(".json.tmp")
        tmp.write_text(value, encoding="utf-8")
        os.replace(tmp, path)

    def remove_item(self, key: str) -> None:
        path = self._path_for(key)
        if path.exists():
            path.unlink()

    def keys(self) -> List[str]:
        if not self.data_dir.exists():
            return []
        return sorted(p.stem for p in self.data_dir.glob("*.json"))


def read_collection(storage: LocalStorage, key: str) -> List[Dict[str, Any]]:
    """Return the raw records persisted under ``key``.

    Absent keys, malformed JSON, and documents that are not arrays all yield an
    empty list. Parse failures are logged but never raised.
    """

    raw = storage.get_item(key)
    if raw is None:
        return []
    try:
        data = json.loads(raw)
    except json.JSONDecodeError as exc:
        log.warning("Discarding malformed collection under '%s': %s", key, exc)
        return []
    if not isinstance(data, list):
        log.warning("Collection under '%s' is not a list; treating as empty", key)
        return []
    return [item for item in data if isinstance(item, dict)]


def write_collection(storage: LocalStorage, key: str, records: List[Dict[str, Any]]) -> None:
    """Serialise ``records`` as a JSON array and persist it under ``key``."""

    storage.set_item(key, json.dumps(records, ensure_ascii=False, indent=2))


def _money_to_json(value: Decimal) -> Any:
    if value == value.to_integral_value():
        return int(value)
    return float(value)


def _to_decimal(raw: Any, default: str = "0") -> Decimal:
    if raw is None or raw == "":
        return Decimal(default)
    try:
        return Decimal(str(raw))
    except InvalidOperation:
        return Decimal(default)


def _to_int(raw: Any, default: int = 0) -> int:
    try:
        return int(raw)
    except (TypeError, ValueError):
        try:
            return int(float(raw))
        except (TypeError, ValueError):
            return default


def _optional_str(raw: Any) -> Optional[str]:
    if raw is None:
        return None
    return str(raw)


def _drop_none(payload: Dict[str, Any]) -> Dict[str, Any]:
    return {key: value for key, value in payload.items() if value is not None}


def serialize_variant(record: Variant) -> Dict[str, Any]:
    return {"size": record.size, "color": record.color, "stock": record.stock}


def deserialize_variant(raw: Mapping[str, Any]) -> Variant:
    return Variant(
        size=str(raw.get("size") or ""),
        color=str(raw.get("color") or ""),
        stock=_to_int(raw.get("stock")),
    )


def serialize_product(record: Product) -> Dict[str, Any]:
    """Convert a product dataclass into its camelCase JSON representation."""

    return {
        "id": record.id,
        "name": record.name,
        "price": record.price,
        "stock": record.stock,
        "variants": [serialize_variant(variant) for variant in record.variants],
        "sku": record.sku,
        "category": record.category,
        "brand": record.brand,
        "status": record.status.value,
        "importPrice": record.import_price,
        "description": record.description,
        "imageUrl": record.image_url,
        "sizes": list(record.sizes),
        "colors": list(record.colors),
    }


def deserialize_product(raw: Mapping[str, Any]) -> Product:
    """Build a :class:`Product` from a raw JSON mapping.

    Remote rows may omit optional catalog fields or carry numeric ids as
    strings; both are normalised here so the rest of the package can rely on
    consistent types.
    """

    try:
        status = ProductStatus(raw.get("status") or ProductStatus.ACTIVE.value)
    except ValueError:
        status = ProductStatus.ACTIVE
    return Product(
        id=_to_int(raw.get("id")),
        name=str(raw.get("name") or ""),
        price=str(raw.get("price") or "0"),
        stock=_to_int(raw.get("stock")),
        variants=tuple(deserialize_variant(v) for v in raw.get("variants") or () if isinstance(v, Mapping)),
        sku=str(raw.get("sku") or ""),
        category=str(raw.get("category") or ""),
        brand=str(raw.get("brand") or ""),
        status=status,
        import_price=str(raw.get("importPrice") or ""),
        description=str(raw.get("description") or ""),
        image_url=str(raw.get("imageUrl") or ""),
        sizes=tuple(str(s) for s in raw.get("sizes") or ()),
        colors=tuple(str(c) for c in raw.get("colors") or ()),
    )


def serialize_customer(record: Customer) -> Dict[str, Any]:
    return _drop_none({
        "id": record.id,
        "fullName": record.full_name,
        "email": record.email,
        "phoneNumber": record.phone_number,
        "address": record.address,
        "createdAt": record.created_at,
    })


def deserialize_customer(raw: Mapping[str, Any]) -> Customer:
    return Customer(
        id=str(raw.get("id")),
        full_name=str(raw.get("fullName") or ""),
        created_at=_to_int(raw.get("createdAt")),
        email=_optional_str(raw.get("email")),
        phone_number=_optional_str(raw.get("phoneNumber")),
        address=_optional_str(raw.get("address")),
    )


def serialize_order(record: Order) -> Dict[str, Any]:
    """Convert an order dataclass into its camelCase JSON representation.

    Money fields become JSON numbers; optional snapshot fields are omitted
    when unset so the payload matches what the remote API stores.
    """

    return _drop_none({
        "id": record.id,
        "customerId": record.customer_id,
        "customerName": record.customer_name,
        "customerContact": record.customer_contact,
        "customerAddress": record.customer_address,
        "shippingName": record.shipping_name,
        "shippingPhone": record.shipping_phone,
        "shippingAddress": record.shipping_address,
        "note": record.note,
        "productId": record.product_id,
        "productName": record.product_name,
        "productSize": record.product_size,
        "productColor": record.product_color,
        "quantity": record.quantity,
        "totalPrice": _money_to_json(record.total_price),
        "shippingFee": _money_to_json(record.shipping_fee),
        "paymentMethod": record.payment_method.value,
        "status": record.status.value,
        "timestamp": record.timestamp,
    })


def deserialize_order(raw: Mapping[str, Any]) -> Order:
    try:
        status = OrderStatus(raw.get("status") or OrderStatus.PENDING.value)
    except ValueError:
        log.warning("Unknown order status '%s' on order '%s'", raw.get("status"), raw.get("id"))
        status = OrderStatus.PENDING
    try:
        payment = PaymentMethod(raw.get("paymentMethod") or PaymentMethod.COD.value)
    except ValueError:
        payment = PaymentMethod.COD
    return Order(
        id=str(raw.get("id")),
        customer_id=str(raw.get("customerId") or ""),
        customer_name=str(raw.get("customerName") or ""),
        customer_contact=str(raw.get("customerContact") or ""),
        customer_address=str(raw.get("customerAddress") or ""),
        product_id=_to_int(raw.get("productId")),
        product_name=str(raw.get("productName") or ""),
        quantity=_to_int(raw.get("quantity")),
        total_price=_to_decimal(raw.get("totalPrice")),
        status=status,
        timestamp=_to_int(raw.get("timestamp")),
        payment_method=payment,
        shipping_fee=_to_decimal(raw.get("shippingFee")),
        product_size=_optional_str(raw.get("productSize")),
        product_color=_optional_str(raw.get("productColor")),
        shipping_name=_optional_str(raw.get("shippingName")),
        shipping_phone=_optional_str(raw.get("shippingPhone")),
        shipping_address=_optional_str(raw.get("shippingAddress")),
        note=_optional_str(raw.get("note")),
    )


def serialize_transaction(record: InventoryTransaction) -> Dict[str, Any]:
    return _drop_none({
        "id": record.id,
        "productId": record.product_id,
        "productName": record.product_name,
        "type": record.type.value,
        "quantity": record.quantity,
        "note": record.note,
        "selectedSize": record.selected_size,
        "selectedColor": record.selected_color,
        "orderId": record.order_id,
        "timestamp": record.timestamp,
    })


def deserialize_transaction(raw: Mapping[str, Any]) -> InventoryTransaction:
    try:
        transaction_type = TransactionType(raw.get("type"))
    except ValueError:
        log.warning("Unknown transaction type '%s' on '%s'", raw.get("type"), raw.get("id"))
        transaction_type = TransactionType.IMPORT
    return InventoryTransaction(
        id=str(raw.get("id")),
        product_id=_to_int(raw.get("productId")),
        product_name=str(raw.get("productName") or ""),
        type=transaction_type,
        quantity=_to_int(raw.get("quantity")),
        timestamp=_to_int(raw.get("timestamp")),
        note=_optional_str(raw.get("note")),
        selected_size=_optional_str(raw.get("selectedSize")),
        selected_color=_optional_str(raw.get("selectedColor")),
        order_id=_optional_str(raw.get("orderId")),
    )


CODECS: Dict[EntityKind, RecordCodec] = {
    EntityKind.PRODUCTS: RecordCodec(serialize_product, deserialize_product),
    EntityKind.ORDERS: RecordCodec(serialize_order, deserialize_order, lambda o: o.timestamp),
    EntityKind.TRANSACTIONS: RecordCodec(serialize_transaction, deserialize_transaction, lambda t: t.timestamp),
    EntityKind.CUSTOMERS: RecordCodec(serialize_customer, deserialize_customer, lambda c: c.created_at),
}
