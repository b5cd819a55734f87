"""Shared pytest fixtures and utilities for Sigma admin tests."""

from __future__ import annotations

import copy
import sys
import uuid
from dataclasses import dataclass
from datetime import UTC, datetime
from decimal import Decimal
from pathlib import Path
from typing import Any, Callable, Dict, Iterator, List, Mapping, Optional, Tuple

import pytest

# Ensure source packages are importable without installation.
PROJECT_ROOT = Path(__file__).resolve().parents[1]
SRC_DIR = PROJECT_ROOT / "src"

if str(SRC_DIR) not in sys.path:
    sys.path.insert(0, str(SRC_DIR))

from sigma_admin import core_logic, data_manager  # noqa: E402
from sigma_admin.constants import STORAGE_KEYS, EntityKind, OrderStatus, PaymentMethod  # noqa: E402

_CONFIG_TEMPLATE = (
    "[Storage]\n"
    "DataDir = {data_dir}\n\n"
    "[Store]\n"
    "Name = {store_name}\n"
    "Phone = 0912.345.678\n"
    "Address = Ha Noi, Viet Nam\n"
    "PublicUrl = https://shop.example\n\n"
    "[Remote]\n"
    "BaseUrl = {base_url}\n"
    "Timeout = 3\n\n"
    "[Sync]\n"
    "MaxAge = 60\n"
    "MaxAttempts = 3\n"
    "BackoffSeconds = 1\n"
)


@dataclass(frozen=True)
class ConfigBundle:
    """Container bundling together config metadata for tests."""

    directory: Path
    config_path: Path
    data_dir: Path
    store_name: str


class FakeRemote:
    """In-memory stand-in for the store API that records every call."""

    online = True

    def __init__(self) -> None:
        self.collections: Dict[EntityKind, List[Dict[str, Any]]] = {kind: [] for kind in EntityKind}
        self.available = True
        self.accept_writes = True
        self.pushes: List[Tuple[EntityKind, Dict[str, Any]]] = []
        self.deletes: List[Tuple[EntityKind, str]] = []
        self.fetches: List[EntityKind] = []

    def fetch_all(self, entity: EntityKind) -> Optional[List[Dict[str, Any]]]:
        self.fetches.append(entity)
        if not self.available:
            return None
        return copy.deepcopy(self.collections[entity])

    def push_one(self, entity: EntityKind, record: Mapping[str, Any]) -> bool:
        self.pushes.append((entity, dict(record)))
        if not self.accept_writes:
            return False
        rows = [r for r in self.collections[entity] if str(r.get("id")) != str(record.get("id"))]
        rows.append(copy.deepcopy(dict(record)))
        self.collections[entity] = rows
        return True

    def delete_one(self, entity: EntityKind, record_id: Any) -> bool:
        self.deletes.append((entity, str(record_id)))
        if not self.accept_writes:
            return False
        self.collections[entity] = [r for r in self.collections[entity] if str(r.get("id")) != str(record_id)]
        return True

    def pushed_ids(self, entity: EntityKind) -> List[str]:
        return [str(record.get("id")) for kind, record in self.pushes if kind == entity]


class FakeClock:
    """Manually advanced replacement for ``time.time``."""

    def __init__(self, start: float = 1_700_000_000.0) -> None:
        self.now = start

    def __call__(self) -> float:
        return self.now

    def advance(self, seconds: float) -> None:
        self.now += seconds


@pytest.fixture(scope="session", autouse=True)
def _restore_sys_path() -> Iterator[None]:
    """Ensure sys.path modifications are undone after the test session."""

    original = sys.path.copy()
    try:
        yield
    finally:
        sys.path[:] = original


@pytest.fixture
def config_factory(tmp_path: Path) -> Callable[..., ConfigBundle]:
    """Provide a callable that writes config.ini bundles on demand."""

    def _create_config(
        *,
        make_relative: bool = False,
        store_name: str = "Sigma Vie Store",
        base_url: str = "",
    ) -> ConfigBundle:
        bundle_dir = tmp_path / f"bundle_{uuid.uuid4().hex}"
        bundle_dir.mkdir(parents=True, exist_ok=True)
        data_dir = bundle_dir / "data"
        data_dir_entry = "data" if make_relative else str(data_dir)
        config_path = bundle_dir / "config.ini"
        config_path.write_text(
            _CONFIG_TEMPLATE.format(data_dir=data_dir_entry, store_name=store_name, base_url=base_url),
            encoding="utf-8",
        )
        return ConfigBundle(
            directory=bundle_dir,
            config_path=config_path,
            data_dir=data_dir,
            store_name=store_name,
        )

    return _create_config


@pytest.fixture
def config_file(config_factory: Callable[..., ConfigBundle]) -> Path:
    """Convenience fixture returning only the config path."""

    return config_factory().config_path


@pytest.fixture
def settings(tmp_path: Path) -> data_manager.ConfigSettings:
    """Provide default configuration settings for runtime context tests."""

    return data_manager.ConfigSettings(
        data_dir=tmp_path / "data",
        store_name="Sigma Vie Store",
        store_phone="0912.345.678",
        store_address="Ha Noi, Viet Nam",
        store_public_url="https://shop.example",
        remote_base_url="https://api.example",
        max_attempts=3,
        backoff_seconds=1.0,
    )


@pytest.fixture
def fake_remote() -> FakeRemote:
    return FakeRemote()


@pytest.fixture
def clock() -> FakeClock:
    return FakeClock()


@pytest.fixture
def context(settings: data_manager.ConfigSettings, fake_remote: FakeRemote, clock: FakeClock) -> core_logic.RuntimeContext:
    """Runtime context wired to the in-memory remote, without background merges."""

    return core_logic.build_runtime_context(settings, remote=fake_remote, clock=clock)


@pytest.fixture
def offline_context(settings: data_manager.ConfigSettings) -> core_logic.RuntimeContext:
    """Runtime context with no remote API configured."""

    offline = data_manager.ConfigSettings(data_dir=settings.data_dir, store_name=settings.store_name)
    return core_logic.build_runtime_context(offline)


@pytest.fixture
def set_fixed_datetime(monkeypatch: pytest.MonkeyPatch) -> Callable[[datetime], datetime]:
    """Patch ``core_logic.datetime`` to return a predetermined moment."""

    def _apply(moment: datetime) -> datetime:
        class _FixedDateTime:
            @staticmethod
            def now(tz=None):
                assert tz is UTC
                return moment

        monkeypatch.setattr(core_logic, "datetime", _FixedDateTime)
        return moment

    return _apply


# ---------------------------------------------------------------------------
# Record builders
# ---------------------------------------------------------------------------


def make_product(product_id: int = 1, *, stock: int = 10, price: str = "350.000đ", **overrides) -> data_manager.Product:
    values = dict(id=product_id, name=f"Product {product_id}", price=price, stock=stock)
    values.update(overrides)
    return data_manager.Product(**values)


def make_customer(customer_id: str = "CUST-1", **overrides) -> data_manager.Customer:
    values = dict(
        id=customer_id,
        full_name="Nguyen Van A",
        created_at=1_700_000_000_000,
        email="a@example.com",
        phone_number="0900000001",
        address="12 Hang Bac",
    )
    values.update(overrides)
    return data_manager.Customer(**values)


def make_order(order_id: str = "ORD-1-1", **overrides) -> data_manager.Order:
    values = dict(
        id=order_id,
        customer_id="CUST-1",
        customer_name="Nguyen Van A",
        customer_contact="a@example.com",
        customer_address="12 Hang Bac",
        product_id=1,
        product_name="Product 1",
        quantity=1,
        total_price=Decimal("350000"),
        status=OrderStatus.PENDING,
        timestamp=1_700_000_000_000,
        payment_method=PaymentMethod.COD,
    )
    values.update(overrides)
    return data_manager.Order(**values)


@pytest.fixture
def product_factory() -> Callable[..., data_manager.Product]:
    return make_product


@pytest.fixture
def customer_factory() -> Callable[..., data_manager.Customer]:
    return make_customer


@pytest.fixture
def order_factory() -> Callable[..., data_manager.Order]:
    return make_order


@pytest.fixture
def seed(context: core_logic.RuntimeContext) -> Callable[..., None]:
    """Write records straight into local storage, bypassing the outbox."""

    def _seed(entity: EntityKind, *records: Any) -> None:
        codec = data_manager.CODECS[entity]
        data_manager.write_collection(
            context.storage,
            STORAGE_KEYS[entity],
            [codec.serialize(record) for record in records],
        )

    return _seed
