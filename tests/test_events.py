"""Unit tests for the entity change bus."""

from __future__ import annotations

from sigma_admin.constants import EntityKind
from sigma_admin.events import ChangeEvent, EventBus


def test_entity_listeners_only_receive_their_entity():
    bus = EventBus()
    products, orders = [], []
    bus.subscribe(products.append, EntityKind.PRODUCTS)
    bus.subscribe(orders.append, EntityKind.ORDERS)

    bus.publish(ChangeEvent(EntityKind.PRODUCTS, "add"))

    assert products == [ChangeEvent(EntityKind.PRODUCTS, "add")]
    assert orders == []


def test_wildcard_listener_receives_everything_after_entity_listeners():
    bus = EventBus()
    calls = []
    bus.subscribe(lambda event: calls.append(("any", event.entity)))
    bus.subscribe(lambda event: calls.append(("orders", event.entity)), EntityKind.ORDERS)

    bus.publish(ChangeEvent(EntityKind.ORDERS, "merge"))
    bus.publish(ChangeEvent(EntityKind.CUSTOMERS, "merge"))

    assert calls == [
        ("orders", EntityKind.ORDERS),
        ("any", EntityKind.ORDERS),
        ("any", EntityKind.CUSTOMERS),
    ]


def test_cancelled_subscription_stops_delivery():
    bus = EventBus()
    received = []
    subscription = bus.subscribe(received.append, EntityKind.TRANSACTIONS)

    subscription.cancel()
    subscription.cancel()
    bus.publish(ChangeEvent(EntityKind.TRANSACTIONS, "add"))

    assert received == []


def test_failing_listener_does_not_block_others():
    bus = EventBus()
    received = []

    def _explode(event):
        raise RuntimeError("listener bug")

    bus.subscribe(_explode, EntityKind.PRODUCTS)
    bus.subscribe(received.append, EntityKind.PRODUCTS)

    bus.publish(ChangeEvent(EntityKind.PRODUCTS, "update"))

    assert received == [ChangeEvent(EntityKind.PRODUCTS, "update")]
