"""Change notifications for cached entity collections.

Consumers register a callback for one entity kind (or for every kind) and are
called after a store has persisted a new snapshot. Events carry the entity
kind and the reason for the change; listeners re-read the store themselves.
"""

from __future__ import annotations

import threading
from dataclasses import dataclass
from typing import Callable, Dict, List, Optional

from . import log
from .constants import EntityKind


@dataclass(frozen=True)
class ChangeEvent:
    entity: EntityKind
    reason: str


Listener = Callable[[ChangeEvent], None]


@dataclass(frozen=True)
class Subscription:
    """Handle returned by :meth:`EventBus.subscribe`."""

    bus: "EventBus"
    entity: Optional[EntityKind]
    listener: Listener

    def cancel(self) -> None:
        self.bus.unsubscribe(self)


class EventBus:
    """Publish/subscribe hub keyed by entity kind.

    A listener registered with ``entity=None`` receives every event. Delivery
    is synchronous, in subscription order; a listener that raises is logged and
    skipped so the remaining listeners still run.
    """

    def __init__(self) -> None:
        self._lock = threading.Lock()
        self._listeners: Dict[Optional[EntityKind], List[Listener]] = {}

    def subscribe(self, listener: Listener, entity: Optional[EntityKind] = None) -> Subscription:
        with self._lock:
            self._listeners.setdefault(entity, []).append(listener)
        return Subscription(bus=self, entity=entity, listener=listener)

    def unsubscribe(self, subscription: Subscription) -> None:
        with self._lock:
            listeners = self._listeners.get(subscription.entity, [])
            if subscription.listener in listeners:
                listeners.remove(subscription.listener)

    def publish(self, event: ChangeEvent) -> None:
        with self._lock:
            targets = list(self._listeners.get(event.entity, ())) + list(self._listeners.get(None, ()))
        log.debug("Publishing %s change (%s) to %d listeners", event.entity.value, event.reason, len(targets))
        for listener in targets:
            try:
                listener(event)
            except Exception:
                log.exception("Listener %r failed while handling %s", listener, event)
