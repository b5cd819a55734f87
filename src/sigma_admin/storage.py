"""Per-entity cache stores and the merge reconciler.

A :class:`CollectionStore` owns one entity collection persisted in
:class:`~sigma_admin.data_manager.LocalStorage`. Reads return the local
snapshot immediately; when the snapshot is stale a merge with the remote copy
is scheduled in the background and its result becomes visible on the next
read (and through a :class:`~sigma_admin.events.ChangeEvent`).

Writes are applied locally under the store lock, persisted, announced on the
event bus, and queued in the :class:`~sigma_admin.sync.SyncOutbox` for the
remote API.
"""

from __future__ import annotations

import threading
import time
from concurrent.futures import Executor, Future
from typing import Any, Callable, Generic, List, Optional, TypeVar

from . import log
from .constants import STORAGE_KEYS, EntityKind
from .data_manager import CODECS, LocalStorage, read_collection, write_collection
from .events import ChangeEvent, EventBus
from .remote import RemoteCollaborator
from .sync import DELETE, PUSH, SyncOutbox


T = TypeVar("T")

# Minimum delay before a failed background merge is attempted again.
RETRY_INTERVAL_SECONDS = 30.0


class CollectionStore(Generic[T]):
    """Local cache of one entity collection kept loosely in sync with the remote API."""

    def __init__(
        self,
        entity: EntityKind,
        storage: LocalStorage,
        remote: RemoteCollaborator,
        outbox: SyncOutbox,
        bus: EventBus,
        *,
        keep_local_on_empty_remote: bool = False,
        max_age: float = 0.0,
        executor: Optional[Executor] = None,
        merge_on_read: bool = False,
        clock: Callable[[], float] = time.time,
    ):
        self.entity = entity
        self.key = STORAGE_KEYS[entity]
        self.codec = CODECS[entity]
        self.storage = storage
        self.remote = remote
        self.outbox = outbox
        self.bus = bus
        self.keep_local_on_empty_remote = keep_local_on_empty_remote
        self.max_age = max_age
        self.executor = executor
        self.merge_on_read = merge_on_read
        self.clock = clock
        self.last_synced_at: Optional[float] = None
        self._last_attempt_at: Optional[float] = None
        self._refresh_future: Optional[Future] = None
        self._lock = threading.RLock()

    # ------------------------------------------------------------------
    # Internal helpers
    # ------------------------------------------------------------------

    def _read(self) -> List[T]:
        records: List[T] = []
        for raw in read_collection(self.storage, self.key):
            try:
                records.append(self.codec.deserialize(raw))
            except (KeyError, TypeError, ValueError) as exc:
                log.warning("Skipping unreadable %s record %r: %s", self.entity.value, raw.get("id"), exc)
        return records

    def _write(self, records: List[T]) -> None:
        write_collection(self.storage, self.key, [self.codec.serialize(r) for r in records])

    def _announce(self, reason: str) -> None:
        self.bus.publish(ChangeEvent(entity=self.entity, reason=reason))

    def _sorted(self, records: List[T]) -> List[T]:
        if self.codec.sort_key is None:
            return records
        return sorted(records, key=self.codec.sort_key, reverse=True)

    @staticmethod
    def _identity(record: Any) -> str:
        return str(record.id)

    # ------------------------------------------------------------------
    # Freshness
    # ------------------------------------------------------------------

    def is_stale(self) -> bool:
        """Return ``True`` when a merge with the remote copy is due.

        ``max_age <= 0`` means "merge once per process". A failed merge is not
        retried for ``RETRY_INTERVAL_SECONDS``.
        """

        if not self.remote.online:
            return False
        now = self.clock()
        if self.last_synced_at is None:
            if self._last_attempt_at is None:
                return True
            return now - self._last_attempt_at >= RETRY_INTERVAL_SECONDS
        if self.max_age <= 0:
            return False
        return now - self.last_synced_at >= self.max_age

    def _schedule_refresh(self) -> None:
        if self.executor is None:
            return
        if self._refresh_future is not None and not self._refresh_future.done():
            return
        self._last_attempt_at = self.clock()
        log.debug("Scheduling background merge for %s", self.entity.value)
        self._refresh_future = self.executor.submit(self._background_refresh)

    def _background_refresh(self) -> None:
        try:
            self.refresh()
        except Exception:
            log.exception("Background merge of %s failed", self.entity.value)

    def _merges_inline(self) -> bool:
        return self.executor is None and self.merge_on_read and self.is_stale()

    def _inline_refresh(self) -> None:
        try:
            self.refresh()
        except Exception:
            log.exception("Merge of %s failed; serving local snapshot", self.entity.value)

    def wait_for_refresh(self, timeout: Optional[float] = None) -> None:
        """Block until an in-flight background merge (if any) has finished."""

        future = self._refresh_future
        if future is not None:
            future.result(timeout)

    # ------------------------------------------------------------------
    # Reads
    # ------------------------------------------------------------------

    def list(self) -> List[T]:
        """Return the local snapshot, scheduling a background merge when stale.

        A store built with ``merge_on_read`` and no executor merges inline
        instead and returns the merged collection.
        """

        if self._merges_inline():
            self._inline_refresh()
        with self._lock:
            snapshot = self._read()
        if self.is_stale():
            self._schedule_refresh()
        return snapshot

    def get(self, record_id: Any) -> Optional[T]:
        if self._merges_inline():
            self._inline_refresh()
        wanted = str(record_id)
        with self._lock:
            for record in self._read():
                if self._identity(record) == wanted:
                    return record
        return None

    # ------------------------------------------------------------------
    # Writes
    # ------------------------------------------------------------------

    def add(self, record: T) -> T:
        """Prepend ``record`` to the collection and queue it for the remote API."""

        with self._lock:
            records = self._read()
            records.insert(0, record)
            self._write(records)
            self.outbox.enqueue_push(self.entity, self.codec.serialize(record))
        log.info("Added %s '%s'", self.entity.value, self._identity(record))
        self._announce("add")
        return record

    def update(self, record: T) -> bool:
        """Replace the stored record with the same id; ``False`` if it is unknown."""

        return self.mutate(self._identity(record), lambda _current: record) is not None

    def mutate(self, record_id: Any, change: Callable[[T], T]) -> Optional[T]:
        """Atomically apply ``change`` to one record and persist the result.

        The read, the change, and the write happen under the store lock, so
        two concurrent mutations of the same record cannot interleave.

        Returns:
            The updated record, or ``None`` when ``record_id`` is unknown.
        """

        wanted = str(record_id)
        with self._lock:
            records = self._read()
            for index, current in enumerate(records):
                if self._identity(current) == wanted:
                    updated = change(current)
                    records[index] = updated
                    self._write(records)
                    self.outbox.enqueue_push(self.entity, self.codec.serialize(updated))
                    break
            else:
                log.warning("Cannot update unknown %s '%s'", self.entity.value, wanted)
                return None
        log.info("Updated %s '%s'", self.entity.value, wanted)
        self._announce("update")
        return updated

    def remove(self, record_id: Any) -> bool:
        wanted = str(record_id)
        with self._lock:
            records = self._read()
            remaining = [r for r in records if self._identity(r) != wanted]
            if len(remaining) == len(records):
                return False
            self._write(remaining)
            self.outbox.enqueue_delete(self.entity, record_id)
        log.info("Removed %s '%s'", self.entity.value, wanted)
        self._announce("remove")
        return True

    def push_all(self) -> int:
        """Queue every local record for the remote API; returns the count."""

        with self._lock:
            records = self._read()
            for record in records:
                self.outbox.enqueue_push(self.entity, self.codec.serialize(record))
        log.info("Queued %d %s for a full sync", len(records), self.entity.value)
        return len(records)

    # ------------------------------------------------------------------
    # Remote reconciliation
    # ------------------------------------------------------------------

    def refresh(self) -> List[T]:
        """Merge the remote collection into the local one and return the result.

        Remote records replace local records with the same id, except records
        that still have a queued local write: a pending push keeps the local
        version and a pending delete keeps the record out. Local-only records
        are queued for upload and kept after the remote ones. When the remote
        is unreachable the local snapshot is returned untouched.
        """

        self._last_attempt_at = self.clock()
        remote_raw = self.remote.fetch_all(self.entity)
        if remote_raw is None:
            log.info("No remote %s available; keeping local snapshot", self.entity.value)
            with self._lock:
                return self._read()

        remote_records = []
        for raw in remote_raw:
            try:
                remote_records.append(self.codec.deserialize(raw))
            except (KeyError, TypeError, ValueError) as exc:
                log.warning("Ignoring unreadable remote %s %r: %s", self.entity.value, raw.get("id"), exc)

        with self._lock:
            local = self._read()
            if self.keep_local_on_empty_remote and not remote_records and local:
                log.warning(
                    "Remote %s collection is empty but %d local records exist; not overwriting",
                    self.entity.value,
                    len(local),
                )
                self.last_synced_at = self.clock()
                return local

            pending = {t.record_id: t.action for t in self.outbox.pending(self.entity)}
            local_by_id = {self._identity(r): r for r in local}
            remote_ids = set()
            merged: List[T] = []
            for record in remote_records:
                identity = self._identity(record)
                remote_ids.add(identity)
                action = pending.get(identity)
                if action == DELETE:
                    continue
                if action == PUSH and identity in local_by_id:
                    merged.append(local_by_id[identity])
                else:
                    merged.append(record)

            unsynced = [r for r in local if self._identity(r) not in remote_ids]
            if unsynced:
                log.info("Found %d unsynced %s; queueing upload", len(unsynced), self.entity.value)
                for record in unsynced:
                    # A queued upload keeps its retry count.
                    if pending.get(self._identity(record)) == PUSH:
                        continue
                    self.outbox.enqueue_push(self.entity, self.codec.serialize(record))

            merged = self._sorted(merged + unsynced)
            self._write(merged)
            self.last_synced_at = self.clock()
        self._announce("merge")
        return merged

    def force_reload(self) -> List[T]:
        """Replace the local collection with the remote one, skipping the merge.

        Used when the session identity changes. If the remote is unavailable
        the local snapshot is returned unchanged.
        """

        self._last_attempt_at = self.clock()
        remote_raw = self.remote.fetch_all(self.entity)
        if remote_raw is None:
            log.warning("Force reload of %s failed; keeping local snapshot", self.entity.value)
            with self._lock:
                return self._read()

        records = [self.codec.deserialize(raw) for raw in remote_raw]
        with self._lock:
            self._write(records)
            self.last_synced_at = self.clock()
        log.info("Reloaded %d %s from remote", len(records), self.entity.value)
        self._announce("reload")
        return records
