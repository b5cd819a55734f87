"""Durable outbox for remote synchronisation.

Local mutations never talk to the remote API directly. They enqueue a
:class:`SyncTask` that is persisted next to the cached collections, and
:meth:`SyncOutbox.drain` (called by :class:`SyncWorker` or explicitly) pushes
due tasks, retrying failures with exponential backoff. A task that keeps
failing is moved to a dead-letter key after ``max_attempts`` tries.

Only the latest pending task per record is kept: re-enqueueing a record
replaces the older task, so a record is never pushed twice for one change.
"""

from __future__ import annotations

import json
import threading
import time
from dataclasses import asdict, dataclass, replace
from typing import Any, Callable, Dict, List, Mapping, Optional, Set

from . import log
from .constants import DEAD_LETTER_KEY, OUTBOX_KEY, EntityKind
from .data_manager import LocalStorage, read_collection, write_collection
from .remote import RemoteCollaborator


PUSH = "push"
DELETE = "delete"
MAX_BACKOFF_SECONDS = 300.0


@dataclass(frozen=True)
class SyncTask:
    entity: EntityKind
    action: str
    record_id: str
    payload: Optional[Dict[str, Any]]
    attempts: int = 0
    next_attempt_at: float = 0.0
    revision: int = 0
    last_error: Optional[str] = None

    @property
    def key(self) -> str:
        return f"{self.entity.value}:{self.record_id}"


@dataclass(frozen=True)
class DrainReport:
    sent: int = 0
    failed: int = 0
    dropped: int = 0


def _task_to_json(task: SyncTask) -> Dict[str, Any]:
    payload = asdict(task)
    payload["entity"] = task.entity.value
    return payload


def _task_from_json(raw: Mapping[str, Any]) -> SyncTask:
    return SyncTask(
        entity=EntityKind(raw["entity"]),
        action=str(raw["action"]),
        record_id=str(raw["record_id"]),
        payload=raw.get("payload"),
        attempts=int(raw.get("attempts", 0)),
        next_attempt_at=float(raw.get("next_attempt_at", 0.0)),
        revision=int(raw.get("revision", 0)),
        last_error=raw.get("last_error"),
    )


class SyncOutbox:
    """Persisted queue of pending remote writes."""

    def __init__(
        self,
        storage: LocalStorage,
        remote: RemoteCollaborator,
        *,
        max_attempts: int = 5,
        backoff_seconds: float = 2.0,
        clock: Callable[[], float] = time.time,
    ):
        self.storage = storage
        self.remote = remote
        self.max_attempts = max_attempts
        self.backoff_seconds = backoff_seconds
        self.clock = clock
        self._lock = threading.RLock()
        self._tasks: Dict[str, SyncTask] = {}
        self._in_flight: Set[str] = set()
        self._revision = 0
        for raw in read_collection(storage, OUTBOX_KEY):
            try:
                task = _task_from_json(raw)
            except (KeyError, ValueError) as exc:
                log.warning("Skipping unreadable outbox entry %r: %s", raw, exc)
                continue
            self._tasks[task.key] = task
            self._revision = max(self._revision, task.revision)

    def _persist(self) -> None:
        write_collection(self.storage, OUTBOX_KEY, [_task_to_json(t) for t in self._tasks.values()])

    def _enqueue(self, entity: EntityKind, action: str, record_id: Any, payload: Optional[Dict[str, Any]]) -> SyncTask:
        with self._lock:
            self._revision += 1
            task = SyncTask(
                entity=entity,
                action=action,
                record_id=str(record_id),
                payload=payload,
                revision=self._revision,
            )
            # Replacing keeps dict order stable, so the record keeps its queue slot.
            self._tasks[task.key] = task
            self._persist()
        log.debug("Queued %s of %s '%s'", action, entity.value, record_id)
        return task

    def enqueue_push(self, entity: EntityKind, record: Mapping[str, Any]) -> SyncTask:
        return self._enqueue(entity, PUSH, record.get("id"), dict(record))

    def enqueue_delete(self, entity: EntityKind, record_id: Any) -> SyncTask:
        return self._enqueue(entity, DELETE, record_id, None)

    def pending(self, entity: Optional[EntityKind] = None) -> List[SyncTask]:
        with self._lock:
            tasks = list(self._tasks.values())
        if entity is None:
            return tasks
        return [t for t in tasks if t.entity == entity]

    def dead_letters(self) -> List[SyncTask]:
        return [_task_from_json(raw) for raw in read_collection(self.storage, DEAD_LETTER_KEY)]

    def _send(self, task: SyncTask) -> bool:
        if task.action == DELETE:
            return self.remote.delete_one(task.entity, task.record_id)
        return self.remote.push_one(task.entity, task.payload or {})

    def _backoff(self, attempts: int) -> float:
        return min(self.backoff_seconds * (2 ** (attempts - 1)), MAX_BACKOFF_SECONDS)

    def drain(self, now: Optional[float] = None) -> DrainReport:
        """Push every task that is due and record the outcome.

        Remote calls run outside the queue lock. A task already being sent by
        another drain is skipped. If a record was re-enqueued while its task
        was in flight, the newer task is left untouched.
        """

        if not self.remote.online:
            return DrainReport()
        now = self.clock() if now is None else now
        with self._lock:
            due = [t for t in self._tasks.values() if t.next_attempt_at <= now and t.key not in self._in_flight]
            self._in_flight.update(t.key for t in due)
        claimed = {t.key for t in due}

        sent = failed = dropped = 0
        try:
            for task in due:
                try:
                    ok = self._send(task)
                    error = None if ok else "remote did not acknowledge"
                except Exception as exc:
                    log.exception("Unexpected error syncing %s", task.key)
                    ok, error = False, str(exc)

                with self._lock:
                    self._in_flight.discard(task.key)
                    claimed.discard(task.key)
                    current = self._tasks.get(task.key)
                    if current is None or current.revision != task.revision:
                        continue
                    if ok:
                        del self._tasks[task.key]
                        sent += 1
                    else:
                        attempts = task.attempts + 1
                        if attempts >= self.max_attempts:
                            del self._tasks[task.key]
                            self._bury(replace(task, attempts=attempts, last_error=error))
                            dropped += 1
                            log.error(
                                "Giving up on %s of %s after %d attempts: %s",
                                task.action,
                                task.key,
                                attempts,
                                error,
                            )
                        else:
                            self._tasks[task.key] = replace(
                                task,
                                attempts=attempts,
                                next_attempt_at=now + self._backoff(attempts),
                                last_error=error,
                            )
                            failed += 1
                    self._persist()
        finally:
            if claimed:
                with self._lock:
                    self._in_flight.difference_update(claimed)

        if due:
            log.info("Outbox drain: sent=%d failed=%d dropped=%d", sent, failed, dropped)
        return DrainReport(sent=sent, failed=failed, dropped=dropped)

    def _bury(self, task: SyncTask) -> None:
        dead = read_collection(self.storage, DEAD_LETTER_KEY)
        dead.append(_task_to_json(task))
        write_collection(self.storage, DEAD_LETTER_KEY, dead)


class SyncWorker(threading.Thread):
    """Daemon thread that drains the outbox every ``interval`` seconds."""

    def __init__(self, outbox: SyncOutbox, *, interval: float = 5.0):
        super().__init__(name="sigma-sync-worker", daemon=True)
        self.outbox = outbox
        self.interval = interval
        self._stop_event = threading.Event()
        self._wake_event = threading.Event()

    def run(self) -> None:
        while not self._stop_event.is_set():
            try:
                self.outbox.drain()
            except Exception:
                log.exception("Outbox drain failed")
            self._wake_event.wait(self.interval)
            self._wake_event.clear()

    def wake(self) -> None:
        self._wake_event.set()

    def stop(self, timeout: Optional[float] = None) -> None:
        self._stop_event.set()
        self._wake_event.set()
        if self.is_alive():
            self.join(timeout)


def dump_tasks(tasks: List[SyncTask]) -> str:
    """Render tasks as JSON for diagnostics output."""

    return json.dumps([_task_to_json(t) for t in tasks], ensure_ascii=False, indent=2)
