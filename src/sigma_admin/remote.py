"""Client for the store's HTTP API, the remote copy of every collection.

Every call is best-effort: network errors, non-2xx responses, and undecodable
bodies are logged and reported as ``None`` (fetch) or ``False`` (push/delete).
Nothing here raises to the caller.
"""

from __future__ import annotations

import json
from http import HTTPStatus
from typing import Any, Dict, List, Mapping, Optional, Protocol, runtime_checkable
from urllib.error import HTTPError, URLError
from urllib.parse import quote
from urllib.request import Request, urlopen

from . import log
from .constants import REMOTE_ENDPOINTS, EntityKind


USER_AGENT = "sigma-admin/0.1"


@runtime_checkable
class RemoteCollaborator(Protocol):
    """Contract the storage layer relies on for remote persistence."""

    online: bool

    def fetch_all(self, entity: EntityKind) -> Optional[List[Dict[str, Any]]]:
        ...

    def push_one(self, entity: EntityKind, record: Mapping[str, Any]) -> bool:
        ...

    def delete_one(self, entity: EntityKind, record_id: Any) -> bool:
        ...


class OfflineRemote:
    """Stand-in used when no API is configured; never reaches the network."""

    online = False

    def fetch_all(self, entity: EntityKind) -> Optional[List[Dict[str, Any]]]:
        return None

    def push_one(self, entity: EntityKind, record: Mapping[str, Any]) -> bool:
        return False

    def delete_one(self, entity: EntityKind, record_id: Any) -> bool:
        return False


class RemoteClient:
    """JSON-over-HTTP implementation of :class:`RemoteCollaborator`.

    ``GET {base}/{endpoint}`` returns the collection, ``POST
    {base}/{endpoint}/sync`` upserts one record and answers
    ``{"success": true}``, and ``DELETE {base}/{endpoint}/{id}`` removes one.
    """

    online = True

    def __init__(self, base_url: str, *, timeout: float = 5.0):
        self.base_url = base_url.rstrip("/")
        self.timeout = timeout

    def _url(self, entity: EntityKind, *parts: str) -> str:
        segments = [REMOTE_ENDPOINTS[entity], *parts]
        return "/".join([self.base_url, *segments])

    def _request(self, url: str, *, method: str = "GET", payload: Optional[Mapping[str, Any]] = None) -> Any:
        data = None
        headers = {"Accept": "application/json", "User-Agent": USER_AGENT}
        if payload is not None:
            data = json.dumps(payload, ensure_ascii=False).encode("utf-8")
            headers["Content-Type"] = "application/json"
        req = Request(url, data=data, method=method, headers=headers)
        with urlopen(req, timeout=self.timeout) as resp:
            body = resp.read().decode("utf-8")
        return json.loads(body) if body else None

    def fetch_all(self, entity: EntityKind) -> Optional[List[Dict[str, Any]]]:
        url = self._url(entity)
        try:
            data = self._request(url)
        except HTTPError as exc:
            log.warning("Fetching %s failed with HTTP %s", entity.value, exc.code)
            return None
        except (URLError, TimeoutError, OSError, ValueError) as exc:
            log.warning("Remote unavailable while fetching %s: %s", entity.value, exc)
            return None
        if not isinstance(data, list):
            log.warning("Remote returned a non-list payload for %s", entity.value)
            return None
        log.debug("Fetched %d %s from remote", len(data), entity.value)
        return [item for item in data if isinstance(item, dict)]

    def push_one(self, entity: EntityKind, record: Mapping[str, Any]) -> bool:
        url = self._url(entity, "sync")
        try:
            data = self._request(url, method="POST", payload=record)
        except HTTPError as exc:
            log.warning("Syncing %s '%s' failed with HTTP %s", entity.value, record.get("id"), exc.code)
            return False
        except (URLError, TimeoutError, OSError, ValueError) as exc:
            log.warning("Remote unavailable while syncing %s '%s': %s", entity.value, record.get("id"), exc)
            return False
        if isinstance(data, dict) and not data.get("success", False):
            log.warning(
                "Remote rejected %s '%s': %s",
                entity.value,
                record.get("id"),
                data.get("message") or "no acknowledgement",
            )
            return False
        return True

    def delete_one(self, entity: EntityKind, record_id: Any) -> bool:
        url = self._url(entity, quote(str(record_id), safe=""))
        try:
            self._request(url, method="DELETE")
        except HTTPError as exc:
            if exc.code == HTTPStatus.NOT_FOUND:
                # Already gone remotely.
                return True
            log.warning("Deleting %s '%s' failed with HTTP %s", entity.value, record_id, exc.code)
            return False
        except (URLError, TimeoutError, OSError, ValueError) as exc:
            log.warning("Remote unavailable while deleting %s '%s': %s", entity.value, record_id, exc)
            return False
        return True
