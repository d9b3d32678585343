"""Persisted queue of mutating requests made while offline.

The queue lives in ``{storage_dir}/zyria_offline_queue.json`` as a JSON array
and is replayed in order when connectivity returns. Each replay attempts every
queued request once; a request that has failed ``max_retries`` times is dropped.
"""

from __future__ import annotations

import json
import logging
import threading
import time
import uuid
from dataclasses import dataclass, field
from pathlib import Path
from typing import Any, Callable, Dict, List, Optional, Union

import requests
from prometheus_client import Counter

logger = logging.getLogger(__name__)

OFFLINE_QUEUE_KEY = "zyria_offline_queue"
MAX_QUEUE_SIZE = 100
MAX_RETRY_COUNT = 3

OFFLINE_REPLAYS = Counter(
    "offline_queue_replays_total",
    "Queued request replays by outcome.",
    ("outcome",),
)

Notify = Callable[[str, str, str], None]


@dataclass
class QueueItem:
    id: str
    method: str
    url: str
    data: Any = None
    timestamp: float = field(default_factory=lambda: time.time() * 1000)
    retry_count: int = 0

    def to_dict(self) -> Dict[str, Any]:
        return {
            "id": self.id,
            "method": self.method,
            "url": self.url,
            "data": self.data,
            "timestamp": self.timestamp,
            "retryCount": self.retry_count,
        }

    @classmethod
    def from_dict(cls, raw: Dict[str, Any]) -> "QueueItem":
        return cls(
            id=str(raw["id"]),
            method=str(raw.get("method") or "POST").upper(),
            url=str(raw["url"]),
            data=raw.get("data"),
            timestamp=float(raw.get("timestamp") or 0),
            retry_count=int(raw.get("retryCount") or 0),
        )


@dataclass
class ReplayReport:
    succeeded: List[str] = field(default_factory=list)
    retained: List[str] = field(default_factory=list)
    dropped: List[str] = field(default_factory=list)

    @property
    def attempted(self) -> int:
        return len(self.succeeded) + len(self.retained) + len(self.dropped)


def _log_notify(level: str, title: str, description: str) -> None:
    logger.log(logging.WARNING if level in {"warning", "error"} else logging.INFO, "%s: %s", title, description)


class OfflineQueue:
    def __init__(
        self,
        storage_dir: Union[str, Path],
        *,
        session: Optional[requests.Session] = None,
        max_size: int = MAX_QUEUE_SIZE,
        max_retries: int = MAX_RETRY_COUNT,
        notify: Optional[Notify] = None,
        headers: Optional[Dict[str, str]] = None,
        timeout: float = 30.0,
    ) -> None:
        self.path = Path(storage_dir) / f"{OFFLINE_QUEUE_KEY}.json"
        self.session = session or requests.Session()
        self.max_size = max(1, max_size)
        self.max_retries = max(1, max_retries)
        self.notify = notify or _log_notify
        self.headers = dict(headers or {})
        self.timeout = timeout
        self.is_online = True
        self.was_offline = False
        self._lock = threading.RLock()
        self._processing = False
        self._items: List[QueueItem] = self._load()

    def _load(self) -> List[QueueItem]:
        if not self.path.exists():
            return []
        try:
            raw = json.loads(self.path.read_text(encoding="utf-8"))
        except (OSError, json.JSONDecodeError):
            logger.warning("offline queue unreadable path=%s; starting empty", self.path, exc_info=True)
            return []
        if not isinstance(raw, list):
            logger.warning("offline queue is not a list path=%s; starting empty", self.path)
            return []
        items: List[QueueItem] = []
        for entry in raw:
            try:
                items.append(QueueItem.from_dict(entry))
            except (KeyError, TypeError, ValueError):
                logger.warning("skipping malformed queue entry=%r", entry)
        return items[-self.max_size:]

    def _save(self) -> None:
        """Persist the queue; a failed write is logged and the in-memory queue stays authoritative."""
        payload = json.dumps([item.to_dict() for item in self._items], ensure_ascii=False)
        tmp = self.path.with_suffix(".tmp")
        try:
            self.path.parent.mkdir(parents=True, exist_ok=True)
            tmp.write_text(payload, encoding="utf-8")
            tmp.replace(self.path)
        except OSError:
            logger.warning("offline queue write failed path=%s size=%s", self.path, len(self._items), exc_info=True)

    @property
    def items(self) -> List[QueueItem]:
        with self._lock:
            return list(self._items)

    @property
    def size(self) -> int:
        return len(self._items)

    def add(self, method: str, url: str, data: Any = None) -> QueueItem:
        item = QueueItem(id=uuid.uuid4().hex, method=method.upper(), url=url, data=data)
        with self._lock:
            self._items.append(item)
            evicted = len(self._items) - self.max_size
            if evicted > 0:
                self._items = self._items[evicted:]
                logger.warning("offline queue full; evicted=%s oldest entries", evicted)
            self._save()
        logger.info("request queued id=%s method=%s url=%s size=%s", item.id, item.method, url, self.size)
        return item

    def remove(self, item_id: str) -> bool:
        with self._lock:
            before = len(self._items)
            self._items = [item for item in self._items if item.id != item_id]
            if len(self._items) == before:
                return False
            self._save()
            return True

    def clear(self) -> None:
        with self._lock:
            self._items = []
            try:
                self.path.unlink(missing_ok=True)
            except OSError:
                logger.warning("offline queue file removal failed path=%s", self.path, exc_info=True)

    def set_offline(self) -> None:
        self.is_online = False
        self.was_offline = True
        self.notify("warning", "You're offline", "Changes will be synced when your connection returns.")

    def set_online(self) -> Optional[ReplayReport]:
        self.is_online = True
        if not self.was_offline:
            return None
        self.was_offline = False
        self.notify("info", "Back online", "Syncing queued changes.")
        return self.process()

    def _send(self, item: QueueItem) -> None:
        response = self.session.request(
            item.method,
            item.url,
            json=item.data,
            headers=self.headers or None,
            timeout=self.timeout,
        )
        response.raise_for_status()

    def process(self) -> ReplayReport:
        """Replay every queued request once, in insertion order."""
        report = ReplayReport()
        with self._lock:
            if self._processing or not self._items:
                return report
            self._processing = True
            snapshot = list(self._items)
        try:
            for item in snapshot:
                try:
                    self._send(item)
                except requests.RequestException as exc:
                    item.retry_count += 1
                    if item.retry_count >= self.max_retries:
                        self._drop(item)
                        report.dropped.append(item.id)
                        OFFLINE_REPLAYS.labels(outcome="dropped").inc()
                        logger.warning(
                            "dropping queued request id=%s url=%s after %s attempts err=%s",
                            item.id,
                            item.url,
                            item.retry_count,
                            exc,
                        )
                    else:
                        report.retained.append(item.id)
                        OFFLINE_REPLAYS.labels(outcome="retained").inc()
                        logger.info("queued request failed id=%s attempt=%s err=%s", item.id, item.retry_count, exc)
                    with self._lock:
                        self._save()
                    continue
                self._drop(item)
                report.succeeded.append(item.id)
                OFFLINE_REPLAYS.labels(outcome="succeeded").inc()
        finally:
            with self._lock:
                self._processing = False

        if report.succeeded:
            self.notify("success", "Sync complete", f"Synced {len(report.succeeded)} queued request(s).")
        logger.info(
            "offline queue replay succeeded=%s retained=%s dropped=%s",
            len(report.succeeded),
            len(report.retained),
            len(report.dropped),
        )
        return report

    def _drop(self, item: QueueItem) -> None:
        with self._lock:
            self._items = [entry for entry in self._items if entry.id != item.id]
            self._save()


class OfflineAwareClient:
    """Sends requests directly when online and parks them in the queue when not."""

    def __init__(
        self,
        queue: OfflineQueue,
        session: Optional[requests.Session] = None,
        *,
        connectivity_probe: Optional[Callable[[], bool]] = None,
        timeout: float = 30.0,
    ) -> None:
        self.queue = queue
        self.session = session or queue.session
        self.connectivity_probe = connectivity_probe or (lambda: self.queue.is_online)
        self.timeout = timeout

    def _queued(self, method: str, url: str, data: Any, message: str) -> Dict[str, Any]:
        item = self.queue.add(method, url, data)
        return {"success": False, "queued": True, "queue_id": item.id, "message": message}

    def request(
        self,
        method: str,
        url: str,
        data: Any = None,
        *,
        queue_when_offline: bool = True,
    ) -> Dict[str, Any]:
        if not self.queue.is_online:
            if queue_when_offline:
                return self._queued(method, url, data, "Request queued - will be processed when online")
            raise ConnectionError("No internet connection available")

        try:
            response = self.session.request(
                method.upper(),
                url,
                json=data,
                headers=self.queue.headers or None,
                timeout=self.timeout,
            )
            response.raise_for_status()
        except requests.RequestException:
            if queue_when_offline and not self.connectivity_probe():
                logger.warning("request failed while offline; queueing method=%s url=%s", method, url)
                return self._queued(method, url, data, "Request failed - queued for retry when online")
            raise

        try:
            body: Any = response.json()
        except ValueError:
            body = response.text
        return {"success": True, "data": body}
