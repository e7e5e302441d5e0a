"""Batched shipping of structured log records to an HTTP log collector."""
from __future__ import annotations

import logging
import threading
from collections import deque
from collections.abc import Callable, Sequence
from datetime import datetime
from typing import Any

import httpx

from app.utils.audit import sanitize_payload_for_audit
from app.utils.time import utcnow

logger = logging.getLogger(__name__)

Flusher = Callable[[Sequence[dict[str, Any]]], None]

DEFAULT_BATCH_SIZE = 100
DEFAULT_MAX_QUEUE = 5000

_RESERVED_ATTRS = frozenset(vars(logging.makeLogRecord({}))) | {"message", "asctime"}


class LogBatchQueue:
    """Bounded in-memory queue flushed in batches by an external tick.

    ``flush`` sends at most ``batch_size`` entries per call; when the queue is
    full the oldest entries are dropped. A failed flush puts the batch back at
    the head of the queue so the next tick retries it.
    """

    def __init__(
        self,
        flusher: Flusher,
        *,
        batch_size: int = DEFAULT_BATCH_SIZE,
        max_queue: int = DEFAULT_MAX_QUEUE,
        clock: Callable[[], datetime] = utcnow,
    ) -> None:
        self._flusher = flusher
        self._batch_size = batch_size
        self._clock = clock
        self._entries: deque[dict[str, Any]] = deque(maxlen=max_queue)
        self._lock = threading.Lock()
        self.dropped = 0
        self.last_flush_at: datetime | None = None

    def __len__(self) -> int:
        return len(self._entries)

    def enqueue(self, entry: dict[str, Any]) -> None:
        with self._lock:
            if len(self._entries) == self._entries.maxlen:
                self.dropped += 1
            entry.setdefault("_time", self._clock().isoformat())
            self._entries.append(entry)

    def _take_batch(self) -> list[dict[str, Any]]:
        with self._lock:
            count = min(self._batch_size, len(self._entries))
            return [self._entries.popleft() for _ in range(count)]

    def _requeue(self, batch: list[dict[str, Any]]) -> None:
        with self._lock:
            room = (self._entries.maxlen or 0) - len(self._entries)
            keep = batch[-room:] if room > 0 else []
            self.dropped += len(batch) - len(keep)
            self._entries.extendleft(reversed(keep))

    def flush(self) -> int:
        """Send one batch; return how many entries were delivered."""

        batch = self._take_batch()
        if not batch:
            return 0
        try:
            self._flusher(batch)
        except Exception:  # noqa: BLE001 - shipping must never break the app
            self._requeue(batch)
            # Module logger is excluded from shipping by QueueLogHandler.
            logger.warning("Log shipping failed; batch requeued", extra={"batch_size": len(batch)})
            return 0
        self.last_flush_at = self._clock()
        return len(batch)


class QueueLogHandler(logging.Handler):
    """Logging handler that turns records into JSON-able dicts on a queue."""

    def __init__(self, queue: LogBatchQueue, *, environment: str, level: int = logging.INFO) -> None:
        super().__init__(level=level)
        self.queue = queue
        self.environment = environment

    def emit(self, record: logging.LogRecord) -> None:
        if record.name == __name__ or record.name.startswith("httpx"):
            return
        try:
            extra = {
                key: value for key, value in record.__dict__.items() if key not in _RESERVED_ATTRS
            }
            entry: dict[str, Any] = {
                "level": record.levelname.lower(),
                "logger": record.name,
                "message": record.getMessage(),
                "environment": self.environment,
            }
            if extra:
                entry["metadata"] = sanitize_payload_for_audit(extra)
            if record.exc_info and record.exc_info[1] is not None:
                entry["error"] = {"type": type(record.exc_info[1]).__name__, "message": str(record.exc_info[1])}
            self.queue.enqueue(entry)
        except Exception:  # noqa: BLE001
            self.handleError(record)


class HttpLogFlusher:
    """POST batches of log entries to a collector endpoint."""

    def __init__(
        self,
        url: str,
        token: str | None = None,
        *,
        timeout: float = 5.0,
        transport: httpx.BaseTransport | None = None,
    ) -> None:
        headers = {"Content-Type": "application/json"}
        if token:
            headers["Authorization"] = f"Bearer {token}"
        self.url = url
        self._http = httpx.Client(timeout=timeout, headers=headers, transport=transport)

    def __call__(self, batch: Sequence[dict[str, Any]]) -> None:
        response = self._http.post(self.url, json=list(batch))
        response.raise_for_status()

    def close(self) -> None:
        self._http.close()


__all__ = ["HttpLogFlusher", "LogBatchQueue", "QueueLogHandler"]
