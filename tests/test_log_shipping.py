import json
import logging
from datetime import UTC, datetime, timedelta

import httpx
import pytest

from app.core.log_shipping import HttpLogFlusher, LogBatchQueue, QueueLogHandler


class FakeClock:
    def __init__(self) -> None:
        self.now = datetime(2026, 10, 19, 8, 0, tzinfo=UTC)

    def __call__(self) -> datetime:
        return self.now

    def advance(self, seconds: float) -> None:
        self.now += timedelta(seconds=seconds)


class RecordingFlusher:
    def __init__(self) -> None:
        self.batches: list[list[dict]] = []
        self.fail = False

    def __call__(self, batch) -> None:
        if self.fail:
            raise httpx.ConnectError("collector down")
        self.batches.append(list(batch))


@pytest.fixture
def clock() -> FakeClock:
    return FakeClock()


@pytest.fixture
def flusher() -> RecordingFlusher:
    return RecordingFlusher()


def test_flush_sends_bounded_batches_in_order(clock, flusher):
    queue = LogBatchQueue(flusher, batch_size=2, clock=clock)
    for index in range(5):
        queue.enqueue({"message": f"m{index}"})

    assert queue.flush() == 2
    assert queue.flush() == 2
    assert queue.flush() == 1
    assert queue.flush() == 0
    assert [entry["message"] for batch in flusher.batches for entry in batch] == ["m0", "m1", "m2", "m3", "m4"]
    assert flusher.batches[0][0]["_time"] == "2026-10-19T08:00:00+00:00"


def test_full_queue_drops_oldest(clock, flusher):
    queue = LogBatchQueue(flusher, batch_size=10, max_queue=3, clock=clock)
    for index in range(5):
        queue.enqueue({"message": f"m{index}"})

    assert len(queue) == 3
    assert queue.dropped == 2
    queue.flush()
    assert [entry["message"] for entry in flusher.batches[0]] == ["m2", "m3", "m4"]


def test_failed_flush_requeues_batch_at_head(clock, flusher):
    queue = LogBatchQueue(flusher, batch_size=2, clock=clock)
    for index in range(3):
        queue.enqueue({"message": f"m{index}"})

    flusher.fail = True
    assert queue.flush() == 0
    assert len(queue) == 3
    assert queue.last_flush_at is None

    flusher.fail = False
    clock.advance(5)
    assert queue.flush() == 2
    assert [entry["message"] for entry in flusher.batches[0]] == ["m0", "m1"]
    assert queue.last_flush_at == clock.now


def test_handler_captures_extras_and_masks_secrets(clock, flusher):
    queue = LogBatchQueue(flusher, clock=clock)
    handler = QueueLogHandler(queue, environment="staging")
    log = logging.getLogger("africonnect.test.shipping")
    log.addHandler(handler)
    log.setLevel(logging.INFO)
    try:
        log.info("Payment verified", extra={"tx_ref": "AC-1-ABCDEF", "authorization": "Bearer secret"})
        log.debug("ignored below handler level")
    finally:
        log.removeHandler(handler)

    queue.flush()
    (entry,) = flusher.batches[0]
    assert entry["level"] == "info"
    assert entry["message"] == "Payment verified"
    assert entry["environment"] == "staging"
    assert entry["metadata"]["tx_ref"] == "AC-1-ABCDEF"
    assert "Bearer secret" not in json.dumps(entry)


def test_handler_skips_its_own_records(clock, flusher):
    queue = LogBatchQueue(flusher, clock=clock)
    handler = QueueLogHandler(queue, environment="test")
    record = logging.makeLogRecord({"name": "app.core.log_shipping", "msg": "failed", "levelno": logging.WARNING})
    handler.emit(record)
    record = logging.makeLogRecord({"name": "httpx", "msg": "HTTP Request", "levelno": logging.INFO})
    handler.emit(record)
    assert len(queue) == 0


def test_http_flusher_posts_json_with_token():
    seen: dict = {}

    def handler(request: httpx.Request) -> httpx.Response:
        seen["auth"] = request.headers["Authorization"]
        seen["body"] = json.loads(request.content)
        return httpx.Response(204)

    flusher = HttpLogFlusher("https://logs.example.test/ingest", "tok", transport=httpx.MockTransport(handler))
    flusher([{"message": "a"}])
    flusher.close()
    assert seen == {"auth": "Bearer tok", "body": [{"message": "a"}]}


def test_http_flusher_error_keeps_entries_queued(clock):
    flusher = HttpLogFlusher(
        "https://logs.example.test/ingest",
        transport=httpx.MockTransport(lambda request: httpx.Response(500)),
    )
    queue = LogBatchQueue(flusher, clock=clock)
    queue.enqueue({"message": "a"})
    assert queue.flush() == 0
    assert len(queue) == 1
    flusher.close()
