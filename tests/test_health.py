import pytest

from app.core.log_shipping import LogBatchQueue
from app.main import app


@pytest.mark.anyio("asyncio")
async def test_healthcheck(client):
    response = await client.get("/health")
    assert response.status_code == 200
    payload = response.json()
    assert payload["status"] == "ok"
    assert payload["db_status"] == "ok"
    assert payload["migrations_status"] == "up_to_date"
    assert isinstance(payload["scheduler_config_enabled"], bool)
    assert isinstance(payload["scheduler_running"], bool)
    assert payload["commerce_enabled"] is True
    assert "scheduler_lock" in payload


@pytest.mark.anyio("asyncio")
async def test_health_reports_gateway_secrets_without_values(client):
    payload = (await client.get("/health")).json()
    chapa = payload["chapa"]
    assert chapa["secret_key_configured"] is True
    assert chapa["mode"] == "test"
    assert chapa["webhook_secret_status"] == "ok"
    assert chapa["transfer_webhook_secret_status"] in {"ok", "fallback"}
    assert chapa["secret_fingerprints"]["webhook"].startswith("sha256:")
    assert "test-webhook-secret" not in str(payload)


@pytest.mark.anyio("asyncio")
async def test_health_degrades_on_db_failure(monkeypatch, client):
    class BrokenEngine:
        def connect(self):  # pragma: no cover - simple stub
            raise RuntimeError("DB down")

    monkeypatch.setattr("app.routers.health.get_engine", lambda: BrokenEngine())

    response = await client.get("/health")
    assert response.status_code == 200
    payload = response.json()
    assert payload["status"] == "degraded"
    assert payload["db_status"] == "error"
    assert payload["migrations_status"] == "unknown"
    assert payload["db_ok"] is False
    assert payload["migrations_ok"] is False
    assert payload["scheduler_lock"]["status"] == "unknown"


@pytest.mark.anyio("asyncio")
async def test_health_reports_log_shipping_queue(monkeypatch, client):
    queue = LogBatchQueue(lambda batch: None)
    queue.enqueue({"message": "hello"})
    monkeypatch.setattr(app.state, "log_queue", queue, raising=False)

    payload = (await client.get("/health")).json()
    assert payload["log_shipping"] == {"enabled": True, "queued": 1, "dropped": 0}
