from __future__ import annotations

import pytest
from httpx import AsyncClient

from trayflow import main


@pytest.mark.asyncio
async def test_health(client: AsyncClient) -> None:
    response = await client.get("/health")
    assert response.status_code == 200
    assert response.json()["service"] == "trayflow"


@pytest.mark.asyncio
async def test_health_ready_ok(client: AsyncClient, monkeypatch: pytest.MonkeyPatch) -> None:
    async def _ok(_app):
        return {
            "database": {"ok": True, "message": "ok"},
            "redis": {"ok": True, "message": "disabled"},
        }

    monkeypatch.setattr(main, "_run_readiness_checks", _ok)

    response = await client.get("/health/ready")
    assert response.status_code == 200
    body = response.json()
    assert body["status"] == "ok"
    assert body["checks"]["database"]["ok"] is True


@pytest.mark.asyncio
async def test_health_ready_degraded(client: AsyncClient, monkeypatch: pytest.MonkeyPatch) -> None:
    async def _bad(_app):
        return {
            "database": {"ok": False, "message": "db down"},
            "redis": {"ok": True, "message": "ok"},
        }

    monkeypatch.setattr(main, "_run_readiness_checks", _bad)

    response = await client.get("/health/ready")
    assert response.status_code == 503
    body = response.json()
    assert body["status"] == "degraded"
    assert body["checks"]["database"]["ok"] is False


@pytest.mark.asyncio
async def test_readiness_reports_unhealthy_redis(fake_redis, monkeypatch: pytest.MonkeyPatch) -> None:
    from redis.exceptions import ConnectionError as RedisConnectionError

    class _Conn:
        async def __aenter__(self):
            return self

        async def __aexit__(self, *exc):
            return False

        async def execute(self, _statement):
            return None

    class _Engine:
        def connect(self):
            return _Conn()

    fake_redis.ping.side_effect = RedisConnectionError("connection refused")
    monkeypatch.setattr(main, "engine", _Engine())
    monkeypatch.setattr(main.app.state, "redis", fake_redis, raising=False)

    checks = await main._run_readiness_checks(main.app)
    assert checks["database"]["ok"] is True
    assert checks["redis"] == {"ok": False, "message": "connection refused"}


@pytest.mark.asyncio
async def test_request_id_is_propagated(client: AsyncClient) -> None:
    request_id = "rack-7-scan"
    response = await client.get("/health", headers={"x-request-id": request_id})
    assert response.status_code == 200
    assert response.headers.get("x-request-id") == request_id


@pytest.mark.asyncio
async def test_request_id_generated_when_missing(client: AsyncClient) -> None:
    response = await client.get("/health")
    assert response.status_code == 200
    generated = response.headers.get("x-request-id")
    assert generated is not None
    assert len(generated) >= 8


@pytest.mark.asyncio
async def test_source_header_reaches_transition_service(
    client: AsyncClient, monkeypatch: pytest.MonkeyPatch
) -> None:
    from trayflow.services.transition_service import TransitionService

    captured: dict[str, object] = {}

    async def fake_advance(self, crop_ids, **kwargs):
        captured.update(kwargs)
        raise LookupError("stop here")

    monkeypatch.setattr(TransitionService, "advance", fake_advance)

    response = await client.post(
        "/api/v1/crops/advance",
        json={"crop_ids": ["5f0c3c1e-8a44-4a7e-9d55-3f6f0d7c2a10"]},
        headers={"x-trayflow-source": "rack-scanner-3"},
    )
    assert response.status_code == 404
    assert captured["source"] == "rack-scanner-3"


@pytest.mark.asyncio
async def test_source_defaults_to_api(client: AsyncClient, monkeypatch: pytest.MonkeyPatch) -> None:
    from trayflow.services.transition_service import TransitionService

    captured: dict[str, object] = {}

    async def fake_bulk(self, batch_id, **kwargs):
        captured.update(kwargs)
        raise LookupError("stop here")

    monkeypatch.setattr(TransitionService, "bulk_advance", fake_bulk)

    response = await client.post(
        "/api/v1/batches/5f0c3c1e-8a44-4a7e-9d55-3f6f0d7c2a10/advance",
        json={},
        headers={"x-trayflow-source": "   "},
    )
    assert response.status_code == 404
    assert captured["source"] == "api"
