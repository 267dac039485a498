from __future__ import annotations

import base64
import json

import pytest
from httpx import ASGITransport, AsyncClient

from runnernotify.apps.api.deps import get_db
from runnernotify.apps.api.main import create_app
from runnernotify.core.config import get_settings
from runnernotify.persistence.repos.notification_queue import list_entries_for_user
from runnernotify.persistence.repos.users import get_user
from runnernotify.services.notifications.dispatcher import Dispatcher
from runnernotify.tests.utils.factories import RecordingTransport, create_user


def _segment(value: dict) -> str:
    return base64.urlsafe_b64encode(json.dumps(value).encode("utf-8")).decode("ascii").rstrip("=")


@pytest.fixture
def transport() -> RecordingTransport:
    return RecordingTransport()


@pytest.fixture
def app(session_factory, transport):
    dispatcher = Dispatcher(session_factory=session_factory, transport=transport)
    app = create_app(dispatcher=dispatcher)

    async def _get_db():
        async with session_factory() as session:
            yield session

    app.dependency_overrides[get_db] = _get_db
    return app


@pytest.fixture
async def client(app):
    async with AsyncClient(transport=ASGITransport(app=app), base_url="http://test") as client:
        yield client


@pytest.mark.asyncio
async def test_webhook_envelope_enables_and_welcomes(client, session_factory) -> None:
    async with session_factory() as session:
        await create_user(session, 21, enabled=False, token=None, url=None)
    body = {
        "header": _segment({"fid": 21, "type": "app_key", "key": "0x01"}),
        "payload": _segment(
            {
                "event": "notifications_enabled",
                "notificationDetails": {"token": "tok-21", "url": "https://push.example.test/notify"},
            }
        ),
        "signature": "unused",
    }

    resp = await client.post("/notification-service/webhook", json=body, headers={"X-Request-Id": "req-1"})

    assert resp.status_code == 200
    assert resp.json() == {"success": True, "processed": True, "status": "enabled", "request_id": "req-1"}
    async with session_factory() as session:
        user = await get_user(session, 21)
        entries = await list_entries_for_user(session, 21)
    assert user.notification_token == "tok-21"
    assert [entry.idempotency_key for entry in entries] == ["welcome_21"]


@pytest.mark.asyncio
async def test_webhook_answers_200_for_garbage(client) -> None:
    resp = await client.post(
        "/notification-service/webhook",
        content=b"not json",
        headers={"Content-Type": "application/json"},
    )

    assert resp.status_code == 200
    payload = resp.json()
    assert payload["success"] is True
    assert payload["processed"] is False
    assert payload["status"] == "rejected"


@pytest.mark.asyncio
async def test_manual_triggers_queue_and_dispatch(client, session_factory, transport) -> None:
    async with session_factory() as session:
        await create_user(session, 22)

    queued = await client.post("/notification-service/dev/trigger-daily-reminders")
    processed = await client.post("/notification-service/dev/process-queue")
    health = await client.get("/notification-service/health")

    assert queued.status_code == 200
    assert queued.json()["result"]["queued"] == 1
    assert processed.status_code == 200
    assert processed.json()["result"]["sent"] == 1
    assert len(transport.calls) == 1
    assert health.json()["queue"]["sent"] == 1
    assert health.json()["environment"] == "dev"


@pytest.mark.asyncio
async def test_send_welcome_reports_unknown_user(client) -> None:
    resp = await client.post("/notification-service/dev/send-welcome/404")

    assert resp.status_code == 404
    assert resp.json()["error"]["code"] == "USER_NOT_FOUND"


@pytest.mark.asyncio
async def test_manual_triggers_are_forbidden_in_production(
    client, transport, monkeypatch: pytest.MonkeyPatch
) -> None:
    monkeypatch.setenv("ENVIRONMENT", "prod")
    get_settings.cache_clear()

    for path in [
        "/notification-service/dev/trigger-daily-reminders",
        "/notification-service/dev/trigger-evening-reminders",
        "/notification-service/dev/trigger-weekly-achievements",
        "/notification-service/dev/process-queue",
        "/notification-service/dev/cleanup",
        "/notification-service/dev/send-welcome/1",
    ]:
        resp = await client.post(path)
        assert resp.status_code == 403
        assert resp.json()["error"]["code"] == "MANUAL_TRIGGER_FORBIDDEN"
    assert transport.calls == []
