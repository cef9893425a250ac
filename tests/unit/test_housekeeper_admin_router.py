from __future__ import annotations

from types import SimpleNamespace

import pytest
from fastapi.testclient import TestClient

from apps.api_gateway.deps import runtime_dep
from apps.api_gateway.main import app
from entity_housekeeper.domain.entities import EntityId
from entity_housekeeper.domain.enums import EntityType, HousekeeperMode
from entity_housekeeper.queue import tasks as factory
from entity_housekeeper.queue.channel import InMemoryTaskChannel
from entity_housekeeper.services.housekeeper_service import HousekeeperService

HEADERS = {"X-API-Key": "svc-key"}


@pytest.fixture()
def admin(hk_settings):
    hk_settings.service_api_keys = "svc-key,other-key"
    channel = InMemoryTaskChannel(2)
    rt = SimpleNamespace(
        mode=HousekeeperMode.memory,
        channel=channel,
        housekeeper=HousekeeperService(channel),
    )
    app.dependency_overrides[runtime_dep] = lambda: rt
    try:
        yield TestClient(app), rt
    finally:
        app.dependency_overrides.clear()


def test_health_is_public() -> None:
    assert TestClient(app).get("/health").json() == {"ok": True}


def test_admin_requires_service_key(admin) -> None:
    client, _ = admin
    assert client.get("/v1/admin/housekeeper/queue").status_code == 401
    resp = client.get("/v1/admin/housekeeper/queue", headers={"X-API-Key": "nope"})
    assert resp.status_code == 401
    assert resp.json()["detail"]["code"] == "unauthorized"


def test_queue_depth(admin) -> None:
    client, rt = admin
    rt.channel.submit(factory.delete_events("t-1", EntityId(EntityType.DEVICE, "d-1")))

    resp = client.get("/v1/admin/housekeeper/queue", headers=HEADERS)
    assert resp.status_code == 200
    assert resp.json() == {
        "mode": "memory",
        "partitions": 2,
        "pending": 1,
        "delayed": 0,
        "dead_letters": 0,
    }


def test_dlq_list_and_requeue(admin) -> None:
    client, rt = admin
    task = factory.delete_telemetry("t-1", EntityId(EntityType.DEVICE, "d-1")).next_attempt("boom")
    rt.channel.dead_letter(task, reason="exhausted", error="boom")

    items = client.get("/v1/admin/housekeeper/dlq", headers=HEADERS).json()["items"]
    assert len(items) == 1
    assert items[0]["reason"] == "exhausted"
    assert items[0]["task"]["task_id"] == task.task_id

    entry_id = items[0]["entry_id"]
    resp = client.post(f"/v1/admin/housekeeper/dlq/{entry_id}/requeue", headers=HEADERS)
    assert resp.status_code == 200
    assert resp.json()["task_id"] == task.task_id

    depth = rt.channel.depth()
    assert (depth.pending, depth.dead_letters) == (1, 0)
    [delivery] = [d for p in range(2) for d in rt.channel.next_batch(p, limit=5)]
    assert delivery.task.attempt == 0
    assert delivery.task.error is None


def test_requeue_unknown_entry(admin) -> None:
    client, _ = admin
    resp = client.post("/v1/admin/housekeeper/dlq/404-0/requeue", headers=HEADERS)
    assert resp.status_code == 404


def test_requeue_keeps_malformed_entry(admin) -> None:
    client, rt = admin
    rt.channel.dead_letter_raw("{broken", reason="malformed", error="not json")
    [item] = client.get("/v1/admin/housekeeper/dlq", headers=HEADERS).json()["items"]
    assert item["task"] is None

    resp = client.post(f"/v1/admin/housekeeper/dlq/{item['entry_id']}/requeue", headers=HEADERS)
    assert resp.status_code == 422
    assert rt.channel.depth().dead_letters == 1


def test_disabled_pipeline_is_conflict(hk_settings) -> None:
    hk_settings.service_api_keys = "svc-key"
    rt = SimpleNamespace(mode=HousekeeperMode.disabled, channel=None, housekeeper=None)
    app.dependency_overrides[runtime_dep] = lambda: rt
    try:
        resp = TestClient(app).get("/v1/admin/housekeeper/dlq", headers=HEADERS)
    finally:
        app.dependency_overrides.clear()
    assert resp.status_code == 409


def test_metrics_reports_queue_depth(monkeypatch) -> None:
    channel = InMemoryTaskChannel(1)
    channel.submit(factory.delete_events("t-1", EntityId(EntityType.DEVICE, "d-1")))
    monkeypatch.setattr(
        "apps.api_gateway.main.get_runtime", lambda: SimpleNamespace(channel=channel)
    )

    body = TestClient(app).get("/metrics").text
    assert "housekeeper_queue_depth 1.0" in body
