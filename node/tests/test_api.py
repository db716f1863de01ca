"""Tests for the node's HTTP API endpoints."""

from __future__ import annotations

import json

import pytest

import crowdmesh.main as main_module
from crowdmesh.config import AppConfig
from crowdmesh.core.processor import EventProcessor
from crowdmesh.core.stats import NodeStats
from crowdmesh.queue.asyncio_queue import AsyncioEventQueue
from crowdmesh.transport.memory import InMemoryTransport


def _post(client, url, payload):
    return client.post(url, content=json.dumps(payload), headers={"content-type": "application/json"})


@pytest.fixture
async def remote_host(medium):
    """Another node on the same medium, hosting event code 1234."""
    config = AppConfig()
    node = EventProcessor(
        transport=InMemoryTransport(medium, "remote-host"),
        queue=AsyncioEventQueue(),
        stats=NodeStats(),
        config=config,
    )
    await node.host_event("1234", name="Main stage")
    yield node
    await node.close()


async def _settle(*nodes):
    nodes = (main_module.get_processor(), *nodes)
    for _ in range(50):
        handled = 0
        for node in nodes:
            handled += await node.drain()
        if handled == 0:
            return


@pytest.mark.asyncio
async def test_health(client):
    resp = await client.get("/api/v1/health")
    assert resp.status_code == 200
    data = resp.json()
    assert data["status"] == "ok"
    assert data["role"] == "idle"
    assert data["transport"] == "memory"
    assert "uptime_seconds" in data


@pytest.mark.asyncio
async def test_stats_empty(client):
    resp = await client.get("/api/v1/stats")
    assert resp.status_code == 200
    data = resp.json()
    assert data["messages_received"] == 0
    assert data["active_peers"]["total"] == 0


@pytest.mark.asyncio
async def test_config_endpoint(client):
    resp = await client.get("/api/v1/config")
    assert resp.status_code == 200
    data = resp.json()
    assert data["signal_poll_interval_ms"] == 1000
    assert data["nearby_threshold"] == -70
    assert data["history_window_ms"] == 5000


@pytest.mark.asyncio
async def test_idle_session(client):
    resp = await client.get("/api/v1/session")
    assert resp.status_code == 200
    data = resp.json()
    assert data["role"] == "idle"
    assert data["in_room"] is False
    assert data["roster"] == []


@pytest.mark.asyncio
async def test_host_event(client):
    resp = await _post(client, "/api/v1/session/host", {"event_code": "1234", "name": "Stage"})
    assert resp.status_code == 200
    assert resp.json() == {"ok": True, "role": "host", "peer_id": "api-node"}

    data = (await client.get("/api/v1/session")).json()
    assert data["role"] == "host"
    assert data["phase"] == "ADVERTISING"
    assert data["in_room"] is True
    assert data["name"] == "Stage"


@pytest.mark.asyncio
async def test_host_requires_event_code(client):
    resp = await _post(client, "/api/v1/session/host", {"name": "Stage"})
    assert resp.status_code == 422


@pytest.mark.asyncio
async def test_invalid_json(client):
    resp = await client.post(
        "/api/v1/session/host",
        content=b"not json",
        headers={"content-type": "application/json"},
    )
    assert resp.status_code == 400


@pytest.mark.asyncio
async def test_join_flow(client, remote_host):
    resp = await client.post("/api/v1/session/discover")
    assert resp.status_code == 200
    await _settle(remote_host)

    hosts = (await client.get("/api/v1/session/hosts")).json()["hosts"]
    assert hosts == [{"peer_id": "remote-host", "name": "Main stage"}]

    resp = await _post(client, "/api/v1/session/join", {"host_id": "remote-host", "event_code": "1234"})
    assert resp.status_code == 200
    assert resp.json()["phase"] == "CONNECTING"
    await _settle(remote_host)

    data = (await client.get("/api/v1/session")).json()
    assert data["in_room"] is True
    assert data["phase"] == "IN_ROOM"
    assert data["host_id"] == "remote-host"
    assert remote_host.roster() == ["api-node"]

    resp = await _post(client, "/api/v1/chat", {"text": "hello host"})
    assert resp.status_code == 200
    await _settle(remote_host)
    assert [m.text for m in remote_host.chat_messages()] == ["hello host"]

    messages = (await client.get("/api/v1/chat")).json()["messages"]
    assert [(m["text"], m["is_me"]) for m in messages] == [("hello host", True)]

    resp = await client.post("/api/v1/session/leave")
    assert resp.status_code == 200
    await _settle(remote_host)
    assert remote_host.roster() == []

    resp = await client.post("/api/v1/session/leave")
    assert resp.status_code == 409


@pytest.mark.asyncio
async def test_join_wrong_code(client, remote_host):
    await client.post("/api/v1/session/discover")
    await _settle(remote_host)
    resp = await _post(client, "/api/v1/session/join", {"host_id": "remote-host", "event_code": "9999"})
    assert resp.status_code == 200
    await _settle(remote_host)

    data = (await client.get("/api/v1/session")).json()
    assert data["in_room"] is False
    assert data["phase"] == "IDLE"
    assert data["notices"][-1]["kind"] == "rejected"


@pytest.mark.asyncio
async def test_join_requires_fields(client):
    await client.post("/api/v1/session/discover")
    resp = await _post(client, "/api/v1/session/join", {"host_id": "remote-host"})
    assert resp.status_code == 422


@pytest.mark.asyncio
async def test_join_unknown_host_fails(client):
    await client.post("/api/v1/session/discover")
    resp = await _post(client, "/api/v1/session/join", {"host_id": "nobody", "event_code": "1234"})
    assert resp.status_code == 502


@pytest.mark.asyncio
async def test_wrong_state_conflicts(client):
    assert (await client.get("/api/v1/session/hosts")).status_code == 409
    resp = await _post(client, "/api/v1/session/join", {"host_id": "x", "event_code": "1234"})
    assert resp.status_code == 409
    assert (await client.post("/api/v1/session/close")).status_code == 409
    assert (await client.post("/api/v1/session/leave")).status_code == 409
    assert (await _post(client, "/api/v1/chat", {"text": "anyone?"})).status_code == 409


@pytest.mark.asyncio
async def test_close_hosted_event(client):
    await _post(client, "/api/v1/session/host", {"event_code": "1234"})
    resp = await client.post("/api/v1/session/close")
    assert resp.status_code == 200
    data = (await client.get("/api/v1/session")).json()
    assert data["phase"] == "CLOSED"
    assert data["in_room"] is False
    assert (await client.post("/api/v1/session/close")).status_code == 409


@pytest.mark.asyncio
async def test_end_session(client):
    await _post(client, "/api/v1/session/host", {"event_code": "1234"})
    resp = await client.post("/api/v1/session/end")
    assert resp.status_code == 200
    assert (await client.get("/api/v1/session")).json()["role"] == "idle"


@pytest.mark.asyncio
async def test_chat_requires_text(client):
    await _post(client, "/api/v1/session/host", {"event_code": "1234"})
    assert (await _post(client, "/api/v1/chat", {})).status_code == 422
    assert (await _post(client, "/api/v1/chat", {"text": "  "})).status_code == 422


@pytest.mark.asyncio
async def test_crowd_endpoints_empty(client):
    alert = (await client.get("/api/v1/crowd/alert")).json()
    assert alert["detected"] is False
    assert alert["total_nearby"] == 0

    peers = (await client.get("/api/v1/crowd/peers")).json()
    assert peers == {"peers": [], "strengths": {}}


@pytest.mark.asyncio
async def test_share_gps_shows_on_map(client):
    await _post(client, "/api/v1/session/host", {"event_code": "1234"})
    resp = await _post(client, "/api/v1/location/gps", {"latitude": 45.5, "longitude": -73.6, "accuracy": 4})
    assert resp.status_code == 200
    assert resp.json() == {"ok": True, "participating": True, "sharing_gps": True}

    geo = (await client.get("/api/v1/positions")).json()
    assert geo["type"] == "FeatureCollection"
    [feature] = geo["features"]
    assert feature["geometry"]["coordinates"] == [-73.6, 45.5]
    assert feature["properties"]["peer_id"] == "api-node"
    assert feature["properties"]["source"] == "gps"

    resp = await client.delete("/api/v1/location/gps")
    assert resp.json() == {"ok": True, "participating": True, "sharing_gps": False}
    assert (await client.get("/api/v1/positions")).json()["features"] == []

    resp = await client.delete("/api/v1/location/participate")
    assert resp.json() == {"ok": True, "participating": False, "sharing_gps": False}


@pytest.mark.asyncio
async def test_share_gps_validation(client):
    assert (await _post(client, "/api/v1/location/gps", {"latitude": 45.5})).status_code == 422
    resp = await _post(client, "/api/v1/location/gps", {"latitude": 95.0, "longitude": 0})
    assert resp.status_code == 422
    resp = await _post(client, "/api/v1/location/gps", {"latitude": "45", "longitude": "0"})
    assert resp.status_code == 422


@pytest.mark.asyncio
async def test_participate(client):
    resp = await client.post("/api/v1/location/participate")
    assert resp.status_code == 200
    assert resp.json() == {"ok": True, "participating": True, "sharing_gps": False}
