"""
HTTP tests for the CallRelay endpoints, run in-process through httpx's
ASGI transport against an in-memory audit database.
"""
import asyncio
import csv
import io
import json

import pytest

from conftest import TEST_SECRET
from callrelay.hub.channel import ChannelState


async def _wait_registered(hub, agent: str) -> None:
    for _ in range(200):
        if agent in hub.registry:
            return
        await asyncio.sleep(0.01)
    raise AssertionError(f"agent {agent} never registered")


async def _calls_csv(client) -> list[dict]:
    r = await client.get("/calls.csv")
    assert r.status_code == 200
    return list(csv.DictReader(io.StringIO(r.text)))


# ─────────────────────────────────────────────
# /sse
# ─────────────────────────────────────────────

@pytest.mark.asyncio
async def test_sse_missing_agent_is_400(client, hub):
    r = await client.get("/sse", params={"secret": TEST_SECRET})
    assert r.status_code == 400
    assert len(hub.registry) == 0


@pytest.mark.asyncio
async def test_sse_bad_secret_is_403(client, hub):
    r = await client.get("/sse", params={"agent": "101", "secret": "nope"})
    assert r.status_code == 403
    assert len(hub.registry) == 0


@pytest.mark.asyncio
async def test_sse_stream_ends_when_agent_reregisters(client, hub):
    pending = asyncio.create_task(
        client.get("/sse", params={"agent": "101", "secret": TEST_SECRET})
    )
    await _wait_registered(hub, "101")
    first = await hub.registry.get("101")

    newer = await hub.register("101", TEST_SECRET)
    resp = await asyncio.wait_for(pending, 5)

    assert resp.status_code == 200
    assert resp.headers["content-type"].startswith("text/event-stream")
    assert resp.text.startswith("retry: ")
    assert "event: connected\n" in resp.text
    assert first.state is ChannelState.CLOSED
    # The old stream's teardown must not evict the newer registration.
    assert await hub.registry.get("101") is newer


# ─────────────────────────────────────────────
# /notify
# ─────────────────────────────────────────────

@pytest.mark.asyncio
async def test_notify_requires_customer_or_phone(client):
    r = await client.get("/notify", params={"agent": "101"})
    assert r.status_code == 400
    assert await _calls_csv(client) == []


@pytest.mark.asyncio
async def test_notify_delivers_to_connected_agent(client, hub):
    channel = await hub.register("101", TEST_SECRET)
    chunks: list[str] = []

    async def reader():
        async for chunk in channel.frames():
            chunks.append(chunk)

    task = asyncio.create_task(reader())

    r = await client.get("/notify", params={"agent": "101", "customerID": "12345", "phone": "5551234567"})
    assert r.status_code == 200
    assert "text/html" in r.headers["content-type"]
    assert "SENT" in r.text

    await hub.unregister(channel)
    await asyncio.wait_for(task, 1)
    events = [c for c in chunks if c.startswith("event: openCustomer\n")]
    assert len(events) == 1
    payload = json.loads(events[0].split("data: ", 1)[1])
    assert {k: payload[k] for k in ("type", "customerID", "phone", "agent")} == {
        "type": "openCustomer",
        "customerID": "12345",
        "phone": "5551234567",
        "agent": "101",
    }

    [row] = await _calls_csv(client)
    assert row["Agent"] == "101"
    assert row["ExtensionConnected"] == "YES"
    assert row["Result"] == "SENT"


@pytest.mark.asyncio
async def test_notify_reaches_agent_registered_over_sse(client, hub):
    stream = asyncio.create_task(
        client.get("/sse", params={"agent": "101", "secret": TEST_SECRET})
    )
    await _wait_registered(hub, "101")
    channel = await hub.registry.get("101")

    r = await client.get("/notify", params={"agent": "101", "customerID": "12345", "phone": "5551234567"})
    assert r.status_code == 200
    assert "Result: SENT" in r.text

    # End the stream the way a dropped transport does; the /sse handler unregisters.
    channel.close()
    resp = await asyncio.wait_for(stream, 5)
    assert resp.status_code == 200
    assert "101" not in hub.registry

    frames = resp.text.split("\n\n")
    assert frames[0].startswith("retry: ")
    assert frames[1].startswith("event: connected\n")
    [event] = [f for f in frames if f.startswith("event: openCustomer\n")]
    payload = json.loads(event.split("data: ", 1)[1])
    assert {k: payload[k] for k in ("type", "customerID", "phone", "agent")} == {
        "type": "openCustomer",
        "customerID": "12345",
        "phone": "5551234567",
        "agent": "101",
    }

    [row] = await _calls_csv(client)
    assert (row["Agent"], row["ExtensionConnected"], row["Result"]) == ("101", "YES", "SENT")

    r = await client.get("/notify", params={"agent": "101", "customerID": "12345"})
    assert "not connected" in r.text


@pytest.mark.asyncio
async def test_notify_unknown_agent_is_200_not_connected(client):
    r = await client.get("/notify", params={"agent": "999", "phone": "5550000000"})
    assert r.status_code == 200
    assert "not connected" in r.text

    rows = await _calls_csv(client)
    assert len(rows) == 1
    assert rows[0]["Agent"] == "999"
    assert rows[0]["Phone"] == "5550000000"
    assert rows[0]["ExtensionConnected"] == "NO"
    assert rows[0]["Result"] == "NO_EXTENSION"


@pytest.mark.asyncio
async def test_notify_without_agent_is_logged_only(client):
    r = await client.get("/notify", params={"phone": "5550000000"})
    assert r.status_code == 200
    rows = await _calls_csv(client)
    assert rows[0]["Result"] == "NO_AGENT"


@pytest.mark.asyncio
async def test_notify_escapes_echoed_values(client):
    r = await client.get("/notify", params={"agent": "<b>1</b>", "customerID": "<script>"})
    assert r.status_code == 200
    assert "<script>" not in r.text
    assert "&lt;script&gt;" in r.text


# ─────────────────────────────────────────────
# /health and /calls
# ─────────────────────────────────────────────

@pytest.mark.asyncio
async def test_health_reports_connected_operators(client, hub):
    await hub.register("102", TEST_SECRET)
    await hub.register("101", TEST_SECRET)

    r = await client.get("/health")
    assert r.status_code == 200
    body = r.json()
    assert body["status"] == "ok"
    assert body["connectedOperators"] == ["101", "102"]
    assert body["https"] is False
    assert isinstance(body["port"], int)
    assert body["fqdn"]
    assert body["uptimeSeconds"] >= 0


@pytest.mark.asyncio
async def test_calls_page_lists_newest_first(client):
    await client.get("/notify", params={"agent": "1", "phone": "5550001111"})
    await client.get("/notify", params={"agent": "2", "phone": "5550002222"})

    r = await client.get("/calls")
    assert r.status_code == 200
    assert r.text.index("5550002222") < r.text.index("5550001111")

    rows = await _calls_csv(client)
    assert [row["Phone"] for row in rows] == ["5550002222", "5550001111"]

    r = await client.get("/calls.csv", params={"agent": "1"})
    assert [row["Agent"] for row in csv.DictReader(io.StringIO(r.text))] == ["1"]
