"""
Shared fixtures for the CallRelay test suite.

Configuration is read at import time, so the environment is pinned here
before any ``callrelay`` module is imported: an in-memory audit database and
a known shared secret.
"""
import os

os.environ["CALLRELAY_DB"] = ":memory:"
os.environ["CALLRELAY_SECRET"] = "test-secret"

import httpx
import pytest
import pytest_asyncio

import callrelay.db.database as dbmod
from callrelay.hub.hub import NotificationHub
from callrelay.main import app, record_call

TEST_SECRET = "test-secret"


@pytest_asyncio.fixture
async def db():
    """Fresh in-memory audit database per test."""
    await dbmod.close_db()
    conn = await dbmod.get_db()
    try:
        yield conn
    finally:
        await dbmod.close_db()


@pytest_asyncio.fixture
async def hub(db):
    """Hub wired to the app and to the real audit log."""
    h = NotificationHub(secret=TEST_SECRET, audit=record_call)
    app.state.hub = h
    try:
        yield h
    finally:
        await h.close()
        app.state.hub = None


@pytest_asyncio.fixture
async def client(hub):
    transport = httpx.ASGITransport(app=app)
    async with httpx.AsyncClient(transport=transport, base_url="http://callrelay.test") as c:
        yield c
