import aiosqlite
import pytest

from callrelay.db import crud
from callrelay.db.database import init_schema
from callrelay.db.models import DeliveryOutcome, DispatchRequest


@pytest.mark.asyncio
async def test_call_record_roundtrip_and_order():
    db = await aiosqlite.connect(":memory:")
    db.row_factory = aiosqlite.Row
    await init_schema(db)

    first = await crud.call_record(
        db, DispatchRequest(agent="101", customer_id="12345", phone="5551234567"),
        extension_connected=True, outcome=DeliveryOutcome.SENT,
    )
    await crud.call_record(
        db, DispatchRequest(agent="999", customer_id="", phone="5550000000"),
        extension_connected=False, outcome=DeliveryOutcome.NO_EXTENSION,
    )

    calls = await crud.call_list(db)
    assert [c.agent for c in calls] == ["999", "101"]
    assert calls[1].id == first.id
    assert calls[1].extension_connected is True
    assert calls[1].result == "SENT"
    assert calls[0].extension_connected is False

    only = await crud.call_list(db, agent="101")
    assert [c.customer_id for c in only] == ["12345"]

    assert len(await crud.call_list(db, limit=1)) == 1

    await db.close()


@pytest.mark.asyncio
async def test_init_schema_is_idempotent():
    db = await aiosqlite.connect(":memory:")
    db.row_factory = aiosqlite.Row
    await init_schema(db)
    await init_schema(db)
    assert await crud.call_list(db) == []
    await db.close()


def test_calls_to_csv_header_and_flags():
    from datetime import datetime, timezone
    from callrelay.db.models import CallRecord

    ts = datetime(2026, 1, 2, 3, 4, 5, tzinfo=timezone.utc)
    text = crud.calls_to_csv([
        CallRecord(id=1, timestamp=ts, customer_id="1", phone="555,1", agent="101",
                   extension_connected=False, result="NO_EXTENSION"),
    ])
    lines = text.splitlines()
    assert lines[0] == "Timestamp,CustomerID,Phone,Agent,ExtensionConnected,Result"
    assert lines[1] == '2026-01-02T03:04:05+00:00,1,"555,1",101,NO,NO_EXTENSION'
