"""
CRUD operations for the CallRelay audit log.
All functions are async and receive the aiosqlite connection from the caller.
"""
import csv
import io
import logging
from datetime import datetime, timezone

import aiosqlite

from callrelay.db.models import CallRecord, DeliveryOutcome, DispatchRequest

logger = logging.getLogger(__name__)

CSV_HEADER = ["Timestamp", "CustomerID", "Phone", "Agent", "ExtensionConnected", "Result"]


def _parse_dt(s: str) -> datetime:
    return datetime.fromisoformat(s)


def _row_to_call(row) -> CallRecord:
    return CallRecord(
        id=row["id"],
        timestamp=_parse_dt(row["timestamp"]),
        customer_id=row["customer_id"],
        phone=row["phone"],
        agent=row["agent"],
        extension_connected=bool(row["extension_connected"]),
        result=row["result"],
    )


async def call_record(
    db: aiosqlite.Connection,
    request: DispatchRequest,
    extension_connected: bool,
    outcome: DeliveryOutcome,
) -> CallRecord:
    """Append one dispatch attempt to the audit log."""
    ts = (request.received_at or datetime.now(timezone.utc)).isoformat()
    async with db.execute(
        "INSERT INTO calls (timestamp, customer_id, phone, agent, extension_connected, result) "
        "VALUES (?, ?, ?, ?, ?, ?)",
        (ts, request.customer_id, request.phone, request.agent,
         1 if extension_connected else 0, outcome.value),
    ) as cur:
        call_id = cur.lastrowid
    await db.commit()
    return CallRecord(
        id=call_id,
        timestamp=_parse_dt(ts),
        customer_id=request.customer_id,
        phone=request.phone,
        agent=request.agent,
        extension_connected=extension_connected,
        result=outcome.value,
    )


async def call_list(
    db: aiosqlite.Connection,
    limit: int = 200,
    agent: str | None = None,
) -> list[CallRecord]:
    """Return audit rows newest first."""
    if agent:
        sql = "SELECT * FROM calls WHERE agent = ? ORDER BY id DESC LIMIT ?"
        params = (agent, limit)
    else:
        sql = "SELECT * FROM calls ORDER BY id DESC LIMIT ?"
        params = (limit,)
    async with db.execute(sql, params) as cur:
        rows = await cur.fetchall()
    return [_row_to_call(r) for r in rows]


def calls_to_csv(calls: list[CallRecord]) -> str:
    buf = io.StringIO()
    writer = csv.writer(buf, lineterminator="\n")
    writer.writerow(CSV_HEADER)
    for c in calls:
        writer.writerow([
            c.timestamp.isoformat(),
            c.customer_id,
            c.phone,
            c.agent,
            "YES" if c.extension_connected else "NO",
            c.result,
        ])
    return buf.getvalue()
