"""
CallRelay main entry point.

Starts a FastAPI HTTP server that:
  1. Holds one SSE channel per agent at /sse
  2. Accepts call-answered triggers from the PBX at /notify
  3. Serves health and the dispatch audit log (/health, /calls, /calls.csv)
"""
import html
import logging
import time
from contextlib import asynccontextmanager
from typing import Optional

import uvicorn
from fastapi import Depends, FastAPI, Request
from fastapi.responses import HTMLResponse, JSONResponse, StreamingResponse
from starlette.responses import Response

from callrelay.config import (
    CALLS_PAGE_LIMIT, FQDN, HOST, PORT, RELAY_VERSION, SHARED_SECRET, USE_HTTPS,
)
from callrelay.db import crud
from callrelay.db.database import close_db, get_db
from callrelay.db.models import DeliveryOutcome, DispatchRequest
from callrelay.hub.hub import InvalidRequest, NotificationHub, Unauthorized

logging.basicConfig(
    level=logging.INFO,
    format="%(asctime)s [%(levelname)s] %(name)s: %(message)s",
)
logger = logging.getLogger("callrelay")


async def record_call(request: DispatchRequest, extension_connected: bool, outcome: DeliveryOutcome) -> None:
    db = await get_db()
    await crud.call_record(db, request, extension_connected, outcome)


def create_hub() -> NotificationHub:
    return NotificationHub(secret=SHARED_SECRET, audit=record_call)


@asynccontextmanager
async def lifespan(app: FastAPI):
    await get_db()
    if getattr(app.state, "hub", None) is None:
        app.state.hub = create_hub()
    app.state.started_at = time.monotonic()
    if not SHARED_SECRET:
        logger.warning("CALLRELAY_SECRET is not set: every agent registration will be rejected")
    scheme = "https" if USE_HTTPS else "http"
    logger.info(f"CallRelay running at {scheme}://{HOST}:{PORT}")
    yield
    await app.state.hub.close()
    await close_db()


app = FastAPI(
    title="CallRelay",
    description="Relays PBX call-answered events to agent browser extensions over SSE.",
    version=RELAY_VERSION,
    lifespan=lifespan,
)
app.state.hub = None
app.state.started_at = time.monotonic()


def get_hub(request: Request) -> NotificationHub:
    hub = request.app.state.hub
    if hub is None:
        hub = request.app.state.hub = create_hub()
    return hub


# ─────────────────────────────────────────────
# Agent channels
# ─────────────────────────────────────────────

@app.get("/sse")
async def sse_channel(
    request: Request,
    agent: Optional[str] = None,
    secret: Optional[str] = None,
    hub: NotificationHub = Depends(get_hub),
):
    """Long-lived event stream for one agent. Re-registering replaces the old stream."""
    try:
        channel = await hub.register(agent, secret)
    except InvalidRequest as exc:
        return JSONResponse({"error": str(exc)}, status_code=400)
    except Unauthorized:
        return JSONResponse({"error": "Forbidden"}, status_code=403)

    async def event_stream():
        try:
            async for chunk in channel.frames(request.is_disconnected):
                yield chunk
        finally:
            await hub.unregister(channel)

    return StreamingResponse(
        event_stream(),
        media_type="text/event-stream",
        headers={
            "Cache-Control": "no-cache",
            "Connection": "keep-alive",
            "X-Accel-Buffering": "no",
            "Access-Control-Allow-Origin": "*",
        },
    )


# ─────────────────────────────────────────────
# PBX trigger
# ─────────────────────────────────────────────

_RESULT_PAGES = {
    DeliveryOutcome.SENT: ("Sent", "Customer popup sent to extension {agent}."),
    DeliveryOutcome.NO_EXTENSION: ("Not connected", "Extension {agent} is not connected. Nothing was sent."),
    DeliveryOutcome.SEND_FAILED: ("Send failed", "Extension {agent} was connected but the event could not be delivered."),
    DeliveryOutcome.NO_AGENT: ("No extension", "No extension was given. The call was logged only."),
}


def render_notify_page(request: DispatchRequest, outcome: DeliveryOutcome) -> str:
    title, message = _RESULT_PAGES[outcome]
    message = message.format(agent=html.escape(request.agent))
    return (
        "<!DOCTYPE html><html><head><meta charset='utf-8'>"
        f"<title>CallRelay - {title}</title></head><body>"
        f"<h2>{title}</h2><p>{message}</p>"
        "<ul>"
        f"<li>Customer ID: {html.escape(request.customer_id) or '-'}</li>"
        f"<li>Phone: {html.escape(request.phone) or '-'}</li>"
        f"<li>Result: {outcome.value}</li>"
        "</ul></body></html>"
    )


@app.get("/notify", response_class=HTMLResponse)
async def notify(
    customerID: str = "",
    phone: str = "",
    agent: str = "",
    hub: NotificationHub = Depends(get_hub),
):
    """Dispatch trigger. Answers 200 whatever the delivery outcome."""
    dispatch = DispatchRequest(agent=agent.strip(), customer_id=customerID.strip(), phone=phone.strip())
    try:
        outcome = await hub.dispatch(dispatch)
    except InvalidRequest as exc:
        return HTMLResponse(f"<p>{html.escape(str(exc))}</p>", status_code=400)
    return HTMLResponse(render_notify_page(dispatch, outcome))


# ─────────────────────────────────────────────
# Health check
# ─────────────────────────────────────────────

def _fmt_uptime(seconds: float) -> str:
    seconds = int(seconds)
    days, rem = divmod(seconds, 86400)
    hours, rem = divmod(rem, 3600)
    minutes, secs = divmod(rem, 60)
    if days:
        return f"{days}d {hours}h {minutes}m"
    return f"{hours}h {minutes}m {secs}s"


@app.get("/health")
async def health(request: Request, hub: NotificationHub = Depends(get_hub)):
    uptime = time.monotonic() - request.app.state.started_at
    return {
        "status": "ok",
        "service": "CallRelay",
        "version": RELAY_VERSION,
        "uptime": _fmt_uptime(uptime),
        "uptimeSeconds": int(uptime),
        "port": PORT,
        "https": USE_HTTPS,
        "fqdn": FQDN,
        "connectedOperators": await hub.registry.agents(),
    }


# ─────────────────────────────────────────────
# Audit log viewer
# ─────────────────────────────────────────────

@app.get("/calls", response_class=HTMLResponse)
async def calls_page(limit: int = CALLS_PAGE_LIMIT, agent: Optional[str] = None):
    db = await get_db()
    calls = await crud.call_list(db, limit=limit, agent=agent)
    rows = "".join(
        "<tr>"
        f"<td>{c.timestamp.isoformat()}</td>"
        f"<td>{html.escape(c.customer_id)}</td>"
        f"<td>{html.escape(c.phone)}</td>"
        f"<td>{html.escape(c.agent)}</td>"
        f"<td>{'YES' if c.extension_connected else 'NO'}</td>"
        f"<td>{c.result}</td>"
        "</tr>"
        for c in calls
    )
    header = "".join(f"<th>{h}</th>" for h in crud.CSV_HEADER)
    return (
        "<!DOCTYPE html><html><head><meta charset='utf-8'><title>CallRelay - Calls</title></head>"
        f"<body><h2>Recent calls ({len(calls)})</h2>"
        "<p><a href='/calls.csv'>Download CSV</a></p>"
        f"<table border='1'><thead><tr>{header}</tr></thead><tbody>{rows}</tbody></table>"
        "</body></html>"
    )


@app.get("/calls.csv")
async def calls_csv(limit: int = CALLS_PAGE_LIMIT, agent: Optional[str] = None):
    db = await get_db()
    calls = await crud.call_list(db, limit=limit, agent=agent)
    return Response(
        content=crud.calls_to_csv(calls),
        media_type="text/csv",
        headers={"Content-Disposition": "attachment; filename=calls.csv"},
    )


# ─────────────────────────────────────────────
# Entry point
# ─────────────────────────────────────────────

if __name__ == "__main__":
    uvicorn.run("callrelay.main:app", host=HOST, port=PORT, reload=False)
