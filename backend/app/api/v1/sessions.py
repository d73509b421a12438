"""
FastAPI route: Live sessions.

Provides endpoints to:
    WS   /ws                      — live session (location / ping / ack)
    POST /api/v1/population       — who is inside an area right now
    GET  /api/v1/sessions/stats   — registry counters

WebSocket message protocol (client → server):

    {"type": "location", "latitude": 13.08, "longitude": 80.27}
    {"type": "ping"}
    {"type": "ack", "alert_id": "ALR-..."}
    {"type": "subscribe", "report_id": "RPT-..."}
    {"type": "unsubscribe", "report_id": "RPT-..."}

Server → client: ``connected``, ``location_ack``, ``pong``,
``ack_received``, ``subscribed``, ``unsubscribed``, ``error`` and
broadcast ``event`` envelopes. A subscribed connection receives the
report's verification and moderation events wherever it is.
"""

from __future__ import annotations

import logging
import uuid
from typing import Any, Dict

from fastapi import APIRouter, Depends, WebSocket, WebSocketDisconnect

from backend.app.api.deps import engine_dep
from backend.app.api.schemas import PopulationRequest, PopulationResponse
from backend.app.broadcast.channels.websocket_push import WebSocketTransport
from backend.app.core.config import settings
from backend.app.core.errors import BroadcastEngineError
from backend.app.core.middleware import ACCOUNT_HEADER
from backend.app.services.engine import BroadcastEngine, get_engine
from backend.app.sessions.models import DisconnectReason
from backend.app.spatial.geo_math import Coordinate

logger = logging.getLogger(__name__)

router = APIRouter(tags=["sessions"])


@router.post(
    "/api/v1/population",
    response_model=PopulationResponse,
    summary="Population estimate for an area",
    description="Active sessions inside a circle or polygon, and distinct accounts among them.",
)
def population(request: PopulationRequest, engine: BroadcastEngine = Depends(engine_dep)):
    area = request.area.to_area(settings.DEFAULT_ALERT_RADIUS_KM)
    return engine.population_in_area(area).to_dict()


@router.get("/api/v1/sessions/stats", summary="Session registry counters")
def session_stats(engine: BroadcastEngine = Depends(engine_dep)):
    return engine.registry.stats()


# ---------------------------------------------------------------------------
# WebSocket
# ---------------------------------------------------------------------------

def _handle_message(
    engine: BroadcastEngine,
    connection_id: str,
    message: Dict[str, Any],
) -> Dict[str, Any]:
    kind = message.get("type")
    if kind == "location":
        handle = engine.on_location_update(
            connection_id, Coordinate.of(message),
        )
        return {"type": "location_ack", "location": handle.location.to_dict()}
    if kind == "ping":
        handle = engine.on_heartbeat(connection_id)
        return {"type": "pong", "expires_at": handle.expires_at.isoformat()}
    if kind == "ack":
        engine.on_delivery_ack(str(message.get("alert_id")), connection_id)
        return {"type": "ack_received", "alert_id": message.get("alert_id")}
    if kind == "subscribe":
        report_id = str(message.get("report_id"))
        engine.follow_report(connection_id, report_id)
        return {"type": "subscribed", "report_id": report_id}
    if kind == "unsubscribe":
        report_id = str(message.get("report_id"))
        engine.unfollow_report(connection_id, report_id)
        return {"type": "unsubscribed", "report_id": report_id}
    return {"type": "error", "code": "UNKNOWN_MESSAGE", "message": f"Unknown message type: {kind!r}"}


@router.websocket("/ws")
async def live_session(websocket: WebSocket):
    engine = get_engine()
    transport = engine.transport
    if not isinstance(transport, WebSocketTransport):
        await websocket.close(code=1011, reason="WebSocket transport not configured")
        return

    await websocket.accept()
    connection_id = f"CONN-{uuid.uuid4().hex[:12].upper()}"
    account = websocket.headers.get(ACCOUNT_HEADER) or websocket.query_params.get("account_id")

    engine.on_connect(connection_id, account, device=websocket.headers.get("user-agent"))
    transport.attach(connection_id, websocket)
    await websocket.send_json({"type": "connected", "connection_id": connection_id})

    reason = DisconnectReason.CLIENT_DISCONNECT
    try:
        while True:
            message = await websocket.receive_json()
            try:
                reply = _handle_message(engine, connection_id, message)
            except (BroadcastEngineError, ValueError) as e:
                code = getattr(e, "error_code", "INVALID_MESSAGE")
                reply = {"type": "error", "code": code, "message": str(e)}
            await websocket.send_json(reply)
    except WebSocketDisconnect:
        pass
    except Exception as e:
        reason = DisconnectReason.TRANSPORT_ERROR
        logger.warning(
            "Live session %s failed: %s", connection_id, e,
            extra={"connection_id": connection_id},
        )
    finally:
        transport.detach(connection_id, notify=False)
        engine.release_connection(connection_id, reason)
