"""
websocket_push.py — WebSocket push channel.

Delivery mechanism:
    • One Starlette ``WebSocket`` per live connection, owned by the
      ``/ws`` endpoint running on the event loop
    • Payload: the JSON event envelope, sent with ``send_json``
    • Delivery confirmation: the client answers ``{"type": "ack"}``,
      which the endpoint forwards to the engine

Fan-out runs on the router's worker threads, so each send is scheduled
onto the connection's event loop and awaited with a timeout from the
worker. Calling ``send`` from the loop thread itself would block the
loop, so it is refused.
"""

from __future__ import annotations

import asyncio
import concurrent.futures
import logging
import threading
from dataclasses import dataclass
from typing import Any, Dict, Optional

from starlette.websockets import WebSocket, WebSocketState

from backend.app.broadcast.transport import Transport
from backend.app.core.errors import DeliveryFailedError

logger = logging.getLogger(__name__)


@dataclass
class _Attached:
    websocket: WebSocket
    loop: asyncio.AbstractEventLoop


class WebSocketTransport(Transport):
    """Registry of open sockets keyed by connection id."""

    def __init__(self) -> None:
        super().__init__()
        self._sockets: Dict[str, _Attached] = {}
        self._lock = threading.Lock()

    def attach(
        self,
        connection_id: str,
        websocket: WebSocket,
        loop: Optional[asyncio.AbstractEventLoop] = None,
    ) -> None:
        loop = loop or asyncio.get_running_loop()
        with self._lock:
            self._sockets[connection_id] = _Attached(websocket, loop)

    def detach(self, connection_id: str, notify: bool = True) -> bool:
        with self._lock:
            removed = self._sockets.pop(connection_id, None) is not None
        if removed and notify:
            self.notify_disconnect(connection_id)
        return removed

    def __len__(self) -> int:
        with self._lock:
            return len(self._sockets)

    def send(self, connection_id: str, payload: Dict[str, Any], *, timeout: float) -> bool:
        with self._lock:
            attached = self._sockets.get(connection_id)
        if attached is None:
            return False
        if attached.websocket.client_state != WebSocketState.CONNECTED:
            return False

        try:
            running = asyncio.get_running_loop()
        except RuntimeError:
            running = None
        if running is attached.loop:
            raise DeliveryFailedError(
                connection_id, reason="error",
                message="WebSocket send called from the event loop thread",
            )

        future = asyncio.run_coroutine_threadsafe(
            attached.websocket.send_json(payload), attached.loop,
        )
        try:
            future.result(timeout=timeout)
        except concurrent.futures.TimeoutError:
            future.cancel()
            raise TimeoutError(f"WebSocket send to {connection_id} timed out") from None
        except Exception as exc:
            logger.warning(
                "[WS] Send to %s failed: %s", connection_id, exc,
                extra={"connection_id": connection_id},
            )
            raise DeliveryFailedError(connection_id, message=str(exc)) from exc

        logger.debug(
            "[WS] %s → %s", payload.get("event", payload.get("type")), connection_id,
            extra={"connection_id": connection_id},
        )
        return True
