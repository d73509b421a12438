"""
transport.py — Push channel to live connections.

A transport knows how to hand one JSON payload to one connection and
tells the engine when a connection goes away. ``InMemoryTransport``
records payloads per connection for development and tests; the
WebSocket transport lives in ``channels.websocket_push``.
"""

from __future__ import annotations

import logging
import threading
from abc import ABC, abstractmethod
from typing import Any, Callable, Dict, List, Optional, Set

from backend.app.core.errors import DeliveryFailedError

logger = logging.getLogger(__name__)

DisconnectHandler = Callable[[str], None]


class Transport(ABC):
    """send(connection_id, payload) plus a disconnect callback."""

    def __init__(self) -> None:
        self._on_disconnect: Optional[DisconnectHandler] = None

    def set_disconnect_handler(self, handler: Optional[DisconnectHandler]) -> None:
        self._on_disconnect = handler

    def notify_disconnect(self, connection_id: str) -> None:
        if self._on_disconnect is None:
            return
        try:
            self._on_disconnect(connection_id)
        except Exception as e:
            logger.warning(
                "Disconnect handler failed for %s: %s", connection_id, e,
                extra={"connection_id": connection_id},
            )

    @abstractmethod
    def send(self, connection_id: str, payload: Dict[str, Any], *, timeout: float) -> bool:
        """
        Push ``payload`` to one connection.

        Returns False when the connection is unknown or closed. Raises
        DeliveryFailedError or TimeoutError when the send itself fails.
        """


class InMemoryTransport(Transport):
    """Keeps an inbox per connection; failures can be scripted."""

    def __init__(self) -> None:
        super().__init__()
        self._inboxes: Dict[str, List[Dict[str, Any]]] = {}
        self._failing: Dict[str, int] = {}
        self._hanging: Set[str] = set()
        self._lock = threading.Lock()

    def connect(self, connection_id: str) -> None:
        with self._lock:
            self._inboxes.setdefault(connection_id, [])

    def close(self, connection_id: str, notify: bool = True) -> None:
        with self._lock:
            self._inboxes.pop(connection_id, None)
        if notify:
            self.notify_disconnect(connection_id)

    def fail_next(self, connection_id: str, times: int = 1) -> None:
        """Make the next ``times`` sends to this connection raise."""
        with self._lock:
            self._failing[connection_id] = times

    def hang(self, connection_id: str) -> None:
        """Make every send to this connection time out."""
        with self._lock:
            self._hanging.add(connection_id)

    def send(self, connection_id: str, payload: Dict[str, Any], *, timeout: float) -> bool:
        with self._lock:
            if connection_id in self._hanging:
                raise TimeoutError(f"send to {connection_id} exceeded {timeout}s")
            remaining = self._failing.get(connection_id, 0)
            if remaining:
                self._failing[connection_id] = remaining - 1
                raise DeliveryFailedError(connection_id)
            inbox = self._inboxes.get(connection_id)
            if inbox is None:
                return False
            inbox.append(payload)
            return True

    def inbox(self, connection_id: str) -> List[Dict[str, Any]]:
        with self._lock:
            return list(self._inboxes.get(connection_id, []))

    def connections(self) -> List[str]:
        with self._lock:
            return list(self._inboxes)
