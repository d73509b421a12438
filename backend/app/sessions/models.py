"""
models.py — Live-session snapshots.

A ``SessionHandle`` is immutable. The registry swaps in a new handle on
every mutation, so a reader holding one can never see a location paired
with another update's timestamp.
"""

from __future__ import annotations

from dataclasses import dataclass, replace
from datetime import datetime
from enum import Enum
from typing import Any, Dict, Optional

from backend.app.spatial.geo_math import Coordinate


class DisconnectReason(str, Enum):
    CLIENT_DISCONNECT = "client_disconnect"
    HEARTBEAT_TIMEOUT = "heartbeat_timeout"
    TRANSPORT_ERROR = "transport_error"
    SERVER_SHUTDOWN = "server_shutdown"


@dataclass(frozen=True)
class SessionHandle:
    """Point-in-time view of one live client connection."""
    connection_id: str
    account_id: Optional[str]
    connected_at: datetime
    last_heartbeat: datetime
    expires_at: datetime
    location: Optional[Coordinate] = None
    location_updated_at: Optional[datetime] = None
    is_active: bool = True
    disconnected_at: Optional[datetime] = None
    disconnect_reason: Optional[str] = None
    device: Optional[str] = None

    @property
    def is_anonymous(self) -> bool:
        return self.account_id is None

    @property
    def is_locatable(self) -> bool:
        """Active and has reported a position at least once."""
        return self.is_active and self.location is not None

    def evolve(self, **changes: Any) -> "SessionHandle":
        return replace(self, **changes)

    def to_dict(self) -> Dict[str, Any]:
        return {
            "connection_id": self.connection_id,
            "account_id": self.account_id,
            "location": self.location.to_dict() if self.location else None,
            "location_updated_at": (
                self.location_updated_at.isoformat() if self.location_updated_at else None
            ),
            "last_heartbeat": self.last_heartbeat.isoformat(),
            "connected_at": self.connected_at.isoformat(),
            "expires_at": self.expires_at.isoformat(),
            "is_active": self.is_active,
            "disconnected_at": (
                self.disconnected_at.isoformat() if self.disconnected_at else None
            ),
            "disconnect_reason": self.disconnect_reason,
            "device": self.device,
        }
