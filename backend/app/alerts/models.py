"""
models.py — Geofenced alert entity.

Defines:
    • AlertStatus      — lifecycle states
    • AlertSeverity    — severity scale, drives priority
    • AlertType        — hazard family
    • AlertSourceType  — who raised the alert
    • DeliveryCounters — fan-out accounting (BroadcastRouter only)
    • AlertUpdate      — one entry of the update history
    • Alert            — the broadcast unit

═══════════════════════════════════════════════════════════════════════════
SEVERITY → PRIORITY
═══════════════════════════════════════════════════════════════════════════

    Severity    Priority
    ────────    ────────
    extreme     10
    critical     8
    warning      6
    advisory     4
    info         2
    (other)      5

Priority follows severity unless a caller sets it explicitly in the
same update; the explicit value wins.

═══════════════════════════════════════════════════════════════════════════
EFFECTIVENESS
═══════════════════════════════════════════════════════════════════════════

An alert is deliverable iff status == active and
effective_from ≤ now < effective_until (open-ended where unset).
"""

from __future__ import annotations

import uuid
from dataclasses import dataclass, field
from datetime import datetime, timezone
from enum import Enum
from typing import Any, Dict, List, Optional, Union

from backend.app.spatial.areas import TargetArea


# ═══════════════════════════════════════════════════════════════════════════
# Enums
# ═══════════════════════════════════════════════════════════════════════════

class AlertStatus(str, Enum):
    DRAFT            = "draft"
    PENDING_APPROVAL = "pending_approval"
    ACTIVE           = "active"
    EXPIRED          = "expired"
    CANCELLED        = "cancelled"
    UPDATED          = "updated"
    RESOLVED         = "resolved"


class AlertSeverity(str, Enum):
    INFO     = "info"
    ADVISORY = "advisory"
    WARNING  = "warning"
    CRITICAL = "critical"
    EXTREME  = "extreme"


class AlertType(str, Enum):
    EMERGENCY        = "emergency"
    WEATHER          = "weather"
    TRAFFIC          = "traffic"
    CRIME            = "crime"
    HEALTH           = "health"
    INFRASTRUCTURE   = "infrastructure"
    COMMUNITY        = "community"
    GOVERNMENT       = "government"
    AMBER            = "amber"
    SILVER           = "silver"
    BLUE             = "blue"
    EVACUATION       = "evacuation"
    SHELTER_IN_PLACE = "shelter_in_place"
    ALL_CLEAR        = "all_clear"
    OTHER            = "other"


class AlertSourceType(str, Enum):
    OFFICIAL  = "official"
    REPORT    = "report"
    AUTOMATED = "automated"
    EXTERNAL  = "external"


# Statuses that freeze everything but audit fields
IMMUTABLE_STATUSES = frozenset({AlertStatus.EXPIRED, AlertStatus.CANCELLED})

# Statuses that set is_active = False
TERMINAL_STATUSES = frozenset({
    AlertStatus.EXPIRED, AlertStatus.CANCELLED, AlertStatus.RESOLVED,
})


# ═══════════════════════════════════════════════════════════════════════════
# Severity → Priority
# ═══════════════════════════════════════════════════════════════════════════

SEVERITY_PRIORITY: Dict[AlertSeverity, int] = {
    AlertSeverity.EXTREME:  10,
    AlertSeverity.CRITICAL: 8,
    AlertSeverity.WARNING:  6,
    AlertSeverity.ADVISORY: 4,
    AlertSeverity.INFO:     2,
}
DEFAULT_PRIORITY = 5

SHORT_DESCRIPTION_LIMIT = 280


def priority_for(severity: Union[AlertSeverity, str, None]) -> int:
    """
    >>> priority_for("critical")
    8
    >>> priority_for("unheard-of")
    5
    """
    try:
        return SEVERITY_PRIORITY[AlertSeverity(severity)]
    except ValueError:
        return DEFAULT_PRIORITY


def shorten(text: str, limit: int = SHORT_DESCRIPTION_LIMIT) -> str:
    if len(text) <= limit:
        return text
    return text[: limit - 3] + "..."


# ═══════════════════════════════════════════════════════════════════════════
# Data Structures
# ═══════════════════════════════════════════════════════════════════════════

def _generate_id() -> str:
    return f"ALR-{uuid.uuid4().hex[:12].upper()}"


def _now() -> datetime:
    return datetime.now(timezone.utc)


def _iso(value: Optional[datetime]) -> Optional[str]:
    return value.isoformat() if value else None


@dataclass
class DeliveryCounters:
    """Monotonic fan-out counters. Only BroadcastRouter writes these."""
    total_targeted: int = 0
    sent: int = 0
    delivered: int = 0
    read: int = 0
    failed: int = 0

    def record_broadcast(self, targeted: int, failed: int) -> None:
        self.total_targeted += targeted
        self.sent += targeted
        self.failed += failed

    def to_dict(self) -> Dict[str, int]:
        return {
            "total_targeted": self.total_targeted,
            "sent": self.sent,
            "delivered": self.delivered,
            "read": self.read,
            "failed": self.failed,
        }


@dataclass
class AlertUpdate:
    content: str
    updated_by: Optional[str]
    updated_at: datetime
    status: Optional[AlertStatus] = None

    def to_dict(self) -> Dict[str, Any]:
        return {
            "content": self.content,
            "updated_by": self.updated_by,
            "updated_at": self.updated_at.isoformat(),
            "status": self.status.value if self.status else None,
        }


@dataclass
class Alert:
    """
    Geofenced broadcast unit.

    Attributes
    ----------
    target_area : CircleArea | PolygonArea
        Who should receive it.
    priority : int | None
        1–10. None derives it from ``severity``.
    source_report_id : str | None
        Report this alert was promoted from.
    parent_alert_id, child_alert_ids
        Follow-up chain, by id only.
    acknowledged_by : dict
        account_id → acknowledgement time.
    acked_connections : set
        Connections that confirmed transport delivery.
    """
    title: str
    target_area: TargetArea
    description: str = ""
    short_description: str = ""
    alert_type: AlertType = AlertType.OTHER
    severity: AlertSeverity = AlertSeverity.ADVISORY
    priority: Optional[int] = None
    status: AlertStatus = AlertStatus.ACTIVE
    is_active: bool = True
    alert_id: str = field(default_factory=_generate_id)
    source_type: AlertSourceType = AlertSourceType.OFFICIAL
    source_report_id: Optional[str] = None
    created_by: Optional[str] = None
    created_at: datetime = field(default_factory=_now)
    effective_from: Optional[datetime] = None
    effective_until: Optional[datetime] = None
    instructions: List[str] = field(default_factory=list)
    tags: List[str] = field(default_factory=list)
    parent_alert_id: Optional[str] = None
    child_alert_ids: List[str] = field(default_factory=list)
    updates: List[AlertUpdate] = field(default_factory=list)
    delivery: DeliveryCounters = field(default_factory=DeliveryCounters)
    acknowledged_by: Dict[str, datetime] = field(default_factory=dict)
    acked_connections: set = field(default_factory=set)
    status_changed_at: Optional[datetime] = None
    status_changed_by: Optional[str] = None
    cancellation_reason: Optional[str] = None
    metadata: Dict[str, Any] = field(default_factory=dict)

    def __post_init__(self) -> None:
        self.alert_type = AlertType(self.alert_type)
        self.severity = AlertSeverity(self.severity)
        self.status = AlertStatus(self.status)
        if self.priority is None:
            self.priority = priority_for(self.severity)
        check_priority(self.priority)
        if not self.short_description and self.description:
            self.short_description = shorten(self.description)
        if self.status in TERMINAL_STATUSES:
            self.is_active = False

    @property
    def is_immutable(self) -> bool:
        return self.status in IMMUTABLE_STATUSES

    def is_effective(self, now: datetime) -> bool:
        if self.status != AlertStatus.ACTIVE:
            return False
        start = self.effective_from or self.created_at
        if now < start:
            return False
        return self.effective_until is None or now < self.effective_until

    def is_past_window(self, now: datetime) -> bool:
        return self.effective_until is not None and now >= self.effective_until

    @property
    def acknowledgment_rate(self) -> float:
        """Acknowledgements as a percentage of confirmed deliveries."""
        if self.delivery.delivered == 0:
            return 0.0
        return len(self.acknowledged_by) / self.delivery.delivered * 100

    def to_event_payload(self) -> Dict[str, Any]:
        """Compact form pushed to live sessions."""
        return {
            "alert_id": self.alert_id,
            "title": self.title,
            "short_description": self.short_description,
            "type": self.alert_type.value,
            "severity": self.severity.value,
            "priority": self.priority,
            "status": self.status.value,
            "target_area": self.target_area.to_dict(),
            "instructions": list(self.instructions),
            "effective_until": _iso(self.effective_until),
        }

    def to_dict(self) -> Dict[str, Any]:
        return {
            "alert_id": self.alert_id,
            "title": self.title,
            "description": self.description,
            "short_description": self.short_description,
            "type": self.alert_type.value,
            "severity": self.severity.value,
            "priority": self.priority,
            "status": self.status.value,
            "is_active": self.is_active,
            "target_area": self.target_area.to_dict(),
            "source": {
                "type": self.source_type.value,
                "report_id": self.source_report_id,
            },
            "created_by": self.created_by,
            "created_at": self.created_at.isoformat(),
            "effective_from": _iso(self.effective_from),
            "effective_until": _iso(self.effective_until),
            "instructions": list(self.instructions),
            "tags": list(self.tags),
            "parent_alert_id": self.parent_alert_id,
            "child_alert_ids": list(self.child_alert_ids),
            "updates": [u.to_dict() for u in self.updates],
            "delivery": self.delivery.to_dict(),
            "acknowledgments": len(self.acknowledged_by),
            "acknowledgment_rate": round(self.acknowledgment_rate, 1),
            "status_changed_at": _iso(self.status_changed_at),
            "status_changed_by": self.status_changed_by,
            "cancellation_reason": self.cancellation_reason,
            "metadata": self.metadata,
        }


def check_priority(priority: Any) -> int:
    if isinstance(priority, bool) or not isinstance(priority, int) or not 1 <= priority <= 10:
        raise ValueError(f"priority must be an integer in 1–10, got {priority!r}")
    return priority
