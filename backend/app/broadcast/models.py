"""
models.py — Delivery accounting for one publish.
"""

from __future__ import annotations

from dataclasses import dataclass, field
from datetime import datetime
from enum import Enum
from typing import Any, Dict, List, Optional


class FailureReason(str, Enum):
    SESSION_GONE = "session_gone"   # deregistered before or during delivery
    SEND_FAILED  = "send_failed"    # transport refused the payload
    TIMEOUT      = "timeout"        # no answer inside the delivery timeout
    ERROR        = "error"          # unexpected transport exception


@dataclass
class DeliveryFailure:
    connection_id: str
    reason: FailureReason
    attempts: int = 1
    detail: Optional[str] = None

    def to_dict(self) -> Dict[str, Any]:
        return {
            "connection_id": self.connection_id,
            "reason": self.reason.value,
            "attempts": self.attempts,
            "detail": self.detail,
        }


@dataclass
class DeliveryReport:
    """Counts for one ``BroadcastRouter.publish`` call."""
    event_kind: str
    entity_id: str
    targeted: int = 0
    delivered: int = 0
    failed: int = 0
    delivered_to: List[str] = field(default_factory=list)
    failures: List[DeliveryFailure] = field(default_factory=list)
    started_at: Optional[datetime] = None
    completed_at: Optional[datetime] = None

    @property
    def reach_rate(self) -> float:
        if self.targeted == 0:
            return 0.0
        return self.delivered / self.targeted

    def failures_by_reason(self) -> Dict[str, int]:
        counts: Dict[str, int] = {}
        for f in self.failures:
            counts[f.reason.value] = counts.get(f.reason.value, 0) + 1
        return counts

    def to_dict(self) -> Dict[str, Any]:
        return {
            "event": self.event_kind,
            "entity_id": self.entity_id,
            "targeted": self.targeted,
            "delivered": self.delivered,
            "failed": self.failed,
            "reach_rate": f"{self.reach_rate:.1%}",
            "failures_by_reason": self.failures_by_reason(),
            "started_at": self.started_at.isoformat() if self.started_at else None,
            "completed_at": self.completed_at.isoformat() if self.completed_at else None,
        }
