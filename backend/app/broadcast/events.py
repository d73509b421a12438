"""
events.py — Tagged union of broadcastable events.

Each event kind carries its own audience rule:

    Event              Entity    Audience
    ───────────────    ──────    ────────────────────────────────────
    NewReport          report    circle of NEW_REPORT_RADIUS_KM around it
    ReportVerified     report    same, plus the report's followers
    ReportModerated    report    same, plus the report's followers
    AlertCreated       alert     the alert's own target area
    AlertUpdated       alert     the alert's own target area
    AlertCancelled     alert     the alert's own target area

All of them go through the single ``BroadcastRouter.publish`` entry point.
"""

from __future__ import annotations

from dataclasses import dataclass
from datetime import datetime
from enum import Enum
from typing import Any, ClassVar, Dict, Optional

from backend.app.alerts.models import Alert
from backend.app.reports.models import Report
from backend.app.spatial.areas import CircleArea, TargetArea


class EventKind(str, Enum):
    NEW_REPORT       = "new_report"
    REPORT_VERIFIED  = "report_verified"
    REPORT_MODERATED = "report_moderated"
    ALERT_CREATED    = "alert_created"
    ALERT_UPDATED    = "alert_updated"
    ALERT_CANCELLED  = "alert_cancelled"


@dataclass(frozen=True)
class BroadcastEvent:
    kind: ClassVar[EventKind]

    @property
    def entity_id(self) -> str:
        raise NotImplementedError

    @property
    def alert(self) -> Optional[Alert]:
        """The alert whose counters this event feeds, if any."""
        return None

    @property
    def followed_report_id(self) -> Optional[str]:
        """Report whose followers also receive this event, if any."""
        return None

    def target_area(self, report_radius_km: float) -> TargetArea:
        raise NotImplementedError

    def payload(self) -> Dict[str, Any]:
        raise NotImplementedError

    def envelope(self, published_at: datetime) -> Dict[str, Any]:
        """Wire form pushed to each session."""
        return {
            "type": "event",
            "event": self.kind.value,
            "entity_id": self.entity_id,
            "published_at": published_at.isoformat(),
            "data": self.payload(),
        }


# ── report events ──

@dataclass(frozen=True)
class _ReportEvent(BroadcastEvent):
    report: Report

    @property
    def entity_id(self) -> str:
        return self.report.report_id

    def target_area(self, report_radius_km: float) -> TargetArea:
        return CircleArea(self.report.location, report_radius_km)

    def payload(self) -> Dict[str, Any]:
        return self.report.to_dict()


@dataclass(frozen=True)
class NewReport(_ReportEvent):
    kind: ClassVar[EventKind] = EventKind.NEW_REPORT


@dataclass(frozen=True)
class ReportVerified(_ReportEvent):
    kind: ClassVar[EventKind] = EventKind.REPORT_VERIFIED
    alert_id: Optional[str] = None

    @property
    def followed_report_id(self) -> Optional[str]:
        return self.report.report_id

    def payload(self) -> Dict[str, Any]:
        data = super().payload()
        data["alert_id"] = self.alert_id
        return data


@dataclass(frozen=True)
class ReportModerated(_ReportEvent):
    kind: ClassVar[EventKind] = EventKind.REPORT_MODERATED
    action: str = "flag"
    moderator_id: Optional[str] = None
    reason: Optional[str] = None

    @property
    def followed_report_id(self) -> Optional[str]:
        return self.report.report_id

    def payload(self) -> Dict[str, Any]:
        data = super().payload()
        data["moderation"] = {
            "action": self.action,
            "moderator_id": self.moderator_id,
            "reason": self.reason,
        }
        return data


# ── alert events ──

@dataclass(frozen=True)
class _AlertEvent(BroadcastEvent):
    subject: Alert

    @property
    def entity_id(self) -> str:
        return self.subject.alert_id

    @property
    def alert(self) -> Optional[Alert]:
        return self.subject

    def target_area(self, report_radius_km: float) -> TargetArea:
        return self.subject.target_area

    def payload(self) -> Dict[str, Any]:
        return self.subject.to_event_payload()


@dataclass(frozen=True)
class AlertCreated(_AlertEvent):
    kind: ClassVar[EventKind] = EventKind.ALERT_CREATED


@dataclass(frozen=True)
class AlertUpdated(_AlertEvent):
    kind: ClassVar[EventKind] = EventKind.ALERT_UPDATED
    changed: tuple = ()

    def payload(self) -> Dict[str, Any]:
        data = super().payload()
        data["changed"] = list(self.changed)
        return data


@dataclass(frozen=True)
class AlertCancelled(_AlertEvent):
    kind: ClassVar[EventKind] = EventKind.ALERT_CANCELLED

    def payload(self) -> Dict[str, Any]:
        data = super().payload()
        data["reason"] = self.subject.cancellation_reason
        return data
