"""
models.py — Crowd-submitted incident reports.

A Report owns exactly one VoteTally and refers to the alert it spawned
(if any) by id only.
"""

from __future__ import annotations

import uuid
from dataclasses import dataclass, field
from datetime import datetime, timezone
from enum import Enum
from typing import Any, Dict, List, Optional

from backend.app.consensus.models import VerificationState, VoteTally
from backend.app.spatial.geo_math import Coordinate


class ReportCategory(str, Enum):
    EMERGENCY           = "emergency"
    CRIME               = "crime"
    ACCIDENT            = "accident"
    FIRE                = "fire"
    MEDICAL             = "medical"
    NATURAL_DISASTER    = "natural_disaster"
    FLOOD               = "flood"
    INFRASTRUCTURE      = "infrastructure"
    SUSPICIOUS_ACTIVITY = "suspicious_activity"
    TRAFFIC             = "traffic"
    WEATHER             = "weather"
    PUBLIC_SAFETY       = "public_safety"
    OTHER               = "other"


class ReportSeverity(str, Enum):
    LOW      = "low"
    MEDIUM   = "medium"
    HIGH     = "high"
    CRITICAL = "critical"


class ReportStatus(str, Enum):
    PENDING     = "pending"
    VERIFIED    = "verified"
    IN_PROGRESS = "in_progress"
    RESOLVED    = "resolved"
    REJECTED    = "rejected"
    DUPLICATE   = "duplicate"
    ESCALATED   = "escalated"


class ModerationAction(str, Enum):
    APPROVE = "approve"   # → verified
    REJECT  = "reject"    # → false_report
    REOPEN  = "reopen"    # → unverified
    FLAG    = "flag"      # audit only


def _generate_id() -> str:
    return f"RPT-{uuid.uuid4().hex[:12].upper()}"


def _now() -> datetime:
    return datetime.now(timezone.utc)


@dataclass
class Report:
    """
    Attributes
    ----------
    reporter_id : str | None
        Submitting account; None for anonymous submissions.
    generated_alert_id : str | None
        Alert created when the crowd verified this report.
    flags : list
        Moderator ids that flagged the report.
    verified_by, verification_notes : str | None
        Moderator who approved or rejected the report, and their reason.
    """
    title: str
    location: Coordinate
    category: ReportCategory = ReportCategory.OTHER
    severity: ReportSeverity = ReportSeverity.MEDIUM
    description: str = ""
    reporter_id: Optional[str] = None
    report_id: str = field(default_factory=_generate_id)
    status: ReportStatus = ReportStatus.PENDING
    tally: VoteTally = field(default=None)  # type: ignore[assignment]
    generated_alert_id: Optional[str] = None
    created_at: datetime = field(default_factory=_now)
    verified_at: Optional[datetime] = None
    verified_by: Optional[str] = None
    verification_notes: Optional[str] = None
    tags: List[str] = field(default_factory=list)
    flags: List[str] = field(default_factory=list)

    def __post_init__(self) -> None:
        self.category = ReportCategory(self.category)
        self.severity = ReportSeverity(self.severity)
        self.status = ReportStatus(self.status)
        if self.tally is None:
            self.tally = VoteTally(report_id=self.report_id)

    @property
    def verification_state(self) -> VerificationState:
        return self.tally.state

    @property
    def is_anonymous(self) -> bool:
        return self.reporter_id is None

    @property
    def vote_score(self) -> int:
        return self.tally.confirm_count - self.tally.deny_count

    @property
    def credibility_score(self) -> float:
        """
        0–100, 50 when nobody has voted.

        >>> r = Report(title="t", location=Coordinate(0, 0))
        >>> r.credibility_score
        50.0
        """
        state = self.tally.state
        if state == VerificationState.FALSE_REPORT:
            return 0.0

        score = 50.0
        total = self.tally.total_votes
        if total:
            score += 25.0 * (self.vote_score / total)
        if state == VerificationState.VERIFIED:
            score += 25.0
        return max(0.0, min(100.0, score))

    def to_dict(self) -> Dict[str, Any]:
        return {
            "report_id": self.report_id,
            "title": self.title,
            "description": self.description,
            "category": self.category.value,
            "severity": self.severity.value,
            "location": self.location.to_dict(),
            "reporter_id": self.reporter_id,
            "is_anonymous": self.is_anonymous,
            "status": self.status.value,
            "verification": self.tally.to_dict(),
            "vote_score": self.vote_score,
            "credibility_score": round(self.credibility_score, 1),
            "generated_alert_id": self.generated_alert_id,
            "created_at": self.created_at.isoformat(),
            "verified_at": self.verified_at.isoformat() if self.verified_at else None,
            "verified_by": self.verified_by,
            "verification_notes": self.verification_notes,
            "tags": list(self.tags),
        }
