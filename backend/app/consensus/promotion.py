"""
promotion.py — Turn a crowd-verified report into an alert.

═══════════════════════════════════════════════════════════════════════════
CATEGORY MAPPING
═══════════════════════════════════════════════════════════════════════════

    Report category    Alert type        Severity
    ───────────────    ──────────────    ────────
    accident           traffic           warning
    fire               emergency         critical
    flood              weather           warning
    crime              crime             warning
    medical            health            advisory
    infrastructure     infrastructure    advisory
    other              community         info
    (anything else)    community         advisory

The derived alert covers a fixed circle around the report and stays
effective for a fixed window.
"""

from __future__ import annotations

from datetime import datetime, timedelta, timezone
from typing import Dict, Optional

from backend.app.alerts.models import (
    Alert,
    AlertSeverity,
    AlertSourceType,
    AlertStatus,
    AlertType,
)
from backend.app.consensus.models import PromoteDecision
from backend.app.core.config import settings
from backend.app.reports.models import Report, ReportCategory
from backend.app.spatial.areas import CircleArea

CATEGORY_ALERT_TYPE: Dict[ReportCategory, AlertType] = {
    ReportCategory.ACCIDENT:       AlertType.TRAFFIC,
    ReportCategory.FIRE:           AlertType.EMERGENCY,
    ReportCategory.FLOOD:          AlertType.WEATHER,
    ReportCategory.CRIME:          AlertType.CRIME,
    ReportCategory.MEDICAL:        AlertType.HEALTH,
    ReportCategory.INFRASTRUCTURE: AlertType.INFRASTRUCTURE,
    ReportCategory.OTHER:          AlertType.COMMUNITY,
}

CATEGORY_SEVERITY: Dict[ReportCategory, AlertSeverity] = {
    ReportCategory.ACCIDENT:       AlertSeverity.WARNING,
    ReportCategory.FIRE:           AlertSeverity.CRITICAL,
    ReportCategory.FLOOD:          AlertSeverity.WARNING,
    ReportCategory.CRIME:          AlertSeverity.WARNING,
    ReportCategory.MEDICAL:        AlertSeverity.ADVISORY,
    ReportCategory.INFRASTRUCTURE: AlertSeverity.ADVISORY,
    ReportCategory.OTHER:          AlertSeverity.INFO,
}

DEFAULT_INSTRUCTIONS = [
    "Stay alert and aware of your surroundings",
    "Follow local authority guidance",
    "Report any additional information",
]


def alert_type_for(category: ReportCategory) -> AlertType:
    return CATEGORY_ALERT_TYPE.get(category, AlertType.COMMUNITY)


def severity_for(category: ReportCategory) -> AlertSeverity:
    return CATEGORY_SEVERITY.get(category, AlertSeverity.ADVISORY)


def build_derived_alert(
    report: Report,
    decision: PromoteDecision,
    *,
    radius_km: Optional[float] = None,
    ttl: Optional[timedelta] = None,
    now: Optional[datetime] = None,
) -> Alert:
    """
    Alert for a report that just reached the confirm quorum.

    Returned unsaved; linking it to the report and persisting both is
    the caller's job.
    """
    now = now or decision.decided_at or datetime.now(timezone.utc)
    radius_km = radius_km if radius_km is not None else settings.DERIVED_ALERT_RADIUS_KM
    ttl = ttl if ttl is not None else timedelta(hours=settings.DERIVED_ALERT_TTL_HOURS)

    return Alert(
        title=report.title,
        description=report.description or report.title,
        short_description=(
            f"Community verified: {report.category.value} incident reported nearby"
        ),
        alert_type=alert_type_for(report.category),
        severity=severity_for(report.category),
        status=AlertStatus.ACTIVE,
        target_area=CircleArea(report.location, radius_km),
        source_type=AlertSourceType.REPORT,
        source_report_id=report.report_id,
        created_by=report.reporter_id,
        created_at=now,
        effective_from=now,
        effective_until=now + ttl,
        instructions=list(DEFAULT_INSTRUCTIONS),
        tags=["community-verified", report.category.value],
        metadata={
            "automated": True,
            "community_verified": True,
            "verification_count": decision.confirm_count,
        },
    )
