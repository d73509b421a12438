"""
engine.py — The operations collaborators call.

Ties the components together:

    SessionRegistry   where live connections are
    ConsensusEngine   votes → verified / false_report
    AlertLifecycle    alert state machine, lazy expiry
    BroadcastRouter   geofenced fan-out + delivery counters
    Repository ×2     report and alert snapshots

═══════════════════════════════════════════════════════════════════════════
LOCKING
═══════════════════════════════════════════════════════════════════════════

    report id  → ConsensusEngine.locked(report_id)   load / vote / save
    alert id   → alert_locks.hold(alert_id)          load / patch / save

Publishing always happens after the lock is released, so a slow
audience never holds up other votes on the same report.

Identity is an opaque account id supplied by the caller (None means
anonymous). Authorisation is the caller's concern.
"""

from __future__ import annotations

import logging
import threading
from dataclasses import dataclass
from datetime import datetime, timedelta, timezone
from typing import Any, Callable, Dict, List, Mapping, Optional, Tuple, Union

from backend.app.alerts.lifecycle import AlertLifecycle
from backend.app.alerts.models import (
    TERMINAL_STATUSES,
    Alert,
    AlertSeverity,
    AlertSourceType,
    AlertStatus,
    AlertType,
)
from backend.app.broadcast.events import (
    AlertCancelled,
    AlertCreated,
    AlertUpdated,
    NewReport,
    ReportModerated,
    ReportVerified,
)
from backend.app.broadcast.models import DeliveryReport
from backend.app.broadcast.router import BroadcastRouter
from backend.app.broadcast.subscriptions import ReportSubscriptions
from backend.app.broadcast.transport import InMemoryTransport, Transport
from backend.app.consensus.engine import ConsensusEngine
from backend.app.consensus.models import (
    PromoteDecision,
    VerificationState,
    VoteResult,
    VoteValue,
)
from backend.app.consensus.promotion import build_derived_alert
from backend.app.core.config import settings
from backend.app.core.errors import NotFoundError, UnknownSessionError
from backend.app.core.locks import KeyedLocks
from backend.app.reports.models import (
    ModerationAction,
    Report,
    ReportCategory,
    ReportSeverity,
    ReportStatus,
)
from backend.app.sessions.models import DisconnectReason, SessionHandle
from backend.app.sessions.registry import SessionRegistry
from backend.app.spatial.areas import TargetArea, parse_target_area
from backend.app.spatial.geo_math import Coordinate, distance, sort_by_distance
from backend.app.storage.repository import InMemoryRepository, Repository

logger = logging.getLogger(__name__)

Clock = Callable[[], datetime]


def _utcnow() -> datetime:
    return datetime.now(timezone.utc)


@dataclass
class PopulationEstimate:
    sessions: int
    accounts: int
    anonymous: int

    def to_dict(self) -> Dict[str, int]:
        return {
            "sessions": self.sessions,
            "accounts": self.accounts,
            "anonymous": self.anonymous,
        }


class BroadcastEngine:
    """
    Facade over the geofenced broadcast and crowd-verification core.

    Every collaborator is injectable; defaults are in-memory and read
    their tunables from ``settings``.
    """

    def __init__(
        self,
        *,
        registry: Optional[SessionRegistry] = None,
        transport: Optional[Transport] = None,
        consensus: Optional[ConsensusEngine] = None,
        lifecycle: Optional[AlertLifecycle] = None,
        reports: Optional[Repository[Report]] = None,
        alerts: Optional[Repository[Alert]] = None,
        router: Optional[BroadcastRouter] = None,
        subscriptions: Optional[ReportSubscriptions] = None,
        clock: Clock = _utcnow,
    ):
        self._clock = clock
        # Collaborators define __len__, so an empty one is falsy: test for None.
        self.registry = registry if registry is not None else SessionRegistry(clock=clock)
        self.transport = transport if transport is not None else InMemoryTransport()
        self.consensus = consensus if consensus is not None else ConsensusEngine(clock=clock)
        self.lifecycle = lifecycle if lifecycle is not None else AlertLifecycle(clock=clock)
        self.reports: Repository[Report] = (
            reports if reports is not None else InMemoryRepository("report_id", "Report")
        )
        self.alerts: Repository[Alert] = (
            alerts if alerts is not None else InMemoryRepository("alert_id", "Alert")
        )
        self.subscriptions = (
            subscriptions if subscriptions is not None else ReportSubscriptions()
        )
        self.alert_locks = KeyedLocks()
        if router is None:
            router = BroadcastRouter(
                self.registry, self.transport,
                alerts=self.alerts, alert_locks=self.alert_locks,
                subscriptions=self.subscriptions, clock=clock,
            )
        self.router = router
        self.transport.set_disconnect_handler(self._on_transport_disconnect)
        self.registry.on_swept(self._release_connections)

    # ═══════════════════════════════════════════════════════════════════
    # Sessions
    # ═══════════════════════════════════════════════════════════════════

    def on_connect(
        self,
        connection_id: str,
        account_id: Optional[str] = None,
        location: Any = None,
        *,
        device: Optional[str] = None,
    ) -> SessionHandle:
        initial = Coordinate.of(location) if location is not None else None
        return self.registry.register(connection_id, account_id, initial, device=device)

    def on_location_update(self, connection_id: str, coordinate: Any) -> SessionHandle:
        return self.registry.update_location(connection_id, Coordinate.of(coordinate))

    def on_heartbeat(self, connection_id: str) -> SessionHandle:
        return self.registry.heartbeat(connection_id)

    def on_disconnect(
        self,
        connection_id: str,
        reason: Union[DisconnectReason, str] = DisconnectReason.CLIENT_DISCONNECT,
    ) -> SessionHandle:
        handle = self.registry.deregister(connection_id, reason)
        self._release_connections([connection_id])
        return handle

    def release_connection(
        self,
        connection_id: str,
        reason: Union[DisconnectReason, str] = DisconnectReason.CLIENT_DISCONNECT,
    ) -> None:
        """Drop per-connection state for a socket that is gone, active or not."""
        if self.registry.is_active(connection_id):
            self.on_disconnect(connection_id, reason)
        else:
            self._release_connections([connection_id])

    def _release_connections(self, connection_ids: List[str]) -> None:
        for connection_id in connection_ids:
            self.router.forget(connection_id)
            self.subscriptions.drop_connection(connection_id)

    def _on_transport_disconnect(self, connection_id: str) -> None:
        self.release_connection(connection_id, DisconnectReason.TRANSPORT_ERROR)

    def sweep_sessions(self, now: Optional[datetime] = None) -> int:
        return self.registry.sweep_expired(now)

    def follow_report(self, connection_id: str, report_id: str) -> bool:
        """Have an active connection receive a report's verification events."""
        if not self.registry.is_active(connection_id):
            raise UnknownSessionError(connection_id)
        self.reports.load(report_id)
        return self.subscriptions.subscribe(report_id, connection_id)

    def unfollow_report(self, connection_id: str, report_id: str) -> bool:
        return self.subscriptions.unsubscribe(report_id, connection_id)

    # ═══════════════════════════════════════════════════════════════════
    # Reports & votes
    # ═══════════════════════════════════════════════════════════════════

    def submit_report(
        self,
        payload: Mapping[str, Any],
        reporter_id: Optional[str] = None,
    ) -> Tuple[Report, DeliveryReport]:
        """Store a new report and notify sessions around it."""
        report = Report(
            title=str(payload["title"]),
            description=str(payload.get("description", "")),
            location=Coordinate.of(payload["location"]),
            category=ReportCategory(payload.get("category", ReportCategory.OTHER)),
            severity=ReportSeverity(payload.get("severity", ReportSeverity.MEDIUM)),
            reporter_id=None if payload.get("anonymous") else reporter_id,
            tags=list(payload.get("tags", [])),
            created_at=self._clock(),
        )
        self.reports.save(report)
        logger.info(
            "Report %s submitted (%s)", report.report_id, report.category.value,
            extra={"report_id": report.report_id, "account_id": reporter_id},
        )
        return report, self.router.publish(NewReport(report))

    def get_report(self, report_id: str) -> Report:
        return self.reports.load(report_id)

    def submit_vote(
        self,
        report_id: str,
        account_id: str,
        vote: Union[VoteValue, str],
        voter_location: Any = None,
    ) -> VoteResult:
        """
        Cast a confirm / deny vote.

        The load, the tally mutation, the quorum check and the save all
        run inside the report's critical section. A promotion creates the
        derived alert in the same section and publishes it afterwards.

        Without ``voter_location`` the freshest location of the voter's
        live sessions is used; only when there is none is the vote
        accepted as location-unknown.
        """
        if voter_location is not None:
            voter: Optional[Coordinate] = Coordinate.of(voter_location)
        else:
            voter = self.registry.last_known_location(account_id)
        promoted = False
        alert_event = None

        with self.consensus.locked(report_id):
            report = self.reports.load(report_id)
            result = self.consensus.cast_vote(
                report.tally, account_id, vote, voter, report.location,
            )
            if isinstance(result.decision, PromoteDecision):
                report.status = ReportStatus.VERIFIED
                report.verified_at = result.decision.decided_at
                promoted = True
                alert_event = self._promote(report, result.decision)
            self.reports.save(report)

        if promoted:
            self.router.publish(ReportVerified(report, alert_id=report.generated_alert_id))
        if alert_event is not None:
            self.router.publish(alert_event)
        return result

    def _promote(
        self,
        report: Report,
        decision: PromoteDecision,
    ) -> Union[AlertCreated, AlertUpdated, None]:
        """
        Link the report to a live alert; runs inside the report lock.

        A report re-verified after a reopen keeps its linked alert:
        still running → reused as is, resolved → reactivated. Only an
        expired, cancelled or missing alert is replaced by a new one.
        """
        linked_id = report.generated_alert_id
        if linked_id is not None:
            with self.alert_locks.hold(linked_id):
                linked = self.alerts.get(linked_id)
                if linked is not None and self.lifecycle.check_expiry(linked):
                    self.alerts.save(linked)
                if linked is not None and linked.status == AlertStatus.RESOLVED \
                        and not linked.is_past_window(self._clock()):
                    self.lifecycle.reactivate(linked, actor="system")
                    self.alerts.save(linked)
                    logger.info(
                        "Report %s re-verified; alert %s reactivated",
                        report.report_id, linked_id,
                        extra={"report_id": report.report_id, "alert_id": linked_id},
                    )
                    return AlertUpdated(linked, changed=("status",))
                if linked is not None and linked.status not in TERMINAL_STATUSES \
                        and linked.status != AlertStatus.RESOLVED:
                    logger.info(
                        "Report %s re-verified; alert %s still running",
                        report.report_id, linked_id,
                        extra={"report_id": report.report_id, "alert_id": linked_id},
                    )
                    return None

        derived = build_derived_alert(report, decision)
        report.generated_alert_id = derived.alert_id
        self.alerts.save(derived)
        logger.info(
            "Report %s promoted to alert %s", report.report_id, derived.alert_id,
            extra={"report_id": report.report_id, "alert_id": derived.alert_id},
        )
        return AlertCreated(derived)

    def remove_vote(self, report_id: str, account_id: str) -> Optional[VoteResult]:
        with self.consensus.locked(report_id):
            report = self.reports.load(report_id)
            result = self.consensus.remove_vote(report.tally, account_id)
            if result is not None:
                self.reports.save(report)
            return result

    def moderate_report(
        self,
        report_id: str,
        action: Union[ModerationAction, str],
        moderator_id: str,
        reason: Optional[str] = None,
    ) -> Report:
        """
        approve / reject / reopen override the crowd; flag only records.

        approve and reject stamp the moderator as ``verified_by``; a
        ``reason`` is kept as the report's verification notes.
        """
        action = ModerationAction(action)
        with self.consensus.locked(report_id):
            report = self.reports.load(report_id)
            if action == ModerationAction.APPROVE:
                self.consensus.override_state(report.tally, VerificationState.VERIFIED, moderator_id)
                report.status = ReportStatus.VERIFIED
                report.verified_at = self._clock()
                report.verified_by = moderator_id
            elif action == ModerationAction.REJECT:
                self.consensus.override_state(report.tally, VerificationState.FALSE_REPORT, moderator_id)
                report.status = ReportStatus.REJECTED
                report.verified_at = self._clock()
                report.verified_by = moderator_id
            elif action == ModerationAction.REOPEN:
                self.consensus.override_state(report.tally, VerificationState.UNVERIFIED, moderator_id)
                report.status = ReportStatus.PENDING
                report.verified_at = None
                report.verified_by = None
            elif moderator_id not in report.flags:
                report.flags.append(moderator_id)
            if reason:
                report.verification_notes = reason
            self.reports.save(report)

        logger.info(
            "Report %s moderated: %s by %s", report_id, action.value, moderator_id,
            extra={"report_id": report_id, "account_id": moderator_id},
        )
        self.router.publish(ReportModerated(
            report, action=action.value, moderator_id=moderator_id, reason=reason,
        ))
        return report

    def reports_near(
        self,
        point: Any,
        radius_km: float,
        *,
        category: Optional[str] = None,
        status: Optional[str] = None,
        verification_state: Optional[str] = None,
        include_false: bool = False,
        limit: Optional[int] = None,
    ) -> List[Tuple[Report, float]]:
        """Reports within ``radius_km``, nearest first, with their distance."""
        center = Coordinate.of(point)

        def matches(r: Report) -> bool:
            if category and r.category.value != category:
                return False
            if status and r.status.value != status:
                return False
            if verification_state and r.tally.state.value != verification_state:
                return False
            if not include_false and not verification_state \
                    and r.tally.state == VerificationState.FALSE_REPORT:
                return False
            return distance(center, r.location) <= radius_km

        ranked = sort_by_distance(self.reports.query(matches), center, key=lambda r: r.location)
        return ranked[:limit] if limit else ranked

    # ═══════════════════════════════════════════════════════════════════
    # Alerts
    # ═══════════════════════════════════════════════════════════════════

    def create_official_alert(
        self,
        payload: Mapping[str, Any],
        created_by: Optional[str] = None,
    ) -> Tuple[Alert, Optional[DeliveryReport]]:
        """
        Create an authority alert and broadcast it if it is effective now.

        ``target_area`` is required; ``status`` defaults to active.
        """
        if "target_area" not in payload:
            raise ValueError("target_area is required")
        area = payload["target_area"]
        if isinstance(area, Mapping):
            area = parse_target_area(dict(area), default_radius_km=settings.DEFAULT_ALERT_RADIUS_KM)

        now = self._clock()
        ttl_hours = payload.get("ttl_hours")
        effective_until = payload.get("effective_until")
        if effective_until is None and ttl_hours:
            effective_until = now + timedelta(hours=float(ttl_hours))

        alert = Alert(
            title=str(payload["title"]),
            description=str(payload.get("description", "")),
            short_description=str(payload.get("short_description", "")),
            alert_type=AlertType(payload.get("type", AlertType.OTHER)),
            severity=AlertSeverity(payload.get("severity", AlertSeverity.ADVISORY)),
            priority=payload.get("priority"),
            status=AlertStatus(payload.get("status", AlertStatus.ACTIVE)),
            target_area=area,
            source_type=AlertSourceType.OFFICIAL,
            created_by=created_by,
            created_at=now,
            effective_from=payload.get("effective_from"),
            effective_until=effective_until,
            instructions=list(payload.get("instructions", [])),
            tags=list(payload.get("tags", [])),
            metadata=dict(payload.get("metadata", {})),
        )

        parent_id = payload.get("parent_alert_id")
        if parent_id:
            with self.alert_locks.hold(parent_id):
                parent = self.alerts.load(parent_id)
                self.lifecycle.supersede(parent, alert, created_by)
                self.alerts.save(parent)

        self.alerts.save(alert)
        logger.info(
            "Alert %s created by %s [%s/%s]",
            alert.alert_id, created_by or "system", alert.severity.value, alert.status.value,
            extra={"alert_id": alert.alert_id, "account_id": created_by},
        )

        delivery = None
        if alert.is_effective(now):
            delivery = self.router.publish(AlertCreated(alert))
            alert = self.alerts.load(alert.alert_id)
        return alert, delivery

    def get_alert(self, alert_id: str) -> Alert:
        """Load an alert, applying lazy expiry first."""
        with self.alert_locks.hold(alert_id):
            alert = self.alerts.load(alert_id)
            if self.lifecycle.check_expiry(alert):
                self.alerts.save(alert)
            return alert

    def update_alert(
        self,
        alert_id: str,
        patch: Mapping[str, Any],
        actor: Optional[str] = None,
    ) -> Alert:
        with self.alert_locks.hold(alert_id):
            alert = self.alerts.load(alert_id)
            if self.lifecycle.check_expiry(alert):
                self.alerts.save(alert)
            changed = self.lifecycle.apply_patch(alert, patch, actor)
            self.alerts.save(alert)

        if changed and alert.is_effective(self._clock()):
            self.router.publish(AlertUpdated(alert, changed=tuple(changed)))
            alert = self.alerts.load(alert_id)
        return alert

    def cancel_alert(
        self,
        alert_id: str,
        reason: Optional[str] = None,
        actor: Optional[str] = None,
    ) -> Alert:
        with self.alert_locks.hold(alert_id):
            alert = self.alerts.load(alert_id)
            self.lifecycle.cancel(alert, reason, actor)
            self.alerts.save(alert)
        self.router.publish(AlertCancelled(alert))
        return self.alerts.load(alert_id)

    def resolve_alert(self, alert_id: str, actor: Optional[str] = None) -> Alert:
        with self.alert_locks.hold(alert_id):
            alert = self.alerts.load(alert_id)
            self.lifecycle.resolve(alert, actor)
            self.alerts.save(alert)
        self.router.publish(AlertUpdated(alert, changed=("status",)))
        return self.alerts.load(alert_id)

    def acknowledge_alert(self, alert_id: str, account_id: str) -> bool:
        """User read-receipt; False if this account already acknowledged."""
        alert = self.alerts.load(alert_id)
        return self.router.record_read(alert, account_id)

    def on_delivery_ack(self, alert_id: str, connection_id: str) -> bool:
        """Transport-level delivery confirmation from a connection."""
        alert = self.alerts.get(alert_id)
        if alert is None:
            raise NotFoundError("Alert", id=alert_id)
        return self.router.record_delivery_ack(alert, connection_id)

    def alerts_near(
        self,
        point: Any,
        radius_km: float,
        *,
        alert_type: Optional[str] = None,
        severity: Optional[str] = None,
        min_priority: Optional[int] = None,
        limit: Optional[int] = None,
    ) -> List[Alert]:
        """
        Effective alerts relevant to ``point``: those whose area contains
        it, or whose centre lies within ``radius_km``. Highest priority
        first, newest first among equals.
        """
        center = Coordinate.of(point)
        now = self._clock()
        self._expire_lapsed(now)

        def relevant(a: Alert) -> bool:
            if not a.is_effective(now):
                return False
            if alert_type and a.alert_type.value != alert_type:
                return False
            if severity and a.severity.value != severity:
                return False
            if min_priority is not None and a.priority < min_priority:
                return False
            area = a.target_area
            return area.contains(center) or distance(center, area.center) <= radius_km

        found = self.alerts.query(relevant)
        found.sort(key=lambda a: (a.priority, a.created_at), reverse=True)
        return found[:limit] if limit else found

    def _expire_lapsed(self, now: datetime) -> int:
        lapsed = self.alerts.query(
            lambda a: a.status == AlertStatus.ACTIVE and a.is_past_window(now)
        )
        for stale in lapsed:
            with self.alert_locks.hold(stale.alert_id):
                alert = self.alerts.get(stale.alert_id)
                if alert is not None and self.lifecycle.check_expiry(alert, now):
                    self.alerts.save(alert)
        return len(lapsed)

    # ═══════════════════════════════════════════════════════════════════
    # Population
    # ═══════════════════════════════════════════════════════════════════

    def population_in_area(self, area: Union[TargetArea, Mapping[str, Any]]) -> PopulationEstimate:
        if isinstance(area, Mapping):
            area = parse_target_area(dict(area), default_radius_km=settings.DEFAULT_ALERT_RADIUS_KM)
        sessions = self.registry.find_in_area(area)
        return PopulationEstimate(
            sessions=len(sessions),
            accounts=len({s.account_id for s in sessions if s.account_id}),
            anonymous=sum(1 for s in sessions if s.is_anonymous),
        )

    def shutdown(self) -> None:
        self.router.shutdown(wait=False)


# ═══════════════════════════════════════════════════════════════════════════
# Singleton
# ═══════════════════════════════════════════════════════════════════════════

_engine: Optional[BroadcastEngine] = None
_engine_lock = threading.Lock()


def get_engine() -> BroadcastEngine:
    """Process-wide engine, created on first use."""
    global _engine
    with _engine_lock:
        if _engine is None:
            _engine = BroadcastEngine()
        return _engine


def reset_engine(engine: Optional[BroadcastEngine] = None) -> None:
    """Replace the process-wide engine (tests, shutdown)."""
    global _engine
    with _engine_lock:
        if _engine is not None and _engine is not engine:
            _engine.shutdown()
        _engine = engine
