"""
lifecycle.py — Alert state machine.

═══════════════════════════════════════════════════════════════════════════
TRANSITIONS
═══════════════════════════════════════════════════════════════════════════

    draft ──► pending_approval ──► active ──► updated ──► active
      │              │               │
      └──────────────┴──► cancelled  ├──► expired
                                     ├──► cancelled
                                     └──► resolved ──(reactivate)──► active

expired and cancelled are final: only audit fields (update notes, tags)
may change afterwards.

Expiry is lazy. Nothing runs on a timer; every read path calls
``check_expiry`` before deciding whether an alert is effective, and the
caller persists the alert when it reports a change.
"""

from __future__ import annotations

import logging
from datetime import datetime, timezone
from typing import Any, Callable, Dict, FrozenSet, Iterable, List, Mapping, Optional, Union

from backend.app.alerts.models import (
    TERMINAL_STATUSES,
    Alert,
    AlertSeverity,
    AlertStatus,
    AlertType,
    AlertUpdate,
    check_priority,
    priority_for,
    shorten,
)
from backend.app.core.errors import InvalidTransitionError
from backend.app.spatial.areas import parse_target_area

logger = logging.getLogger(__name__)

Clock = Callable[[], datetime]

ALLOWED_TRANSITIONS: Dict[AlertStatus, FrozenSet[AlertStatus]] = {
    AlertStatus.DRAFT: frozenset({
        AlertStatus.PENDING_APPROVAL, AlertStatus.ACTIVE, AlertStatus.CANCELLED,
    }),
    AlertStatus.PENDING_APPROVAL: frozenset({
        AlertStatus.DRAFT, AlertStatus.ACTIVE, AlertStatus.CANCELLED,
    }),
    AlertStatus.ACTIVE: frozenset({
        AlertStatus.UPDATED, AlertStatus.EXPIRED,
        AlertStatus.CANCELLED, AlertStatus.RESOLVED,
    }),
    AlertStatus.UPDATED: frozenset({
        AlertStatus.ACTIVE, AlertStatus.EXPIRED,
        AlertStatus.CANCELLED, AlertStatus.RESOLVED,
    }),
    AlertStatus.RESOLVED: frozenset({AlertStatus.ACTIVE}),
    AlertStatus.EXPIRED: frozenset(),
    AlertStatus.CANCELLED: frozenset(),
}

# Fields a patch may touch on an expired / cancelled alert
AUDIT_FIELDS = frozenset({"update", "tags"})

_CONTENT_FIELDS = (
    "title", "description", "short_description", "instructions", "tags",
    "effective_from", "effective_until", "parent_alert_id",
)


def _utcnow() -> datetime:
    return datetime.now(timezone.utc)


def _parse_status(target: Union[AlertStatus, str], current: AlertStatus) -> AlertStatus:
    try:
        return AlertStatus(target)
    except ValueError:
        raise InvalidTransitionError("Alert", current.value, str(target)) from None


class AlertLifecycle:
    """Stateless transition rules over Alert entities."""

    def __init__(self, clock: Clock = _utcnow):
        self._clock = clock

    # ── transitions ──

    def transition(
        self,
        alert: Alert,
        target: Union[AlertStatus, str],
        actor: Optional[str] = None,
        reason: Optional[str] = None,
    ) -> Alert:
        """
        Move ``alert`` to ``target``.

        Raises InvalidTransitionError (state untouched) when ``target`` is
        not a status or not reachable from the current one.
        """
        current = alert.status
        target = _parse_status(target, current)
        if target not in ALLOWED_TRANSITIONS[current]:
            raise InvalidTransitionError("Alert", current.value, target.value)

        now = self._clock()
        alert.status = target
        alert.status_changed_at = now
        alert.status_changed_by = actor

        if target in TERMINAL_STATUSES:
            alert.is_active = False
            if target == AlertStatus.CANCELLED:
                alert.cancellation_reason = reason
        elif target == AlertStatus.ACTIVE:
            alert.is_active = True
            if current == AlertStatus.RESOLVED:
                alert.cancellation_reason = None

        logger.info(
            "Alert %s: %s → %s (by %s)",
            alert.alert_id, current.value, target.value, actor or "system",
            extra={"alert_id": alert.alert_id, "account_id": actor},
        )
        return alert

    def activate(self, alert: Alert, actor: Optional[str] = None) -> Alert:
        return self.transition(alert, AlertStatus.ACTIVE, actor)

    def submit_for_approval(self, alert: Alert, actor: Optional[str] = None) -> Alert:
        return self.transition(alert, AlertStatus.PENDING_APPROVAL, actor)

    def cancel(self, alert: Alert, reason: Optional[str] = None, actor: Optional[str] = None) -> Alert:
        return self.transition(alert, AlertStatus.CANCELLED, actor, reason=reason)

    def resolve(self, alert: Alert, actor: Optional[str] = None) -> Alert:
        return self.transition(alert, AlertStatus.RESOLVED, actor)

    def expire(self, alert: Alert, actor: Optional[str] = None) -> Alert:
        return self.transition(alert, AlertStatus.EXPIRED, actor)

    def reactivate(self, alert: Alert, actor: Optional[str] = None) -> Alert:
        """Bring a resolved alert back; clears the terminal stamps."""
        if alert.status != AlertStatus.RESOLVED:
            raise InvalidTransitionError("Alert", alert.status.value, AlertStatus.ACTIVE.value)
        self.transition(alert, AlertStatus.ACTIVE, actor)
        alert.status_changed_by = None
        alert.status_changed_at = None
        return alert

    def mark_updated(self, alert: Alert, content: str, actor: Optional[str] = None) -> Alert:
        """Record an update: active → updated → active, with a history entry."""
        self.transition(alert, AlertStatus.UPDATED, actor)
        alert.updates.append(AlertUpdate(
            content=content, updated_by=actor,
            updated_at=self._clock(), status=AlertStatus.UPDATED,
        ))
        return self.transition(alert, AlertStatus.ACTIVE, actor)

    def supersede(self, parent: Alert, child: Alert, actor: Optional[str] = None) -> None:
        """Park ``parent`` in ``updated`` behind a follow-up alert."""
        self.transition(parent, AlertStatus.UPDATED, actor)
        child.parent_alert_id = parent.alert_id
        if child.alert_id not in parent.child_alert_ids:
            parent.child_alert_ids.append(child.alert_id)

    # ── expiry ──

    def check_expiry(self, alert: Alert, now: Optional[datetime] = None) -> bool:
        """Expire an active alert whose window has lapsed. True if it changed."""
        now = now or self._clock()
        if alert.status == AlertStatus.ACTIVE and alert.is_past_window(now):
            self.expire(alert)
            return True
        return False

    def is_effective(self, alert: Alert, now: Optional[datetime] = None) -> bool:
        now = now or self._clock()
        self.check_expiry(alert, now)
        return alert.is_effective(now)

    def refresh(self, alerts: Iterable[Alert], now: Optional[datetime] = None) -> List[Alert]:
        """Apply ``check_expiry`` to each alert; returns those that expired."""
        now = now or self._clock()
        return [a for a in alerts if self.check_expiry(a, now)]

    # ── patching ──

    def apply_patch(
        self,
        alert: Alert,
        patch: Mapping[str, Any],
        actor: Optional[str] = None,
    ) -> List[str]:
        """
        Apply a partial update in place and return the changed field names.

        Keys: title, description, short_description, severity, priority,
        type, instructions, tags, effective_from, effective_until,
        target_area, parent_alert_id, status, update (history note).

        Severity changes re-derive priority unless the same patch sets
        ``priority``. On expired / cancelled alerts only audit fields are
        accepted.
        """
        unknown = set(patch) - set(_CONTENT_FIELDS) - {
            "severity", "priority", "type", "target_area", "status", "update",
        }
        if unknown:
            raise ValueError(f"Unknown alert fields: {sorted(unknown)}")

        if alert.is_immutable and set(patch) - AUDIT_FIELDS:
            raise InvalidTransitionError("Alert", alert.status.value, AlertStatus.UPDATED.value)

        target_status = None
        if "status" in patch:
            target_status = _parse_status(patch["status"], alert.status)
            if target_status != alert.status and target_status not in ALLOWED_TRANSITIONS[alert.status]:
                raise InvalidTransitionError("Alert", alert.status.value, target_status.value)

        # validate before mutating so a bad patch leaves the alert untouched
        severity = AlertSeverity(patch["severity"]) if "severity" in patch else None
        alert_type = AlertType(patch["type"]) if "type" in patch else None
        priority = check_priority(patch["priority"]) if "priority" in patch else None
        area = None
        if "target_area" in patch:
            area = patch["target_area"]
            if isinstance(area, Mapping):
                area = parse_target_area(dict(area))

        changed: List[str] = []
        for name in _CONTENT_FIELDS:
            if name in patch and getattr(alert, name) != patch[name]:
                setattr(alert, name, patch[name])
                changed.append(name)
        if "description" in changed and "short_description" not in patch:
            alert.short_description = shorten(alert.description)

        if alert_type is not None and alert_type != alert.alert_type:
            alert.alert_type = alert_type
            changed.append("type")
        if area is not None and area != alert.target_area:
            alert.target_area = area
            changed.append("target_area")
        if severity is not None and severity != alert.severity:
            alert.severity = severity
            changed.append("severity")
            if priority is None:
                alert.priority = priority_for(severity)
                changed.append("priority")
        if priority is not None and priority != alert.priority:
            alert.priority = priority
            changed.append("priority")

        note = patch.get("update")
        if target_status == AlertStatus.UPDATED:
            self.mark_updated(alert, note or ", ".join(changed) or "updated", actor)
            changed.append("status")
        else:
            if target_status is not None and target_status != alert.status:
                self.transition(alert, target_status, actor)
                changed.append("status")
            if note or (changed and not alert.is_immutable):
                alert.updates.append(AlertUpdate(
                    content=note or "changed: " + ", ".join(changed),
                    updated_by=actor,
                    updated_at=self._clock(),
                ))
        return changed
