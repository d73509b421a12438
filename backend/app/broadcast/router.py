"""
router.py — Geofenced fan-out of events to live sessions.

Pipeline:
    1. Resolve the event's target area (explicit area wins)
    2. Snapshot matching active sessions from SessionRegistry, plus
       the report's followers for verification / moderation events
    3. Enqueue the envelope on each session's outbox
    4. Worker pool drains outboxes, retrying failed sends in-session
    5. Wait for every delivery (bounded), compile a DeliveryReport
    6. Alert events: add targeted / failed to the alert's counters

═══════════════════════════════════════════════════════════════════════════
DELIVERY FLOW
═══════════════════════════════════════════════════════════════════════════

    publish() ─┬─► outbox[c1] ──┐
               ├─► outbox[c2] ──┼──► ThreadPoolExecutor (bounded)
               └─► outbox[cN] ──┘         │
                                          ▼
                          transport.send(cid, envelope, timeout)
                              │ ok        │ fail / timeout
                              ▼           ▼
                          delivered    session still active?
                                          │ yes → backoff, retry
                                          │ no  → session_gone
                                          ▼
                                       failed (reason recorded)

Each connection has one FIFO outbox drained by at most one worker at a
time, so a session receives events in publish order. A slow or dead
connection only holds up its own outbox.

Per-connection retry configuration:
    Max retries     DELIVERY_MAX_RETRIES
    Backoff         exponential from DELIVERY_RETRY_BACKOFF_SECONDS
    Timeout         DELIVERY_TIMEOUT_SECONDS per send, honoured by
                    the transport
"""

from __future__ import annotations

import logging
import math
import threading
import time
from collections import deque
from concurrent.futures import ThreadPoolExecutor
from dataclasses import dataclass, field
from datetime import datetime, timezone
from typing import Any, Callable, Deque, Dict, List, Optional, Set, Tuple

from backend.app.alerts.models import Alert
from backend.app.broadcast.events import BroadcastEvent
from backend.app.broadcast.models import DeliveryFailure, DeliveryReport, FailureReason
from backend.app.broadcast.subscriptions import ReportSubscriptions
from backend.app.broadcast.transport import Transport
from backend.app.core.config import settings
from backend.app.core.errors import DeliveryFailedError
from backend.app.core.locks import KeyedLocks
from backend.app.sessions.registry import SessionRegistry
from backend.app.spatial.areas import TargetArea
from backend.app.storage.repository import Repository

logger = logging.getLogger(__name__)

Clock = Callable[[], datetime]

# Slack on top of the per-delivery budget before publish stops waiting
_WAIT_SLACK_SECONDS = 1.0


def _utcnow() -> datetime:
    return datetime.now(timezone.utc)


def _compute_backoff(base_seconds: float, attempt: int) -> float:
    """
    Delay before retry ``attempt`` (1-based), doubling each time.

    >>> _compute_backoff(0.05, 1), _compute_backoff(0.05, 3)
    (0.05, 0.2)
    """
    return base_seconds * (2 ** (attempt - 1))


@dataclass
class _Delivery:
    connection_id: str
    envelope: Dict[str, Any]
    done: threading.Event = field(default_factory=threading.Event)
    delivered: bool = False
    failure: Optional[DeliveryFailure] = None


@dataclass
class _Outbox:
    queue: Deque[_Delivery] = field(default_factory=deque)
    lock: threading.Lock = field(default_factory=threading.Lock)
    draining: bool = False
    retired: bool = False


class BroadcastRouter:
    """
    Publishes events to every active session inside a target area.

    Parameters
    ----------
    registry : SessionRegistry
        Audience source.
    transport : Transport
        Push channel to connections.
    alerts : Repository[Alert] | None
        Where alert counters are persisted. Without one, counters are
        written to the event's alert object directly.
    alert_locks : KeyedLocks | None
        Shared with whoever else mutates stored alerts.
    subscriptions : ReportSubscriptions | None
        Followers added to the audience of report verification and
        moderation events.
    """

    def __init__(
        self,
        registry: SessionRegistry,
        transport: Transport,
        *,
        alerts: Optional[Repository[Alert]] = None,
        alert_locks: Optional[KeyedLocks] = None,
        subscriptions: Optional[ReportSubscriptions] = None,
        max_workers: Optional[int] = None,
        delivery_timeout: Optional[float] = None,
        max_retries: Optional[int] = None,
        retry_backoff: Optional[float] = None,
        report_radius_km: Optional[float] = None,
        clock: Clock = _utcnow,
    ):
        self._registry = registry
        self._transport = transport
        self._alerts = alerts
        self._alert_locks = alert_locks if alert_locks is not None else KeyedLocks()
        self._subscriptions = subscriptions
        self._timeout = (
            delivery_timeout if delivery_timeout is not None
            else settings.DELIVERY_TIMEOUT_SECONDS
        )
        self._max_retries = (
            max_retries if max_retries is not None else settings.DELIVERY_MAX_RETRIES
        )
        self._backoff = (
            retry_backoff if retry_backoff is not None
            else settings.DELIVERY_RETRY_BACKOFF_SECONDS
        )
        self._report_radius_km = (
            report_radius_km if report_radius_km is not None
            else settings.NEW_REPORT_RADIUS_KM
        )
        self._max_workers = (
            max_workers if max_workers is not None else settings.BROADCAST_MAX_WORKERS
        )
        self._clock = clock
        self._executor = ThreadPoolExecutor(
            max_workers=self._max_workers, thread_name_prefix="broadcast",
        )
        self._outboxes: Dict[str, _Outbox] = {}
        self._outbox_guard = threading.Lock()

    # ═══════════════════════════════════════════════════════════════════
    # Publish
    # ═══════════════════════════════════════════════════════════════════

    def publish(
        self,
        event: BroadcastEvent,
        target_area: Optional[TargetArea] = None,
    ) -> DeliveryReport:
        """
        Deliver ``event`` to every active session inside its audience.

        Individual delivery failures are recorded in the report and
        never raised.
        """
        started = self._clock()
        t0 = time.perf_counter()
        area = (
            target_area if target_area is not None
            else event.target_area(self._report_radius_km)
        )
        audience = [h.connection_id for h in self._registry.find_in_area(area)]
        audience.extend(self._followers(event, exclude=set(audience)))
        envelope = event.envelope(started)

        deliveries = [_Delivery(cid, envelope) for cid in audience]
        for delivery in deliveries:
            self._enqueue(delivery)
        self._wait(deliveries)

        report = DeliveryReport(
            event_kind=event.kind.value,
            entity_id=event.entity_id,
            targeted=len(deliveries),
            started_at=started,
        )
        for d in deliveries:
            if d.delivered:
                report.delivered += 1
                report.delivered_to.append(d.connection_id)
            else:
                report.failed += 1
                report.failures.append(d.failure or DeliveryFailure(
                    d.connection_id, FailureReason.TIMEOUT,
                    detail="no result before publish deadline",
                ))
        report.completed_at = self._clock()

        if event.alert is not None:
            self._record_alert_broadcast(event.alert, report)

        logger.info(
            "Published %s %s: %d/%d delivered, %d failed (%.0f ms)",
            report.event_kind, report.entity_id,
            report.delivered, report.targeted, report.failed,
            (time.perf_counter() - t0) * 1000,
            extra={
                "event_kind": report.event_kind,
                "targeted": report.targeted,
                "delivered": report.delivered,
                "failed": report.failed,
            },
        )
        return report

    def _followers(self, event: BroadcastEvent, exclude: Set[str]) -> List[str]:
        report_id = event.followed_report_id
        if report_id is None or self._subscriptions is None:
            return []
        return [
            cid for cid in self._subscriptions.subscribers(report_id)
            if cid not in exclude and self._registry.is_active(cid)
        ]

    def _wait(self, deliveries: List[_Delivery]) -> None:
        if not deliveries:
            return
        per_delivery = self._timeout * (self._max_retries + 1) + sum(
            _compute_backoff(self._backoff, n) for n in range(1, self._max_retries + 1)
        )
        rounds = math.ceil(len(deliveries) / self._max_workers)
        deadline = time.monotonic() + per_delivery * rounds + _WAIT_SLACK_SECONDS
        for d in deliveries:
            d.done.wait(max(0.0, deadline - time.monotonic()))

    # ═══════════════════════════════════════════════════════════════════
    # Per-connection outboxes
    # ═══════════════════════════════════════════════════════════════════

    def _outbox(self, connection_id: str) -> _Outbox:
        with self._outbox_guard:
            box = self._outboxes.get(connection_id)
            if box is None:
                box = self._outboxes[connection_id] = _Outbox()
            return box

    def _enqueue(self, delivery: _Delivery) -> None:
        box = self._outbox(delivery.connection_id)
        with box.lock:
            box.queue.append(delivery)
            if box.draining:
                return
            box.draining = True
        self._executor.submit(self._drain, delivery.connection_id, box)

    def _drain(self, connection_id: str, box: _Outbox) -> None:
        while True:
            with box.lock:
                if not box.queue:
                    box.draining = False
                    retired = box.retired
                    delivery = None
                else:
                    delivery = box.queue.popleft()
            if delivery is None:
                if retired:
                    self._drop_outbox(connection_id, box)
                return
            try:
                self._deliver(delivery)
            except Exception as e:
                logger.error(
                    "Delivery to %s crashed: %s", connection_id, e, exc_info=True,
                    extra={"connection_id": connection_id},
                )
                delivery.failure = DeliveryFailure(
                    connection_id, FailureReason.ERROR, detail=str(e),
                )
            finally:
                delivery.done.set()

    def forget(self, connection_id: str) -> None:
        """Drop a closed connection's outbox, now or once it has drained."""
        with self._outbox_guard:
            box = self._outboxes.get(connection_id)
        if box is None:
            return
        with box.lock:
            box.retired = True
            idle = not box.queue and not box.draining
        if idle:
            self._drop_outbox(connection_id, box)

    def _drop_outbox(self, connection_id: str, box: _Outbox) -> None:
        with self._outbox_guard:
            if self._outboxes.get(connection_id) is box:
                del self._outboxes[connection_id]

    def outbox_count(self) -> int:
        with self._outbox_guard:
            return len(self._outboxes)

    # ═══════════════════════════════════════════════════════════════════
    # Single delivery with retry
    # ═══════════════════════════════════════════════════════════════════

    def _deliver(self, delivery: _Delivery) -> None:
        cid = delivery.connection_id
        failure: Optional[Tuple[FailureReason, Optional[str]]] = None

        for attempt in range(1, self._max_retries + 2):  # +1 for initial
            if not self._registry.is_active(cid):
                failure = (FailureReason.SESSION_GONE, None)
                break

            try:
                if self._transport.send(cid, delivery.envelope, timeout=self._timeout):
                    delivery.delivered = True
                    return
                # transport no longer knows the connection
                failure = (FailureReason.SESSION_GONE, "connection closed")
                break
            except TimeoutError as e:
                failure = (FailureReason.TIMEOUT, str(e))
            except DeliveryFailedError as e:
                failure = (_reason_of(e), e.message)
            except Exception as e:
                logger.warning(
                    "Unexpected transport error for %s: %s", cid, e,
                    extra={"connection_id": cid},
                )
                failure = (FailureReason.ERROR, str(e))

            if attempt <= self._max_retries:
                delay = _compute_backoff(self._backoff, attempt)
                logger.info(
                    "Retry %d/%d for %s in %.2fs", attempt, self._max_retries, cid, delay,
                    extra={"connection_id": cid},
                )
                time.sleep(delay)

        reason, detail = failure or (FailureReason.ERROR, None)
        delivery.failure = DeliveryFailure(cid, reason, attempts=attempt, detail=detail)

    # ═══════════════════════════════════════════════════════════════════
    # Alert counters
    # ═══════════════════════════════════════════════════════════════════

    def _update_alert(self, alert: Alert, mutate: Callable[[Alert], bool]) -> bool:
        with self._alert_locks.hold(alert.alert_id):
            target = alert
            if self._alerts is not None:
                target = self._alerts.get(alert.alert_id) or alert
            changed = mutate(target)
            if changed and self._alerts is not None:
                self._alerts.save(target)
            if target is not alert:
                alert.delivery = target.delivery
                alert.acknowledged_by = target.acknowledged_by
                alert.acked_connections = target.acked_connections
            return changed

    def _record_alert_broadcast(self, alert: Alert, report: DeliveryReport) -> None:
        def apply(target: Alert) -> bool:
            target.delivery.record_broadcast(report.targeted, report.failed)
            return True
        self._update_alert(alert, apply)

    def record_delivery_ack(self, alert: Alert, connection_id: str) -> bool:
        """Transport-level ack; counts once per connection."""
        def apply(target: Alert) -> bool:
            if connection_id in target.acked_connections:
                return False
            target.acked_connections.add(connection_id)
            target.delivery.delivered += 1
            return True
        return self._update_alert(alert, apply)

    def record_read(self, alert: Alert, account_id: str) -> bool:
        """User acknowledgement; counts once per account."""
        now = self._clock()

        def apply(target: Alert) -> bool:
            if account_id in target.acknowledged_by:
                return False
            target.acknowledged_by[account_id] = now
            target.delivery.read += 1
            return True
        return self._update_alert(alert, apply)

    # ═══════════════════════════════════════════════════════════════════
    # Shutdown
    # ═══════════════════════════════════════════════════════════════════

    @property
    def max_workers(self) -> int:
        return self._max_workers

    def is_accepting(self, timeout: float = 1.0) -> bool:
        """True while the worker pool still runs submitted work."""
        try:
            self._executor.submit(lambda: None).result(timeout=timeout)
        except RuntimeError:
            return False
        return True

    def shutdown(self, wait: bool = True) -> None:
        self._executor.shutdown(wait=wait)
        logger.info("Broadcast router stopped")


def _reason_of(error: DeliveryFailedError) -> FailureReason:
    try:
        return FailureReason(error.reason)
    except ValueError:
        return FailureReason.SEND_FAILED
