"""
test_broadcast_router.py — Tests for geofenced fan-out.

Covers:
    • Audience = active, located sessions inside the target area
    • Per-connection failure isolation and failure reasons
    • In-session retry with backoff
    • Per-connection FIFO ordering across publishes
    • Alert delivery counters (accumulating, ack / read once)

Run with:
    pytest tests/test_broadcast_router.py -v
"""

from __future__ import annotations

import threading
import time
from datetime import timedelta
from unittest.mock import MagicMock

import pytest

from backend.app.alerts.models import Alert
from backend.app.broadcast.events import (
    AlertCreated,
    AlertUpdated,
    EventKind,
    NewReport,
    ReportVerified,
)
from backend.app.broadcast.models import FailureReason
from backend.app.broadcast.router import BroadcastRouter, _compute_backoff
from backend.app.broadcast.subscriptions import ReportSubscriptions
from backend.app.broadcast.transport import InMemoryTransport
from backend.app.core.errors import DeliveryFailedError
from backend.app.core.locks import KeyedLocks
from backend.app.reports.models import Report
from backend.app.sessions.registry import SessionRegistry
from backend.app.spatial.areas import CircleArea, PolygonArea
from backend.app.spatial.geo_math import Coordinate, destination_point
from backend.app.storage.repository import InMemoryRepository

CENTER = Coordinate(80.2707, 13.0827)


def _at(km: float, bearing: float = 0.0) -> Coordinate:
    return destination_point(CENTER, bearing, km)


def _make_router(registry, transport, **kwargs) -> BroadcastRouter:
    kwargs.setdefault("max_workers", 4)
    kwargs.setdefault("delivery_timeout", 0.5)
    kwargs.setdefault("max_retries", 1)
    kwargs.setdefault("retry_backoff", 0.001)
    kwargs.setdefault("report_radius_km", 10.0)
    return BroadcastRouter(registry, transport, **kwargs)


def _connect(registry, transport, cid, location, account=None):
    registry.register(cid, account, location)
    transport.connect(cid)


@pytest.fixture
def registry(clock):
    return SessionRegistry(ttl=timedelta(hours=24), inactivity_threshold=timedelta(minutes=30),
                           clock=clock)


@pytest.fixture
def transport():
    return InMemoryTransport()


@pytest.fixture
def router(registry, transport):
    r = _make_router(registry, transport)
    yield r
    r.shutdown()


def _alert(**kwargs) -> Alert:
    kwargs.setdefault("title", "Gas leak")
    kwargs.setdefault("target_area", CircleArea(CENTER, 5.0))
    return Alert(**kwargs)


# ═══════════════════════════════════════════════════════════════════════════
# Audience
# ═══════════════════════════════════════════════════════════════════════════

class TestAudience:

    def test_only_sessions_inside_area(self, registry, transport, router):
        _connect(registry, transport, "in-1", _at(1))
        _connect(registry, transport, "in-2", _at(4, 200))
        _connect(registry, transport, "out-1", _at(6))
        _connect(registry, transport, "out-2", _at(50))
        _connect(registry, transport, "out-3", _at(500))

        report = router.publish(AlertCreated(_alert()))

        assert report.targeted == 2
        assert report.delivered == 2
        assert set(report.delivered_to) == {"in-1", "in-2"}
        assert len(transport.inbox("in-1")) == 1
        assert transport.inbox("out-1") == []

    def test_envelope_shape(self, registry, transport, router):
        _connect(registry, transport, "c1", _at(1))
        alert = _alert()
        router.publish(AlertCreated(alert))
        envelope = transport.inbox("c1")[0]
        assert envelope["type"] == "event"
        assert envelope["event"] == EventKind.ALERT_CREATED.value
        assert envelope["entity_id"] == alert.alert_id
        assert envelope["data"]["title"] == "Gas leak"

    def test_inactive_and_unlocated_excluded(self, registry, transport, router):
        _connect(registry, transport, "gone", _at(1))
        registry.deregister("gone")
        registry.register("no-fix")
        transport.connect("no-fix")
        report = router.publish(AlertCreated(_alert()))
        assert report.targeted == 0
        assert report.reach_rate == 0.0

    def test_polygon_area(self, registry, transport, router):
        _connect(registry, transport, "in", Coordinate(5, 5))
        _connect(registry, transport, "out", Coordinate(20, 20))
        square = PolygonArea((Coordinate(0, 0), Coordinate(0, 10),
                              Coordinate(10, 10), Coordinate(10, 0)))
        report = router.publish(AlertCreated(_alert(target_area=square)))
        assert report.delivered_to == ["in"]

    def test_new_report_uses_report_radius(self, registry, transport, router):
        _connect(registry, transport, "near", _at(9))
        _connect(registry, transport, "far", _at(11))
        report = router.publish(NewReport(Report(title="Tree down", location=CENTER)))
        assert report.delivered_to == ["near"]

    def test_explicit_area_wins(self, registry, transport, router):
        _connect(registry, transport, "near", _at(9))
        report = router.publish(
            NewReport(Report(title="Tree down", location=CENTER)),
            target_area=CircleArea(CENTER, 1.0),
        )
        assert report.targeted == 0

    def test_followers_join_report_audience(self, registry, transport):
        subscriptions = ReportSubscriptions()
        router = _make_router(registry, transport, subscriptions=subscriptions)
        try:
            _connect(registry, transport, "near", _at(2))
            _connect(registry, transport, "far", _at(60))
            _connect(registry, transport, "gone", _at(60))
            registry.deregister("gone")
            report = Report(title="Tree down", location=CENTER)
            for cid in ("near", "far", "gone"):
                subscriptions.subscribe(report.report_id, cid)

            verified = router.publish(ReportVerified(report))
            created = router.publish(NewReport(report))
        finally:
            router.shutdown()

        assert sorted(verified.delivered_to) == ["far", "near"]
        assert verified.targeted == 2
        assert created.delivered_to == ["near"]
        assert len(transport.inbox("near")) == 2


# ═══════════════════════════════════════════════════════════════════════════
# Failures
# ═══════════════════════════════════════════════════════════════════════════

class _DeregisteringTransport(InMemoryTransport):
    """First send to ``victim`` fails and the session disappears."""

    def __init__(self, registry, victim):
        super().__init__()
        self._registry = registry
        self._victim = victim

    def send(self, connection_id, payload, *, timeout):
        if connection_id == self._victim:
            self._registry.deregister(connection_id)
            raise DeliveryFailedError(connection_id)
        return super().send(connection_id, payload, timeout=timeout)


class _SlowTransport(InMemoryTransport):

    def __init__(self, slow_id, delay):
        super().__init__()
        self._slow_id = slow_id
        self._delay = delay

    def send(self, connection_id, payload, *, timeout):
        if connection_id == self._slow_id:
            time.sleep(self._delay)
        return super().send(connection_id, payload, timeout=timeout)


class TestFailures:

    def test_partial_failure_isolated(self, registry, transport):
        router = _make_router(registry, transport, max_retries=0)
        try:
            for cid in ("a", "b", "c"):
                _connect(registry, transport, cid, _at(1))
            transport.fail_next("b")
            report = router.publish(AlertCreated(_alert()))
        finally:
            router.shutdown()

        assert report.targeted == 3
        assert report.delivered == 2
        assert report.failed == 1
        assert report.failures[0].connection_id == "b"
        assert report.failures[0].reason == FailureReason.SEND_FAILED
        assert report.failures_by_reason() == {"send_failed": 1}

    def test_retry_recovers(self, registry, transport, router):
        _connect(registry, transport, "flaky", _at(1))
        transport.fail_next("flaky", times=1)
        report = router.publish(AlertCreated(_alert()))
        assert report.delivered == 1
        assert len(transport.inbox("flaky")) == 1

    def test_retries_exhausted(self, registry, transport, router):
        _connect(registry, transport, "broken", _at(1))
        transport.fail_next("broken", times=5)
        report = router.publish(AlertCreated(_alert()))
        assert report.failed == 1
        assert report.failures[0].attempts == 2

    def test_closed_connection_is_session_gone(self, registry, transport, router):
        _connect(registry, transport, "c1", _at(1))
        transport.close("c1", notify=False)
        report = router.publish(AlertCreated(_alert()))
        assert report.failures[0].reason == FailureReason.SESSION_GONE

    def test_deregistered_mid_delivery_not_retried(self, registry):
        transport = _DeregisteringTransport(registry, "victim")
        router = _make_router(registry, transport, max_retries=3)
        try:
            _connect(registry, transport, "victim", _at(1))
            _connect(registry, transport, "ok", _at(1))
            report = router.publish(AlertCreated(_alert()))
        finally:
            router.shutdown()
        failure = report.failures[0]
        assert failure.reason == FailureReason.SESSION_GONE
        assert failure.attempts == 2
        assert report.delivered_to == ["ok"]

    def test_hanging_connection_times_out(self, registry, transport, router):
        _connect(registry, transport, "stuck", _at(1))
        _connect(registry, transport, "fine", _at(1))
        transport.hang("stuck")
        report = router.publish(AlertCreated(_alert()))
        assert report.delivered_to == ["fine"]
        assert report.failures[0].reason == FailureReason.TIMEOUT

    def test_slow_connection_does_not_block_others(self, registry):
        transport = _SlowTransport("slow", 0.3)
        router = _make_router(registry, transport, max_workers=4)
        try:
            for cid in ("slow", "f1", "f2", "f3"):
                _connect(registry, transport, cid, _at(1))
            report = router.publish(AlertCreated(_alert()))
        finally:
            router.shutdown()
        assert report.delivered == 4


# ═══════════════════════════════════════════════════════════════════════════
# Ordering
# ═══════════════════════════════════════════════════════════════════════════

class TestOrdering:

    def test_fifo_per_connection(self, registry, transport, router):
        _connect(registry, transport, "c1", _at(1))
        _connect(registry, transport, "c2", _at(2))
        alerts = [_alert(title=f"Alert {i}") for i in range(10)]
        for alert in alerts:
            router.publish(AlertCreated(alert))
        for cid in ("c1", "c2"):
            assert [e["entity_id"] for e in transport.inbox(cid)] == [a.alert_id for a in alerts]

    def test_concurrent_publishers_keep_per_thread_order(self, registry, transport, router):
        _connect(registry, transport, "c1", _at(1))
        batches = {name: [_alert(title=f"{name}-{i}") for i in range(5)] for name in ("x", "y")}

        def publisher(name: str) -> None:
            for alert in batches[name]:
                router.publish(AlertCreated(alert))

        threads = [threading.Thread(target=publisher, args=(n,)) for n in batches]
        for t in threads:
            t.start()
        for t in threads:
            t.join()

        received = [e["data"]["title"] for e in transport.inbox("c1")]
        assert len(received) == 10
        for name in batches:
            assert [t for t in received if t.startswith(name)] == [f"{name}-{i}" for i in range(5)]


# ═══════════════════════════════════════════════════════════════════════════
# Alert counters
# ═══════════════════════════════════════════════════════════════════════════

class TestAlertCounters:

    def test_counters_persisted_and_accumulate(self, registry, transport):
        repo = InMemoryRepository("alert_id", "Alert")
        router = _make_router(registry, transport, alerts=repo, max_retries=0)
        try:
            _connect(registry, transport, "a", _at(1))
            _connect(registry, transport, "b", _at(1))
            alert = _alert()
            repo.save(alert)

            transport.fail_next("b")
            router.publish(AlertCreated(alert))
            router.publish(AlertUpdated(alert, changed=("title",)))
        finally:
            router.shutdown()

        stored = repo.get(alert.alert_id)
        assert stored.delivery.total_targeted == 4
        assert stored.delivery.sent == 4
        assert stored.delivery.failed == 1
        assert alert.delivery.total_targeted == 4

    def test_counters_without_repository(self, registry, transport, router):
        _connect(registry, transport, "a", _at(1))
        alert = _alert()
        router.publish(AlertCreated(alert))
        assert alert.delivery.total_targeted == 1

    def test_report_events_leave_counters_alone(self, registry, transport, router):
        _connect(registry, transport, "a", _at(1))
        report = router.publish(NewReport(Report(title="Pothole", location=CENTER)))
        assert report.event_kind == "new_report"

    def test_delivery_ack_once_per_connection(self, router):
        alert = _alert()
        assert router.record_delivery_ack(alert, "c1") is True
        assert router.record_delivery_ack(alert, "c1") is False
        assert router.record_delivery_ack(alert, "c2") is True
        assert alert.delivery.delivered == 2

    def test_read_once_per_account(self, router):
        alert = _alert()
        assert router.record_read(alert, "alice") is True
        assert router.record_read(alert, "alice") is False
        assert alert.delivery.read == 1
        assert "alice" in alert.acknowledged_by


class TestHelpers:

    def test_backoff_doubles(self):
        assert _compute_backoff(0.1, 1) == pytest.approx(0.1)
        assert _compute_backoff(0.1, 2) == pytest.approx(0.2)
        assert _compute_backoff(0.1, 4) == pytest.approx(0.8)

    def test_shutdown_stops_accepting(self, registry, transport):
        router = _make_router(registry, transport)
        assert router.is_accepting()
        router.shutdown()
        assert not router.is_accepting()

    def test_injected_locks_kept_when_empty(self, registry, transport):
        locks = KeyedLocks()
        router = _make_router(registry, transport, alert_locks=locks)
        try:
            assert router._alert_locks is locks
        finally:
            router.shutdown()

    def test_forget_drops_idle_outbox(self, registry, transport, router):
        _connect(registry, transport, "c1", _at(1))
        router.publish(AlertCreated(_alert()))
        assert router.outbox_count() == 1
        router.forget("c1")
        router.forget("never-seen")
        deadline = time.monotonic() + 2
        while router.outbox_count() and time.monotonic() < deadline:
            time.sleep(0.01)
        assert router.outbox_count() == 0


class TestTransport:

    def test_close_notifies_handler(self, transport):
        handler = MagicMock()
        transport.set_disconnect_handler(handler)
        transport.connect("c1")
        transport.close("c1")
        handler.assert_called_once_with("c1")

    def test_close_without_notify(self, transport):
        handler = MagicMock()
        transport.set_disconnect_handler(handler)
        transport.connect("c1")
        transport.close("c1", notify=False)
        handler.assert_not_called()

    def test_handler_error_is_contained(self, transport):
        transport.set_disconnect_handler(MagicMock(side_effect=RuntimeError("boom")))
        transport.connect("c1")
        transport.close("c1")
        assert "c1" not in transport.connections()

    def test_send_to_unknown_connection(self, transport):
        assert transport.send("ghost", {"type": "event"}, timeout=0.1) is False


class TestSubscriptions:

    def test_subscribe_is_idempotent(self):
        subs = ReportSubscriptions()
        assert subs.subscribe("RPT-1", "c1")
        assert not subs.subscribe("RPT-1", "c1")
        subs.subscribe("RPT-1", "c0")
        assert subs.subscribers("RPT-1") == ["c0", "c1"]

    def test_unsubscribe_cleans_both_indexes(self):
        subs = ReportSubscriptions()
        subs.subscribe("RPT-1", "c1")
        assert subs.unsubscribe("RPT-1", "c1")
        assert not subs.unsubscribe("RPT-1", "c1")
        assert subs.stats() == {"reports": 0, "connections": 0}

    def test_drop_connection(self):
        subs = ReportSubscriptions()
        subs.subscribe("RPT-1", "c1")
        subs.subscribe("RPT-2", "c1")
        subs.subscribe("RPT-2", "c2")
        assert subs.drop_connection("c1") == 2
        assert subs.subscriptions_of("c1") == []
        assert subs.subscribers("RPT-1") == []
        assert subs.subscribers("RPT-2") == ["c2"]
        assert subs.drop_connection("c1") == 0
