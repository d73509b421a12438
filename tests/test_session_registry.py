"""
test_session_registry.py — Tests for the live-session table and sweeper.

Covers:
    • Register / duplicate / deregister lifecycle
    • Location updates and heartbeats on inactive sessions
    • Inactivity timeout vs hard expiry in sweep_expired
    • Circle / polygon membership queries
    • Distinct-account counting (anonymous excluded)
    • Concurrent writers on different sessions

Run with:
    pytest tests/test_session_registry.py -v
"""

from __future__ import annotations

import threading
from datetime import timedelta

import pytest

from backend.app.core.errors import DuplicateConnectionError, UnknownSessionError
from backend.app.sessions.models import DisconnectReason
from backend.app.sessions.registry import SessionRegistry
from backend.app.sessions.sweeper import SessionSweeper
from backend.app.spatial.areas import CircleArea, PolygonArea
from backend.app.spatial.geo_math import Coordinate, destination_point

CENTER = Coordinate(80.2707, 13.0827)


def _make_registry(clock) -> SessionRegistry:
    return SessionRegistry(
        ttl=timedelta(hours=24),
        inactivity_threshold=timedelta(minutes=30),
        clock=clock,
    )


def _at(km: float, bearing: float = 90.0) -> Coordinate:
    return destination_point(CENTER, bearing, km)


# ═══════════════════════════════════════════════════════════════════════════
# Lifecycle
# ═══════════════════════════════════════════════════════════════════════════

class TestRegistration:

    def test_register_returns_handle(self, clock):
        reg = _make_registry(clock)
        h = reg.register("c1", "acct-1", CENTER)
        assert h.is_active
        assert h.location == CENTER
        assert h.location_updated_at == clock.now
        assert h.expires_at == clock.now + timedelta(hours=24)

    def test_anonymous_session(self, clock):
        h = _make_registry(clock).register("c1")
        assert h.is_anonymous
        assert h.location is None
        assert not h.is_locatable

    def test_duplicate_rejected(self, clock):
        reg = _make_registry(clock)
        reg.register("c1", "acct-1")
        with pytest.raises(DuplicateConnectionError):
            reg.register("c1", "acct-2")
        assert reg.get("c1").account_id == "acct-1"

    def test_update_location(self, clock):
        reg = _make_registry(clock)
        reg.register("c1")
        clock.advance(minutes=2)
        h = reg.update_location("c1", _at(1))
        assert h.location == _at(1)
        assert h.location_updated_at == clock.now

    def test_unknown_session(self, clock):
        reg = _make_registry(clock)
        with pytest.raises(UnknownSessionError):
            reg.update_location("nope", CENTER)
        with pytest.raises(UnknownSessionError):
            reg.heartbeat("nope")
        with pytest.raises(UnknownSessionError):
            reg.deregister("nope")

    def test_heartbeat_pushes_expiry(self, clock):
        reg = _make_registry(clock)
        reg.register("c1")
        clock.advance(hours=5)
        h = reg.heartbeat("c1")
        assert h.last_heartbeat == clock.now
        assert h.expires_at == clock.now + timedelta(hours=24)

    def test_deregister_is_soft_and_idempotent(self, clock):
        reg = _make_registry(clock)
        reg.register("c1", "acct-1", CENTER)
        first = reg.deregister("c1", DisconnectReason.TRANSPORT_ERROR)
        second = reg.deregister("c1", DisconnectReason.CLIENT_DISCONNECT)
        assert not first.is_active
        assert second.disconnect_reason == "transport_error"
        assert reg.get("c1") is not None
        assert not reg.is_active("c1")

    def test_inactive_session_rejects_updates(self, clock):
        reg = _make_registry(clock)
        reg.register("c1")
        reg.deregister("c1")
        with pytest.raises(UnknownSessionError):
            reg.update_location("c1", CENTER)
        with pytest.raises(UnknownSessionError):
            reg.heartbeat("c1")


# ═══════════════════════════════════════════════════════════════════════════
# Expiry
# ═══════════════════════════════════════════════════════════════════════════

class TestSweep:

    def test_silent_session_times_out(self, clock):
        reg = _make_registry(clock)
        reg.register("c1", "acct-1", CENTER)
        clock.advance(minutes=31)
        assert reg.sweep_expired() == 1
        h = reg.get("c1")
        assert not h.is_active
        assert h.disconnect_reason == "heartbeat_timeout"
        assert reg.find_in_circle(CENTER, 10) == []

    def test_heartbeat_keeps_session_alive(self, clock):
        reg = _make_registry(clock)
        reg.register("c1", "acct-1", CENTER)
        clock.advance(minutes=20)
        reg.heartbeat("c1")
        clock.advance(minutes=20)
        assert reg.sweep_expired() == 0
        assert reg.is_active("c1")

    def test_exactly_at_threshold_stays_active(self, clock):
        reg = _make_registry(clock)
        reg.register("c1", None, CENTER)
        clock.advance(minutes=30)
        assert reg.sweep_expired() == 0

    def test_hard_expiry_purges(self, clock):
        reg = _make_registry(clock)
        reg.register("c1", "acct-1", CENTER)
        clock.advance(hours=24)
        assert reg.sweep_expired() == 1
        assert reg.get("c1") is None
        assert len(reg) == 0

    def test_sweep_is_idempotent(self, clock):
        reg = _make_registry(clock)
        reg.register("c1", None, CENTER)
        clock.advance(minutes=45)
        assert reg.sweep_expired() == 1
        assert reg.sweep_expired() == 0

    def test_explicit_now(self, clock):
        reg = _make_registry(clock)
        reg.register("c1", None, CENTER)
        assert reg.sweep_expired(clock.now + timedelta(days=2)) == 1
        assert reg.get("c1") is None

    def test_sweeper_run_once_counts(self, clock):
        reg = _make_registry(clock)
        reg.register("c1", None, CENTER)
        sweeper = SessionSweeper(reg, interval_seconds=60)
        clock.advance(minutes=31)
        assert sweeper.run_once() == 1
        assert sweeper.runs == 1
        assert not sweeper.running

    def test_sweep_notifies_listeners(self, clock):
        reg = _make_registry(clock)
        reg.register("quiet", None, CENTER)
        clock.advance(minutes=31)
        reg.register("fresh", None, CENTER)
        seen = []
        reg.on_swept(seen.append)
        reg.on_swept(lambda ids: 1 / 0)
        assert reg.sweep_expired() == 1
        assert reg.sweep_expired() == 0
        assert seen == [["quiet"]]

    def test_last_known_location(self, clock):
        reg = _make_registry(clock)
        reg.register("phone", "acct-1", _at(1))
        clock.advance(minutes=1)
        reg.register("tablet", "acct-1", _at(3))
        reg.register("laptop", "acct-1")
        assert reg.last_known_location("acct-1") == _at(3)
        clock.advance(minutes=1)
        reg.update_location("phone", _at(2))
        assert reg.last_known_location("acct-1") == _at(2)
        reg.deregister("phone")
        assert reg.last_known_location("acct-1") == _at(3)
        assert reg.last_known_location("nobody") is None


# ═══════════════════════════════════════════════════════════════════════════
# Area queries
# ═══════════════════════════════════════════════════════════════════════════

class TestAreaQueries:

    def _populate(self, reg: SessionRegistry) -> None:
        reg.register("near-1", "alice", _at(1))
        reg.register("near-2", "alice", _at(2, 180))
        reg.register("near-3", None, _at(3, 270))
        reg.register("mid", "bob", _at(8))
        reg.register("far", "carol", _at(50))
        reg.register("nowhere", "dave")

    def test_find_in_circle(self, clock):
        reg = _make_registry(clock)
        self._populate(reg)
        ids = {h.connection_id for h in reg.find_in_circle(CENTER, 5)}
        assert ids == {"near-1", "near-2", "near-3"}

    def test_find_in_circle_excludes_inactive(self, clock):
        reg = _make_registry(clock)
        self._populate(reg)
        reg.deregister("near-1")
        ids = {h.connection_id for h in reg.find_in_circle(CENTER, 5)}
        assert ids == {"near-2", "near-3"}

    def test_unlocated_never_matches(self, clock):
        reg = _make_registry(clock)
        self._populate(reg)
        ids = {h.connection_id for h in reg.find_in_circle(CENTER, 20000)}
        assert "nowhere" not in ids

    def test_distinct_accounts(self, clock):
        reg = _make_registry(clock)
        self._populate(reg)
        # alice twice, one anonymous
        assert reg.count_distinct_accounts_in_circle(CENTER, 5) == 1
        assert reg.count_distinct_accounts_in_circle(CENTER, 10) == 2
        assert reg.count_distinct_accounts_in_area(CircleArea(CENTER, 100)) == 3

    def test_find_in_polygon(self, clock):
        reg = _make_registry(clock)
        reg.register("in", None, Coordinate(5, 5))
        reg.register("edge", None, Coordinate(0, 5))
        reg.register("out", None, Coordinate(20, 20))
        square = [Coordinate(0, 0), Coordinate(0, 10), Coordinate(10, 10), Coordinate(10, 0)]
        ids = {h.connection_id for h in reg.find_in_polygon(square)}
        assert ids == {"in", "edge"}
        assert {h.connection_id for h in reg.find_in_area(PolygonArea(tuple(square)))} == ids

    def test_sessions_for_account(self, clock):
        reg = _make_registry(clock)
        self._populate(reg)
        assert {h.connection_id for h in reg.sessions_for_account("alice")} == {"near-1", "near-2"}

    def test_stats(self, clock):
        reg = _make_registry(clock)
        self._populate(reg)
        reg.deregister("far")
        stats = reg.stats()
        assert stats["total"] == 6
        assert stats["active"] == 5
        assert stats["inactive"] == 1
        assert stats["anonymous"] == 1
        assert stats["located"] == 4
        assert stats["accounts"] == 3


# ═══════════════════════════════════════════════════════════════════════════
# Concurrency
# ═══════════════════════════════════════════════════════════════════════════

class TestConcurrency:

    def test_parallel_updates_keep_last_write(self, clock):
        reg = _make_registry(clock)
        for i in range(8):
            reg.register(f"c{i}", f"acct-{i}", CENTER)

        def worker(cid: str) -> None:
            for step in range(50):
                reg.update_location(cid, _at(step * 0.1))
                reg.heartbeat(cid)

        threads = [threading.Thread(target=worker, args=(f"c{i}",)) for i in range(8)]
        for t in threads:
            t.start()
        for t in threads:
            t.join()

        for i in range(8):
            assert reg.get(f"c{i}").location == _at(49 * 0.1)
        assert reg.active_count() == 8
