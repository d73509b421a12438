"""
test_consensus_engine.py — Tests for crowd verification.

Covers:
    • Add / toggle-off / move semantics and the audit trail
    • Quorum promotion fires exactly once
    • Deny quorum and the one-way ratchet
    • Proximity gate leaves the tally untouched
    • remove_vote never promotes
    • Moderator override
    • Concurrent voters on one report

Run with:
    pytest tests/test_consensus_engine.py -v
"""

from __future__ import annotations

import threading

import pytest

from backend.app.consensus.engine import ConsensusEngine
from backend.app.consensus.models import (
    LOCATION_UNKNOWN,
    PromoteDecision,
    RejectDecision,
    VerificationState,
    VoteAction,
    VoteTally,
    VoteValue,
)
from backend.app.core.errors import OutOfRangeError
from backend.app.spatial.geo_math import Coordinate, destination_point

REPORT_AT = Coordinate(80.2707, 13.0827)
NEARBY = destination_point(REPORT_AT, 45.0, 1.0)
FAR = destination_point(REPORT_AT, 45.0, 50.0)


def _make_engine(clock, **kwargs) -> ConsensusEngine:
    kwargs.setdefault("confirm_quorum", 3)
    kwargs.setdefault("deny_quorum", 3)
    kwargs.setdefault("max_distance_km", 5.0)
    return ConsensusEngine(clock=clock, **kwargs)


def _cast(engine, tally, account, vote="confirm", where=NEARBY):
    return engine.cast_vote(tally, account, vote, voter_location=where, report_location=REPORT_AT)


# ═══════════════════════════════════════════════════════════════════════════
# Cast semantics
# ═══════════════════════════════════════════════════════════════════════════

class TestCastVote:

    def test_first_vote_added(self, clock):
        engine, tally = _make_engine(clock), VoteTally("RPT-1")
        result = _cast(engine, tally, "u1")
        assert result.action == VoteAction.ADDED
        assert (tally.confirm_count, tally.deny_count) == (1, 0)
        assert tally.vote_of("u1") == VoteValue.CONFIRM
        assert result.distance_km == pytest.approx(1.0, rel=1e-6)

    def test_same_vote_twice_toggles_off(self, clock):
        engine, tally = _make_engine(clock), VoteTally("RPT-1")
        _cast(engine, tally, "u1", "deny")
        result = _cast(engine, tally, "u1", "deny")
        assert result.action == VoteAction.REMOVED
        assert (tally.confirm_count, tally.deny_count) == (0, 0)
        assert tally.vote_of("u1") is None
        assert len(tally.audit) == 2

    def test_opposite_vote_moves(self, clock):
        engine, tally = _make_engine(clock), VoteTally("RPT-1")
        _cast(engine, tally, "u1", "deny")
        result = _cast(engine, tally, "u1", "confirm")
        assert result.action == VoteAction.MOVED
        assert (tally.confirm_count, tally.deny_count) == (1, 0)

    def test_counts_match_voters(self, clock):
        engine, tally = _make_engine(clock, confirm_quorum=100, deny_quorum=100), VoteTally("RPT-1")
        script = [("a", "confirm"), ("b", "deny"), ("a", "deny"), ("c", "confirm"),
                  ("b", "deny"), ("d", "deny"), ("c", "confirm"), ("e", "confirm")]
        for account, vote in script:
            _cast(engine, tally, account, vote)
            assert tally.is_consistent
        assert tally.confirm_count == 1
        assert tally.deny_count == 2

    def test_invalid_vote_value(self, clock):
        engine, tally = _make_engine(clock), VoteTally("RPT-1")
        with pytest.raises(ValueError):
            _cast(engine, tally, "u1", "maybe")
        assert tally.total_votes == 0

    def test_unknown_location_is_audited(self, clock):
        engine, tally = _make_engine(clock), VoteTally("RPT-1")
        result = engine.cast_vote(tally, "u1", "confirm", voter_location=None,
                                  report_location=REPORT_AT)
        assert result.distance_km is None
        assert tally.audit[-1].note == LOCATION_UNKNOWN
        assert tally.confirm_count == 1


# ═══════════════════════════════════════════════════════════════════════════
# Quorum
# ═══════════════════════════════════════════════════════════════════════════

class TestQuorum:

    def test_third_confirm_promotes_once(self, clock):
        engine, tally = _make_engine(clock), VoteTally("RPT-1")
        assert _cast(engine, tally, "u1").decision is None
        assert _cast(engine, tally, "u2").decision is None
        third = _cast(engine, tally, "u3")
        assert isinstance(third.decision, PromoteDecision)
        assert third.promoted
        assert third.decision.confirm_count == 3
        assert tally.state == VerificationState.VERIFIED
        assert tally.state_changed_at == clock.now

        fourth = _cast(engine, tally, "u4")
        assert fourth.decision is None
        assert tally.confirm_count == 4

    def test_deny_quorum_rejects(self, clock):
        engine, tally = _make_engine(clock), VoteTally("RPT-1")
        for account in ("u1", "u2"):
            _cast(engine, tally, account, "deny")
        result = _cast(engine, tally, "u3", "deny")
        assert isinstance(result.decision, RejectDecision)
        assert result.rejected
        assert tally.state == VerificationState.FALSE_REPORT

    def test_ratchet_after_rejection(self, clock):
        engine, tally = _make_engine(clock), VoteTally("RPT-1")
        for account in ("d1", "d2", "d3"):
            _cast(engine, tally, account, "deny")
        for account in ("c1", "c2", "c3", "c4"):
            assert _cast(engine, tally, account).decision is None
        assert tally.state == VerificationState.FALSE_REPORT

    def test_verified_survives_withdrawals(self, clock):
        engine, tally = _make_engine(clock), VoteTally("RPT-1")
        for account in ("u1", "u2", "u3"):
            _cast(engine, tally, account)
        _cast(engine, tally, "u1")
        _cast(engine, tally, "u2")
        assert tally.confirm_count == 1
        assert tally.state == VerificationState.VERIFIED

    def test_move_can_reach_quorum(self, clock):
        engine, tally = _make_engine(clock), VoteTally("RPT-1")
        _cast(engine, tally, "u1")
        _cast(engine, tally, "u2")
        _cast(engine, tally, "u3", "deny")
        result = _cast(engine, tally, "u3", "confirm")
        assert result.action == VoteAction.MOVED
        assert result.promoted

    def test_quorum_of_one(self, clock):
        engine, tally = _make_engine(clock, confirm_quorum=1), VoteTally("RPT-1")
        assert _cast(engine, tally, "u1").promoted


# ═══════════════════════════════════════════════════════════════════════════
# Proximity gate
# ═══════════════════════════════════════════════════════════════════════════

class TestProximity:

    def test_far_voter_rejected_tally_untouched(self, clock):
        engine, tally = _make_engine(clock), VoteTally("RPT-1")
        _cast(engine, tally, "u1")
        before = tally.to_dict(include_audit=True)

        with pytest.raises(OutOfRangeError) as exc:
            _cast(engine, tally, "u2", where=FAR)

        assert exc.value.distance_km == pytest.approx(50.0, rel=1e-6)
        assert exc.value.max_distance_km == 5.0
        assert tally.to_dict(include_audit=True) == before

    def test_far_voter_cannot_toggle_off(self, clock):
        engine, tally = _make_engine(clock), VoteTally("RPT-1")
        _cast(engine, tally, "u1")
        with pytest.raises(OutOfRangeError):
            _cast(engine, tally, "u1", where=FAR)
        assert tally.vote_of("u1") == VoteValue.CONFIRM

    def test_boundary_accepted(self, clock):
        engine, tally = _make_engine(clock), VoteTally("RPT-1")
        edge = destination_point(REPORT_AT, 0.0, 4.999)
        assert _cast(engine, tally, "u1", where=edge).action == VoteAction.ADDED

    def test_per_call_gate(self, clock):
        engine, tally = _make_engine(clock), VoteTally("RPT-1")
        result = engine.cast_vote(tally, "u1", "confirm", voter_location=FAR,
                                  report_location=REPORT_AT, max_distance_km=100)
        assert result.action == VoteAction.ADDED


# ═══════════════════════════════════════════════════════════════════════════
# Withdrawal / override
# ═══════════════════════════════════════════════════════════════════════════

class TestRemoveVote:

    def test_remove_existing(self, clock):
        engine, tally = _make_engine(clock), VoteTally("RPT-1")
        _cast(engine, tally, "u1", "deny")
        result = engine.remove_vote(tally, "u1")
        assert result.action == VoteAction.REMOVED
        assert result.vote == VoteValue.DENY
        assert tally.deny_count == 0
        assert tally.audit[-1].note == "withdrawn"

    def test_remove_missing_is_none(self, clock):
        engine, tally = _make_engine(clock), VoteTally("RPT-1")
        assert engine.remove_vote(tally, "ghost") is None
        assert tally.audit == []

    def test_remove_never_promotes(self, clock):
        engine, tally = _make_engine(clock, confirm_quorum=3, deny_quorum=3), VoteTally("RPT-1")
        _cast(engine, tally, "u1")
        _cast(engine, tally, "u2")
        _cast(engine, tally, "d1", "deny")
        engine.confirm_quorum = 2  # any evaluation now would promote
        result = engine.remove_vote(tally, "d1")
        assert result.decision is None
        assert tally.state == VerificationState.UNVERIFIED


class TestOverride:

    def test_override_from_false_report(self, clock):
        engine, tally = _make_engine(clock), VoteTally("RPT-1")
        for account in ("d1", "d2", "d3"):
            _cast(engine, tally, account, "deny")
        previous = engine.override_state(tally, "unverified", "mod-1")
        assert previous == VerificationState.FALSE_REPORT
        assert tally.state == VerificationState.UNVERIFIED
        assert tally.audit[-1].note == "moderator_override:false_report->unverified"

    def test_quorum_reapplies_after_reopen(self, clock):
        engine, tally = _make_engine(clock), VoteTally("RPT-1")
        for account in ("d1", "d2", "d3"):
            _cast(engine, tally, account, "deny")
        engine.override_state(tally, VerificationState.UNVERIFIED, "mod-1")
        result = _cast(engine, tally, "d4", "deny")
        assert result.rejected


# ═══════════════════════════════════════════════════════════════════════════
# Concurrency
# ═══════════════════════════════════════════════════════════════════════════

class TestConcurrentVotes:

    def test_parallel_confirms_promote_exactly_once(self, clock):
        engine, tally = _make_engine(clock), VoteTally("RPT-1")
        decisions = []
        lock = threading.Lock()
        barrier = threading.Barrier(20)

        def voter(i: int) -> None:
            barrier.wait()
            result = _cast(engine, tally, f"u{i}")
            if result.decision is not None:
                with lock:
                    decisions.append(result.decision)

        threads = [threading.Thread(target=voter, args=(i,)) for i in range(20)]
        for t in threads:
            t.start()
        for t in threads:
            t.join()

        assert len(decisions) == 1
        assert tally.confirm_count == 20
        assert tally.is_consistent
