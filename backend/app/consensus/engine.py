"""
engine.py — Quorum state machine over VoteTally.

═══════════════════════════════════════════════════════════════════════════
CAST SEMANTICS
═══════════════════════════════════════════════════════════════════════════

    previous vote    cast        effect
    ─────────────    ────────    ─────────────────────────────────
    none             confirm     confirm += 1                (added)
    confirm          confirm     confirm -= 1                (removed)
    deny             confirm     deny -= 1, confirm += 1     (moved)

After every successful mutation the quorum is evaluated once, promote
first. Leaving ``unverified`` is a one-way ratchet: later removals or
opposite votes never move the state back.

═══════════════════════════════════════════════════════════════════════════
CRITICAL SECTIONS
═══════════════════════════════════════════════════════════════════════════

Each report id has its own re-entrant lock. ``cast_vote`` and
``remove_vote`` take it themselves; a caller doing load → cast → save
wraps the whole sequence in ``with engine.locked(report_id):`` so no
other vote on that report interleaves between the count update, the
quorum check and the save. Different reports never contend.
"""

from __future__ import annotations

import logging
from contextlib import contextmanager
from datetime import datetime, timezone
from typing import Callable, Iterator, Optional, Union

from backend.app.consensus.models import (
    LOCATION_UNKNOWN,
    Decision,
    PromoteDecision,
    RejectDecision,
    VerificationState,
    VoteAction,
    VoteAuditEntry,
    VoteResult,
    VoteTally,
    VoteValue,
)
from backend.app.core.config import settings
from backend.app.core.errors import OutOfRangeError
from backend.app.core.locks import KeyedLocks
from backend.app.spatial.geo_math import Coordinate, distance

logger = logging.getLogger(__name__)

Clock = Callable[[], datetime]


def _utcnow() -> datetime:
    return datetime.now(timezone.utc)


class ConsensusEngine:
    """
    Applies votes to tallies and decides promotion / rejection.

    Performs no I/O: deciding is its job, acting on a decision
    (creating the derived alert, saving) belongs to the caller.

    Parameters
    ----------
    confirm_quorum, deny_quorum : int
        Same-direction votes needed to leave ``unverified``.
    max_distance_km : float
        Proximity gate between voter and report.
    """

    def __init__(
        self,
        *,
        confirm_quorum: Optional[int] = None,
        deny_quorum: Optional[int] = None,
        max_distance_km: Optional[float] = None,
        clock: Clock = _utcnow,
    ):
        self.confirm_quorum = (
            confirm_quorum if confirm_quorum is not None else settings.CONFIRM_QUORUM
        )
        self.deny_quorum = deny_quorum if deny_quorum is not None else settings.DENY_QUORUM
        self.max_distance_km = (
            max_distance_km if max_distance_km is not None
            else settings.VERIFICATION_RADIUS_KM
        )
        self._clock = clock
        self._locks = KeyedLocks()

    @contextmanager
    def locked(self, report_id: str) -> Iterator[None]:
        with self._locks.hold(report_id):
            yield

    def forget(self, report_id: str) -> None:
        self._locks.discard(report_id)

    # ── votes ──

    def cast_vote(
        self,
        tally: VoteTally,
        account_id: str,
        vote: Union[VoteValue, str],
        voter_location: Optional[Coordinate] = None,
        report_location: Optional[Coordinate] = None,
        max_distance_km: Optional[float] = None,
    ) -> VoteResult:
        """
        Cast, toggle off, or move one account's vote.

        Raises
        ------
        OutOfRangeError
            Voter and report are both located and further apart than the
            gate. The tally is left untouched.
        ValueError
            ``vote`` is not a VoteValue.
        """
        vote = VoteValue(vote)
        gate = self.max_distance_km if max_distance_km is None else max_distance_km

        measured: Optional[float] = None
        if voter_location is not None and report_location is not None:
            measured = distance(voter_location, report_location)
            if measured > gate:
                logger.info(
                    "Vote on %s from %s rejected: %.2f km > %.2f km",
                    tally.report_id, account_id, measured, gate,
                    extra={"report_id": tally.report_id, "account_id": account_id,
                           "distance_km": measured},
                )
                raise OutOfRangeError(measured, gate)

        with self._locks.hold(tally.report_id):
            now = self._clock()
            previous = tally.voters.get(account_id)

            if previous is None:
                self._bump(tally, vote, +1)
                tally.voters[account_id] = vote
                action = VoteAction.ADDED
            elif previous == vote:
                self._bump(tally, vote, -1)
                del tally.voters[account_id]
                action = VoteAction.REMOVED
            else:
                self._bump(tally, previous, -1)
                self._bump(tally, vote, +1)
                tally.voters[account_id] = vote
                action = VoteAction.MOVED

            tally.audit.append(VoteAuditEntry(
                account_id=account_id,
                vote=vote,
                action=action,
                at=now,
                distance_km=measured,
                note=LOCATION_UNKNOWN if voter_location is None else None,
            ))
            if voter_location is None:
                logger.warning(
                    "Vote on %s from %s accepted without voter location",
                    tally.report_id, account_id,
                    extra={"report_id": tally.report_id, "account_id": account_id},
                )

            decision = self._evaluate(tally, now)
            return VoteResult(
                report_id=tally.report_id,
                account_id=account_id,
                vote=vote,
                action=action,
                confirm_count=tally.confirm_count,
                deny_count=tally.deny_count,
                state=tally.state,
                decision=decision,
                distance_km=measured,
            )

    def remove_vote(self, tally: VoteTally, account_id: str) -> Optional[VoteResult]:
        """Withdraw an account's vote. Never re-evaluates the quorum."""
        with self._locks.hold(tally.report_id):
            previous = tally.voters.pop(account_id, None)
            if previous is None:
                return None
            self._bump(tally, previous, -1)
            tally.audit.append(VoteAuditEntry(
                account_id=account_id,
                vote=previous,
                action=VoteAction.REMOVED,
                at=self._clock(),
                note="withdrawn",
            ))
            return VoteResult(
                report_id=tally.report_id,
                account_id=account_id,
                vote=previous,
                action=VoteAction.REMOVED,
                confirm_count=tally.confirm_count,
                deny_count=tally.deny_count,
                state=tally.state,
            )

    def override_state(
        self,
        tally: VoteTally,
        state: Union[VerificationState, str],
        moderator_id: str,
    ) -> VerificationState:
        """Moderator path: the only way a tally leaves a terminal state."""
        state = VerificationState(state)
        with self._locks.hold(tally.report_id):
            previous = tally.state
            if previous != state:
                tally.state = state
                tally.state_changed_at = self._clock()
            tally.audit.append(VoteAuditEntry(
                account_id=moderator_id,
                vote=None,
                action=VoteAction.MOVED,
                at=self._clock(),
                note=f"moderator_override:{previous.value}->{state.value}",
            ))
        logger.info(
            "Report %s verification overridden by %s: %s → %s",
            tally.report_id, moderator_id, previous.value, state.value,
            extra={"report_id": tally.report_id, "account_id": moderator_id},
        )
        return previous

    # ── internals ──

    @staticmethod
    def _bump(tally: VoteTally, vote: VoteValue, delta: int) -> None:
        if vote == VoteValue.CONFIRM:
            tally.confirm_count += delta
        else:
            tally.deny_count += delta

    def _evaluate(self, tally: VoteTally, now: datetime) -> Optional[Decision]:
        if tally.state != VerificationState.UNVERIFIED:
            return None

        if tally.confirm_count >= self.confirm_quorum:
            tally.state = VerificationState.VERIFIED
            tally.state_changed_at = now
            logger.info(
                "Report %s verified by %d confirmations",
                tally.report_id, tally.confirm_count,
                extra={"report_id": tally.report_id},
            )
            return PromoteDecision(tally.report_id, tally.confirm_count, now)

        if tally.deny_count >= self.deny_quorum:
            tally.state = VerificationState.FALSE_REPORT
            tally.state_changed_at = now
            logger.info(
                "Report %s marked false by %d denials",
                tally.report_id, tally.deny_count,
                extra={"report_id": tally.report_id},
            )
            return RejectDecision(tally.report_id, tally.deny_count, now)

        return None
