"""
models.py — Vote tally and consensus decisions.

Defines:
    • VoteValue          — confirm / deny
    • VerificationState  — unverified → verified | false_report
    • VoteAction         — what a cast did to the tally
    • VoteAuditEntry     — one row of the per-tally audit trail
    • VoteTally          — counts + one-vote-per-account voter map
    • PromoteDecision / RejectDecision — emitted once on quorum
    • VoteResult         — what a caller gets back from a cast

═══════════════════════════════════════════════════════════════════════════
VERIFICATION STATE MACHINE
═══════════════════════════════════════════════════════════════════════════

                 confirms ≥ quorum
    unverified ─────────────────────► verified
        │
        │        denies ≥ quorum
        └───────────────────────────► false_report

Both targets are terminal for crowd votes. Only a moderator override
moves a tally out of them.
"""

from __future__ import annotations

from dataclasses import dataclass, field
from datetime import datetime
from enum import Enum
from typing import Any, Dict, List, Optional, Union


# ═══════════════════════════════════════════════════════════════════════════
# Enums
# ═══════════════════════════════════════════════════════════════════════════

class VoteValue(str, Enum):
    CONFIRM = "confirm"
    DENY    = "deny"


class VerificationState(str, Enum):
    UNVERIFIED   = "unverified"
    VERIFIED     = "verified"
    FALSE_REPORT = "false_report"


class VoteAction(str, Enum):
    ADDED   = "added"     # first vote from this account
    REMOVED = "removed"   # same value cast again, or withdrawn
    MOVED   = "moved"     # switched confirm ↔ deny


LOCATION_UNKNOWN = "location_unknown"


# ═══════════════════════════════════════════════════════════════════════════
# Tally
# ═══════════════════════════════════════════════════════════════════════════

@dataclass
class VoteAuditEntry:
    account_id: str
    vote: Optional[VoteValue]
    action: VoteAction
    at: datetime
    distance_km: Optional[float] = None
    note: Optional[str] = None       # LOCATION_UNKNOWN, "moderator_override", ...

    def to_dict(self) -> Dict[str, Any]:
        return {
            "account_id": self.account_id,
            "vote": self.vote.value if self.vote else None,
            "action": self.action.value,
            "at": self.at.isoformat(),
            "distance_km": (
                round(self.distance_km, 3) if self.distance_km is not None else None
            ),
            "note": self.note,
        }


@dataclass
class VoteTally:
    """
    Per-report vote aggregate.

    Invariant: ``confirm_count + deny_count == len(voters)``.
    Mutated only by ``ConsensusEngine`` inside the report's lock.
    """
    report_id: str
    confirm_count: int = 0
    deny_count: int = 0
    voters: Dict[str, VoteValue] = field(default_factory=dict)
    state: VerificationState = VerificationState.UNVERIFIED
    state_changed_at: Optional[datetime] = None
    audit: List[VoteAuditEntry] = field(default_factory=list)

    @property
    def total_votes(self) -> int:
        return self.confirm_count + self.deny_count

    @property
    def is_consistent(self) -> bool:
        return (
            self.confirm_count >= 0
            and self.deny_count >= 0
            and self.total_votes == len(self.voters)
        )

    def vote_of(self, account_id: str) -> Optional[VoteValue]:
        return self.voters.get(account_id)

    def to_dict(self, include_audit: bool = False) -> Dict[str, Any]:
        data: Dict[str, Any] = {
            "confirm_count": self.confirm_count,
            "deny_count": self.deny_count,
            "verification_state": self.state.value,
            "state_changed_at": (
                self.state_changed_at.isoformat() if self.state_changed_at else None
            ),
        }
        if include_audit:
            data["audit"] = [e.to_dict() for e in self.audit]
        return data


# ═══════════════════════════════════════════════════════════════════════════
# Decisions & results
# ═══════════════════════════════════════════════════════════════════════════

@dataclass(frozen=True)
class PromoteDecision:
    report_id: str
    confirm_count: int
    decided_at: datetime


@dataclass(frozen=True)
class RejectDecision:
    report_id: str
    deny_count: int
    decided_at: datetime


Decision = Union[PromoteDecision, RejectDecision]


@dataclass
class VoteResult:
    report_id: str
    account_id: str
    vote: VoteValue
    action: VoteAction
    confirm_count: int
    deny_count: int
    state: VerificationState
    decision: Optional[Decision] = None
    distance_km: Optional[float] = None

    @property
    def promoted(self) -> bool:
        return isinstance(self.decision, PromoteDecision)

    @property
    def rejected(self) -> bool:
        return isinstance(self.decision, RejectDecision)

    def to_dict(self) -> Dict[str, Any]:
        return {
            "report_id": self.report_id,
            "vote": self.vote.value,
            "action": self.action.value,
            "confirm_count": self.confirm_count,
            "deny_count": self.deny_count,
            "verification_state": self.state.value,
            "promoted": self.promoted,
            "rejected": self.rejected,
            "distance_km": (
                round(self.distance_km, 3) if self.distance_km is not None else None
            ),
        }
