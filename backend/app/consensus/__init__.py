"""
consensus — Crowd verification of reports.

Sub-modules:
    models     — VoteTally, decisions, results
    engine     — quorum state machine with per-report critical sections
    promotion  — PromoteDecision → derived Alert mapping
"""
