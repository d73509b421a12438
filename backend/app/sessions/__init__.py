"""
sessions — Where connected clients are right now.

Sub-modules:
    models    — immutable SessionHandle snapshots
    registry  — per-session locked table with area queries
    sweeper   — periodic inactivity / expiry sweep
"""
