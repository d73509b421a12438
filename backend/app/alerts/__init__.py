"""
alerts — Geofenced alerts and their lifecycle.

Sub-modules:
    models     — Alert entity, severity → priority, delivery counters
    lifecycle  — State machine, lazy expiry, partial updates
"""
