"""
broadcast — Geofenced fan-out to live sessions.

Sub-modules:
    events     — tagged union of publishable events
    models     — DeliveryReport and failure records
    transport  — push-channel interface + in-memory transport
    subscriptions — per-report followers
    router     — BroadcastRouter (bounded pool, FIFO per session)
    channels/  — WebSocket transport
"""
