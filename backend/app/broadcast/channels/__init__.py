"""
channels — Concrete push transports (WebSocket).
"""
