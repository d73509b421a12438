"""
sweeper.py — Periodic session expiry.

Replaces a storage-level TTL index with an explicit background task so
expiry behaviour is reproducible: the lifespan hook starts the loop, and
tests call ``run_once(now)`` directly.
"""

from __future__ import annotations

import asyncio
import logging
from datetime import datetime
from typing import Optional

from backend.app.core.config import settings
from backend.app.sessions.registry import SessionRegistry

logger = logging.getLogger(__name__)


class SessionSweeper:
    """Calls ``SessionRegistry.sweep_expired`` every ``interval_seconds``."""

    def __init__(
        self,
        registry: SessionRegistry,
        interval_seconds: Optional[float] = None,
    ):
        self._registry = registry
        self._interval = (
            interval_seconds if interval_seconds is not None else settings.SWEEP_INTERVAL_SECONDS
        )
        self._task: Optional[asyncio.Task] = None
        self.runs = 0

    @property
    def running(self) -> bool:
        return self._task is not None and not self._task.done()

    def run_once(self, now: Optional[datetime] = None) -> int:
        affected = self._registry.sweep_expired(now)
        self.runs += 1
        return affected

    async def start(self) -> None:
        if self.running:
            return
        self._task = asyncio.create_task(self._run())
        logger.info("Session sweeper started (every %ss)", self._interval)

    async def stop(self) -> None:
        if self._task:
            self._task.cancel()
            try:
                await self._task
            except asyncio.CancelledError:
                pass
            self._task = None
            logger.info("Session sweeper stopped after %d runs", self.runs)

    async def _run(self) -> None:
        while True:
            await asyncio.sleep(self._interval)
            try:
                # Slot locks are threading locks; keep them off the event loop
                await asyncio.to_thread(self.run_once)
            except Exception as e:
                logger.error("Session sweep failed: %s", e, exc_info=True)
