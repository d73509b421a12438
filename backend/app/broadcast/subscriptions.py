"""
subscriptions.py — Per-report follower lists.

A live connection can follow a report it is not near (it filed it, or
opened its detail view). Verification and moderation events then reach
the followers as well as the sessions around the report.

    report id ─► {connection ids}
    connection id ─► {report ids}     reverse index for disconnect cleanup
"""

from __future__ import annotations

import logging
import threading
from typing import Dict, List, Set

logger = logging.getLogger(__name__)


class ReportSubscriptions:
    """Thread-safe report → followers table."""

    def __init__(self) -> None:
        self._by_report: Dict[str, Set[str]] = {}
        self._by_connection: Dict[str, Set[str]] = {}
        self._lock = threading.Lock()

    def subscribe(self, report_id: str, connection_id: str) -> bool:
        """False if the connection already follows the report."""
        with self._lock:
            followers = self._by_report.setdefault(report_id, set())
            if connection_id in followers:
                return False
            followers.add(connection_id)
            self._by_connection.setdefault(connection_id, set()).add(report_id)
        logger.debug(
            "%s follows report %s", connection_id, report_id,
            extra={"connection_id": connection_id, "report_id": report_id},
        )
        return True

    def unsubscribe(self, report_id: str, connection_id: str) -> bool:
        with self._lock:
            followers = self._by_report.get(report_id)
            if not followers or connection_id not in followers:
                return False
            followers.discard(connection_id)
            if not followers:
                del self._by_report[report_id]
            reports = self._by_connection.get(connection_id)
            if reports is not None:
                reports.discard(report_id)
                if not reports:
                    del self._by_connection[connection_id]
            return True

    def drop_connection(self, connection_id: str) -> int:
        """Remove every subscription of a closed connection."""
        with self._lock:
            reports = self._by_connection.pop(connection_id, set())
            for report_id in reports:
                followers = self._by_report.get(report_id)
                if followers is None:
                    continue
                followers.discard(connection_id)
                if not followers:
                    del self._by_report[report_id]
        return len(reports)

    def subscribers(self, report_id: str) -> List[str]:
        with self._lock:
            return sorted(self._by_report.get(report_id, ()))

    def subscriptions_of(self, connection_id: str) -> List[str]:
        with self._lock:
            return sorted(self._by_connection.get(connection_id, ()))

    def stats(self) -> Dict[str, int]:
        with self._lock:
            return {
                "reports": len(self._by_report),
                "connections": len(self._by_connection),
            }
