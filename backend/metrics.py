"""In-memory metrics collection for sessions.

This module provides the MetricsCollector class that accumulates engine
invocation counts and the cost/duration figures reported by result events.
Totals live as long as the session does and are exposed through the
diagnostic snapshots.

Usage:
    >>> from metrics import MetricsCollector
    >>> collector = MetricsCollector()
    >>> collector.record_invocation("sess_abc123")
    >>> collector.record_result("sess_abc123", cost_usd=0.012, duration_ms=1830)
    >>> collector.get("sess_abc123")
    SessionMetricsData(...)
    >>> collector.discard("sess_abc123")
"""

import time
from dataclasses import dataclass, field

import structlog

logger = structlog.get_logger(__name__)


@dataclass
class SessionMetricsData:
    """Accumulated metrics for a single session.

    Attributes:
        invocations: Number of engine invocations started.
        results: Number of result events received.
        errors: Number of result events flagged as errors.
        total_cost_usd: Sum of reported cost across results.
        total_duration_ms: Sum of reported engine duration across results.
        started_at: Unix timestamp when tracking began.
    """

    invocations: int = 0
    results: int = 0
    errors: int = 0
    total_cost_usd: float = 0.0
    total_duration_ms: int = 0
    started_at: float = field(default_factory=time.time)

    def to_dict(self) -> dict[str, int | float]:
        return {
            "invocations": self.invocations,
            "results": self.results,
            "errors": self.errors,
            "total_cost_usd": self.total_cost_usd,
            "total_duration_ms": self.total_duration_ms,
        }


class MetricsCollector:
    """In-memory collector that tracks per-session metrics.

    All mutations happen on the event loop thread between suspension points,
    so no locking is needed.

    Attributes:
        _sessions: Mapping from session_id to its metrics data.
    """

    def __init__(self) -> None:
        """Initialize an empty metrics collector."""
        self._sessions: dict[str, SessionMetricsData] = {}
        logger.info("metrics_collector_initialized")

    def _data(self, session_id: str) -> SessionMetricsData:
        data = self._sessions.get(session_id)
        if data is None:
            data = SessionMetricsData()
            self._sessions[session_id] = data
            logger.debug("metrics_tracking_started", session_id=session_id)
        return data

    def record_invocation(self, session_id: str) -> None:
        """Count a new engine invocation for a session."""
        self._data(session_id).invocations += 1

    def record_result(
        self,
        session_id: str,
        cost_usd: float | None = None,
        duration_ms: int | None = None,
        is_error: bool = False,
    ) -> None:
        """Add the figures from one result event to the session totals.

        Args:
            session_id: The session the result belongs to.
            cost_usd: Reported cost, if any.
            duration_ms: Reported engine duration, if any.
            is_error: Whether the engine flagged the result as an error.
        """
        data = self._data(session_id)
        data.results += 1
        if is_error:
            data.errors += 1
        if cost_usd is not None:
            data.total_cost_usd += cost_usd
        if duration_ms is not None:
            data.total_duration_ms += duration_ms

        logger.debug(
            "metrics_result_recorded",
            session_id=session_id,
            cost_usd=cost_usd,
            duration_ms=duration_ms,
            total_results=data.results,
        )

    def get(self, session_id: str) -> SessionMetricsData | None:
        """Get current metrics for a session without removing them."""
        return self._sessions.get(session_id)

    def discard(self, session_id: str) -> SessionMetricsData | None:
        """Drop a session's metrics, returning the final totals."""
        data = self._sessions.pop(session_id, None)
        if data is not None:
            logger.info(
                "metrics_session_discarded",
                session_id=session_id,
                **data.to_dict(),
            )
        return data
