from __future__ import annotations

from typing import Iterable

from ..core.models import Connection, ConnectionStatus, HealthReport, HealthStats

_REAUTH_STATUSES = frozenset({ConnectionStatus.EXPIRED, ConnectionStatus.REVOKED})
_ATTENTION_STATUSES = _REAUTH_STATUSES | {ConnectionStatus.ERROR}


class HealthEvaluator:
    """Pure health computations over connection snapshots. No I/O."""

    # PUBLIC_INTERFACE
    @staticmethod
    def evaluate(connection: Connection) -> HealthReport:
        """Derive a HealthReport from one connection snapshot."""
        is_healthy = connection.status == ConnectionStatus.ACTIVE and connection.error_count == 0
        return HealthReport(
            connection_id=connection.id,
            status=connection.status,
            is_healthy=is_healthy,
            can_sync=connection.sync_enabled and is_healthy,
            needs_reauth=connection.status in _REAUTH_STATUSES,
            last_error=connection.error_message,
        )

    # PUBLIC_INTERFACE
    @staticmethod
    def summarize(connections: Iterable[Connection]) -> HealthStats:
        """Count connections per status. EXPIRED, ERROR and REVOKED need attention."""
        stats = HealthStats()
        for connection in connections:
            stats.total += 1
            if connection.status == ConnectionStatus.ACTIVE:
                stats.active += 1
            elif connection.status == ConnectionStatus.EXPIRED:
                stats.expired += 1
            elif connection.status == ConnectionStatus.ERROR:
                stats.error += 1
            elif connection.status == ConnectionStatus.REVOKED:
                stats.revoked += 1
            else:
                stats.pending += 1
            if connection.status in _ATTENTION_STATUSES:
                stats.needs_attention += 1
        return stats
