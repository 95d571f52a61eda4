"""
Component health probe.

Collects one snapshot of database reachability, RPC endpoint breaker
states, indexer lag per stream and the last successful run of each
scheduled job, publishes it to Prometheus and logs a one-line summary.
"""
from dataclasses import dataclass, field
from datetime import datetime, timedelta
from typing import Dict, Mapping, Optional

from sqlalchemy import text
from sqlalchemy.orm import sessionmaker

from marketsync.core.database import session_scope
from marketsync.core.logging import get_logger
from marketsync.core.metrics import record_heartbeat, update_db_pool_metrics
from marketsync.repositories import CursorRepository

logger = get_logger(__name__)

HEALTHY = "healthy"
DEGRADED = "degraded"
UNHEALTHY = "unhealthy"


@dataclass
class HealthReport:
    status: str = HEALTHY
    database: str = "ok"
    rpc_endpoints: Dict[str, str] = field(default_factory=dict)
    head_block: Optional[int] = None
    indexer_lag: Dict[str, int] = field(default_factory=dict)
    stale_jobs: Dict[str, Optional[datetime]] = field(default_factory=dict)
    checked_at: datetime = field(default_factory=datetime.utcnow)

    def degrade(self, status: str) -> None:
        order = (HEALTHY, DEGRADED, UNHEALTHY)
        if order.index(status) > order.index(self.status):
            self.status = status


class HealthMonitor:
    """Builds health reports for the sync service."""

    def __init__(
        self,
        gateway,
        session_factory: sessionmaker,
        engine=None,
        confirmation_depth: int = 3,
        lag_warning_blocks: int = 1000,
    ):
        self.gateway = gateway
        self.session_factory = session_factory
        self.engine = engine
        self.confirmation_depth = confirmation_depth
        self.lag_warning_blocks = lag_warning_blocks

    async def probe(
        self,
        last_success: Optional[Mapping[str, Optional[datetime]]] = None,
        max_age: Optional[Mapping[str, timedelta]] = None,
        now: Optional[datetime] = None,
    ) -> HealthReport:
        """
        Take a health snapshot.

        Args:
            last_success: Job id -> time of its last successful run (None if never)
            max_age: Job id -> how old that success may be before the job counts as stale
        """
        now = now or datetime.utcnow()
        report = HealthReport(checked_at=now)

        try:
            with session_scope(self.session_factory) as db:
                db.execute(text("SELECT 1"))
        except Exception as exc:
            report.database = f"error: {exc}"
            report.degrade(UNHEALTHY)
        if self.engine is not None:
            update_db_pool_metrics(self.engine)

        report.rpc_endpoints = self.gateway.health()
        if report.rpc_endpoints and all(state == "open" for state in report.rpc_endpoints.values()):
            report.degrade(UNHEALTHY)
        elif any(state != "closed" for state in report.rpc_endpoints.values()):
            report.degrade(DEGRADED)

        try:
            report.head_block = await self.gateway.get_block_number(priority=True)
        except Exception as exc:
            logger.warning(f"⚠️ Health probe could not read the chain head: {exc}")
            report.degrade(UNHEALTHY)

        if report.head_block is not None and report.database == "ok":
            confirmed = report.head_block - self.confirmation_depth
            with session_scope(self.session_factory) as db:
                for cursor in CursorRepository(db).find_all():
                    lag = max(confirmed - cursor.last_indexed_block, 0)
                    report.indexer_lag[cursor.stream] = lag
                    if lag > self.lag_warning_blocks:
                        report.degrade(DEGRADED)

        for job_id, limit in (max_age or {}).items():
            last = (last_success or {}).get(job_id)
            if last is None or now - last > limit:
                report.stale_jobs[job_id] = last
                report.degrade(DEGRADED)

        record_heartbeat("health-probe")
        marker = "✅" if report.status == HEALTHY else "⚠️"
        logger.info(
            f"{marker} Health {report.status}: db={report.database}, head={report.head_block}, "
            f"rpc={report.rpc_endpoints}, lag={report.indexer_lag}, stale={sorted(report.stale_jobs)}"
        )
        return report
