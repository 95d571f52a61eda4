"""
Prometheus metrics for the chain sync services.

Metrics exposed:
- RPC endpoint health and request outcome counters
- Indexer cursor and lag per stream
- Scheduled job runs by status and component heartbeats
- Oracle submission and settlement outcome counters
- Database connection pool gauges
"""
import time

from prometheus_client import Counter, Gauge

# RPC Metrics
rpc_requests_total = Counter(
    "rpc_requests_total",
    "Total JSON-RPC requests",
    ["endpoint", "method", "outcome"]
)

rpc_endpoint_healthy = Gauge(
    "rpc_endpoint_healthy",
    "Whether an RPC endpoint is in rotation (1=healthy, 0=circuit open)",
    ["endpoint"]
)

# Indexer Metrics
indexer_cursor_block = Gauge(
    "indexer_cursor_block",
    "Last indexed block per stream",
    ["stream"]
)

indexer_lag_blocks = Gauge(
    "indexer_lag_blocks",
    "Confirmed head minus cursor per stream",
    ["stream"]
)

indexer_batch_size = Gauge(
    "indexer_batch_size",
    "Current getLogs window size per stream",
    ["stream"]
)

indexer_events_total = Counter(
    "indexer_events_total",
    "Events persisted by the indexer",
    ["stream", "event"]
)

# Scheduler Metrics
scheduler_running = Gauge(
    "scheduler_running",
    "Whether the scheduler is running (1=running, 0=stopped)"
)

scheduler_jobs_total = Gauge(
    "scheduler_jobs_total",
    "Total number of scheduled jobs"
)

job_runs_total = Counter(
    "job_runs_total",
    "Scheduled job runs",
    ["job", "status"]
)

component_heartbeat_timestamp = Gauge(
    "component_heartbeat_timestamp",
    "Unix time of the last successful run per component",
    ["component"]
)

# Oracle / settlement
oracle_submissions_total = Counter(
    "oracle_submissions_total",
    "Oracle outcome submissions",
    ["outcome"]
)

settlements_total = Counter(
    "settlements_total",
    "Pool settlement actions",
    ["action", "outcome"]
)

# Database Metrics
db_pool_connections_checked_out = Gauge(
    "db_pool_connections_checked_out",
    "Number of checked out database connections"
)

db_pool_connections_idle = Gauge(
    "db_pool_connections_idle",
    "Number of idle database connections"
)


def record_rpc_request(endpoint: str, method: str, outcome: str) -> None:
    rpc_requests_total.labels(endpoint=endpoint, method=method, outcome=outcome).inc()


def set_endpoint_health(endpoint: str, healthy: bool) -> None:
    rpc_endpoint_healthy.labels(endpoint=endpoint).set(1 if healthy else 0)


def update_indexer_metrics(stream: str, cursor: int, lag: int, batch_size: int) -> None:
    """Publish cursor, lag and window size for one indexer stream."""
    indexer_cursor_block.labels(stream=stream).set(cursor)
    indexer_lag_blocks.labels(stream=stream).set(max(lag, 0))
    indexer_batch_size.labels(stream=stream).set(batch_size)


def record_job_run(job_id: str, status: str) -> None:
    """Count a job run; successful runs also refresh the component heartbeat."""
    job_runs_total.labels(job=job_id, status=status).inc()
    if status == "success":
        component_heartbeat_timestamp.labels(component=job_id).set(time.time())


def record_heartbeat(component: str) -> None:
    component_heartbeat_timestamp.labels(component=component).set(time.time())


def update_db_pool_metrics(engine) -> None:
    """
    Update database connection pool metrics from a SQLAlchemy engine.

    Pools without checkout accounting (e.g. SQLite's StaticPool) are skipped.
    """
    pool = engine.pool
    try:
        db_pool_connections_checked_out.set(pool.checkedout())
        db_pool_connections_idle.set(pool.checkedin())
    except AttributeError:
        pass


def update_scheduler_metrics(running: bool, job_count: int) -> None:
    scheduler_running.set(1 if running else 0)
    scheduler_jobs_total.set(job_count if running else 0)
