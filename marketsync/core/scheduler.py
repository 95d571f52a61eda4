"""
Automated task scheduler for the chain sync service.

This module provides scheduled background jobs for:
- Fixture catalogue and result fetching from SportMonks
- Chain indexing (self-paced) and the startup pool backfill
- Oracle outcome submission and pool settlement
- The daily Oddyssey cycle: match selection, cycle start, resolution, slip evaluation
- Health probing

Scheduler: APScheduler, every trigger anchored to UTC. `max_instances=1`
means a job still running when its next fire time arrives is skipped, not queued.
"""
import asyncio
from collections import deque
from dataclasses import dataclass
from datetime import datetime, timedelta
from typing import Any, Awaitable, Callable, Deque, Dict, List, Optional

from apscheduler.schedulers.asyncio import AsyncIOScheduler
from apscheduler.triggers.combining import OrTrigger
from apscheduler.triggers.cron import CronTrigger
from apscheduler.triggers.date import DateTrigger
from apscheduler.triggers.interval import IntervalTrigger

from marketsync.core.context import ServiceContext
from marketsync.core.errors import FatalServiceError, InsufficientFixtures, OperatorAlert
from marketsync.core.logging import get_logger, job_context
from marketsync.core.metrics import record_job_run, update_scheduler_metrics

logger = get_logger(__name__)

SUCCESS = "success"
FAILED = "failed"
SKIPPED = "skipped"


@dataclass
class JobSpec:
    action: Callable[[], Awaitable[Any]]
    timeout: float
    max_age: Optional[timedelta] = None  # health-probe flags the job stale beyond this


@dataclass
class JobRun:
    job_id: str
    run_id: str
    started_at: datetime
    finished_at: Optional[datetime] = None
    status: str = SUCCESS
    detail: str = ""


@dataclass
class _Registration:
    trigger: Any
    name: str
    misfire_grace_time: int = 60


class AutomationScheduler:
    """
    Main scheduler for the sync service's background tasks.

    All scheduled jobs are defined here with their UTC schedules and
    timeouts; every run goes through `run_job`, which owns timeouts, error
    handling, correlation ids and the run history.
    """

    def __init__(self, context: ServiceContext, history_size: int = 500):
        self.context = context
        self.config = context.config
        self.scheduler: Optional[AsyncIOScheduler] = None
        self.running = False
        self.jobs: Dict[str, JobSpec] = {}
        self.history: Deque[JobRun] = deque(maxlen=history_size)
        self.last_success: Dict[str, datetime] = {}
        self._active: set = set()
        self._background: set = set()
        self.fatal_error: Optional[FatalServiceError] = None
        self.stopped = asyncio.Event()

    def build(self) -> AsyncIOScheduler:
        """Create the scheduler and register every job without starting it."""
        if self.scheduler is not None:
            return self.scheduler

        self.scheduler = AsyncIOScheduler(
            timezone="UTC",
            job_defaults={
                "coalesce": True,  # Combine missed runs into one
                "max_instances": 1,  # Skip, never queue, overlapping runs
                "misfire_grace_time": 300,
            },
        )

        self._schedule_backfill()
        self._schedule_indexer()
        self._schedule_fixtures_fetch()
        self._schedule_results_fetch()
        self._schedule_evaluation()
        self._schedule_health_probe()
        if self.context.read_only:
            logger.warning("⚠️ Read-only mode: oracle, settlement and Oddyssey cycle jobs are not scheduled")
        else:
            self._schedule_oracle_submission()
            self._schedule_settlement()
            self._schedule_oddyssey_cycle()

        return self.scheduler

    async def start(self):
        """Start the scheduler."""
        if self.running:
            logger.warning("Scheduler already running")
            return

        logger.info("Starting automation scheduler...")
        self.build()
        self.scheduler.start()
        self.running = True
        update_scheduler_metrics(True, len(self.scheduler.get_jobs()))

        logger.info("✅ Scheduler started with %d jobs", len(self.scheduler.get_jobs()))
        self._log_scheduled_jobs()

    async def stop(self):
        """Stop the scheduler."""
        if not self.running:
            return

        logger.info("Stopping scheduler...")
        self.scheduler.shutdown(wait=False)
        self.running = False
        update_scheduler_metrics(False, 0)
        self.stopped.set()
        logger.info("✅ Scheduler stopped")

    # ========================================================================
    # Job execution
    # ========================================================================

    def _register(self, job_id: str, spec: JobSpec, registration: _Registration) -> None:
        self.jobs[job_id] = spec

        @self.scheduler.scheduled_job(
            trigger=registration.trigger,
            id=job_id,
            name=registration.name,
            misfire_grace_time=registration.misfire_grace_time,
        )
        async def scheduled_run():
            await self.run_job(job_id)

    async def run_job(self, job_id: str) -> JobRun:
        """
        Run one job under its timeout and a fresh correlation id.

        A fatal error is an operator alert that also stops the scheduler and
        is kept in `fatal_error` so the process can exit. Operator alerts are
        logged at CRITICAL and anything else with its traceback; in both
        cases the scheduler keeps running.
        """
        spec = self.jobs[job_id]
        with job_context(job_id) as run_id:
            run = JobRun(job_id=job_id, run_id=run_id, started_at=datetime.utcnow())
            if job_id in self._active:
                logger.warning(f"⚠️ {job_id} is still running; skipping this run")
                run.status = SKIPPED
                run.detail = "overlap"
                return self._finish(run)

            self._active.add(job_id)
            try:
                result = await asyncio.wait_for(spec.action(), timeout=spec.timeout)
                run.detail = "" if result is None else str(result)
            except asyncio.TimeoutError:
                run.status = FAILED
                run.detail = f"timed out after {spec.timeout:.0f}s"
                logger.error(f"❌ {job_id} timed out after {spec.timeout:.0f}s")
            except InsufficientFixtures as exc:
                run.status = SKIPPED
                run.detail = str(exc)
                logger.warning(f"⚠️ No Oddyssey cycle today: {exc}")
            except FatalServiceError as exc:
                run.status = FAILED
                run.detail = str(exc)
                logger.critical(f"🚨 OPERATOR ALERT: {job_id} hit a fatal error, stopping the service: {exc}", exc_info=True)
                self.fatal_error = exc
                await self.stop()
            except OperatorAlert as exc:
                run.status = FAILED
                run.detail = str(exc)
                logger.critical(f"🚨 OPERATOR ALERT: {job_id}: {exc}")
            except Exception as exc:
                run.status = FAILED
                run.detail = str(exc)
                logger.error(f"❌ {job_id} failed: {exc}", exc_info=True)
            finally:
                self._active.discard(job_id)

            return self._finish(run)

    def _finish(self, run: JobRun) -> JobRun:
        run.finished_at = datetime.utcnow()
        self.history.append(run)
        record_job_run(run.job_id, run.status)
        if run.status == SUCCESS:
            self.last_success[run.job_id] = run.finished_at
        return run

    async def trigger(self, job_id: str) -> JobRun:
        """
        Run a job immediately, outside its schedule.

        Raises:
            KeyError: Unknown job id
        """
        self.build()
        if job_id not in self.jobs:
            raise KeyError(job_id)
        logger.info(f"🔄 Triggering {job_id}")
        return await self.run_job(job_id)

    def recent_runs(self, job_id: Optional[str] = None, limit: int = 20) -> List[JobRun]:
        runs = [run for run in self.history if job_id is None or run.job_id == job_id]
        return runs[-limit:]

    # ========================================================================
    # Chain
    # ========================================================================

    def _schedule_backfill(self):
        """
        Schedule: Pool backfill and cycle sync.

        Frequency: Once, at startup
        Purpose: Rebuild pools whose mirror is inconsistent and load cycles the mirror missed
        """
        async def backfill():
            result = await self.context.pool_mirror.backfill(self.context.session_factory)
            current = None
            if self.context.registry.has("Oddyssey"):
                current = await self.context.oddyssey_mirror.sync_current_cycle(self.context.session_factory)
            return f"pools={result.pool_count} rebuilt={len(result.rebuilt)} current_cycle={current}"

        self._register(
            "backfill-pools",
            JobSpec(backfill, timeout=1800),
            _Registration(DateTrigger(run_date=datetime.utcnow(), timezone="UTC"), "Backfill Pools (startup)", 3600),
        )

    def _schedule_indexer(self):
        """
        Schedule: Chain indexer tick.

        Frequency: Polled every 5 seconds; the indexer paces itself (45s caught up, 10s lagging)
        Purpose: Mirror PoolCore, GuidedOracle and Oddyssey events
        """
        async def index_chain():
            result = await self.context.indexer.maybe_tick()
            if result is None:
                return None
            self._settle_fresh_outcomes()
            return f"head={result.head} lag={result.max_lag}"

        self._register(
            "index-chain",
            JobSpec(index_chain, timeout=300, max_age=timedelta(minutes=10)),
            _Registration(IntervalTrigger(seconds=5, timezone="UTC"), "Index Chain Events", 30),
        )

    # ========================================================================
    # External results
    # ========================================================================

    def _schedule_fixtures_fetch(self):
        """
        Schedule: Fetch upcoming fixtures with odds.

        Frequency: Daily at 06:00 UTC
        Purpose: Keep the fixture catalogue filled for match selection and pools
        """
        async def fetch_fixtures():
            result = await self.context.fetcher.fetch_fixtures(
                start=datetime.utcnow().date(), days=self.config.FIXTURES_LOOKAHEAD_DAYS
            )
            return f"fixtures={result.fixtures} errors={len(result.errors)}"

        self._register(
            "fetch-fixtures",
            JobSpec(fetch_fixtures, timeout=600, max_age=timedelta(hours=26)),
            _Registration(CronTrigger(hour=6, minute=0, timezone="UTC"), "Fetch Upcoming Fixtures", 1800),
        )

    def _schedule_results_fetch(self):
        """
        Schedule: Fetch fixture results.

        Frequency: Every 5 minutes 12:00-23:59 UTC (match window), every 30 minutes otherwise
        Purpose: Final scores for oracle submission and cycle resolution
        """
        async def fetch_results():
            result = await self.context.fetcher.fetch_results(lookback_days=self.config.RESULTS_LOOKBACK_DAYS)
            return f"results={result.results} skipped={result.skipped}"

        trigger = OrTrigger([
            CronTrigger(hour="12-23", minute=f"*/{self.config.RESULTS_POLL_MATCH_WINDOW_MINUTES}", timezone="UTC"),
            CronTrigger(hour="0-11", minute=f"*/{self.config.RESULTS_POLL_IDLE_MINUTES}", timezone="UTC"),
        ])
        self._register(
            "fetch-results",
            JobSpec(fetch_results, timeout=240, max_age=timedelta(hours=1)),
            _Registration(trigger, "Fetch Fixture Results", 120),
        )

    # ========================================================================
    # Oracle and settlement
    # ========================================================================

    def _schedule_oracle_submission(self):
        """
        Schedule: Submit finished fixture outcomes to the GuidedOracle.

        Frequency: Every 5 minutes
        """
        async def submit_outcomes():
            result = await self.context.submitter.submit_pending()
            return f"submitted={len(result.outcomes)}"

        self._register(
            "submit-oracle-outcomes",
            JobSpec(submit_outcomes, timeout=240, max_age=timedelta(minutes=30)),
            _Registration(CronTrigger(minute="*/5", timezone="UTC"), "Submit Oracle Outcomes", 120),
        )

    def _schedule_settlement(self):
        """
        Schedule: Settle pools with submitted outcomes, refund ended pools without bets.

        Frequency: Every 5 minutes
        On demand: settle-outcomes, started by the indexer job for freshly mirrored outcomes
        """
        async def settle_pools():
            result = await self.context.settlement.sweep()
            return f"pools={len(result.outcomes)}"

        self._register(
            "settle-pools",
            JobSpec(settle_pools, timeout=240, max_age=timedelta(minutes=30)),
            _Registration(CronTrigger(minute="*/5", timezone="UTC"), "Settle Pools", 120),
        )

        async def settle_outcomes():
            hashes = self.context.pool_mirror.drain_submitted_outcomes()
            result = await self.context.settlement.settle_markets(hashes)
            return f"markets={len(hashes)} pools={len(result.outcomes)}"

        # No trigger; the indexer job starts it when OutcomeSubmitted is mirrored
        self.jobs["settle-outcomes"] = JobSpec(settle_outcomes, timeout=240)

    def _settle_fresh_outcomes(self) -> None:
        """Start settle-outcomes in the background when the last tick mirrored new outcomes."""
        if not self.context.pool_mirror.has_submitted_outcomes():
            return
        if "settle-outcomes" not in self.jobs:
            # read-only: nothing to settle with
            self.context.pool_mirror.drain_submitted_outcomes()
            return
        task = asyncio.create_task(self.run_job("settle-outcomes"))
        self._background.add(task)
        task.add_done_callback(self._background.discard)

    # ========================================================================
    # Oddyssey
    # ========================================================================

    def _schedule_oddyssey_cycle(self):
        """
        Schedule: Daily Oddyssey cycle.

        Frequency:
            select-oddyssey-matches at ODDYSSEY_SELECTION_TIME (00:05 UTC)
            start-oddyssey-cycle at ODDYSSEY_CYCLE_OPEN_TIME (00:10 UTC)
            resolve-oddyssey-cycle every 15 minutes
        """
        driver = self.context.driver

        async def select_matches():
            count = driver.select_matches(datetime.utcnow().date())
            return f"selected={count}"

        async def start_cycle():
            cycle_id = await driver.start_cycle(datetime.utcnow().date())
            return f"cycle={cycle_id}"

        async def resolve_cycles():
            outcomes = await driver.resolve_due()
            return f"cycles={outcomes}" if outcomes else None

        hour, minute = self.config.clock_time(self.config.ODDYSSEY_SELECTION_TIME)
        self._register(
            "select-oddyssey-matches",
            JobSpec(select_matches, timeout=120),
            _Registration(CronTrigger(hour=hour, minute=minute, timezone="UTC"), "Select Oddyssey Matches", 240),
        )

        hour, minute = self.config.clock_time(self.config.ODDYSSEY_CYCLE_OPEN_TIME)
        self._register(
            "start-oddyssey-cycle",
            JobSpec(start_cycle, timeout=120),
            _Registration(CronTrigger(hour=hour, minute=minute, timezone="UTC"), "Start Oddyssey Cycle", 3600),
        )

        self._register(
            "resolve-oddyssey-cycle",
            JobSpec(resolve_cycles, timeout=300),
            _Registration(CronTrigger(minute="*/15", timezone="UTC"), "Resolve Oddyssey Cycles", 300),
        )

    def _schedule_evaluation(self):
        """
        Schedule: Evaluate slips of resolved cycles and freeze leaderboards.

        Frequency: Every 10 minutes
        """
        async def evaluate_slips():
            results = self.context.evaluator.evaluate_pending()
            evaluated = [r.cycle_id for r in results if not r.skipped]
            return f"cycles={evaluated}" if evaluated else None

        self._register(
            "evaluate-slips",
            JobSpec(evaluate_slips, timeout=300),
            _Registration(CronTrigger(minute="*/10", timezone="UTC"), "Evaluate Oddyssey Slips", 300),
        )

    # ========================================================================
    # Health
    # ========================================================================

    def _schedule_health_probe(self):
        """
        Schedule: Health probe.

        Frequency: Every minute
        Purpose: Heartbeat gauges and one summary log line
        """
        async def probe():
            max_age = {job_id: spec.max_age for job_id, spec in self.jobs.items() if spec.max_age is not None}
            report = await self.context.health.probe(self.last_success, max_age)
            return report.status

        self._register(
            "health-probe",
            JobSpec(probe, timeout=30),
            _Registration(IntervalTrigger(minutes=1, timezone="UTC"), "Health Probe", 30),
        )

    # ========================================================================
    # Introspection
    # ========================================================================

    def list_jobs(self) -> List[Dict[str, Any]]:
        """Job table: id, name, trigger and next fire time (UTC)."""
        self.build()
        now = datetime.now(tz=self.scheduler.timezone)
        table = []
        for job in self.scheduler.get_jobs():
            next_run = getattr(job, "next_run_time", None) or job.trigger.get_next_fire_time(None, now)
            table.append({
                "id": job.id,
                "name": job.name,
                "trigger": str(job.trigger),
                "next_run": next_run,
            })
        return table

    def _log_scheduled_jobs(self):
        """Log all scheduled jobs for visibility."""
        jobs = self.list_jobs()

        logger.info("=" * 60)
        logger.info("SCHEDULED SYNC JOBS")
        logger.info("=" * 60)

        for job in jobs:
            next_run = job["next_run"]
            next_run_str = next_run.strftime("%Y-%m-%d %H:%M UTC") if next_run else "Pending"

            logger.info(f"  • {job['name']}")
            logger.info(f"    ID: {job['id']}")
            logger.info(f"    Next run: {next_run_str}")
            logger.info("")

        logger.info("=" * 60)
        logger.info(f"Total jobs scheduled: {len(jobs)}")
        logger.info("=" * 60)
