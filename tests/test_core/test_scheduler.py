"""Tests for the automation scheduler.

Test Strategy:
1. Test the registered job set (full vs read-only)
2. Test run_job outcomes (success, timeout, skipped, failed)
3. Test fatal errors stop the scheduler and operator alerts do not
4. Test overlapping runs of one job are skipped
5. Test manual triggers and the job table
6. Test mirrored outcomes start an immediate settlement run

Each test follows the pattern:
- Given: A ServiceContext on a SQLite engine and a FakeChain
- When: A job is built, run or triggered
- Then: The JobRun status, run history and scheduler state match
"""
import asyncio
from unittest.mock import AsyncMock

import pytest

from conftest import BOT_PRIVATE_KEY, FakeChain
from marketsync.chain.contracts import ContractRegistry
from marketsync.core.config import Settings
from marketsync.core.context import ServiceContext
from marketsync.core.errors import FatalServiceError, InsufficientFixtures, OperatorAlert
from marketsync.core.scheduler import FAILED, SKIPPED, SUCCESS, AutomationScheduler, JobSpec
from marketsync.services.settlement import SETTLED, SettlementResult

READ_ONLY_JOBS = {"backfill-pools", "index-chain", "fetch-fixtures", "fetch-results", "evaluate-slips", "health-probe"}
WRITER_JOBS = {"submit-oracle-outcomes", "settle-pools", "settle-outcomes", "select-oddyssey-matches", "start-oddyssey-cycle", "resolve-oddyssey-cycle"}


def make_context(engine, **overrides) -> ServiceContext:
    values = {"ENVIRONMENT": "test", "DATABASE_URL": "sqlite://"}
    values.update(overrides)
    return ServiceContext(Settings(_env_file=None, **values), engine=engine, gateway=FakeChain(ContractRegistry({})))


def with_job(scheduler: AutomationScheduler, action, timeout=5.0, job_id="job") -> str:
    scheduler.jobs[job_id] = JobSpec(action, timeout=timeout)
    return job_id


class TestJobSet:
    """Which jobs get registered."""

    def test_read_only_context_skips_writers(self, engine):
        scheduler = AutomationScheduler(make_context(engine))

        scheduler.build()

        assert set(scheduler.jobs) == READ_ONLY_JOBS
        assert {job.id for job in scheduler.scheduler.get_jobs()} == READ_ONLY_JOBS

    def test_signing_context_schedules_everything(self, engine):
        scheduler = AutomationScheduler(make_context(engine, ORACLE_BOT_PRIVATE_KEY=BOT_PRIVATE_KEY))

        scheduler.build()

        assert set(scheduler.jobs) == READ_ONLY_JOBS | WRITER_JOBS

    def test_list_jobs_has_next_fire_time(self, engine):
        scheduler = AutomationScheduler(make_context(engine))

        table = {row["id"]: row for row in scheduler.list_jobs()}

        assert table["fetch-fixtures"]["name"] == "Fetch Upcoming Fixtures"
        assert table["fetch-fixtures"]["next_run"].hour == 6


class TestRunJob:
    """Outcomes of one run."""

    # Status Tests
    # ─────────────────────────────────────────────────────────────

    @pytest.mark.asyncio
    async def test_success_records_history_and_last_success(self, engine):
        scheduler = AutomationScheduler(make_context(engine))

        async def action():
            return "pools=3"

        run = await scheduler.run_job(with_job(scheduler, action))

        assert run.status == SUCCESS
        assert run.detail == "pools=3"
        assert run.run_id.startswith("job:")
        assert scheduler.last_success["job"] == run.finished_at
        assert scheduler.recent_runs("job") == [run]

    @pytest.mark.asyncio
    async def test_timeout_fails_the_run(self, engine):
        scheduler = AutomationScheduler(make_context(engine))

        async def action():
            await asyncio.sleep(5)

        run = await scheduler.run_job(with_job(scheduler, action, timeout=0.01))

        assert run.status == FAILED
        assert "timed out" in run.detail
        assert "job" not in scheduler.last_success

    @pytest.mark.asyncio
    async def test_insufficient_fixtures_skips(self, engine):
        scheduler = AutomationScheduler(make_context(engine))

        async def action():
            raise InsufficientFixtures(7, 10)

        run = await scheduler.run_job(with_job(scheduler, action))

        assert run.status == SKIPPED

    @pytest.mark.asyncio
    async def test_unexpected_error_is_contained(self, engine):
        scheduler = AutomationScheduler(make_context(engine))

        async def action():
            raise RuntimeError("boom")

        run = await scheduler.run_job(with_job(scheduler, action))

        assert (run.status, run.detail) == (FAILED, "boom")

    # Escalation Tests
    # ─────────────────────────────────────────────────────────────

    @pytest.mark.asyncio
    async def test_fatal_error_stops_the_scheduler(self, engine):
        """Should stop every job and keep the error so the process exits."""
        scheduler = AutomationScheduler(make_context(engine))
        scheduler.build()
        scheduler.scheduler.start(paused=True)
        scheduler.running = True

        fatal = FatalServiceError("signer is not the oracle bot")

        async def action():
            raise fatal

        try:
            run = await scheduler.run_job(with_job(scheduler, action, job_id="health-probe"))

            assert run.status == FAILED
            assert scheduler.running is False
            assert scheduler.stopped.is_set()
            assert scheduler.fatal_error is fatal
        finally:
            await scheduler.stop()

    @pytest.mark.asyncio
    async def test_operator_alert_does_not_pause(self, engine):
        scheduler = AutomationScheduler(make_context(engine))
        scheduler.build()
        scheduler.scheduler.start(paused=True)
        scheduler.running = True

        async def action():
            raise OperatorAlert("bot out of gas")

        try:
            run = await scheduler.run_job(with_job(scheduler, action, job_id="health-probe"))

            assert run.status == FAILED
            assert scheduler.scheduler.get_job("health-probe").next_run_time is not None
        finally:
            await scheduler.stop()

    @pytest.mark.asyncio
    async def test_overlapping_run_is_skipped(self, engine):
        """Should skip a second run of a job that is still in flight."""
        scheduler = AutomationScheduler(make_context(engine))
        release = asyncio.Event()

        async def action():
            await release.wait()
            return "done"

        job_id = with_job(scheduler, action)
        first = asyncio.create_task(scheduler.run_job(job_id))
        await asyncio.sleep(0)

        second = await scheduler.run_job(job_id)
        release.set()
        first_run = await first

        assert (second.status, second.detail) == (SKIPPED, "overlap")
        assert first_run.status == SUCCESS


class TestTrigger:
    """Manual runs."""

    @pytest.mark.asyncio
    async def test_unknown_job_raises(self, engine):
        scheduler = AutomationScheduler(make_context(engine))

        with pytest.raises(KeyError):
            await scheduler.trigger("no-such-job")

    @pytest.mark.asyncio
    async def test_health_probe_reports_stale_jobs(self, engine):
        """Should run the real probe; jobs that never succeeded make it degraded."""
        scheduler = AutomationScheduler(make_context(engine))

        run = await scheduler.trigger("health-probe")

        assert run.status == SUCCESS
        assert run.detail == "degraded"


class TestFreshOutcomes:
    """Settlement started by the indexer job."""

    @pytest.mark.asyncio
    async def test_mirrored_outcome_starts_settle_outcomes(self, engine):
        """Should hand the fresh market hashes to the coordinator in a background run."""
        scheduler = AutomationScheduler(make_context(engine, ORACLE_BOT_PRIVATE_KEY=BOT_PRIVATE_KEY))
        scheduler.build()
        settle_markets = AsyncMock(return_value=SettlementResult(outcomes={1: SETTLED}))
        scheduler.context.settlement.settle_markets = settle_markets
        scheduler.context.pool_mirror._submitted_outcomes.add("0xabc")

        scheduler._settle_fresh_outcomes()
        await asyncio.gather(*scheduler._background)

        settle_markets.assert_awaited_once_with(["0xabc"])
        [run] = scheduler.recent_runs("settle-outcomes")
        assert (run.status, run.detail) == (SUCCESS, "markets=1 pools=1")
        assert not scheduler.context.pool_mirror.has_submitted_outcomes()

    @pytest.mark.asyncio
    async def test_nothing_new_starts_nothing(self, engine):
        scheduler = AutomationScheduler(make_context(engine, ORACLE_BOT_PRIVATE_KEY=BOT_PRIVATE_KEY))
        scheduler.build()

        scheduler._settle_fresh_outcomes()

        assert scheduler._background == set()
        assert scheduler.recent_runs("settle-outcomes") == []

    def test_read_only_drops_fresh_outcomes(self, engine):
        scheduler = AutomationScheduler(make_context(engine))
        scheduler.build()
        scheduler.context.pool_mirror._submitted_outcomes.add("0xabc")

        scheduler._settle_fresh_outcomes()

        assert not scheduler.context.pool_mirror.has_submitted_outcomes()
        assert scheduler._background == set()
