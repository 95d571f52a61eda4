#!/usr/bin/env python3
"""
Process entry point for the chain sync service.

Builds the service context, runs the startup checks, then runs the
automation scheduler until SIGINT/SIGTERM. It can be run via systemd,
supervisor, or directly.

Usage:
    python run_scheduler.py                      # Run in foreground
    python run_scheduler.py --check              # Startup checks only
    python run_scheduler.py --list-jobs          # Print the job table
    python run_scheduler.py --trigger JOB_ID     # Run one job once
"""
import argparse
import asyncio
import signal
import sys

from marketsync.core.config import settings
from marketsync.core.context import ServiceContext
from marketsync.core.errors import ConfigurationError, FatalServiceError
from marketsync.core.logging import configure_logging, get_logger
from marketsync.core.scheduler import SUCCESS, AutomationScheduler

configure_logging(settings.LOG_LEVEL, json_output=settings.LOG_JSON)
logger = get_logger(__name__)


class SchedulerRunner:
    """Runner for the automation scheduler."""

    def __init__(self):
        self.context: ServiceContext = None
        self.scheduler: AutomationScheduler = None
        self.shutdown = asyncio.Event()

    async def start(self):
        """Start the scheduler and run until shutdown."""
        logger.info("🚀 Starting scheduler runner...")

        self.context = ServiceContext(settings)
        try:
            await self.context.startup_checks()

            self.scheduler = AutomationScheduler(self.context)
            await self.scheduler.start()

            logger.info("✅ Scheduler is now running")
            logger.info("Press Ctrl+C to stop")

            # Setup signal handlers for graceful shutdown
            loop = asyncio.get_running_loop()
            for sig in (signal.SIGTERM, signal.SIGINT):
                loop.add_signal_handler(sig, self._set_shutdown)

            # A fatal job error stops the scheduler from inside
            waiters = [asyncio.create_task(self.shutdown.wait()), asyncio.create_task(self.scheduler.stopped.wait())]
            _, pending = await asyncio.wait(waiters, return_when=asyncio.FIRST_COMPLETED)
            for waiter in pending:
                waiter.cancel()
            await self.scheduler.stop()
        finally:
            await self.context.close()
        logger.info("✅ Scheduler runner stopped")

        if self.scheduler.fatal_error is not None:
            raise self.scheduler.fatal_error

    def _set_shutdown(self):
        """Set shutdown flag."""
        logger.info("⏹️  Shutdown signal received")
        self.shutdown.set()


async def run_checks() -> bool:
    """Run the startup checks and report."""
    context = ServiceContext(settings)
    try:
        await context.startup_checks()
    except (ConfigurationError, FatalServiceError) as e:
        print(f"❌ Startup check failed: {e}")
        return False
    finally:
        await context.close()

    mode = "read-only" if context.read_only else f"signing as {context.sender.address}"
    print(f"✅ Startup checks passed ({mode})")
    return True


async def run_trigger_job(job_id: str) -> bool:
    """Manually trigger a specific job."""
    context = ServiceContext(settings)
    try:
        await context.startup_checks()
        scheduler = AutomationScheduler(context)
        try:
            run = await scheduler.trigger(job_id)
        except KeyError:
            print(f"❌ Job '{job_id}' not found")
            return False
    finally:
        await context.close()

    if run.status != SUCCESS:
        print(f"❌ Job '{job_id}' {run.status}: {run.detail}")
        return False
    print(f"✅ Job '{job_id}' completed {run.detail}".rstrip())
    return True


async def list_jobs() -> None:
    """Print the job table."""
    context = ServiceContext(settings)
    try:
        jobs = AutomationScheduler(context).list_jobs()
    finally:
        await context.close()

    print("=" * 60)
    print("SCHEDULED SYNC JOBS")
    print("=" * 60)
    print()
    print(f"Total jobs: {len(jobs)}")
    print()

    for job in jobs:
        next_run = job["next_run"]
        next_run_str = next_run.strftime("%Y-%m-%d %H:%M UTC") if next_run else "Pending"

        print(f"📋 {job['name']}")
        print(f"   ID: {job['id']}")
        print(f"   Schedule: {job['trigger']}")
        print(f"   Next run: {next_run_str}")
        print()

    print("=" * 60)


def main():
    """Main entry point."""
    parser = argparse.ArgumentParser(
        description="Run the prediction-market chain sync scheduler"
    )

    parser.add_argument(
        "--check",
        action="store_true",
        help="Run startup checks and exit"
    )

    parser.add_argument(
        "--trigger",
        type=str,
        metavar="JOB_ID",
        help="Run a specific job once by ID and exit"
    )

    parser.add_argument(
        "--list-jobs",
        action="store_true",
        help="List all scheduled jobs and exit"
    )

    args = parser.parse_args()

    if args.check:
        return 0 if asyncio.run(run_checks()) else 1

    if args.list_jobs:
        asyncio.run(list_jobs())
        return 0

    if args.trigger:
        return 0 if asyncio.run(run_trigger_job(args.trigger)) else 1

    runner = SchedulerRunner()

    try:
        asyncio.run(runner.start())
    except KeyboardInterrupt:
        logger.info("🛑 Received interrupt, shutting down...")
        return 0
    except ConfigurationError as e:
        logger.critical(f"❌ Refusing to start: {e}")
        return 2
    except FatalServiceError as e:
        logger.critical(f"❌ Service stopped on a fatal error: {e}")
        return 2
    except Exception as e:
        logger.error(f"❌ Scheduler error: {e}", exc_info=True)
        return 1
    return 0


if __name__ == "__main__":
    sys.exit(main())
