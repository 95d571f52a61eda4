"""Tests for the process entry point.

Test Strategy:
1. Test a fatal job error ends the runner and exits with status 2
2. Test a startup configuration error exits with status 2

Each test follows the pattern:
- Given: run_scheduler with a stubbed context and scheduler
- When: main() runs
- Then: The exit status and context teardown match
"""
import asyncio
import sys
from unittest.mock import AsyncMock

import pytest

import run_scheduler
from marketsync.core.errors import ConfigurationError, FatalServiceError


class StubContext:
    """Context whose checks and teardown are recorded."""

    instances = []

    def __init__(self, config, startup_error=None):
        self.startup_checks = AsyncMock(side_effect=startup_error)
        self.close = AsyncMock()
        StubContext.instances.append(self)


class FatalScheduler:
    """Scheduler whose first job hits a fatal error and stops it."""

    def __init__(self, context):
        self.context = context
        self.stopped = asyncio.Event()
        self.fatal_error = None
        self.stop = AsyncMock()

    async def start(self):
        self.fatal_error = FatalServiceError("signer is not the oracle bot")
        self.stopped.set()


@pytest.fixture
def stubbed(monkeypatch):
    StubContext.instances = []
    monkeypatch.setattr(sys, "argv", ["run_scheduler.py"])
    monkeypatch.setattr(run_scheduler, "AutomationScheduler", FatalScheduler)
    return monkeypatch


class TestMain:
    """Exit statuses of the long-running mode."""

    def test_fatal_job_error_exits_two(self, stubbed):
        """Should leave the wait loop, close the context and exit 2."""
        stubbed.setattr(run_scheduler, "ServiceContext", StubContext)

        assert run_scheduler.main() == 2
        assert StubContext.instances[0].close.await_count == 1

    def test_configuration_error_refuses_to_start(self, stubbed):
        stubbed.setattr(
            run_scheduler,
            "ServiceContext",
            lambda config: StubContext(config, startup_error=ConfigurationError("bad address")),
        )

        assert run_scheduler.main() == 2
        assert StubContext.instances[0].close.await_count == 1
