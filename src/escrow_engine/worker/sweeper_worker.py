"""Timeout sweeper worker.

Background process that runs TimeoutSweeper.sweep() every
``SWEEP_INTERVAL_SECONDS``. A sweep never overlaps the previous one inside
this process; sweeps from other processes are tolerated by the sweeper's
conditional writes.

Run with:
    python -m escrow_engine.worker.sweeper_worker
"""

from __future__ import annotations

import asyncio

from apscheduler.schedulers.asyncio import AsyncIOScheduler
from apscheduler.triggers.interval import IntervalTrigger

from escrow_engine.config import Settings, get_settings
from escrow_engine.infrastructure.database.engine import _get_session_factory, close_db
from escrow_engine.infrastructure.events import build_event_emitter
from escrow_engine.logging_config import get_logger, setup_logging
from escrow_engine.services.timeout_sweeper import SweepReport, TimeoutSweeper

logger = get_logger(__name__)

SWEEP_JOB_ID = "timeout_sweep"


class SweeperWorker:
    """Schedules the timeout sweep on an asyncio scheduler."""

    def __init__(self, settings: Settings | None = None, sweeper: TimeoutSweeper | None = None):
        self.settings = settings or get_settings()
        self.emitter = build_event_emitter(
            self.settings.webhook_url,
            secret=self.settings.webhook_secret,
            timeout_seconds=self.settings.webhook_timeout_seconds,
        )
        self.sweeper = sweeper or TimeoutSweeper(
            _get_session_factory(), emitter=self.emitter, settings=self.settings
        )
        self.scheduler = AsyncIOScheduler(timezone="UTC")

    def schedule(self) -> None:
        self.scheduler.add_job(
            self.run_once,
            IntervalTrigger(seconds=self.settings.sweep_interval_seconds),
            id=SWEEP_JOB_ID,
            name="Challenge timeout sweep",
            max_instances=1,
            coalesce=True,
            replace_existing=True,
        )

    async def start(self) -> None:
        """Start the scheduler and block until cancelled."""
        self.schedule()
        self.scheduler.start()
        logger.info(
            "sweeper_worker.started",
            interval_seconds=self.settings.sweep_interval_seconds,
            batch_size=self.settings.sweep_batch_size,
        )
        try:
            while True:
                await asyncio.sleep(60)
        except asyncio.CancelledError:
            logger.info("sweeper_worker.stopping")
            raise
        finally:
            self.scheduler.shutdown(wait=False)
            await close_db()

    async def run_once(self) -> SweepReport:
        """Run a single sweep immediately."""
        return await self.sweeper.sweep()


async def main() -> None:
    settings = get_settings()
    setup_logging(log_level=settings.app_log_level, json_logs=not settings.is_development)
    await SweeperWorker(settings).start()


if __name__ == "__main__":
    asyncio.run(main())
