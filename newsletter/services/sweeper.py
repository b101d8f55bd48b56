"""
Periodic expiry sweep for ExpiringCache, driven by APScheduler.
"""

from datetime import timedelta
from typing import Callable, Sequence

from apscheduler.schedulers.asyncio import AsyncIOScheduler
from loguru import logger

from newsletter.services.cache import ExpiringCache


class CacheSweeper:
    """
    Removes expired cache entries on a fixed interval.

    ``cleanups`` are extra callables run on the same schedule, e.g. the
    idle-client cleanup of the request rate limiters.
    """

    JOB_ID = "cache_sweep_job"

    def __init__(
        self,
        cache: ExpiringCache,
        interval: timedelta = timedelta(seconds=60),
        cleanups: Sequence[Callable[[], int]] = (),
    ):
        self.cache = cache
        self.interval = interval
        self.cleanups = list(cleanups)
        # a shut-down AsyncIOScheduler stays bound to its old loop, so each
        # start() gets a new one
        self.scheduler: AsyncIOScheduler | None = None

    async def sweep_job(self) -> int:
        """Sweep task; errors are logged, never raised into the scheduler."""
        try:
            removed = self.cache.cleanup_expired()
        except Exception as e:
            logger.error(f"Error in cache sweep: {e}")
            removed = 0

        for cleanup in self.cleanups:
            try:
                cleanup()
            except Exception as e:
                logger.error(f"Error in sweep cleanup {cleanup!r}: {e}")

        return removed

    def start(self) -> None:
        if self.is_running():
            logger.warning("Cache sweeper is already running")
            return

        self.scheduler = AsyncIOScheduler()
        self.scheduler.add_job(
            self.sweep_job,
            trigger="interval",
            seconds=self.interval.total_seconds(),
            id=self.JOB_ID,
            name="Cache expiry sweep",
            replace_existing=True,
        )
        self.scheduler.start()

        logger.info(
            f"Cache sweeper started: sweeping every {self.interval.total_seconds():g}s"
        )

    def stop(self) -> None:
        if not self.is_running():
            logger.warning("Cache sweeper is not running")
            return

        self.scheduler.shutdown(wait=False)
        self.scheduler = None
        logger.info("Cache sweeper stopped")

    def is_running(self) -> bool:
        return self.scheduler is not None
