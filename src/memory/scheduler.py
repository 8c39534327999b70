"""APScheduler integration for issue-store housekeeping.

Runs an interval job that purges expired chat history rows and pending edits.
No-ops gracefully if the interval is set to 0.
"""

import contextlib
import logging
import sqlite3

from apscheduler.schedulers.asyncio import AsyncIOScheduler  # type: ignore[import-untyped]
from apscheduler.triggers.interval import IntervalTrigger  # type: ignore[import-untyped]

from src.config import get_settings
from src.memory.store import purge_expired

logger = logging.getLogger(__name__)

_scheduler: AsyncIOScheduler | None = None


async def _purge_job(conn: sqlite3.Connection) -> None:
    """Async job executed by the scheduler: drop expired rows."""
    try:
        removed = purge_expired(conn)
        if removed:
            logger.info("Housekeeping purged %d expired rows", removed)
    except Exception:
        logger.exception("Scheduled purge failed")


def start_scheduler(conn: sqlite3.Connection) -> None:
    """Start the APScheduler if a purge interval is configured."""
    global _scheduler  # noqa: PLW0603

    settings = get_settings()
    if settings.purge_interval_minutes <= 0:
        logger.info("Purge scheduler disabled (PURGE_INTERVAL_MINUTES=0)")
        return

    _scheduler = AsyncIOScheduler()
    _scheduler.add_job(
        _purge_job,
        trigger=IntervalTrigger(minutes=settings.purge_interval_minutes),
        args=[conn],
        id="purge_expired",
        name="Purge expired history and pending edits",
        replace_existing=True,
    )
    _scheduler.start()
    logger.info("Purge scheduler started (every %d min)", settings.purge_interval_minutes)


def stop_scheduler() -> None:
    """Gracefully shut down the scheduler if it is running."""
    global _scheduler  # noqa: PLW0603

    if _scheduler is not None:
        with contextlib.suppress(Exception):
            _scheduler.shutdown(wait=False)
        logger.info("Purge scheduler stopped")
        _scheduler = None
