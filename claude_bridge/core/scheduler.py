"""
Scheduler for periodic maintenance.

Uses APScheduler to run background jobs:
- Hourly purge of expired sessions and rate-limit windows older than a day
"""

import logging
from typing import Optional

from apscheduler.schedulers.asyncio import AsyncIOScheduler
from apscheduler.triggers.interval import IntervalTrigger

from claude_bridge.db.database import Database

logger = logging.getLogger(__name__)

CLEANUP_JOB_ID = "store_cleanup"

# Global scheduler instance
_scheduler: Optional[AsyncIOScheduler] = None


async def run_cleanup(database: Database, expire_minutes: int) -> None:
    """Purge expired sessions and stale rate-limit windows."""
    try:
        sessions = await database.delete_sessions_older_than(expire_minutes)
        windows = await database.cleanup_rate_limits()
        logger.info(f"Cleanup: removed {sessions} expired session(s), {windows} rate window(s)")
    except Exception as e:
        logger.error(f"Cleanup job failed: {e}")


async def init_scheduler(
    database: Database, expire_minutes: int, interval_hours: int = 1
) -> AsyncIOScheduler:
    """Initialize and start the scheduler."""
    global _scheduler

    if _scheduler is not None:
        logger.warning("Scheduler already initialized")
        return _scheduler

    _scheduler = AsyncIOScheduler()
    _scheduler.add_job(
        run_cleanup,
        trigger=IntervalTrigger(hours=interval_hours),
        args=[database, expire_minutes],
        id=CLEANUP_JOB_ID,
        name="Session and rate-limit cleanup",
        replace_existing=True,
    )
    _scheduler.start()
    logger.info(f"Scheduler started (cleanup every {interval_hours}h)")
    return _scheduler


async def stop_scheduler() -> None:
    """Stop the scheduler."""
    global _scheduler

    if _scheduler is not None:
        _scheduler.shutdown(wait=False)
        _scheduler = None
        logger.info("Scheduler stopped")


def get_scheduler() -> Optional[AsyncIOScheduler]:
    return _scheduler
