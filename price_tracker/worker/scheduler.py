"""APScheduler job definitions."""

import logging
from datetime import datetime

from apscheduler.schedulers.asyncio import AsyncIOScheduler
from apscheduler.triggers.interval import IntervalTrigger

from price_tracker.config import settings
from price_tracker.worker.tasks import ScrapeRunner

logger = logging.getLogger(__name__)

SCRAPE_JOB_ID = "scrape_cycle"


def setup_scheduler(runner: ScrapeRunner) -> AsyncIOScheduler:
    """
    Setup and configure APScheduler.

    A single interval job drives the scrape cycle. ``max_instances=1`` and
    ``coalesce=True`` keep cycles from overlapping: a tick that fires while
    a cycle is still running is dropped, and missed ticks collapse into one.

    Args:
        runner: Runner whose ``run_cycle`` is scheduled

    Returns:
        Configured scheduler instance (not started)
    """
    scheduler = AsyncIOScheduler()

    job_kwargs = {}
    if settings.run_on_startup:
        job_kwargs["next_run_time"] = datetime.now()

    scheduler.add_job(
        runner.run_cycle,
        IntervalTrigger(hours=settings.scrape_interval_hours),
        id=SCRAPE_JOB_ID,
        name="Scrape search pages and record prices",
        max_instances=1,
        coalesce=True,
        misfire_grace_time=settings.misfire_grace_seconds,
        replace_existing=True,
        **job_kwargs,
    )

    logger.info(
        "Scheduler configured: scrape cycle every %s hours%s",
        settings.scrape_interval_hours,
        " (first run on startup)" if settings.run_on_startup else "",
    )

    return scheduler
