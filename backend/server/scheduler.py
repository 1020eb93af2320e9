# Copyright (c) 2025 Efstratios Goudelis
#
# This program is free software: you can redistribute it and/or modify
# it under the terms of the GNU General Public License as published by
# the Free Software Foundation, either version 3 of the License, or
# (at your option) any later version.
#
# This program is distributed in the hope that it will be useful,
# but WITHOUT ANY WARRANTY; without even the implied warranty of
# MERCHANTABILITY or FITNESS FOR A PARTICULAR PURPOSE.  See the
# GNU General Public License for more details.
#
# You should have received a copy of the GNU General Public License
# along with this program. If not, see <https://www.gnu.org/licenses/>.

"""Periodic jobs: deferred invalidation sweeps and telluric resolution polls."""

import logging
from typing import Optional

from apscheduler.schedulers.asyncio import AsyncIOScheduler
from apscheduler.triggers.interval import IntervalTrigger

from common.arguments import arguments
from common.logger import logger
from common.utils import utcnow
from obscalc.invalidation import run_invalidation_sweeps, set_sweep_waker

# Suppress apscheduler internal INFO logs (only show warnings and errors)
logging.getLogger("apscheduler").setLevel(logging.WARNING)

SWEEP_JOB_ID = "invalidation_sweeps"
TELLURIC_JOB_ID = "telluric_resolution"

# Global scheduler instance
scheduler: Optional[AsyncIOScheduler] = None


async def invalidation_sweep_job(session_factory, batch_size: int):
    """Job wrapper for run_invalidation_sweeps."""
    try:
        processed = await run_invalidation_sweeps(session_factory, batch_size)
        if processed:
            logger.debug(f"Processed {processed} invalidation sweep(s)")
    except Exception as e:
        logger.error(f"Error during invalidation sweep: {e}")
        logger.exception(e)


async def telluric_resolution_job(resolver):
    """Job wrapper for the telluric resolver's batch."""
    try:
        resolved = await resolver.run_batch()
        if resolved:
            logger.debug(f"Processed {resolved} telluric resolution(s)")
    except Exception as e:
        logger.error(f"Error during telluric resolution: {e}")
        logger.exception(e)


def wake_sweep_job():
    """Run the sweep job as soon as possible instead of waiting for its interval."""
    if scheduler is None or not scheduler.running:
        return
    job = scheduler.get_job(SWEEP_JOB_ID)
    if job is not None:
        job.modify(next_run_time=utcnow())


def start_scheduler(session_factory, resolver=None):
    """Initialize and start the background task scheduler."""
    global scheduler

    if scheduler is not None:
        logger.warning("Scheduler already started")
        return scheduler

    scheduler = AsyncIOScheduler()

    scheduler.add_job(
        invalidation_sweep_job,
        trigger=IntervalTrigger(seconds=arguments.sweep_interval),
        args=[session_factory, arguments.sweep_batch_size],
        id=SWEEP_JOB_ID,
        name="Process program and call for proposals invalidations",
        replace_existing=True,
        coalesce=True,
        max_instances=1,
    )

    if resolver is not None:
        scheduler.add_job(
            telluric_resolution_job,
            trigger=IntervalTrigger(seconds=arguments.telluric_poll_interval),
            args=[resolver],
            id=TELLURIC_JOB_ID,
            name="Resolve telluric stars",
            replace_existing=True,
            coalesce=True,
            max_instances=1,
        )

    scheduler.start()
    set_sweep_waker(wake_sweep_job)

    jobs = scheduler.get_jobs()
    job_count = len(jobs)
    logger.info(
        f"Background task scheduler started: {job_count} job{'s' if job_count != 1 else ''} scheduled"
    )
    for job in jobs:
        next_run = (
            job.next_run_time.strftime("%Y-%m-%d %H:%M:%S %Z") if job.next_run_time else "N/A"
        )
        logger.info(f"  - {job.name} -> next run: {next_run}")

    return scheduler


def stop_scheduler():
    """Stop the background task scheduler."""
    global scheduler

    if scheduler is None:
        return

    logger.info("Stopping background task scheduler...")
    set_sweep_waker(None)
    scheduler.shutdown(wait=False)
    scheduler = None
    logger.info("Background task scheduler stopped")
