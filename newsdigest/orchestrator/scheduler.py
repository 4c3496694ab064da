"""Interval scheduling of digest cycles."""
from datetime import datetime, timezone

from apscheduler.schedulers.asyncio import AsyncIOScheduler

from newsdigest.core.logging import get_logger
from newsdigest.orchestrator.cycle import DigestOrchestrator

logger = get_logger(__name__)

CYCLE_JOB_ID = "digest_cycle"


def create_scheduler(
    orchestrator: DigestOrchestrator,
    interval_minutes: int,
    run_at_startup: bool = True,
) -> AsyncIOScheduler:
    """
    Build a scheduler that runs one digest cycle per interval.

    A tick that fires while the previous cycle is still running is
    dropped by the scheduler (max_instances=1) and, should it get
    through, by the orchestrator's own lock.
    """
    scheduler = AsyncIOScheduler(timezone=timezone.utc)
    job_kwargs = {}
    if run_at_startup:
        job_kwargs["next_run_time"] = datetime.now(timezone.utc)

    scheduler.add_job(
        orchestrator.run_cycle,
        "interval",
        minutes=interval_minutes,
        id=CYCLE_JOB_ID,
        max_instances=1,
        coalesce=True,
        **job_kwargs,
    )
    logger.info(f"Scheduled digest cycle every {interval_minutes} minutes")
    return scheduler
