import logging
from typing import Optional

from apscheduler.schedulers.asyncio import AsyncIOScheduler

logger = logging.getLogger(__name__)

_scheduler: Optional[AsyncIOScheduler] = None


def init_scheduler() -> AsyncIOScheduler:
    global _scheduler
    if _scheduler is not None and _scheduler.running:
        return _scheduler
    _scheduler = AsyncIOScheduler()
    _scheduler.start()
    logger.info("Background Scheduler initialized.")
    return _scheduler


def get_scheduler() -> Optional[AsyncIOScheduler]:
    return _scheduler


def schedule_task(func, trigger, task_id, replace=True):
    if not _scheduler:
        raise RuntimeError("Scheduler not initialized")

    # An overlapping tick must reach ControlLoop.tick so it is counted as dropped
    job = _scheduler.add_job(
        func,
        trigger,
        id=task_id,
        replace_existing=replace,
        max_instances=2,
        coalesce=True,
    )
    logger.info(f"Scheduled task '{task_id}' with trigger: {trigger}")
    return job


def shutdown_scheduler() -> None:
    """Stops the timer. Jobs already running are not cancelled."""
    global _scheduler
    if _scheduler is None:
        return
    if _scheduler.running:
        _scheduler.shutdown(wait=False)
        logger.info("Background Scheduler stopped.")
    _scheduler = None
