from __future__ import annotations

import logging
from typing import TYPE_CHECKING

from apscheduler.triggers.interval import IntervalTrigger

from nsloop import jobs_state
from nsloop.core.scheduler import get_scheduler, init_scheduler, schedule_task

if TYPE_CHECKING:
    from nsloop.services.loop import ControlLoop

logger = logging.getLogger(__name__)


def setup_control_loop(loop: "ControlLoop", interval_minutes: int) -> None:
    """Registers the control cycle on the shared scheduler."""
    init_scheduler()
    trigger = IntervalTrigger(minutes=interval_minutes)
    job_id = jobs_state.JOB_KEYS_TO_SCHEDULER_IDS[jobs_state.CONTROL_LOOP_JOB]
    schedule_task(loop.tick, trigger, job_id)
    jobs_state.refresh_next_run(jobs_state.CONTROL_LOOP_JOB)
    logger.info("Control loop scheduled every %d minutes", interval_minutes)


def remove_control_loop() -> None:
    scheduler = get_scheduler()
    if scheduler is None:
        return
    job_id = jobs_state.JOB_KEYS_TO_SCHEDULER_IDS[jobs_state.CONTROL_LOOP_JOB]
    if scheduler.get_job(job_id):
        scheduler.remove_job(job_id)
        logger.info("Control loop unscheduled")
    jobs_state.set_next_run(jobs_state.CONTROL_LOOP_JOB, None)
