import logging

from apscheduler.schedulers.background import BackgroundScheduler
from django.conf import settings
from django.db import close_old_connections

logger = logging.getLogger(__name__)

_scheduler = None
_worker_pool = None


def get_scheduler() -> BackgroundScheduler:
    global _scheduler
    if _scheduler is None:
        _scheduler = BackgroundScheduler(timezone=settings.TIME_ZONE)
    return _scheduler


def _maintenance(task):
    def run():
        try:
            task()
        except Exception:
            logger.exception("Maintenance job %s failed", task.__name__)
        finally:
            close_old_connections()

    run.__name__ = task.__name__
    return run


def start():
    """
    Start the background scheduler, re-arm persisted lesson schedules and
    launch one worker per queue lane.
    """
    global _worker_pool
    from whatsapp.services.cleanup_service import CleanupService
    from whatsapp.services.lesson_scheduler import lesson_scheduler
    from whatsapp.services.queue_service import JobQueue
    from whatsapp.services.worker_service import WorkerPool

    scheduler = get_scheduler()
    if scheduler.running:
        return scheduler

    scheduler.add_job(
        _maintenance(CleanupService.sweep_reply_contexts),
        "cron",
        day_of_week="sun",
        hour=0,
        minute=0,
        id="reply_context_cleanup",
        replace_existing=True,
    )
    scheduler.add_job(
        _maintenance(CleanupService.purge_old_messages),
        "cron",
        hour=3,
        minute=0,
        id="message_cleanup",
        replace_existing=True,
    )
    scheduler.add_job(
        _maintenance(CleanupService.purge_jobs),
        "interval",
        hours=6,
        id="job_cleanup",
        replace_existing=True,
    )
    scheduler.add_job(
        _maintenance(JobQueue.requeue_stalled),
        "interval",
        minutes=10,
        id="stalled_job_check",
        replace_existing=True,
    )
    scheduler.add_job(
        _maintenance(lesson_scheduler.sync_schedules),
        "interval",
        seconds=settings.DELIVERY["SCHEDULE_SYNC_SECONDS"],
        id="lesson_schedule_sync",
        replace_existing=True,
    )

    lesson_scheduler.restore_schedules()
    scheduler.start()

    _worker_pool = WorkerPool()
    _worker_pool.start()
    logger.info("Delivery scheduler and workers started")
    return scheduler


def stop(wait: bool = True):
    global _worker_pool
    scheduler = get_scheduler()
    if scheduler.running:
        scheduler.shutdown(wait=wait)
    if _worker_pool is not None:
        _worker_pool.stop(wait=wait)
        _worker_pool = None
    logger.info("Delivery scheduler and workers stopped")
