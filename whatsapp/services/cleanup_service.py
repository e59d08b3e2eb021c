import logging
from datetime import timedelta

from django.conf import settings
from django.utils import timezone

from whatsapp.models import Message
from whatsapp.services.context_service import ReplyContextService
from whatsapp.services.queue_service import JobQueue

logger = logging.getLogger(__name__)


class CleanupService:
    @staticmethod
    def purge_old_messages(days: int = None) -> dict:
        """Delete audit messages older than ``days`` (MESSAGE_RETENTION_DAYS by default)."""
        if days is None:
            days = settings.DELIVERY["MESSAGE_RETENTION_DAYS"]
        cutoff = timezone.now() - timedelta(days=days)
        deleted, _ = Message.objects.filter(timestamp__lt=cutoff).delete()
        logger.info(f"Deleted {deleted} messages older than {days} days")
        return {"success": True, "deleted_count": deleted, "cutoff_time": cutoff.isoformat()}

    @staticmethod
    def sweep_reply_contexts(older_than_hours: int = None) -> dict:
        return ReplyContextService.sweep_expired(older_than_hours)

    @staticmethod
    def purge_jobs(max_age_hours: int = None) -> dict:
        return JobQueue.purge_finished_jobs(max_age_hours)

    @classmethod
    def run_all(cls) -> dict:
        """Run every maintenance task now, e.g. from the management command."""
        return {
            "messages": cls.purge_old_messages(),
            "reply_contexts": cls.sweep_reply_contexts(),
            "jobs": cls.purge_jobs(),
            "stalled_jobs_requeued": JobQueue.requeue_stalled(),
        }
