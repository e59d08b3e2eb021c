import logging
from datetime import timedelta

from django.conf import settings
from django.db.models import Q
from django.utils import timezone

from whatsapp.models import MessageContext

logger = logging.getLogger(__name__)


class ReplyContextService:
    """
    Remembers which course/lesson/quiz an outbound message was about, so that
    a learner's reply can be attributed to it.

    Lookup prefers the message the learner actually replied to (the webhook's
    ``context.id``). When the provider gives no such reference, the most recent
    unexpired context for the phone number is used. That fallback can pick the
    wrong question when two are outstanding for the same learner.
    """

    @staticmethod
    def record(
        phone_number: str,
        message_id: str,
        course_id,
        lesson_id=None,
        quiz_id=None,
    ) -> MessageContext:
        context, _ = MessageContext.objects.update_or_create(
            message_id=message_id,
            defaults={
                "phone_number": phone_number,
                "course_id": course_id,
                "lesson_id": lesson_id,
                "quiz_id": quiz_id,
            },
        )
        logger.debug(
            "Stored reply context %s for %s (course=%s lesson=%s quiz=%s)",
            message_id,
            phone_number,
            course_id,
            lesson_id,
            quiz_id,
        )
        return context

    @staticmethod
    def lookup(phone_number: str, reply_to_message_id: str = None):
        active = MessageContext.objects.filter(
            phone_number=phone_number, expires_at__gt=timezone.now()
        )

        if reply_to_message_id:
            context = active.filter(message_id=reply_to_message_id).first()
            if context:
                return context
            logger.info(
                "No context for replied-to message %s, falling back to latest for %s",
                reply_to_message_id,
                phone_number,
            )

        return active.order_by("-created_at", "-id").first()

    @staticmethod
    def sweep_expired(older_than_hours: int = None) -> dict:
        """Delete contexts past their expiry or older than ``older_than_hours``."""
        if older_than_hours is None:
            older_than_hours = settings.DELIVERY["REPLY_CONTEXT_TTL_HOURS"]
        now = timezone.now()
        cutoff = now - timedelta(hours=older_than_hours)

        deleted, _ = MessageContext.objects.filter(
            Q(expires_at__lt=now) | Q(created_at__lt=cutoff)
        ).delete()

        logger.info(
            "Reply context cleanup removed %s records (cutoff %s)",
            deleted,
            cutoff.isoformat(),
        )
        return {
            "success": True,
            "deleted_count": deleted,
            "cutoff_time": cutoff.isoformat(),
        }
