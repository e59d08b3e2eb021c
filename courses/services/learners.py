import logging

from courses.models import Learner
from whatsapp.models import QueuedJob
from whatsapp.services.queue_service import JobQueue

logger = logging.getLogger(__name__)


class LearnerService:
    @staticmethod
    def register_learner(data: dict) -> dict:
        """Create or update a learner by phone number. New learners get a welcome message."""
        number = str(data.get("number") or "").strip().lstrip("+")
        name = (data.get("name") or "").strip()
        if not number or not name:
            return {"success": False, "data": None, "error": "Name and number are required"}

        learner, created = Learner.objects.update_or_create(
            number=number,
            defaults={
                "name": name,
                "surname": (data.get("surname") or "").strip(),
                "email": data.get("email") or None,
            },
        )
        if created:
            logger.info(f"Queueing welcome message for {learner.name} ({learner.number})")
            JobQueue.enqueue(
                QueuedJob.QUEUE_WELCOME,
                "sendWelcomeMessage",
                {"phone_number": learner.number, "name": learner.name},
                idempotency_key=f"welcome:{learner.number}",
            )
        return {"success": True, "data": learner, "created": created}
