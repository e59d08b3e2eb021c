import logging
from datetime import datetime, timezone as dt_timezone

from django.conf import settings
from django.db import IntegrityError, transaction
from django.utils import timezone

from courses.services.progress import ProgressService, is_correct_answer
from whatsapp.models import Message, QueuedJob
from whatsapp.services.context_service import ReplyContextService
from whatsapp.services.queue_service import JobQueue
from whatsapp.services.worker_service import (
    LESSON_DONE_REPLY,
    LESSON_TEMPLATE,
    REMINDER_TEMPLATE,
)

logger = logging.getLogger(__name__)

KNOWN_STATUSES = {"sent", "delivered", "read", "failed"}
CORRECT_FEEDBACK = "Correct answer, well done!"
WRONG_FEEDBACK = "Not quite. The correct answer is: {correct_answer}"


class WebhookPayloadError(ValueError):
    """The webhook body is missing the entry/changes envelope."""


def parse_timestamp(value):
    try:
        return datetime.fromtimestamp(int(value), tz=dt_timezone.utc)
    except (TypeError, ValueError):
        return timezone.now()


def classify_message(message: dict) -> dict:
    """
    Normalise an inbound message into ``kind``, ``body``, ``payload`` and the
    id of the message it replies to.
    """
    message_type = message.get("type", "")
    body = ""
    kind = message_type
    button_payload = None

    if message_type == "text":
        body = message.get("text", {}).get("body", "")
    elif message_type in ("image", "document", "video", "audio"):
        media = message.get(message_type, {})
        body = media.get("caption") or media.get("filename") or f"[{message_type}]"
    elif message_type == "interactive":
        interactive = message.get("interactive", {})
        kind = interactive.get("type", "interactive")
        reply = interactive.get(kind, {}) if kind in ("button_reply", "list_reply") else {}
        body = reply.get("title", "")
    elif message_type == "button":
        # quick reply on a template, payload is "<template>_<index>:<title>"
        button = message.get("button", {})
        body = button.get("text", "")
        button_payload = button.get("payload", "")

    return {
        "kind": kind,
        "body": (body or "").strip(),
        "payload": button_payload,
        "reply_to": message.get("context", {}).get("id"),
    }


class WebhookService:
    @staticmethod
    def verify(mode: str, token: str, challenge: str):
        """Return the challenge when the handshake matches, otherwise None."""
        if mode == "subscribe" and token and token == settings.WHATSAPP_VERIFY_TOKEN:
            logger.info("Webhook verified successfully")
            return challenge
        logger.warning("Webhook verification failed")
        return None

    @classmethod
    def handle(cls, payload: dict) -> dict:
        entry = (payload or {}).get("entry") or []
        if not entry:
            raise WebhookPayloadError("Invalid Request: No entry data")
        changes = entry[0].get("changes") or []
        if not changes:
            raise WebhookPayloadError("Invalid Request: No changes data")

        value = changes[0].get("value", {}) or {}

        statuses = value.get("statuses") or []
        if statuses:
            return {
                "success": True,
                "message": "Message status update processed successfully",
                "data": cls.handle_status(statuses[0]),
            }

        messages = value.get("messages") or []
        if messages:
            contacts = value.get("contacts") or [{}]
            sender_name = contacts[0].get("profile", {}).get("name")
            return {
                "success": True,
                "message": "Incoming message processed successfully",
                "data": cls.handle_message(messages[0], sender_name),
            }

        return {
            "success": True,
            "message": "Webhook event received but not processed (unsupported type)",
        }

    @staticmethod
    def handle_status(status_data: dict) -> dict:
        message_id = status_data.get("id")
        status = status_data.get("status")
        updated = Message.objects.filter(message_id=message_id).update(
            status=status if status in KNOWN_STATUSES else "other",
            timestamp=parse_timestamp(status_data.get("timestamp")),
        )
        if not updated:
            logger.info("Status %s for unknown message %s ignored", status, message_id)
        else:
            logger.info("Message %s status: %s", message_id, status)
        return {
            "message_id": message_id,
            "status": status,
            "recipient_id": status_data.get("recipient_id"),
            "updated": bool(updated),
        }

    @classmethod
    def handle_message(cls, message: dict, sender_name: str = None) -> dict:
        message_id = message.get("id")
        phone_number = message.get("from", "")
        parsed = classify_message(message)

        if Message.objects.filter(message_id=message_id).exists():
            logger.info("Duplicate delivery of message %s acknowledged", message_id)
            return {"message_id": message_id, "duplicate": True}

        try:
            with transaction.atomic():
                Message.objects.create(
                    message_id=message_id,
                    sender=phone_number,
                    recipient=settings.WHATSAPP_PHONE_NUMBER_ID,
                    body=parsed["body"],
                    type=message.get("type"),
                    direction="incoming",
                    status="received",
                    timestamp=parse_timestamp(message.get("timestamp")),
                )
        except IntegrityError:
            logger.info("Duplicate delivery of message %s acknowledged", message_id)
            return {"message_id": message_id, "duplicate": True}

        action = cls.route(phone_number, message_id, parsed)
        logger.info(
            "Inbound %s message %s from %s routed to %s",
            parsed["kind"],
            message_id,
            phone_number,
            action,
        )
        return {
            "name": sender_name,
            "number": phone_number,
            "message_id": message_id,
            "message_body": parsed["body"],
            "type": parsed["kind"],
            "action": action,
        }

    @classmethod
    def route(cls, phone_number: str, message_id: str, parsed: dict) -> str:
        """Attribute a reply to its lesson or quiz and act on it."""
        button_payload = parsed["payload"] or ""
        if button_payload.startswith(f"{REMINDER_TEMPLATE}_"):
            return "acknowledged"

        context = ReplyContextService.lookup(phone_number, parsed["reply_to"])
        if context is None:
            cls._send_fallback(phone_number, message_id)
            return "fallback"

        if context.quiz_id and cls._is_quiz_answer(parsed, context.quiz):
            result = ProgressService.record_progress(
                phone_number, context.course_id, context.lesson_id, quiz_reply=parsed["body"]
            )
            if not result["success"]:
                logger.warning("Quiz reply from %s not recorded: %s", phone_number, result["error"])
                return "ignored"
            cls._send_feedback(phone_number, message_id, result)
            return "quiz"

        is_done = parsed["kind"] == "button" and button_payload.startswith(f"{LESSON_TEMPLATE}_")
        is_done = is_done or parsed["body"].lower() == LESSON_DONE_REPLY.lower()
        if context.lesson_id and is_done:
            result = ProgressService.record_progress(
                phone_number, context.course_id, context.lesson_id
            )
            if not result["success"]:
                logger.warning("Completion from %s not recorded: %s", phone_number, result["error"])
                return "ignored"
            return "lesson_completed"

        if not context.lesson_id and parsed["kind"] == "button":
            return "acknowledged"

        cls._send_fallback(phone_number, message_id)
        return "fallback"

    @staticmethod
    def _is_quiz_answer(parsed: dict, quiz) -> bool:
        """Option picks always count. Typed text counts only when it names an option."""
        if parsed["kind"] in ("button_reply", "list_reply"):
            return True
        if quiz is None or parsed["kind"] != "text":
            return False
        return any(is_correct_answer(parsed["body"], option) for option in quiz.options)

    @staticmethod
    def _send_feedback(phone_number, message_id, result):
        if result["is_correct"] is None:
            return
        if result["is_correct"]:
            text = CORRECT_FEEDBACK
        else:
            text = WRONG_FEEDBACK.format(correct_answer=result["correct_answer"])
        JobQueue.enqueue(
            QueuedJob.QUEUE_TEXT,
            "sendFeedback",
            {"phone_number": phone_number, "message": text},
            idempotency_key=f"feedback:{message_id}",
        )

    @staticmethod
    def _send_fallback(phone_number, message_id):
        JobQueue.enqueue(
            QueuedJob.QUEUE_TEXT,
            "sendFallback",
            {
                "phone_number": phone_number,
                "message": settings.DELIVERY["FALLBACK_REPLY"],
            },
            idempotency_key=f"fallback:{message_id}",
        )
