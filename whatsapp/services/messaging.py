import asyncio
import logging

import httpx
from django.conf import settings
from django.utils import timezone

from whatsapp.models import Message

logger = logging.getLogger(__name__)

# WhatsApp display limits
BUTTON_TITLE_LIMIT = 20
MAX_BUTTONS = 3
LIST_ROW_TITLE_LIMIT = 24
TEMPLATE_HEADER_LIMIT = 60
TEMPLATE_BODY_LIMIT = 1024
TRUNCATION_SUFFIX = ".."

# Provider statuses that are worth retrying; any other 4xx is the caller's fault
RETRYABLE_STATUS_CODES = {408, 429}


class DeliveryError(Exception):
    """Raised when the provider did not accept a message."""

    def __init__(self, message, status_code=None):
        super().__init__(message)
        self.status_code = status_code


class TransientDeliveryError(DeliveryError):
    pass


class PermanentDeliveryError(DeliveryError):
    pass


def truncate(text: str, limit: int, suffix: str = TRUNCATION_SUFFIX) -> str:
    """Shorten ``text`` to ``limit`` characters, marking the cut with ``suffix``."""
    text = text or ""
    if len(text) <= limit:
        return text
    return text[: limit - len(suffix)] + suffix


class WhatsAppService:
    # Overridden in tests with an httpx.MockTransport
    transport = None

    @staticmethod
    def _messages_url() -> str:
        return f"{settings.WHATSAPP_API_URL}/{settings.WHATSAPP_PHONE_NUMBER_ID}/messages"

    @staticmethod
    def build_payload(message_type: str, to: str, payload: dict) -> dict:
        """Wrap a type-specific object into the Cloud API message envelope."""
        if message_type not in (
            "text",
            "template",
            "image",
            "document",
            "video",
            "interactive",
        ):
            raise PermanentDeliveryError(f"Unsupported message type '{message_type}'")
        return {
            "messaging_product": "whatsapp",
            "recipient_type": "individual",
            "to": to,
            "type": message_type,
            message_type: payload,
        }

    @staticmethod
    def _summarize(message_type: str, payload: dict) -> str:
        if message_type == "text":
            return payload.get("body", "")
        if message_type == "template":
            texts = []
            for component in payload.get("components", []):
                for param in component.get("parameters", []):
                    if param.get("type") == "text":
                        texts.append(param["text"])
            return " ".join(texts).strip() or payload.get("name", "")
        if message_type == "interactive":
            return payload.get("body", {}).get("text", "")
        return payload.get("caption") or payload.get("link", "")

    @classmethod
    async def async_send(cls, message_type: str, to: str, payload: dict) -> dict:
        """Send one message and return the provider's message and recipient ids."""
        access_token = settings.WHATSAPP_ACCESS_TOKEN
        if not access_token:
            raise PermanentDeliveryError("WHATSAPP_ACCESS_TOKEN not configured")

        body = cls.build_payload(message_type, to, payload)

        try:
            async with httpx.AsyncClient(
                timeout=settings.WHATSAPP_TIMEOUT_SECONDS, transport=cls.transport
            ) as client:
                response = await client.post(
                    cls._messages_url(),
                    json=body,
                    headers={
                        "Authorization": f"Bearer {access_token}",
                        "Content-Type": "application/json",
                    },
                )
                response.raise_for_status()
        except httpx.HTTPStatusError as e:
            status_code = e.response.status_code
            detail = e.response.text
            logger.error(
                "WhatsApp rejected %s message to %s (%s): %s",
                message_type,
                to,
                status_code,
                detail,
            )
            if status_code < 500 and status_code not in RETRYABLE_STATUS_CODES:
                raise PermanentDeliveryError(detail, status_code=status_code) from e
            raise TransientDeliveryError(detail, status_code=status_code) from e
        except httpx.TransportError as e:
            logger.warning("WhatsApp %s message to %s failed: %s", message_type, to, e)
            raise TransientDeliveryError(str(e)) from e

        try:
            data = response.json()
            return {
                "message_id": data["messages"][0]["id"],
                "recipient_id": data["contacts"][0]["wa_id"],
            }
        except (ValueError, KeyError, IndexError) as e:
            raise TransientDeliveryError(
                f"Unexpected WhatsApp response: {response.text}"
            ) from e

    @classmethod
    def send(cls, message_type: str, to: str, payload: dict) -> dict:
        """Synchronously send a message and record it in the audit trail"""
        loop = asyncio.new_event_loop()
        try:
            result = loop.run_until_complete(cls.async_send(message_type, to, payload))
        finally:
            loop.close()

        Message.objects.create(
            message_id=result["message_id"],
            sender=settings.WHATSAPP_PHONE_NUMBER_ID,
            recipient=result["recipient_id"],
            body=cls._summarize(message_type, payload),
            type=message_type,
            direction="outgoing",
            status="sent",
            timestamp=timezone.now(),
        )
        logger.info(
            "Sent %s message %s to %s", message_type, result["message_id"], to
        )
        return result

    # ---- typed helpers ----

    @classmethod
    def send_text(cls, to: str, message: str) -> dict:
        return cls.send("text", to, {"preview_url": True, "body": message})

    @classmethod
    def send_template(
        cls,
        to: str,
        template_name: str,
        header: list = None,
        body: list = None,
        quick_reply=None,
        language: str = None,
    ) -> dict:
        """
        Send a pre-approved template.

        ``header`` and ``body`` are lists of text parameters, truncated to the
        provider's per-parameter limits. ``quick_reply`` is a button title (or
        a list of them) attached as quick-reply payloads.
        """
        components = []
        if header:
            components.append(
                {
                    "type": "header",
                    "parameters": [
                        {"type": "text", "text": truncate(p, TEMPLATE_HEADER_LIMIT)}
                        for p in header
                    ],
                }
            )
        if body:
            components.append(
                {
                    "type": "body",
                    "parameters": [
                        {"type": "text", "text": truncate(p, TEMPLATE_BODY_LIMIT)}
                        for p in body
                    ],
                }
            )
        if quick_reply:
            buttons = quick_reply if isinstance(quick_reply, list) else [quick_reply]
            for index, title in enumerate(buttons):
                components.append(
                    {
                        "type": "button",
                        "sub_type": "quick_reply",
                        "index": str(index),
                        "parameters": [
                            {"type": "payload", "payload": f"{template_name}_{index}:{title}"}
                        ],
                    }
                )

        return cls.send(
            "template",
            to,
            {
                "name": template_name,
                "language": {
                    "code": language or settings.WHATSAPP_TEMPLATE_LANGUAGE
                },
                "components": components,
            },
        )

    @classmethod
    def send_image(cls, to: str, image_url: str, caption: str = None) -> dict:
        payload = {"link": image_url}
        if caption:
            payload["caption"] = caption
        return cls.send("image", to, payload)

    @classmethod
    def send_document(
        cls, to: str, document_url: str, filename: str = None, caption: str = None
    ) -> dict:
        payload = {"link": document_url}
        payload["filename"] = filename or document_url.rstrip("/").rsplit("/", 1)[-1]
        if caption:
            payload["caption"] = caption
        return cls.send("document", to, payload)

    @classmethod
    def send_video(cls, to: str, video_url: str, caption: str = None) -> dict:
        payload = {"link": video_url}
        if caption:
            payload["caption"] = caption
        return cls.send("video", to, payload)

    @classmethod
    def send_button_message(
        cls, to: str, body: str, options: list, header: str = None, footer: str = None
    ) -> dict:
        """Interactive reply buttons, at most three, titles cut to 20 characters."""
        interactive = {
            "type": "button",
            "body": {"text": body},
            "action": {
                "buttons": [
                    {
                        "type": "reply",
                        "reply": {
                            "id": f"option_{index}",
                            "title": truncate(option, BUTTON_TITLE_LIMIT),
                        },
                    }
                    for index, option in enumerate(options[:MAX_BUTTONS])
                ]
            },
        }
        if header:
            interactive["header"] = {"type": "text", "text": header}
        if footer:
            interactive["footer"] = {"text": footer}
        return cls.send("interactive", to, interactive)

    @classmethod
    def send_list_message(
        cls,
        to: str,
        body: str,
        options: list,
        header: str = "Quiz",
        footer: str = None,
        button_text: str = "Choose an option",
        section_title: str = "Choose one",
    ) -> dict:
        """Interactive list with one row per option, row titles cut to 24 characters."""
        interactive = {
            "type": "list",
            "header": {"type": "text", "text": header},
            "body": {"text": body},
            "action": {
                "button": button_text,
                "sections": [
                    {
                        "title": section_title,
                        "rows": [
                            {
                                "id": f"option_{index}",
                                "title": truncate(option, LIST_ROW_TITLE_LIMIT),
                            }
                            for index, option in enumerate(options)
                        ],
                    }
                ],
            },
        }
        if footer:
            interactive["footer"] = {"text": footer}
        return cls.send("interactive", to, interactive)
