import logging

from django.http import HttpResponse
from django.utils.decorators import method_decorator
from django.views.decorators.csrf import csrf_exempt
from rest_framework import status
from rest_framework.response import Response
from rest_framework.views import APIView

from .services.webhook_service import WebhookPayloadError, WebhookService

logger = logging.getLogger(__name__)


@method_decorator(csrf_exempt, name="dispatch")
class WhatsAppWebhookView(APIView):
    authentication_classes = []
    permission_classes = []

    def get(self, request):
        """Webhook verification (GET)"""
        challenge = WebhookService.verify(
            request.query_params.get("hub.mode"),
            request.query_params.get("hub.verify_token"),
            request.query_params.get("hub.challenge"),
        )
        if challenge is not None:
            return HttpResponse(challenge, content_type="text/plain", status=200)
        return Response(status=status.HTTP_403_FORBIDDEN)

    def post(self, request):
        """Handle delivery statuses and incoming messages (POST)"""
        try:
            logger.debug("Received payload: %s", request.data)
            result = WebhookService.handle(request.data)
            return Response(result, status=status.HTTP_200_OK)
        except WebhookPayloadError as e:
            logger.warning("Rejected webhook payload: %s", e)
            return Response(
                {"success": False, "error": str(e)},
                status=status.HTTP_400_BAD_REQUEST,
            )
        except Exception:
            logger.exception("Error handling WhatsApp webhook POST")
            return Response(
                {"success": False, "error": "Internal server error"},
                status=status.HTTP_500_INTERNAL_SERVER_ERROR,
            )
