"""Receiver for Google Calendar push notifications."""

import logging

from rest_framework import permissions, status
from rest_framework.response import Response
from rest_framework.views import APIView

from .services import handle_notification

logger = logging.getLogger(__name__)


class GoogleCalendarWebhookView(APIView):
    """Acknowledge every well-formed notification with 200; syncing happens in a worker."""

    permission_classes = [permissions.AllowAny]
    authentication_classes = []

    def post(self, request):
        channel_id = request.headers.get("X-Goog-Channel-ID")
        resource_id = request.headers.get("X-Goog-Resource-ID")
        resource_state = request.headers.get("X-Goog-Resource-State")

        if not channel_id or not resource_id or not resource_state:
            return Response({"detail": "Missing channel headers."}, status=status.HTTP_400_BAD_REQUEST)

        outcome = handle_notification(
            channel_id=channel_id,
            resource_id=resource_id,
            resource_state=resource_state,
            message_number=request.headers.get("X-Goog-Message-Number"),
            token=request.headers.get("X-Goog-Channel-Token"),
        )
        return Response({"status": outcome.value}, status=status.HTTP_200_OK)


__all__ = ["GoogleCalendarWebhookView"]
