import logging
from datetime import timedelta, timezone as dt_timezone

from django.conf import settings
from django.shortcuts import get_object_or_404
from django.utils import timezone
from django.utils.dateparse import parse_datetime

from rest_framework import generics, permissions, status
from rest_framework.exceptions import ValidationError
from rest_framework.response import Response
from rest_framework.views import APIView

from accounts.models import ConnectedAccount
from common.choices import SyncTrigger
from common.exceptions import AuthError, ProviderError, ReauthorizationRequired

from .models import Calendar, Event, SyncJob
from .serializers import CalendarSerializer, EventSerializer, ManualSyncSerializer, SyncJobSerializer
from .services import events as event_services
from .services.triggers import request_account_sync

logger = logging.getLogger(__name__)


class CalendarListView(generics.ListAPIView):
    serializer_class = CalendarSerializer
    permission_classes = [permissions.IsAuthenticated]

    def get_queryset(self):
        return (
            Calendar.objects.filter(account__user=self.request.user)
            .select_related("webhook_channel")
            .order_by("account_id", "-is_primary", "name")
        )


class CalendarDetailView(generics.RetrieveUpdateAPIView):
    """Toggling ``sync_enabled`` registers or stops the calendar's watch."""

    serializer_class = CalendarSerializer
    permission_classes = [permissions.IsAuthenticated]
    http_method_names = ["get", "patch", "head", "options"]

    def get_queryset(self):
        return Calendar.objects.filter(account__user=self.request.user).select_related("webhook_channel")

    def perform_update(self, serializer):
        was_enabled = serializer.instance.sync_enabled
        calendar = serializer.save()
        if calendar.sync_enabled == was_enabled:
            return

        from webhooks.tasks import ensure_watch_task, stop_watch_task

        if calendar.sync_enabled:
            ensure_watch_task.delay(calendar.pk)
            request_account_sync(calendar.account_id, trigger=SyncTrigger.MANUAL)
        else:
            stop_watch_task.delay(calendar.pk)


def _parse_window_param(request, name, default):
    raw = request.query_params.get(name)
    if not raw:
        return default
    value = parse_datetime(raw)
    if value is None:
        raise ValidationError({name: "Invalid datetime."})
    if timezone.is_naive(value):
        value = timezone.make_aware(value, dt_timezone.utc)
    return value


class CalendarEventListCreateView(generics.ListCreateAPIView):
    serializer_class = EventSerializer
    permission_classes = [permissions.IsAuthenticated]

    def get_calendar(self):
        return get_object_or_404(
            Calendar.objects.select_related("account"),
            pk=self.kwargs["pk"],
            account__user=self.request.user,
        )

    def get_queryset(self):
        calendar = self.get_calendar()
        now = timezone.now()
        start = _parse_window_param(self.request, "start", now)
        end = _parse_window_param(
            self.request, "end", now + timedelta(days=getattr(settings, "CALENDAR_SYNC_WINDOW_DAYS", 30))
        )
        if end < start:
            raise ValidationError({"end": "End must not be before start."})
        queryset = Event.objects.filter(calendar=calendar).in_window(start, end)
        if self.request.query_params.get("include_cancelled") not in ("1", "true", "yes"):
            queryset = queryset.active()
        return queryset.order_by("start")

    def create(self, request, *args, **kwargs):
        calendar = self.get_calendar()
        serializer = self.get_serializer(data=request.data)
        serializer.is_valid(raise_exception=True)
        try:
            event = event_services.create_event(calendar, serializer.validated_data)
        except ReauthorizationRequired as exc:
            return Response({"detail": f"Reconnection required: {exc}"}, status=status.HTTP_409_CONFLICT)
        except (AuthError, ProviderError) as exc:
            logger.warning("Creating event on calendar %s failed: %s", calendar.pk, exc)
            return Response({"detail": str(exc)}, status=status.HTTP_502_BAD_GATEWAY)
        return Response(EventSerializer(event).data, status=status.HTTP_201_CREATED)


class EventDetailView(generics.RetrieveUpdateAPIView):
    serializer_class = EventSerializer
    permission_classes = [permissions.IsAuthenticated]
    http_method_names = ["get", "patch", "head", "options"]

    def get_queryset(self):
        return Event.objects.filter(calendar__account__user=self.request.user).select_related("calendar")

    def partial_update(self, request, *args, **kwargs):
        event = self.get_object()
        if event.is_cancelled:
            return Response({"detail": "Cancelled events cannot be edited."}, status=status.HTTP_400_BAD_REQUEST)
        serializer = self.get_serializer(event, data=request.data, partial=True)
        serializer.is_valid(raise_exception=True)
        event, pushed = event_services.update_event(event, dict(serializer.validated_data))
        data = EventSerializer(event).data
        data["pushed"] = pushed
        return Response(data, status=status.HTTP_200_OK if pushed else status.HTTP_202_ACCEPTED)


class ManualSyncView(APIView):
    permission_classes = [permissions.IsAuthenticated]

    def post(self, request):
        serializer = ManualSyncSerializer(data=request.data)
        serializer.is_valid(raise_exception=True)
        accounts = ConnectedAccount.objects.filter(user=request.user).exclude(
            status=ConnectedAccount.Status.REVOKED
        )
        account_id = serializer.validated_data.get("account")
        if account_id is not None:
            accounts = accounts.filter(pk=account_id)
            if not accounts.exists():
                return Response({"detail": "Account not found."}, status=status.HTTP_404_NOT_FOUND)

        queued = {account.pk: request_account_sync(account.pk, trigger=SyncTrigger.MANUAL) for account in accounts}
        return Response(
            {"queued": [pk for pk, ok in queued.items() if ok], "already_pending": [pk for pk, ok in queued.items() if not ok]},
            status=status.HTTP_202_ACCEPTED,
        )


class SyncJobListView(generics.ListAPIView):
    serializer_class = SyncJobSerializer
    permission_classes = [permissions.IsAuthenticated]

    def get_queryset(self):
        queryset = SyncJob.objects.filter(account__user=self.request.user)
        account_id = self.request.query_params.get("account")
        if account_id:
            queryset = queryset.filter(account_id=account_id)
        return queryset.order_by("-started_at")[:100]


__all__ = [
    "CalendarDetailView",
    "CalendarEventListCreateView",
    "CalendarListView",
    "EventDetailView",
    "ManualSyncView",
    "SyncJobListView",
]
