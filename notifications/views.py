from rest_framework import generics, permissions, status
from rest_framework.response import Response

from .models import Notification, NotificationPreference, PushToken
from .serializers import NotificationPreferenceSerializer, NotificationSerializer, PushTokenSerializer


class NotificationListView(generics.ListAPIView):
    serializer_class = NotificationSerializer
    permission_classes = [permissions.IsAuthenticated]

    def get_queryset(self):
        queryset = Notification.objects.filter(user=self.request.user)
        status_filter = self.request.query_params.get("status")
        if status_filter in Notification.Status.values:
            queryset = queryset.filter(status=status_filter)
        return queryset.order_by("-created_at")


class NotificationMarkReadView(generics.UpdateAPIView):
    serializer_class = NotificationSerializer
    permission_classes = [permissions.IsAuthenticated]
    lookup_field = "id"
    http_method_names = ["patch"]

    def get_queryset(self):
        return Notification.objects.filter(user=self.request.user)

    def patch(self, request, *args, **kwargs):
        notification = self.get_object()
        notification.status = Notification.Status.READ
        notification.save(update_fields=["status", "updated_at"])
        return Response(NotificationSerializer(notification).data)


class NotificationMarkAllReadView(generics.GenericAPIView):
    permission_classes = [permissions.IsAuthenticated]

    def post(self, request):
        updated = Notification.objects.filter(
            user=request.user, status=Notification.Status.UNREAD
        ).update(status=Notification.Status.READ)
        return Response({"updated": updated})


class NotificationDeleteView(generics.DestroyAPIView):
    serializer_class = NotificationSerializer
    permission_classes = [permissions.IsAuthenticated]
    lookup_field = "id"

    def get_queryset(self):
        return Notification.objects.filter(user=self.request.user)


class NotificationPreferenceView(generics.RetrieveUpdateAPIView):
    serializer_class = NotificationPreferenceSerializer
    permission_classes = [permissions.IsAuthenticated]
    http_method_names = ["get", "patch"]

    def get_object(self):
        return NotificationPreference.for_user(self.request.user)


class PushTokenListCreateView(generics.ListCreateAPIView):
    serializer_class = PushTokenSerializer
    permission_classes = [permissions.IsAuthenticated]

    def get_queryset(self):
        return PushToken.objects.filter(user=self.request.user)

    def create(self, request, *args, **kwargs):
        serializer = self.get_serializer(data=request.data)
        serializer.is_valid(raise_exception=True)
        token, created = PushToken.objects.update_or_create(
            user=request.user,
            token=serializer.validated_data["token"],
            defaults={"platform": serializer.validated_data["platform"]},
        )
        return Response(
            PushTokenSerializer(token).data,
            status=status.HTTP_201_CREATED if created else status.HTTP_200_OK,
        )


class PushTokenDeleteView(generics.DestroyAPIView):
    serializer_class = PushTokenSerializer
    permission_classes = [permissions.IsAuthenticated]

    def get_queryset(self):
        return PushToken.objects.filter(user=self.request.user)
