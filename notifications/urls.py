from django.urls import path

from .views import (
    NotificationDeleteView,
    NotificationListView,
    NotificationMarkAllReadView,
    NotificationMarkReadView,
    NotificationPreferenceView,
    PushTokenDeleteView,
    PushTokenListCreateView,
)

app_name = "notifications"

urlpatterns = [
    path('', NotificationListView.as_view(), name='notifications-list'),
    path('mark-all-read/', NotificationMarkAllReadView.as_view(), name='notifications-mark-all-read'),
    path('<int:id>/mark-read/', NotificationMarkReadView.as_view(), name='notifications-mark-read'),
    path('<int:id>/delete/', NotificationDeleteView.as_view(), name='notifications-delete'),
    path('preferences/', NotificationPreferenceView.as_view(), name='notification-preferences'),
    path('push-tokens/', PushTokenListCreateView.as_view(), name='push-token-list'),
    path('push-tokens/<int:pk>/', PushTokenDeleteView.as_view(), name='push-token-detail'),
]
