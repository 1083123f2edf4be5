from django.urls import path

from .views import (
    CalendarDetailView,
    CalendarEventListCreateView,
    CalendarListView,
    EventDetailView,
    ManualSyncView,
    SyncJobListView,
)

app_name = "calendars"


urlpatterns = [
    path('', CalendarListView.as_view(), name='calendar-list'),
    path('<int:pk>/', CalendarDetailView.as_view(), name='calendar-detail'),
    path('<int:pk>/events/', CalendarEventListCreateView.as_view(), name='calendar-events'),
    path('events/<int:pk>/', EventDetailView.as_view(), name='event-detail'),
    path('sync/', ManualSyncView.as_view(), name='manual-sync'),
    path('sync-jobs/', SyncJobListView.as_view(), name='sync-job-list'),
]
