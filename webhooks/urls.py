from django.urls import path

from .views import GoogleCalendarWebhookView

app_name = "webhooks"


urlpatterns = [
    path('google/', GoogleCalendarWebhookView.as_view(), name='google-calendar'),
]
