from django.contrib import admin

from .models import WebhookChannel


@admin.register(WebhookChannel)
class WebhookChannelAdmin(admin.ModelAdmin):
    list_display = ('id', 'calendar', 'channel_id', 'expires_at', 'handshake_received_at', 'last_message_number')
    search_fields = ('channel_id', 'resource_id')
    exclude = ('token',)
