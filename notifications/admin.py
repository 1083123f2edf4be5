from django.contrib import admin

from .models import Notification, NotificationPreference, PushToken


@admin.register(Notification)
class NotificationAdmin(admin.ModelAdmin):
    list_display = ('id', 'user', 'type', 'title', 'status', 'pushed', 'created_at')
    list_filter = ('type', 'status', 'pushed', 'created_at')
    search_fields = ('user__email', 'title', 'message')


@admin.register(NotificationPreference)
class NotificationPreferenceAdmin(admin.ModelAdmin):
    list_display = ('user', 'push_enabled', 'daily_digest_enabled', 'digest_hour', 'timezone', 'last_digest_sent_on')
    search_fields = ('user__email',)


@admin.register(PushToken)
class PushTokenAdmin(admin.ModelAdmin):
    list_display = ('id', 'user', 'platform', 'last_used_at', 'created_at')
    list_filter = ('platform',)
    search_fields = ('user__email',)
