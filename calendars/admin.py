from django.contrib import admin

from .models import Calendar, Event, SyncJob


@admin.register(Calendar)
class CalendarAdmin(admin.ModelAdmin):
    list_display = ('id', 'account', 'name', 'is_primary', 'sync_enabled', 'last_synced_at')
    list_filter = ('sync_enabled', 'is_primary')
    search_fields = ('name', 'provider_calendar_id')


@admin.register(Event)
class EventAdmin(admin.ModelAdmin):
    list_display = ('id', 'calendar', 'title', 'start', 'status', 'synced_at')
    list_filter = ('status', 'is_all_day')
    search_fields = ('title', 'provider_event_id')
    date_hierarchy = 'start'


@admin.register(SyncJob)
class SyncJobAdmin(admin.ModelAdmin):
    list_display = ('id', 'account', 'trigger', 'status', 'events_upserted', 'conflicts', 'started_at', 'finished_at')
    list_filter = ('trigger', 'status')
    readonly_fields = ('errors',)
