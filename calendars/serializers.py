from rest_framework import serializers

from .models import Calendar, Event, SyncJob


class CalendarSerializer(serializers.ModelSerializer):
    has_active_watch = serializers.SerializerMethodField()

    class Meta:
        model = Calendar
        fields = [
            'id',
            'account',
            'provider_calendar_id',
            'name',
            'color',
            'timezone',
            'is_primary',
            'sync_enabled',
            'last_synced_at',
            'has_active_watch',
        ]
        read_only_fields = [
            'id',
            'account',
            'provider_calendar_id',
            'name',
            'color',
            'timezone',
            'is_primary',
            'last_synced_at',
        ]

    def get_has_active_watch(self, instance):
        channel = getattr(instance, 'webhook_channel', None)
        return bool(channel and not channel.is_expired)


class EventSerializer(serializers.ModelSerializer):
    class Meta:
        model = Event
        fields = [
            'id',
            'calendar',
            'provider_event_id',
            'title',
            'description',
            'location',
            'start',
            'end',
            'is_all_day',
            'status',
            'provider_updated_at',
            'synced_at',
            'local_modified_at',
            'cancelled_at',
        ]
        read_only_fields = [
            'id',
            'calendar',
            'provider_event_id',
            'status',
            'provider_updated_at',
            'synced_at',
            'local_modified_at',
            'cancelled_at',
        ]

    def validate(self, attrs):
        start = attrs.get('start', getattr(self.instance, 'start', None))
        end = attrs.get('end', getattr(self.instance, 'end', None))
        if self.instance is None and (start is None or end is None):
            raise serializers.ValidationError('Both start and end are required.')
        if start and end and end < start:
            raise serializers.ValidationError({'end': 'End must not be before start.'})
        return attrs


class SyncJobSerializer(serializers.ModelSerializer):
    class Meta:
        model = SyncJob
        fields = [
            'id',
            'account',
            'trigger',
            'status',
            'calendars_updated',
            'events_upserted',
            'events_created',
            'events_updated',
            'events_cancelled',
            'conflicts',
            'errors',
            'started_at',
            'finished_at',
        ]
        read_only_fields = fields


class ManualSyncSerializer(serializers.Serializer):
    account = serializers.IntegerField(required=False)
