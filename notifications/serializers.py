from zoneinfo import ZoneInfo, ZoneInfoNotFoundError

from rest_framework import serializers

from .models import Notification, NotificationPreference, PushToken


class NotificationSerializer(serializers.ModelSerializer):
    class Meta:
        model = Notification
        fields = [
            "id",
            "user",
            "title",
            "message",
            "type",
            "status",
            "payload",
            "pushed",
            "created_at",
            "updated_at",
        ]
        read_only_fields = fields


class NotificationPreferenceSerializer(serializers.ModelSerializer):
    class Meta:
        model = NotificationPreference
        fields = [
            "push_enabled",
            "daily_digest_enabled",
            "digest_hour",
            "event_reminders_enabled",
            "reminder_lead_minutes",
            "quiet_hours_start",
            "quiet_hours_end",
            "timezone",
            "last_digest_sent_on",
        ]
        read_only_fields = ["last_digest_sent_on"]

    def validate_timezone(self, value):
        try:
            ZoneInfo(value)
        except (ZoneInfoNotFoundError, ValueError):
            raise serializers.ValidationError("Unknown timezone.")
        return value

    def validate(self, attrs):
        start = attrs.get("quiet_hours_start", getattr(self.instance, "quiet_hours_start", None))
        end = attrs.get("quiet_hours_end", getattr(self.instance, "quiet_hours_end", None))
        if (start is None) != (end is None):
            raise serializers.ValidationError("Quiet hours need both a start and an end.")
        return attrs


class PushTokenSerializer(serializers.ModelSerializer):
    class Meta:
        model = PushToken
        fields = ["id", "token", "platform", "last_used_at", "created_at"]
        read_only_fields = ["id", "last_used_at", "created_at"]
        # Registration is idempotent per (user, token); the view upserts.
        validators = []
