from rest_framework import serializers

from .models import ConnectedAccount


class ConnectedAccountSerializer(serializers.ModelSerializer):
    needs_reconnection = serializers.BooleanField(read_only=True)
    credential_expires_at = serializers.SerializerMethodField()
    scopes = serializers.SerializerMethodField()

    class Meta:
        model = ConnectedAccount
        fields = [
            'id',
            'provider',
            'provider_account_id',
            'status',
            'tier',
            'sync_enabled',
            'needs_reconnection',
            'last_synced_at',
            'sync_cooldown_until',
            'last_error',
            'credential_expires_at',
            'scopes',
            'created_at',
            'updated_at',
        ]
        read_only_fields = fields

    def _credential(self, instance):
        try:
            return instance.credential
        except ConnectedAccount.credential.RelatedObjectDoesNotExist:
            return None

    def get_credential_expires_at(self, instance):
        credential = self._credential(instance)
        if credential is None or credential.expires_at is None:
            return None
        return serializers.DateTimeField().to_representation(credential.expires_at)

    def get_scopes(self, instance):
        credential = self._credential(instance)
        return sorted(credential.scopes) if credential else []
