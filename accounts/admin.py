from django.contrib import admin

from .models import ConnectedAccount, Credential


@admin.register(ConnectedAccount)
class ConnectedAccountAdmin(admin.ModelAdmin):
    list_display = ('id', 'user', 'provider', 'status', 'tier', 'sync_enabled', 'last_synced_at')
    list_filter = ('provider', 'status', 'tier', 'sync_enabled')
    search_fields = ('user__username', 'user__email', 'provider_account_id')


@admin.register(Credential)
class CredentialAdmin(admin.ModelAdmin):
    list_display = ('id', 'account', 'token_type', 'expires_at', 'updated_at')
    exclude = ('access_token', 'refresh_token')
    readonly_fields = ('account', 'token_type', 'scope', 'expires_at')
