"""Views for connecting calendar accounts through OAuth."""

from __future__ import annotations

import logging

from django.shortcuts import get_object_or_404

from rest_framework import generics, permissions, status
from rest_framework.response import Response
from rest_framework.views import APIView

from common.exceptions import AuthError, ReauthorizationRequired
from common.choices import SyncTrigger

from .models import ConnectedAccount
from .oauth import (
    OAuthIntegrationError,
    build_state_for_user,
    get_oauth_client,
    resolve_state,
)
from .serializers import ConnectedAccountSerializer
from .tokens import TokenManager

logger = logging.getLogger(__name__)


class OAuthStartView(APIView):
    permission_classes = [permissions.IsAuthenticated]

    def get(self, request, provider):
        try:
            client = get_oauth_client(provider)
        except OAuthIntegrationError as exc:
            return Response({"detail": str(exc)}, status=status.HTTP_400_BAD_REQUEST)
        state = build_state_for_user(request.user, provider)
        return Response(
            {
                "authorization_url": client.build_authorization_url(state),
                "state": state,
                "redirect_uri": client.redirect_uri,
                "provider": provider,
            },
            status=status.HTTP_200_OK,
        )


class OAuthCallbackView(APIView):
    permission_classes = [permissions.AllowAny]
    authentication_classes = []

    def get(self, request, provider):
        code = request.query_params.get("code")
        state = request.query_params.get("state")
        error = request.query_params.get("error")

        if error:
            return self._error(provider, f"Authorization was not granted: {error}")
        if not code or not state:
            return self._error(provider, "Missing code or state parameter.")

        try:
            user = resolve_state(state, provider)
            client = get_oauth_client(provider)
            payload = client.exchange_code(code)
            account = TokenManager(oauth_client=client).store_authorization(
                user,
                payload,
                provider=provider,
                default_scope=" ".join(client.scope),
            )
        except OAuthIntegrationError as exc:
            logger.warning("OAuth callback for %s failed: %s", provider, exc)
            return self._error(provider, str(exc))

        from calendars.services.triggers import request_account_sync
        from notifications.services import clear_reconnect_notices

        clear_reconnect_notices(account)
        request_account_sync(account.pk, trigger=SyncTrigger.MANUAL)

        return Response(
            {
                "detail": "Calendar account connected.",
                "provider": provider,
                "success": True,
                "account": ConnectedAccountSerializer(account).data,
            },
            status=status.HTTP_200_OK,
        )

    def _error(self, provider, message):
        return Response(
            {"detail": message, "provider": provider, "success": False},
            status=status.HTTP_400_BAD_REQUEST,
        )


class OAuthStatusView(APIView):
    permission_classes = [permissions.IsAuthenticated]

    def get(self, request, provider):
        account = (
            ConnectedAccount.objects.select_related("credential")
            .filter(user=request.user, provider=provider)
            .first()
        )
        if account is None:
            return Response({"connected": False, "provider": provider})

        data = ConnectedAccountSerializer(account).data
        data["connected"] = account.status != ConnectedAccount.Status.REVOKED
        return Response(data)


class OAuthRefreshView(APIView):
    permission_classes = [permissions.IsAuthenticated]

    def post(self, request, provider):
        account = get_object_or_404(ConnectedAccount, user=request.user, provider=provider)
        try:
            TokenManager().force_refresh(account.pk)
        except ReauthorizationRequired as exc:
            account.refresh_from_db()
            return Response(
                {
                    "detail": f"Reconnection required: {exc}",
                    "account": ConnectedAccountSerializer(account).data,
                },
                status=status.HTTP_409_CONFLICT,
            )
        except AuthError as exc:
            return Response({"detail": str(exc)}, status=status.HTTP_503_SERVICE_UNAVAILABLE)

        account.refresh_from_db()
        return Response(
            {"detail": "Credential refreshed.", "account": ConnectedAccountSerializer(account).data}
        )


class ConnectedAccountListView(generics.ListAPIView):
    serializer_class = ConnectedAccountSerializer
    permission_classes = [permissions.IsAuthenticated]

    def get_queryset(self):
        return (
            ConnectedAccount.objects.filter(user=self.request.user)
            .select_related("credential")
            .order_by("provider")
        )


class ConnectedAccountDetailView(generics.RetrieveDestroyAPIView):
    """Retrieve an account, or disconnect it (DELETE cascades its calendars)."""

    serializer_class = ConnectedAccountSerializer
    permission_classes = [permissions.IsAuthenticated]

    def get_queryset(self):
        return ConnectedAccount.objects.filter(user=self.request.user).select_related("credential")

    def perform_destroy(self, instance):
        from webhooks.services import stop_account_watches

        stop_account_watches(instance)
        logger.info("Disconnecting account %s for user %s", instance.pk, instance.user_id)
        instance.delete()


__all__ = [
    "ConnectedAccountDetailView",
    "ConnectedAccountListView",
    "OAuthCallbackView",
    "OAuthRefreshView",
    "OAuthStartView",
    "OAuthStatusView",
]
