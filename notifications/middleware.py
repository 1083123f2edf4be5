"""Authenticate websocket connections with a simplejwt access token.

The token is read from the ``token`` query parameter, since browsers cannot
set headers on a websocket handshake.
"""

import logging
import urllib.parse

from channels.db import database_sync_to_async
from channels.middleware import BaseMiddleware
from django.contrib.auth import get_user_model
from django.contrib.auth.models import AnonymousUser
from rest_framework_simplejwt.exceptions import TokenError
from rest_framework_simplejwt.tokens import AccessToken

logger = logging.getLogger(__name__)


@database_sync_to_async
def get_user_from_token(token_key):
    User = get_user_model()
    try:
        access = AccessToken(token_key)
        return User.objects.get(id=access["user_id"])
    except (TokenError, KeyError, User.DoesNotExist) as exc:
        logger.info("Rejected websocket token: %s", exc)
        return AnonymousUser()


class JWTAuthMiddleware(BaseMiddleware):
    async def __call__(self, scope, receive, send):
        scope = dict(scope)
        query = scope.get("query_string", b"").decode()
        params = urllib.parse.parse_qs(query)
        token = params.get("token", [None])[0]
        scope["user"] = await get_user_from_token(token) if token else AnonymousUser()
        return await super().__call__(scope, receive, send)
