"""Channels middleware that resolves scope["user"] for the driver and client sockets."""

import logging
from urllib.parse import parse_qs

from channels.db import database_sync_to_async
from channels.middleware import BaseMiddleware
from django.contrib.auth import get_user_model
from django.contrib.auth.models import AnonymousUser
from rest_framework_simplejwt.exceptions import TokenError
from rest_framework_simplejwt.tokens import AccessToken

logger = logging.getLogger(__name__)


@database_sync_to_async
def user_for_token(raw_token: str):
    """Active user named by a simplejwt access token, or AnonymousUser."""
    try:
        user_id = AccessToken(raw_token)["user_id"]
    except (TokenError, KeyError) as e:
        logger.debug("Rejected websocket token: %s", e)
        return AnonymousUser()

    user = get_user_model().objects.filter(id=user_id, is_active=True).first()
    return user or AnonymousUser()


class JWTOrCookieAuthMiddleware(BaseMiddleware):
    """
    The mobile apps pass ?token=<access> on the socket URL. Without a token,
    whatever an outer session middleware put in the scope is kept, so the
    browser-based dispatcher console can connect with its cookie.
    """

    async def __call__(self, scope, receive, send):
        query = parse_qs(scope.get("query_string", b"").decode())
        tokens = query.get("token")

        if tokens:
            scope["user"] = await user_for_token(tokens[0])
        else:
            scope.setdefault("user", AnonymousUser())
        return await super().__call__(scope, receive, send)
