"""Caller identity from a bearer token.

The gateway passes ``Authorization`` through untouched, so this service
verifies the token itself: an HS256 JWT signed with ``JWT_SECRET`` carrying
``id`` (or ``userId``) and an optional ``role`` claim.
"""

import logging

import jwt
from django.conf import settings
from rest_framework.authentication import BaseAuthentication, get_authorization_header
from rest_framework.exceptions import AuthenticationFailed
from rest_framework.permissions import BasePermission

from .domain import Caller, Role

logger = logging.getLogger(__name__)

KEYWORD = b"bearer"


class TokenUser:
    """Minimal user object for DRF (``request.user``) wrapping a ``Caller``."""

    is_authenticated = True
    is_anonymous = False

    def __init__(self, caller: Caller, email=None):
        self.caller = caller
        self.email = email
        self.pk = self.id = caller.id

    def __str__(self):
        return f"{self.caller.role.value}:{self.caller.id}"


def caller_from_claims(claims) -> Caller:
    raw_id = claims.get("id") or claims.get("userId")
    if isinstance(raw_id, bool):
        raise AuthenticationFailed("Invalid or expired token")
    try:
        user_id = int(raw_id)
    except (TypeError, ValueError):
        raise AuthenticationFailed("Invalid or expired token")
    if user_id <= 0:
        raise AuthenticationFailed("Invalid or expired token")
    try:
        role = Role(str(claims.get("role") or Role.USER.value).strip().lower())
    except ValueError:
        raise AuthenticationFailed("Invalid or expired token")
    return Caller(user_id, role)


class BearerTokenAuthentication(BaseAuthentication):
    """Authenticate ``Authorization: Bearer <jwt>``.

    Returns None (anonymous) when no bearer token is sent so the permission
    layer answers 401; a bad signature, an expired token or unusable claims
    fail authentication outright.
    """

    def authenticate(self, request):
        parts = get_authorization_header(request).split()
        if not parts or parts[0].lower() != KEYWORD:
            return None
        if len(parts) != 2:
            raise AuthenticationFailed("No token provided")

        try:
            claims = jwt.decode(
                parts[1].decode(),
                settings.JWT_SECRET,
                algorithms=settings.JWT_ALGORITHMS,
            )
        except (jwt.InvalidTokenError, UnicodeDecodeError) as e:
            logger.warning("jwt verification failed", extra={"error": str(e)})
            raise AuthenticationFailed("Invalid or expired token")
        return TokenUser(caller_from_claims(claims), claims.get("email")), claims

    def authenticate_header(self, request):
        # a WWW-Authenticate value makes DRF answer 401 rather than 403
        return 'Bearer realm="api"'


class IsAdminRole(BasePermission):
    message = "Admin role required"

    def has_permission(self, request, view):
        caller = getattr(request.user, "caller", None)
        return bool(caller and caller.is_admin)
