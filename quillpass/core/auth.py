"""
Identity for QuillPass API routes.

Sessions are issued by the platform's auth service; we only consume them.
Priority:
1. Bearer JWT (HS256, AUTH_JWT_SECRET) with sub/email/name/role claims
2. X-User-Id (+ optional X-User-Email, X-User-Role) headers for internal
   callers and tests, when ALLOW_USER_ID_HEADER is enabled
"""
import logging
from typing import Any, Dict, Optional

import jwt
from fastapi import Depends, Header, Request

from quillpass.core.config import settings
from quillpass.core.errors import AuthenticationError, PermissionError
from quillpass.features.users.service import get_or_create_user
from quillpass.models.user import User

logger = logging.getLogger("quillpass")


def verify_jwt(token: str) -> Dict[str, Any]:
    """
    Verify a platform JWT and return its claims.

    Raises:
        AuthenticationError: expired, malformed or unverifiable token (401)
    """
    if not settings.AUTH_JWT_SECRET:
        raise AuthenticationError("Bearer tokens are not accepted: AUTH_JWT_SECRET is not configured")
    try:
        claims = jwt.decode(
            token,
            settings.AUTH_JWT_SECRET,
            algorithms=[settings.AUTH_JWT_ALGORITHM],
            options={"verify_exp": True, "require": ["sub"]},
        )
    except jwt.ExpiredSignatureError:
        raise AuthenticationError("Token expired", code="token_expired")
    except jwt.InvalidTokenError as e:
        logger.debug(f"Invalid token: {e}")
        raise AuthenticationError("Invalid token", code="invalid_token")
    return claims


def get_current_user(
    request: Request,
    x_user_id: Optional[str] = Header(None, description="Internal callers/tests: user id"),
    x_user_email: Optional[str] = Header(None),
    x_user_role: Optional[str] = Header(None),
) -> User:
    """Resolve the caller and make sure a local user record exists."""
    auth_header = request.headers.get("Authorization", "")
    if auth_header.startswith("Bearer "):
        claims = verify_jwt(auth_header[7:].strip())
        user = get_or_create_user(
            str(claims["sub"]),
            email=claims.get("email"),
            name=claims.get("name"),
            role=claims.get("role"),
        )
        request.state.user_id = user.user_id
        return user

    if x_user_id and settings.ALLOW_USER_ID_HEADER:
        user = get_or_create_user(x_user_id.strip(), email=x_user_email, role=x_user_role)
        request.state.user_id = user.user_id
        return user

    raise AuthenticationError("Missing Authorization (Bearer JWT) or X-User-Id header")


def require_admin(user: User = Depends(get_current_user)) -> User:
    if not user.is_admin:
        logger.warning("admin.denied", extra={"user_id": user.user_id, "error_code": "forbidden"})
        raise PermissionError("Access denied. Admin rights required.")
    return user
