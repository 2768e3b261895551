"""
middleware/auth_middleware.py — Bearer-token authentication for the API.

Tokens are issued by the identity provider that fronts this service; this
module only verifies them. A valid token is an HS256 JWT signed with
JWT_SECRET_KEY whose `sub` claim is the numeric user id.

Authentication (401) happens here. Authorization (403: household
membership, account ownership) happens in the services, which receive the
caller's id as a plain int and never see the token.

Error codes:
  TOKEN_MISSING  (401) — no Authorization header
  TOKEN_INVALID  (401) — not "Bearer <token>", bad signature, bad `sub`
  TOKEN_EXPIRED  (401) — signature fine, exp in the past
"""

from __future__ import annotations

import functools
from typing import Callable

import jwt
from flask import current_app, g, request

from backend.app.errors import AppError, ErrorCode


def require_auth(f: Callable) -> Callable:
    """
    Route decorator: verifies the bearer token and sets flask.g.user_id.

    Failures raise AppError and are rendered by the global error handler.

    Usage:
        @rules_bp.route("/<int:household_id>/rules")
        @require_auth
        def list_rules(household_id):
            caller_id = g.user_id
    """
    @functools.wraps(f)
    def decorated(*args, **kwargs):
        g.user_id = _authenticate_request()
        return f(*args, **kwargs)

    return decorated


def _bearer_token() -> str:
    auth_header = request.headers.get("Authorization", "")
    if not auth_header:
        raise AppError(
            ErrorCode.TOKEN_MISSING,
            "Authentication required. Provide a Bearer token in the Authorization header.",
            401,
        )

    parts = auth_header.split()
    if len(parts) != 2 or parts[0].lower() != "bearer":
        raise AppError(
            ErrorCode.TOKEN_INVALID,
            "Authorization header must be in the format: Bearer <token>.",
            401,
        )
    return parts[1]


def _authenticate_request() -> int:
    """
    Verifies the request's token and returns the caller's user id.

    Callable directly in tests inside a request context.
    """
    try:
        payload = jwt.decode(
            _bearer_token(),
            current_app.config["JWT_SECRET_KEY"],
            algorithms=[current_app.config.get("JWT_ALGORITHM", "HS256")],
        )
    except jwt.ExpiredSignatureError:
        raise AppError(
            ErrorCode.TOKEN_EXPIRED,
            "The access token has expired. Sign in again to obtain a new one.",
            401,
        )
    except jwt.InvalidTokenError:
        raise AppError(
            ErrorCode.TOKEN_INVALID,
            "The access token is invalid or has been tampered with.",
            401,
        )

    sub = payload.get("sub")
    try:
        return int(sub)
    except (TypeError, ValueError):
        raise AppError(
            ErrorCode.TOKEN_INVALID,
            "The access token's 'sub' claim is missing or is not a user id.",
            401,
        )
