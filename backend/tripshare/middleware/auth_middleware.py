"""
middleware/auth_middleware.py — JWT authentication decorator and identity resolver.

The @require_auth decorator:
  1. Reads the Authorization header (expected: "Bearer <token>")
  2. Decodes and verifies the JWT signature (HS256 by default)
  3. Checks token expiry
  4. Attaches user_id (str, the `sub` claim) to flask.g for the request
  5. Raises the appropriate 401 error if any step fails

Strict responsibility boundary:
  - This middleware authenticates and attaches user_id to flask.g ONLY.
  - It does NOT authorize. Who may change which row is decided by the
    store's row policies; a refused write surfaces as NO_ROWS_AFFECTED or
    FORBIDDEN (403) from the services.
  - Services never read flask.g. They get the identity through
    resolve_identity(), passed into TripCollaboration by the routes.

Error codes:
  TOKEN_MISSING  (401) — no Authorization header
  TOKEN_INVALID  (401) — malformed header, invalid signature, or bad payload
  TOKEN_EXPIRED  (401) — valid token but exp claim is in the past
"""

from __future__ import annotations

import functools
from typing import Callable

import jwt
from flask import current_app, g, has_request_context, request

from backend.tripshare.errors import AppError, ErrorCode


def require_auth(f: Callable) -> Callable:
    """
    Route decorator that enforces JWT authentication.

    Attaches the authenticated user's ID to flask.g.user_id. Raises AppError
    for all auth failures; the global error handler renders them.

    Usage:
        @bp.route("/trips/<trip_id>/expenses")
        @require_auth
        def list_expenses(trip_id):
            user_id = g.user_id  # always a non-empty str when this runs
            ...
    """
    @functools.wraps(f)
    def decorated(*args, **kwargs):
        _authenticate_request()
        return f(*args, **kwargs)

    return decorated


def resolve_identity() -> str | None:
    """
    The acting identity for the current request, or None when the request
    did not pass through @require_auth (or there is no request at all).
    """
    if not has_request_context():
        return None
    return g.get("user_id")


def _authenticate_request() -> None:
    """
    Performs the full JWT authentication sequence and sets flask.g.user_id.

    Separated from the decorator wrapper so tests can call it directly
    inside a test_request_context().
    """
    auth_header = request.headers.get("Authorization", "")

    # ── Step 1: Require Authorization header ──────────────────────────────
    if not auth_header:
        raise AppError(
            ErrorCode.TOKEN_MISSING,
            "Authentication required. Provide a Bearer token in the Authorization header.",
            401,
        )

    # ── Step 2: Parse "Bearer <token>" format ─────────────────────────────
    parts = auth_header.split()
    if len(parts) != 2 or parts[0].lower() != "bearer":
        raise AppError(
            ErrorCode.TOKEN_INVALID,
            "Authorization header must be in the format: Bearer <token>.",
            401,
        )

    # ── Step 3: Decode and verify the JWT ─────────────────────────────────
    try:
        payload = jwt.decode(
            parts[1],
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
        # Covers: bad signature, malformed token, invalid claims, etc.
        raise AppError(
            ErrorCode.TOKEN_INVALID,
            "The access token is invalid or has been tampered with.",
            401,
        )

    # ── Step 4: Extract and validate the sub claim ────────────────────────
    sub = payload.get("sub")
    if not isinstance(sub, str) or not sub.strip():
        raise AppError(
            ErrorCode.TOKEN_INVALID,
            "The access token is missing a valid 'sub' claim.",
            401,
        )

    # ── Step 5: Attach user_id to flask.g ─────────────────────────────────
    g.user_id = sub
