"""
services/invite_tokens.py — Invite token issue, verify, redeem and revoke.

Tokens are bearer capabilities: anyone holding the string may join the trip
while it is usable. Whether a token is usable is decided ONLY by the store's
procedures (verify_invite_token / use_invite_token). This module never reads
is_active, expires_at or use_count to make that decision itself, because a
client-side check followed by a separate increment would let two redeemers
of a single-use token both succeed.

Layer rules match services/expense_ledger.py: store passed explicitly,
no Flask imports, no module state.
"""

from __future__ import annotations

import logging
import secrets
from dataclasses import dataclass
from datetime import datetime, timedelta, timezone

from backend.tripshare.errors import AppError, ErrorCode
from backend.tripshare.models.invite_token import InviteType
from backend.tripshare.services import store_errors
from backend.tripshare.store.base import Row, RowFilteredStore, StoreFailure

logger = logging.getLogger(__name__)

INVITE_TOKENS = "invite_tokens"

# No 0/O or 1/I, so tokens survive being read aloud or retyped.
TOKEN_ALPHABET = "ABCDEFGHJKLMNPQRSTUVWXYZ23456789"
DEFAULT_TOKEN_LENGTH = 32

_INVALID_LINK_MESSAGE = "This invite link is invalid."


@dataclass(frozen=True)
class InviteVerification:
    trip_id: str | None
    invite_type: str | None
    is_valid: bool
    error: str | None = None


def generate_token(length: int = DEFAULT_TOKEN_LENGTH) -> str:
    """Each character drawn uniformly from TOKEN_ALPHABET with the secrets CSPRNG."""
    if length < 1:
        raise ValueError("token length must be positive")
    return "".join(secrets.choice(TOKEN_ALPHABET) for _ in range(length))


# ── Validation helpers ─────────────────────────────────────────────────────

def _validate_invite_type(value: object) -> str:
    try:
        return InviteType(value).value
    except ValueError:
        raise AppError(
            ErrorCode.INVALID_INVITE_TYPE,
            f"{value!r} is not a valid invite type. Use 'member' or 'companion'.",
            400,
            field="invite_type",
        )


def _validate_positive_int(value: object, field_name: str) -> int:
    if isinstance(value, bool) or not isinstance(value, int) or value < 1:
        raise AppError(
            ErrorCode.INVALID_FIELD,
            f"{field_name} must be a whole number of at least 1.",
            400,
            field=field_name,
        )
    return value


# ── Public service functions ───────────────────────────────────────────────

def create_invite_token(
        trip_id: str,
        invite_type: str,
        store: RowFilteredStore,
        actor_id: str | None,
        expires_in_days: int | None = None,
        max_uses: int | None = None,
        *,
        token_length: int = DEFAULT_TOKEN_LENGTH,
        now: datetime | None = None,
) -> str:
    """
    Issues a new token for `trip_id` and returns the token string.

    expires_in_days=None means the token never expires; max_uses=None means
    unlimited redemptions.

    Raises:
        AppError(UNAUTHENTICATED, 401)  -- no acting identity.
        AppError(SCHEMA_MISSING, 503)   -- invite_tokens is not provisioned.
    """
    if not actor_id:
        raise AppError(
            ErrorCode.UNAUTHENTICATED,
            "Sign in to create invite links.",
            401,
        )
    if not isinstance(trip_id, str) or not trip_id.strip():
        raise AppError(ErrorCode.MISSING_FIELD, "trip_id is required.", 400, field="trip_id")

    kind = _validate_invite_type(invite_type)
    if expires_in_days is not None:
        _validate_positive_int(expires_in_days, "expires_in_days")
    if max_uses is not None:
        _validate_positive_int(max_uses, "max_uses")

    issued_at = now or datetime.now(timezone.utc)
    token = generate_token(token_length)
    row: Row = {
        "trip_id": trip_id,
        "token": token,
        "invite_type": kind,
        "created_by": actor_id,
        "expires_at": issued_at + timedelta(days=expires_in_days) if expires_in_days else None,
        "max_uses": max_uses,
        "created_at": issued_at,
    }

    try:
        store.insert(INVITE_TOKENS, [row])
    except StoreFailure as failure:
        if failure.code == StoreFailure.TABLE_NOT_FOUND:
            logger.error("Invite tokens table is missing; invites cannot be issued")
        raise store_errors.classify(failure, "create the invite link") from failure

    logger.info("Issued %s invite for trip %s", kind, trip_id)
    return token


def verify_invite_token(token: str, store: RowFilteredStore) -> InviteVerification:
    """
    One call to the verify procedure. An unknown token is not an error, it is
    simply not valid. Transport failures raise STORE_ERROR.
    """
    try:
        data = store.call_procedure("verify_invite_token", {"p_token": token}).data
    except StoreFailure as failure:
        raise store_errors.store_error(failure, "verify the invite link") from failure

    if not data:
        return InviteVerification(
            trip_id=None,
            invite_type=None,
            is_valid=False,
            error=_INVALID_LINK_MESSAGE,
        )

    result = data[0]
    is_valid = bool(result.get("is_valid"))
    return InviteVerification(
        trip_id=result.get("trip_id"),
        invite_type=result.get("invite_type"),
        is_valid=is_valid,
        error=None if is_valid else (result.get("error_message") or _INVALID_LINK_MESSAGE),
    )


def use_invite_token(token: str, store: RowFilteredStore) -> bool:
    """
    Atomically consumes one use of `token`. True only if this call's
    increment applied; a concurrent redeemer of the last use gets False.
    """
    try:
        data = store.call_procedure("use_invite_token", {"p_token": token}).data
    except StoreFailure as failure:
        raise store_errors.store_error(failure, "redeem the invite link") from failure
    return data is True


def get_invite_tokens(trip_id: str, store: RowFilteredStore) -> list[Row]:
    """Active tokens for a trip, newest first. Row policy limits them to the caller's own."""
    try:
        result = store.select(
            INVITE_TOKENS,
            {"trip_id": trip_id, "is_active": True},
            order_by="created_at",
            descending=True,
        )
    except StoreFailure as failure:
        raise store_errors.classify(failure, "load the invite links") from failure
    return result.rows


def deactivate_invite_token(token_id: str, store: RowFilteredStore) -> None:
    """
    Sets is_active = false. A redemption that already passed the atomic
    check is not undone.
    """
    try:
        result = store.update(INVITE_TOKENS, {"is_active": False}, {"id": token_id})
    except StoreFailure as failure:
        raise store_errors.classify(failure, "deactivate the invite link") from failure

    if result.affected_count == 0:
        raise AppError(
            ErrorCode.NO_ROWS_AFFECTED,
            f"No invite link was deactivated: {token_id} does not exist "
            f"or you are not allowed to change it.",
            403,
            details={"token_id": token_id},
        )
