"""
schemas/invite_schema.py — Marshmallow schema for invite link creation.

Validity of an existing token is never decided here; that belongs to the
store's verify/use procedures.
"""

from __future__ import annotations

from marshmallow import Schema, fields, validate

from backend.tripshare.errors import ErrorCode
from backend.tripshare.models.invite_token import InviteType


class CreateInviteSchema(Schema):
    """POST /trips/:id/invites"""

    invite_type = fields.Enum(
        InviteType,
        required=True,
        by_value=True,
        error_messages={"unknown": ErrorCode.INVALID_INVITE_TYPE},
    )

    # None → never expires.
    expires_in_days = fields.Int(
        load_default=None,
        allow_none=True,
        strict=True,
        validate=validate.Range(min=1, error="expires_in_days must be at least 1."),
    )

    # None → unlimited uses.
    max_uses = fields.Int(
        load_default=None,
        allow_none=True,
        strict=True,
        validate=validate.Range(min=1, error="max_uses must be at least 1."),
    )
