"""
models/invite_token.py — InviteToken table definition.

No business logic. No imports from services or routes.

A token is usable iff:
    is_active
    AND (expires_at IS NULL OR expires_at > now)
    AND (max_uses IS NULL OR use_count < max_uses)

That predicate is evaluated only inside the store's verify/use procedures
(store/sql_store.py), never by application code. use_count is incremented by
the same single UPDATE statement that evaluates it.
"""

from __future__ import annotations

import enum
from datetime import datetime

from sqlalchemy import (
    Boolean,
    CheckConstraint,
    DateTime,
    Enum,
    Integer,
    String,
    func,
)
from sqlalchemy.orm import Mapped, mapped_column

from backend.tripshare.extensions import db
from backend.tripshare.models.expense import _enum_values


class InviteType(str, enum.Enum):
    MEMBER    = "member"
    COMPANION = "companion"


class InviteToken(db.Model):
    __tablename__ = "invite_tokens"

    __table_args__ = (
        CheckConstraint("use_count >= 0", name="ck_invite_tokens_use_count_nonnegative"),
        CheckConstraint(
            "max_uses IS NULL OR max_uses > 0",
            name="ck_invite_tokens_max_uses_positive",
        ),
    )

    id: Mapped[str] = mapped_column(String(36), primary_key=True)

    trip_id: Mapped[str] = mapped_column(String(36), nullable=False, index=True)

    # Opaque capability string; unique across all trips.
    token: Mapped[str] = mapped_column(String(64), nullable=False, unique=True)

    invite_type: Mapped[InviteType] = mapped_column(
        Enum(
            InviteType,
            name="invite_type_enum",
            native_enum=False,
            create_constraint=True,
            validate_strings=True,
            values_callable=_enum_values,
        ),
        nullable=False,
    )

    created_by: Mapped[str] = mapped_column(String(36), nullable=False)

    expires_at: Mapped[datetime | None] = mapped_column(
        DateTime(timezone=True),
        nullable=True,
    )

    max_uses: Mapped[int | None] = mapped_column(Integer, nullable=True)

    use_count: Mapped[int] = mapped_column(
        Integer,
        nullable=False,
        default=0,
        server_default="0",
    )

    is_active: Mapped[bool] = mapped_column(
        Boolean,
        nullable=False,
        default=True,
        server_default="true",
    )

    created_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True),
        nullable=False,
        server_default=func.now(),
    )

    def __repr__(self) -> str:  # pragma: no cover
        return (
            f"<InviteToken id={self.id} "
            f"trip_id={self.trip_id} "
            f"use_count={self.use_count} "
            f"active={self.is_active}>"
        )
