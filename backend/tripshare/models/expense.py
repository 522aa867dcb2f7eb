"""
models/expense.py — Expense table definition.

No business logic. No imports from services or routes.

Key design points:
  - `amount` uses Numeric(12, 2), never Float.
  - `id` and every identity column are strings (uuid / auth-provider ids).
  - Nothing in this table guarantees that an expense has splits or that the
    splits sum to the amount. services/expense_ledger.py maintains both.
  - ExpenseCategory is a Python enum so it can be imported by schemas and
    services without repeating string literals.
"""

from __future__ import annotations

import enum
from datetime import date, datetime
from decimal import Decimal

from sqlalchemy import (
    CheckConstraint,
    Date,
    DateTime,
    Enum,
    Numeric,
    String,
    func,
)
from sqlalchemy.orm import Mapped, mapped_column

from backend.tripshare.extensions import db


class ExpenseCategory(str, enum.Enum):
    FOOD          = "food"
    TRANSPORT     = "transport"
    ACCOMMODATION = "accommodation"
    TICKET        = "ticket"
    SHOPPING      = "shopping"
    OTHER         = "other"


def _enum_values(enum_cls: type[enum.Enum]) -> list[str]:
    """Ensure SQLAlchemy stores enum values (e.g. 'food'), not names ('FOOD')."""
    return [member.value for member in enum_cls]


class Expense(db.Model):
    __tablename__ = "expenses"

    __table_args__ = (
        CheckConstraint("amount > 0", name="ck_expenses_amount_positive"),
        CheckConstraint(
            "LENGTH(TRIM(title)) > 0",
            name="ck_expenses_title_nonempty",
        ),
    )

    id: Mapped[str] = mapped_column(String(36), primary_key=True)

    trip_id: Mapped[str] = mapped_column(String(36), nullable=False, index=True)

    title: Mapped[str] = mapped_column(String(255), nullable=False)

    amount: Mapped[Decimal] = mapped_column(Numeric(12, 2), nullable=False)

    # Stored as VARCHAR + CHECK so the same DDL works on SQLite and Postgres.
    category: Mapped[ExpenseCategory] = mapped_column(
        Enum(
            ExpenseCategory,
            name="expense_category_enum",
            native_enum=False,
            create_constraint=True,
            validate_strings=True,
            values_callable=_enum_values,
        ),
        nullable=False,
        default=ExpenseCategory.OTHER,
    )

    payer_id: Mapped[str] = mapped_column(String(36), nullable=False)

    expense_date: Mapped[date] = mapped_column(
        Date,
        nullable=False,
        default=date.today,
    )

    created_by: Mapped[str] = mapped_column(String(36), nullable=False)

    # Last modifier; stamped by update_expense.
    updated_by: Mapped[str | None] = mapped_column(String(36), nullable=True)

    created_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True),
        nullable=False,
        server_default=func.now(),
    )

    updated_at: Mapped[datetime | None] = mapped_column(
        DateTime(timezone=True),
        nullable=True,
    )

    def __repr__(self) -> str:  # pragma: no cover
        return (
            f"<Expense id={self.id} "
            f"trip_id={self.trip_id} "
            f"amount={self.amount}>"
        )
