"""
models/expense_split.py — ExpenseSplit table definition.

No business logic. No imports from services or routes.

Key design points:
  - `amount` uses Numeric(12, 2) and may be zero (a member who owes nothing
    can still be listed on the expense).
  - expense_id is ON DELETE CASCADE: splits are owned by their expense.
    Deleting an expense removes its splits in the same store call.
  - UNIQUE(expense_id, user_id) prevents the same member appearing twice in
    one expense (also rejected as DUPLICATE_SPLIT_USER before the write).

sum(splits.amount) == expense.amount is NOT enforced here. The store offers
only single-table statements; expense_ledger.py checks the sum before writing.
"""

from __future__ import annotations

from decimal import Decimal

from sqlalchemy import CheckConstraint, ForeignKey, Numeric, String, UniqueConstraint
from sqlalchemy.orm import Mapped, mapped_column

from backend.tripshare.extensions import db


class ExpenseSplit(db.Model):
    __tablename__ = "expense_splits"

    __table_args__ = (
        UniqueConstraint("expense_id", "user_id", name="uq_expense_splits_expense_user"),
        CheckConstraint("amount >= 0", name="ck_expense_splits_amount_nonnegative"),
    )

    id: Mapped[str] = mapped_column(String(36), primary_key=True)

    expense_id: Mapped[str] = mapped_column(
        ForeignKey("expenses.id", ondelete="CASCADE"),
        nullable=False,
        index=True,
    )

    user_id: Mapped[str] = mapped_column(String(36), nullable=False)

    amount: Mapped[Decimal] = mapped_column(Numeric(12, 2), nullable=False)

    def __repr__(self) -> str:  # pragma: no cover
        return (
            f"<ExpenseSplit id={self.id} "
            f"expense_id={self.expense_id} "
            f"user_id={self.user_id} "
            f"amount={self.amount}>"
        )
