"""
schemas/expense_schema.py — Marshmallow schemas for expense endpoints.

Validation responsibility:
  - This file (request shape, 400):
      - Field types, lengths, enum values, decimal precision
      - DUPLICATE_SPLIT_USER
      - PATCH: a changed amount needs splits; splits alone keep the stored amount
      - Non-empty-after-trim enforcement for title
  - services/expense_ledger.py:
      - SPLIT_SUM_MISMATCH (422) — requires Decimal arithmetic over the splits
      - Every rule above again, since the ledger is also called directly
      - Edit permission, decided by the store's row filter (NO_ROWS_AFFECTED)

created_by is never accepted from the body; the facade takes it from the
authenticated identity.

IMPORTANT: Inherits from marshmallow.Schema directly.
"""

from __future__ import annotations

from decimal import Decimal

from marshmallow import (
    Schema,
    ValidationError,
    fields,
    validate,
    validates_schema,
)

from backend.tripshare.errors import ErrorCode
from backend.tripshare.models.expense import ExpenseCategory


# ── Monetary amount validators ─────────────────────────────────────────────
#
# Input with more than 2 decimal places is REJECTED with
# INVALID_AMOUNT_PRECISION, never rounded or truncated. The error handler
# recognises the code string and reports it as the error code.
# ──────────────────────────────────────────────────────────────────────────

def _check_precision(value: Decimal) -> None:
    # Decimal("10.123").as_tuple().exponent == -3  → 3 dp → reject
    if value.as_tuple().exponent < -2:
        raise ValidationError(ErrorCode.INVALID_AMOUNT_PRECISION)


def _validate_monetary_amount(value: Decimal) -> None:
    """Expense amounts: strictly positive, at most 2 dp."""
    if value <= Decimal("0"):
        raise ValidationError("Amount must be greater than zero.")
    _check_precision(value)


def _validate_split_amount(value: Decimal) -> None:
    """Split amounts may be zero (a participant who owes nothing), never negative."""
    if value < Decimal("0"):
        raise ValidationError("Split amount must not be negative.")
    _check_precision(value)


def _validate_non_empty_after_trim(value: str) -> None:
    """
    validate.Length(min=1) alone allows "   ". Mirrors the
    CHECK(LENGTH(TRIM(title)) > 0) constraint at the API layer.
    """
    if not value.strip():
        raise ValidationError("This field must not be blank or contain only whitespace.")


def _identity_field(required: bool) -> fields.Str:
    return fields.Str(
        required=required,
        validate=[validate.Length(min=1, max=36), _validate_non_empty_after_trim],
    )


def _reject_duplicate_users(splits: list[dict] | None) -> None:
    if splits is None:
        return
    user_ids = [s["user_id"] for s in splits]
    if len(user_ids) != len(set(user_ids)):
        raise ValidationError({"splits": [ErrorCode.DUPLICATE_SPLIT_USER]})


# ── Sub-schema: one entry in the `splits` array ───────────────────────────

class SplitInputSchema(Schema):
    user_id = _identity_field(required=True)
    amount = fields.Decimal(required=True, validate=_validate_split_amount)


# ── Create expense ─────────────────────────────────────────────────────────

class CreateExpenseSchema(Schema):
    """
    POST /trips/:id/expenses

    The splits array is always explicit; there is no server-side equal split.
    The sum check lives in the ledger (SPLIT_SUM_MISMATCH, 422).
    """

    title = fields.Str(
        required=True,
        validate=[
            validate.Length(
                min=1,
                max=255,
                error="Title must be between 1 and 255 characters.",
            ),
            _validate_non_empty_after_trim,
        ],
    )

    amount = fields.Decimal(required=True, validate=_validate_monetary_amount)

    category = fields.Enum(
        ExpenseCategory,
        load_default=ExpenseCategory.OTHER,
        by_value=True,
        error_messages={"unknown": ErrorCode.INVALID_CATEGORY},
    )

    payer_id = _identity_field(required=True)

    # Omitted → the column default (today).
    expense_date = fields.Date(required=False)

    splits = fields.List(
        fields.Nested(SplitInputSchema),
        required=True,
        validate=validate.Length(min=1, error="An expense needs at least one split."),
    )

    @validates_schema
    def validate_splits(self, data: dict, **kwargs) -> None:
        _reject_duplicate_users(data.get("splits"))


# ── Patch expense ──────────────────────────────────────────────────────────

class PatchExpenseSchema(Schema):
    """
    PATCH /expenses/:id

    All fields optional; only provided fields are updated. Identity and audit
    columns (trip_id, created_by, updated_by, ...) are unknown fields here and
    rejected by marshmallow's default RAISE policy.
    """

    title = fields.Str(
        required=False,
        validate=[
            validate.Length(
                min=1,
                max=255,
                error="Title must be between 1 and 255 characters.",
            ),
            _validate_non_empty_after_trim,
        ],
    )

    amount = fields.Decimal(required=False, validate=_validate_monetary_amount)

    category = fields.Enum(
        ExpenseCategory,
        required=False,
        by_value=True,
        error_messages={"unknown": ErrorCode.INVALID_CATEGORY},
    )

    payer_id = _identity_field(required=False)

    expense_date = fields.Date(required=False)

    splits = fields.List(
        fields.Nested(SplitInputSchema),
        required=False,
        validate=validate.Length(min=1, error="An expense needs at least one split."),
    )

    @validates_schema
    def validate_patch_coherence(self, data: dict, **kwargs) -> None:
        """
        A changed amount needs a new split set so the ledger can re-check the
        split sum before writing anything. Splits alone are checked against
        the stored amount by the ledger.
        """
        splits = data.get("splits")
        _reject_duplicate_users(splits)

        if data.get("amount") is not None and splits is None:
            raise ValidationError(
                {"splits": ["splits must be provided when amount is being updated."]}
            )