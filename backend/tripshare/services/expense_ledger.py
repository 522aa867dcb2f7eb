"""
services/expense_ledger.py — Expense + split writes over a row-filtered store.

The store executes one single-table statement at a time, so creating,
updating or deleting an expense together with its splits is several
independent writes. This module keeps the ledger invariants by hand:

  - An expense has at least one split once creation completes.
  - sum(splits.amount) == expense.amount, checked before any write.

Partial-failure states are never reported as a generic error. Each one has
its own code so the caller knows whether a retry is safe:

  SPLIT_INSERT_FAILED (create)  expense was deleted again; retry the create.
  COMPENSATION_FAILED (create)  expense could not be deleted; it is orphaned
                                with zero splits. Logged for reconciliation.
  SPLIT_DELETE_FAILED (update)  expense row restored; when retry_safe, the old
                                splits are intact and the update can be retried.
  COMPENSATION_FAILED (update)  split delete failed and the expense row could
                                not be restored. Logged for reconciliation.
  SPLIT_INSERT_FAILED (update)  old splits are gone; retry the replacement.

A zero-row update/delete is how the store reports BOTH "no such expense" and
"not allowed to touch it". Both surface as NO_ROWS_AFFECTED.

Layer rules:
  - No Flask imports. The store and acting identity are explicit arguments.
  - No module state and no caching; every call re-reads or blind-writes.
  - Rows in and out are plain dicts keyed by column name.

Known race: two concurrent update_expense calls that both replace splits on
the same expense interleave their delete/insert pairs; the last insert wins.
"""

from __future__ import annotations

import logging
from dataclasses import dataclass, field
from datetime import datetime, timezone
from decimal import Decimal, InvalidOperation
from typing import NoReturn

from backend.tripshare.errors import AppError, ErrorCode
from backend.tripshare.models.expense import ExpenseCategory
from backend.tripshare.services import store_errors
from backend.tripshare.store.base import Row, RowFilteredStore, StoreFailure

logger = logging.getLogger(__name__)

EXPENSES = "expenses"
SPLITS = "expense_splits"

_REQUIRED_EXPENSE_FIELDS = ("trip_id", "title", "payer_id", "created_by")
_PATCHABLE_FIELDS = frozenset({"title", "amount", "category", "payer_id", "expense_date"})


@dataclass(frozen=True)
class LedgerSnapshot:
    """Every expense of one trip plus every split of those expenses."""
    expenses: list[Row] = field(default_factory=list)
    splits: list[Row] = field(default_factory=list)


@dataclass(frozen=True)
class ExpenseRecord:
    expense: Row
    splits: list[Row] = field(default_factory=list)


# ── Validation helpers ─────────────────────────────────────────────────────

def _to_decimal(value: object, field_name: str) -> Decimal:
    if isinstance(value, bool) or value is None:
        raise AppError(
            ErrorCode.INVALID_FIELD,
            f"{field_name} must be a number.",
            400,
            field=field_name,
        )
    try:
        return value if isinstance(value, Decimal) else Decimal(str(value))
    except InvalidOperation:
        raise AppError(
            ErrorCode.INVALID_FIELD,
            f"{field_name} must be a number.",
            400,
            field=field_name,
        )


def _check_precision(amount: Decimal, field_name: str) -> None:
    if not amount.is_finite() or amount.as_tuple().exponent < -2:
        raise AppError(
            ErrorCode.INVALID_AMOUNT_PRECISION,
            f"{field_name} must have at most 2 decimal places.",
            400,
            field=field_name,
        )


def _validate_expense_amount(value: object) -> Decimal:
    amount = _to_decimal(value, "amount")
    _check_precision(amount, "amount")
    if amount <= 0:
        raise AppError(
            ErrorCode.INVALID_FIELD,
            "amount must be greater than zero.",
            400,
            field="amount",
        )
    return amount


def _validate_category(value: object) -> str:
    try:
        return ExpenseCategory(value).value
    except ValueError:
        raise AppError(
            ErrorCode.INVALID_CATEGORY,
            f"{value!r} is not a valid expense category.",
            400,
            field="category",
        )


def _require_text(data: Row, field_name: str) -> str:
    value = data.get(field_name)
    if not isinstance(value, str) or not value.strip():
        raise AppError(
            ErrorCode.MISSING_FIELD,
            f"{field_name} is required.",
            400,
            field=field_name,
        )
    return value


def _validate_expense_fields(data: Row) -> Row:
    """Returns a normalised copy of `data` ready to insert."""
    row = dict(data)
    for field_name in _REQUIRED_EXPENSE_FIELDS:
        _require_text(row, field_name)
    row["title"] = row["title"].strip()
    row["amount"] = _validate_expense_amount(row.get("amount"))
    row["category"] = _validate_category(row.get("category", ExpenseCategory.OTHER.value))
    return row


def _validate_patch(patch: Row) -> Row:
    unknown = sorted(set(patch) - _PATCHABLE_FIELDS)
    if unknown:
        raise AppError(
            ErrorCode.INVALID_FIELD,
            f"These fields cannot be changed: {', '.join(unknown)}.",
            400,
            field=unknown[0],
        )

    changes = dict(patch)
    if "title" in changes:
        changes["title"] = _require_text(changes, "title").strip()
    if "payer_id" in changes:
        _require_text(changes, "payer_id")
    if "amount" in changes:
        changes["amount"] = _validate_expense_amount(changes["amount"])
    if "category" in changes:
        changes["category"] = _validate_category(changes["category"])
    return changes


def _normalise_splits(splits: list[Row] | None) -> list[Row]:
    """
    Validates a split list and returns [{user_id, amount}] rows.

    Rejects: an empty list, a blank user_id, a negative amount,
    more than 2 decimal places, and the same user appearing twice.
    """
    if not splits:
        raise AppError(
            ErrorCode.MISSING_FIELD,
            "An expense needs at least one split.",
            400,
            field="splits",
        )

    rows: list[Row] = []
    seen: set[str] = set()
    for split in splits:
        user_id = _require_text(split, "user_id")
        amount = _to_decimal(split.get("amount"), "amount")
        _check_precision(amount, "amount")
        if amount < 0:
            raise AppError(
                ErrorCode.INVALID_FIELD,
                f"Split amount for {user_id} must not be negative.",
                400,
                field="splits",
            )
        if user_id in seen:
            raise AppError(
                ErrorCode.DUPLICATE_SPLIT_USER,
                f"User {user_id} appears more than once in the splits.",
                400,
                field="splits",
            )
        seen.add(user_id)
        rows.append({"user_id": user_id, "amount": amount})
    return rows


def _validate_split_sum(splits: list[Row], expected_amount: Decimal) -> None:
    """
    Raises SPLIT_SUM_MISMATCH (422) if sum(splits.amount) != expected_amount.
    Exact Decimal comparison; there is no tolerance.
    """
    total = sum((s["amount"] for s in splits), Decimal("0"))
    if total != expected_amount:
        raise AppError(
            ErrorCode.SPLIT_SUM_MISMATCH,
            f"Split amounts ({total}) do not equal expense amount ({expected_amount}).",
            422,
            field="splits",
        )


def _tag_splits(splits: list[Row], expense_id: str) -> list[Row]:
    return [{**s, "expense_id": expense_id} for s in splits]


def _no_rows_affected(expense_id: str, action: str) -> AppError:
    return AppError(
        ErrorCode.NO_ROWS_AFFECTED,
        f"No expense was {action}: {expense_id} does not exist "
        f"or you are not allowed to change it.",
        403,
        details={"expense_id": expense_id},
    )


# ── Compensation ───────────────────────────────────────────────────────────

def _undo_expense_insert(
        expense_id: str,
        cause: StoreFailure,
        store: RowFilteredStore,
) -> NoReturn:
    """
    Deletes the expense inserted by create_expense after its splits failed.

    Attempted exactly once. Whatever happens, this raises: SPLIT_INSERT_FAILED
    when the expense is gone again, COMPENSATION_FAILED when it is not.
    """
    logger.warning(
        "Split insert failed for expense %s (%s); deleting the expense",
        expense_id,
        cause.code,
    )
    compensation_problem: str
    try:
        deleted = store.delete(EXPENSES, {"id": expense_id}).affected_count
        compensation_problem = f"delete matched {deleted} rows"
    except StoreFailure as failure:
        deleted = 0
        compensation_problem = f"{failure.code}: {failure.message}"

    if deleted != 1:
        logger.error(
            "Orphaned expense %s has no splits; compensating delete failed (%s). "
            "Manual reconciliation required.",
            expense_id,
            compensation_problem,
        )
        raise AppError(
            ErrorCode.COMPENSATION_FAILED,
            f"Saving the splits failed and expense {expense_id} could not be "
            f"rolled back ({compensation_problem}).",
            500,
            details={
                "orphaned_expense_id": expense_id,
                "store_code": cause.code,
                "retry_safe": False,
            },
        ) from cause

    raise AppError(
        ErrorCode.SPLIT_INSERT_FAILED,
        f"Saving the splits failed ({cause.message}); the expense was rolled back.",
        500,
        details={"expense_id": expense_id, "store_code": cause.code, "retry_safe": True},
    ) from cause


# ── Public service functions ───────────────────────────────────────────────

def fetch_expenses(trip_id: str, store: RowFilteredStore) -> LedgerSnapshot:
    """
    Loads a trip's expenses, then the splits of exactly those expenses.

    Two reads. The second is skipped when the trip has no expenses.
    Any read failure surfaces as STORE_ERROR.
    """
    try:
        expenses = store.select(EXPENSES, {"trip_id": trip_id}, order_by="created_at").rows
    except StoreFailure as failure:
        raise store_errors.store_error(failure, "load the trip's expenses") from failure

    if not expenses:
        return LedgerSnapshot()

    expense_ids = [e["id"] for e in expenses]
    try:
        splits = store.select(SPLITS, {"expense_id": expense_ids}).rows
    except StoreFailure as failure:
        raise store_errors.store_error(failure, "load the expense splits") from failure

    return LedgerSnapshot(expenses=expenses, splits=splits)


def create_expense(
        expense_data: Row,
        splits: list[Row],
        store: RowFilteredStore,
) -> ExpenseRecord:
    """
    Records an expense and its splits.

    Steps:
      1. Validate fields and the split sum. Nothing is written if this fails.
      2. Insert the expense row.
      3. Insert all split rows tagged with the new expense id.
      4. If step 3 fails, delete the expense once (compensation) and raise
         SPLIT_INSERT_FAILED, or COMPENSATION_FAILED if the delete fails too.

    Returns:
        The stored expense and its full split set.
    """
    expense_row = _validate_expense_fields(expense_data)
    split_rows = _normalise_splits(splits)
    _validate_split_sum(split_rows, expense_row["amount"])

    try:
        inserted = store.insert(EXPENSES, [expense_row]).rows
    except StoreFailure as failure:
        raise store_errors.classify(failure, "create the expense") from failure
    if not inserted:
        raise AppError(
            ErrorCode.STORE_ERROR,
            "The store accepted the expense but returned no row.",
            502,
        )

    expense = inserted[0]
    try:
        stored_splits = store.insert(SPLITS, _tag_splits(split_rows, expense["id"])).rows
    except StoreFailure as failure:
        _undo_expense_insert(expense["id"], failure, store)

    return ExpenseRecord(expense=expense, splits=stored_splits)


def _load_expense(expense_id: str, store: RowFilteredStore) -> Row:
    try:
        rows = store.select(EXPENSES, {"id": expense_id}).rows
    except StoreFailure as failure:
        raise store_errors.store_error(failure, "load the expense") from failure
    if not rows:
        raise _no_rows_affected(expense_id, "updated")
    return rows[0]


def _restore_expense(
        previous: Row,
        columns: set[str],
        store: RowFilteredStore,
) -> str | None:
    """
    Writes the `columns` of `previous` back after a failed split delete.
    Returns None on success, or a description of why the restore failed.
    """
    try:
        restored = store.update(
            EXPENSES,
            {c: previous[c] for c in columns},
            {"id": previous["id"]},
        ).affected_count
    except StoreFailure as failure:
        return f"{failure.code}: {failure.message}"
    if restored != 1:
        return f"restore matched {restored} rows"
    return None


def _split_delete_failed(
        previous: Row,
        columns: set[str],
        store: RowFilteredStore,
        reason: str,
        details: Row,
        cause: StoreFailure | None = None,
) -> NoReturn:
    """
    Undoes the expense row update and raises SPLIT_DELETE_FAILED, or
    COMPENSATION_FAILED when the expense row cannot be put back.
    """
    expense_id = previous["id"]
    problem = _restore_expense(previous, columns, store)
    if problem is not None:
        logger.error(
            "Expense %s keeps its updated fields over the old splits; "
            "split delete failed (%s) and the restore failed (%s). "
            "Manual reconciliation required.",
            expense_id,
            reason,
            problem,
        )
        raise AppError(
            ErrorCode.COMPENSATION_FAILED,
            f"Removing the old splits failed ({reason}) and expense {expense_id} "
            f"could not be restored ({problem}).",
            500,
            details={**details, "orphaned_expense_id": expense_id, "retry_safe": False},
        ) from cause

    raise AppError(
        ErrorCode.SPLIT_DELETE_FAILED,
        f"Removing the old splits failed ({reason}); the expense fields were restored.",
        500,
        details={**details, "expense_id": expense_id},
    ) from cause


def update_expense(
        expense_id: str,
        patch: Row,
        store: RowFilteredStore,
        actor_id: str | None,
        new_splits: list[Row] | None = None,
) -> ExpenseRecord:
    """
    Applies `patch` to an expense and optionally replaces all of its splits.

    A changed `amount` needs `new_splits`. New splits without an amount are
    checked against the stored amount, and the row update only matches while
    that amount is unchanged. The row update stamps updated_by/updated_at;
    the store's row filter decides whether the actor may write it.

    Split replacement order:
      1. Read the expense and its current splits.
      2. Update the expense row, except a payer change.
      3. Delete the old splits. The deleted count must equal the count read in
         step 1; otherwise step 2 is undone and nothing is inserted.
      4. Insert the new splits.
      5. Apply the payer change, which can end the actor's edit rights.

    Raises:
        AppError(UNAUTHENTICATED, 401)       -- no acting identity.
        AppError(NO_ROWS_AFFECTED, 403)      -- not found or not allowed.
        AppError(SPLIT_DELETE_FAILED, 500)   -- old splits kept, expense restored.
        AppError(COMPENSATION_FAILED, 500)   -- the expense could not be restored.
        AppError(SPLIT_INSERT_FAILED, 500)   -- expense has no splits; retry the replacement.
    """
    if not actor_id:
        raise AppError(
            ErrorCode.UNAUTHENTICATED,
            "Sign in to edit expenses.",
            401,
        )

    changes = _validate_patch(patch)
    if new_splits is None:
        if "amount" in changes:
            raise AppError(
                ErrorCode.MISSING_FIELD,
                "splits must be provided when the amount is changed.",
                400,
                field="splits",
            )
        return _update_expense_row(expense_id, changes, store, actor_id)

    split_rows = _normalise_splits(new_splits)
    if "amount" in changes:
        _validate_split_sum(split_rows, changes["amount"])

    previous = _load_expense(expense_id, store)
    row_filters: Row = {"id": expense_id}
    if "amount" not in changes:
        _validate_split_sum(split_rows, _to_decimal(previous["amount"], "amount"))
        row_filters["amount"] = previous["amount"]

    try:
        previous_splits = store.select(SPLITS, {"expense_id": expense_id}).rows
    except StoreFailure as failure:
        raise store_errors.store_error(failure, "load the expense splits") from failure

    handoff = {"payer_id": changes.pop("payer_id")} if "payer_id" in changes else None
    changes["updated_by"] = actor_id
    changes["updated_at"] = datetime.now(timezone.utc)

    try:
        result = store.update(EXPENSES, changes, row_filters)
    except StoreFailure as failure:
        raise store_errors.classify(failure, "update the expense") from failure
    if result.affected_count == 0 or not result.rows:
        raise _no_rows_affected(expense_id, "updated")
    expense = result.rows[0]
    changed_columns = set(changes)

    # Split replacement: two statements with no isolation between them.
    expected = len(previous_splits)
    try:
        deleted = store.delete(SPLITS, {"expense_id": expense_id}).affected_count
    except StoreFailure as failure:
        _split_delete_failed(
            previous,
            changed_columns,
            store,
            f"{failure.code}: {failure.message}",
            {"store_code": failure.code, "retry_safe": True},
            failure,
        )
    if deleted != expected:
        if deleted:
            logger.error(
                "Split delete on expense %s removed %d of %d splits",
                expense_id,
                deleted,
                expected,
            )
        _split_delete_failed(
            previous,
            changed_columns,
            store,
            f"removed {deleted} of {expected} splits",
            {"deleted": deleted, "expected": expected, "retry_safe": deleted == 0},
        )

    try:
        stored_splits = store.insert(SPLITS, _tag_splits(split_rows, expense_id)).rows
    except StoreFailure as failure:
        logger.error(
            "Expense %s: removed %d old splits, inserting %d new ones failed (%s); "
            "the replacement must be retried.",
            expense_id,
            deleted,
            len(split_rows),
            failure.code,
        )
        raise AppError(
            ErrorCode.SPLIT_INSERT_FAILED,
            f"Saving the new splits failed ({failure.message}); "
            f"retry the split replacement.",
            500,
            details={
                "expense_id": expense_id,
                "store_code": failure.code,
                "removed_splits": deleted,
                "retry_safe": True,
            },
        ) from failure

    if handoff is not None:
        try:
            result = store.update(EXPENSES, handoff, {"id": expense_id})
        except StoreFailure as failure:
            raise store_errors.classify(failure, "change the payer") from failure
        if result.affected_count == 0 or not result.rows:
            raise _no_rows_affected(expense_id, "updated")
        expense = result.rows[0]

    return ExpenseRecord(expense=expense, splits=stored_splits)


def _update_expense_row(
        expense_id: str,
        changes: Row,
        store: RowFilteredStore,
        actor_id: str,
) -> ExpenseRecord:
    changes["updated_by"] = actor_id
    changes["updated_at"] = datetime.now(timezone.utc)

    try:
        result = store.update(EXPENSES, changes, {"id": expense_id})
    except StoreFailure as failure:
        raise store_errors.classify(failure, "update the expense") from failure
    if result.affected_count == 0 or not result.rows:
        raise _no_rows_affected(expense_id, "updated")

    try:
        current = store.select(SPLITS, {"expense_id": expense_id}).rows
    except StoreFailure as failure:
        raise store_errors.store_error(failure, "load the expense splits") from failure
    return ExpenseRecord(expense=result.rows[0], splits=current)


def delete_expense(expense_id: str, store: RowFilteredStore) -> None:
    """
    Deletes an expense; its splits go with it through the store's FK cascade.

    The store "succeeds" on a delete that matched nothing, so the exact
    affected count is checked. Zero rows raises NO_ROWS_AFFECTED.
    """
    try:
        result = store.delete(EXPENSES, {"id": expense_id})
    except StoreFailure as failure:
        raise store_errors.classify(failure, "delete the expense") from failure

    if result.affected_count == 0:
        raise _no_rows_affected(expense_id, "deleted")
