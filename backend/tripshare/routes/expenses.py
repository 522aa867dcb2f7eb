"""
routes/expenses.py — Expense route handlers.

Registered at url_prefix=/api/v1 (not /api/v1/expenses) because this blueprint
owns BOTH the trip-scoped paths (/trips/:id/expenses) and the expense-ID
paths (/expenses/:id).

Layer rules:
  - Parse, validate, call ONE facade method, return envelope.
  - No business logic. No DB queries. No commits: every store call commits
    on its own.

Endpoints:
  POST   /trips/:id/expenses   → 201  create expense + splits
  GET    /trips/:id/expenses   → 200  list expenses, each with its splits
  PATCH  /expenses/:id         → 200  partial update (optionally new splits)
  DELETE /expenses/:id         → 200  hard delete; splits cascade
"""

from __future__ import annotations

from collections import defaultdict

from flask import Blueprint, jsonify, request

from backend.tripshare.middleware.auth_middleware import require_auth
from backend.tripshare.routes.collaboration import current_collaboration, serialize_row
from backend.tripshare.schemas.expense_schema import CreateExpenseSchema, PatchExpenseSchema
from backend.tripshare.services.expense_ledger import ExpenseRecord
from backend.tripshare.store.base import Row

expenses_bp = Blueprint("expenses", __name__)


# ── Serialization helper ───────────────────────────────────────────────────

def _serialize_expense(expense: Row, splits: list[Row]) -> dict:
    data = serialize_row(expense)
    data["splits"] = [serialize_row(s) for s in splits]
    return data


def _serialize_record(record: ExpenseRecord) -> dict:
    return _serialize_expense(record.expense, record.splits)


# ── Trip-scoped expense routes ─────────────────────────────────────────────

@expenses_bp.route("/trips/<trip_id>/expenses", methods=["POST"])
@require_auth
def create_expense(trip_id: str):
    """POST /trips/:id/expenses — Record a new expense with explicit splits."""
    data = CreateExpenseSchema().load(request.get_json(force=True) or {})
    splits = data.pop("splits")
    record = current_collaboration().create_expense({**data, "trip_id": trip_id}, splits)
    return jsonify({"data": _serialize_record(record), "warnings": []}), 201


@expenses_bp.route("/trips/<trip_id>/expenses", methods=["GET"])
@require_auth
def list_expenses(trip_id: str):
    """GET /trips/:id/expenses — All expenses of a trip with their splits."""
    snapshot = current_collaboration().fetch_expenses(trip_id)

    splits_by_expense: dict[str, list[Row]] = defaultdict(list)
    for split in snapshot.splits:
        splits_by_expense[split["expense_id"]].append(split)

    return jsonify({
        "data": [
            _serialize_expense(e, splits_by_expense.get(e["id"], []))
            for e in snapshot.expenses
        ],
        "warnings": [],
    }), 200


# ── Expense-ID routes ──────────────────────────────────────────────────────

@expenses_bp.route("/expenses/<expense_id>", methods=["PATCH"])
@require_auth
def edit_expense(expense_id: str):
    """
    PATCH /expenses/:id — Partial update.
    A changed amount needs splits; splits alone must sum to the stored amount.
    Only the creator or the payer may edit (store row policy).
    """
    data = PatchExpenseSchema().load(request.get_json(force=True) or {})
    new_splits = data.pop("splits", None)
    record = current_collaboration().update_expense(expense_id, data, new_splits)
    return jsonify({"data": _serialize_record(record), "warnings": []}), 200


@expenses_bp.route("/expenses/<expense_id>", methods=["DELETE"])
@require_auth
def delete_expense(expense_id: str):
    """DELETE /expenses/:id — Removes the expense; its splits go with it."""
    current_collaboration().delete_expense(expense_id)
    return jsonify({
        "data": {
            "deleted": True,
            "expense_id": expense_id,
        },
        "warnings": [],
    }), 200
