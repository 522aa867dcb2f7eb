"""
tests/unit/test_settlement_calculation.py — settlement_service on plain rows.

What this file proves:
  - Payers are credited, split participants debited; balances sum to zero
  - Duplicate (expense_id, user_id) splits are merged, not double-counted
  - Expenses whose splits do not add up are re-divided equally, remainder
    to the first participant, with a warning logged
  - Expenses without any splits are left out
  - simplify_debts yields at most N-1 correctly-directed Decimal transfers

No database, no Flask. Rows are the dicts fetch_expenses() returns.
"""

from __future__ import annotations

import logging
from collections import defaultdict
from decimal import Decimal

from backend.tripshare.services.settlement_service import (
    calculate_settlements,
    compute_balances,
    effective_splits,
    simplify_debts,
)

A, B, C, D = "alice", "bob", "carol", "dave"


# ── Row factories ──────────────────────────────────────────────────────────

def _expense(expense_id: str, payer: str, amount: str) -> dict:
    return {"id": expense_id, "payer_id": payer, "amount": Decimal(amount)}


def _split(expense_id: str, user_id: str, amount: str) -> dict:
    return {"expense_id": expense_id, "user_id": user_id, "amount": Decimal(amount)}


def _verify_correctness(balances: dict[str, Decimal], transactions: list[dict]) -> None:
    """Applying the transfers must reproduce the original net positions."""
    net = defaultdict(lambda: Decimal("0.00"))
    for txn in transactions:
        net[txn["from_user_id"]] -= txn["amount"]
        net[txn["to_user_id"]] += txn["amount"]

    for uid, expected in balances.items():
        assert net[uid] == expected, f"user {uid}: expected {expected}, got {net[uid]}"


# ═══════════════════════════════════════════════════════════════════════════
# compute_balances
# ═══════════════════════════════════════════════════════════════════════════

class TestComputeBalances:

    def test_payer_credited_participants_debited(self):
        expenses = [_expense("e1", A, "90.00")]
        splits = [_split("e1", A, "30.00"), _split("e1", B, "30.00"), _split("e1", C, "30.00")]

        balances = compute_balances(expenses, splits)

        assert balances == {A: Decimal("60.00"), B: Decimal("-30.00"), C: Decimal("-30.00")}

    def test_balances_sum_to_zero_across_expenses(self):
        expenses = [_expense("e1", A, "100.00"), _expense("e2", B, "45.50")]
        splits = [
            _split("e1", A, "50.00"), _split("e1", B, "50.00"),
            _split("e2", A, "15.50"), _split("e2", B, "15.00"), _split("e2", C, "15.00"),
        ]

        balances = compute_balances(expenses, splits)

        assert sum(balances.values(), Decimal("0.00")) == Decimal("0.00")

    def test_duplicate_splits_are_merged(self):
        expenses = [_expense("e1", A, "40.00")]
        splits = [_split("e1", B, "20.00"), _split("e1", B, "20.00")]

        assert effective_splits(expenses, splits) == {"e1": {B: Decimal("40.00")}}
        assert compute_balances(expenses, splits) == {A: Decimal("40.00"), B: Decimal("-40.00")}

    def test_mismatched_splits_are_redivided(self, caplog):
        expenses = [_expense("e1", A, "100.00")]
        splits = [_split("e1", A, "10.00"), _split("e1", B, "10.00"), _split("e1", C, "10.00")]

        with caplog.at_level(logging.WARNING):
            shares = effective_splits(expenses, splits)["e1"]

        assert shares == {A: Decimal("33.34"), B: Decimal("33.33"), C: Decimal("33.33")}
        assert sum(shares.values()) == Decimal("100.00")
        assert "e1" in caplog.text

    def test_expense_without_splits_is_left_out(self):
        expenses = [_expense("e1", A, "25.00"), _expense("e2", B, "10.00")]
        splits = [_split("e2", A, "10.00")]

        balances = compute_balances(expenses, splits)

        assert balances == {B: Decimal("10.00"), A: Decimal("-10.00")}

    def test_splits_of_unknown_expenses_are_ignored(self):
        expenses = [_expense("e1", A, "10.00")]
        splits = [_split("e1", B, "10.00"), _split("gone", C, "99.00")]

        assert C not in compute_balances(expenses, splits)


# ═══════════════════════════════════════════════════════════════════════════
# simplify_debts
# ═══════════════════════════════════════════════════════════════════════════

class TestSimplifyDebts:

    def test_all_zero_returns_empty_list(self):
        assert simplify_debts({A: Decimal("0.00"), B: Decimal("0.00")}) == []

    def test_empty_dict_returns_empty_list(self):
        assert simplify_debts({}) == []

    def test_two_person_debt_one_transaction(self):
        result = simplify_debts({A: Decimal("50.00"), B: Decimal("-50.00")})

        assert result == [{"from_user_id": B, "to_user_id": A, "amount": Decimal("50.00")}]

    def test_five_members_at_most_four_transactions(self):
        balances = {
            A: Decimal("100.00"),
            B: Decimal("50.00"),
            C: Decimal("-40.00"),
            D: Decimal("-60.00"),
            "erin": Decimal("-50.00"),
        }

        result = simplify_debts(balances)

        assert len(result) <= 4
        _verify_correctness(balances, result)

    def test_amounts_are_positive_decimals(self):
        result = simplify_debts({A: Decimal("33.33"), B: Decimal("-13.33"), C: Decimal("-20.00")})

        for txn in result:
            assert isinstance(txn["amount"], Decimal)
            assert txn["amount"] > Decimal("0.00")
            assert txn["from_user_id"] != txn["to_user_id"]


# ═══════════════════════════════════════════════════════════════════════════
# calculate_settlements
# ═══════════════════════════════════════════════════════════════════════════

def test_calculate_settlements_for_a_weekend_trip():
    expenses = [
        _expense("hotel", A, "300.00"),
        _expense("fuel", B, "60.00"),
        _expense("dinner", C, "90.00"),
    ]
    splits = [
        _split("hotel", A, "100.00"), _split("hotel", B, "100.00"), _split("hotel", C, "100.00"),
        _split("fuel", A, "20.00"), _split("fuel", B, "20.00"), _split("fuel", C, "20.00"),
        _split("dinner", A, "30.00"), _split("dinner", B, "30.00"), _split("dinner", C, "30.00"),
    ]

    transfers = calculate_settlements(expenses, splits)

    # alice +150, bob -90, carol -60
    assert len(transfers) == 2
    _verify_correctness(compute_balances(expenses, splits), transfers)
    assert {t["to_user_id"] for t in transfers} == {A}


def test_calculate_settlements_when_square():
    expenses = [_expense("e1", A, "10.00")]
    splits = [_split("e1", A, "10.00")]

    assert calculate_settlements(expenses, splits) == []
