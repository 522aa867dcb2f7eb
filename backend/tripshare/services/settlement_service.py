"""
services/settlement_service.py — Balance computation and debt simplification.

Works on plain rows as returned by expense_ledger.fetch_expenses(), so it is
pure Python: no store, no Flask, no I/O. The facade loads the snapshot and
passes it in.

Balance formula:
  balance[user] = sum(amount of expenses the user paid)
                - sum(split amounts the user owes)

sum(balances) == 0 whenever every expense's splits add up to its amount.
Rows that break that rule (legacy data written before split-sum validation)
are corrected here rather than trusted:

  - Duplicate (expense_id, user_id) splits are merged into one.
  - An expense whose splits do not sum to its amount is re-divided equally
    among its participants. Shares are rounded down to the cent and the
    remainder goes to the first participant.
  - An expense with no splits at all is orphaned; it is left out entirely.
"""

from __future__ import annotations

import logging
from collections import defaultdict
from decimal import ROUND_DOWN, Decimal

from backend.tripshare.store.base import Row

logger = logging.getLogger(__name__)

_CENT = Decimal("0.01")


def _as_decimal(value: object) -> Decimal:
    return value if isinstance(value, Decimal) else Decimal(str(value))


def _split_equally(amount: Decimal, participants: list[str]) -> dict[str, Decimal]:
    share = (amount / len(participants)).quantize(_CENT, rounding=ROUND_DOWN)
    shares = {user_id: share for user_id in participants}
    shares[participants[0]] += amount - share * len(participants)
    return shares


def effective_splits(expenses: list[Row], splits: list[Row]) -> dict[str, dict[str, Decimal]]:
    """
    Returns {expense_id: {user_id: amount}} with duplicates merged and
    mismatched expenses re-divided. Orphaned expenses are absent.
    """
    by_expense: dict[str, dict[str, Decimal]] = defaultdict(dict)
    for split in splits:
        shares = by_expense[split["expense_id"]]
        user_id = split["user_id"]
        shares[user_id] = shares.get(user_id, Decimal("0")) + _as_decimal(split["amount"])

    corrected: dict[str, dict[str, Decimal]] = {}
    for expense in expenses:
        expense_id = expense["id"]
        shares = by_expense.get(expense_id)
        if not shares:
            logger.warning("Expense %s has no splits; left out of settlements", expense_id)
            continue

        amount = _as_decimal(expense["amount"])
        total = sum(shares.values(), Decimal("0"))
        if total != amount:
            logger.warning(
                "Splits of expense %s sum to %s, not %s; dividing equally instead",
                expense_id,
                total,
                amount,
            )
            shares = _split_equally(amount, list(shares))
        corrected[expense_id] = shares

    return corrected


def compute_balances(expenses: list[Row], splits: list[Row]) -> dict[str, Decimal]:
    """
    Returns {user_id: net_balance}. Positive means the user is owed money.

    Steps:
      1. Credit each payer for the full amount they fronted.
      2. Debit each participant for their (corrected) split.
    """
    shares_by_expense = effective_splits(expenses, splits)
    balances: dict[str, Decimal] = defaultdict(Decimal)

    for expense in expenses:
        shares = shares_by_expense.get(expense["id"])
        if shares is None:
            continue
        balances[expense["payer_id"]] += _as_decimal(expense["amount"])
        for user_id, amount in shares.items():
            balances[user_id] -= amount

    return dict(balances)


def simplify_debts(balances: dict[str, Decimal]) -> list[dict]:
    """
    Greedy minimum cash flow debt simplification.

    Repeatedly matches the largest debtor with the largest creditor until
    all balances reach zero. For N users, produces at most N-1 transfers.

    Args:
        balances: {user_id: net_balance}; must sum to zero.

    Returns:
        List of {"from_user_id": str, "to_user_id": str, "amount": Decimal}.
        An empty list means everyone is already square.
    """
    creditors = sorted(
        [(uid, amt) for uid, amt in balances.items() if amt > 0],
        key=lambda x: x[1],
        reverse=True,
    )
    debtors = sorted(
        [(uid, -amt) for uid, amt in balances.items() if amt < 0],
        key=lambda x: x[1],
        reverse=True,
    )

    transactions: list[dict] = []
    i = j = 0

    while i < len(creditors) and j < len(debtors):
        cid, credit = creditors[i]
        did, debt = debtors[j]

        transfer = min(credit, debt)
        transactions.append({
            "from_user_id": did,
            "to_user_id": cid,
            "amount": transfer,
        })

        creditors[i] = (cid, credit - transfer)
        debtors[j] = (did, debt - transfer)

        if creditors[i][1] == Decimal("0"):
            i += 1
        if debtors[j][1] == Decimal("0"):
            j += 1

    return transactions


def calculate_settlements(expenses: list[Row], splits: list[Row]) -> list[dict]:
    """Who pays whom, and how much, to settle a trip."""
    return simplify_debts(compute_balances(expenses, splits))
