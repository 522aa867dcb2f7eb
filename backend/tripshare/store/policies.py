"""
store/policies.py — Row-level authorization policies for SqlRowFilteredStore.

Each policy turns (tables, identity) into a SQL boolean clause. The store ANDs
that clause into every statement for the given (table, action). This mirrors
PostgreSQL row-level security:

  - select/update/delete: rows outside the clause are invisible, so a denied
    write matches zero rows and reports affected_count == 0.
  - insert: the new rows must satisfy the clause (WITH CHECK); otherwise the
    whole insert is rolled back and PERMISSION_DENIED is raised.

No identity, or no policy for a (table, action) pair, means deny.
"""

from __future__ import annotations

from typing import Callable, Mapping

from sqlalchemy import ColumnElement, Table, false, or_, select, true

Policy = Callable[[Mapping[str, Table], str], ColumnElement[bool]]


def _any_identity(tables: Mapping[str, Table], identity: str) -> ColumnElement[bool]:
    return true()


def _expense_creator(tables: Mapping[str, Table], identity: str) -> ColumnElement[bool]:
    return tables["expenses"].c.created_by == identity


def _expense_editor(tables: Mapping[str, Table], identity: str) -> ColumnElement[bool]:
    """The creator or the payer of an expense may change it."""
    expenses = tables["expenses"]
    return or_(expenses.c.created_by == identity, expenses.c.payer_id == identity)


def _parent_expense_editor(tables: Mapping[str, Table], identity: str) -> ColumnElement[bool]:
    expenses = tables["expenses"]
    splits = tables["expense_splits"]
    editable = select(expenses.c.id).where(_expense_editor(tables, identity))
    return splits.c.expense_id.in_(editable)


def _token_creator(tables: Mapping[str, Table], identity: str) -> ColumnElement[bool]:
    return tables["invite_tokens"].c.created_by == identity


ROW_POLICIES: dict[str, dict[str, Policy]] = {
    "expenses": {
        "select": _any_identity,
        "insert": _expense_creator,
        "update": _expense_editor,
        "delete": _expense_editor,
    },
    "expense_splits": {
        "select": _any_identity,
        "insert": _parent_expense_editor,
        "update": _parent_expense_editor,
        "delete": _parent_expense_editor,
    },
    "invite_tokens": {
        "select": _token_creator,
        "insert": _token_creator,
        "update": _token_creator,
        "delete": _token_creator,
    },
}


def policy_clause(
        tables: Mapping[str, Table],
        table_name: str,
        action: str,
        identity: str | None,
        policies: Mapping[str, Mapping[str, Policy]] = ROW_POLICIES,
) -> ColumnElement[bool]:
    if identity is None:
        return false()
    rule = policies.get(table_name, {}).get(action)
    if rule is None:
        return false()
    return rule(tables, identity)
