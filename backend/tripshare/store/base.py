"""
store/base.py — Row-filtered store client contract.

The ledger and invite managers talk to persistence only through this
interface. It models a hosted backend with two properties that shape all of
the service code:

  1. Atomicity is guaranteed only within ONE single-table statement. There
     are no client-visible multi-statement transactions.
  2. Authorization is a row filter. An update or delete the caller may not
     perform simply matches zero rows and "succeeds"; only inserts that fail
     their policy raise (PERMISSION_DENIED).

Every operation returns an explicit result type. `affected_count` is a
first-class field so services can detect a silently filtered write.

A store instance is bound to one acting identity (`identity`, None when the
caller is unauthenticated). Row policies are evaluated against it.
"""

from __future__ import annotations

import abc
from dataclasses import dataclass, field
from typing import Any, Mapping, Sequence

Row = dict[str, Any]
Filters = Mapping[str, Any]


class StoreFailure(Exception):
    """A store call failed outright (as opposed to matching zero rows)."""

    TABLE_NOT_FOUND     = "TABLE_NOT_FOUND"
    COLUMN_NOT_FOUND    = "COLUMN_NOT_FOUND"
    PERMISSION_DENIED   = "PERMISSION_DENIED"
    CONSTRAINT_VIOLATION = "CONSTRAINT_VIOLATION"
    PROCEDURE_NOT_FOUND = "PROCEDURE_NOT_FOUND"
    UNAVAILABLE         = "UNAVAILABLE"

    def __init__(self, code: str, message: str, table: str | None = None) -> None:
        super().__init__(message)
        self.code = code
        self.message = message
        self.table = table

    def __repr__(self) -> str:
        return f"StoreFailure(code={self.code!r}, table={self.table!r}, message={self.message!r})"


@dataclass(frozen=True)
class SelectResult:
    rows: list[Row] = field(default_factory=list)


@dataclass(frozen=True)
class InsertResult:
    rows: list[Row] = field(default_factory=list)


@dataclass(frozen=True)
class UpdateResult:
    rows: list[Row] = field(default_factory=list)
    affected_count: int = 0


@dataclass(frozen=True)
class DeleteResult:
    affected_count: int = 0


@dataclass(frozen=True)
class ProcedureResult:
    data: Any = None


class RowFilteredStore(abc.ABC):
    """
    Single-table operations filtered by the bound identity's row policies.

    Filters map column name → value:
        {"id": "abc"}               → id = 'abc'
        {"expense_id": ["a", "b"]}  → expense_id IN ('a', 'b')
        {"updated_by": None}        → updated_by IS NULL
    """

    identity: str | None

    @abc.abstractmethod
    def select(
            self,
            table: str,
            filters: Filters | None = None,
            *,
            order_by: str | None = None,
            descending: bool = False,
    ) -> SelectResult:
        ...

    @abc.abstractmethod
    def insert(self, table: str, rows: Sequence[Row]) -> InsertResult:
        """Inserts all rows in one statement; either all land or none do."""

    @abc.abstractmethod
    def update(self, table: str, patch: Row, filters: Filters) -> UpdateResult:
        ...

    @abc.abstractmethod
    def delete(self, table: str, filters: Filters) -> DeleteResult:
        """Deletes matching rows and reports the exact affected count."""

    @abc.abstractmethod
    def call_procedure(self, name: str, args: Row) -> ProcedureResult:
        """Runs a server-side procedure atomically."""
