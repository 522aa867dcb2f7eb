"""
store/sql_store.py — RowFilteredStore backed by SQLAlchemy Core.

This is the reference implementation of the hosted backend the services are
written against. It deliberately reproduces that backend's behaviour rather
than offering anything richer:

  - Every call runs in its own short transaction and touches one table
    (plus FK cascades on delete). Callers cannot group calls together.
  - Row policies from store/policies.py filter every statement by the bound
    identity. Denied updates/deletes match zero rows; denied inserts raise.
  - Deletes cascade to child tables whose FK declares ondelete="CASCADE".
  - Two procedures run with definer rights (no row policy):
        verify_invite_token(p_token) -> [] | [{trip_id, invite_type, is_valid, error_message}]
        use_invite_token(p_token)    -> bool
    use_invite_token is ONE conditional UPDATE, so the validity check and the
    use_count increment cannot interleave with a concurrent redemption.

Database errors are translated into StoreFailure codes; nothing SQLAlchemy
specific leaks out of this module.
"""

from __future__ import annotations

import enum
import logging
import uuid
from contextlib import contextmanager
from datetime import datetime, timezone
from typing import Any, Callable, Iterator, Mapping, Sequence

import sqlalchemy as sa
from sqlalchemy.engine import Connection, Engine
from sqlalchemy.exc import (
    DBAPIError,
    IntegrityError,
    OperationalError,
    ProgrammingError,
    SQLAlchemyError,
    StatementError,
)

from backend.tripshare.extensions import db
from backend.tripshare.models import expense, expense_split, invite_token  # noqa: F401
from backend.tripshare.store.base import (
    DeleteResult,
    Filters,
    InsertResult,
    ProcedureResult,
    Row,
    RowFilteredStore,
    SelectResult,
    StoreFailure,
    UpdateResult,
)
from backend.tripshare.store.policies import ROW_POLICIES, Policy, policy_clause

logger = logging.getLogger(__name__)

_INVITE_TABLE = "invite_tokens"


def _utcnow() -> datetime:
    return datetime.now(timezone.utc)


def _is_missing_relation(exc: DBAPIError) -> bool:
    if getattr(exc.orig, "pgcode", None) == "42P01":
        return True
    message = str(exc.orig).lower()
    return "no such table" in message or ("relation" in message and "does not exist" in message)


def _usable_clause(tokens: sa.Table, now: datetime) -> sa.ColumnElement[bool]:
    """The single definition of "this invite token may still be redeemed"."""
    return sa.and_(
        tokens.c.is_active.is_(True),
        _not_expired(tokens, now),
        _has_uses_left(tokens),
    )


def _not_expired(tokens: sa.Table, now: datetime) -> sa.ColumnElement[bool]:
    return sa.or_(tokens.c.expires_at.is_(None), tokens.c.expires_at > now)


def _has_uses_left(tokens: sa.Table) -> sa.ColumnElement[bool]:
    return sa.or_(tokens.c.max_uses.is_(None), tokens.c.use_count < tokens.c.max_uses)


class SqlRowFilteredStore(RowFilteredStore):

    def __init__(
            self,
            engine: Engine,
            identity: str | None = None,
            *,
            metadata: sa.MetaData | None = None,
            policies: Mapping[str, Mapping[str, Policy]] | None = None,
            clock: Callable[[], datetime] = _utcnow,
    ) -> None:
        self.engine = engine
        self.identity = identity
        self.metadata = metadata if metadata is not None else db.metadata
        self.policies = policies if policies is not None else ROW_POLICIES
        self.clock = clock
        self._procedures: dict[str, Callable[[Connection, Row], Any]] = {
            "verify_invite_token": self._verify_invite_token,
            "use_invite_token": self._use_invite_token,
        }

    def for_identity(self, identity: str | None) -> SqlRowFilteredStore:
        """Same backend, different acting identity."""
        return SqlRowFilteredStore(
            self.engine,
            identity,
            metadata=self.metadata,
            policies=self.policies,
            clock=self.clock,
        )

    # ── RowFilteredStore ───────────────────────────────────────────────────

    def select(
            self,
            table: str,
            filters: Filters | None = None,
            *,
            order_by: str | None = None,
            descending: bool = False,
    ) -> SelectResult:
        t = self._table(table)
        stmt = sa.select(t).where(*self._where(t, filters or {}), self._policy(table, "select"))
        if order_by is not None:
            column = self._column(t, order_by)
            stmt = stmt.order_by(column.desc() if descending else column.asc())

        with self._translate_errors(table), self.engine.connect() as conn:
            rows = [self._to_row(r) for r in conn.execute(stmt)]
        return SelectResult(rows=rows)

    def insert(self, table: str, rows: Sequence[Row]) -> InsertResult:
        t = self._table(table)
        prepared = [self._prepare_insert(t, row) for row in rows]
        if not prepared:
            return InsertResult(rows=[])
        ids = [row["id"] for row in prepared]

        with self._translate_errors(table), self.engine.begin() as conn:
            for row in prepared:
                conn.execute(t.insert().values(**row))
            # WITH CHECK: every new row must be visible under the insert policy,
            # otherwise the transaction rolls back and nothing is stored.
            stored = conn.execute(
                sa.select(t).where(t.c.id.in_(ids), self._policy(table, "insert"))
            ).all()
            if len(stored) != len(ids):
                raise StoreFailure(
                    StoreFailure.PERMISSION_DENIED,
                    f"new row violates row-level security policy for table {table!r}",
                    table,
                )

        by_id = {row.id: self._to_row(row) for row in stored}
        return InsertResult(rows=[by_id[i] for i in ids])

    def update(self, table: str, patch: Row, filters: Filters) -> UpdateResult:
        t = self._table(table)
        self._check_columns(t, patch)
        criteria = [*self._where(t, filters), self._policy(table, "update")]

        with self._translate_errors(table), self.engine.begin() as conn:
            ids = list(conn.execute(sa.select(t.c.id).where(*criteria)).scalars())
            if not ids:
                return UpdateResult(rows=[], affected_count=0)
            affected = len(ids)
            if patch:
                affected = conn.execute(
                    t.update().where(t.c.id.in_(ids)).values(**patch)
                ).rowcount
            rows = [self._to_row(r) for r in conn.execute(sa.select(t).where(t.c.id.in_(ids)))]

        return UpdateResult(rows=rows, affected_count=affected)

    def delete(self, table: str, filters: Filters) -> DeleteResult:
        t = self._table(table)
        criteria = [*self._where(t, filters), self._policy(table, "delete")]

        with self._translate_errors(table), self.engine.begin() as conn:
            ids = list(conn.execute(sa.select(t.c.id).where(*criteria)).scalars())
            if not ids:
                return DeleteResult(affected_count=0)
            self._cascade(conn, t, ids)
            affected = conn.execute(t.delete().where(t.c.id.in_(ids))).rowcount

        return DeleteResult(affected_count=affected)

    def call_procedure(self, name: str, args: Row) -> ProcedureResult:
        procedure = self._procedures.get(name)
        if procedure is None:
            raise StoreFailure(
                StoreFailure.PROCEDURE_NOT_FOUND,
                f"function {name}() does not exist",
            )
        with self._translate_errors(_INVITE_TABLE), self.engine.begin() as conn:
            data = procedure(conn, args)
        return ProcedureResult(data=data)

    # ── Procedures ─────────────────────────────────────────────────────────

    def _verify_invite_token(self, conn: Connection, args: Row) -> list[Row]:
        tokens = self._table(_INVITE_TABLE)
        now = self.clock()
        row = conn.execute(
            sa.select(
                tokens.c.trip_id,
                tokens.c.invite_type,
                tokens.c.is_active,
                _not_expired(tokens, now).label("not_expired"),
                _has_uses_left(tokens).label("has_uses_left"),
            ).where(tokens.c.token == args.get("p_token"))
        ).first()
        if row is None:
            return []

        error_message = None
        if not row.is_active:
            error_message = "This invite link has been deactivated."
        elif not row.not_expired:
            error_message = "This invite link has expired."
        elif not row.has_uses_left:
            error_message = "This invite link has reached its maximum number of uses."

        return [{
            "trip_id": row.trip_id,
            "invite_type": self._plain(row.invite_type),
            "is_valid": error_message is None,
            "error_message": error_message,
        }]

    def _use_invite_token(self, conn: Connection, args: Row) -> bool:
        tokens = self._table(_INVITE_TABLE)
        result = conn.execute(
            tokens.update()
            .where(tokens.c.token == args.get("p_token"), _usable_clause(tokens, self.clock()))
            .values(use_count=tokens.c.use_count + 1)
        )
        return result.rowcount == 1

    # ── Helpers ────────────────────────────────────────────────────────────

    def _table(self, name: str) -> sa.Table:
        table = self.metadata.tables.get(name)
        if table is None:
            raise StoreFailure(
                StoreFailure.TABLE_NOT_FOUND,
                f"relation {name!r} does not exist",
                name,
            )
        return table

    def _column(self, table: sa.Table, name: str) -> sa.Column:
        if name not in table.c:
            raise StoreFailure(
                StoreFailure.COLUMN_NOT_FOUND,
                f"column {name!r} of relation {table.name!r} does not exist",
                table.name,
            )
        return table.c[name]

    def _check_columns(self, table: sa.Table, row: Mapping[str, Any]) -> None:
        for name in row:
            self._column(table, name)

    def _where(self, table: sa.Table, filters: Filters) -> list[sa.ColumnElement[bool]]:
        clauses = []
        for name, value in filters.items():
            column = self._column(table, name)
            if value is None:
                clauses.append(column.is_(None))
            elif isinstance(value, (list, tuple, set, frozenset)):
                clauses.append(column.in_(list(value)))
            else:
                clauses.append(column == value)
        return clauses

    def _policy(self, table: str, action: str) -> sa.ColumnElement[bool]:
        return policy_clause(self.metadata.tables, table, action, self.identity, self.policies)

    def _prepare_insert(self, table: sa.Table, row: Row) -> Row:
        self._check_columns(table, row)
        prepared = {key: self._plain(value) for key, value in row.items()}
        if prepared.get("id") is None:
            prepared["id"] = str(uuid.uuid4())
        return prepared

    def _cascade(self, conn: Connection, parent: sa.Table, ids: list[Any]) -> None:
        for child in self.metadata.sorted_tables:
            for fk in child.foreign_keys:
                if fk.column.table is not parent or (fk.ondelete or "").upper() != "CASCADE":
                    continue
                child_ids = list(
                    conn.execute(sa.select(child.c.id).where(fk.parent.in_(ids))).scalars()
                )
                if child_ids:
                    self._cascade(conn, child, child_ids)
                    conn.execute(child.delete().where(child.c.id.in_(child_ids)))

    @staticmethod
    def _plain(value: Any) -> Any:
        return value.value if isinstance(value, enum.Enum) else value

    def _to_row(self, row: sa.Row) -> Row:
        return {key: self._plain(value) for key, value in row._mapping.items()}

    @contextmanager
    def _translate_errors(self, table: str | None) -> Iterator[None]:
        try:
            yield
        except StoreFailure:
            raise
        except IntegrityError as exc:
            raise StoreFailure(StoreFailure.CONSTRAINT_VIOLATION, str(exc.orig), table) from exc
        except (OperationalError, ProgrammingError) as exc:
            if _is_missing_relation(exc):
                raise StoreFailure(StoreFailure.TABLE_NOT_FOUND, str(exc.orig), table) from exc
            logger.warning("Store call on %s failed: %s", table, exc.orig)
            raise StoreFailure(StoreFailure.UNAVAILABLE, str(exc.orig), table) from exc
        except DBAPIError as exc:
            logger.warning("Store call on %s failed: %s", table, exc.orig)
            raise StoreFailure(StoreFailure.UNAVAILABLE, str(exc.orig), table) from exc
        except StatementError as exc:
            # Raised while binding parameters, e.g. a value outside an enum column.
            raise StoreFailure(StoreFailure.CONSTRAINT_VIOLATION, str(exc.orig), table) from exc
        except SQLAlchemyError as exc:
            logger.warning("Store call on %s failed: %s", table, exc)
            raise StoreFailure(StoreFailure.UNAVAILABLE, str(exc), table) from exc
