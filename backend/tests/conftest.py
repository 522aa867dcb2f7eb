"""
tests/conftest.py — Fixtures shared by the unit and integration suites.

Unit level (no Flask app):
  - engine            in-memory SQLite with every table from db.metadata
  - store_for         identity → SqlRowFilteredStore on that engine
  - alice / bob       stores bound to two different users
  - file_engine       file-backed SQLite, for tests that need real threads
  - add_expense       records an expense through the ledger, returns the record
  - flaky_store       identity, {(action, table)} → store that fails those calls

Integration level:
  - app / client      create_app("testing") with tables created per test
  - auth_headers      user_id → {"Authorization": "Bearer <jwt>"}

Identities are plain strings, as issued by the auth provider.
"""

from __future__ import annotations

from datetime import datetime, timedelta, timezone
from decimal import Decimal

import jwt
import pytest
import sqlalchemy as sa
from sqlalchemy.pool import StaticPool

from backend.tripshare import create_app
from backend.tripshare.extensions import db as _db
from backend.tripshare.services import expense_ledger
from backend.tripshare.store.base import StoreFailure
from backend.tripshare.store.sql_store import SqlRowFilteredStore

ALICE = "user-alice"
BOB = "user-bob"
TRIP = "trip-1"


# ═══════════════════════════════════════════════════════════════════════════
# Store fixtures (unit)
# ═══════════════════════════════════════════════════════════════════════════

@pytest.fixture
def engine():
    eng = sa.create_engine(
        "sqlite://",
        connect_args={"check_same_thread": False},
        poolclass=StaticPool,
    )
    _db.metadata.create_all(eng)
    yield eng
    eng.dispose()


@pytest.fixture
def store_for(engine):
    def _store(identity: str | None) -> SqlRowFilteredStore:
        return SqlRowFilteredStore(engine, identity)
    return _store


@pytest.fixture
def alice(store_for):
    return store_for(ALICE)


@pytest.fixture
def bob(store_for):
    return store_for(BOB)


class FlakyStore(SqlRowFilteredStore):
    """Real store that raises UNAVAILABLE for chosen (action, table) pairs."""

    def __init__(self, engine, identity, fail=()):
        super().__init__(engine, identity)
        self.fail = set(fail)

    def _maybe_fail(self, action: str, table: str) -> None:
        if (action, table) in self.fail:
            raise StoreFailure(StoreFailure.UNAVAILABLE, f"injected {action} failure", table)

    def select(self, table, filters=None, **kwargs):
        self._maybe_fail("select", table)
        return super().select(table, filters, **kwargs)

    def insert(self, table, rows):
        self._maybe_fail("insert", table)
        return super().insert(table, rows)

    def update(self, table, patch, filters):
        self._maybe_fail("update", table)
        return super().update(table, patch, filters)

    def delete(self, table, filters):
        self._maybe_fail("delete", table)
        return super().delete(table, filters)


@pytest.fixture
def flaky_store(engine):
    """flaky_store(identity, fail={("insert", "expense_splits")})"""
    def _store(identity: str, fail=()) -> FlakyStore:
        return FlakyStore(engine, identity, fail)
    return _store


@pytest.fixture
def file_engine(tmp_path):
    eng = sa.create_engine(
        f"sqlite:///{tmp_path / 'tripshare.db'}",
        connect_args={"timeout": 30, "check_same_thread": False},
    )
    _db.metadata.create_all(eng)
    yield eng
    eng.dispose()


@pytest.fixture
def add_expense(alice):
    """
    Records an expense paid by alice and split between alice and bob.

    add_expense(amount="30.00", splits={"user-alice": "15.00", ...}, **fields)
    """
    def _add(amount="30.00", splits=None, store=None, **fields):
        store = store or alice
        splits = splits or {ALICE: "15.00", BOB: "15.00"}
        data = {
            "trip_id": TRIP,
            "title": "Dinner",
            "amount": Decimal(amount),
            "category": "food",
            "payer_id": store.identity,
            "created_by": store.identity,
            **fields,
        }
        return expense_ledger.create_expense(
            data,
            [{"user_id": uid, "amount": Decimal(amt)} for uid, amt in splits.items()],
            store,
        )
    return _add


# ═══════════════════════════════════════════════════════════════════════════
# Flask fixtures (integration)
# ═══════════════════════════════════════════════════════════════════════════

@pytest.fixture
def app():
    flask_app = create_app("testing")
    with flask_app.app_context():
        _db.create_all()
    yield flask_app
    with flask_app.app_context():
        _db.drop_all()


@pytest.fixture
def client(app):
    return app.test_client()


@pytest.fixture
def auth_headers(app):
    def _headers(user_id: str, expires_in: timedelta = timedelta(hours=1)) -> dict:
        token = jwt.encode(
            {"sub": user_id, "exp": datetime.now(timezone.utc) + expires_in},
            app.config["JWT_SECRET_KEY"],
            algorithm=app.config["JWT_ALGORITHM"],
        )
        return {"Authorization": f"Bearer {token}"}
    return _headers
