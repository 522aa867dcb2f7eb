"""
routes/collaboration.py — Per-request wiring shared by the route modules.

Builds the TripCollaboration facade for the current request: a
SqlRowFilteredStore on db.engine bound to g.user_id (None when the route is
unauthenticated), and resolve_identity from the auth middleware.

serialize_row() is a pure data-shape helper: store rows are plain dicts,
dates go out as ISO-8601 strings and Decimals are left to the app's JSON
provider (emitted as strings).
"""

from __future__ import annotations

from datetime import date, datetime

from flask import current_app

from backend.tripshare.extensions import db
from backend.tripshare.middleware.auth_middleware import resolve_identity
from backend.tripshare.services.trip_collaboration import TripCollaboration
from backend.tripshare.store.base import Row
from backend.tripshare.store.sql_store import SqlRowFilteredStore


def current_collaboration() -> TripCollaboration:
    store = SqlRowFilteredStore(db.engine, resolve_identity())
    return TripCollaboration(
        store,
        resolve_identity,
        token_length=current_app.config.get("INVITE_TOKEN_LENGTH", 32),
    )


def serialize_row(row: Row) -> dict:
    return {
        key: value.isoformat() if isinstance(value, (date, datetime)) else value
        for key, value in row.items()
    }
