"""
extensions.py — Flask extension singletons.

Initialises SQLAlchemy as a module-level object so the models can be declared
anywhere without creating circular dependencies.

Pattern:
    1. Create the extension object here (no app attached yet).
    2. Call init_app(app) inside the app factory in tripshare/__init__.py.
    3. Import `db` from here wherever needed.

    from backend.tripshare.extensions import db

Only the model declarations and the app factory use `db` directly. Services
never touch db.session: every read and write goes through a RowFilteredStore
(see store/base.py), which the routes build on top of db.engine. Unit tests
use db.metadata with a plain SQLAlchemy engine and need no Flask app.
"""

from flask_sqlalchemy import SQLAlchemy

db = SQLAlchemy()
