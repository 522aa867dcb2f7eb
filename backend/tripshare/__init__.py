"""
tripshare/__init__.py — Flask application factory.

Pattern: create_app(config_name) creates and returns a configured Flask app.
         Nothing is initialised at import time, so tests can build as many
         isolated app instances as they need.

Responsibilities:
  1. Load configuration from config_by_name[config_name]
  2. Configure logging from LOG_LEVEL
  3. Initialise SQLAlchemy via init_app()
  4. Register all route blueprints under /api/v1
  5. Register global error handlers (AppError → JSON, Exception → 500)
  6. Register a custom JSON provider to serialise Decimal as string

Note on model imports:
  All model modules are imported inside create_app() so that db.metadata is
  populated before db.create_all() or the store looks up a table.
"""

from __future__ import annotations

import logging
import traceback
from decimal import Decimal

from flask import Flask, jsonify, request
from flask.json.provider import DefaultJSONProvider
from marshmallow import ValidationError
from werkzeug.exceptions import HTTPException

from backend.config import config_by_name, validate_production_config

_LOG_FORMAT = "%(asctime)s %(levelname)s %(name)s: %(message)s"


# ── Custom JSON provider ───────────────────────────────────────────────────
# Monetary amounts are serialised as strings to preserve precision.

class DecimalJSONProvider(DefaultJSONProvider):
    """
    Extends Flask's default JSON provider to serialise Decimal as str.

    Example: Decimal("10.50") → "10.50" (not 10.5 or 10.500000001)
    """

    def default(self, o):
        if isinstance(o, Decimal):
            return str(o)
        return super().default(o)


# ── Application factory ────────────────────────────────────────────────────

def create_app(config_name: str = "development") -> Flask:
    """
    Creates and returns a configured Flask application instance.

    Args:
        config_name: One of "development", "testing", "production".
                     Resolved via config_by_name in config.py.
    """
    app = Flask(__name__)
    app.json_provider_class = DecimalJSONProvider
    app.json = DecimalJSONProvider(app)

    # ── Configuration ──────────────────────────────────────────────────────
    config_class = config_by_name.get(config_name, config_by_name["development"])
    app.config.from_object(config_class)

    if config_name == "production":
        validate_production_config(app)  # raises ValueError if misconfigured

    _configure_logging(app)

    # ── Extensions ─────────────────────────────────────────────────────────
    from backend.tripshare.extensions import db
    db.init_app(app)

    # ── Model registration ─────────────────────────────────────────────────
    with app.app_context():
        from backend.tripshare.models import (  # noqa: F401
            expense,
            expense_split,
            invite_token,
        )

    _register_blueprints(app)
    _register_error_handlers(app)
    _register_cors(app)

    return app


def _configure_logging(app: Flask) -> None:
    """
    Service modules log through logging.getLogger(__name__) under the
    backend.tripshare namespace; one level applies to them and app.logger.
    """
    level = logging.getLevelName(str(app.config.get("LOG_LEVEL", "INFO")).upper())
    if not isinstance(level, int):
        level = logging.INFO

    package_logger = logging.getLogger("backend.tripshare")
    package_logger.setLevel(level)
    if not logging.getLogger().handlers and not package_logger.handlers:
        handler = logging.StreamHandler()
        handler.setFormatter(logging.Formatter(_LOG_FORMAT))
        package_logger.addHandler(handler)

    app.logger.setLevel(level)


def _register_blueprints(app: Flask) -> None:
    """
    Registers all route blueprints under the /api/v1 prefix.

    expenses_bp and invites_bp sit at /api/v1 itself because each owns both
    trip-scoped paths (/trips/<id>/...) and paths of their own resource.
    """
    from backend.tripshare.routes.expenses import expenses_bp
    from backend.tripshare.routes.invites import invites_bp
    from backend.tripshare.routes.settlements import settlements_bp

    app.register_blueprint(expenses_bp,    url_prefix="/api/v1")
    app.register_blueprint(invites_bp,     url_prefix="/api/v1")
    app.register_blueprint(settlements_bp, url_prefix="/api/v1/trips")


def _register_error_handlers(app: Flask) -> None:
    """
    Registers global error handlers.

    Handlers:
      AppError        → structured JSON error envelope with the correct status
      ValidationError → marshmallow errors as MISSING_FIELD / INVALID_FIELD
                        (or the registered code the schema raised), 400
      Exception       → generic INTERNAL_ERROR (500); traceback logged

    Stack traces never leave the server.
    """
    from backend.tripshare.errors import AppError, ErrorCode, is_registered_code

    @app.errorhandler(AppError)
    def handle_app_error(error: AppError):
        """Routes never catch AppError; they let it propagate here."""
        if error.http_status >= 500:
            app.logger.error("%s on %s %s: %s", error.code, request.method, request.path, error.message)
        return jsonify(error.to_dict()), error.http_status

    @app.errorhandler(ValidationError)
    def handle_validation_error(error: ValidationError):
        """
        Converts marshmallow ValidationError into the standard error envelope.

        Only the FIRST error is reported. If its message is a registered
        ErrorCode (e.g. INVALID_AMOUNT_PRECISION) it becomes the code.
        """
        field, raw_message = _first_message(error.messages)

        if is_registered_code(raw_message):
            code = raw_message
            message = _code_to_message(code)
        elif str(raw_message).startswith("Missing data for required field"):
            code = ErrorCode.MISSING_FIELD
            message = raw_message
        else:
            code = ErrorCode.INVALID_FIELD
            message = raw_message

        response_body = {"error": {"code": code, "message": message}}
        if field is not None:
            response_body["error"]["field"] = field

        return jsonify(response_body), 400

    @app.errorhandler(Exception)
    def handle_unexpected_error(error: Exception):
        if isinstance(error, HTTPException):
            return error
        app.logger.error(
            "Unhandled exception: %s\n%s",
            str(error),
            traceback.format_exc(),
        )
        return jsonify({
            "error": {
                "code": ErrorCode.INTERNAL_ERROR,
                "message": "An unexpected error occurred. Please try again later.",
            }
        }), 500


def _first_message(messages, field: str | None = None) -> tuple[str | None, str]:
    """
    Walks marshmallow's nested messages to the first leaf.

    {"splits": {0: {"amount": ["INVALID_AMOUNT_PRECISION"]}}}
        → ("splits", "INVALID_AMOUNT_PRECISION")
    The top-level field name is kept; nested indexes are dropped.
    """
    if isinstance(messages, dict):
        for key, value in messages.items():
            top = field if field is not None else (None if key == "_schema" else str(key))
            return _first_message(value, top)
        return field, "Invalid input."
    if isinstance(messages, list):
        if not messages:
            return field, "Invalid input."
        return _first_message(messages[0], field)
    return field, str(messages)


def _register_cors(app: Flask) -> None:
    """
    Adds CORS headers for browser-based local development, only when DEBUG
    or TESTING is true.
    """

    @app.after_request
    def add_cors_headers(response):
        origin = request.headers.get("Origin")
        allow_all = bool(app.config.get("DEBUG") or app.config.get("TESTING"))

        if allow_all:
            response.headers["Access-Control-Allow-Origin"] = origin if origin else "*"
            response.headers["Vary"] = "Origin"
            response.headers["Access-Control-Allow-Methods"] = "GET, POST, PATCH, DELETE, OPTIONS"
            response.headers["Access-Control-Allow-Headers"] = "Authorization, Content-Type"

        return response


def _code_to_message(code: str) -> str:
    """Default message when a ValidationError's message IS the error code."""
    _messages = {
        "INVALID_AMOUNT_PRECISION": "Amount must have at most 2 decimal places.",
        "INVALID_CATEGORY": "The category value is not valid.",
        "INVALID_INVITE_TYPE": "invite_type must be 'member' or 'companion'.",
        "DUPLICATE_SPLIT_USER": "The same user_id appears more than once in the splits array.",
    }
    return _messages.get(code, "Invalid input.")
