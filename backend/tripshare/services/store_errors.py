"""
services/store_errors.py — Classifies StoreFailure into the AppError taxonomy.

Services never let a StoreFailure escape and never swallow one. Each failure
is mapped here, keeping the store's code in `details.store_code` for
diagnostics. Partial-failure states (SPLIT_INSERT_FAILED etc.) are raised by
the ledger itself because only it knows which step failed.
"""

from __future__ import annotations

from backend.tripshare.errors import AppError, ErrorCode
from backend.tripshare.store.base import StoreFailure


def schema_missing(failure: StoreFailure) -> AppError:
    return AppError(
        ErrorCode.SCHEMA_MISSING,
        f"Table {failure.table!r} is not provisioned on the backend. "
        f"Apply the pending database migrations before using this feature.",
        503,
        details={"store_code": failure.code, "table": failure.table},
    )


def classify(failure: StoreFailure, action: str) -> AppError:
    """
    Maps a store failure raised while performing `action` (prose, e.g.
    "create the expense") onto the error registry.
    """
    if failure.code == StoreFailure.TABLE_NOT_FOUND:
        return schema_missing(failure)

    if failure.code == StoreFailure.PERMISSION_DENIED:
        return AppError(
            ErrorCode.FORBIDDEN,
            f"Not allowed to {action}.",
            403,
            details={"store_code": failure.code},
        )

    if failure.code == StoreFailure.CONSTRAINT_VIOLATION:
        return AppError(
            ErrorCode.INVALID_FIELD,
            f"Could not {action}: the data was rejected by the store ({failure.message}).",
            400,
            details={"store_code": failure.code},
        )

    return store_error(failure, action)


def store_error(failure: StoreFailure, action: str) -> AppError:
    """Opaque STORE_ERROR; the store's message is kept for diagnostics."""
    return AppError(
        ErrorCode.STORE_ERROR,
        f"Could not {action}: {failure.message}",
        502,
        details={"store_code": failure.code},
    )
