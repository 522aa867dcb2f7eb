"""
errors.py — AppError base class and error code registry.

Every failure raised out of the ledger, the invite manager or the facade must
use a code defined here. Store failures are classified into these codes before
they leave a service (see services/store_errors.py).

Rules:
  - Error codes are a versioned contract. They do not change once published.
  - Error messages are human-readable prose. They may be improved at any time.
  - NO_ROWS_AFFECTED deliberately covers both "not found" and "not allowed".
    The store's row filter makes the two indistinguishable at this layer.
  - Never conflate 401 (unauthenticated) with 403 (row filter rejected the write).
"""

from __future__ import annotations


class AppError(Exception):

    def __init__(
            self,
            code: str,
            message: str,
            http_status: int,
            field: str | None = None,
            details: dict | None = None,
    ) -> None:
        super().__init__(message)
        self.code        = code
        self.message     = message
        self.http_status = http_status
        self.field       = field    # which request field caused the error
        self.details     = details or {}

    @property
    def user_message(self) -> str:
        return USER_MESSAGES.get(self.code, _GENERIC_USER_MESSAGE)

    @property
    def retry_safe(self) -> bool:
        return bool(self.details.get("retry_safe", False))

    def to_dict(self) -> dict:
        payload = {
            "code":    self.code,
            "message": self.message,
        }
        if self.field is not None:
            payload["field"] = self.field
        if self.details:
            payload["details"] = self.details
        return {"error": payload}

    def __repr__(self) -> str:
        return (
            f"AppError(code={self.code!r}, "
            f"http_status={self.http_status}, "
            f"message={self.message!r})"
        )


# ── Error Code Registry ────────────────────────────────────────────────────
#
# Organised by category. HTTP status is indicated in the comment.
# IMPORTANT: these are the string values sent in the API response.
# ──────────────────────────────────────────────────────────────────────────

class ErrorCode:

    # ── Schema / Input Errors (400) ────────────────────────────────────────
    MISSING_FIELD              = "MISSING_FIELD"
    INVALID_FIELD              = "INVALID_FIELD"
    INVALID_AMOUNT_PRECISION   = "INVALID_AMOUNT_PRECISION"
    INVALID_CATEGORY           = "INVALID_CATEGORY"
    INVALID_INVITE_TYPE        = "INVALID_INVITE_TYPE"
    DUPLICATE_SPLIT_USER       = "DUPLICATE_SPLIT_USER"

    # ── Business Rule Violations (422) ────────────────────────────────────
    SPLIT_SUM_MISMATCH         = "SPLIT_SUM_MISMATCH"     # sum(splits) != amount

    # ── Auth Errors (401) ──────────────────────────────────────────────────
    UNAUTHENTICATED            = "UNAUTHENTICATED"        # no acting identity
    TOKEN_MISSING              = "TOKEN_MISSING"
    TOKEN_INVALID              = "TOKEN_INVALID"
    TOKEN_EXPIRED              = "TOKEN_EXPIRED"

    # ── Row filter rejections (403) ────────────────────────────────────────
    # FORBIDDEN: the store raised on an insert that failed its row policy.
    # NO_ROWS_AFFECTED: an update/delete silently matched zero rows.
    FORBIDDEN                  = "FORBIDDEN"
    NO_ROWS_AFFECTED           = "NO_ROWS_AFFECTED"

    # ── Partial-failure states (500) ───────────────────────────────────────
    # Each implies a different retry policy; see services/expense_ledger.py.
    SPLIT_INSERT_FAILED        = "SPLIT_INSERT_FAILED"
    SPLIT_DELETE_FAILED        = "SPLIT_DELETE_FAILED"
    COMPENSATION_FAILED        = "COMPENSATION_FAILED"

    # ── Backend Errors ─────────────────────────────────────────────────────
    SCHEMA_MISSING             = "SCHEMA_MISSING"         # 503
    STORE_ERROR                = "STORE_ERROR"            # 502

    # ── System Errors (500) ────────────────────────────────────────────────
    INTERNAL_ERROR             = "INTERNAL_ERROR"


_GENERIC_USER_MESSAGE = (
    "Something went wrong. Please try again, or contact support if it keeps happening."
)

USER_MESSAGES: dict[str, str] = {
    ErrorCode.NO_ROWS_AFFECTED: (
        "You do not have permission to change this record, or it no longer exists."
    ),
    ErrorCode.FORBIDDEN: "You do not have permission to perform this action.",
    ErrorCode.UNAUTHENTICATED: "Please sign in first.",
    ErrorCode.TOKEN_MISSING: "Please sign in first.",
    ErrorCode.TOKEN_INVALID: "Your session is invalid. Please sign in again.",
    ErrorCode.TOKEN_EXPIRED: "Your session has expired. Please sign in again.",
    ErrorCode.SCHEMA_MISSING: (
        "This feature has not been set up on the server yet. "
        "Ask an administrator to apply the pending database migrations."
    ),
}


def is_registered_code(value: object) -> bool:
    """True if `value` is one of the ErrorCode constants."""
    return value in {v for k, v in vars(ErrorCode).items() if not k.startswith("_")}
