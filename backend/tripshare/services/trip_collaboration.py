"""
services/trip_collaboration.py — Single entry point for ledger and invite operations.

TripCollaboration binds a store and an identity resolver and delegates to
services/expense_ledger.py, services/invite_tokens.py and
services/settlement_service.py. It adds two things on top:

  - The acting identity is looked up per call through `resolve_identity`
    (created_by on new expenses, updated_by on edits, created_by on tokens).
  - Uniform error signalling. Callers only ever see AppError; a StoreFailure
    that escaped a manager is reported as STORE_ERROR.

Holds no state besides its two collaborators, so one instance per request
or one shared instance are equally fine.
"""

from __future__ import annotations

import logging
from contextlib import contextmanager
from typing import Callable, Iterator

from backend.tripshare.errors import AppError, ErrorCode
from backend.tripshare.services import expense_ledger, invite_tokens, settlement_service
from backend.tripshare.services.expense_ledger import ExpenseRecord, LedgerSnapshot
from backend.tripshare.services.invite_tokens import DEFAULT_TOKEN_LENGTH, InviteVerification
from backend.tripshare.services.store_errors import store_error
from backend.tripshare.store.base import Row, RowFilteredStore, StoreFailure

logger = logging.getLogger(__name__)


@contextmanager
def _only_app_errors(action: str) -> Iterator[None]:
    try:
        yield
    except StoreFailure as failure:
        logger.warning("Unclassified store failure while trying to %s: %r", action, failure)
        raise store_error(failure, action) from failure


class TripCollaboration:

    def __init__(
            self,
            store: RowFilteredStore,
            resolve_identity: Callable[[], str | None],
            *,
            token_length: int = DEFAULT_TOKEN_LENGTH,
    ) -> None:
        self.store = store
        self.resolve_identity = resolve_identity
        self.token_length = token_length

    def _require_identity(self, action: str) -> str:
        actor_id = self.resolve_identity()
        if not actor_id:
            raise AppError(
                ErrorCode.UNAUTHENTICATED,
                f"Sign in to {action}.",
                401,
            )
        return actor_id

    # ── Expense ledger ─────────────────────────────────────────────────────

    def fetch_expenses(self, trip_id: str) -> LedgerSnapshot:
        with _only_app_errors("load the trip's expenses"):
            return expense_ledger.fetch_expenses(trip_id, self.store)

    def create_expense(self, expense_data: Row, splits: list[Row]) -> ExpenseRecord:
        """created_by is always the resolved identity, whatever expense_data says."""
        actor_id = self._require_identity("record expenses")
        with _only_app_errors("create the expense"):
            return expense_ledger.create_expense(
                {**expense_data, "created_by": actor_id},
                splits,
                self.store,
            )

    def update_expense(
            self,
            expense_id: str,
            patch: Row,
            new_splits: list[Row] | None = None,
    ) -> ExpenseRecord:
        with _only_app_errors("update the expense"):
            return expense_ledger.update_expense(
                expense_id,
                patch,
                self.store,
                self.resolve_identity(),
                new_splits,
            )

    def delete_expense(self, expense_id: str) -> None:
        with _only_app_errors("delete the expense"):
            expense_ledger.delete_expense(expense_id, self.store)

    def calculate_settlements(self, trip_id: str) -> list[dict]:
        snapshot = self.fetch_expenses(trip_id)
        return settlement_service.calculate_settlements(snapshot.expenses, snapshot.splits)

    # ── Invite tokens ──────────────────────────────────────────────────────

    def create_invite_token(
            self,
            trip_id: str,
            invite_type: str,
            expires_in_days: int | None = None,
            max_uses: int | None = None,
    ) -> str:
        with _only_app_errors("create the invite link"):
            return invite_tokens.create_invite_token(
                trip_id,
                invite_type,
                self.store,
                self.resolve_identity(),
                expires_in_days,
                max_uses,
                token_length=self.token_length,
            )

    def verify_invite_token(self, token: str) -> InviteVerification:
        with _only_app_errors("verify the invite link"):
            return invite_tokens.verify_invite_token(token, self.store)

    def use_invite_token(self, token: str) -> bool:
        with _only_app_errors("redeem the invite link"):
            return invite_tokens.use_invite_token(token, self.store)

    def get_invite_tokens(self, trip_id: str) -> list[Row]:
        with _only_app_errors("load the invite links"):
            return invite_tokens.get_invite_tokens(trip_id, self.store)

    def deactivate_invite_token(self, token_id: str) -> None:
        with _only_app_errors("deactivate the invite link"):
            invite_tokens.deactivate_invite_token(token_id, self.store)

    def redeem_invite_token(self, token: str) -> InviteVerification:
        """
        Verifies `token` for its trip details, then consumes one use.

        The verification is only informational. The atomic increment decides:
        if another redeemer took the last use in between, the result is
        is_valid=False even though verification passed.

        No trip membership is written here. On a valid result the caller adds
        the actor to `trip_id` through its own membership store.
        """
        actor_id = self._require_identity("join a trip")
        verification = self.verify_invite_token(token)
        if not verification.is_valid:
            return verification

        if not self.use_invite_token(token):
            return InviteVerification(
                trip_id=verification.trip_id,
                invite_type=verification.invite_type,
                is_valid=False,
                error="This invite link is no longer valid.",
            )

        logger.info("User %s redeemed an invite to trip %s", actor_id, verification.trip_id)
        return verification
