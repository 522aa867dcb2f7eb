"""
tests/unit/test_trip_collaboration.py — The TripCollaboration facade.

What this file proves:
  - The acting identity comes from resolve_identity, never from caller data
  - redeem_invite_token only succeeds when the atomic increment applied
  - Only AppError leaves the facade; a stray StoreFailure becomes STORE_ERROR
"""

from __future__ import annotations

from decimal import Decimal
from unittest.mock import MagicMock, patch

import pytest

from backend.tripshare.errors import AppError, ErrorCode
from backend.tripshare.services import expense_ledger
from backend.tripshare.services.trip_collaboration import TripCollaboration
from backend.tripshare.store.base import StoreFailure

ALICE = "user-alice"
BOB = "user-bob"
TRIP = "trip-1"


@pytest.fixture
def as_user(store_for):
    """as_user(identity) → TripCollaboration bound to that identity."""
    def _facade(identity: str | None) -> TripCollaboration:
        return TripCollaboration(store_for(identity), lambda: identity)
    return _facade


def _expense_data(**overrides) -> dict:
    data = {"trip_id": TRIP, "title": "Groceries", "amount": Decimal("12.00"), "payer_id": ALICE}
    data.update(overrides)
    return data


def _even_splits() -> list[dict]:
    return [
        {"user_id": ALICE, "amount": Decimal("6.00")},
        {"user_id": BOB, "amount": Decimal("6.00")},
    ]


class TestExpenses:

    def test_created_by_comes_from_identity(self, as_user):
        facade = as_user(ALICE)

        record = facade.create_expense(_expense_data(created_by="user-mallory"), _even_splits())

        assert record.expense["created_by"] == ALICE

    def test_create_requires_identity(self, as_user):
        with pytest.raises(AppError) as exc:
            as_user(None).create_expense(_expense_data(), _even_splits())

        assert exc.value.code == ErrorCode.UNAUTHENTICATED
        assert exc.value.http_status == 401

    def test_update_stamps_resolved_identity(self, as_user):
        record = as_user(ALICE).create_expense(_expense_data(payer_id=BOB), _even_splits())

        updated = as_user(BOB).update_expense(record.expense["id"], {"title": "Market"})

        assert updated.expense["updated_by"] == BOB

    def test_update_without_identity_is_unauthenticated(self, as_user):
        record = as_user(ALICE).create_expense(_expense_data(), _even_splits())

        with pytest.raises(AppError) as exc:
            as_user(None).update_expense(record.expense["id"], {"title": "Market"})

        assert exc.value.code == ErrorCode.UNAUTHENTICATED

    def test_fetch_delete_and_settle(self, as_user):
        alice = as_user(ALICE)
        keep = alice.create_expense(_expense_data(), _even_splits())
        drop = alice.create_expense(_expense_data(amount=Decimal("4.00")), [
            {"user_id": BOB, "amount": Decimal("4.00")},
        ])

        alice.delete_expense(drop.expense["id"])

        snapshot = as_user(BOB).fetch_expenses(TRIP)
        assert [e["id"] for e in snapshot.expenses] == [keep.expense["id"]]
        assert as_user(BOB).calculate_settlements(TRIP) == [
            {"from_user_id": BOB, "to_user_id": ALICE, "amount": Decimal("6.00")},
        ]

    def test_stray_store_failure_becomes_store_error(self, as_user):
        failure = StoreFailure(StoreFailure.UNAVAILABLE, "socket closed")

        with patch.object(expense_ledger, "fetch_expenses", side_effect=failure):
            with pytest.raises(AppError) as exc:
                as_user(ALICE).fetch_expenses(TRIP)

        assert exc.value.code == ErrorCode.STORE_ERROR
        assert exc.value.__cause__ is failure


class TestInvites:

    def test_issue_list_and_deactivate(self, as_user):
        alice = as_user(ALICE)
        token = alice.create_invite_token(TRIP, "member", max_uses=2)

        tokens = alice.get_invite_tokens(TRIP)
        assert [t["token"] for t in tokens] == [token]

        alice.deactivate_invite_token(tokens[0]["id"])
        assert alice.get_invite_tokens(TRIP) == []

    def test_token_length_is_applied(self, store_for):
        facade = TripCollaboration(store_for(ALICE), lambda: ALICE, token_length=24)

        assert len(facade.create_invite_token(TRIP, "companion")) == 24

    def test_issue_requires_identity(self, as_user):
        with pytest.raises(AppError) as exc:
            as_user(None).create_invite_token(TRIP, "member")
        assert exc.value.code == ErrorCode.UNAUTHENTICATED

    def test_redeem_returns_trip_details(self, as_user):
        token = as_user(ALICE).create_invite_token(TRIP, "companion")

        result = as_user(BOB).redeem_invite_token(token)

        assert result.is_valid is True
        assert result.trip_id == TRIP
        assert result.invite_type == "companion"

    def test_redeem_single_use_token_twice(self, as_user):
        token = as_user(ALICE).create_invite_token(TRIP, "member", max_uses=1)
        bob = as_user(BOB)

        assert bob.redeem_invite_token(token).is_valid is True
        second = bob.redeem_invite_token(token)

        assert second.is_valid is False
        assert second.error

    def test_redeem_requires_identity(self, as_user):
        token = as_user(ALICE).create_invite_token(TRIP, "member")

        with pytest.raises(AppError) as exc:
            as_user(None).redeem_invite_token(token)

        assert exc.value.code == ErrorCode.UNAUTHENTICATED

    def test_redeem_invalid_when_increment_loses_race(self):
        store = MagicMock()
        store.call_procedure.side_effect = [
            MagicMock(data=[{
                "trip_id": TRIP, "invite_type": "member", "is_valid": True, "error_message": None,
            }]),
            MagicMock(data=False),
        ]

        result = TripCollaboration(store, lambda: BOB).redeem_invite_token("LASTUSE")

        assert result.is_valid is False
        assert result.trip_id == TRIP
        assert [c.args[0] for c in store.call_procedure.call_args_list] == [
            "verify_invite_token", "use_invite_token",
        ]

    def test_redeem_writes_nothing_but_the_use_count(self):
        store = MagicMock()
        store.call_procedure.side_effect = [
            MagicMock(data=[{
                "trip_id": TRIP, "invite_type": "member", "is_valid": True, "error_message": None,
            }]),
            MagicMock(data=True),
        ]

        result = TripCollaboration(store, lambda: BOB).redeem_invite_token("JOINME")

        assert result.is_valid is True
        store.insert.assert_not_called()
        store.update.assert_not_called()

    def test_redeem_unknown_token_skips_increment(self):
        store = MagicMock()
        store.call_procedure.return_value = MagicMock(data=[])

        result = TripCollaboration(store, lambda: BOB).redeem_invite_token("NOPE")

        assert result.is_valid is False
        store.call_procedure.assert_called_once()
