"""
routes/invites.py — Invite link route handlers.

Registered at url_prefix=/api/v1 because it owns the trip-scoped paths
(/trips/:id/invites) and the token paths (/invites/...).

Endpoints:
  POST   /trips/:id/invites     → 201  issue a token
  GET    /trips/:id/invites     → 200  caller's active tokens, newest first
  DELETE /invites/:token_id     → 200  deactivate
  GET    /invites/:token/verify → 200  public; is the link usable?
  POST   /invites/:token/redeem → 200  consume one use (409 if not usable)
"""

from __future__ import annotations

from flask import Blueprint, jsonify, request

from backend.tripshare.middleware.auth_middleware import require_auth
from backend.tripshare.routes.collaboration import current_collaboration, serialize_row
from backend.tripshare.schemas.invite_schema import CreateInviteSchema
from backend.tripshare.services.invite_tokens import InviteVerification

invites_bp = Blueprint("invites", __name__)


def _serialize_verification(verification: InviteVerification) -> dict:
    return {
        "trip_id": verification.trip_id,
        "invite_type": verification.invite_type,
        "is_valid": verification.is_valid,
        "error": verification.error,
    }


# ── Trip-scoped invite routes ──────────────────────────────────────────────

@invites_bp.route("/trips/<trip_id>/invites", methods=["POST"])
@require_auth
def create_invite(trip_id: str):
    data = CreateInviteSchema().load(request.get_json(force=True) or {})
    token = current_collaboration().create_invite_token(
        trip_id,
        data["invite_type"].value,
        expires_in_days=data["expires_in_days"],
        max_uses=data["max_uses"],
    )
    return jsonify({
        "data": {
            "trip_id": trip_id,
            "token": token,
            "invite_type": data["invite_type"].value,
        },
        "warnings": [],
    }), 201


@invites_bp.route("/trips/<trip_id>/invites", methods=["GET"])
@require_auth
def list_invites(trip_id: str):
    tokens = current_collaboration().get_invite_tokens(trip_id)
    return jsonify({"data": [serialize_row(t) for t in tokens], "warnings": []}), 200


# ── Token routes ───────────────────────────────────────────────────────────

@invites_bp.route("/invites/<token_id>", methods=["DELETE"])
@require_auth
def deactivate_invite(token_id: str):
    current_collaboration().deactivate_invite_token(token_id)
    return jsonify({
        "data": {
            "deactivated": True,
            "token_id": token_id,
        },
        "warnings": [],
    }), 200


@invites_bp.route("/invites/<token>/verify", methods=["GET"])
def verify_invite(token: str):
    """Public: the join page checks a link before asking the visitor to sign in."""
    verification = current_collaboration().verify_invite_token(token)
    return jsonify({"data": _serialize_verification(verification), "warnings": []}), 200


@invites_bp.route("/invites/<token>/redeem", methods=["POST"])
@require_auth
def redeem_invite(token: str):
    verification = current_collaboration().redeem_invite_token(token)
    status = 200 if verification.is_valid else 409
    return jsonify({"data": _serialize_verification(verification), "warnings": []}), status
