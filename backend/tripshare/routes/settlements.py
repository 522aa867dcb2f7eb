"""
routes/settlements.py — Settlement suggestion route.

Settlements are computed, not stored: the response lists the transfers that
would square everyone up given the trip's current expenses.

Endpoints (base url_prefix=/api/v1/trips):
  GET    /trips/:id/settlements  → 200  simplified transfers
"""

from __future__ import annotations

from flask import Blueprint, jsonify

from backend.tripshare.middleware.auth_middleware import require_auth
from backend.tripshare.routes.collaboration import current_collaboration

settlements_bp = Blueprint("settlements", __name__)


@settlements_bp.route("/<trip_id>/settlements", methods=["GET"])
@require_auth
def list_settlements(trip_id: str):
    """GET /trips/:id/settlements — Who pays whom, amounts as strings."""
    transfers = current_collaboration().calculate_settlements(trip_id)
    return jsonify({
        "data": {
            "trip_id": trip_id,
            "settlements": transfers,
        },
        "warnings": [],
    }), 200
