# backend/backoffice/routes/backorders.py
from flask import Blueprint, request, jsonify, current_app

from ..errors import BackofficeError
from ..validation import optional_int, require_object
from ..services import backorder_service
from ..services.filters import BackorderFilters


backorders_bp = Blueprint("backorders", __name__, url_prefix="/api/backorders")


@backorders_bp.get("")
def list_backorders_route():
    try:
        filters = BackorderFilters.from_query_args(request.args)
        backorders = backorder_service.list_backorders(filters)
        return jsonify({"backorders": [bo.to_dict() for bo in backorders]}), 200
    except BackofficeError as e:
        return jsonify(e.to_dict()), e.status_code
    except Exception:
        current_app.logger.exception("Failed to list backorders")
        return jsonify({"error": "Internal server error"}), 500


@backorders_bp.post("/<int:backorder_id>/fulfill")
def fulfill_backorder_route(backorder_id: int):
    try:
        payload = require_object(request.get_json(silent=True) or {})
        result = backorder_service.fulfill_backorder(
            backorder_id,
            quantity=optional_int(payload, "quantity"),
            user_id=optional_int(payload, "user_id"),
        )
        return jsonify(result), 200
    except BackofficeError as e:
        return jsonify(e.to_dict()), e.status_code
    except Exception:
        current_app.logger.exception("Failed to fulfil backorder")
        return jsonify({"error": "Internal server error"}), 500


@backorders_bp.post("/<int:backorder_id>/cancel")
def cancel_backorder_route(backorder_id: int):
    try:
        backorder = backorder_service.cancel_backorder(backorder_id)
        return jsonify({"backorder": backorder.to_dict()}), 200
    except BackofficeError as e:
        return jsonify(e.to_dict()), e.status_code
    except Exception:
        current_app.logger.exception("Failed to cancel backorder")
        return jsonify({"error": "Internal server error"}), 500
