# backend/backoffice/routes/commissions.py
"""
Commission routes.

Commissions are created when a sale with a sales agent is confirmed; the
compute route is the on-demand path for sales confirmed before an agent
was assigned. Payment is exactly once per commission.
"""
from flask import Blueprint, request, jsonify, current_app

from ..errors import BackofficeError
from ..validation import require_int, optional_int, require_object
from ..services import commission_service
from ..services.filters import CommissionFilters


commissions_bp = Blueprint("commissions", __name__, url_prefix="/api/commissions")


@commissions_bp.get("")
def list_commissions_route():
    try:
        filters = CommissionFilters.from_query_args(request.args)
        commissions = commission_service.list_commissions(filters)
        return jsonify({"commissions": [c.to_dict() for c in commissions]}), 200
    except BackofficeError as e:
        return jsonify(e.to_dict()), e.status_code
    except Exception:
        current_app.logger.exception("Failed to list commissions")
        return jsonify({"error": "Internal server error"}), 500


@commissions_bp.post("")
def compute_commission_route():
    try:
        payload = require_object(request.get_json(silent=True) or {})
        commission = commission_service.compute_commission(require_int(payload, "sale_id"))
        return jsonify({"commission": commission.to_dict()}), 201
    except BackofficeError as e:
        return jsonify(e.to_dict()), e.status_code
    except Exception:
        current_app.logger.exception("Failed to compute commission")
        return jsonify({"error": "Internal server error"}), 500


@commissions_bp.post("/<int:commission_id>/approve")
def approve_commission_route(commission_id: int):
    try:
        commission = commission_service.approve_commission(commission_id)
        return jsonify({"commission": commission.to_dict()}), 200
    except BackofficeError as e:
        return jsonify(e.to_dict()), e.status_code
    except Exception:
        current_app.logger.exception("Failed to approve commission")
        return jsonify({"error": "Internal server error"}), 500


@commissions_bp.post("/<int:commission_id>/cancel")
def cancel_commission_route(commission_id: int):
    try:
        commission = commission_service.cancel_commission(commission_id)
        return jsonify({"commission": commission.to_dict()}), 200
    except BackofficeError as e:
        return jsonify(e.to_dict()), e.status_code
    except Exception:
        current_app.logger.exception("Failed to cancel commission")
        return jsonify({"error": "Internal server error"}), 500


@commissions_bp.post("/<int:commission_id>/recalculate")
def recalculate_commission_route(commission_id: int):
    try:
        payload = require_object(request.get_json(silent=True) or {})
        commission = commission_service.recalculate_commission(
            commission_id,
            deductions_cents=optional_int(payload, "deductions_cents"),
        )
        return jsonify({"commission": commission.to_dict()}), 200
    except BackofficeError as e:
        return jsonify(e.to_dict()), e.status_code
    except Exception:
        current_app.logger.exception("Failed to recalculate commission")
        return jsonify({"error": "Internal server error"}), 500


@commissions_bp.post("/<int:commission_id>/pay")
def pay_commission_route(commission_id: int):
    try:
        payload = require_object(request.get_json(silent=True) or {})
        commission = commission_service.pay_commission(
            commission_id,
            require_int(payload, "financial_account_id"),
            user_id=optional_int(payload, "user_id"),
        )
        return jsonify({"commission": commission.to_dict()}), 200
    except BackofficeError as e:
        return jsonify(e.to_dict()), e.status_code
    except Exception:
        current_app.logger.exception("Failed to pay commission")
        return jsonify({"error": "Internal server error"}), 500
