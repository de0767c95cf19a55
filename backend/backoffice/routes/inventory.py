# backend/backoffice/routes/inventory.py
"""
Inventory routes: balances, manual adjustments, direct receipts, ledger history.

Stock is never edited directly; every change here is a ledger posting.
"""
from flask import Blueprint, request, jsonify, current_app

from ..errors import BackofficeError
from ..validation import require_int, optional_int, require_object
from ..services import inventory_service, ledger_service
from ..services.filters import StockLedgerFilters


inventory_bp = Blueprint("inventory", __name__, url_prefix="/api/inventory")


@inventory_bp.get("/balance")
def balance_route():
    try:
        args = request.args
        balance = inventory_service.get_stock_balance(
            require_int(args, "product_id"),
            require_int(args, "store_id"),
        )
        return jsonify(balance), 200
    except BackofficeError as e:
        return jsonify(e.to_dict()), e.status_code
    except Exception:
        current_app.logger.exception("Failed to get stock balance")
        return jsonify({"error": "Internal server error"}), 500


@inventory_bp.post("/adjust")
def adjust_route():
    """
    Post a stock adjustment.

    Body: product_id, store_id, delta, reason?, idempotency_key?, note?,
    allow_negative?. Retrying with the same idempotency_key returns the
    original entry.
    """
    try:
        payload = require_object(request.get_json(silent=True) or {})
        entry = inventory_service.post_stock_adjustment(
            product_id=require_int(payload, "product_id"),
            store_id=require_int(payload, "store_id"),
            delta=require_int(payload, "delta"),
            reason=payload.get("reason") or ledger_service.MANUAL_ADJUSTMENT,
            idempotency_key=payload.get("idempotency_key"),
            note=payload.get("note"),
            user_id=optional_int(payload, "user_id"),
            allow_negative=bool(payload.get("allow_negative", False)),
        )
        return jsonify({"entry": entry.to_dict()}), 201
    except BackofficeError as e:
        return jsonify(e.to_dict()), e.status_code
    except Exception:
        current_app.logger.exception("Failed to adjust inventory")
        return jsonify({"error": "Internal server error"}), 500


@inventory_bp.post("/receive")
def receive_route():
    try:
        payload = require_object(request.get_json(silent=True) or {})
        result = inventory_service.receive_stock(
            product_id=require_int(payload, "product_id"),
            store_id=require_int(payload, "store_id"),
            quantity=require_int(payload, "quantity"),
            idempotency_key=payload.get("idempotency_key"),
            note=payload.get("note"),
            user_id=optional_int(payload, "user_id"),
        )
        return jsonify(result), 201
    except BackofficeError as e:
        return jsonify(e.to_dict()), e.status_code
    except Exception:
        current_app.logger.exception("Failed to receive inventory")
        return jsonify({"error": "Internal server error"}), 500


@inventory_bp.get("/ledger")
def ledger_route():
    try:
        filters = StockLedgerFilters.from_query_args(request.args)
        entries = ledger_service.list_stock_ledger(filters)
        return jsonify({"entries": [entry.to_dict() for entry in entries]}), 200
    except BackofficeError as e:
        return jsonify(e.to_dict()), e.status_code
    except Exception:
        current_app.logger.exception("Failed to list stock ledger")
        return jsonify({"error": "Internal server error"}), 500


@inventory_bp.get("/drift")
def drift_route():
    try:
        return jsonify({"drift": ledger_service.find_balance_drift()}), 200
    except Exception:
        current_app.logger.exception("Failed to compute stock drift")
        return jsonify({"error": "Internal server error"}), 500
