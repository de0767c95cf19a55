# backend/backoffice/routes/finance.py
"""
Receipts, promissory notes and the on-demand reconciliation trigger.

Time semantics:
- due_date / received_at / as_of accept ISO-8601 with Z or offsets and are
  normalized to UTC-naive internally.
"""
from flask import Blueprint, request, jsonify, current_app

from ..errors import BackofficeError
from ..validation import require_int, optional_int, require_object
from ..services import payment_service, reconciliation_service
from ..services.filters import PromissoryNoteFilters


finance_bp = Blueprint("finance", __name__, url_prefix="/api/finance")


@finance_bp.post("/receipts")
def create_receipt_route():
    try:
        payload = require_object(request.get_json(silent=True) or {})
        receipt = payment_service.create_receipt(
            customer_id=require_int(payload, "customer_id"),
            amount_cents=require_int(payload, "amount_cents"),
            sale_id=optional_int(payload, "sale_id"),
            promissory_note_id=optional_int(payload, "promissory_note_id"),
            payment_method=payload.get("payment_method") or "CASH",
            reference_number=payload.get("reference_number"),
            received_at=payload.get("received_at"),
            user_id=optional_int(payload, "user_id"),
        )
        return jsonify({"receipt": receipt.to_dict()}), 201
    except BackofficeError as e:
        return jsonify(e.to_dict()), e.status_code
    except Exception:
        current_app.logger.exception("Failed to create receipt")
        return jsonify({"error": "Internal server error"}), 500


@finance_bp.post("/receipts/<int:receipt_id>/void")
def void_receipt_route(receipt_id: int):
    try:
        payload = require_object(request.get_json(silent=True) or {})
        receipt = payment_service.void_receipt(receipt_id, reason=payload.get("reason"))
        return jsonify({"receipt": receipt.to_dict()}), 200
    except BackofficeError as e:
        return jsonify(e.to_dict()), e.status_code
    except Exception:
        current_app.logger.exception("Failed to void receipt")
        return jsonify({"error": "Internal server error"}), 500


@finance_bp.get("/promissory-notes")
def list_promissory_notes_route():
    try:
        filters = PromissoryNoteFilters.from_query_args(request.args)
        notes = payment_service.list_promissory_notes(filters)
        return jsonify({"promissory_notes": [note.to_dict() for note in notes]}), 200
    except BackofficeError as e:
        return jsonify(e.to_dict()), e.status_code
    except Exception:
        current_app.logger.exception("Failed to list promissory notes")
        return jsonify({"error": "Internal server error"}), 500


@finance_bp.post("/promissory-notes")
def create_promissory_note_route():
    try:
        payload = require_object(request.get_json(silent=True) or {})
        note = payment_service.create_promissory_note(
            customer_id=require_int(payload, "customer_id"),
            face_amount_cents=require_int(payload, "face_amount_cents"),
            due_date=payload.get("due_date"),
            sale_id=optional_int(payload, "sale_id"),
            idempotency_key=payload.get("idempotency_key"),
            notes=payload.get("notes"),
            user_id=optional_int(payload, "user_id"),
        )
        return jsonify({"promissory_note": note.to_dict()}), 201
    except BackofficeError as e:
        return jsonify(e.to_dict()), e.status_code
    except Exception:
        current_app.logger.exception("Failed to create promissory note")
        return jsonify({"error": "Internal server error"}), 500


@finance_bp.post("/promissory-notes/<int:note_id>/cancel")
def cancel_promissory_note_route(note_id: int):
    try:
        note = payment_service.cancel_promissory_note(note_id)
        return jsonify({"promissory_note": note.to_dict()}), 200
    except BackofficeError as e:
        return jsonify(e.to_dict()), e.status_code
    except Exception:
        current_app.logger.exception("Failed to cancel promissory note")
        return jsonify({"error": "Internal server error"}), 500


@finance_bp.post("/reconcile")
def reconcile_route():
    """Run one reconciliation pass now. Per-note failures come back in errors[]."""
    try:
        payload = require_object(request.get_json(silent=True) or {})
        result = reconciliation_service.reconcile(as_of=payload.get("as_of"))
        return jsonify(result.to_dict()), 200
    except BackofficeError as e:
        return jsonify(e.to_dict()), e.status_code
    except ValueError as e:
        return jsonify({"error": str(e)}), 400
    except Exception:
        current_app.logger.exception("Failed to run reconciliation")
        return jsonify({"error": "Internal server error"}), 500
