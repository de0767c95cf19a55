# backend/backoffice/routes/documents.py
"""
Document registry and conversion routes.

The acting user is passed explicitly as "user_id" in the JSON body.
Service errors map to their HTTP status; anything unexpected is logged and
returned as 500.
"""
from flask import Blueprint, request, jsonify, current_app

from ..errors import BackofficeError
from ..validation import require_int, optional_int, require_object
from ..services import document_service, conversion_service, sales_service
from ..services.filters import DocumentFilters


documents_bp = Blueprint("documents", __name__, url_prefix="/api/documents")


@documents_bp.get("")
def list_documents_route():
    try:
        filters = DocumentFilters.from_query_args(request.args)
        documents = document_service.list_documents(filters)
        return jsonify({"documents": [doc.to_dict(include_lines=False) for doc in documents]}), 200
    except BackofficeError as e:
        return jsonify(e.to_dict()), e.status_code
    except Exception:
        current_app.logger.exception("Failed to list documents")
        return jsonify({"error": "Internal server error"}), 500


@documents_bp.post("")
def create_document_route():
    """
    Create a quotation, sale, purchase order or purchase.

    Body: document_type, store_id, customer_id | vendor_id, sales_agent_id?,
    lines: [{product_id, quantity, unit_price_cents?}], idempotency_key?
    """
    try:
        payload = require_object(request.get_json(silent=True) or {})
        doc = document_service.create_document(
            payload.get("document_type"),
            store_id=require_int(payload, "store_id"),
            customer_id=optional_int(payload, "customer_id"),
            vendor_id=optional_int(payload, "vendor_id"),
            sales_agent_id=optional_int(payload, "sales_agent_id"),
            lines=payload.get("lines"),
            notes=payload.get("notes"),
            idempotency_key=payload.get("idempotency_key"),
            user_id=optional_int(payload, "user_id"),
        )
        return jsonify({"document": doc.to_dict()}), 201
    except BackofficeError as e:
        return jsonify(e.to_dict()), e.status_code
    except Exception:
        current_app.logger.exception("Failed to create document")
        return jsonify({"error": "Internal server error"}), 500


@documents_bp.get("/<int:document_id>")
def get_document_route(document_id: int):
    try:
        doc = document_service.get_document(document_id)
        return jsonify({"document": doc.to_dict()}), 200
    except BackofficeError as e:
        return jsonify(e.to_dict()), e.status_code
    except Exception:
        current_app.logger.exception("Failed to get document")
        return jsonify({"error": "Internal server error"}), 500


@documents_bp.post("/<int:document_id>/status")
def transition_status_route(document_id: int):
    try:
        payload = require_object(request.get_json(silent=True) or {})
        doc = document_service.transition_status(document_id, payload.get("status"))
        return jsonify({"document": doc.to_dict()}), 200
    except BackofficeError as e:
        return jsonify(e.to_dict()), e.status_code
    except Exception:
        current_app.logger.exception("Failed to transition document status")
        return jsonify({"error": "Internal server error"}), 500


@documents_bp.post("/<int:document_id>/confirm")
def confirm_sale_route(document_id: int):
    try:
        sale = sales_service.confirm_sale(document_id)
        return jsonify({"document": sale.to_dict()}), 200
    except BackofficeError as e:
        return jsonify(e.to_dict()), e.status_code
    except Exception:
        current_app.logger.exception("Failed to confirm sale")
        return jsonify({"error": "Internal server error"}), 500


@documents_bp.post("/<int:document_id>/cancel")
def cancel_document_route(document_id: int):
    """Cancel a quotation, sale or purchase order; reverse a waybill."""
    try:
        payload = require_object(request.get_json(silent=True) or {})
        user_id = optional_int(payload, "user_id")
        doc = document_service.get_document(document_id)
        if doc.document_type == document_service.WAYBILL:
            doc = conversion_service.cancel_waybill(document_id, user_id=user_id, reason=payload.get("reason"))
        else:
            doc = document_service.cancel_document(document_id, reason=payload.get("reason"))
        return jsonify({"document": doc.to_dict()}), 200
    except BackofficeError as e:
        return jsonify(e.to_dict()), e.status_code
    except Exception:
        current_app.logger.exception("Failed to cancel document")
        return jsonify({"error": "Internal server error"}), 500


@documents_bp.get("/<string:document_type>/<int:document_id>/lineage")
def lineage_route(document_type: str, document_id: int):
    try:
        return jsonify(document_service.get_lineage(document_type, document_id)), 200
    except BackofficeError as e:
        return jsonify(e.to_dict()), e.status_code
    except Exception:
        current_app.logger.exception("Failed to load document lineage")
        return jsonify({"error": "Internal server error"}), 500


@documents_bp.post("/<string:document_type>/<int:document_id>/convert")
def convert_route(document_type: str, document_id: int):
    """
    Convert a document.

    Body: target_type, lines?, clip_to_remaining?, idempotency_key?,
    sale_id? (loan conversions), face_amount_cents? / due_date? (promissory notes)
    """
    try:
        payload = require_object(request.get_json(silent=True) or {})
        target = conversion_service.convert(
            document_type,
            document_id,
            payload.get("target_type"),
            payload,
            user_id=optional_int(payload, "user_id"),
        )
        return jsonify({"target": target.to_dict()}), 201
    except BackofficeError as e:
        return jsonify(e.to_dict()), e.status_code
    except Exception:
        current_app.logger.exception("Failed to convert document")
        return jsonify({"error": "Internal server error"}), 500


@documents_bp.post("/loan-waybills")
def issue_loan_waybill_route():
    try:
        payload = require_object(request.get_json(silent=True) or {})
        waybill = conversion_service.issue_loan_waybill(
            store_id=require_int(payload, "store_id"),
            customer_id=require_int(payload, "customer_id"),
            lines=payload.get("lines"),
            idempotency_key=payload.get("idempotency_key"),
            notes=payload.get("notes"),
            user_id=optional_int(payload, "user_id"),
        )
        return jsonify({"document": waybill.to_dict()}), 201
    except BackofficeError as e:
        return jsonify(e.to_dict()), e.status_code
    except Exception:
        current_app.logger.exception("Failed to issue loan waybill")
        return jsonify({"error": "Internal server error"}), 500
