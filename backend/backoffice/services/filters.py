# Overview: Typed list filters shared by services and routes; each enumerates exactly the fields a listing accepts.

from __future__ import annotations

from dataclasses import dataclass
from datetime import datetime

from ..errors import ValidationError
from ..time_utils import parse_iso_datetime


def _arg_int(args, name: str) -> int | None:
    raw = args.get(name)
    if raw is None or raw == "":
        return None
    try:
        return int(raw)
    except (TypeError, ValueError):
        raise ValidationError(f"{name} must be an integer")


def _arg_bool(args, name: str, default: bool = False) -> bool:
    raw = args.get(name)
    if raw is None or raw == "":
        return default
    return str(raw).strip().lower() in {"1", "true", "yes", "on"}


def _arg_datetime(args, name: str) -> datetime | None:
    raw = args.get(name)
    if not raw:
        return None
    try:
        return parse_iso_datetime(raw)
    except ValueError:
        raise ValidationError(f"{name} must be an ISO-8601 datetime")


def _arg_str(args, name: str) -> str | None:
    raw = args.get(name)
    if raw is None:
        return None
    raw = str(raw).strip()
    return raw or None


@dataclass(frozen=True)
class BackorderFilters:
    search: str | None = None
    product_id: int | None = None
    store_id: int | None = None
    sale_id: int | None = None
    customer_id: int | None = None
    pending_min: int | None = None
    pending_max: int | None = None
    created_from: datetime | None = None
    created_to: datetime | None = None
    include_resolved: bool = False
    limit: int = 200

    @classmethod
    def from_query_args(cls, args) -> "BackorderFilters":
        return cls(
            search=_arg_str(args, "search"),
            product_id=_arg_int(args, "product_id"),
            store_id=_arg_int(args, "store_id"),
            sale_id=_arg_int(args, "sale_id"),
            customer_id=_arg_int(args, "customer_id"),
            pending_min=_arg_int(args, "pending_min"),
            pending_max=_arg_int(args, "pending_max"),
            created_from=_arg_datetime(args, "created_from"),
            created_to=_arg_datetime(args, "created_to"),
            include_resolved=_arg_bool(args, "include_resolved"),
            limit=_arg_int(args, "limit") or 200,
        )


@dataclass(frozen=True)
class StockLedgerFilters:
    product_id: int | None = None
    store_id: int | None = None
    reason: str | None = None
    source_document_type: str | None = None
    source_document_id: int | None = None
    created_from: datetime | None = None
    created_to: datetime | None = None
    limit: int = 200

    @classmethod
    def from_query_args(cls, args) -> "StockLedgerFilters":
        return cls(
            product_id=_arg_int(args, "product_id"),
            store_id=_arg_int(args, "store_id"),
            reason=_arg_str(args, "reason"),
            source_document_type=_arg_str(args, "source_document_type"),
            source_document_id=_arg_int(args, "source_document_id"),
            created_from=_arg_datetime(args, "created_from"),
            created_to=_arg_datetime(args, "created_to"),
            limit=_arg_int(args, "limit") or 200,
        )


@dataclass(frozen=True)
class DocumentFilters:
    document_type: str | None = None
    status: str | None = None
    store_id: int | None = None
    customer_id: int | None = None
    vendor_id: int | None = None
    sales_agent_id: int | None = None
    conversion_status: str | None = None
    search: str | None = None
    created_from: datetime | None = None
    created_to: datetime | None = None
    limit: int = 200

    @classmethod
    def from_query_args(cls, args) -> "DocumentFilters":
        document_type = _arg_str(args, "document_type")
        return cls(
            document_type=document_type.upper() if document_type else None,
            status=_arg_str(args, "status"),
            store_id=_arg_int(args, "store_id"),
            customer_id=_arg_int(args, "customer_id"),
            vendor_id=_arg_int(args, "vendor_id"),
            sales_agent_id=_arg_int(args, "sales_agent_id"),
            conversion_status=_arg_str(args, "conversion_status"),
            search=_arg_str(args, "search"),
            created_from=_arg_datetime(args, "created_from"),
            created_to=_arg_datetime(args, "created_to"),
            limit=_arg_int(args, "limit") or 200,
        )


@dataclass(frozen=True)
class CommissionFilters:
    sales_agent_id: int | None = None
    sale_id: int | None = None
    status: str | None = None
    payment_status: str | None = None
    limit: int = 200

    @classmethod
    def from_query_args(cls, args) -> "CommissionFilters":
        return cls(
            sales_agent_id=_arg_int(args, "sales_agent_id"),
            sale_id=_arg_int(args, "sale_id"),
            status=_arg_str(args, "status"),
            payment_status=_arg_str(args, "payment_status"),
            limit=_arg_int(args, "limit") or 200,
        )


@dataclass(frozen=True)
class PromissoryNoteFilters:
    customer_id: int | None = None
    sale_id: int | None = None
    status: str | None = None
    due_before: datetime | None = None
    limit: int = 200

    @classmethod
    def from_query_args(cls, args) -> "PromissoryNoteFilters":
        return cls(
            customer_id=_arg_int(args, "customer_id"),
            sale_id=_arg_int(args, "sale_id"),
            status=_arg_str(args, "status"),
            due_before=_arg_datetime(args, "due_before"),
            limit=_arg_int(args, "limit") or 200,
        )
