# Overview: Lookups for the reference data the engine validates against (stores, products, parties, accounts).

from __future__ import annotations

from ..extensions import db
from ..errors import NotFoundError, InvalidReferenceError
from ..models import Store, Product, Customer, Vendor, SalesAgent, FinancialAccount


def _require(model, entity_id, label: str, error_cls=NotFoundError):
    if entity_id is None:
        raise error_cls(f"{label} is required")
    entity = db.session.get(model, entity_id)
    if entity is None:
        raise error_cls(f"{label} not found", details={f"{label}_id": entity_id})
    return entity


def require_store(store_id: int, *, as_reference: bool = False) -> Store:
    return _require(Store, store_id, "store", InvalidReferenceError if as_reference else NotFoundError)


def require_product(product_id: int, *, as_reference: bool = False) -> Product:
    return _require(Product, product_id, "product", InvalidReferenceError if as_reference else NotFoundError)


def require_customer(customer_id: int) -> Customer:
    return _require(Customer, customer_id, "customer")


def require_vendor(vendor_id: int) -> Vendor:
    return _require(Vendor, vendor_id, "vendor")


def require_sales_agent(sales_agent_id: int) -> SalesAgent:
    return _require(SalesAgent, sales_agent_id, "sales_agent")


def require_financial_account(financial_account_id: int) -> FinancialAccount:
    return _require(FinancialAccount, financial_account_id, "financial_account")


def is_stock_tracked(product_id: int) -> bool:
    return bool(require_product(product_id).is_stock_tracked)
