# backend/backoffice/routes/marketplace.py
"""
Marketplace routes: SKU mappings, settlement import and stock exits.

All routes run inside a company context (X-Company-Id header).
Batch endpoints return aggregate counts with per-item errors; a failing
item never turns the whole request into an error.
"""
from flask import Blueprint, request, g, current_app

from ..extensions import db
from ..models import MarketplaceTransaction
from ..time_utils import parse_business_date
from ..validation import ConflictError, ValidationError
from ..decorators import require_company_context
from ..services import ingestion_service, marketplace_stock_service, sku_resolver
from ..services.marketplace_stock_service import MarketplaceStockError


marketplace_bp = Blueprint("marketplace", __name__, url_prefix="/api/marketplace")


def _optional_int(payload: dict, key: str) -> int | None:
    value = payload.get(key)
    if value is None or value == "":
        return None
    if isinstance(value, bool):
        raise ValidationError(f"{key} must be an integer")
    try:
        return int(value)
    except (TypeError, ValueError):
        raise ValidationError(f"{key} must be an integer")


# =============================================================================
# MAPPINGS
# =============================================================================

@marketplace_bp.get("/mappings")
@require_company_context
def list_mappings_route():
    mappings = sku_resolver.list_mappings(
        g.company_id,
        channel=request.args.get("channel"),
        include_inactive=request.args.get("include_inactive", "false").lower() == "true",
    )
    return {"items": [m.to_dict() for m in mappings]}, 200


@marketplace_bp.post("/mappings")
@require_company_context
def save_mapping_route():
    """
    Create or replace a manual mapping.

    A manual mapping always wins over an automatic one for the same SKU.
    """
    payload = request.get_json(silent=True) or {}
    try:
        mapping = sku_resolver.save_mapping(
            company_id=g.company_id,
            channel=payload.get("channel"),
            external_sku=payload.get("external_sku"),
            product_id=_optional_int(payload, "product_id"),
            sku_id=_optional_int(payload, "sku_id"),
            listing_id=payload.get("listing_id"),
            variant_id=payload.get("variant_id"),
            listing_title=payload.get("listing_title"),
            is_automatic=False,
        )
        db.session.commit()
    except ConflictError as e:
        db.session.rollback()
        return {"error": str(e)}, 409
    except ValueError as e:
        db.session.rollback()
        return {"error": str(e)}, 400
    return {"mapping": mapping.to_dict()}, 201


@marketplace_bp.delete("/mappings/<int:mapping_id>")
@require_company_context
def deactivate_mapping_route(mapping_id: int):
    mapping = sku_resolver.deactivate_mapping(g.company_id, mapping_id)
    if mapping is None:
        return {"error": "Mapping not found"}, 404
    return {"mapping": mapping.to_dict()}, 200


@marketplace_bp.post("/mappings/backfill")
@require_company_context
def backfill_mappings_route():
    """Link previously unmapped items of a channel to products."""
    payload = request.get_json(silent=True) or {}
    channel = payload.get("channel")
    if not channel:
        return {"error": "channel is required"}, 400
    return sku_resolver.backfill_unmapped_items(g.company_id, channel), 200


@marketplace_bp.post("/resolve")
@require_company_context
def resolve_route():
    """
    Resolve a channel SKU to a product/SKU.

    Heuristic matches are saved as automatic mappings unless preview is true.
    """
    payload = request.get_json(silent=True) or {}
    preview = bool(payload.get("preview", False))
    try:
        resolved = sku_resolver.resolve(
            g.company_id,
            payload.get("channel"),
            payload.get("external_sku"),
            description=payload.get("description"),
            listing_id=payload.get("listing_id"),
            variant_id=payload.get("variant_id"),
            persist=not preview,
        )
        if not preview:
            db.session.commit()
    except ValueError as e:
        db.session.rollback()
        return {"error": str(e)}, 400

    if resolved is None:
        return {"resolved": False}, 200
    return {
        "resolved": True,
        "product_id": resolved.product_id,
        "sku_id": resolved.sku_id,
        "origin": resolved.origin,
        "mapping_id": resolved.mapping_id,
        "is_automatic": resolved.is_automatic,
    }, 200


# =============================================================================
# TRANSACTIONS
# =============================================================================

@marketplace_bp.post("/transactions/import")
@require_company_context
def import_transactions_route():
    """
    Import settlement rows for one channel.

    Body: {"channel": "mercado_livre", "rows": [...], "categorize": true}
    Duplicates (same fingerprint) are skipped and counted.
    """
    payload = request.get_json(silent=True) or {}
    rows = payload.get("rows")
    if not isinstance(rows, list):
        return {"error": "rows must be a list"}, 400
    try:
        result = ingestion_service.ingest_marketplace_transactions(
            g.company_id,
            payload.get("channel"),
            rows,
            categorize=bool(payload.get("categorize", True)),
        )
    except ValueError as e:
        return {"error": str(e)}, 400
    return result, 200


@marketplace_bp.get("/transactions/<int:transaction_id>")
@require_company_context
def get_transaction_route(transaction_id: int):
    transaction = db.session.query(MarketplaceTransaction).filter_by(
        id=transaction_id, company_id=g.company_id
    ).first()
    if transaction is None:
        return {"error": "Marketplace transaction not found"}, 404
    return {"transaction": transaction.to_dict(include_items=True)}, 200


@marketplace_bp.post("/transactions/<int:transaction_id>/stock-exit")
@require_company_context
def process_stock_exit_route(transaction_id: int):
    """Post stock exits and COGS for the sold items of a transaction."""
    try:
        result = marketplace_stock_service.process_sale_exit(g.company_id, transaction_id)
    except MarketplaceStockError as e:
        return {"error": str(e), "details": e.details}, 404
    except Exception:
        db.session.rollback()
        current_app.logger.exception("Stock exit failed for marketplace transaction %s", transaction_id)
        return {"error": "Failed to process stock exit"}, 500
    return result, 200


@marketplace_bp.post("/transactions/<int:transaction_id>/stock-reversal")
@require_company_context
def reverse_stock_exit_route(transaction_id: int):
    """
    Undo stock exits after a refund or cancellation.

    Body (optional): {"item_ids": [..], "occurred_on": "YYYY-MM-DD"}
    """
    payload = request.get_json(silent=True) or {}
    item_ids = payload.get("item_ids")
    if item_ids is not None and not isinstance(item_ids, list):
        return {"error": "item_ids must be a list"}, 400
    try:
        occurred_on = parse_business_date(payload.get("occurred_on"))
        result = marketplace_stock_service.reverse_sale_exit(
            g.company_id,
            transaction_id,
            item_ids=[int(i) for i in item_ids] if item_ids is not None else None,
            occurred_on=occurred_on,
        )
    except MarketplaceStockError as e:
        return {"error": str(e), "details": e.details}, 404
    except ValueError as e:
        return {"error": str(e)}, 400
    return result, 200


@marketplace_bp.get("/transactions/<int:transaction_id>/stock-check")
@require_company_context
def validate_stock_route(transaction_id: int):
    """Read-only preview: can every pending item be resolved and supplied?"""
    try:
        result = marketplace_stock_service.validate_stock_for_sale(g.company_id, transaction_id)
    except MarketplaceStockError as e:
        return {"error": str(e), "details": e.details}, 404
    return result, 200
