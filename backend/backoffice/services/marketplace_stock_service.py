"""
Marketplace stock exits

Turns the sold lines of a marketplace settlement into stock exits with COGS.

DESIGN PRINCIPLES:
- Each item is resolved and posted on its own savepoint; an unmapped or
  failing item never blocks the other items of the order or the batch.
- Unresolved items are flagged NO_PRODUCT with a message and can be
  reprocessed after a mapping is created.
- Exits use reference_id = transaction id and line_ref = item id, so
  processing the same transaction twice posts nothing new.
- Reversal (refund/cancellation) posts compensating entries at the unit cost
  recognized by the original exit, never at today's average.
"""

from __future__ import annotations

from flask import current_app

from ..extensions import db
from ..models import MarketplaceTransaction, MarketplaceTransactionItem
from ..validation import ValidationError
from . import cost_ledger, inventory_service
from .concurrency import lock_for_update
from .sku_resolver import MappingCache, resolve


class MarketplaceStockError(Exception):
    """Raised for transaction-level failures (missing transaction)."""
    def __init__(self, message: str, details: dict | None = None):
        super().__init__(message)
        self.details = details or {}


# =============================================================================
# ITEM COST STATUS CONSTANTS
# =============================================================================

COST_PENDING = "PENDING"
COST_COSTED = "COSTED"
COST_NO_PRODUCT = "NO_PRODUCT"
COST_REVERSED = "REVERSED"


def _load_transaction(company_id: int, transaction_id: int, *, lock: bool = False) -> MarketplaceTransaction:
    query = db.session.query(MarketplaceTransaction).filter_by(id=transaction_id, company_id=company_id)
    if lock:
        query = lock_for_update(query)
    transaction = query.first()
    if transaction is None:
        raise MarketplaceStockError("Marketplace transaction not found", {"transaction_id": transaction_id})
    return transaction


def _resolve_item(company_id: int, transaction: MarketplaceTransaction, item: MarketplaceTransactionItem, cache, persist=True):
    return resolve(
        company_id,
        transaction.channel,
        item.external_sku,
        description=item.description,
        listing_id=item.listing_id,
        variant_id=item.variant_id,
        cache=cache,
        persist=persist,
    )


# =============================================================================
# SALE EXIT
# =============================================================================

def process_sale_exit(company_id: int, transaction_id: int, *, cache: MappingCache | None = None, commit: bool = True) -> dict:
    """
    Post stock exits for every pending item of a marketplace transaction.

    Returns per-status counts plus the per-item outcome. Items already
    COSTED or REVERSED are skipped.
    """
    transaction = _load_transaction(company_id, transaction_id, lock=True)
    cache = cache or MappingCache(ttl_seconds=current_app.config.get("SKU_MAPPING_CACHE_TTL", 300))

    costed = 0
    no_product = 0
    skipped = 0
    errors: list[dict] = []
    outcomes: list[dict] = []

    for item in transaction.items:
        if item.cost_status in (COST_COSTED, COST_REVERSED):
            skipped += 1
            continue

        resolved = _resolve_item(company_id, transaction, item, cache)
        if resolved is None:
            item.cost_status = COST_NO_PRODUCT
            item.cost_message = f"SKU not mapped: {item.external_sku or item.listing_id or '-'}"
            no_product += 1
            current_app.logger.warning(
                "Marketplace item %s (transaction %s, %s) has no product for SKU %r",
                item.id, transaction.id, transaction.channel, item.external_sku,
            )
            outcomes.append({"item_id": item.id, "cost_status": COST_NO_PRODUCT})
            continue

        nested = db.session.begin_nested()
        try:
            result = inventory_service.record_exit(
                company_id=company_id,
                product_id=None if resolved.sku_id else resolved.product_id,
                sku_id=resolved.sku_id,
                quantity=item.quantity,
                source=inventory_service.SOURCE_MARKETPLACE,
                reference_id=str(transaction.id),
                line_ref=str(item.id),
                document=transaction.order_id,
                occurred_on=transaction.transaction_date,
                unit_sale_price=item.unit_price,
                channel=transaction.channel,
                commit=False,
            )
            nested.commit()
        except ValueError as exc:
            nested.rollback()
            errors.append({"item_id": item.id, "error": str(exc)})
            item.cost_message = str(exc)[:255]
            outcomes.append({"item_id": item.id, "cost_status": item.cost_status, "error": str(exc)})
            continue

        item.product_id = resolved.product_id
        item.sku_id = resolved.sku_id
        item.cost_status = COST_COSTED
        item.cost_message = None
        costed += 1
        outcomes.append({
            "item_id": item.id,
            "cost_status": COST_COSTED,
            "movement_id": result.movement.id,
            "cogs_id": result.cogs.id,
            "total_cost": str(result.cogs.total_cost),
        })

    if commit:
        db.session.commit()
    else:
        db.session.flush()

    current_app.logger.info(
        "Marketplace transaction %s: %s costed, %s without product, %s skipped, %s errors",
        transaction_id, costed, no_product, skipped, len(errors),
    )
    return {
        "transaction_id": transaction_id,
        "costed": costed,
        "no_product": no_product,
        "skipped": skipped,
        "errors": errors,
        "items": outcomes,
    }


def reverse_sale_exit(company_id: int, transaction_id: int, *, item_ids: list[int] | None = None, occurred_on=None) -> dict:
    """
    Undo the stock exits of a refunded or cancelled marketplace sale.

    item_ids limits the reversal to some lines (partial refunds).
    """
    transaction = _load_transaction(company_id, transaction_id, lock=True)

    reversed_count = 0
    errors: list[dict] = []
    for item in transaction.items:
        if item_ids is not None and item.id not in item_ids:
            continue
        if item.cost_status != COST_COSTED:
            continue

        nested = db.session.begin_nested()
        try:
            result = inventory_service.reverse_exit(
                company_id=company_id,
                source=inventory_service.SOURCE_MARKETPLACE,
                reference_id=str(transaction.id),
                line_ref=str(item.id),
                occurred_on=occurred_on,
                commit=False,
            )
            nested.commit()
        except ValueError as exc:
            nested.rollback()
            errors.append({"item_id": item.id, "error": str(exc)})
            continue

        item.cost_status = COST_REVERSED
        item.cost_message = None if result is not None else "No posted exit found"
        reversed_count += 1

    db.session.commit()
    current_app.logger.info(
        "Marketplace transaction %s: %s items reversed, %s errors", transaction_id, reversed_count, len(errors)
    )
    return {"transaction_id": transaction_id, "reversed": reversed_count, "errors": errors}


def validate_stock_for_sale(company_id: int, transaction_id: int, *, cache: MappingCache | None = None) -> dict:
    """
    Preview whether each pending item can be resolved and has enough stock.

    Read-only: heuristic matches are not saved.
    """
    transaction = _load_transaction(company_id, transaction_id)
    cache = cache or MappingCache(ttl_seconds=current_app.config.get("SKU_MAPPING_CACHE_TTL", 300))

    items = []
    all_ok = True
    for item in transaction.items:
        if item.cost_status in (COST_COSTED, COST_REVERSED):
            continue
        resolved = _resolve_item(company_id, transaction, item, cache, persist=False)
        entry = {
            "item_id": item.id,
            "external_sku": item.external_sku,
            "requested": item.quantity,
            "resolved": resolved is not None,
            "product_id": resolved.product_id if resolved else None,
            "sku_id": resolved.sku_id if resolved else None,
            "available": None,
            "sufficient": False,
        }
        if resolved is not None:
            try:
                snapshot = cost_ledger.get_current_cost(
                    company_id,
                    product_id=None if resolved.sku_id else resolved.product_id,
                    sku_id=resolved.sku_id,
                )
            except ValidationError:
                snapshot = None
            if snapshot is not None:
                entry["available"] = snapshot.quantity_on_hand
                entry["sufficient"] = snapshot.quantity_on_hand >= item.quantity
        all_ok = all_ok and entry["sufficient"]
        items.append(entry)

    return {"transaction_id": transaction_id, "ok": all_ok, "items": items}
