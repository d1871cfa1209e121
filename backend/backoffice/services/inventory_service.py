# Overview: Service-layer operations for inventory; posts movements and COGS against the cost ledger.

# backend/backoffice/services/inventory_service.py

from __future__ import annotations

from dataclasses import dataclass
from datetime import date
from decimal import Decimal

from flask import current_app
from sqlalchemy import func

from ..extensions import db
from ..models import CogsRecord, InventoryMovement, Product, ProductSku
from ..signals import stock_changed
from ..time_utils import parse_business_date, today
from ..validation import (
    ConflictError,
    ValidationError,
    enforce_rules_adjustment,
    enforce_rules_entry,
    enforce_rules_exit,
    quantize_money,
    to_decimal,
)
from . import cost_ledger
from .concurrency import run_with_retry
"""
Inventory Movement Invariants (authoritative)

- Every posting appends exactly one InventoryMovement; exits also append
  exactly one CogsRecord valued at the average cost in effect at that instant.
- Movements and COGS records are immutable. Corrections are new records:
  an ADJUSTMENT, or a SALE_REVERSAL entry plus a negative CogsRecord.
- SUM(quantity_delta) per holder equals the holder's quantity_on_hand.
- Exits are idempotent per (source, reference_id, line_ref): posting the same
  line again returns the existing movement unless it has been reversed.
- Each public operation locks its holder, runs under run_with_retry and
  commits unless commit=False (callers batching inside their own transaction).
"""


MOVEMENT_ENTRY = "ENTRY"
MOVEMENT_EXIT = "EXIT"
MOVEMENT_ADJUSTMENT = "ADJUSTMENT"

REASON_PURCHASE = "PURCHASE"
REASON_SALE = "SALE"
REASON_ADJUSTMENT_IN = "ADJUSTMENT_IN"
REASON_ADJUSTMENT_OUT = "ADJUSTMENT_OUT"
REASON_REVALUATION = "REVALUATION"
REASON_SALE_REVERSAL = "SALE_REVERSAL"

SOURCE_PURCHASE = "PURCHASE"
SOURCE_SALE = "SALE"
SOURCE_MARKETPLACE = "MARKETPLACE"
SOURCE_MANUAL = "MANUAL"
VALID_SOURCES = {SOURCE_PURCHASE, SOURCE_SALE, SOURCE_MARKETPLACE, SOURCE_MANUAL}

DEFAULT_SKU_SUFFIX = "PADRAO"


@dataclass(frozen=True)
class ExitResult:
    movement: InventoryMovement
    cogs: CogsRecord
    already_posted: bool = False


def _resolve_occurred_on(value) -> date:
    if value is None:
        return today()
    try:
        resolved = parse_business_date(value)
    except ValueError:
        raise ValidationError("occurred_on must be an ISO-8601 date")
    return resolved or today()


def _check_source(source: str) -> str:
    source = (source or "").upper()
    if source not in VALID_SOURCES:
        raise ValidationError(f"source must be one of {', '.join(sorted(VALID_SOURCES))}")
    return source


def as_int(value, field: str) -> int:
    if isinstance(value, bool):
        raise ValidationError(f"{field} must be an integer")
    if isinstance(value, int):
        return value
    try:
        return int(str(value).strip())
    except (TypeError, ValueError):
        raise ValidationError(f"{field} must be an integer")


def _clean_ref(value) -> str | None:
    if value is None:
        return None
    value = str(value).strip()
    return value or None


def _build_movement(
    *,
    company_id: int,
    holder,
    product: Product,
    movement_type: str,
    reason: str,
    source: str,
    quantity: int,
    quantity_delta: int,
    change: cost_ledger.CostChange,
    occurred_on: date,
    reference_id: str | None = None,
    line_ref: str | None = None,
    document: str | None = None,
    note: str | None = None,
) -> InventoryMovement:
    movement = InventoryMovement(
        company_id=company_id,
        product_id=product.id,
        sku_id=holder.id if isinstance(holder, ProductSku) else None,
        type=movement_type,
        reason=reason,
        source=source,
        reference_id=reference_id,
        line_ref=line_ref,
        document=document,
        occurred_on=occurred_on,
        quantity=quantity,
        quantity_delta=quantity_delta,
        unit_cost=change.unit_cost,
        total_cost=cost_ledger.cost_of(quantity, change.unit_cost),
        quantity_before=change.quantity_before,
        quantity_after=change.quantity_after,
        average_cost_before=change.average_cost_before,
        average_cost_after=change.average_cost_after,
        negative_stock=change.negative_stock,
        note=note,
    )
    db.session.add(movement)
    return movement


def _finish(holder, product: Product, commit: bool) -> None:
    if holder is not product:
        cost_ledger.refresh_product_aggregate(product)
    if commit:
        db.session.commit()
    else:
        db.session.flush()


def _notify(company_id: int, product_id: int, sku_id: int | None) -> None:
    stock_changed.send(
        current_app._get_current_object(),
        company_id=company_id,
        product_id=product_id,
        sku_id=sku_id,
    )


# =============================================================================
# ENTRIES
# =============================================================================

def _record_entry_inner(
    *,
    company_id: int,
    holder,
    product: Product,
    quantity: int,
    unit_cost: Decimal,
    source: str,
    reason: str,
    occurred_on: date,
    reference_id: str | None = None,
    line_ref: str | None = None,
    document: str | None = None,
    note: str | None = None,
) -> InventoryMovement:
    """Core ENTRY logic on an already locked holder, without retry or commit."""
    change = cost_ledger.apply_entry(holder, quantity, unit_cost)
    movement = _build_movement(
        company_id=company_id,
        holder=holder,
        product=product,
        movement_type=MOVEMENT_ENTRY,
        reason=reason,
        source=source,
        quantity=quantity,
        quantity_delta=quantity,
        change=change,
        occurred_on=occurred_on,
        reference_id=reference_id,
        line_ref=line_ref,
        document=document,
        note=note,
    )
    db.session.flush()
    return movement


def record_entry(
    *,
    company_id: int,
    quantity: int,
    unit_cost,
    product_id: int | None = None,
    sku_id: int | None = None,
    source: str = SOURCE_PURCHASE,
    reference_id=None,
    line_ref=None,
    document: str | None = None,
    occurred_on=None,
    note: str | None = None,
    commit: bool = True,
) -> InventoryMovement:
    """
    Receive stock into a product or SKU and re-average its cost.

    Concurrent entries against one holder serialize on the row lock (and the
    version check). The average is derived from the exact stock value, so the
    final average is the same in any arrival order.
    """
    unit_cost = to_decimal(unit_cost, "unit_cost")
    enforce_rules_entry(quantity, unit_cost)
    source = _check_source(source)
    occurred_dt = _resolve_occurred_on(occurred_on)

    def _op():
        holder, product = cost_ledger.load_holder(
            company_id, product_id=product_id, sku_id=sku_id, lock=True
        )
        movement = _record_entry_inner(
            company_id=company_id,
            holder=holder,
            product=product,
            quantity=quantity,
            unit_cost=unit_cost,
            source=source,
            reason=REASON_PURCHASE,
            occurred_on=occurred_dt,
            reference_id=_clean_ref(reference_id),
            line_ref=_clean_ref(line_ref),
            document=document,
            note=note,
        )
        _finish(holder, product, commit)
        return movement

    movement = run_with_retry(_op)
    if commit:
        _notify(company_id, movement.product_id, movement.sku_id)
    return movement


# =============================================================================
# EXITS
# =============================================================================

def _find_posted_exit(company_id: int, source: str, reference_id: str, line_ref: str | None) -> InventoryMovement | None:
    """
    Latest exit for the reference that has not been reversed.

    Exits and reversals for one line are counted; more exits than reversals
    means the line is currently posted.
    """
    base = db.session.query(InventoryMovement).filter_by(
        company_id=company_id,
        source=source,
        reference_id=reference_id,
        line_ref=line_ref,
    )
    exits = base.filter(InventoryMovement.reason == REASON_SALE).order_by(InventoryMovement.id.desc()).all()
    if not exits:
        return None
    reversals = base.filter(InventoryMovement.reason == REASON_SALE_REVERSAL).count()
    if len(exits) > reversals:
        return exits[0]
    return None


def _record_exit_inner(
    *,
    company_id: int,
    holder,
    product: Product,
    quantity: int,
    source: str,
    occurred_on: date,
    reference_id: str | None = None,
    line_ref: str | None = None,
    document: str | None = None,
    unit_sale_price: Decimal | None = None,
    channel: str | None = None,
    note: str | None = None,
) -> ExitResult:
    """
    Core EXIT logic on an already locked holder, without retry or commit.

    Recognizes COGS at the holder's average cost before the quantity moves.
    """
    if reference_id is not None:
        existing = _find_posted_exit(company_id, source, reference_id, line_ref)
        if existing is not None:
            holder_sku_id = holder.id if isinstance(holder, ProductSku) else None
            if existing.product_id != product.id or existing.sku_id != holder_sku_id:
                raise ConflictError("reference already used for a different product")
            cogs = db.session.query(CogsRecord).filter_by(movement_id=existing.id).one()
            return ExitResult(movement=existing, cogs=cogs, already_posted=True)

    change = cost_ledger.apply_exit(holder, quantity)
    movement = _build_movement(
        company_id=company_id,
        holder=holder,
        product=product,
        movement_type=MOVEMENT_EXIT,
        reason=REASON_SALE,
        source=source,
        quantity=quantity,
        quantity_delta=-quantity,
        change=change,
        occurred_on=occurred_on,
        reference_id=reference_id,
        line_ref=line_ref,
        document=document,
        note=note,
    )
    db.session.flush()

    total_cost = movement.total_cost
    revenue = None
    gross_margin = None
    margin_percent = None
    if unit_sale_price is not None:
        revenue = quantize_money(unit_sale_price * quantity)
        margin = cost_ledger.calculate_margin(revenue, total_cost)
        gross_margin = margin.gross_margin
        margin_percent = margin.margin_percent

    cogs = CogsRecord(
        company_id=company_id,
        movement_id=movement.id,
        product_id=product.id,
        sku_id=movement.sku_id,
        source=source,
        reference_id=reference_id,
        line_ref=line_ref,
        channel=channel,
        occurred_on=occurred_on,
        quantity=quantity,
        unit_cost_at_exit=change.unit_cost,
        total_cost=total_cost,
        unit_sale_price=unit_sale_price,
        revenue_total=revenue,
        gross_margin=gross_margin,
        margin_percent=margin_percent,
    )
    db.session.add(cogs)
    db.session.flush()
    return ExitResult(movement=movement, cogs=cogs)


def record_exit(
    *,
    company_id: int,
    quantity: int,
    product_id: int | None = None,
    sku_id: int | None = None,
    source: str = SOURCE_SALE,
    reference_id=None,
    line_ref=None,
    document: str | None = None,
    occurred_on=None,
    unit_sale_price=None,
    channel: str | None = None,
    note: str | None = None,
    commit: bool = True,
) -> ExitResult:
    """
    Remove stock and record its cost of goods sold.

    The unit cost is read under the holder lock, so the COGS reflects the
    average in effect at the instant of the exit. Exceeding on-hand follows
    NEGATIVE_STOCK_POLICY.
    """
    enforce_rules_exit(quantity)
    source = _check_source(source)
    occurred_dt = _resolve_occurred_on(occurred_on)
    sale_price = to_decimal(unit_sale_price, "unit_sale_price") if unit_sale_price is not None else None
    if sale_price is not None and sale_price < 0:
        raise ValidationError("unit_sale_price must be >= 0")

    def _op():
        holder, product = cost_ledger.load_holder(
            company_id, product_id=product_id, sku_id=sku_id, lock=True
        )
        result = _record_exit_inner(
            company_id=company_id,
            holder=holder,
            product=product,
            quantity=quantity,
            source=source,
            occurred_on=occurred_dt,
            reference_id=_clean_ref(reference_id),
            line_ref=_clean_ref(line_ref),
            document=document,
            unit_sale_price=sale_price,
            channel=channel,
            note=note,
        )
        if not result.already_posted:
            _finish(holder, product, commit)
        elif commit:
            db.session.commit()
        return result

    result = run_with_retry(_op)
    if commit and not result.already_posted:
        _notify(company_id, result.movement.product_id, result.movement.sku_id)
    return result


def _reverse_exit_inner(*, company_id: int, original: InventoryMovement, occurred_on: date, note: str | None = None):
    """
    Post the compensating records for one exit on an already locked holder.

    Stock returns at the cost recognized by the original exit, and a negative
    CogsRecord cancels the original cost (and revenue, when there was one).
    """
    holder = original.sku if original.sku_id is not None else original.product
    original_cogs = db.session.query(CogsRecord).filter_by(movement_id=original.id).one()

    change = cost_ledger.apply_entry(holder, original.quantity, Decimal(original.unit_cost))
    movement = _build_movement(
        company_id=company_id,
        holder=holder,
        product=original.product,
        movement_type=MOVEMENT_ENTRY,
        reason=REASON_SALE_REVERSAL,
        source=original.source,
        quantity=original.quantity,
        quantity_delta=original.quantity,
        change=change,
        occurred_on=occurred_on,
        reference_id=original.reference_id,
        line_ref=original.line_ref,
        document=original.document,
        note=note or f"Reversal of movement {original.id}",
    )
    db.session.flush()

    def _neg(value):
        return -value if value is not None else None

    cogs = CogsRecord(
        company_id=company_id,
        movement_id=movement.id,
        product_id=original.product_id,
        sku_id=original.sku_id,
        source=original.source,
        reference_id=original.reference_id,
        line_ref=original.line_ref,
        channel=original_cogs.channel,
        occurred_on=occurred_on,
        quantity=-original_cogs.quantity,
        unit_cost_at_exit=original_cogs.unit_cost_at_exit,
        total_cost=-original_cogs.total_cost,
        unit_sale_price=original_cogs.unit_sale_price,
        revenue_total=_neg(original_cogs.revenue_total),
        gross_margin=_neg(original_cogs.gross_margin),
        margin_percent=original_cogs.margin_percent,
    )
    db.session.add(cogs)
    db.session.flush()
    return ExitResult(movement=movement, cogs=cogs)


def reverse_exit(
    *,
    company_id: int,
    source: str,
    reference_id,
    line_ref=None,
    occurred_on=None,
    note: str | None = None,
    commit: bool = True,
) -> ExitResult | None:
    """
    Reverse the currently posted exit for a reference line.

    Returns None when nothing is posted (never exited, or already reversed),
    which makes repeated reversal requests harmless.
    """
    source = _check_source(source)
    reference_id = _clean_ref(reference_id)
    line_ref = _clean_ref(line_ref)
    if reference_id is None:
        raise ValidationError("reference_id is required to reverse an exit")
    occurred_dt = _resolve_occurred_on(occurred_on)

    def _op():
        original = _find_posted_exit(company_id, source, reference_id, line_ref)
        if original is None:
            return None
        holder, product = cost_ledger.load_holder(
            company_id,
            product_id=None if original.sku_id else original.product_id,
            sku_id=original.sku_id,
            lock=True,
            require_active=False,
        )
        result = _reverse_exit_inner(
            company_id=company_id, original=original, occurred_on=occurred_dt, note=note
        )
        _finish(holder, product, commit)
        return result

    result = run_with_retry(_op)
    if result is not None and commit:
        _notify(company_id, result.movement.product_id, result.movement.sku_id)
    return result


# =============================================================================
# ADJUSTMENTS
# =============================================================================

def record_adjustment(
    *,
    company_id: int,
    new_quantity: int,
    product_id: int | None = None,
    sku_id: int | None = None,
    new_average_cost=None,
    document: str | None = None,
    occurred_on=None,
    note: str | None = None,
    commit: bool = True,
) -> InventoryMovement:
    """
    Set a holder to a counted quantity, optionally revaluing its average cost.

    The quantity difference is posted as ADJUSTMENT_IN / ADJUSTMENT_OUT at the
    current average. An unchanged quantity is only accepted together with a new
    average cost, and is recorded as a zero-quantity REVALUATION.
    """
    cost = to_decimal(new_average_cost, "new_average_cost") if new_average_cost is not None else None
    enforce_rules_adjustment(new_quantity, cost)
    occurred_dt = _resolve_occurred_on(occurred_on)

    def _op():
        holder, product = cost_ledger.load_holder(
            company_id, product_id=product_id, sku_id=sku_id, lock=True
        )
        delta = new_quantity - int(holder.quantity_on_hand or 0)
        if delta == 0 and (cost is None or cost == Decimal(holder.average_cost or 0)):
            raise ValidationError("adjustment changes neither quantity nor average cost")

        change = cost_ledger.apply_adjustment(holder, new_quantity, cost)
        if delta > 0:
            reason = REASON_ADJUSTMENT_IN
        elif delta < 0:
            reason = REASON_ADJUSTMENT_OUT
        else:
            reason = REASON_REVALUATION

        movement = _build_movement(
            company_id=company_id,
            holder=holder,
            product=product,
            movement_type=MOVEMENT_ADJUSTMENT,
            reason=reason,
            source=SOURCE_MANUAL,
            quantity=abs(delta),
            quantity_delta=delta,
            change=change,
            occurred_on=occurred_dt,
            document=document,
            note=note,
        )
        db.session.flush()
        _finish(holder, product, commit)
        return movement

    movement = run_with_retry(_op)
    if commit:
        _notify(company_id, movement.product_id, movement.sku_id)
    return movement


# =============================================================================
# PURCHASES
# =============================================================================

def ensure_default_sku(product: Product) -> ProductSku:
    """
    SKU used when a purchase line names only a SKU-tracked product.

    Reuses the single active SKU when there is exactly one, otherwise the
    product's <code>-PADRAO SKU (created on first use).
    """
    active = [s for s in product.skus if s.is_active]
    if len(active) == 1:
        return active[0]

    code = f"{product.code}-{DEFAULT_SKU_SUFFIX}"
    sku = db.session.query(ProductSku).filter_by(company_id=product.company_id, sku_code=code).first()
    if sku is not None:
        return sku
    if active:
        raise ValidationError(f"product {product.code} has several SKUs; the purchase line must name one")

    sku = ProductSku(
        company_id=product.company_id,
        product_id=product.id,
        sku_code=code,
        variation={"default": True},
        quantity_on_hand=0,
        average_cost=0,
    )
    db.session.add(sku)
    db.session.flush()
    return sku


def process_purchase(*, company_id: int, purchase: dict) -> dict:
    """
    Post every line of a received purchase as a stock entry.

    purchase: {"id", "date", "document", "items": [{"product_id" | "sku_id",
    "quantity", "unit_cost"}, ...]}

    Lines already posted for this purchase id are skipped, so reprocessing a
    purchase is harmless. Line failures are isolated and reported.
    """
    purchase_id = _clean_ref(purchase.get("id"))
    if purchase_id is None:
        raise ValidationError("purchase id is required")
    items = purchase.get("items") or []
    occurred_dt = _resolve_occurred_on(purchase.get("date"))
    document = purchase.get("document")

    posted = 0
    skipped = 0
    errors: list[dict] = []

    for index, item in enumerate(items, start=1):
        line_ref = _clean_ref(item.get("line_ref")) or str(index)
        already = db.session.query(InventoryMovement.id).filter_by(
            company_id=company_id,
            source=SOURCE_PURCHASE,
            reference_id=purchase_id,
            line_ref=line_ref,
        ).first()
        if already is not None:
            skipped += 1
            continue

        nested = db.session.begin_nested()
        try:
            product_id = item.get("product_id")
            sku_id = item.get("sku_id")
            if sku_id is None and product_id is not None:
                product = db.session.query(Product).filter_by(id=product_id, company_id=company_id).first()
                if product is None:
                    raise ValidationError("product not found")
                if product.track_by_sku:
                    sku_id = ensure_default_sku(product).id
                    product_id = None

            record_entry(
                company_id=company_id,
                product_id=product_id,
                sku_id=sku_id,
                quantity=as_int(item.get("quantity"), "quantity"),
                unit_cost=item.get("unit_cost"),
                source=SOURCE_PURCHASE,
                reference_id=purchase_id,
                line_ref=line_ref,
                document=document,
                occurred_on=occurred_dt,
                commit=False,
            )
            nested.commit()
            posted += 1
        except ValueError as exc:
            nested.rollback()
            errors.append({"line": line_ref, "error": str(exc)})

    db.session.commit()
    current_app.logger.info(
        "Purchase %s posted: %s entries, %s skipped, %s errors",
        purchase_id, posted, skipped, len(errors),
    )
    return {"purchase_id": purchase_id, "entries_posted": posted, "skipped": skipped, "errors": errors}


# =============================================================================
# QUERIES
# =============================================================================

def list_movements(
    *,
    company_id: int,
    product_id: int | None = None,
    sku_id: int | None = None,
    start: date | None = None,
    end: date | None = None,
    limit: int = 200,
):
    q = db.session.query(InventoryMovement).filter_by(company_id=company_id)
    if product_id is not None:
        q = q.filter(InventoryMovement.product_id == product_id)
    if sku_id is not None:
        q = q.filter(InventoryMovement.sku_id == sku_id)
    if start is not None:
        q = q.filter(InventoryMovement.occurred_on >= start)
    if end is not None:
        q = q.filter(InventoryMovement.occurred_on <= end)

    return q.order_by(InventoryMovement.occurred_on.desc(), InventoryMovement.id.desc()).limit(limit).all()


def ledger_quantity(company_id: int, *, product_id: int | None = None, sku_id: int | None = None) -> int:
    """On-hand replayed from the movement log; equals the holder's quantity_on_hand."""
    q = db.session.query(func.coalesce(func.sum(InventoryMovement.quantity_delta), 0)).filter(
        InventoryMovement.company_id == company_id
    )
    if sku_id is not None:
        q = q.filter(InventoryMovement.sku_id == sku_id)
    else:
        q = q.filter(InventoryMovement.product_id == product_id)
    return int(q.scalar() or 0)


def stock_summary(company_id: int) -> dict:
    """
    Stock position across all stock holders of a company.

    Holders are SKUs of SKU-tracked products and the products themselves
    otherwise, so nothing is counted twice.
    """
    low_threshold = current_app.config.get("LOW_STOCK_THRESHOLD", 5)

    skus = (
        db.session.query(ProductSku)
        .join(Product, Product.id == ProductSku.product_id)
        .filter(
            ProductSku.company_id == company_id,
            ProductSku.is_active.is_(True),
            Product.track_by_sku.is_(True),
        )
        .all()
    )
    products = db.session.query(Product).filter_by(
        company_id=company_id, is_active=True, track_by_sku=False
    ).all()

    holders = list(skus) + list(products)
    total_units = 0
    total_value = Decimal("0")
    out_of_stock = 0
    low_stock = 0
    for holder in holders:
        qty = int(holder.quantity_on_hand or 0)
        total_units += qty
        if qty > 0:
            total_value += Decimal(holder.inventory_value or 0)
        if qty <= 0:
            out_of_stock += 1
        elif qty <= low_threshold:
            low_stock += 1

    return {
        "company_id": company_id,
        "holders": len(holders),
        "total_units": total_units,
        "stock_value": str(quantize_money(total_value)),
        "out_of_stock": out_of_stock,
        "low_stock": low_stock,
    }
