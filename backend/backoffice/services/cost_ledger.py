# Overview: Weighted-average cost ledger per product or SKU.

from __future__ import annotations

from dataclasses import dataclass
from decimal import Decimal

from flask import current_app

from ..extensions import db
from ..models import Product, ProductSku
from ..time_utils import utcnow
from ..validation import (
    ConflictError,
    ValidationError,
    quantize_cost,
    quantize_money,
    require_single_holder,
)
from .concurrency import lock_for_update
"""
Cost Ledger Invariants (authoritative)

Holders:
- A holder is either a Product (track_by_sku = False) or a ProductSku.
- Products with track_by_sku = True are never posted to directly; their
  quantity/cost is the aggregate of their active SKUs and is re-derived after
  every SKU change.

Weighted-average cost:
- Every holder keeps its exact stock value V next to (Q, C).
- ENTRY q @ c on (Q, V):
    Q' = Q + q
    V' = V + q*c               when Q > 0
    V' = q*c                   when Q <= 0 (empty or oversold stock restarts the average)
    C' = V' / Q'
  C is only ever derived from the exact V, so the average after a run of
  entries does not depend on the order they arrived in.
- EXIT q: Q' = Q - q, V' = V - q*C, C' = C. The cost recognized is C at the
  instant of the exit.
- Averages keep 6 decimal places; money totals (COGS, values) round half-up to cents.

Negative stock:
- NEGATIVE_STOCK_POLICY = "warn": the exit posts, is flagged and logged.
- NEGATIVE_STOCK_POLICY = "block": InsufficientStockError, nothing is written.
"""


ZERO = Decimal("0")
HUNDRED = Decimal("100")

NEGATIVE_STOCK_WARN = "warn"
NEGATIVE_STOCK_BLOCK = "block"


class InsufficientStockError(ConflictError):
    """Exit exceeds on-hand while the negative stock policy is "block"."""


@dataclass(frozen=True)
class CostSnapshot:
    unit_cost: Decimal
    quantity_on_hand: int


@dataclass(frozen=True)
class CostChange:
    """Before/after state of one holder for a single posting."""
    quantity_before: int
    quantity_after: int
    average_cost_before: Decimal
    average_cost_after: Decimal
    unit_cost: Decimal
    negative_stock: bool = False


@dataclass(frozen=True)
class Margin:
    gross_margin: Decimal
    margin_percent: Decimal | None


def _holder_cost(holder) -> Decimal:
    return Decimal(holder.average_cost or 0)


def _holder_value(holder) -> Decimal:
    if holder.inventory_value is None:
        return quantize_cost(int(holder.quantity_on_hand or 0) * _holder_cost(holder))
    return Decimal(holder.inventory_value)


def load_holder(
    company_id: int,
    *,
    product_id: int | None = None,
    sku_id: int | None = None,
    lock: bool = False,
    require_active: bool = True,
) -> tuple[Product | ProductSku, Product]:
    """
    Fetch the stock holder and its product, scoped to the company.

    With lock=True the SKU row is locked first, then its parent product, so
    two writers on sibling SKUs always acquire locks in the same order.
    """
    require_single_holder(product_id, sku_id)

    if sku_id is not None:
        query = db.session.query(ProductSku).filter_by(id=sku_id, company_id=company_id)
        if lock:
            query = lock_for_update(query)
        sku = query.first()
        if sku is None:
            raise ValidationError("sku not found")
        if require_active and not sku.is_active:
            raise ValidationError("sku is inactive")
        product_query = db.session.query(Product).filter_by(id=sku.product_id, company_id=company_id)
        if lock:
            product_query = lock_for_update(product_query)
        product = product_query.one()
        return sku, product

    query = db.session.query(Product).filter_by(id=product_id, company_id=company_id)
    if lock:
        query = lock_for_update(query)
    product = query.first()
    if product is None:
        raise ValidationError("product not found")
    if require_active and not product.is_active:
        raise ValidationError("product is inactive")
    if product.track_by_sku:
        raise ValidationError("product is tracked by SKU; post against one of its SKUs")
    return product, product


def get_current_cost(company_id: int, *, product_id: int | None = None, sku_id: int | None = None) -> CostSnapshot:
    """
    Current unit cost and on-hand quantity of a product or SKU.

    Unlike posting, reading a SKU-tracked product is allowed and returns its aggregate.
    """
    require_single_holder(product_id, sku_id)
    if sku_id is not None:
        holder = db.session.query(ProductSku).filter_by(id=sku_id, company_id=company_id).first()
        if holder is None:
            raise ValidationError("sku not found")
    else:
        holder = db.session.query(Product).filter_by(id=product_id, company_id=company_id).first()
        if holder is None:
            raise ValidationError("product not found")
    return CostSnapshot(unit_cost=_holder_cost(holder), quantity_on_hand=int(holder.quantity_on_hand or 0))


def apply_entry(holder, quantity: int, unit_cost: Decimal) -> CostChange:
    """Receive quantity units at unit_cost and re-average. Mutates holder."""
    old_qty = int(holder.quantity_on_hand or 0)
    old_cost = _holder_cost(holder)
    new_qty = old_qty + quantity
    received = quantize_cost(quantity * unit_cost)

    if old_qty <= 0:
        new_value = received
        new_cost = quantize_cost(unit_cost)
    else:
        new_value = _holder_value(holder) + received
        new_cost = quantize_cost(new_value / new_qty)

    holder.quantity_on_hand = new_qty
    holder.inventory_value = new_value
    holder.average_cost = new_cost
    holder.last_cost_update_at = utcnow()

    return CostChange(
        quantity_before=old_qty,
        quantity_after=new_qty,
        average_cost_before=old_cost,
        average_cost_after=new_cost,
        unit_cost=quantize_cost(unit_cost),
    )


def apply_exit(holder, quantity: int) -> CostChange:
    """
    Remove quantity units at the current average cost. Mutates holder.

    The average cost never changes on an exit.
    """
    old_qty = int(holder.quantity_on_hand or 0)
    cost = _holder_cost(holder)
    new_qty = old_qty - quantity
    negative = new_qty < 0

    if negative:
        policy = current_app.config.get("NEGATIVE_STOCK_POLICY", NEGATIVE_STOCK_WARN)
        if policy == NEGATIVE_STOCK_BLOCK:
            raise InsufficientStockError(
                f"insufficient stock: on hand {old_qty}, requested {quantity}"
            )
        current_app.logger.warning(
            "Negative stock on %s id=%s: on hand %s, exit %s",
            type(holder).__name__, holder.id, old_qty, quantity,
        )

    if new_qty <= 0:
        holder.inventory_value = quantize_cost(new_qty * cost)
    else:
        holder.inventory_value = _holder_value(holder) - quantize_cost(quantity * cost)
    holder.quantity_on_hand = new_qty

    return CostChange(
        quantity_before=old_qty,
        quantity_after=new_qty,
        average_cost_before=cost,
        average_cost_after=cost,
        unit_cost=cost,
        negative_stock=negative,
    )


def apply_adjustment(holder, new_quantity: int, new_average_cost: Decimal | None = None) -> CostChange:
    """
    Set the holder to a counted quantity and optionally a revalued cost. Mutates holder.

    Count differences alone never change the average cost.
    """
    old_qty = int(holder.quantity_on_hand or 0)
    old_cost = _holder_cost(holder)
    new_cost = quantize_cost(new_average_cost) if new_average_cost is not None else old_cost

    holder.quantity_on_hand = new_quantity
    holder.inventory_value = quantize_cost(new_quantity * new_cost)
    if new_cost != old_cost:
        holder.average_cost = new_cost
        holder.last_cost_update_at = utcnow()

    return CostChange(
        quantity_before=old_qty,
        quantity_after=new_quantity,
        average_cost_before=old_cost,
        average_cost_after=new_cost,
        unit_cost=new_cost,
    )


def refresh_product_aggregate(product: Product) -> None:
    """
    Re-derive a SKU-tracked product's quantity and cost from its active SKUs.

    Quantity is the plain sum; the cost is weighted by the quantity of SKUs
    holding positive stock. With no positive stock the last cost is kept.
    """
    if not product.track_by_sku:
        return

    skus = db.session.query(ProductSku).filter_by(product_id=product.id, is_active=True).all()
    total_qty = sum(int(s.quantity_on_hand or 0) for s in skus)
    stocked = [s for s in skus if (s.quantity_on_hand or 0) > 0]
    stocked_qty = sum(int(s.quantity_on_hand) for s in stocked)

    product.quantity_on_hand = total_qty
    product.inventory_value = sum((_holder_value(s) for s in skus), ZERO)
    if stocked_qty > 0:
        value = sum((_holder_value(s) for s in stocked), ZERO)
        new_cost = quantize_cost(value / stocked_qty)
        if new_cost != _holder_cost(product):
            product.average_cost = new_cost
            product.last_cost_update_at = utcnow()


def cost_of(quantity: int, unit_cost: Decimal) -> Decimal:
    """Money total for quantity units at unit_cost (half-up to cents)."""
    return quantize_money(Decimal(quantity) * unit_cost)


def calculate_margin(revenue: Decimal, cost: Decimal) -> Margin:
    """Gross margin of a sale; margin_percent is None when revenue is zero."""
    gross = quantize_money(revenue - cost)
    if revenue == ZERO:
        return Margin(gross_margin=gross, margin_percent=None)
    return Margin(gross_margin=gross, margin_percent=quantize_money(gross / revenue * HUNDRED))
