from __future__ import annotations

from sqlalchemy import event

from ..extensions import db
from ..time_utils import to_iso_date, to_utc_z
from ..validation import decimal_to_str


class ImmutableRecordError(Exception):
    """Raised when code tries to change or delete an append-only record."""


class Product(db.Model):
    """
    Product master data with its running weighted-average cost.

    MULTI-TENANT: Products are scoped to companies via company_id.

    COST DESIGN:
    - quantity_on_hand / average_cost are the live cost ledger for the product.
    - When track_by_sku is set, stock is posted against ProductSku rows and the
      product columns hold the aggregate of its active SKUs (sum of quantities,
      value-weighted average). Nothing posts to them directly.
    - inventory_value is the exact stock value (sum of q*c in, q*avg out);
      average_cost is derived from it and keeps 6 decimal places. Money totals
      round to cents.
    """
    __tablename__ = "products"
    __table_args__ = (
        db.UniqueConstraint("company_id", "code", name="uq_products_company_code"),
        db.Index("ix_products_company_name", "company_id", "name"),
        db.Index("ix_products_company_active", "company_id", "is_active"),
        {"sqlite_autoincrement": True},
    )

    id = db.Column(db.Integer, primary_key=True)
    company_id = db.Column(db.Integer, db.ForeignKey("companies.id"), nullable=False, index=True)

    code = db.Column(db.String(64), nullable=False)
    name = db.Column(db.String(255), nullable=False)
    unit = db.Column(db.String(16), nullable=False, default="UN")
    sale_price = db.Column(db.Numeric(14, 2), nullable=True)

    quantity_on_hand = db.Column(db.Integer, nullable=False, default=0)
    average_cost = db.Column(db.Numeric(18, 6), nullable=False, default=0)
    inventory_value = db.Column(db.Numeric(24, 6), nullable=False, default=0)
    last_cost_update_at = db.Column(db.DateTime(timezone=True), nullable=True)

    track_by_sku = db.Column(db.Boolean, nullable=False, default=False)
    is_active = db.Column(db.Boolean, nullable=False, default=True)

    version_id = db.Column(db.Integer, nullable=False, default=1)

    created_at = db.Column(db.DateTime(timezone=True), nullable=False, server_default=db.func.now())
    updated_at = db.Column(
        db.DateTime(timezone=True),
        nullable=False,
        server_default=db.func.now(),
        onupdate=db.func.now(),
    )

    company = db.relationship("Company", backref=db.backref("products", lazy=True))
    skus = db.relationship("ProductSku", back_populates="product", lazy=True, order_by="ProductSku.id")
    __mapper_args__ = {"version_id_col": version_id}

    def __repr__(self) -> str:
        return f"<Product id={self.id} code={self.code!r} name={self.name!r} company_id={self.company_id}>"

    def to_dict(self) -> dict:
        return {
            "id": self.id,
            "company_id": self.company_id,
            "code": self.code,
            "name": self.name,
            "unit": self.unit,
            "sale_price": decimal_to_str(self.sale_price),
            "quantity_on_hand": self.quantity_on_hand,
            "average_cost": decimal_to_str(self.average_cost),
            "inventory_value": decimal_to_str(self.inventory_value),
            "last_cost_update_at": to_utc_z(self.last_cost_update_at),
            "track_by_sku": self.track_by_sku,
            "is_active": self.is_active,
            "version_id": self.version_id,
            "created_at": to_utc_z(self.created_at),
            "updated_at": to_utc_z(self.updated_at),
        }


class ProductSku(db.Model):
    """
    Stock-keeping variant of a product (size, color, ...).

    Each SKU carries its own on-hand quantity and average cost. sku_code is
    unique within a company so marketplace codes can match it directly.
    """
    __tablename__ = "product_skus"
    __table_args__ = (
        db.UniqueConstraint("company_id", "sku_code", name="uq_product_skus_company_code"),
        db.Index("ix_product_skus_product_active", "product_id", "is_active"),
        {"sqlite_autoincrement": True},
    )

    id = db.Column(db.Integer, primary_key=True)
    company_id = db.Column(db.Integer, db.ForeignKey("companies.id"), nullable=False, index=True)
    product_id = db.Column(db.Integer, db.ForeignKey("products.id"), nullable=False, index=True)

    sku_code = db.Column(db.String(64), nullable=False)
    variation = db.Column(db.JSON, nullable=True)

    quantity_on_hand = db.Column(db.Integer, nullable=False, default=0)
    average_cost = db.Column(db.Numeric(18, 6), nullable=False, default=0)
    inventory_value = db.Column(db.Numeric(24, 6), nullable=False, default=0)
    last_cost_update_at = db.Column(db.DateTime(timezone=True), nullable=True)

    is_active = db.Column(db.Boolean, nullable=False, default=True)
    version_id = db.Column(db.Integer, nullable=False, default=1)

    created_at = db.Column(db.DateTime(timezone=True), nullable=False, server_default=db.func.now())
    updated_at = db.Column(
        db.DateTime(timezone=True),
        nullable=False,
        server_default=db.func.now(),
        onupdate=db.func.now(),
    )

    product = db.relationship("Product", back_populates="skus")
    __mapper_args__ = {"version_id_col": version_id}

    def __repr__(self) -> str:
        return f"<ProductSku id={self.id} sku_code={self.sku_code!r} product_id={self.product_id}>"

    def to_dict(self) -> dict:
        return {
            "id": self.id,
            "company_id": self.company_id,
            "product_id": self.product_id,
            "sku_code": self.sku_code,
            "variation": self.variation,
            "quantity_on_hand": self.quantity_on_hand,
            "average_cost": decimal_to_str(self.average_cost),
            "inventory_value": decimal_to_str(self.inventory_value),
            "last_cost_update_at": to_utc_z(self.last_cost_update_at),
            "is_active": self.is_active,
            "version_id": self.version_id,
        }


class InventoryMovement(db.Model):
    """
    Append-only stock movement.

    quantity is always positive; quantity_delta carries the sign so that
    SUM(quantity_delta) per holder reproduces the on-hand quantity.
    Before/after snapshots make every cost change auditable without replaying.
    """
    __tablename__ = "inventory_movements"
    __table_args__ = (
        db.Index("ix_inventory_movements_reference", "company_id", "source", "reference_id", "line_ref"),
        db.Index("ix_inventory_movements_product_date", "product_id", "occurred_on"),
        {"sqlite_autoincrement": True},
    )

    id = db.Column(db.Integer, primary_key=True)
    company_id = db.Column(db.Integer, db.ForeignKey("companies.id"), nullable=False, index=True)
    product_id = db.Column(db.Integer, db.ForeignKey("products.id"), nullable=False, index=True)
    sku_id = db.Column(db.Integer, db.ForeignKey("product_skus.id"), nullable=True, index=True)

    # ENTRY, EXIT, ADJUSTMENT
    type = db.Column(db.String(16), nullable=False, index=True)
    # PURCHASE, SALE, ADJUSTMENT_IN, ADJUSTMENT_OUT, REVALUATION, SALE_REVERSAL
    reason = db.Column(db.String(32), nullable=False)
    # PURCHASE, SALE, MARKETPLACE, MANUAL
    source = db.Column(db.String(16), nullable=False, default="MANUAL")
    reference_id = db.Column(db.String(64), nullable=True)
    line_ref = db.Column(db.String(64), nullable=True)
    document = db.Column(db.String(64), nullable=True)

    occurred_on = db.Column(db.Date, nullable=False, index=True)

    quantity = db.Column(db.Integer, nullable=False)
    quantity_delta = db.Column(db.Integer, nullable=False)
    unit_cost = db.Column(db.Numeric(18, 6), nullable=False)
    total_cost = db.Column(db.Numeric(14, 2), nullable=False)

    quantity_before = db.Column(db.Integer, nullable=False)
    quantity_after = db.Column(db.Integer, nullable=False)
    average_cost_before = db.Column(db.Numeric(18, 6), nullable=False)
    average_cost_after = db.Column(db.Numeric(18, 6), nullable=False)

    # Exit posted past zero under the "warn" negative stock policy
    negative_stock = db.Column(db.Boolean, nullable=False, default=False)
    note = db.Column(db.String(255), nullable=True)

    created_at = db.Column(db.DateTime(timezone=True), nullable=False, server_default=db.func.now())

    product = db.relationship("Product")
    sku = db.relationship("ProductSku")

    def __repr__(self) -> str:
        return f"<InventoryMovement id={self.id} type={self.type} qty={self.quantity_delta} product_id={self.product_id}>"

    def to_dict(self) -> dict:
        return {
            "id": self.id,
            "company_id": self.company_id,
            "product_id": self.product_id,
            "sku_id": self.sku_id,
            "type": self.type,
            "reason": self.reason,
            "source": self.source,
            "reference_id": self.reference_id,
            "line_ref": self.line_ref,
            "document": self.document,
            "occurred_on": to_iso_date(self.occurred_on),
            "quantity": self.quantity,
            "quantity_delta": self.quantity_delta,
            "unit_cost": decimal_to_str(self.unit_cost),
            "total_cost": decimal_to_str(self.total_cost),
            "quantity_before": self.quantity_before,
            "quantity_after": self.quantity_after,
            "average_cost_before": decimal_to_str(self.average_cost_before),
            "average_cost_after": decimal_to_str(self.average_cost_after),
            "negative_stock": self.negative_stock,
            "note": self.note,
            "created_at": to_utc_z(self.created_at),
        }


class CogsRecord(db.Model):
    """
    Cost of goods sold, one row per stock exit.

    Reversals are negative-quantity rows pointing at the reversing movement,
    so SUM(total_cost) over a period is always the net COGS.
    """
    __tablename__ = "cogs_records"
    __table_args__ = (
        db.Index("ix_cogs_records_company_date", "company_id", "occurred_on"),
        db.Index("ix_cogs_records_reference", "company_id", "source", "reference_id", "line_ref"),
        {"sqlite_autoincrement": True},
    )

    id = db.Column(db.Integer, primary_key=True)
    company_id = db.Column(db.Integer, db.ForeignKey("companies.id"), nullable=False, index=True)
    movement_id = db.Column(db.Integer, db.ForeignKey("inventory_movements.id"), nullable=False, unique=True)
    product_id = db.Column(db.Integer, db.ForeignKey("products.id"), nullable=False, index=True)
    sku_id = db.Column(db.Integer, db.ForeignKey("product_skus.id"), nullable=True)

    source = db.Column(db.String(16), nullable=False)
    reference_id = db.Column(db.String(64), nullable=True)
    line_ref = db.Column(db.String(64), nullable=True)
    channel = db.Column(db.String(64), nullable=True)
    occurred_on = db.Column(db.Date, nullable=False)

    quantity = db.Column(db.Integer, nullable=False)
    unit_cost_at_exit = db.Column(db.Numeric(18, 6), nullable=False)
    total_cost = db.Column(db.Numeric(14, 2), nullable=False)

    unit_sale_price = db.Column(db.Numeric(14, 2), nullable=True)
    revenue_total = db.Column(db.Numeric(14, 2), nullable=True)
    gross_margin = db.Column(db.Numeric(14, 2), nullable=True)
    margin_percent = db.Column(db.Numeric(7, 2), nullable=True)

    created_at = db.Column(db.DateTime(timezone=True), nullable=False, server_default=db.func.now())

    movement = db.relationship("InventoryMovement")
    product = db.relationship("Product")

    def __repr__(self) -> str:
        return f"<CogsRecord id={self.id} qty={self.quantity} total={self.total_cost} product_id={self.product_id}>"

    def to_dict(self) -> dict:
        return {
            "id": self.id,
            "company_id": self.company_id,
            "movement_id": self.movement_id,
            "product_id": self.product_id,
            "sku_id": self.sku_id,
            "source": self.source,
            "reference_id": self.reference_id,
            "line_ref": self.line_ref,
            "channel": self.channel,
            "occurred_on": to_iso_date(self.occurred_on),
            "quantity": self.quantity,
            "unit_cost_at_exit": decimal_to_str(self.unit_cost_at_exit),
            "total_cost": decimal_to_str(self.total_cost),
            "unit_sale_price": decimal_to_str(self.unit_sale_price),
            "revenue_total": decimal_to_str(self.revenue_total),
            "gross_margin": decimal_to_str(self.gross_margin),
            "margin_percent": decimal_to_str(self.margin_percent),
            "created_at": to_utc_z(self.created_at),
        }


@event.listens_for(InventoryMovement, "before_update")
@event.listens_for(CogsRecord, "before_update")
def prevent_record_update(mapper, connection, target):
    raise ImmutableRecordError(
        f"{type(target).__name__} {target.id} is append-only; post a compensating record instead"
    )


@event.listens_for(InventoryMovement, "before_delete")
@event.listens_for(CogsRecord, "before_delete")
def prevent_record_delete(mapper, connection, target):
    raise ImmutableRecordError(f"{type(target).__name__} {target.id} is append-only and cannot be deleted")
