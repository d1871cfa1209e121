from __future__ import annotations

from ..extensions import db
from ..time_utils import to_iso_date, to_utc_z
from ..validation import decimal_to_str


class MarketplaceProductMapping(db.Model):
    """
    Channel SKU -> internal product/SKU link.

    external_sku_key is the normalized lookup key (trimmed, uppercased);
    external_sku keeps the code as the channel sent it.
    is_automatic marks links created by the heuristic matcher; a manual link
    always takes precedence and is never overwritten by an automatic one.
    """
    __tablename__ = "marketplace_product_mappings"
    __table_args__ = (
        db.UniqueConstraint("company_id", "channel", "external_sku_key", name="uq_mp_mappings_company_channel_sku"),
        db.Index("ix_mp_mappings_product", "product_id"),
        {"sqlite_autoincrement": True},
    )

    id = db.Column(db.Integer, primary_key=True)
    company_id = db.Column(db.Integer, db.ForeignKey("companies.id"), nullable=False, index=True)
    channel = db.Column(db.String(64), nullable=False)

    external_sku = db.Column(db.String(128), nullable=False)
    external_sku_key = db.Column(db.String(128), nullable=False)
    listing_id = db.Column(db.String(128), nullable=True)
    variant_id = db.Column(db.String(128), nullable=True)
    listing_title = db.Column(db.String(255), nullable=True)

    product_id = db.Column(db.Integer, db.ForeignKey("products.id"), nullable=True)
    sku_id = db.Column(db.Integer, db.ForeignKey("product_skus.id"), nullable=True)

    is_automatic = db.Column(db.Boolean, nullable=False, default=False)
    is_active = db.Column(db.Boolean, nullable=False, default=True)

    created_at = db.Column(db.DateTime(timezone=True), nullable=False, server_default=db.func.now())
    updated_at = db.Column(
        db.DateTime(timezone=True),
        nullable=False,
        server_default=db.func.now(),
        onupdate=db.func.now(),
    )

    product = db.relationship("Product")
    sku = db.relationship("ProductSku")

    def __repr__(self) -> str:
        return f"<MarketplaceProductMapping id={self.id} channel={self.channel!r} sku={self.external_sku!r}>"

    def to_dict(self) -> dict:
        return {
            "id": self.id,
            "company_id": self.company_id,
            "channel": self.channel,
            "external_sku": self.external_sku,
            "listing_id": self.listing_id,
            "variant_id": self.variant_id,
            "listing_title": self.listing_title,
            "product_id": self.product_id,
            "sku_id": self.sku_id,
            "is_automatic": self.is_automatic,
            "is_active": self.is_active,
            "created_at": to_utc_z(self.created_at),
            "updated_at": to_utc_z(self.updated_at),
        }


class MarketplaceTransaction(db.Model):
    """
    Settlement event from a marketplace report (sale, fee, refund, payout...).

    STATUS: IMPORTED -> RECONCILED once categorized with enough confidence
    (or confirmed by a person). Only RECONCILED rows feed the cash ledger.
    fingerprint is the duplicate-detection hash of the source row.
    """
    __tablename__ = "marketplace_transactions"
    __table_args__ = (
        db.UniqueConstraint("company_id", "fingerprint", name="uq_mp_transactions_company_fingerprint"),
        db.Index("ix_mp_transactions_company_status", "company_id", "status"),
        db.Index("ix_mp_transactions_company_date", "company_id", "transaction_date"),
        {"sqlite_autoincrement": True},
    )

    id = db.Column(db.Integer, primary_key=True)
    company_id = db.Column(db.Integer, db.ForeignKey("companies.id"), nullable=False, index=True)
    channel = db.Column(db.String(64), nullable=False)

    transaction_date = db.Column(db.Date, nullable=False)
    description = db.Column(db.String(512), nullable=False)
    order_id = db.Column(db.String(128), nullable=True)
    transaction_type = db.Column(db.String(64), nullable=True)
    # CREDIT or DEBIT
    entry_kind = db.Column(db.String(8), nullable=False, default="CREDIT")

    gross_amount = db.Column(db.Numeric(14, 2), nullable=True)
    net_amount = db.Column(db.Numeric(14, 2), nullable=False)

    category_id = db.Column(db.Integer, db.ForeignKey("categories.id"), nullable=True)
    cost_center_id = db.Column(db.Integer, db.ForeignKey("cost_centers.id"), nullable=True)
    responsible_id = db.Column(db.Integer, db.ForeignKey("responsibles.id"), nullable=True)
    applied_rule = db.Column(db.String(128), nullable=True)
    confidence = db.Column(db.Integer, nullable=True)

    status = db.Column(db.String(16), nullable=False, default="IMPORTED", index=True)
    fingerprint = db.Column(db.String(64), nullable=True)

    created_at = db.Column(db.DateTime(timezone=True), nullable=False, server_default=db.func.now())
    updated_at = db.Column(
        db.DateTime(timezone=True),
        nullable=False,
        server_default=db.func.now(),
        onupdate=db.func.now(),
    )

    category = db.relationship("Category")
    cost_center = db.relationship("CostCenter")
    items = db.relationship(
        "MarketplaceTransactionItem",
        back_populates="transaction",
        lazy=True,
        order_by="MarketplaceTransactionItem.id",
    )

    def __repr__(self) -> str:
        return f"<MarketplaceTransaction id={self.id} channel={self.channel!r} net={self.net_amount} status={self.status}>"

    def to_dict(self, include_items: bool = False) -> dict:
        data = {
            "id": self.id,
            "company_id": self.company_id,
            "channel": self.channel,
            "transaction_date": to_iso_date(self.transaction_date),
            "description": self.description,
            "order_id": self.order_id,
            "transaction_type": self.transaction_type,
            "entry_kind": self.entry_kind,
            "gross_amount": decimal_to_str(self.gross_amount),
            "net_amount": decimal_to_str(self.net_amount),
            "category_id": self.category_id,
            "cost_center_id": self.cost_center_id,
            "responsible_id": self.responsible_id,
            "applied_rule": self.applied_rule,
            "confidence": self.confidence,
            "status": self.status,
            "fingerprint": self.fingerprint,
            "created_at": to_utc_z(self.created_at),
        }
        if include_items:
            data["items"] = [item.to_dict() for item in self.items]
        return data


class MarketplaceTransactionItem(db.Model):
    """
    Sold line inside a marketplace order.

    cost_status:
    - PENDING: not processed yet
    - COSTED: stock exit and COGS posted
    - NO_PRODUCT: SKU could not be resolved; needs a mapping
    - REVERSED: the exit was reversed (refund/cancellation)
    """
    __tablename__ = "marketplace_transaction_items"
    __table_args__ = (
        db.Index("ix_mp_items_transaction", "transaction_id"),
        db.Index("ix_mp_items_company_status", "company_id", "cost_status"),
        {"sqlite_autoincrement": True},
    )

    id = db.Column(db.Integer, primary_key=True)
    company_id = db.Column(db.Integer, db.ForeignKey("companies.id"), nullable=False, index=True)
    transaction_id = db.Column(db.Integer, db.ForeignKey("marketplace_transactions.id"), nullable=False)

    external_sku = db.Column(db.String(128), nullable=True)
    listing_id = db.Column(db.String(128), nullable=True)
    variant_id = db.Column(db.String(128), nullable=True)
    description = db.Column(db.String(512), nullable=True)

    quantity = db.Column(db.Integer, nullable=False, default=1)
    unit_price = db.Column(db.Numeric(14, 2), nullable=True)
    total_price = db.Column(db.Numeric(14, 2), nullable=True)

    product_id = db.Column(db.Integer, db.ForeignKey("products.id"), nullable=True)
    sku_id = db.Column(db.Integer, db.ForeignKey("product_skus.id"), nullable=True)

    cost_status = db.Column(db.String(16), nullable=False, default="PENDING")
    cost_message = db.Column(db.String(255), nullable=True)

    transaction = db.relationship("MarketplaceTransaction", back_populates="items")

    def __repr__(self) -> str:
        return f"<MarketplaceTransactionItem id={self.id} sku={self.external_sku!r} qty={self.quantity} status={self.cost_status}>"

    def to_dict(self) -> dict:
        return {
            "id": self.id,
            "transaction_id": self.transaction_id,
            "external_sku": self.external_sku,
            "listing_id": self.listing_id,
            "variant_id": self.variant_id,
            "description": self.description,
            "quantity": self.quantity,
            "unit_price": decimal_to_str(self.unit_price),
            "total_price": decimal_to_str(self.total_price),
            "product_id": self.product_id,
            "sku_id": self.sku_id,
            "cost_status": self.cost_status,
            "cost_message": self.cost_message,
        }
