from __future__ import annotations

from ..extensions import db
from ..time_utils import to_iso_date, to_utc_z
from ..validation import decimal_to_str


class Category(db.Model):
    """
    Financial category (chart of accounts leaf).

    name_key is the lowercased, trimmed name; it is unique per company so
    find-or-create by name cannot produce duplicates under concurrency.
    """
    __tablename__ = "categories"
    __table_args__ = (
        db.UniqueConstraint("company_id", "name_key", name="uq_categories_company_name"),
        {"sqlite_autoincrement": True},
    )

    id = db.Column(db.Integer, primary_key=True)
    company_id = db.Column(db.Integer, db.ForeignKey("companies.id"), nullable=False, index=True)
    name = db.Column(db.String(128), nullable=False)
    name_key = db.Column(db.String(128), nullable=False)
    # Group such as "Receitas", "Custos", "Despesas Financeiras"
    kind = db.Column(db.String(64), nullable=True)
    description = db.Column(db.String(255), nullable=True)
    is_active = db.Column(db.Boolean, nullable=False, default=True)

    created_at = db.Column(db.DateTime(timezone=True), nullable=False, server_default=db.func.now())

    def __repr__(self) -> str:
        return f"<Category id={self.id} name={self.name!r}>"

    def to_dict(self) -> dict:
        return {
            "id": self.id,
            "company_id": self.company_id,
            "name": self.name,
            "kind": self.kind,
            "description": self.description,
            "is_active": self.is_active,
        }


class CostCenter(db.Model):
    __tablename__ = "cost_centers"
    __table_args__ = (
        db.UniqueConstraint("company_id", "name_key", name="uq_cost_centers_company_name"),
        {"sqlite_autoincrement": True},
    )

    id = db.Column(db.Integer, primary_key=True)
    company_id = db.Column(db.Integer, db.ForeignKey("companies.id"), nullable=False, index=True)
    name = db.Column(db.String(128), nullable=False)
    name_key = db.Column(db.String(128), nullable=False)
    description = db.Column(db.String(255), nullable=True)
    is_active = db.Column(db.Boolean, nullable=False, default=True)

    created_at = db.Column(db.DateTime(timezone=True), nullable=False, server_default=db.func.now())

    def __repr__(self) -> str:
        return f"<CostCenter id={self.id} name={self.name!r}>"

    def to_dict(self) -> dict:
        return {
            "id": self.id,
            "company_id": self.company_id,
            "name": self.name,
            "description": self.description,
            "is_active": self.is_active,
        }


class Responsible(db.Model):
    """Person or team accountable for a spend line."""
    __tablename__ = "responsibles"
    __table_args__ = {"sqlite_autoincrement": True}

    id = db.Column(db.Integer, primary_key=True)
    company_id = db.Column(db.Integer, db.ForeignKey("companies.id"), nullable=False, index=True)
    name = db.Column(db.String(128), nullable=False)
    is_active = db.Column(db.Boolean, nullable=False, default=True)

    def to_dict(self) -> dict:
        return {"id": self.id, "company_id": self.company_id, "name": self.name, "is_active": self.is_active}


class CategorizationRule(db.Model):
    """
    Learned establishment pattern -> category/cost center/responsible.

    pattern is stored already normalized (lowercase, no accents or punctuation).
    usage_count grows each time a person confirms the same pattern and drives
    the confidence of automatic matches.
    """
    __tablename__ = "categorization_rules"
    __table_args__ = (
        db.UniqueConstraint("company_id", "pattern", name="uq_categorization_rules_company_pattern"),
        {"sqlite_autoincrement": True},
    )

    id = db.Column(db.Integer, primary_key=True)
    company_id = db.Column(db.Integer, db.ForeignKey("companies.id"), nullable=False, index=True)
    pattern = db.Column(db.String(255), nullable=False)

    category_id = db.Column(db.Integer, db.ForeignKey("categories.id"), nullable=True)
    cost_center_id = db.Column(db.Integer, db.ForeignKey("cost_centers.id"), nullable=True)
    responsible_id = db.Column(db.Integer, db.ForeignKey("responsibles.id"), nullable=True)

    usage_count = db.Column(db.Integer, nullable=False, default=1)
    is_active = db.Column(db.Boolean, nullable=False, default=True)

    created_at = db.Column(db.DateTime(timezone=True), nullable=False, server_default=db.func.now())
    updated_at = db.Column(
        db.DateTime(timezone=True),
        nullable=False,
        server_default=db.func.now(),
        onupdate=db.func.now(),
    )

    def __repr__(self) -> str:
        return f"<CategorizationRule id={self.id} pattern={self.pattern!r} usage={self.usage_count}>"

    def to_dict(self) -> dict:
        return {
            "id": self.id,
            "company_id": self.company_id,
            "pattern": self.pattern,
            "category_id": self.category_id,
            "cost_center_id": self.cost_center_id,
            "responsible_id": self.responsible_id,
            "usage_count": self.usage_count,
            "is_active": self.is_active,
            "updated_at": to_utc_z(self.updated_at),
        }


class AccountPayable(db.Model):
    """
    Supplier bill. STATUS: OPEN -> PAID (or CANCELLED).
    A PAID bill is mirrored into the cash ledger as an OUTFLOW.
    """
    __tablename__ = "accounts_payable"
    __table_args__ = (
        db.Index("ix_accounts_payable_company_status", "company_id", "status"),
        {"sqlite_autoincrement": True},
    )

    id = db.Column(db.Integer, primary_key=True)
    company_id = db.Column(db.Integer, db.ForeignKey("companies.id"), nullable=False, index=True)
    supplier_name = db.Column(db.String(255), nullable=True)
    description = db.Column(db.String(512), nullable=False)
    document = db.Column(db.String(64), nullable=True)

    due_date = db.Column(db.Date, nullable=False)
    payment_date = db.Column(db.Date, nullable=True)
    total_amount = db.Column(db.Numeric(14, 2), nullable=False)
    paid_amount = db.Column(db.Numeric(14, 2), nullable=True)
    payment_method = db.Column(db.String(32), nullable=True)

    category_id = db.Column(db.Integer, db.ForeignKey("categories.id"), nullable=True)
    cost_center_id = db.Column(db.Integer, db.ForeignKey("cost_centers.id"), nullable=True)
    status = db.Column(db.String(16), nullable=False, default="OPEN")

    category = db.relationship("Category")
    cost_center = db.relationship("CostCenter")

    def to_dict(self) -> dict:
        return {
            "id": self.id,
            "company_id": self.company_id,
            "supplier_name": self.supplier_name,
            "description": self.description,
            "document": self.document,
            "due_date": to_iso_date(self.due_date),
            "payment_date": to_iso_date(self.payment_date),
            "total_amount": decimal_to_str(self.total_amount),
            "paid_amount": decimal_to_str(self.paid_amount),
            "payment_method": self.payment_method,
            "category_id": self.category_id,
            "cost_center_id": self.cost_center_id,
            "status": self.status,
        }


class AccountReceivable(db.Model):
    """
    Customer invoice. STATUS: OPEN -> PARTIALLY_RECEIVED -> RECEIVED (or CANCELLED).
    Received amounts are mirrored into the cash ledger as an INFLOW.
    """
    __tablename__ = "accounts_receivable"
    __table_args__ = (
        db.Index("ix_accounts_receivable_company_status", "company_id", "status"),
        {"sqlite_autoincrement": True},
    )

    id = db.Column(db.Integer, primary_key=True)
    company_id = db.Column(db.Integer, db.ForeignKey("companies.id"), nullable=False, index=True)
    customer_name = db.Column(db.String(255), nullable=True)
    description = db.Column(db.String(512), nullable=False)
    document = db.Column(db.String(64), nullable=True)

    due_date = db.Column(db.Date, nullable=False)
    receipt_date = db.Column(db.Date, nullable=True)
    total_amount = db.Column(db.Numeric(14, 2), nullable=False)
    received_amount = db.Column(db.Numeric(14, 2), nullable=True)
    receipt_method = db.Column(db.String(32), nullable=True)

    category_id = db.Column(db.Integer, db.ForeignKey("categories.id"), nullable=True)
    cost_center_id = db.Column(db.Integer, db.ForeignKey("cost_centers.id"), nullable=True)
    status = db.Column(db.String(24), nullable=False, default="OPEN")

    category = db.relationship("Category")
    cost_center = db.relationship("CostCenter")

    def to_dict(self) -> dict:
        return {
            "id": self.id,
            "company_id": self.company_id,
            "customer_name": self.customer_name,
            "description": self.description,
            "document": self.document,
            "due_date": to_iso_date(self.due_date),
            "receipt_date": to_iso_date(self.receipt_date),
            "total_amount": decimal_to_str(self.total_amount),
            "received_amount": decimal_to_str(self.received_amount),
            "receipt_method": self.receipt_method,
            "category_id": self.category_id,
            "cost_center_id": self.cost_center_id,
            "status": self.status,
        }


class StatementTransaction(db.Model):
    """
    Bank (origin=BANK) or credit card (origin=CARD) statement line.

    establishment is the counterpart text used for learned categorization.
    amount is stored unsigned; entry_kind carries the direction.
    fingerprint is the duplicate-detection hash of the imported row.
    """
    __tablename__ = "statement_transactions"
    __table_args__ = (
        db.UniqueConstraint("company_id", "fingerprint", name="uq_statement_transactions_company_fingerprint"),
        db.Index("ix_statement_transactions_company_status", "company_id", "origin", "status"),
        {"sqlite_autoincrement": True},
    )

    id = db.Column(db.Integer, primary_key=True)
    company_id = db.Column(db.Integer, db.ForeignKey("companies.id"), nullable=False, index=True)
    origin = db.Column(db.String(8), nullable=False)
    account_name = db.Column(db.String(128), nullable=True)

    transaction_date = db.Column(db.Date, nullable=False)
    description = db.Column(db.String(512), nullable=False)
    establishment = db.Column(db.String(255), nullable=True)
    amount = db.Column(db.Numeric(14, 2), nullable=False)
    entry_kind = db.Column(db.String(8), nullable=False, default="DEBIT")

    category_id = db.Column(db.Integer, db.ForeignKey("categories.id"), nullable=True)
    cost_center_id = db.Column(db.Integer, db.ForeignKey("cost_centers.id"), nullable=True)
    responsible_id = db.Column(db.Integer, db.ForeignKey("responsibles.id"), nullable=True)
    applied_rule = db.Column(db.String(128), nullable=True)
    confidence = db.Column(db.Integer, nullable=True)
    status = db.Column(db.String(16), nullable=False, default="PENDING")
    fingerprint = db.Column(db.String(64), nullable=True)

    category = db.relationship("Category")
    cost_center = db.relationship("CostCenter")

    def to_dict(self) -> dict:
        return {
            "id": self.id,
            "company_id": self.company_id,
            "origin": self.origin,
            "account_name": self.account_name,
            "transaction_date": to_iso_date(self.transaction_date),
            "description": self.description,
            "establishment": self.establishment,
            "amount": decimal_to_str(self.amount),
            "entry_kind": self.entry_kind,
            "category_id": self.category_id,
            "cost_center_id": self.cost_center_id,
            "responsible_id": self.responsible_id,
            "applied_rule": self.applied_rule,
            "confidence": self.confidence,
            "status": self.status,
            "fingerprint": self.fingerprint,
        }


class CashMovement(db.Model):
    """
    Unified cash ledger row (one per source record).

    reference_id is a deterministic UUID derived from company, source and
    source record id; together with the (company, source, source_record_id)
    constraint it makes re-synchronization an upsert instead of an insert.
    Category and cost center names are denormalized for reporting.
    """
    __tablename__ = "cash_movements"
    __table_args__ = (
        db.UniqueConstraint("company_id", "source", "source_record_id", name="uq_cash_movements_source_record"),
        db.UniqueConstraint("reference_id", name="uq_cash_movements_reference"),
        db.Index("ix_cash_movements_company_date", "company_id", "movement_date"),
        {"sqlite_autoincrement": True},
    )

    id = db.Column(db.Integer, primary_key=True)
    company_id = db.Column(db.Integer, db.ForeignKey("companies.id"), nullable=False, index=True)

    # INFLOW or OUTFLOW
    kind = db.Column(db.String(8), nullable=False)
    # CARD, BANK, PAYABLE, RECEIVABLE, MARKETPLACE, MANUAL
    source = db.Column(db.String(16), nullable=False)
    source_record_id = db.Column(db.String(64), nullable=False)
    reference_id = db.Column(db.String(36), nullable=False)

    movement_date = db.Column(db.Date, nullable=False)
    description = db.Column(db.String(512), nullable=False)
    amount = db.Column(db.Numeric(14, 2), nullable=False)

    category_id = db.Column(db.Integer, db.ForeignKey("categories.id"), nullable=True)
    category_name = db.Column(db.String(128), nullable=True)
    cost_center_id = db.Column(db.Integer, db.ForeignKey("cost_centers.id"), nullable=True)
    cost_center_name = db.Column(db.String(128), nullable=True)
    responsible_id = db.Column(db.Integer, db.ForeignKey("responsibles.id"), nullable=True)

    payment_method = db.Column(db.String(32), nullable=True)
    customer_name = db.Column(db.String(255), nullable=True)
    supplier_name = db.Column(db.String(255), nullable=True)
    notes = db.Column(db.String(512), nullable=True)

    created_at = db.Column(db.DateTime(timezone=True), nullable=False, server_default=db.func.now())
    updated_at = db.Column(
        db.DateTime(timezone=True),
        nullable=False,
        server_default=db.func.now(),
        onupdate=db.func.now(),
    )

    def __repr__(self) -> str:
        return f"<CashMovement id={self.id} {self.kind} {self.amount} source={self.source}:{self.source_record_id}>"

    def to_dict(self) -> dict:
        return {
            "id": self.id,
            "company_id": self.company_id,
            "kind": self.kind,
            "source": self.source,
            "source_record_id": self.source_record_id,
            "reference_id": self.reference_id,
            "movement_date": to_iso_date(self.movement_date),
            "description": self.description,
            "amount": decimal_to_str(self.amount),
            "category_id": self.category_id,
            "category_name": self.category_name,
            "cost_center_id": self.cost_center_id,
            "cost_center_name": self.cost_center_name,
            "responsible_id": self.responsible_id,
            "payment_method": self.payment_method,
            "customer_name": self.customer_name,
            "supplier_name": self.supplier_name,
            "notes": self.notes,
            "created_at": to_utc_z(self.created_at),
        }
