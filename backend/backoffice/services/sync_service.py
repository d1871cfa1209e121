"""
Unified cash ledger synchronization

Mirrors settled financial records into the cash ledger:

    SOURCE        ELIGIBLE WHEN                                   KIND
    PAYABLE       status PAID                                     OUTFLOW
    RECEIVABLE    status RECEIVED / PARTIALLY_RECEIVED, amount>0  INFLOW
    MARKETPLACE   status RECONCILED, net amount != 0              by entry kind
    BANK / CARD   statement line RECONCILED                       by entry kind

Only records with no cash movement yet are scanned, and every write is an
upsert keyed by the deterministic reference, so running the sync twice
produces no new rows and an interrupted run can simply be restarted.
"""

from __future__ import annotations

from dataclasses import dataclass, field

from flask import current_app
from sqlalchemy import String, and_, cast, exists, func

from ..extensions import db
from ..models import (
    AccountPayable,
    AccountReceivable,
    CashMovement,
    MarketplaceTransaction,
    StatementTransaction,
)
from ..signals import ledger_refreshed
from .cash_ledger_service import (
    KIND_INFLOW,
    KIND_OUTFLOW,
    SOURCE_MARKETPLACE,
    SOURCE_PAYABLE,
    SOURCE_RECEIVABLE,
    register_cash_movement,
)


PAYABLE_PAID = "PAID"
RECEIVABLE_RECEIVED = ("RECEIVED", "PARTIALLY_RECEIVED")
RECONCILED = "RECONCILED"


@dataclass
class SyncResult:
    payables_synced: int = 0
    receivables_synced: int = 0
    marketplace_synced: int = 0
    statements_synced: int = 0
    errors: list[dict] = field(default_factory=list)
    cancelled: bool = False

    @property
    def total_synced(self) -> int:
        return self.payables_synced + self.receivables_synced + self.marketplace_synced + self.statements_synced

    def to_dict(self) -> dict:
        return {
            "payables_synced": self.payables_synced,
            "receivables_synced": self.receivables_synced,
            "marketplace_synced": self.marketplace_synced,
            "statements_synced": self.statements_synced,
            "total_synced": self.total_synced,
            "errors": self.errors,
            "cancelled": self.cancelled,
        }


def _not_synced(model, company_id: int, source):
    """NOT EXISTS (cash movement for this row). source may be a column expression."""
    return ~exists().where(
        and_(
            CashMovement.company_id == company_id,
            CashMovement.source == source,
            CashMovement.source_record_id == cast(model.id, String),
        )
    )


def _kind_for(entry_kind: str | None) -> str:
    return KIND_INFLOW if (entry_kind or "").upper() == "CREDIT" else KIND_OUTFLOW


# =============================================================================
# ELIGIBLE RECORD QUERIES
# =============================================================================

def _pending_payables(company_id: int):
    return db.session.query(AccountPayable).filter(
        AccountPayable.company_id == company_id,
        AccountPayable.status == PAYABLE_PAID,
        _not_synced(AccountPayable, company_id, SOURCE_PAYABLE),
    )


def _pending_receivables(company_id: int):
    return db.session.query(AccountReceivable).filter(
        AccountReceivable.company_id == company_id,
        AccountReceivable.status.in_(RECEIVABLE_RECEIVED),
        AccountReceivable.received_amount > 0,
        _not_synced(AccountReceivable, company_id, SOURCE_RECEIVABLE),
    )


def _pending_marketplace(company_id: int):
    return db.session.query(MarketplaceTransaction).filter(
        MarketplaceTransaction.company_id == company_id,
        MarketplaceTransaction.status == RECONCILED,
        MarketplaceTransaction.net_amount != 0,
        _not_synced(MarketplaceTransaction, company_id, SOURCE_MARKETPLACE),
    )


def _pending_statements(company_id: int):
    return db.session.query(StatementTransaction).filter(
        StatementTransaction.company_id == company_id,
        StatementTransaction.status == RECONCILED,
        StatementTransaction.amount != 0,
        _not_synced(StatementTransaction, company_id, func.upper(StatementTransaction.origin)),
    )


# =============================================================================
# RECORD -> CASH MOVEMENT
# =============================================================================

def _payable_movement(payable: AccountPayable) -> dict:
    return {
        "kind": KIND_OUTFLOW,
        "movement_date": payable.payment_date or payable.due_date,
        "description": payable.description,
        "amount": payable.paid_amount if payable.paid_amount else payable.total_amount,
        "category_id": payable.category_id,
        "cost_center_id": payable.cost_center_id,
        "payment_method": payable.payment_method,
        "supplier_name": payable.supplier_name,
        "notes": f"Document {payable.document}" if payable.document else None,
    }


def _receivable_movement(receivable: AccountReceivable) -> dict:
    return {
        "kind": KIND_INFLOW,
        "movement_date": receivable.receipt_date or receivable.due_date,
        "description": receivable.description,
        "amount": receivable.received_amount,
        "category_id": receivable.category_id,
        "cost_center_id": receivable.cost_center_id,
        "payment_method": receivable.receipt_method,
        "customer_name": receivable.customer_name,
        "notes": f"Document {receivable.document}" if receivable.document else None,
    }


def _marketplace_movement(transaction: MarketplaceTransaction) -> dict:
    return {
        "kind": _kind_for(transaction.entry_kind),
        "movement_date": transaction.transaction_date,
        "description": transaction.description,
        "amount": abs(transaction.net_amount),
        "category_id": transaction.category_id,
        "cost_center_id": transaction.cost_center_id,
        "responsible_id": transaction.responsible_id,
        "payment_method": transaction.channel,
        "notes": f"Order {transaction.order_id}" if transaction.order_id else None,
    }


def _statement_movement(line: StatementTransaction) -> dict:
    return {
        "kind": _kind_for(line.entry_kind),
        "movement_date": line.transaction_date,
        "description": line.establishment or line.description,
        "amount": abs(line.amount),
        "category_id": line.category_id,
        "cost_center_id": line.cost_center_id,
        "responsible_id": line.responsible_id,
        "notes": line.account_name,
    }


# =============================================================================
# SYNC
# =============================================================================

def sync_all_movements(company_id: int, *, should_cancel=None, chunk_size: int | None = None) -> SyncResult:
    """
    Create the missing cash movements for every settled record of a company.

    Each record is written on its own savepoint; a failing record lands in
    result.errors and the rest of the run continues. Work is committed every
    chunk_size records (SYNC_CHUNK_SIZE by default). should_cancel() is
    checked before each record; a cancelled run keeps what it committed.
    """
    chunk_size = chunk_size or current_app.config.get("SYNC_CHUNK_SIZE", 100)
    result = SyncResult()

    passes = (
        ("payables_synced", _pending_payables, lambda r: SOURCE_PAYABLE, _payable_movement),
        ("receivables_synced", _pending_receivables, lambda r: SOURCE_RECEIVABLE, _receivable_movement),
        ("marketplace_synced", _pending_marketplace, lambda r: SOURCE_MARKETPLACE, _marketplace_movement),
        ("statements_synced", _pending_statements, lambda r: (r.origin or "").upper(), _statement_movement),
    )

    written = 0
    for counter, query_for, source_of, build in passes:
        records = query_for(company_id).all()
        for record in records:
            if should_cancel is not None and should_cancel():
                result.cancelled = True
                break

            source = source_of(record)
            nested = db.session.begin_nested()
            try:
                register_cash_movement(
                    company_id=company_id,
                    source=source,
                    source_record_id=record.id,
                    data=build(record),
                    commit=False,
                )
                nested.commit()
            except Exception as exc:  # noqa: BLE001
                nested.rollback()
                result.errors.append({"source": source, "record_id": record.id, "error": str(exc)})
                current_app.logger.warning("Cash sync failed for %s %s: %s", source, record.id, exc)
                continue

            setattr(result, counter, getattr(result, counter) + 1)
            written += 1
            if written % chunk_size == 0:
                db.session.commit()

        if result.cancelled:
            break

    db.session.commit()
    current_app.logger.info(
        "Cash ledger sync for company %s: %s payables, %s receivables, %s marketplace, %s statements, %s errors%s",
        company_id,
        result.payables_synced,
        result.receivables_synced,
        result.marketplace_synced,
        result.statements_synced,
        len(result.errors),
        " (cancelled)" if result.cancelled else "",
    )
    ledger_refreshed.send(current_app._get_current_object(), company_id=company_id, result=result)
    return result


def count_pending_sync(company_id: int) -> dict:
    """Per source, how many eligible records still have no cash movement."""
    counts = {
        "payables": _pending_payables(company_id).count(),
        "receivables": _pending_receivables(company_id).count(),
        "marketplace": _pending_marketplace(company_id).count(),
        "statements": _pending_statements(company_id).count(),
    }
    counts["total"] = sum(counts.values())
    return counts
