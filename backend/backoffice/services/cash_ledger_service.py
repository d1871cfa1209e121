# Overview: Unified cash ledger writes; one movement per source record, keyed by a deterministic reference.

from __future__ import annotations

import uuid
from datetime import date
from decimal import Decimal

from sqlalchemy import func
from sqlalchemy.exc import IntegrityError

from ..extensions import db
from ..models import CashMovement, Category, CostCenter
from ..time_utils import parse_business_date
from ..validation import ValidationError, enforce_rules_cash_movement, quantize_money, to_decimal

"""
Cash Ledger Invariants

- At most one CashMovement per (company, source, source_record_id).
- reference_id = UUID5(company:source:record_id): the same source record
  always maps to the same reference, in every process and on every run.
- register_cash_movement is an upsert; re-registering overwrites the
  movement's data and never inserts a second row.
- amount is always positive; kind carries the direction.
"""

KIND_INFLOW = "INFLOW"
KIND_OUTFLOW = "OUTFLOW"
KINDS = {KIND_INFLOW, KIND_OUTFLOW}

SOURCE_CARD = "CARD"
SOURCE_BANK = "BANK"
SOURCE_PAYABLE = "PAYABLE"
SOURCE_RECEIVABLE = "RECEIVABLE"
SOURCE_MARKETPLACE = "MARKETPLACE"
SOURCE_MANUAL = "MANUAL"
SOURCES = {SOURCE_CARD, SOURCE_BANK, SOURCE_PAYABLE, SOURCE_RECEIVABLE, SOURCE_MARKETPLACE, SOURCE_MANUAL}

REFERENCE_NAMESPACE = uuid.uuid5(uuid.NAMESPACE_URL, "backoffice:cash-movements")

_WRITABLE = (
    "kind",
    "movement_date",
    "description",
    "amount",
    "category_id",
    "category_name",
    "cost_center_id",
    "cost_center_name",
    "responsible_id",
    "payment_method",
    "customer_name",
    "supplier_name",
    "notes",
)


def reference_id_for(company_id: int, source: str, record_id) -> str:
    return str(uuid.uuid5(REFERENCE_NAMESPACE, f"{company_id}:{source}:{record_id}"))


def _name_of(model, company_id: int, row_id: int | None) -> str | None:
    if row_id is None:
        return None
    row = db.session.query(model).filter_by(id=row_id, company_id=company_id).first()
    if row is None:
        raise ValidationError(f"{model.__name__} {row_id} not found")
    return row.name


def _clean(company_id: int, source: str, data: dict) -> dict:
    source = (source or "").upper()
    if source not in SOURCES:
        raise ValidationError(f"source must be one of {sorted(SOURCES)}")

    kind = (data.get("kind") or "").upper()
    if kind not in KINDS:
        raise ValidationError("kind must be INFLOW or OUTFLOW")

    try:
        movement_date = parse_business_date(data.get("movement_date"))
    except ValueError:
        raise ValidationError("movement_date must be an ISO date")

    amount = data.get("amount")
    amount = quantize_money(to_decimal(amount, "amount")) if amount is not None else None
    enforce_rules_cash_movement(company_id=company_id, movement_date=movement_date, amount=amount)

    description = (data.get("description") or "").strip()
    if not description:
        raise ValidationError("description is required")

    cleaned = {
        "kind": kind,
        "movement_date": movement_date,
        "description": description[:512],
        "amount": amount,
        "category_id": data.get("category_id"),
        "cost_center_id": data.get("cost_center_id"),
        "responsible_id": data.get("responsible_id"),
        "payment_method": data.get("payment_method"),
        "customer_name": data.get("customer_name"),
        "supplier_name": data.get("supplier_name"),
        "notes": data.get("notes"),
    }
    cleaned["category_name"] = data.get("category_name") or _name_of(Category, company_id, cleaned["category_id"])
    cleaned["cost_center_name"] = data.get("cost_center_name") or _name_of(
        CostCenter, company_id, cleaned["cost_center_id"]
    )
    return cleaned


def _existing(company_id: int, source: str, record_id: str) -> CashMovement | None:
    return (
        db.session.query(CashMovement)
        .filter_by(company_id=company_id, source=source, source_record_id=record_id)
        .first()
    )


def register_cash_movement(
    *,
    company_id: int,
    source: str,
    source_record_id,
    data: dict,
    commit: bool = True,
) -> tuple[CashMovement, bool]:
    """
    Upsert the cash movement mirroring one source record.

    Returns (movement, created). A concurrent insert of the same reference
    loses on the unique constraint and is turned into an update.
    """
    cleaned = _clean(company_id, source, data)
    source = source.upper()
    record_id = str(source_record_id)

    movement = _existing(company_id, source, record_id)
    created = False
    if movement is None:
        nested = db.session.begin_nested()
        try:
            movement = CashMovement(
                company_id=company_id,
                source=source,
                source_record_id=record_id,
                reference_id=reference_id_for(company_id, source, record_id),
                **cleaned,
            )
            db.session.add(movement)
            db.session.flush()
            nested.commit()
            created = True
        except IntegrityError:
            nested.rollback()
            movement = _existing(company_id, source, record_id)
            if movement is None:
                raise

    if not created:
        for name in _WRITABLE:
            value = cleaned[name]
            if getattr(movement, name) != value:
                setattr(movement, name, value)

    if commit:
        db.session.commit()
    else:
        db.session.flush()
    return movement, created


def remove_cash_movement(*, company_id: int, source: str, source_record_id, commit: bool = True) -> bool:
    """Delete the movement mirroring a source record (e.g. a payment was undone)."""
    movement = _existing(company_id, (source or "").upper(), str(source_record_id))
    if movement is None:
        return False
    db.session.delete(movement)
    if commit:
        db.session.commit()
    return True


def list_cash_movements(
    *,
    company_id: int,
    start: date | None = None,
    end: date | None = None,
    source: str | None = None,
    kind: str | None = None,
    limit: int = 500,
) -> list[CashMovement]:
    q = db.session.query(CashMovement).filter(CashMovement.company_id == company_id)
    if start is not None:
        q = q.filter(CashMovement.movement_date >= start)
    if end is not None:
        q = q.filter(CashMovement.movement_date <= end)
    if source:
        q = q.filter(CashMovement.source == source.upper())
    if kind:
        q = q.filter(CashMovement.kind == kind.upper())
    return q.order_by(CashMovement.movement_date.desc(), CashMovement.id.desc()).limit(limit).all()


def cash_balance(*, company_id: int, start: date | None = None, end: date | None = None) -> dict:
    """Inflow, outflow and net totals over a period."""
    q = db.session.query(CashMovement.kind, func.count(CashMovement.id), func.coalesce(func.sum(CashMovement.amount), 0))
    q = q.filter(CashMovement.company_id == company_id)
    if start is not None:
        q = q.filter(CashMovement.movement_date >= start)
    if end is not None:
        q = q.filter(CashMovement.movement_date <= end)

    totals = {kind: (count, Decimal(str(total))) for kind, count, total in q.group_by(CashMovement.kind).all()}
    inflow = totals.get(KIND_INFLOW, (0, Decimal("0")))[1]
    outflow = totals.get(KIND_OUTFLOW, (0, Decimal("0")))[1]
    return {
        "movements": sum(count for count, _ in totals.values()),
        "inflow": str(quantize_money(inflow)),
        "outflow": str(quantize_money(outflow)),
        "net": str(quantize_money(inflow - outflow)),
    }
