# Overview: Marketplace settlement and bank/card statement imports; de-duplicate by fingerprint, store rows, then categorize them.

from __future__ import annotations

from sqlalchemy.exc import IntegrityError
from flask import current_app

from ..extensions import db
from ..models import MarketplaceTransaction, MarketplaceTransactionItem, StatementTransaction
from ..text_utils import normalize_channel
from ..time_utils import parse_business_date
from ..validation import ValidationError, quantize_money, to_decimal
from .categorization_service import CategorizationCache, apply_categorization_batch
from .cash_ledger_service import SOURCE_BANK, SOURCE_CARD
from .hashing_service import (
    BatchHasher,
    HashingCancelled,
    find_existing_fingerprints,
    fingerprint_row,
    statement_row_fingerprinter,
)

"""
Row shape (already parsed from the channel's CSV/XLSX/API payload):

    {
        "transaction_date": "2024-03-01",
        "description": "Venda produto X",
        "order_id": "2000001",
        "transaction_type": "venda",          # optional
        "entry_kind": "CREDIT",               # optional, defaults from sign of net_amount
        "gross_amount": "120.00",             # optional
        "net_amount": "100.00",
        "items": [                            # optional, sold lines
            {"external_sku": "ABC-1", "quantity": 2, "unit_price": "50.00", ...}
        ]
    }

Rows whose fingerprint is already stored for the company, or repeats an
earlier row of the same batch, are skipped as duplicates. Invalid rows are
reported by position and never block the rest of the batch.
"""


def _clean_item(company_id: int, raw: dict) -> MarketplaceTransactionItem:
    quantity = raw.get("quantity", 1)
    if isinstance(quantity, bool):
        raise ValidationError("item quantity must be an integer")
    try:
        quantity = int(quantity)
    except (TypeError, ValueError):
        raise ValidationError("item quantity must be an integer")
    if quantity <= 0:
        raise ValidationError("item quantity must be > 0")

    unit_price = raw.get("unit_price")
    unit_price = quantize_money(to_decimal(unit_price, "unit_price")) if unit_price not in (None, "") else None
    total_price = raw.get("total_price")
    if total_price not in (None, ""):
        total_price = quantize_money(to_decimal(total_price, "total_price"))
    elif unit_price is not None:
        total_price = quantize_money(unit_price * quantity)
    else:
        total_price = None

    external_sku = (raw.get("external_sku") or "").strip() or None
    listing_id = (str(raw["listing_id"]).strip() if raw.get("listing_id") is not None else "") or None
    if external_sku is None and listing_id is None:
        raise ValidationError("item needs external_sku or listing_id")

    return MarketplaceTransactionItem(
        company_id=company_id,
        external_sku=external_sku,
        listing_id=listing_id,
        variant_id=(str(raw["variant_id"]).strip() if raw.get("variant_id") is not None else None) or None,
        description=(raw.get("description") or None),
        quantity=quantity,
        unit_price=unit_price,
        total_price=total_price,
        cost_status="PENDING",
    )


def _build_transaction(company_id: int, channel: str, row: dict, fingerprint: str) -> MarketplaceTransaction:
    try:
        transaction_date = parse_business_date(row.get("transaction_date"))
    except ValueError:
        raise ValidationError("transaction_date must be an ISO date")
    if transaction_date is None:
        raise ValidationError("transaction_date is required")

    description = (row.get("description") or "").strip()
    if not description:
        raise ValidationError("description is required")

    if row.get("net_amount") in (None, ""):
        raise ValidationError("net_amount is required")
    net_amount = quantize_money(to_decimal(row.get("net_amount"), "net_amount"))
    gross_amount = row.get("gross_amount")
    gross_amount = quantize_money(to_decimal(gross_amount, "gross_amount")) if gross_amount not in (None, "") else None

    entry_kind = (row.get("entry_kind") or "").upper() or ("CREDIT" if net_amount >= 0 else "DEBIT")
    if entry_kind not in ("CREDIT", "DEBIT"):
        raise ValidationError("entry_kind must be CREDIT or DEBIT")

    transaction = MarketplaceTransaction(
        company_id=company_id,
        channel=channel,
        transaction_date=transaction_date,
        description=description[:512],
        order_id=(str(row["order_id"]).strip() if row.get("order_id") is not None else None) or None,
        transaction_type=row.get("transaction_type") or None,
        entry_kind=entry_kind,
        gross_amount=gross_amount,
        net_amount=net_amount,
        status="IMPORTED",
        fingerprint=fingerprint,
    )
    for raw_item in row.get("items") or []:
        transaction.items.append(_clean_item(company_id, raw_item))
    return transaction


STATEMENT_ORIGINS = (SOURCE_BANK, SOURCE_CARD)


def _build_statement(company_id: int, origin: str, row: dict, fingerprint: str) -> StatementTransaction:
    try:
        transaction_date = parse_business_date(row.get("transaction_date"))
    except ValueError:
        raise ValidationError("transaction_date must be an ISO date")
    if transaction_date is None:
        raise ValidationError("transaction_date is required")

    description = (row.get("description") or "").strip()
    if not description:
        raise ValidationError("description is required")

    if row.get("amount") in (None, ""):
        raise ValidationError("amount is required")
    amount = quantize_money(to_decimal(row.get("amount"), "amount"))

    entry_kind = (row.get("entry_kind") or "").upper()
    if not entry_kind:
        # Card statements list charges as positive amounts
        if origin == SOURCE_CARD:
            entry_kind = "CREDIT" if amount < 0 else "DEBIT"
        else:
            entry_kind = "CREDIT" if amount >= 0 else "DEBIT"
    if entry_kind not in ("CREDIT", "DEBIT"):
        raise ValidationError("entry_kind must be CREDIT or DEBIT")

    return StatementTransaction(
        company_id=company_id,
        origin=origin,
        account_name=(row.get("account_name") or "").strip() or None,
        transaction_date=transaction_date,
        description=description[:512],
        establishment=(row.get("establishment") or "").strip()[:255] or None,
        amount=abs(amount),
        entry_kind=entry_kind,
        status="PENDING",
        fingerprint=fingerprint,
    )


def _hash_rows(rows: list[dict], fingerprint, on_progress, should_cancel) -> list[str | None] | None:
    """Fingerprints of rows, or None when the caller cancelled while hashing."""
    with BatchHasher(
        progress_every=current_app.config.get("HASH_PROGRESS_EVERY", 500),
        on_progress=on_progress,
        fingerprint=fingerprint,
    ) as hasher:
        try:
            return hasher.hash_all(rows, should_cancel=should_cancel)
        except HashingCancelled as exc:
            current_app.logger.info("Import hashing cancelled after %s of %s rows", exc.processed, exc.total)
            return None


def _store_rows(company_id: int, rows: list[dict], fingerprints, model, build, should_cancel) -> dict:
    seen = find_existing_fingerprints(company_id, fingerprints, model=model)
    inserted = []
    duplicates = 0
    errors: list[dict] = []
    cancelled = False

    for index, (row, fingerprint) in enumerate(zip(rows, fingerprints)):
        if should_cancel is not None and should_cancel():
            cancelled = True
            break
        if fingerprint is None:
            errors.append({"row": index, "error": "transaction_date and amount must be valid"})
            continue
        if fingerprint in seen:
            duplicates += 1
            continue

        nested = db.session.begin_nested()
        try:
            record = build(row, fingerprint)
            db.session.add(record)
            db.session.flush()
            nested.commit()
        except IntegrityError:
            # Same fingerprint stored concurrently
            nested.rollback()
            duplicates += 1
            seen.add(fingerprint)
            continue
        except ValueError as exc:
            nested.rollback()
            errors.append({"row": index, "error": str(exc)})
            continue

        seen.add(fingerprint)
        inserted.append(record)

    db.session.commit()
    return {"inserted": inserted, "duplicates": duplicates, "errors": errors, "cancelled": cancelled}


def _import(
    company_id: int,
    rows: list[dict],
    *,
    model,
    fingerprint,
    build,
    label: str,
    categorize: bool,
    cache: CategorizationCache | None,
    on_progress,
    should_cancel,
) -> dict:
    fingerprints = _hash_rows(rows, fingerprint, on_progress, should_cancel)
    if fingerprints is None:
        stored = {"inserted": [], "duplicates": 0, "errors": [], "cancelled": True}
    else:
        stored = _store_rows(company_id, rows, fingerprints, model, build, should_cancel)

    inserted = stored["inserted"]
    current_app.logger.info(
        "%s import for company %s: %s rows, %s inserted, %s duplicates, %s errors%s",
        label, company_id, len(rows), len(inserted), stored["duplicates"], len(stored["errors"]),
        " (cancelled)" if stored["cancelled"] else "",
    )

    categorization = None
    if categorize and inserted and not stored["cancelled"]:
        categorization = apply_categorization_batch(company_id, inserted, cache=cache, should_cancel=should_cancel)

    return {
        "received": len(rows),
        "inserted": len(inserted),
        "duplicates": stored["duplicates"],
        "errors": stored["errors"],
        "cancelled": stored["cancelled"],
        "transaction_ids": [record.id for record in inserted],
        "categorization": categorization,
    }


def ingest_marketplace_transactions(
    company_id: int,
    channel: str,
    rows: list[dict],
    *,
    categorize: bool = True,
    cache: CategorizationCache | None = None,
    on_progress=None,
    should_cancel=None,
) -> dict:
    """
    Import a batch of marketplace settlement rows.

    Returns counts plus the ids of inserted transactions. When categorize is
    set the new rows go straight through the categorization batch.
    should_cancel() is polled while the rows are hashed and before each row
    is stored.
    """
    channel = normalize_channel(channel)
    if not channel:
        raise ValidationError("channel is required")
    result = _import(
        company_id,
        list(rows or []),
        model=MarketplaceTransaction,
        fingerprint=fingerprint_row,
        build=lambda row, fp: _build_transaction(company_id, channel, row, fp),
        label=f"Marketplace ({channel})",
        categorize=categorize,
        cache=cache,
        on_progress=on_progress,
        should_cancel=should_cancel,
    )
    return {"channel": channel, **result}


def ingest_statement_transactions(
    company_id: int,
    origin: str,
    rows: list[dict],
    *,
    categorize: bool = True,
    cache: CategorizationCache | None = None,
    on_progress=None,
    should_cancel=None,
) -> dict:
    """
    Import bank (BANK) or credit card (CARD) statement lines.

    Same contract as ingest_marketplace_transactions. Row shape:

        {
            "transaction_date": "2024-04-03",
            "description": "PADARIA SAO JOAO",
            "establishment": "Padaria São João",   # optional
            "account_name": "Conta 1234",          # optional
            "amount": "23.90",
            "entry_kind": "DEBIT",                 # optional, see below
        }

    Without entry_kind, card lines are debits unless negative and bank
    lines are credits unless negative. Amounts are stored unsigned.
    """
    origin = (origin or "").strip().upper()
    if origin not in STATEMENT_ORIGINS:
        raise ValidationError("origin must be BANK or CARD")
    result = _import(
        company_id,
        list(rows or []),
        model=StatementTransaction,
        fingerprint=statement_row_fingerprinter(origin),
        build=lambda row, fp: _build_statement(company_id, origin, row, fp),
        label=f"Statement ({origin})",
        categorize=categorize,
        cache=cache,
        on_progress=on_progress,
        should_cancel=should_cancel,
    )
    return {"origin": origin, **result}
