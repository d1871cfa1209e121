# Overview: Read side of the COGS registry; feeds margin reporting.

from __future__ import annotations

from datetime import date
from decimal import Decimal

from sqlalchemy import func

from ..extensions import db
from ..models import CogsRecord
from ..validation import quantize_money
from .cost_ledger import calculate_margin


def _scoped(company_id: int, start: date | None, end: date | None, channel: str | None = None):
    q = db.session.query(CogsRecord).filter(CogsRecord.company_id == company_id)
    if start is not None:
        q = q.filter(CogsRecord.occurred_on >= start)
    if end is not None:
        q = q.filter(CogsRecord.occurred_on <= end)
    if channel is not None:
        q = q.filter(CogsRecord.channel == channel)
    return q


def list_cogs(
    *,
    company_id: int,
    start: date | None = None,
    end: date | None = None,
    product_id: int | None = None,
    channel: str | None = None,
    limit: int = 500,
):
    q = _scoped(company_id, start, end, channel)
    if product_id is not None:
        q = q.filter(CogsRecord.product_id == product_id)
    return q.order_by(CogsRecord.occurred_on.desc(), CogsRecord.id.desc()).limit(limit).all()


def cogs_summary(*, company_id: int, start: date | None = None, end: date | None = None, channel: str | None = None) -> dict:
    """
    Net COGS, revenue and gross margin for a period.

    Reversal rows are negative, so plain sums already net them out. Margin
    figures only consider records that carry revenue.
    """
    base = _scoped(company_id, start, end, channel)

    totals = base.with_entities(
        func.count(CogsRecord.id),
        func.coalesce(func.sum(CogsRecord.quantity), 0),
        func.coalesce(func.sum(CogsRecord.total_cost), 0),
    ).one()

    priced = base.filter(CogsRecord.revenue_total.isnot(None)).with_entities(
        func.coalesce(func.sum(CogsRecord.revenue_total), 0),
        func.coalesce(func.sum(CogsRecord.total_cost), 0),
    ).one()

    record_count, units, total_cost = totals
    revenue, priced_cost = (Decimal(str(v)) for v in priced)
    margin = calculate_margin(revenue, Decimal(str(priced_cost)))

    return {
        "company_id": company_id,
        "start": start.isoformat() if start else None,
        "end": end.isoformat() if end else None,
        "channel": channel,
        "records": int(record_count or 0),
        "units_sold": int(units or 0),
        "total_cogs": str(quantize_money(Decimal(str(total_cost)))),
        "revenue": str(quantize_money(revenue)),
        "gross_margin": str(margin.gross_margin),
        "margin_percent": str(margin.margin_percent) if margin.margin_percent is not None else None,
    }
