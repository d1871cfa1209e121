# Overview: Category / cost center lookup by name, creating them on first use.

from __future__ import annotations

from ..extensions import db
from ..models import Category, CostCenter
from ..text_utils import normalize_name_key
from ..validation import ValidationError
from .concurrency import insert_or_fetch

"""
Names are matched exactly after trimming and lowercasing; no fuzzy or
substring matching, so "Frete" never lands on "Frete / Logística".
Creation relies on the (company_id, name_key) unique constraint: when two
writers race, the loser re-reads the winner's row.
"""

AUTO_CREATED_DESCRIPTION = "Created automatically by categorization"


def find_or_create_category(company_id: int, name: str, kind: str | None = None) -> Category:
    key = normalize_name_key(name)
    if not key:
        raise ValidationError("category name is required")

    def _fetch():
        return db.session.query(Category).filter_by(company_id=company_id, name_key=key).first()

    existing = _fetch()
    if existing is not None:
        return existing

    def _create():
        category = Category(
            company_id=company_id,
            name=name.strip(),
            name_key=key,
            kind=kind,
            description=AUTO_CREATED_DESCRIPTION,
            is_active=True,
        )
        db.session.add(category)
        db.session.flush()
        return category

    return insert_or_fetch(_create, _fetch)


def find_or_create_cost_center(company_id: int, name: str) -> CostCenter:
    key = normalize_name_key(name)
    if not key:
        raise ValidationError("cost center name is required")

    def _fetch():
        return db.session.query(CostCenter).filter_by(company_id=company_id, name_key=key).first()

    existing = _fetch()
    if existing is not None:
        return existing

    def _create():
        cost_center = CostCenter(
            company_id=company_id,
            name=name.strip(),
            name_key=key,
            description=AUTO_CREATED_DESCRIPTION,
            is_active=True,
        )
        db.session.add(cost_center)
        db.session.flush()
        return cost_center

    return insert_or_fetch(_create, _fetch)
