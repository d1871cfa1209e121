# backend/backoffice/routes/categorization.py
"""
Categorization routes: learn from a person's choice, suggest, reprocess.

The learned-rule cache lives on the app (app.extensions) so every request
of a worker shares it; learning and reprocessing clear the company's entry.
"""
from decimal import Decimal

from flask import Blueprint, request, g, current_app

from ..extensions import db
from ..models import CategorizationRule, Category, CostCenter, MarketplaceTransaction, StatementTransaction
from ..validation import ValidationError, to_decimal
from ..decorators import require_company_context
from ..services import categorization_service
from ..services.categorization_service import CategorizationCache, CategorizationInput


categorization_bp = Blueprint("categorization", __name__, url_prefix="/api/categorization")

CACHE_KEY = "categorization_cache"


def _cache() -> CategorizationCache:
    cache = current_app.extensions.get(CACHE_KEY)
    if cache is None:
        cache = CategorizationCache(ttl_seconds=current_app.config.get("CATEGORIZATION_CACHE_TTL", 300))
        current_app.extensions[CACHE_KEY] = cache
    return cache


def _result_dict(result) -> dict:
    if result is None:
        return {"matched": False}
    return {
        "matched": True,
        "category_id": result.category_id,
        "cost_center_id": result.cost_center_id,
        "responsible_id": result.responsible_id,
        "confidence": result.confidence,
        "rule": result.rule,
        "source": result.source,
        "transaction_type": result.transaction_type,
        "entry_kind": result.entry_kind,
    }


def _suggestion_subject(payload: dict):
    """A stored record (kind + transaction_id) or free-form text."""
    transaction_id = payload.get("transaction_id")
    if transaction_id is not None:
        model = StatementTransaction if payload.get("kind") == "statement" else MarketplaceTransaction
        record = db.session.query(model).filter_by(id=transaction_id, company_id=g.company_id).first()
        if record is None:
            raise LookupError("Transaction not found")
        return record

    description = (payload.get("description") or "").strip()
    if not description and not payload.get("establishment"):
        raise ValidationError("description or transaction_id is required")
    amount = payload.get("amount")
    return CategorizationInput(
        channel=payload.get("channel") or "bank",
        description=description,
        amount=to_decimal(amount, "amount") if amount is not None else Decimal("0"),
        entry_kind=payload.get("entry_kind"),
        establishment=payload.get("establishment"),
    )


@categorization_bp.post("/learn")
@require_company_context
def learn_route():
    """
    Remember a categorization for an establishment.

    Body: {"establishment", "category_id", "cost_center_id", "responsible_id"}
    """
    payload = request.get_json(silent=True) or {}
    try:
        rule = categorization_service.learn_categorization(
            g.company_id,
            payload.get("establishment"),
            category_id=payload.get("category_id"),
            cost_center_id=payload.get("cost_center_id"),
            responsible_id=payload.get("responsible_id"),
            cache=_cache(),
        )
    except ValueError as e:
        db.session.rollback()
        return {"error": str(e)}, 400
    return {"rule": rule.to_dict(), "confidence": categorization_service.learned_confidence(rule.usage_count)}, 200


@categorization_bp.post("/suggest")
@require_company_context
def suggest_route():
    """Suggest a category without saving anything on the transaction."""
    payload = request.get_json(silent=True) or {}
    try:
        subject = _suggestion_subject(payload)
        result = categorization_service.categorize(g.company_id, subject, cache=_cache())
        # Categories named by heuristics may have been created
        db.session.commit()
    except LookupError as e:
        return {"error": str(e)}, 404
    except ValueError as e:
        db.session.rollback()
        return {"error": str(e)}, 400
    return _result_dict(result), 200


@categorization_bp.post("/reprocess")
@require_company_context
def reprocess_route():
    """Re-run categorization over every unreconciled transaction of the company."""
    try:
        summary = categorization_service.reprocess_uncategorized(g.company_id, cache=_cache())
    except Exception:
        db.session.rollback()
        current_app.logger.exception("Categorization reprocess failed for company %s", g.company_id)
        return {"error": "Failed to reprocess categorization"}, 500
    return summary, 200


@categorization_bp.get("/rules")
@require_company_context
def list_rules_route():
    rules = (
        db.session.query(CategorizationRule)
        .filter_by(company_id=g.company_id, is_active=True)
        .order_by(CategorizationRule.usage_count.desc(), CategorizationRule.pattern)
        .all()
    )
    return {"items": [r.to_dict() for r in rules]}, 200


@categorization_bp.get("/categories")
@require_company_context
def list_categories_route():
    categories = db.session.query(Category).filter_by(company_id=g.company_id).order_by(Category.name).all()
    cost_centers = db.session.query(CostCenter).filter_by(company_id=g.company_id).order_by(CostCenter.name).all()
    return {
        "categories": [c.to_dict() for c in categories],
        "cost_centers": [c.to_dict() for c in cost_centers],
    }, 200
