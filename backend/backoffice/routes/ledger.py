# Overview: Flask API routes for the unified cash ledger; parses input and returns JSON responses.

from flask import Blueprint, request, jsonify, g, current_app

from ..time_utils import parse_business_date
from ..decorators import require_company_context
from ..services import cash_ledger_service, ingestion_service, sync_service

"""
Date semantics:
- start / end are inclusive business dates (YYYY-MM-DD) on movement_date.
"""

ledger_bp = Blueprint("ledger", __name__, url_prefix="/api/ledger")


def _period_args():
    return parse_business_date(request.args.get("start")), parse_business_date(request.args.get("end"))


@ledger_bp.post("/sync")
@require_company_context
def sync_route():
    """Mirror every settled record that has no cash movement yet."""
    try:
        result = sync_service.sync_all_movements(g.company_id)
    except Exception:
        current_app.logger.exception("Cash ledger sync failed for company %s", g.company_id)
        return jsonify({"error": "Cash ledger sync failed"}), 500
    return jsonify(result.to_dict()), 200


@ledger_bp.get("/pending")
@require_company_context
def pending_route():
    return jsonify(sync_service.count_pending_sync(g.company_id)), 200


@ledger_bp.get("/cash-movements")
@require_company_context
def list_cash_movements_route():
    try:
        start, end = _period_args()
    except ValueError:
        return jsonify({"error": "start and end must be ISO dates"}), 400

    limit = request.args.get("limit", default=500, type=int)
    limit = max(1, min(limit, 5000))

    movements = cash_ledger_service.list_cash_movements(
        company_id=g.company_id,
        start=start,
        end=end,
        source=request.args.get("source"),
        kind=request.args.get("kind"),
        limit=limit,
    )
    return jsonify({"items": [m.to_dict() for m in movements], "limit": limit}), 200


@ledger_bp.post("/cash-movements")
@require_company_context
def register_cash_movement_route():
    """
    Register (or update) a manual cash movement.

    Body: {"source_record_id", "kind", "movement_date", "description", "amount", ...}
    The same source_record_id always updates the same movement.
    """
    payload = request.get_json(silent=True) or {}
    record_id = payload.get("source_record_id")
    if record_id is None or str(record_id).strip() == "":
        return jsonify({"error": "source_record_id is required"}), 400

    try:
        movement, created = cash_ledger_service.register_cash_movement(
            company_id=g.company_id,
            source=cash_ledger_service.SOURCE_MANUAL,
            source_record_id=str(record_id).strip(),
            data=payload,
        )
    except ValueError as e:
        return jsonify({"error": str(e)}), 400
    return jsonify({"movement": movement.to_dict(), "created": created}), 201 if created else 200


@ledger_bp.delete("/cash-movements/<source>/<record_id>")
@require_company_context
def remove_cash_movement_route(source: str, record_id: str):
    removed = cash_ledger_service.remove_cash_movement(
        company_id=g.company_id, source=source, source_record_id=record_id
    )
    if not removed:
        return jsonify({"error": "Cash movement not found"}), 404
    return jsonify({"removed": True}), 200


@ledger_bp.get("/balance")
@require_company_context
def balance_route():
    try:
        start, end = _period_args()
    except ValueError:
        return jsonify({"error": "start and end must be ISO dates"}), 400
    return jsonify(cash_ledger_service.cash_balance(company_id=g.company_id, start=start, end=end)), 200


@ledger_bp.post("/statements/import")
@require_company_context
def import_statements_route():
    """
    Import bank or card statement lines.

    Body: {"origin": "BANK" | "CARD", "rows": [...], "categorize": true}
    Duplicates (same fingerprint) are skipped and counted.
    """
    payload = request.get_json(silent=True) or {}
    rows = payload.get("rows")
    if not isinstance(rows, list):
        return jsonify({"error": "rows must be a list"}), 400
    try:
        result = ingestion_service.ingest_statement_transactions(
            g.company_id,
            payload.get("origin"),
            rows,
            categorize=bool(payload.get("categorize", True)),
        )
    except ValueError as e:
        return jsonify({"error": str(e)}), 400
    return jsonify(result), 200
