# backend/backoffice/routes/inventory.py
"""
Inventory costing routes.

All routes run inside a company context (X-Company-Id header).

Error mapping:
- ValidationError / ValueError -> 400
- ConflictError (duplicate reference, insufficient stock under "block") -> 409

Dates are business dates (YYYY-MM-DD).
"""
from flask import Blueprint, request, g, current_app

from ..models import InventoryMovement
from ..time_utils import parse_business_date
from ..validation import (
    ConflictError,
    ModelValidationPolicy,
    ValidationError,
    validate_payload,
)
from ..decorators import require_company_context
from ..services import cogs_service, cost_ledger, inventory_service


inventory_bp = Blueprint("inventory", __name__, url_prefix="/api/inventory")

ENTRY_POLICY = ModelValidationPolicy(
    writable_fields={
        "product_id",
        "sku_id",
        "quantity",
        "unit_cost",
        "source",
        "reference_id",
        "line_ref",
        "document",
        "occurred_on",
        "note",
    },
    required_on_create={"quantity", "unit_cost"},
)

EXIT_POLICY = ModelValidationPolicy(
    writable_fields={
        "product_id",
        "sku_id",
        "quantity",
        "source",
        "reference_id",
        "line_ref",
        "document",
        "occurred_on",
        "note",
    },
    required_on_create={"quantity"},
)

REVERSAL_POLICY = ModelValidationPolicy(
    writable_fields={"source", "reference_id", "line_ref", "occurred_on", "note"},
    required_on_create={"source", "reference_id"},
)

ADJUSTMENT_POLICY = ModelValidationPolicy(
    writable_fields={"product_id", "sku_id", "document", "occurred_on", "note"},
    required_on_create=set(),
)


def _holder_args() -> dict:
    return {
        "product_id": request.args.get("product_id", type=int),
        "sku_id": request.args.get("sku_id", type=int),
    }


def _date_arg(name: str):
    return parse_business_date(request.args.get(name))


def _limit_arg(default: int, maximum: int) -> int:
    limit = request.args.get("limit", default=default, type=int)
    return max(1, min(limit, maximum))


def _snapshot_dict(snapshot) -> dict:
    return {"unit_cost": str(snapshot.unit_cost), "quantity_on_hand": snapshot.quantity_on_hand}


def _cost_after(movement: InventoryMovement) -> dict:
    return {"unit_cost": str(movement.average_cost_after), "quantity_on_hand": movement.quantity_after}


@inventory_bp.post("/entries")
@require_company_context
def record_entry_route():
    """Receive stock (purchase or manual entry) and re-average the cost."""
    payload = request.get_json(silent=True) or {}
    try:
        patch = validate_payload(model=InventoryMovement, payload=payload, policy=ENTRY_POLICY, partial=False)
        movement = inventory_service.record_entry(company_id=g.company_id, **patch)
    except ConflictError as e:
        return {"error": str(e)}, 409
    except ValueError as e:
        return {"error": str(e)}, 400

    return {"movement": movement.to_dict(), "cost": _cost_after(movement)}, 201


@inventory_bp.post("/exits")
@require_company_context
def record_exit_route():
    """
    Remove stock and record COGS.

    Posting the same (source, reference_id, line_ref) again returns the
    existing exit with 200 instead of 201.
    """
    payload = request.get_json(silent=True) or {}
    try:
        patch = validate_payload(
            model=InventoryMovement,
            payload=payload,
            policy=EXIT_POLICY,
            partial=False,
            extra_fields={"unit_sale_price", "channel"},
        )
        result = inventory_service.record_exit(company_id=g.company_id, **patch)
    except ConflictError as e:
        return {"error": str(e)}, 409
    except ValueError as e:
        return {"error": str(e)}, 400

    body = {
        "movement": result.movement.to_dict(),
        "cogs": result.cogs.to_dict() if result.cogs is not None else None,
        "already_posted": result.already_posted,
        "cost": _cost_after(result.movement),
    }
    return body, 200 if result.already_posted else 201


@inventory_bp.post("/exits/reverse")
@require_company_context
def reverse_exit_route():
    payload = request.get_json(silent=True) or {}
    try:
        patch = validate_payload(model=InventoryMovement, payload=payload, policy=REVERSAL_POLICY, partial=False)
        result = inventory_service.reverse_exit(company_id=g.company_id, **patch)
    except ConflictError as e:
        return {"error": str(e)}, 409
    except ValueError as e:
        return {"error": str(e)}, 400

    if result is None:
        return {"error": "No posted exit for this reference"}, 404
    return {"movement": result.movement.to_dict(), "cogs": result.cogs.to_dict()}, 201


@inventory_bp.post("/adjustments")
@require_company_context
def record_adjustment_route():
    """Set a holder to a counted quantity, optionally with a new average cost."""
    payload = request.get_json(silent=True) or {}
    try:
        patch = validate_payload(
            model=InventoryMovement,
            payload=payload,
            policy=ADJUSTMENT_POLICY,
            partial=False,
            extra_fields={"new_quantity", "new_average_cost"},
        )
        if patch.get("new_quantity") is None:
            raise ValidationError("Missing required fields: new_quantity")
        patch["new_quantity"] = inventory_service.as_int(patch["new_quantity"], "new_quantity")
        movement = inventory_service.record_adjustment(company_id=g.company_id, **patch)
    except ConflictError as e:
        return {"error": str(e)}, 409
    except ValueError as e:
        return {"error": str(e)}, 400

    return {"movement": movement.to_dict(), "cost": _cost_after(movement)}, 201


@inventory_bp.post("/purchases")
@require_company_context
def process_purchase_route():
    """Post every line of a received purchase; lines already posted are skipped."""
    payload = request.get_json(silent=True) or {}
    try:
        result = inventory_service.process_purchase(company_id=g.company_id, purchase=payload)
    except ValueError as e:
        return {"error": str(e)}, 400
    return result, 200


@inventory_bp.get("/cost")
@require_company_context
def current_cost_route():
    try:
        snapshot = cost_ledger.get_current_cost(g.company_id, **_holder_args())
    except ValueError as e:
        return {"error": str(e)}, 400
    return _snapshot_dict(snapshot), 200


@inventory_bp.get("/movements")
@require_company_context
def list_movements_route():
    try:
        start = _date_arg("start")
        end = _date_arg("end")
    except ValueError:
        return {"error": "start and end must be ISO dates"}, 400

    movements = inventory_service.list_movements(
        company_id=g.company_id,
        start=start,
        end=end,
        limit=_limit_arg(200, 1000),
        **_holder_args(),
    )
    return {"items": [m.to_dict() for m in movements]}, 200


@inventory_bp.get("/cogs")
@require_company_context
def list_cogs_route():
    try:
        start = _date_arg("start")
        end = _date_arg("end")
    except ValueError:
        return {"error": "start and end must be ISO dates"}, 400

    records = cogs_service.list_cogs(
        company_id=g.company_id,
        start=start,
        end=end,
        product_id=request.args.get("product_id", type=int),
        channel=request.args.get("channel"),
        limit=_limit_arg(500, 5000),
    )
    return {"items": [r.to_dict() for r in records]}, 200


@inventory_bp.get("/cogs/summary")
@require_company_context
def cogs_summary_route():
    try:
        start = _date_arg("start")
        end = _date_arg("end")
    except ValueError:
        return {"error": "start and end must be ISO dates"}, 400

    return cogs_service.cogs_summary(
        company_id=g.company_id,
        start=start,
        end=end,
        channel=request.args.get("channel"),
    ), 200


@inventory_bp.get("/summary")
@require_company_context
def stock_summary_route():
    try:
        return inventory_service.stock_summary(g.company_id), 200
    except Exception:
        current_app.logger.exception("Stock summary failed for company %s", g.company_id)
        return {"error": "Failed to build stock summary"}, 500
