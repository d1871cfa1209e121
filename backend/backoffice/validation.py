from __future__ import annotations
from datetime import date, datetime
from decimal import Decimal, InvalidOperation, ROUND_HALF_UP

from dataclasses import dataclass
from typing import Any

from sqlalchemy import Boolean, Date, DateTime, Integer, Numeric, String, Text
from sqlalchemy.orm import DeclarativeMeta

from .time_utils import parse_business_date, parse_iso_datetime


# Maximum monetary value accepted from clients: 999,999,999,999.99
MAX_AMOUNT = Decimal("999999999999.99")

CENTS = Decimal("0.01")
COST_PLACES = Decimal("0.000001")


class ValidationError(ValueError):
    """400-level input problem."""


class ConflictError(ValueError):
    """409-level business rule conflict (e.g., duplicate mapping)."""


def to_decimal(value: Any, field: str = "value") -> Decimal:
    """
    Coerce client or DB numbers to Decimal.

    Floats go through str() so 0.1 stays 0.1; bools are rejected.
    """
    if isinstance(value, Decimal):
        return value
    if isinstance(value, bool) or value is None:
        raise ValidationError(f"{field} must be a number")
    if isinstance(value, (int, float)):
        return Decimal(str(value))
    if isinstance(value, str):
        stripped = value.strip()
        if not stripped:
            raise ValidationError(f"{field} must be a number")
        try:
            result = Decimal(stripped)
        except InvalidOperation:
            raise ValidationError(f"{field} must be a number")
        if not result.is_finite():
            raise ValidationError(f"{field} must be a finite number")
        return result
    raise ValidationError(f"{field} must be a number")


def quantize_money(value: Decimal) -> Decimal:
    """Round half-up to cents."""
    return value.quantize(CENTS, rounding=ROUND_HALF_UP)


def quantize_cost(value: Decimal) -> Decimal:
    """Running average costs keep six places so averaging stays order independent."""
    return value.quantize(COST_PLACES, rounding=ROUND_HALF_UP)


@dataclass(frozen=True)
class ModelValidationPolicy:
    """
    Central policy layer:
    - writable_fields: what clients are allowed to set
    - required_on_create: fields required for POST
    """
    writable_fields: set[str]
    required_on_create: set[str] = None  # type: ignore


def _columns_by_key(model: DeclarativeMeta) -> dict[str, Any]:
    mapper = model.__mapper__
    return {c.key: c for c in mapper.columns}


def _coerce_value(col, value: Any):
    coltype = col.type

    if value is None:
        return None

    # Integers - strict validation to reject floats and scientific notation
    if isinstance(coltype, Integer):
        if isinstance(value, int) and not isinstance(value, bool):
            return value
        if isinstance(value, str):
            stripped = value.strip()
            if not stripped:
                raise ValidationError(f"{col.key} must be an integer")
            if 'e' in stripped.lower():
                raise ValidationError(f"{col.key} must be a plain integer (scientific notation not allowed)")
            if '.' in stripped:
                raise ValidationError(f"{col.key} must be an integer (no decimals)")
            try:
                return int(stripped)
            except ValueError:
                raise ValidationError(f"{col.key} must be an integer")
        if isinstance(value, float):
            raise ValidationError(f"{col.key} must be an integer, not a decimal")
        raise ValidationError(f"{col.key} must be an integer")

    # Money and costs
    if isinstance(coltype, Numeric):
        amount = to_decimal(value, col.key)
        if abs(amount) > MAX_AMOUNT:
            raise ValidationError(f"{col.key} cannot exceed {MAX_AMOUNT}")
        return amount

    if isinstance(coltype, Boolean):
        if isinstance(value, bool):
            return value
        return bool(value)

    # DateTime is checked before Date; business dates are plain YYYY-MM-DD
    if isinstance(coltype, DateTime):
        if isinstance(value, datetime):
            return value
        if isinstance(value, str):
            try:
                dt = parse_iso_datetime(value)
            except ValueError:
                raise ValidationError(f"{col.key} must be an ISO-8601 datetime")
            if dt is None:
                raise ValidationError(f"{col.key} must be an ISO-8601 datetime")
            return dt
        raise ValidationError(f"{col.key} must be a datetime")

    if isinstance(coltype, Date):
        if isinstance(value, date):
            return parse_business_date(value)
        if isinstance(value, str):
            try:
                parsed = parse_business_date(value)
            except ValueError:
                raise ValidationError(f"{col.key} must be an ISO-8601 date")
            if parsed is None:
                raise ValidationError(f"{col.key} must be an ISO-8601 date")
            return parsed
        raise ValidationError(f"{col.key} must be a date")

    if isinstance(coltype, (String, Text)):
        return str(value).strip()

    return value


def validate_payload(
    *,
    model: DeclarativeMeta,
    payload: dict,
    policy: ModelValidationPolicy,
    partial: bool,
    extra_fields: set[str] | None = None,
) -> dict:
    """
    Validates + normalizes incoming JSON against:
    - SQLAlchemy column metadata (nullable, type, String length)
    - a policy allowlist (writable_fields)
    - required_on_create (if partial=False)
    Returns a cleaned patch dict with only writable fields.

    extra_fields are allowed keys that are not columns of the model; they are
    passed through untouched for the caller to interpret.
    """
    if payload is None:
        payload = {}
    if not isinstance(payload, dict):
        raise ValidationError("Invalid JSON payload")

    extra_fields = extra_fields or set()
    required = policy.required_on_create or set()
    if not partial:
        missing = sorted(f for f in required if payload.get(f) is None)
        if missing:
            raise ValidationError(f"Missing required fields: {', '.join(missing)}")

    cols = _columns_by_key(model)

    for k in payload.keys():
        if k not in policy.writable_fields and k not in extra_fields:
            raise ValidationError(f"Field not allowed: {k}")
        if k not in cols and k not in extra_fields:
            raise ValidationError(f"Unknown field: {k}")

    patch: dict = {}

    for k, raw in payload.items():
        if k in extra_fields and k not in cols:
            patch[k] = raw
            continue

        col = cols[k]

        if raw is None:
            if not col.nullable:
                raise ValidationError(f"{k} cannot be null")
            patch[k] = None
            continue

        val = _coerce_value(col, raw)

        if isinstance(col.type, (String, Text)) and not col.nullable:
            if isinstance(val, str) and val == "":
                raise ValidationError(f"{k} cannot be blank")

        if isinstance(col.type, String) and col.type.length and isinstance(val, str):
            if len(val) > col.type.length:
                raise ValidationError(f"{k} exceeds max length {col.type.length}")

        patch[k] = val

    return patch


def require_single_holder(product_id: int | None, sku_id: int | None) -> None:
    """Stock is posted against exactly one holder: a product or one of its SKUs."""
    if (product_id is None) == (sku_id is None):
        raise ValidationError("exactly one of product_id or sku_id is required")


def enforce_rules_entry(quantity: int, unit_cost: Decimal) -> None:
    if quantity is None or quantity <= 0:
        raise ValidationError("quantity must be > 0 for ENTRY")
    if unit_cost is None:
        raise ValidationError("unit_cost is required for ENTRY")
    if unit_cost < 0:
        raise ValidationError("unit_cost must be >= 0")


def enforce_rules_exit(quantity: int) -> None:
    if quantity is None or quantity <= 0:
        raise ValidationError("quantity must be > 0 for EXIT")


def enforce_rules_adjustment(new_quantity: int, new_average_cost: Decimal | None) -> None:
    if new_quantity is None:
        raise ValidationError("new_quantity is required for ADJUSTMENT")
    if new_quantity < 0:
        raise ValidationError("new_quantity must be >= 0")
    if new_average_cost is not None and new_average_cost < 0:
        raise ValidationError("new_average_cost must be >= 0")


def enforce_rules_cash_movement(*, company_id, movement_date, amount) -> None:
    if not company_id:
        raise ValidationError("company_id is required")
    if movement_date is None:
        raise ValidationError("movement_date is required")
    if amount is None or amount <= 0:
        raise ValidationError("amount must be > 0")


def decimal_to_str(value: Decimal | None) -> str | None:
    """JSON form of money/cost columns; strings keep the exact scale."""
    if value is None:
        return None
    return str(value)
