"""
Company (tenant) context helpers.

Every engine operation runs for exactly one company. A missing, unknown or
inactive company is a configuration error: the request or command is aborted
before any read or write happens.

USAGE:
    from backoffice.services.tenant_service import require_company

    company = require_company(company_id)
"""

from ..extensions import db
from ..models import Company


class CompanyContextError(Exception):
    """Raised when no valid company context is available."""
    pass


def require_company(company_id) -> Company:
    """Return the active company or raise CompanyContextError."""
    if company_id is None or company_id == "":
        raise CompanyContextError("Company context is required")
    try:
        company_id = int(company_id)
    except (TypeError, ValueError):
        raise CompanyContextError("Company id must be an integer")

    company = db.session.get(Company, company_id)
    if company is None:
        raise CompanyContextError("Company not found")
    if not company.is_active:
        raise CompanyContextError("Company is inactive")
    return company


def create_company(name: str, code: str | None = None) -> Company:
    name = (name or "").strip()
    if not name:
        raise ValueError("name is required")
    code = code.strip().upper() if code else None
    if code and db.session.query(Company).filter_by(code=code).first():
        raise ValueError(f"company code {code} already exists")

    company = Company(name=name, code=code, is_active=True)
    db.session.add(company)
    db.session.commit()
    return company
