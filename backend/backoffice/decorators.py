# Overview: Request decorators for API routes.

from functools import wraps
from flask import request, jsonify, g

from .services.tenant_service import require_company, CompanyContextError


COMPANY_HEADER = "X-Company-Id"


def require_company_context(f):
    """
    Establish the company (tenant) context for the request.

    Reads the company id from the X-Company-Id header and sets:
    - g.company_id: validated company id
    - g.company: the Company row

    Returns 400 when the header is missing, malformed, or names an unknown
    or inactive company. Nothing downstream runs without a company.
    """
    @wraps(f)
    def decorated_function(*args, **kwargs):
        raw = request.headers.get(COMPANY_HEADER)
        try:
            company = require_company(raw)
        except CompanyContextError as e:
            return jsonify({"error": str(e)}), 400

        g.company = company
        g.company_id = company.id
        return f(*args, **kwargs)

    return decorated_function
