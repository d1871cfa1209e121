"""
Pytest fixtures for backoffice engine tests.

Provides an in-memory app, per-test table cleanup, tenants, products and a
test client with the company header helper.
"""

from decimal import Decimal

import pytest
from backoffice import create_app
from backoffice.extensions import db
from backoffice.models import Company, Product, ProductSku
from backoffice.decorators import COMPANY_HEADER


@pytest.fixture(scope='session')
def app():
    """Create application for testing."""
    app = create_app({
        'TESTING': True,
        'SQLALCHEMY_DATABASE_URI': 'sqlite:///:memory:',
        'SQLALCHEMY_TRACK_MODIFICATIONS': False,
        'NEGATIVE_STOCK_POLICY': 'warn',
    })

    with app.app_context():
        db.create_all()
        yield app
        db.drop_all()


@pytest.fixture(scope='function')
def client(app):
    """Create test client."""
    return app.test_client()


@pytest.fixture(scope='function')
def db_session(app):
    """Create fresh database for each test."""
    with app.app_context():
        db.session.rollback()
        # Clear all data but keep schema
        meta = db.metadata
        for table in reversed(meta.sorted_tables):
            db.session.execute(table.delete())
        db.session.commit()
        app.extensions.pop("categorization_cache", None)
        app.config['NEGATIVE_STOCK_POLICY'] = 'warn'

        yield db.session

        # Cleanup after test
        db.session.rollback()


@pytest.fixture(scope='function')
def company_a(db_session):
    """Create Company A (first tenant)."""
    company = Company(name="Company A - Acme Ltda", code="ACME", is_active=True)
    db_session.add(company)
    db_session.commit()
    return company


@pytest.fixture(scope='function')
def company_b(db_session):
    """Create Company B (second tenant)."""
    company = Company(name="Company B - Beta SA", code="BETA", is_active=True)
    db_session.add(company)
    db_session.commit()
    return company


def make_product(db_session, company, code, name, *, track_by_sku=False, sale_price=None):
    product = Product(
        company_id=company.id,
        code=code,
        name=name,
        sale_price=Decimal(sale_price) if sale_price is not None else None,
        track_by_sku=track_by_sku,
    )
    db_session.add(product)
    db_session.commit()
    return product


def make_sku(db_session, product, sku_code, variation=None):
    sku = ProductSku(
        company_id=product.company_id,
        product_id=product.id,
        sku_code=sku_code,
        variation=variation,
    )
    db_session.add(sku)
    db_session.commit()
    return sku


@pytest.fixture(scope='function')
def product_a(db_session, company_a):
    """Plain product (no SKU tracking) in Company A."""
    return make_product(db_session, company_a, "CAM-001", "Camiseta Algodao Basica", sale_price="50.00")


@pytest.fixture(scope='function')
def sku_product_a(db_session, company_a):
    """SKU-tracked product with two variations in Company A."""
    product = make_product(db_session, company_a, "TEN-100", "Tenis Corrida Pro", track_by_sku=True)
    make_sku(db_session, product, "TEN-100-38", {"size": "38"})
    make_sku(db_session, product, "TEN-100-40", {"size": "40"})
    return product


def company_headers(company) -> dict:
    """Helper to create the tenant header for API calls."""
    return {COMPANY_HEADER: str(company.id)}
