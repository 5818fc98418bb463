"""
Pytest fixtures for back-office tests.

Provides the app, a clean seeded database per test, actors for every role and
factories for products, customers and orders.
"""

from decimal import Decimal
from types import SimpleNamespace
from uuid import uuid4

import pytest

from backoffice import create_app
from backoffice.auth import (
    ADMIN_FINANCE,
    ADMIN_GUDANG,
    CUSTOMER,
    DRIVER,
    KASIR,
    SUPER_ADMIN,
    SYSTEM_ACTOR,
    Actor,
)
from backoffice.extensions import db
from backoffice.models import User
from backoffice.services import account_service, inventory_service, order_service
from backoffice.services.tax_service import ensure_tax_defaults


@pytest.fixture(scope='session')
def app():
    """Create application for testing."""
    app = create_app({
        'TESTING': True,
        'SQLALCHEMY_DATABASE_URI': 'sqlite:///:memory:',
        'SQLALCHEMY_TRACK_MODIFICATIONS': False,
        'SWEEP_ENABLED': False,
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
    """Fresh database with the chart of accounts and tax defaults for each test."""
    with app.app_context():
        meta = db.metadata
        for table in reversed(meta.sorted_tables):
            db.session.execute(table.delete())
        db.session.commit()

        account_service.seed_chart_of_accounts()
        ensure_tax_defaults()
        db.session.commit()

        yield db.session

        db.session.rollback()


@pytest.fixture(scope='function')
def staff(db_session):
    """One persisted user per staff role, exposed as Actors."""
    users = {}
    for role, name in (
        (SUPER_ADMIN, "Owner"),
        (ADMIN_GUDANG, "Gudang"),
        (ADMIN_FINANCE, "Finance"),
        (KASIR, "Kasir"),
    ):
        user = User(name=name, role=role, status="active")
        db_session.add(user)
        users[role] = user
    db_session.commit()
    return SimpleNamespace(
        admin=Actor(users[SUPER_ADMIN].id, SUPER_ADMIN),
        warehouse=Actor(users[ADMIN_GUDANG].id, ADMIN_GUDANG),
        finance=Actor(users[ADMIN_FINANCE].id, ADMIN_FINANCE),
        kasir=Actor(users[KASIR].id, KASIR),
        system=SYSTEM_ACTOR,
    )


@pytest.fixture(scope='function')
def driver(db_session):
    """An active driver: the User row plus its Actor."""
    user = User(name="Driver Budi", role=DRIVER, status="active")
    db_session.add(user)
    db_session.commit()
    return SimpleNamespace(user=user, id=user.id, actor=Actor(user.id, DRIVER))


@pytest.fixture(scope='function')
def make_product(db_session):
    def _make(qty=10, price="10000", base_price="6000", sku=None, name=None):
        sku = sku or f"SKU-{uuid4().hex[:8]}"
        return inventory_service.create_product(
            sku=sku,
            name=name or f"Product {sku}",
            price=price,
            base_price=base_price,
            initial_qty=qty,
        )
    return _make


@pytest.fixture(scope='function')
def make_customer(db_session):
    def _make(name="Customer", discount_percent=Decimal("0"), whatsapp_number=None):
        user = User(
            name=name,
            role=CUSTOMER,
            status="active",
            discount_percent=discount_percent,
            whatsapp_number=whatsapp_number,
        )
        db_session.add(user)
        db_session.commit()
        return user
    return _make


@pytest.fixture(scope='function')
def customer(make_customer):
    return make_customer()


@pytest.fixture(scope='function')
def customer_actor(customer):
    return Actor(customer.id, CUSTOMER)


@pytest.fixture(scope='function')
def make_order(db_session, customer):
    """make_order([(product, qty), ...], payment_method=..., source=...) -> pending Order."""
    def _make(lines, payment_method="transfer_manual", source="web", discount_amount=0,
              shipping_fee=0, customer_id=None):
        return order_service.create_order(
            items=[{"product_id": product.id, "qty": qty} for product, qty in lines],
            actor=SYSTEM_ACTOR,
            customer_id=customer_id or customer.id,
            payment_method=payment_method,
            source=source,
            discount_amount=discount_amount,
            shipping_fee=shipping_fee,
        )
    return _make


@pytest.fixture(scope='function')
def headers_for():
    """Headers the upstream auth layer forwards for an authenticated actor."""
    def _headers(actor: Actor) -> dict:
        return {'X-Actor-Id': str(actor.id), 'X-Actor-Role': actor.role}
    return _headers
