"""
Pytest fixtures for librosfera backend tests.

Provides test database setup, catalog/card factories, principals and
gateway identity headers for the test client.
"""

from datetime import timedelta

import pytest

from librosfera import create_app
from librosfera.extensions import db
from librosfera.models import Book, Card, Discount, Sale
from librosfera.principal import Principal, ROLE_ADMIN, ROLE_CUSTOMER
from librosfera.services import card_service, cart_service, sale_service, stock_service
from librosfera.time_utils import utcnow


TEST_CONFIG = {
    'TESTING': True,
    'SQLALCHEMY_DATABASE_URI': 'sqlite:///:memory:',
    'SQLALCHEMY_TRACK_MODIFICATIONS': False,
    'STOCK_CAS_BACKOFF_SECONDS': 0,
}


@pytest.fixture(scope='session')
def app():
    """Create application for testing."""
    app = create_app(TEST_CONFIG)

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
        # Clear all data but keep schema
        meta = db.metadata
        for table in reversed(meta.sorted_tables):
            db.session.execute(table.delete())
        db.session.commit()

        yield db.session

        # Cleanup after test
        db.session.rollback()


@pytest.fixture(scope='function')
def customer():
    return Principal(user_id="cliente-1", role=ROLE_CUSTOMER)


@pytest.fixture(scope='function')
def other_customer():
    return Principal(user_id="cliente-2", role=ROLE_CUSTOMER)


@pytest.fixture(scope='function')
def admin():
    return Principal(user_id="admin-1", role=ROLE_ADMIN)


@pytest.fixture(scope='function')
def make_book(db_session):
    """Factory: create a book, optionally with available stock."""
    counter = {"n": 0}

    def _make(title=None, price_cents=10000, stock=0, tax_percent=None):
        counter["n"] += 1
        book = Book(
            isbn=f"978000000{counter['n']:04d}",
            title=title or f"Libro {counter['n']}",
            author="Autor de prueba",
            price_cents=price_cents,
            tax_percent=tax_percent,
            is_active=True,
        )
        db_session.add(book)
        db_session.commit()
        if stock:
            stock_service.restock(book.id, stock, reason="Initial stock", actor_id="test")
        return book

    return _make


@pytest.fixture(scope='function')
def make_card(db_session):
    """Factory: register a card for a principal."""
    def _make(principal, balance_cents=0, kind="debito", expiry_year=None, is_default=False):
        return card_service.register_card(
            principal,
            kind=kind,
            brand="visa",
            holder_name="Titular de Prueba",
            last_digits="4242",
            expiry_month=12,
            expiry_year=expiry_year or utcnow().year + 3,
            balance_cents=balance_cents if kind == "debito" else 0,
            is_default=is_default,
        )

    return _make


@pytest.fixture(scope='function')
def make_discount(db_session):
    def _make(kind="porcentaje", value=10, code=None, book=None, min_quantity=2):
        discount = Discount(
            book_id=book.id if book else None,
            kind=kind,
            value=value,
            code=code,
            min_quantity=min_quantity,
            is_active=True,
        )
        db_session.add(discount)
        db_session.commit()
        return discount

    return _make


HOME_ADDRESS = {"calle": "Calle 10 # 5-20", "ciudad": "Bogotá"}


@pytest.fixture(scope='function')
def checkout(db_session):
    """Factory: fill the customer's cart and create a paid sale."""
    def _checkout(principal, card, lines, **kwargs):
        for book, qty in lines:
            cart_service.add_item(principal.user_id, book.id, qty)
        kwargs.setdefault("shipping_type", "domicilio")
        kwargs.setdefault("shipping_address", HOME_ADDRESS)
        return sale_service.create_sale(principal, card_id=card.card_id, **kwargs)

    return _checkout


def deliver(admin, sale, delivered_days_ago=0):
    """Drive a paid sale through shipment to entregado."""
    sale_service.update_shipment(admin, sale.number, "listo_para_envio")
    sale_service.update_shipment(admin, sale.number, "enviado", tracking_number="GUIA-1", carrier="Servientrega")
    sale = sale_service.update_shipment(admin, sale.number, "entregado")
    if delivered_days_ago:
        sale = Sale.query.filter_by(number=sale.number).first()
        sale.delivered_at = utcnow() - timedelta(days=delivered_days_ago)
        db.session.commit()
    return sale


def reload_card(card_id: str) -> Card:
    db.session.expire_all()
    return Card.query.filter_by(card_id=card_id).first()


def identity_headers(principal) -> dict:
    """Helper to create gateway identity headers."""
    return {'X-User-Id': principal.user_id, 'X-User-Role': principal.role}
