from datetime import timedelta

from librosfera.cli import SEED_BOOKS
from librosfera.models import Book, Discount, IdempotencyRecord
from librosfera.services import idempotency_service, stock_service
from librosfera.time_utils import utcnow

from conftest import reload_card


def test_seed_catalog_is_idempotent(app, db_session):
    runner = app.test_cli_runner()

    first = runner.invoke(args=["catalog", "seed"])
    second = runner.invoke(args=["catalog", "seed"])

    assert first.exit_code == 0, first.output
    assert second.exit_code == 0, second.output
    assert Book.query.count() == len(SEED_BOOKS)
    assert Discount.query.filter_by(code="BIENVENIDA10").count() == 1

    isbn, _, _, _, qty = SEED_BOOKS[0]
    book = Book.query.filter_by(isbn=isbn).one()
    assert stock_service.get_stock(book.id)["available_qty"] == qty


def test_set_balance(app, customer, make_card):
    card = make_card(customer, balance_cents=100)
    runner = app.test_cli_runner()

    result = runner.invoke(args=["cards", "set-balance", card.card_id, "25000", "--reason", "Carga inicial"])

    assert result.exit_code == 0, result.output
    assert "100 -> 25000" in result.output
    assert reload_card(card.card_id).balance_cents == 25000


def test_set_balance_unknown_card(app, db_session):
    runner = app.test_cli_runner()

    result = runner.invoke(args=["cards", "set-balance", "CARDNOPE", "1", "--reason", "x"])

    assert result.exit_code != 0
    assert "Card not found" in result.output


def test_purge_idempotency(app, db_session):
    idempotency_service.complete("venta.crear", "cliente-1:k", {"number": "VTA-1"})
    record = IdempotencyRecord.query.one()
    record.expires_at = utcnow() - timedelta(days=1)
    db_session.commit()

    result = app.test_cli_runner().invoke(args=["maintenance", "purge-idempotency"])

    assert result.exit_code == 0, result.output
    assert IdempotencyRecord.query.count() == 0
