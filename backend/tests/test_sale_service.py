"""
Sale orchestrator tests.

Verifies:
- checkout is all-or-nothing (stock, card and cart)
- failures after reservation release the stock and credit back any debit
- unconfirmed price drift blocks checkout
- shipment lifecycle, cancellation refunds and explicit restock
"""

import pytest
from sqlalchemy.exc import SQLAlchemyError

from librosfera.errors import (
    Forbidden,
    InsufficientBalance,
    InsufficientStock,
    InvalidCard,
    InvalidStateTransition,
    NotFound,
    PriceDrift,
    ValidationError,
)
from librosfera.extensions import db
from librosfera.models import ActivityLog, Cart, CardMovement, IdempotencyRecord, Sale, StockReservation
from librosfera.services import card_service, cart_service, sale_service, stock_service

from conftest import HOME_ADDRESS, deliver, reload_card


# =============================================================================
# CHECKOUT
# =============================================================================


class TestCreateSale:

    def test_successful_checkout(self, customer, make_book, make_card, checkout):
        book = make_book(price_cents=10000, stock=5, tax_percent=0)
        card = make_card(customer, balance_cents=50000)

        sale = checkout(customer, card, [(book, 2)])

        assert sale.state == "pagada"
        assert sale.payment_state == "aprobado"
        assert sale.total_cents == 20000 + 500
        assert sale.shipping_cost_cents == 500
        assert sale.number.startswith("VTA-")
        assert [e.to_state for e in sale.events if e.to_state] == ["creada", "pendiente_pago", "pagada"]

        stock = stock_service.get_stock(book.id)
        assert stock["available_qty"] == 3
        assert stock["reserved_qty"] == 0
        assert stock["sold_qty"] == 2
        assert reload_card(card.card_id).balance_cents == 50000 - 20500

        assert cart_service.get_active_cart(customer.user_id) is None
        assert Cart.query.filter_by(customer_id=customer.user_id).one().status == "convertido"
        assert ActivityLog.query.filter_by(entity_id=sale.number, action="venta_creada").count() == 1

    def test_snapshot_survives_price_change(self, customer, make_book, make_card, checkout):
        book = make_book(title="Rayuela", price_cents=10000, stock=5, tax_percent=0)
        card = make_card(customer, balance_cents=50000)
        sale = checkout(customer, card, [(book, 1)], shipping_type="recogida_tienda", store_id="T-1")

        book.price_cents = 99900
        book.title = "Otro titulo"
        db.session.commit()

        item = Sale.query.filter_by(number=sale.number).one().items[0]
        assert item.unit_price_cents == 10000
        assert item.title == "Rayuela"

    def test_empty_cart(self, customer, make_card):
        card = make_card(customer, balance_cents=50000)
        with pytest.raises(ValidationError):
            sale_service.create_sale(
                customer, card_id=card.card_id, shipping_type="domicilio", shipping_address=HOME_ADDRESS
            )

    def test_admin_cannot_checkout(self, admin):
        with pytest.raises(Forbidden):
            sale_service.create_sale(admin, card_id="X", shipping_type="recogida_tienda", store_id="T-1")

    def test_home_delivery_requires_address(self, customer, make_book, make_card):
        book = make_book(stock=5)
        card = make_card(customer, balance_cents=50000)
        cart_service.add_item(customer.user_id, book.id, 1)

        with pytest.raises(ValidationError):
            sale_service.create_sale(
                customer, card_id=card.card_id, shipping_type="domicilio", shipping_address={"calle": "x"}
            )

    def test_insufficient_balance_rolls_everything_back(self, customer, make_book, make_card, checkout):
        first = make_book(price_cents=10000, stock=5)
        second = make_book(price_cents=20000, stock=5)
        card = make_card(customer, balance_cents=1000)

        with pytest.raises(InsufficientBalance):
            checkout(customer, card, [(first, 1), (second, 1)])

        for book in (first, second):
            stock = stock_service.get_stock(book.id)
            assert stock["available_qty"] == 5
            assert stock["reserved_qty"] == 0
        assert StockReservation.query.filter_by(status="activa").count() == 0
        assert reload_card(card.card_id).balance_cents == 1000
        assert Sale.query.count() == 0
        assert len(cart_service.get_active_cart(customer.user_id).items) == 2

    def test_insufficient_stock_releases_earlier_lines(self, customer, make_book, make_card, checkout):
        first = make_book(price_cents=1000, stock=5)
        second = make_book(price_cents=1000, stock=2)
        card = make_card(customer, balance_cents=50000)
        cart_service.add_item(customer.user_id, first.id, 1)
        cart_service.add_item(customer.user_id, second.id, 2)
        # stock shrinks between adding to the cart and checking out
        stock_service.set_stock(second.id, 1, reason="Damaged copy")

        with pytest.raises(InsufficientStock):
            sale_service.create_sale(
                customer, card_id=card.card_id, shipping_type="domicilio", shipping_address=HOME_ADDRESS
            )

        assert stock_service.get_stock(first.id)["available_qty"] == 5
        assert stock_service.get_stock(first.id)["reserved_qty"] == 0
        assert CardMovement.query.count() == 0

    def test_failure_after_debit_credits_card_back(self, monkeypatch, customer, make_book, make_card, checkout):
        book = make_book(price_cents=10000, stock=5, tax_percent=0)
        card = make_card(customer, balance_cents=50000)

        def _boom(*args, **kwargs):
            raise RuntimeError("database went away")

        monkeypatch.setattr(sale_service, "_persist_sale", _boom)

        with pytest.raises(RuntimeError):
            checkout(customer, card, [(book, 1)])

        assert reload_card(card.card_id).balance_cents == 50000
        kinds = sorted(m.kind for m in CardMovement.query.all())
        assert kinds == ["credito", "debito"]
        assert stock_service.get_stock(book.id)["available_qty"] == 5
        assert Sale.query.count() == 0

    def test_price_drift_blocks_checkout(self, customer, make_book, make_card):
        book = make_book(price_cents=10000, stock=5)
        card = make_card(customer, balance_cents=50000)
        cart_service.add_item(customer.user_id, book.id, 1)
        book.price_cents = 11000
        db.session.commit()

        with pytest.raises(PriceDrift) as exc:
            sale_service.create_sale(
                customer, card_id=card.card_id, shipping_type="domicilio", shipping_address=HOME_ADDRESS
            )

        assert exc.value.details["changed_lines"][0]["current_price_cents"] == 11000
        assert stock_service.get_stock(book.id)["reserved_qty"] == 0

        cart_service.confirm_prices(customer.user_id)
        sale = sale_service.create_sale(
            customer, card_id=card.card_id, shipping_type="recogida_tienda", store_id="T-1"
        )
        assert sale.items[0].unit_price_cents == 11000

    def test_card_of_other_customer(self, customer, other_customer, make_book, make_card):
        book = make_book(stock=5)
        card = make_card(other_customer, balance_cents=50000)
        cart_service.add_item(customer.user_id, book.id, 1)

        with pytest.raises(NotFound):
            sale_service.create_sale(
                customer, card_id=card.card_id, shipping_type="recogida_tienda", store_id="T-1"
            )

    def test_inactive_card(self, customer, make_book, make_card):
        book = make_book(stock=5)
        card = make_card(customer, balance_cents=50000)
        card_service.deactivate_card(customer, card.card_id)
        cart_service.add_item(customer.user_id, book.id, 1)

        with pytest.raises(InvalidCard):
            sale_service.create_sale(
                customer, card_id=card.card_id, shipping_type="recogida_tienda", store_id="T-1"
            )
        assert stock_service.get_stock(book.id)["reserved_qty"] == 0

    def test_idempotency_key_returns_first_sale(self, customer, make_book, make_card, checkout):
        book = make_book(price_cents=1000, stock=5)
        card = make_card(customer, balance_cents=50000)

        first = checkout(customer, card, [(book, 1)], idempotency_key="k-1")
        again = sale_service.create_sale(
            customer, card_id=card.card_id, shipping_type="domicilio",
            shipping_address=HOME_ADDRESS, idempotency_key="k-1",
        )

        assert again.number == first.number
        assert Sale.query.count() == 1

    def test_cart_converted_meanwhile_is_compensated(self, monkeypatch, customer, make_book, make_card, checkout):
        """A cart closed by another checkout mid-flight releases stock and credits the card back."""
        book = make_book(price_cents=1000, stock=5, tax_percent=0)
        card = make_card(customer, balance_cents=50000)
        real_persist = sale_service._persist_sale

        def _converted_elsewhere(principal, number, cart_id, *args, **kwargs):
            cart_service.mark_converted(db.session.get(Cart, cart_id))
            db.session.commit()
            return real_persist(principal, number, cart_id, *args, **kwargs)

        monkeypatch.setattr(sale_service, "_persist_sale", _converted_elsewhere)

        with pytest.raises(InvalidStateTransition):
            checkout(customer, card, [(book, 2)], shipping_type="recogida_tienda", store_id="T-1")

        assert Sale.query.count() == 0
        assert reload_card(card.card_id).balance_cents == 50000
        stock = stock_service.get_stock(book.id)
        assert stock["available_qty"] == 5
        assert stock["reserved_qty"] == 0

    def test_failed_keyed_checkout_frees_the_key(self, customer, admin, make_book, make_card, checkout):
        book = make_book(price_cents=10000, stock=5, tax_percent=0)
        card = make_card(customer, balance_cents=100)

        with pytest.raises(InsufficientBalance):
            checkout(customer, card, [(book, 1)], shipping_type="recogida_tienda",
                     store_id="T-1", idempotency_key="k-2")

        card_service.set_absolute_balance(admin, card.card_id, 50000, "Recarga")
        sale = sale_service.create_sale(
            customer, card_id=card.card_id, shipping_type="recogida_tienda",
            store_id="T-1", idempotency_key="k-2",
        )

        assert sale.total_cents == 10000
        assert IdempotencyRecord.query.one().outcome == {"number": sale.number}


# =============================================================================
# SHIPMENT LIFECYCLE
# =============================================================================


class TestShipment:

    def test_full_lifecycle(self, customer, admin, make_book, make_card, checkout):
        book = make_book(stock=5)
        card = make_card(customer, balance_cents=50000)
        sale = checkout(customer, card, [(book, 1)])

        sale = deliver(admin, sale)

        assert sale.state == "entregado"
        assert sale.tracking_number == "GUIA-1"
        assert sale.shipped_at is not None
        assert sale.delivered_at is not None

    def test_shipping_requires_tracking(self, customer, admin, make_book, make_card, checkout):
        book = make_book(stock=5)
        card = make_card(customer, balance_cents=50000)
        sale = checkout(customer, card, [(book, 1)])
        sale_service.update_shipment(admin, sale.number, "listo_para_envio")

        with pytest.raises(ValidationError):
            sale_service.update_shipment(admin, sale.number, "enviado")

    def test_cannot_skip_states(self, customer, admin, make_book, make_card, checkout):
        book = make_book(stock=5)
        card = make_card(customer, balance_cents=50000)
        sale = checkout(customer, card, [(book, 1)])

        with pytest.raises(InvalidStateTransition):
            sale_service.update_shipment(admin, sale.number, "entregado")

    def test_customer_cannot_update_shipment(self, customer, make_book, make_card, checkout):
        book = make_book(stock=5)
        card = make_card(customer, balance_cents=50000)
        sale = checkout(customer, card, [(book, 1)])

        with pytest.raises(Forbidden):
            sale_service.update_shipment(customer, sale.number, "listo_para_envio")


# =============================================================================
# CANCELLATION / RESTOCK
# =============================================================================


class TestCancellation:

    def test_cancel_refunds_full_amount(self, customer, make_book, make_card, checkout):
        book = make_book(price_cents=10000, stock=5, tax_percent=0)
        card = make_card(customer, balance_cents=50000)
        sale = checkout(customer, card, [(book, 1)])

        sale = sale_service.cancel_sale(customer, sale.number, "Ya no lo necesito")

        assert sale.state == "cancelada"
        assert sale.payment_state == "reembolsado"
        assert sale.refunded_cents == sale.total_cents
        assert sale.cancelled_by_role == "cliente"
        assert reload_card(card.card_id).balance_cents == 50000
        # cancellation does not restock
        assert stock_service.get_stock(book.id)["available_qty"] == 4

    def test_cannot_cancel_delivered_sale(self, customer, admin, make_book, make_card, checkout):
        book = make_book(stock=5)
        card = make_card(customer, balance_cents=50000)
        sale = deliver(admin, checkout(customer, card, [(book, 1)]))

        with pytest.raises(InvalidStateTransition):
            sale_service.cancel_sale(customer, sale.number, "Tarde")

    def test_other_customer_sees_not_found(self, customer, other_customer, make_book, make_card, checkout):
        book = make_book(stock=5)
        card = make_card(customer, balance_cents=50000)
        sale = checkout(customer, card, [(book, 1)])

        with pytest.raises(NotFound):
            sale_service.cancel_sale(other_customer, sale.number, "No es mia")

    def test_reason_required(self, customer, make_book, make_card, checkout):
        book = make_book(stock=5)
        card = make_card(customer, balance_cents=50000)
        sale = checkout(customer, card, [(book, 1)])

        with pytest.raises(ValidationError):
            sale_service.cancel_sale(customer, sale.number, "  ")

    def test_activity_log_failure_does_not_block_cancellation(self, monkeypatch, caplog, customer, make_book, make_card, checkout):
        book = make_book(price_cents=10000, stock=5, tax_percent=0)
        card = make_card(customer, balance_cents=50000)
        sale = checkout(customer, card, [(book, 1)])
        real_add = db.session.add

        def _add(instance, *args, **kwargs):
            if isinstance(instance, ActivityLog):
                raise SQLAlchemyError("activity_log unavailable")
            return real_add(instance, *args, **kwargs)

        with monkeypatch.context() as m:
            m.setattr(db.session, "add", _add)
            cancelled = sale_service.cancel_sale(customer, sale.number, "Ya no lo necesito")

        assert cancelled.state == "cancelada"
        assert Sale.query.filter_by(number=sale.number).one().state == "cancelada"
        assert reload_card(card.card_id).balance_cents == 50000
        assert ActivityLog.query.filter_by(action="venta_cancelada").count() == 0
        assert "Activity log write failed" in caplog.text

    def test_restock_cancelled_sale_once(self, customer, admin, make_book, make_card, checkout):
        book = make_book(stock=5)
        card = make_card(customer, balance_cents=50000)
        sale = checkout(customer, card, [(book, 2)])
        sale_service.cancel_sale(admin, sale.number, "Fraude")

        sale_service.restock_cancelled_sale(admin, sale.number, "Vuelve al estante")
        sale = sale_service.restock_cancelled_sale(admin, sale.number, "Vuelve al estante")

        assert sale.restocked_at is not None
        assert stock_service.get_stock(book.id)["available_qty"] == 5

    def test_restock_requires_cancelled_sale(self, customer, admin, make_book, make_card, checkout):
        book = make_book(stock=5)
        card = make_card(customer, balance_cents=50000)
        sale = checkout(customer, card, [(book, 1)])

        with pytest.raises(InvalidStateTransition):
            sale_service.restock_cancelled_sale(admin, sale.number, "x")


class TestQueries:

    def test_customer_lists_only_own_sales(self, customer, other_customer, make_book, make_card, checkout):
        book = make_book(stock=5)
        checkout(customer, make_card(customer, balance_cents=50000), [(book, 1)])
        checkout(other_customer, make_card(other_customer, balance_cents=50000), [(book, 1)])

        sales, total = sale_service.list_customer_sales(customer)

        assert total == 1
        assert sales[0].customer_id == customer.user_id

    def test_internal_note_hidden_from_customer_view(self, customer, admin, make_book, make_card, checkout):
        book = make_book(stock=5)
        sale = checkout(customer, make_card(customer, balance_cents=50000), [(book, 1)])

        sale = sale_service.add_internal_note(admin, sale.number, "Cliente llamo")

        assert any(e.internal and e.description == "Cliente llamo" for e in sale.events)
