import pytest

from librosfera.errors import InsufficientStock, NotFound, ValidationError
from librosfera.extensions import db
from librosfera.services import cart_service


class TestCartLines:

    def test_add_merges_lines_and_keeps_add_time_price(self, customer, make_book):
        book = make_book(price_cents=5000, stock=5)
        cart_service.add_item(customer.user_id, book.id, 1)

        book.price_cents = 6000
        db.session.commit()
        cart = cart_service.add_item(customer.user_id, book.id, 1)

        assert len(cart.items) == 1
        assert cart.items[0].quantity == 2
        assert cart.items[0].unit_price_cents == 5000

    def test_max_units_per_book(self, app, customer, make_book):
        book = make_book(stock=10)
        max_qty = app.config["MAX_ITEM_QUANTITY"]
        cart_service.add_item(customer.user_id, book.id, max_qty)

        with pytest.raises(ValidationError):
            cart_service.add_item(customer.user_id, book.id, 1)

    def test_cannot_add_more_than_available(self, customer, make_book):
        book = make_book(stock=1)
        with pytest.raises(InsufficientStock):
            cart_service.add_item(customer.user_id, book.id, 2)

    def test_inactive_book_cannot_be_added(self, customer, make_book):
        book = make_book(stock=3)
        book.is_active = False
        db.session.commit()

        with pytest.raises(ValidationError):
            cart_service.add_item(customer.user_id, book.id, 1)

    def test_update_and_remove(self, customer, make_book):
        first = make_book(price_cents=1000, stock=5, tax_percent=0)
        second = make_book(price_cents=2000, stock=5, tax_percent=0)
        cart_service.add_item(customer.user_id, first.id, 1)
        cart_service.add_item(customer.user_id, second.id, 1)

        cart = cart_service.update_item(customer.user_id, first.id, 3)
        assert cart.total_cents == 5000

        cart = cart_service.remove_item(customer.user_id, second.id)
        assert [item.book_id for item in cart.items] == [first.id]
        assert cart.total_cents == 3000

    def test_remove_missing_line(self, customer, make_book):
        book = make_book(stock=5)
        cart_service.add_item(customer.user_id, book.id, 1)
        with pytest.raises(NotFound):
            cart_service.remove_item(customer.user_id, 9999)

    def test_clear_cart(self, customer, make_book):
        book = make_book(stock=5)
        cart_service.add_item(customer.user_id, book.id, 1)

        cart = cart_service.clear_cart(customer.user_id)

        assert cart.items == []
        assert cart.total_cents == 0

    def test_carts_are_per_customer(self, customer, other_customer, make_book):
        book = make_book(stock=5)
        cart_service.add_item(customer.user_id, book.id, 1)

        other = cart_service.get_or_create_cart(other_customer.user_id)

        assert other.items == []


class TestDiscountCodes:

    def test_one_code_per_cart(self, customer, make_book, make_discount):
        book = make_book(stock=5)
        make_discount(code="UNO", value=10)
        make_discount(code="DOS", value=20)
        cart_service.add_item(customer.user_id, book.id, 1)
        cart_service.apply_discount_code(customer.user_id, "UNO")

        with pytest.raises(ValidationError):
            cart_service.apply_discount_code(customer.user_id, "DOS")

    def test_unknown_code(self, customer, make_book):
        book = make_book(stock=5)
        cart_service.add_item(customer.user_id, book.id, 1)

        with pytest.raises(ValidationError):
            cart_service.apply_discount_code(customer.user_id, "NOEXISTE")

    def test_code_for_book_not_in_cart(self, customer, make_book, make_discount):
        in_cart = make_book(stock=5)
        elsewhere = make_book(stock=5)
        make_discount(code="SOLO", value=10, book=elsewhere)
        cart_service.add_item(customer.user_id, in_cart.id, 1)

        with pytest.raises(ValidationError):
            cart_service.apply_discount_code(customer.user_id, "SOLO")

    def test_remove_code_restores_total(self, customer, make_book, make_discount):
        book = make_book(price_cents=10000, stock=5, tax_percent=0)
        make_discount(code="DESC10", value=10)
        cart_service.add_item(customer.user_id, book.id, 1)

        cart = cart_service.apply_discount_code(customer.user_id, "DESC10")
        assert cart.total_cents == 9000

        cart = cart_service.remove_discount_code(customer.user_id, "desc10")
        assert cart.discount_codes == []
        assert cart.total_cents == 10000


class TestSummary:

    def test_summary_flags_drift(self, customer, make_book):
        book = make_book(price_cents=5000, stock=5)
        cart_service.add_item(customer.user_id, book.id, 1)
        book.price_cents = 5500
        db.session.commit()

        summary = cart_service.cart_summary(customer.user_id)

        assert summary["cart"]["has_price_drift"] is True
        assert summary["price_drift"]["changed_lines"][0]["current_price_cents"] == 5500

    def test_confirm_prices_clears_drift(self, customer, make_book):
        book = make_book(price_cents=5000, stock=5, tax_percent=0)
        cart_service.add_item(customer.user_id, book.id, 1)
        book.price_cents = 5500
        db.session.commit()

        cart = cart_service.confirm_prices(customer.user_id)

        assert cart.has_price_drift is False
        assert cart.total_cents == 5500
