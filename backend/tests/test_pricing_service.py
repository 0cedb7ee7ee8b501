"""
Pricing engine tests: discounts, tax policy, shipping and price drift.
"""

import pytest

from librosfera.errors import ValidationError
from librosfera.extensions import db
from librosfera.services import cart_service, pricing_service
from librosfera.services.pricing_service import apply_percent


class TestApplyPercent:

    @pytest.mark.parametrize(
        "amount,percent,expected",
        [
            (10000, 19, 1900),
            (9000, 19, 1710),
            (250, 10, 25),
            (5, 10, 1),     # 0.5 rounds half-up
            (4, 10, 0),
            (0, 50, 0),
        ],
    )
    def test_rounds_half_up(self, amount, percent, expected):
        assert apply_percent(amount, percent) == expected


class TestQuote:

    def test_code_discount_with_tax_folded_in(self, customer, make_book, make_discount):
        """$100 subtotal, 10% code, 19% tax on the discounted amount => $107.10."""
        book = make_book(price_cents=10000, stock=5)
        make_discount(kind="porcentaje", value=10, code="DESC10")
        cart_service.add_item(customer.user_id, book.id, 1)
        cart = cart_service.apply_discount_code(customer.user_id, "desc10")

        quote = pricing_service.quote(cart, customer_pays_tax=False)

        assert quote.subtotal_cents == 10000
        assert quote.discount_cents == 1000
        assert quote.tax_cents == 1710
        assert quote.total_cents == 10710

    def test_customer_pays_tax_excludes_it_from_total(self, customer, make_book):
        book = make_book(price_cents=10000, stock=5)
        cart = cart_service.add_item(customer.user_id, book.id, 1)

        quote = pricing_service.quote(cart, customer_pays_tax=True)

        assert quote.tax_cents == 1900
        assert quote.total_cents == 10000
        assert quote.to_dict()["tax_info"] == {"paid_by_customer": True, "included_in_total": False}

    def test_book_tax_rate_overrides_default(self, customer, make_book):
        book = make_book(price_cents=10000, stock=5, tax_percent=5)
        cart = cart_service.add_item(customer.user_id, book.id, 1)

        assert pricing_service.quote(cart).tax_cents == 500

    def test_home_delivery_adds_flat_fee(self, app, customer, make_book):
        book = make_book(price_cents=10000, stock=5, tax_percent=0)
        cart = cart_service.add_item(customer.user_id, book.id, 1)

        home = pricing_service.quote(cart, shipping_type="domicilio")
        pickup = pricing_service.quote(cart, shipping_type="recogida_tienda")

        assert home.shipping_cents == app.config["HOME_DELIVERY_FEE_CENTS"]
        assert home.total_cents == 10000 + app.config["HOME_DELIVERY_FEE_CENTS"]
        assert pickup.shipping_cents == 0
        assert pickup.total_cents == 10000

    def test_unknown_shipping_type(self, db_session):
        with pytest.raises(ValidationError):
            pricing_service.shipping_cost("dron")

    def test_two_for_one(self, customer, make_book, make_discount):
        book = make_book(price_cents=3000, stock=5, tax_percent=0)
        make_discount(kind="promocion_2x1", value=0, book=book)
        cart = cart_service.add_item(customer.user_id, book.id, 3)

        quote = pricing_service.quote(cart)

        assert quote.discount_cents == 3000
        assert quote.total_cents == 6000

    def test_bundle_needs_min_quantity(self, customer, make_book, make_discount):
        book = make_book(price_cents=2000, stock=5, tax_percent=0)
        make_discount(kind="bundle", value=20, book=book, min_quantity=2)

        cart = cart_service.add_item(customer.user_id, book.id, 1)
        assert pricing_service.quote(cart).discount_cents == 0

        cart = cart_service.update_item(customer.user_id, book.id, 2)
        assert pricing_service.quote(cart).discount_cents == 800

    def test_fixed_discount_never_goes_below_zero(self, customer, make_book, make_discount):
        book = make_book(price_cents=500, stock=5, tax_percent=0)
        make_discount(kind="valor_fijo", value=800, book=book)
        cart = cart_service.add_item(customer.user_id, book.id, 2)

        quote = pricing_service.quote(cart)

        assert quote.discount_cents == 1000
        assert quote.total_cents == 0

    def test_percentage_is_clamped(self, customer, make_book, make_discount):
        book = make_book(price_cents=1000, stock=5, tax_percent=0)
        make_discount(kind="porcentaje", value=150, book=book)
        cart = cart_service.add_item(customer.user_id, book.id, 1)

        assert pricing_service.quote(cart).total_cents == 0

    def test_rules_apply_in_evaluation_order(self, customer, make_book, make_discount):
        book = make_book(price_cents=1000, stock=5, tax_percent=0)
        # percentage is created first but evaluated after 2x1
        make_discount(kind="porcentaje", value=50, book=book)
        make_discount(kind="promocion_2x1", value=0, book=book)
        cart = cart_service.add_item(customer.user_id, book.id, 2)

        quote = pricing_service.quote(cart)

        kinds = [d.kind for d in quote.lines[0].discounts]
        assert kinds == ["promocion_2x1", "porcentaje"]
        assert quote.discount_cents == 1000 + 500

    def test_inactive_rule_is_ignored(self, customer, make_book, make_discount):
        book = make_book(price_cents=1000, stock=5, tax_percent=0)
        rule = make_discount(kind="porcentaje", value=50, book=book)
        rule.is_active = False
        db.session.commit()
        cart = cart_service.add_item(customer.user_id, book.id, 1)

        assert pricing_service.quote(cart).discount_cents == 0


class TestPriceDrift:

    def test_detects_and_confirms_changed_price(self, customer, make_book):
        book = make_book(price_cents=10000, stock=5)
        cart = cart_service.add_item(customer.user_id, book.id, 1)

        book.price_cents = 12000
        db.session.commit()

        changed = pricing_service.detect_drift(cart)
        assert [item.book_id for item in changed] == [book.id]
        assert changed[0].current_price_cents == 12000
        assert changed[0].unit_price_cents == 10000

        pricing_service.confirm_drift(cart)
        assert cart.items[0].unit_price_cents == 12000
        assert cart.items[0].price_changed is False

    def test_confirm_without_drift_fails(self, customer, make_book):
        book = make_book(price_cents=10000, stock=5)
        cart = cart_service.add_item(customer.user_id, book.id, 1)

        with pytest.raises(ValidationError):
            pricing_service.confirm_drift(cart)
