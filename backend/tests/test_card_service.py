"""
Payment ledger tests: debits, credits, admin overrides and the card registry.
"""

import pytest

from librosfera.errors import Forbidden, InsufficientBalance, InvalidCard, NotFound, ValidationError
from librosfera.extensions import db
from librosfera.models import CardMovement
from librosfera.services import card_service
from librosfera.time_utils import utcnow

from conftest import reload_card


class TestDebit:

    def test_debit_card_balance_decreases(self, customer, make_card):
        card = make_card(customer, balance_cents=10000)

        movement = card_service.debit(card.card_id, 2500, reference="venta:1")

        assert movement.balance_before_cents == 10000
        assert movement.balance_after_cents == 7500
        assert reload_card(card.card_id).balance_cents == 7500

    def test_insufficient_balance(self, customer, make_card):
        card = make_card(customer, balance_cents=1000)

        with pytest.raises(InsufficientBalance) as exc:
            card_service.debit(card.card_id, 2500, reference="venta:1")

        assert exc.value.details["available_cents"] == 1000
        assert reload_card(card.card_id).balance_cents == 1000
        assert CardMovement.query.count() == 0

    def test_credit_card_has_no_balance_check(self, customer, make_card):
        card = make_card(customer, kind="credito")

        movement = card_service.debit(card.card_id, 50000, reference="venta:1")

        assert movement.amount_cents == 50000
        assert reload_card(card.card_id).balance_cents == 0

    def test_replayed_reference_charges_once(self, customer, make_card):
        card = make_card(customer, balance_cents=10000)

        first = card_service.debit(card.card_id, 2500, reference="venta:1")
        second = card_service.debit(card.card_id, 2500, reference="venta:1")

        assert first.id == second.id
        assert reload_card(card.card_id).balance_cents == 7500

    def test_inactive_card_is_rejected(self, customer, make_card):
        card = make_card(customer, balance_cents=10000)
        card_service.deactivate_card(customer, card.card_id)

        with pytest.raises(InvalidCard):
            card_service.debit(card.card_id, 100, reference="venta:1")

    def test_expired_card_is_rejected(self, customer, make_card):
        card = make_card(customer, balance_cents=10000)
        card.expiry_year = utcnow().year - 1
        db.session.commit()

        with pytest.raises(InvalidCard):
            card_service.debit(card.card_id, 100, reference="venta:1")

    @pytest.mark.parametrize("amount", [0, -5, 10.5])
    def test_amount_must_be_positive_integer(self, customer, make_card, amount):
        card = make_card(customer, balance_cents=10000)
        with pytest.raises(ValidationError):
            card_service.debit(card.card_id, amount, reference="venta:1")


class TestCredit:

    def test_credit_increases_balance(self, customer, make_card):
        card = make_card(customer, balance_cents=1000)

        card_service.credit(card.card_id, 2000, reference="devolucion:1")

        assert reload_card(card.card_id).balance_cents == 3000

    def test_credit_is_idempotent_by_reference(self, customer, make_card):
        card = make_card(customer, balance_cents=1000)

        card_service.credit(card.card_id, 2000, reference="devolucion:1")
        card_service.credit(card.card_id, 2000, reference="devolucion:1")

        assert reload_card(card.card_id).balance_cents == 3000

    def test_expired_card_still_receives_credit(self, customer, make_card):
        card = make_card(customer, balance_cents=1000)
        card.expiry_year = utcnow().year - 1
        db.session.commit()

        card_service.credit(card.card_id, 500, reference="devolucion:1")

        assert reload_card(card.card_id).balance_cents == 1500


class TestAbsoluteBalance:

    def test_admin_sets_balance_with_reason(self, customer, admin, make_card):
        card = make_card(customer, balance_cents=1000)

        movement = card_service.set_absolute_balance(admin, card.card_id, 50000, "Carga manual")

        assert movement.kind == "ajuste_absoluto"
        assert movement.reason == "Carga manual"
        assert movement.amount_cents == 49000
        assert reload_card(card.card_id).balance_cents == 50000

    def test_customer_cannot_override(self, customer, make_card):
        card = make_card(customer, balance_cents=1000)
        with pytest.raises(Forbidden):
            card_service.set_absolute_balance(customer, card.card_id, 50000, "yo mismo")

    def test_reason_is_required(self, customer, admin, make_card):
        card = make_card(customer, balance_cents=1000)
        with pytest.raises(ValidationError):
            card_service.set_absolute_balance(admin, card.card_id, 50000, "")

    def test_only_debit_cards(self, customer, admin, make_card):
        card = make_card(customer, kind="credito")
        with pytest.raises(ValidationError):
            card_service.set_absolute_balance(admin, card.card_id, 50000, "Carga")


class TestRegistry:

    def test_first_card_becomes_default(self, customer, make_card):
        first = make_card(customer, balance_cents=0)
        second = make_card(customer, balance_cents=0)

        assert first.is_default is True
        assert second.is_default is False

    def test_set_default_moves_flag(self, customer, make_card):
        first = make_card(customer)
        second = make_card(customer)

        card_service.set_default_card(customer, second.card_id)

        assert reload_card(first.card_id).is_default is False
        assert reload_card(second.card_id).is_default is True

    def test_cards_of_others_are_hidden(self, customer, other_customer, make_card):
        card = make_card(customer)
        with pytest.raises(NotFound):
            card_service.get_card_for_owner(card.card_id, other_customer.user_id)

    def test_credit_card_cannot_carry_balance(self, customer):
        with pytest.raises(ValidationError):
            card_service.register_card(
                customer, kind="credito", brand="visa", holder_name="X",
                last_digits="1111", expiry_month=1, expiry_year=utcnow().year + 1,
                balance_cents=100,
            )

    def test_expired_card_cannot_be_registered(self, customer, db_session):
        with pytest.raises(InvalidCard):
            card_service.register_card(
                customer, kind="debito", brand="visa", holder_name="X",
                last_digits="1111", expiry_month=1, expiry_year=2001,
            )

    def test_movements_are_listed_in_order(self, customer, make_card):
        card = make_card(customer, balance_cents=10000)
        card_service.debit(card.card_id, 1000, reference="venta:1")
        card_service.credit(card.card_id, 1000, reference="venta:1:cancelacion")

        kinds = [m.kind for m in card_service.list_movements(card.card_id)]

        assert kinds == ["debito", "credito"]
