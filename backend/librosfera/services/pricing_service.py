# Overview: Pricing engine; quotes carts from prices, discounts and tax policy, detects price drift.

from __future__ import annotations

from dataclasses import dataclass, field
from decimal import Decimal, ROUND_HALF_UP

from flask import current_app
from sqlalchemy import or_

from ..errors import ValidationError
from ..models import Book, Discount
from ..models.catalog import (
    DISCOUNT_BUNDLE,
    DISCOUNT_FIXED,
    DISCOUNT_PERCENTAGE,
    DISCOUNT_TWO_FOR_ONE,
)
from ..models.sales import SHIPPING_HOME, SHIPPING_STORE_PICKUP, SHIPPING_TYPES
from ..time_utils import utcnow

"""
Pricing rules (authoritative)

Money:
- All amounts are integer cents. Percentages round half-up to the cent.

Per line:
- gross = unit_price (add-time price stored on the cart line) * quantity.
- Applicable discounts: automatic rules (no code) plus rules whose code is
  applied on the cart, restricted to the line's book or cart-wide (book_id NULL),
  active and inside their validity window.
- Rules run in DISCOUNT_EVALUATION_ORDER, each against what the previous left.
  Percentages are clamped to 0..100 and a line never goes below zero.
- tax = discounted amount * tax_percent (book rate, else TAX_RATE_PERCENT).

Totals:
- customer_pays_tax=False folds tax into the final total.
- customer_pays_tax=True reports tax separately; it is excluded from final.
- Shipping is a flat fee for home delivery and free for store pickup.
"""


def apply_percent(amount_cents: int, percent) -> int:
    """amount * percent / 100, rounded half-up to the cent."""
    value = Decimal(amount_cents) * Decimal(str(percent)) / Decimal(100)
    return int(value.quantize(Decimal("1"), rounding=ROUND_HALF_UP))


def _clamp_percent(value) -> int:
    return max(0, min(100, int(value)))


@dataclass
class AppliedDiscount:
    discount_id: int
    kind: str
    code: str | None
    amount_cents: int

    def to_dict(self) -> dict:
        return {
            "discount_id": self.discount_id,
            "kind": self.kind,
            "code": self.code,
            "amount_cents": self.amount_cents,
        }


@dataclass
class LineQuote:
    book_id: int
    quantity: int
    unit_price_cents: int
    gross_cents: int
    discount_cents: int
    tax_percent: int
    tax_cents: int
    net_cents: int
    discounts: list[AppliedDiscount] = field(default_factory=list)

    @property
    def line_total_cents(self) -> int:
        return self.net_cents + self.tax_cents

    def to_dict(self) -> dict:
        return {
            "book_id": self.book_id,
            "quantity": self.quantity,
            "unit_price_cents": self.unit_price_cents,
            "gross_cents": self.gross_cents,
            "discount_cents": self.discount_cents,
            "tax_percent": self.tax_percent,
            "tax_cents": self.tax_cents,
            "net_cents": self.net_cents,
            "line_total_cents": self.line_total_cents,
            "discounts": [d.to_dict() for d in self.discounts],
        }


@dataclass
class Quote:
    lines: list[LineQuote]
    subtotal_cents: int
    discount_cents: int
    tax_cents: int
    shipping_cents: int
    total_cents: int
    customer_pays_tax: bool
    shipping_type: str | None = None

    def to_dict(self) -> dict:
        return {
            "lines": [line.to_dict() for line in self.lines],
            "subtotal_cents": self.subtotal_cents,
            "discount_cents": self.discount_cents,
            "tax_cents": self.tax_cents,
            "shipping_cents": self.shipping_cents,
            "total_cents": self.total_cents,
            "tax_info": {
                "paid_by_customer": self.customer_pays_tax,
                "included_in_total": not self.customer_pays_tax,
            },
            "shipping_type": self.shipping_type,
        }


# =============================================================================
# Shipping
# =============================================================================

def shipping_cost(shipping_type: str | None) -> int:
    if shipping_type is None or shipping_type == SHIPPING_STORE_PICKUP:
        return 0
    if shipping_type == SHIPPING_HOME:
        return int(current_app.config.get("HOME_DELIVERY_FEE_CENTS", 0))
    raise ValidationError(
        f"Invalid shipping type: {shipping_type}",
        details={"allowed": list(SHIPPING_TYPES)},
    )


# =============================================================================
# Discounts
# =============================================================================

def find_discounts_for_code(code: str, now=None) -> list[Discount]:
    now = now or utcnow()
    rules = Discount.query.filter(Discount.code == code).all()
    return [rule for rule in rules if rule.is_current(now)]


def _candidate_discounts(book_ids: set[int], codes: list[str], now) -> list[Discount]:
    query = Discount.query.filter(Discount.is_active.is_(True)).filter(
        or_(Discount.book_id.is_(None), Discount.book_id.in_(book_ids))
    )
    codes = [c for c in codes if c]
    if codes:
        query = query.filter(or_(Discount.code.is_(None), Discount.code.in_(codes)))
    else:
        query = query.filter(Discount.code.is_(None))
    return [rule for rule in query.order_by(Discount.id.asc()).all() if rule.is_current(now)]


def _discount_amount(rule: Discount, quantity: int, unit_price_cents: int, remaining_cents: int) -> int:
    if rule.kind == DISCOUNT_TWO_FOR_ONE:
        amount = (quantity // 2) * unit_price_cents
    elif rule.kind == DISCOUNT_BUNDLE:
        if quantity < max(1, rule.min_quantity or 1):
            return 0
        amount = apply_percent(remaining_cents, _clamp_percent(rule.value))
    elif rule.kind == DISCOUNT_PERCENTAGE:
        amount = apply_percent(remaining_cents, _clamp_percent(rule.value))
    elif rule.kind == DISCOUNT_FIXED:
        amount = max(0, int(rule.value)) * quantity
    else:
        return 0
    return max(0, min(amount, remaining_cents))


def _evaluation_rank(kind: str) -> int:
    order = list(current_app.config.get("DISCOUNT_EVALUATION_ORDER") or ())
    return order.index(kind) if kind in order else len(order)


# =============================================================================
# Quote
# =============================================================================

def _tax_percent_for(book: Book) -> int:
    if book.tax_percent is not None:
        return book.tax_percent
    return int(current_app.config.get("TAX_RATE_PERCENT", 0))


def quote_lines(
    lines: list[tuple[Book, int, int]],
    *,
    discount_codes: list[str] | None = None,
    customer_pays_tax: bool = False,
    shipping_type: str | None = None,
    now=None,
) -> Quote:
    """
    Quote (book, quantity, unit_price_cents) triples.

    unit_price_cents is the price the line is charged at, which for carts is
    the add-time price, not necessarily book.price_cents.
    """
    now = now or utcnow()
    codes = list(discount_codes or [])
    rules = _candidate_discounts({book.id for book, _, _ in lines}, codes, now)
    rules.sort(key=lambda rule: (_evaluation_rank(rule.kind), rule.id))

    line_quotes = []
    for book, quantity, unit_price_cents in lines:
        gross = unit_price_cents * quantity
        remaining = gross
        applied = []
        for rule in rules:
            if rule.book_id is not None and rule.book_id != book.id:
                continue
            amount = _discount_amount(rule, quantity, unit_price_cents, remaining)
            if amount <= 0:
                continue
            remaining -= amount
            applied.append(AppliedDiscount(rule.id, rule.kind, rule.code, amount))

        tax_percent = _tax_percent_for(book)
        line_quotes.append(LineQuote(
            book_id=book.id,
            quantity=quantity,
            unit_price_cents=unit_price_cents,
            gross_cents=gross,
            discount_cents=gross - remaining,
            tax_percent=tax_percent,
            tax_cents=apply_percent(remaining, tax_percent),
            net_cents=remaining,
            discounts=applied,
        ))

    subtotal = sum(line.gross_cents for line in line_quotes)
    discount_total = sum(line.discount_cents for line in line_quotes)
    tax_total = sum(line.tax_cents for line in line_quotes)
    shipping = shipping_cost(shipping_type)

    total = subtotal - discount_total + shipping
    if not customer_pays_tax:
        total += tax_total

    return Quote(
        lines=line_quotes,
        subtotal_cents=subtotal,
        discount_cents=discount_total,
        tax_cents=tax_total,
        shipping_cents=shipping,
        total_cents=total,
        customer_pays_tax=customer_pays_tax,
        shipping_type=shipping_type,
    )


def quote(cart, customer_pays_tax: bool = False, shipping_type: str | None = None) -> Quote:
    """Quote a cart at its add-time prices with its applied discount codes."""
    lines = [(item.book, item.quantity, item.unit_price_cents) for item in cart.items]
    return quote_lines(
        lines,
        discount_codes=list(cart.discount_codes or []),
        customer_pays_tax=customer_pays_tax,
        shipping_type=shipping_type,
    )


# =============================================================================
# Price drift
# =============================================================================

def detect_drift(cart) -> list:
    """
    Flag cart lines whose add-time price differs from the current book price.

    Mutates the flags on the lines; the caller commits. Returns changed lines.
    """
    changed = []
    for item in cart.items:
        current = item.book.price_cents
        if current != item.unit_price_cents:
            item.price_changed = True
            item.current_price_cents = current
            changed.append(item)
        else:
            item.price_changed = False
            item.current_price_cents = None
    return changed


def confirm_drift(cart, book_id: int | None = None) -> list:
    """
    Re-stamp drifted lines with the current price and clear their flag.

    Raises ValidationError when no line (or not the given line) has pending drift.
    """
    detect_drift(cart)
    pending = [
        item for item in cart.items
        if item.price_changed and (book_id is None or item.book_id == book_id)
    ]
    if not pending:
        raise ValidationError("No pending price changes to confirm")

    for item in pending:
        item.unit_price_cents = item.current_price_cents
        item.price_changed = False
        item.current_price_cents = None
    return pending


def drift_details(changed: list) -> dict:
    return {
        "changed_lines": [
            {
                "book_id": item.book_id,
                "title": item.book.title,
                "cart_price_cents": item.unit_price_cents,
                "current_price_cents": item.current_price_cents,
            }
            for item in changed
        ]
    }
