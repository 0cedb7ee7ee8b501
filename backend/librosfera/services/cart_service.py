# Overview: Customer cart; line edits and discount codes, totals recomputed through the pricing engine.

from __future__ import annotations

from flask import current_app

from ..errors import InsufficientStock, NotFound, ValidationError
from ..extensions import db
from ..models import Book, BookStock, Cart, CartItem
from ..models.cart import CART_ACTIVE, CART_CONVERTED
from . import pricing_service
from .concurrency import run_with_retry


def _max_quantity() -> int:
    return int(current_app.config.get("MAX_ITEM_QUANTITY", 3))


def _validate_line_quantity(qty) -> int:
    if isinstance(qty, bool) or not isinstance(qty, int):
        raise ValidationError("quantity must be an integer")
    max_qty = _max_quantity()
    if qty < 1 or qty > max_qty:
        raise ValidationError(
            f"quantity must be between 1 and {max_qty}",
            details={"min": 1, "max": max_qty},
        )
    return qty


def _normalize_code(code) -> str:
    if not code or not str(code).strip():
        raise ValidationError("discount code is required")
    return str(code).strip().upper()


def _load_book(book_id: int) -> Book:
    book = db.session.get(Book, book_id)
    if book is None:
        raise NotFound("Book not found", details={"book_id": book_id})
    if not book.is_active:
        raise ValidationError("Book is not available for sale", details={"book_id": book_id})
    return book


def _ensure_available(book: Book, qty: int) -> None:
    stock = BookStock.query.filter_by(book_id=book.id).first()
    available = stock.available_qty if stock else 0
    if available < qty:
        raise InsufficientStock(
            "Insufficient stock",
            details={"book_id": book.id, "requested": qty, "available": available},
        )


def _find_item(cart: Cart, book_id: int) -> CartItem | None:
    for item in cart.items:
        if item.book_id == book_id:
            return item
    return None


def _recalculate(cart: Cart) -> None:
    """Refresh stored line and cart totals (tax folded in, no shipping)."""
    quote = pricing_service.quote(cart)
    for item, line in zip(cart.items, quote.lines):
        item.discount_cents = line.discount_cents
        item.tax_cents = line.tax_cents
        item.line_total_cents = line.line_total_cents
    cart.subtotal_cents = quote.subtotal_cents
    cart.discount_cents = quote.discount_cents
    cart.tax_cents = quote.tax_cents
    cart.total_cents = quote.total_cents


def get_active_cart(customer_id: str) -> Cart | None:
    return (
        Cart.query
        .filter_by(customer_id=str(customer_id), status=CART_ACTIVE)
        .order_by(Cart.id.desc())
        .first()
    )


def _get_or_add_cart(customer_id: str) -> Cart:
    cart = get_active_cart(customer_id)
    if cart is None:
        cart = Cart(customer_id=str(customer_id), status=CART_ACTIVE, discount_codes=[])
        db.session.add(cart)
        db.session.flush()
    return cart


def get_or_create_cart(customer_id: str) -> Cart:
    cart = get_active_cart(customer_id)
    if cart is not None:
        return cart

    def _op():
        created = _get_or_add_cart(customer_id)
        db.session.commit()
        return created

    return run_with_retry(_op)


def _require_cart(customer_id: str) -> Cart:
    cart = get_active_cart(customer_id)
    if cart is None:
        raise NotFound("Cart not found")
    return cart


# =============================================================================
# Line edits
# =============================================================================

def add_item(customer_id: str, book_id: int, qty: int = 1) -> Cart:
    """
    Add qty units of a book. An existing line for the same book is merged and
    keeps its add-time price.
    """
    qty = _validate_line_quantity(qty)

    def _op():
        cart = _get_or_add_cart(customer_id)
        book = _load_book(book_id)
        item = _find_item(cart, book_id)

        new_qty = qty + (item.quantity if item else 0)
        if new_qty > _max_quantity():
            raise ValidationError(
                f"At most {_max_quantity()} units per book",
                details={"book_id": book_id, "in_cart": item.quantity if item else 0},
            )
        _ensure_available(book, new_qty)

        if item is None:
            cart.items.append(CartItem(
                book_id=book.id,
                book=book,
                quantity=qty,
                unit_price_cents=book.price_cents,
            ))
        else:
            item.quantity = new_qty

        _recalculate(cart)
        db.session.commit()
        return cart

    return run_with_retry(_op)


def update_item(customer_id: str, book_id: int, qty: int) -> Cart:
    qty = _validate_line_quantity(qty)

    def _op():
        cart = _require_cart(customer_id)
        item = _find_item(cart, book_id)
        if item is None:
            raise NotFound("Book is not in the cart", details={"book_id": book_id})
        if qty > item.quantity:
            _ensure_available(item.book, qty)
        item.quantity = qty
        _recalculate(cart)
        db.session.commit()
        return cart

    return run_with_retry(_op)


def remove_item(customer_id: str, book_id: int) -> Cart:
    def _op():
        cart = _require_cart(customer_id)
        item = _find_item(cart, book_id)
        if item is None:
            raise NotFound("Book is not in the cart", details={"book_id": book_id})
        cart.items.remove(item)
        _recalculate(cart)
        db.session.commit()
        return cart

    return run_with_retry(_op)


def clear_cart(customer_id: str) -> Cart:
    def _op():
        cart = _get_or_add_cart(customer_id)
        cart.items.clear()
        cart.discount_codes = []
        _recalculate(cart)
        db.session.commit()
        return cart

    return run_with_retry(_op)


def mark_converted(cart: Cart) -> None:
    """Close a cart that became a sale. Caller commits."""
    cart.items.clear()
    cart.discount_codes = []
    cart.status = CART_CONVERTED
    cart.subtotal_cents = 0
    cart.discount_cents = 0
    cart.tax_cents = 0
    cart.total_cents = 0


# =============================================================================
# Discount codes
# =============================================================================

def apply_discount_code(customer_id: str, code: str) -> Cart:
    """
    Apply a discount code. The code must match a current rule that applies
    to some line of the cart; only MAX_DISCOUNT_CODES_PER_CART codes may be
    applied at once.
    """
    code = _normalize_code(code)

    def _op():
        cart = _require_cart(customer_id)
        if not cart.items:
            raise ValidationError("Cannot apply a discount code to an empty cart")

        codes = list(cart.discount_codes or [])
        if code in codes:
            return cart

        limit = int(current_app.config.get("MAX_DISCOUNT_CODES_PER_CART", 1))
        if len(codes) >= limit:
            raise ValidationError(
                f"Only {limit} discount code(s) per cart",
                details={"applied": codes},
            )

        rules = pricing_service.find_discounts_for_code(code)
        book_ids = {item.book_id for item in cart.items}
        if not any(rule.book_id is None or rule.book_id in book_ids for rule in rules):
            raise ValidationError("Invalid or expired discount code", details={"code": code})

        cart.discount_codes = codes + [code]
        _recalculate(cart)
        db.session.commit()
        return cart

    return run_with_retry(_op)


def remove_discount_code(customer_id: str, code: str | None = None) -> Cart:
    """Remove one code, or every applied code when code is None."""
    normalized = _normalize_code(code) if code else None

    def _op():
        cart = _require_cart(customer_id)
        codes = list(cart.discount_codes or [])
        if normalized is None:
            cart.discount_codes = []
        elif normalized in codes:
            cart.discount_codes = [c for c in codes if c != normalized]
        else:
            raise NotFound("Discount code is not applied", details={"code": normalized})
        _recalculate(cart)
        db.session.commit()
        return cart

    return run_with_retry(_op)


# =============================================================================
# Drift and summary
# =============================================================================

def confirm_prices(customer_id: str, book_id: int | None = None) -> Cart:
    """Accept current prices for drifted lines (one book or all)."""
    def _op():
        cart = _require_cart(customer_id)
        pricing_service.confirm_drift(cart, book_id)
        _recalculate(cart)
        db.session.commit()
        return cart

    return run_with_retry(_op)


def cart_summary(customer_id: str, customer_pays_tax: bool = False, shipping_type: str | None = None) -> dict:
    """
    Cart contents plus a fresh quote. Drift flags are refreshed and persisted
    so the customer sees which prices changed.
    """
    def _op():
        cart = _get_or_add_cart(customer_id)
        changed = pricing_service.detect_drift(cart)
        db.session.commit()
        quote = pricing_service.quote(
            cart, customer_pays_tax=customer_pays_tax, shipping_type=shipping_type
        )
        return {
            "cart": cart.to_dict(),
            "quote": quote.to_dict(),
            "price_drift": pricing_service.drift_details(changed) if changed else None,
        }

    return run_with_retry(_op)
