# Overview: Sale orchestrator; materializes sales from carts as a saga and drives the shipment lifecycle.

from __future__ import annotations

import secrets
import time
from functools import partial

from flask import current_app

from ..errors import (
    ConcurrentModification,
    InvalidStateTransition,
    NotFound,
    PriceDrift,
    ValidationError,
)
from ..extensions import db
from ..models import Book, Cart, Sale, SaleEvent, SaleItem
from ..models.activity import IMPORTANCE_HIGH, IMPORTANCE_LOW, IMPORTANCE_MEDIUM
from ..models.cart import CART_ACTIVE
from ..models.sales import (
    PAYMENT_APPROVED,
    PAYMENT_REFUNDED,
    SALE_CANCELLED,
    SALE_CREATED,
    SALE_DELIVERED,
    SALE_PAID,
    SALE_PENDING_PAYMENT,
    SALE_READY_TO_SHIP,
    SALE_SHIPPED,
    SHIPPING_HOME,
    SHIPPING_STORE_PICKUP,
    SHIPPING_TYPES,
)
from ..principal import ROLE_CUSTOMER, Principal
from ..time_utils import utcnow
from . import activity_service, card_service, cart_service, idempotency_service, pricing_service, stock_service
from .concurrency import run_with_retry
from .saga import Saga

"""
Sale lifecycle (authoritative)

creada -> pendiente_pago -> pagada -> listo_para_envio -> enviado -> entregado
cancelada is reachable from every state before entregado.

Creation is all-or-nothing:
1. quote the cart (empty -> ValidationError, unconfirmed drift -> PriceDrift)
2. reserve every line (InsufficientStock)
3. debit the card for the final total (InsufficientBalance / InvalidCard)
4. commit the reservations, persist the snapshot and close the cart in one unit of work
Each completed step registers a compensation; on failure they run in reverse.

Cancellation refunds whatever was paid and not yet refunded. It never
restocks; restock_cancelled_sale is the explicit admin action.
"""

SALE_TRANSITIONS = {
    SALE_CREATED: (SALE_PENDING_PAYMENT, SALE_CANCELLED),
    SALE_PENDING_PAYMENT: (SALE_PAID, SALE_CANCELLED),
    SALE_PAID: (SALE_READY_TO_SHIP, SALE_CANCELLED),
    SALE_READY_TO_SHIP: (SALE_SHIPPED, SALE_CANCELLED),
    SALE_SHIPPED: (SALE_DELIVERED, SALE_CANCELLED),
    SALE_DELIVERED: (),
    SALE_CANCELLED: (),
}

SHIPMENT_STATES = (SALE_READY_TO_SHIP, SALE_SHIPPED, SALE_DELIVERED)

IDEMPOTENT_CREATE_OPERATION = "venta.crear"


# =============================================================================
# Helpers
# =============================================================================

def _generate_sale_number(now=None) -> str:
    now = now or utcnow()
    for _ in range(10):
        number = f"VTA-{now:%Y%m}-{secrets.randbelow(1_000_000):06d}"
        if Sale.query.filter_by(number=number).first() is None:
            return number
    raise ValidationError("Could not allocate a sale number, please retry")


def _add_event(sale: Sale, event: str, *, from_state=None, to_state=None, description=None, actor_id=None, internal=False) -> SaleEvent:
    entry = SaleEvent(
        event=event,
        from_state=from_state,
        to_state=to_state,
        description=description,
        actor_id=actor_id,
        internal=internal,
        occurred_at=utcnow(),
    )
    sale.events.append(entry)
    return entry


def _transition(sale: Sale, new_state: str, *, actor_id=None, description=None) -> None:
    allowed = SALE_TRANSITIONS.get(sale.state, ())
    if new_state not in allowed:
        raise InvalidStateTransition(
            f"Cannot move sale from {sale.state} to {new_state}",
            details={"number": sale.number, "state": sale.state, "allowed": list(allowed)},
        )
    previous = sale.state
    sale.state = new_state
    _add_event(
        sale, "cambio_estado",
        from_state=previous, to_state=new_state,
        description=description, actor_id=actor_id,
    )


def _get_sale(number: str) -> Sale:
    sale = Sale.query.filter_by(number=number).first()
    if sale is None:
        raise NotFound("Sale not found", details={"number": number})
    return sale


def _get_visible_sale(principal: Principal, number: str) -> Sale:
    """Customers only see their own sales; others are reported as missing."""
    sale = _get_sale(number)
    if not principal.is_admin and sale.customer_id != principal.user_id:
        raise NotFound("Sale not found", details={"number": number})
    return sale


def _validate_shipping(shipping_type, shipping_address, store_id) -> None:
    if shipping_type not in SHIPPING_TYPES:
        raise ValidationError(
            f"Invalid shipping type: {shipping_type}",
            details={"allowed": list(SHIPPING_TYPES)},
        )
    if shipping_type == SHIPPING_HOME:
        if not isinstance(shipping_address, dict):
            raise ValidationError("shipping_address is required for home delivery")
        missing = [f for f in ("calle", "ciudad") if not str(shipping_address.get(f) or "").strip()]
        if missing:
            raise ValidationError("shipping_address is incomplete", details={"missing": missing})
    if shipping_type == SHIPPING_STORE_PICKUP and not store_id:
        raise ValidationError("store_id is required for store pickup")


# =============================================================================
# Creation
# =============================================================================

def _persist_sale(principal: Principal, number: str, cart_id: int, quote, reservations, *, card_id, payment_method, debited, shipping_type, shipping_address, store_id, discount_codes) -> Sale:
    def _op():
        cart = db.session.get(Cart, cart_id)
        if cart is None or cart.status != CART_ACTIVE:
            raise InvalidStateTransition(
                "Cart was already turned into a sale",
                details={"cart_id": cart_id},
            )

        for line, reservation_id in reservations:
            stock_service.apply_commit(
                line.book_id, reservation_id, number,
                holder_id=principal.user_id, qty=line.quantity, actor_id=principal.user_id,
            )

        sale = Sale(
            number=number,
            customer_id=principal.user_id,
            cart_id=cart_id,
            state=SALE_CREATED,
            payment_method=payment_method,
            card_id=card_id,
            payment_state=PAYMENT_APPROVED,
            payment_reference=f"venta:{number}" if debited else None,
            shipping_type=shipping_type,
            shipping_address=shipping_address if shipping_type == SHIPPING_HOME else None,
            pickup_store_id=str(store_id) if shipping_type == SHIPPING_STORE_PICKUP else None,
            subtotal_cents=quote.subtotal_cents,
            discount_cents=quote.discount_cents,
            tax_cents=quote.tax_cents,
            shipping_cost_cents=quote.shipping_cents,
            total_cents=quote.total_cents,
            refunded_cents=0,
            tax_paid_by_customer=quote.customer_pays_tax,
            discount_codes=list(discount_codes),
        )
        for line, reservation_id in reservations:
            book = db.session.get(Book, line.book_id)
            sale.items.append(SaleItem(
                book_id=book.id,
                title=book.title,
                author=book.author,
                isbn=book.isbn,
                unit_price_cents=line.unit_price_cents,
                quantity=line.quantity,
                discount_cents=line.discount_cents,
                tax_cents=line.tax_cents,
                line_total_cents=line.line_total_cents,
                reservation_id=reservation_id,
            ))
        db.session.add(sale)

        _add_event(sale, "creacion", to_state=SALE_CREATED, actor_id=principal.user_id,
                   description="Sale created from cart")
        _transition(sale, SALE_PENDING_PAYMENT, actor_id=principal.user_id)
        _transition(sale, SALE_PAID, actor_id=principal.user_id,
                    description=f"Payment approved on card {card_id}")

        cart_service.mark_converted(cart)
        db.session.commit()
        return sale

    return run_with_retry(_op)


def _claim_create_key(replay_key: str) -> dict | None:
    """
    Own the idempotency key for this checkout, or wait for whoever owns it.

    Returns None once the caller owns the key, or the completed outcome of
    the request that got there first.
    """
    attempts = current_app.config.get("STOCK_CAS_MAX_ATTEMPTS", 5)
    backoff_base = current_app.config.get("STOCK_CAS_BACKOFF_SECONDS", 0.02)

    for attempt in range(attempts):
        outcome = run_with_retry(partial(idempotency_service.claim, IDEMPOTENT_CREATE_OPERATION, replay_key))
        if not idempotency_service.is_pending(outcome):
            return outcome
        # Another request holds the key; end the read transaction and poll again
        db.session.rollback()
        if attempt < attempts - 1:
            time.sleep(backoff_base * (2 ** attempt))

    raise ConcurrentModification(
        "A sale with this idempotency key is still being processed",
        details={"attempts": attempts},
    )


def create_sale(
    principal: Principal,
    *,
    card_id: str,
    shipping_type: str,
    shipping_address: dict | None = None,
    store_id: str | None = None,
    customer_pays_tax: bool = False,
    idempotency_key: str | None = None,
) -> Sale:
    """
    Turn the customer's active cart into a paid sale.

    Either the sale exists with stock committed, card charged and cart closed,
    or nothing changed: reservations are released and any debit is credited
    back before the original error is raised.

    With an idempotency_key the key is claimed before anything else happens,
    so concurrent or repeated submissions resolve to the same sale.
    """
    principal.require_role(ROLE_CUSTOMER)
    _validate_shipping(shipping_type, shipping_address, store_id)
    if not card_id:
        raise ValidationError("card_id is required")

    options = dict(
        card_id=card_id,
        shipping_type=shipping_type,
        shipping_address=shipping_address,
        store_id=store_id,
        customer_pays_tax=customer_pays_tax,
    )
    if not idempotency_key:
        return _checkout(principal, **options)

    replay_key = f"{principal.user_id}:{idempotency_key}"
    prior = _claim_create_key(replay_key)
    if prior is not None:
        return _get_sale(prior["number"])

    try:
        sale = _checkout(principal, **options)
    except Exception:
        run_with_retry(partial(idempotency_service.release, IDEMPOTENT_CREATE_OPERATION, replay_key))
        raise

    run_with_retry(partial(
        idempotency_service.complete, IDEMPOTENT_CREATE_OPERATION, replay_key, {"number": sale.number}
    ))
    return sale


def _checkout(principal: Principal, *, card_id, shipping_type, shipping_address, store_id, customer_pays_tax) -> Sale:
    cart = cart_service.get_active_cart(principal.user_id)
    if cart is None or not cart.items:
        raise ValidationError("Cart is empty")

    changed = pricing_service.detect_drift(cart)
    if changed:
        details = pricing_service.drift_details(changed)
        db.session.commit()
        raise PriceDrift("Prices changed since the items were added; confirm them before checkout", details=details)

    quote = pricing_service.quote(cart, customer_pays_tax=customer_pays_tax, shipping_type=shipping_type)
    cart_id = cart.id
    discount_codes = list(cart.discount_codes or [])

    card = card_service.get_card_for_owner(card_id, principal.user_id)
    card_service.ensure_card_valid(card)
    payment_method = f"tarjeta_{card.kind}"

    number = _generate_sale_number()
    saga = Saga(number)
    reservations = []
    debited = False

    try:
        for line in quote.lines:
            reservation_id = f"{number}-L{line.book_id}"
            stock_service.reserve(
                line.book_id, line.quantity, principal.user_id, reservation_id,
                actor_id=principal.user_id,
            )
            reservations.append((line, reservation_id))
            saga.add_compensation(
                f"release {reservation_id}",
                partial(stock_service.release, line.book_id, line.quantity, principal.user_id,
                        reservation_id, actor_id=principal.user_id),
            )

        if quote.total_cents > 0:
            card_service.debit(
                card_id, quote.total_cents,
                reference=f"venta:{number}",
                actor_id=principal.user_id,
                reason=f"Payment for sale {number}",
            )
            debited = True
            saga.add_compensation(
                f"credit back debit venta:{number}",
                partial(card_service.credit, card_id, quote.total_cents,
                        reference=f"venta:{number}:compensacion",
                        actor_id=principal.user_id,
                        reason=f"Sale {number} could not be completed"),
            )

        sale = _persist_sale(
            principal, number, cart_id, quote, reservations,
            card_id=card_id,
            payment_method=payment_method,
            debited=debited,
            shipping_type=shipping_type,
            shipping_address=shipping_address,
            store_id=store_id,
            discount_codes=discount_codes,
        )
    except Exception:
        failures = saga.compensate()
        if failures:
            current_app.logger.error("Sale %s left uncompensated steps: %s", number, failures)
        raise

    activity_service.record(
        "venta", number, "venta_creada",
        principal=principal,
        importance=IMPORTANCE_HIGH,
        details={"total_cents": quote.total_cents, "items": len(reservations)},
    )
    return sale


# =============================================================================
# Shipment lifecycle
# =============================================================================

def update_shipment(principal: Principal, number: str, new_state: str, *, tracking_number: str | None = None, carrier: str | None = None, note: str | None = None) -> Sale:
    """Admin-driven progression pagada -> listo_para_envio -> enviado -> entregado."""
    principal.require_admin()
    if new_state not in SHIPMENT_STATES:
        raise ValidationError(
            f"Invalid shipment state: {new_state}",
            details={"allowed": list(SHIPMENT_STATES)},
        )
    if new_state == SALE_SHIPPED and not (tracking_number and tracking_number.strip()):
        raise ValidationError("tracking_number is required to mark a sale as shipped")

    def _op():
        sale = _get_sale(number)
        _transition(sale, new_state, actor_id=principal.user_id, description=note)
        now = utcnow()
        if new_state == SALE_SHIPPED:
            sale.tracking_number = tracking_number.strip()
            sale.carrier = carrier
            sale.shipped_at = now
        elif new_state == SALE_DELIVERED:
            sale.delivered_at = now
        db.session.commit()
        return sale

    sale = run_with_retry(_op)
    activity_service.record(
        "venta", number, f"envio_{new_state}",
        principal=principal,
        importance=IMPORTANCE_MEDIUM,
        details={"tracking_number": tracking_number, "carrier": carrier},
    )
    return sale


# =============================================================================
# Cancellation and restock
# =============================================================================

def cancel_sale(principal: Principal, number: str, reason: str) -> Sale:
    """
    Cancel a sale before delivery and refund the unrefunded paid amount to
    the original card. Stock is not returned here.
    """
    if not reason or not reason.strip():
        raise ValidationError("A cancellation reason is required")
    reason = reason.strip()

    def _op():
        sale = _get_visible_sale(principal, number)
        _transition(sale, SALE_CANCELLED, actor_id=principal.user_id, description=reason)

        refund = sale.refundable_cents
        if refund > 0:
            card_service.apply_credit(
                sale.card_id, refund,
                reference=f"venta:{number}:cancelacion",
                actor_id=principal.user_id,
                reason=f"Cancellation of sale {number}",
            )
            sale.refunded_cents += refund
        sale.payment_state = PAYMENT_REFUNDED

        sale.cancelled_at = utcnow()
        sale.cancel_reason = reason
        sale.cancelled_by_id = principal.user_id
        sale.cancelled_by_role = principal.role
        db.session.commit()
        return sale, refund

    sale, refund = run_with_retry(_op)
    activity_service.record(
        "venta", number, "venta_cancelada",
        principal=principal,
        importance=IMPORTANCE_HIGH,
        details={"reason": reason, "refunded_cents": refund},
    )
    return sale


def restock_cancelled_sale(principal: Principal, number: str, reason: str) -> Sale:
    """Return the units of a cancelled sale to available stock. Idempotent."""
    principal.require_admin()
    if not reason or not reason.strip():
        raise ValidationError("A restock reason is required")
    reason = reason.strip()

    def _op():
        sale = _get_sale(number)
        if sale.state != SALE_CANCELLED:
            raise InvalidStateTransition(
                "Only cancelled sales can be restocked",
                details={"number": number, "state": sale.state},
            )
        if sale.restocked_at is not None:
            return sale, False

        for item in sale.items:
            stock_service.apply_restock(
                item.book_id, item.quantity,
                reason=reason,
                reference=f"venta:{number}:item:{item.id}",
                actor_id=principal.user_id,
            )
        sale.restocked_at = utcnow()
        _add_event(sale, "reabastecimiento", description=reason, actor_id=principal.user_id)
        db.session.commit()
        return sale, True

    sale, changed = run_with_retry(_op)
    if changed:
        activity_service.record(
            "venta", number, "venta_reabastecida",
            principal=principal,
            importance=IMPORTANCE_MEDIUM,
            details={"reason": reason},
        )
    return sale


# =============================================================================
# Queries and notes
# =============================================================================

def get_sale(principal: Principal, number: str) -> Sale:
    return _get_visible_sale(principal, number)


def list_customer_sales(principal: Principal, *, state: str | None = None, page: int = 1, per_page: int = 20) -> tuple[list[Sale], int]:
    query = Sale.query.filter_by(customer_id=principal.user_id)
    if state:
        query = query.filter_by(state=state)
    total = query.count()
    sales = (
        query.order_by(Sale.created_at.desc(), Sale.id.desc())
        .offset((max(page, 1) - 1) * per_page)
        .limit(per_page)
        .all()
    )
    return sales, total


def list_sales(principal: Principal, *, state: str | None = None, customer_id: str | None = None, page: int = 1, per_page: int = 20) -> tuple[list[Sale], int]:
    principal.require_admin()
    query = Sale.query
    if state:
        query = query.filter_by(state=state)
    if customer_id:
        query = query.filter_by(customer_id=customer_id)
    total = query.count()
    sales = (
        query.order_by(Sale.created_at.desc(), Sale.id.desc())
        .offset((max(page, 1) - 1) * per_page)
        .limit(per_page)
        .all()
    )
    return sales, total


def add_internal_note(principal: Principal, number: str, note: str) -> Sale:
    principal.require_admin()
    if not note or not note.strip():
        raise ValidationError("note is required")

    def _op():
        sale = _get_sale(number)
        _add_event(sale, "nota_interna", description=note.strip(), actor_id=principal.user_id, internal=True)
        db.session.commit()
        return sale

    sale = run_with_retry(_op)
    activity_service.record(
        "venta", number, "nota_interna",
        principal=principal,
        importance=IMPORTANCE_LOW,
    )
    return sale
