# Overview: Payment ledger; stored cards, audited debits/credits and admin balance overrides.

from __future__ import annotations

import uuid

from sqlalchemy.exc import IntegrityError

from ..errors import InsufficientBalance, InvalidCard, NotFound, ValidationError
from ..extensions import db
from ..models import Card, CardMovement
from ..models.payments import (
    CARD_BRANDS,
    CARD_DEBIT,
    CARD_KINDS,
    MOVEMENT_ABSOLUTE,
    MOVEMENT_CREDIT,
    MOVEMENT_DEBIT,
)
from ..principal import Principal
from ..time_utils import utcnow
from .concurrency import lock_for_update, run_with_retry


# =============================================================================
# Lookups and validation
# =============================================================================

def _generate_card_id() -> str:
    return f"CARD{uuid.uuid4().hex[:12].upper()}"


def _validate_amount(amount_cents) -> int:
    if isinstance(amount_cents, bool) or not isinstance(amount_cents, int):
        raise ValidationError("amount_cents must be an integer")
    if amount_cents <= 0:
        raise ValidationError("amount_cents must be positive")
    return amount_cents


def _validate_reference(reference) -> str:
    if not reference or not str(reference).strip():
        raise ValidationError("reference is required")
    return str(reference).strip()


def get_card(card_id: str, *, lock: bool = False) -> Card:
    query = db.session.query(Card).filter_by(card_id=card_id)
    if lock:
        query = lock_for_update(query)
    card = query.first()
    if card is None:
        raise NotFound("Card not found", details={"card_id": card_id})
    return card


def get_card_for_owner(card_id: str, owner_id: str) -> Card:
    """Cards of other customers are reported as missing."""
    card = get_card(card_id)
    if card.owner_id != str(owner_id):
        raise NotFound("Card not found", details={"card_id": card_id})
    return card


def ensure_card_valid(card: Card, now=None) -> None:
    now = now or utcnow()
    if not card.is_active:
        raise InvalidCard("Card is inactive", details={"card_id": card.card_id})
    if card.is_expired(now):
        raise InvalidCard(
            "Card is expired",
            details={"card_id": card.card_id, "expiry": f"{card.expiry_month:02d}/{card.expiry_year}"},
        )


def _find_movement(kind: str, reference: str) -> CardMovement | None:
    return CardMovement.query.filter_by(kind=kind, reference=reference).first()


def _record_movement(card: Card, kind: str, amount_cents: int, before: int, *, reference=None, reason=None, actor_id=None) -> CardMovement:
    movement = CardMovement(
        card_pk=card.id,
        kind=kind,
        amount_cents=amount_cents,
        balance_before_cents=before,
        balance_after_cents=card.balance_cents,
        reference=reference,
        reason=reason,
        actor_id=actor_id,
        occurred_at=utcnow(),
    )
    db.session.add(movement)
    return movement


# =============================================================================
# Debit / Credit
# =============================================================================

def _apply_debit(card_id: str, amount_cents: int, reference: str, *, actor_id=None, reason=None) -> CardMovement:
    existing = _find_movement(MOVEMENT_DEBIT, reference)
    if existing is not None:
        return existing

    card = get_card(card_id, lock=True)
    ensure_card_valid(card)

    before = card.balance_cents
    if card.kind == CARD_DEBIT:
        if amount_cents > card.balance_cents:
            raise InsufficientBalance(
                "Insufficient balance",
                details={
                    "card_id": card.card_id,
                    "required_cents": amount_cents,
                    "available_cents": card.balance_cents,
                },
            )
        card.balance_cents -= amount_cents

    return _record_movement(
        card, MOVEMENT_DEBIT, amount_cents, before,
        reference=reference, reason=reason, actor_id=actor_id,
    )


def debit(card_id: str, amount_cents: int, *, reference: str, actor_id: str | None = None, reason: str | None = None) -> CardMovement:
    """
    Charge a card.

    Debit cards must hold at least amount_cents (InsufficientBalance).
    Credit cards are authorized without a balance check. Replaying a
    reference returns the original movement.
    """
    amount_cents = _validate_amount(amount_cents)
    reference = _validate_reference(reference)

    def _op():
        movement = _apply_debit(card_id, amount_cents, reference, actor_id=actor_id, reason=reason)
        db.session.commit()
        return movement

    try:
        return run_with_retry(_op)
    except IntegrityError:
        existing = _find_movement(MOVEMENT_DEBIT, reference)
        if existing is None:
            raise
        return existing


def apply_credit(card_id: str, amount_cents: int, reference: str, *, actor_id=None, reason=None) -> CardMovement:
    # No validity check: expired or inactive cards still receive credits
    existing = _find_movement(MOVEMENT_CREDIT, reference)
    if existing is not None:
        return existing

    card = get_card(card_id, lock=True)
    before = card.balance_cents
    if card.kind == CARD_DEBIT:
        card.balance_cents += amount_cents

    return _record_movement(
        card, MOVEMENT_CREDIT, amount_cents, before,
        reference=reference, reason=reason, actor_id=actor_id,
    )


def credit(card_id: str, amount_cents: int, *, reference: str, actor_id: str | None = None, reason: str | None = None) -> CardMovement:
    """Credit a card (refund or compensation). Idempotent under reference."""
    amount_cents = _validate_amount(amount_cents)
    reference = _validate_reference(reference)

    def _op():
        movement = apply_credit(card_id, amount_cents, reference, actor_id=actor_id, reason=reason)
        db.session.commit()
        return movement

    try:
        return run_with_retry(_op)
    except IntegrityError:
        existing = _find_movement(MOVEMENT_CREDIT, reference)
        if existing is None:
            raise
        return existing


def set_absolute_balance(principal: Principal, card_id: str, new_balance_cents: int, reason: str) -> CardMovement:
    """Admin override of a debit card balance. The reason is persisted on the movement."""
    principal.require_admin()
    if isinstance(new_balance_cents, bool) or not isinstance(new_balance_cents, int):
        raise ValidationError("new_balance_cents must be an integer")
    if new_balance_cents < 0:
        raise ValidationError("Balance cannot be negative")
    if not reason or not reason.strip():
        raise ValidationError("reason is required")

    def _op():
        card = get_card(card_id, lock=True)
        ensure_card_valid(card)
        if card.kind != CARD_DEBIT:
            raise ValidationError("Only debit cards carry a balance", details={"card_id": card_id})

        before = card.balance_cents
        card.balance_cents = new_balance_cents
        movement = _record_movement(
            card, MOVEMENT_ABSOLUTE, new_balance_cents - before, before,
            reason=reason.strip(), actor_id=principal.user_id,
        )
        db.session.commit()
        return movement

    return run_with_retry(_op)


# =============================================================================
# Card registry
# =============================================================================

def register_card(
    principal: Principal,
    *,
    kind: str,
    brand: str,
    holder_name: str,
    last_digits: str,
    expiry_month: int,
    expiry_year: int,
    balance_cents: int = 0,
    is_default: bool = False,
) -> Card:
    if kind not in CARD_KINDS:
        raise ValidationError(f"Invalid card kind: {kind}", details={"allowed": list(CARD_KINDS)})
    if brand not in CARD_BRANDS:
        raise ValidationError(f"Invalid card brand: {brand}", details={"allowed": list(CARD_BRANDS)})
    if not holder_name or not holder_name.strip():
        raise ValidationError("holder_name is required")
    if not last_digits or len(str(last_digits)) != 4 or not str(last_digits).isdigit():
        raise ValidationError("last_digits must be exactly 4 digits")
    if not isinstance(expiry_month, int) or not 1 <= expiry_month <= 12:
        raise ValidationError("expiry_month must be between 1 and 12")
    if not isinstance(expiry_year, int) or expiry_year < 2000:
        raise ValidationError("expiry_year is invalid")
    if isinstance(balance_cents, bool) or not isinstance(balance_cents, int) or balance_cents < 0:
        raise ValidationError("balance_cents must be a non-negative integer")
    if kind != CARD_DEBIT and balance_cents:
        raise ValidationError("Only debit cards carry a balance")

    card = Card(
        card_id=_generate_card_id(),
        owner_id=principal.user_id,
        kind=kind,
        brand=brand,
        holder_name=holder_name.strip(),
        last_digits=str(last_digits),
        expiry_month=expiry_month,
        expiry_year=expiry_year,
        balance_cents=balance_cents,
        is_active=True,
    )
    if card.is_expired(utcnow()):
        raise InvalidCard("Card is expired")

    has_cards = Card.query.filter_by(owner_id=principal.user_id, is_active=True).count() > 0
    if is_default or not has_cards:
        _clear_default(principal.user_id)
        card.is_default = True

    db.session.add(card)
    db.session.commit()
    return card


def _clear_default(owner_id: str) -> None:
    for other in Card.query.filter_by(owner_id=owner_id, is_default=True).all():
        other.is_default = False


def list_cards(principal: Principal, include_inactive: bool = False) -> list[Card]:
    query = Card.query.filter_by(owner_id=principal.user_id)
    if not include_inactive:
        query = query.filter_by(is_active=True)
    return query.order_by(Card.is_default.desc(), Card.id.asc()).all()


def set_default_card(principal: Principal, card_id: str) -> Card:
    def _op():
        card = get_card_for_owner(card_id, principal.user_id)
        ensure_card_valid(card)
        _clear_default(principal.user_id)
        card.is_default = True
        db.session.commit()
        return card

    return run_with_retry(_op)


def deactivate_card(principal: Principal, card_id: str) -> Card:
    def _op():
        if principal.is_admin:
            card = get_card(card_id)
        else:
            card = get_card_for_owner(card_id, principal.user_id)
        card.is_active = False
        card.is_default = False
        db.session.commit()
        return card

    return run_with_retry(_op)


def list_movements(card_id: str) -> list[CardMovement]:
    card = get_card(card_id)
    return (
        CardMovement.query
        .filter_by(card_pk=card.id)
        .order_by(CardMovement.id.asc())
        .all()
    )
