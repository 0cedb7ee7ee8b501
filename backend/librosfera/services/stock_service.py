# Overview: Stock ledger; reserve/release/commit primitives over BookStock counters.

from __future__ import annotations

from sqlalchemy.exc import IntegrityError

from ..errors import (
    InsufficientStock,
    InvalidStateTransition,
    NotFound,
    UnknownReservation,
    ValidationError,
)
from ..extensions import db
from ..models import Book, BookStock, StockMovement, StockReservation
from ..models.stock import (
    MOVEMENT_ADJUST,
    MOVEMENT_COMMIT,
    MOVEMENT_RELEASE,
    MOVEMENT_RESERVE,
    MOVEMENT_RESTOCK,
    RESERVATION_ACTIVE,
    RESERVATION_COMMITTED,
    RESERVATION_RELEASED,
)
from ..time_utils import utcnow
from .concurrency import lock_for_update, run_with_retry

"""
Stock ledger invariants (authoritative)

Counters:
- available_qty >= 0 and reserved_qty >= 0 at all times (also CHECK constraints).
- reserve moves units available -> reserved; release moves them back.
- commit moves units reserved -> sold. available + reserved + sold is
  constant across reserve -> commit; physical stock (available + reserved)
  only shrinks through commit or an admin adjustment.

Idempotency:
- reservation_id correlates exactly one hold (book, holder, quantity).
- Replaying reserve returns the existing reservation without touching counters.
- release of a released/committed reservation is a no-op.
- commit of a committed reservation is a no-op; commit of a released one fails.
- restock is idempotent under its reference.

Concurrency:
- BookStock.version is the CAS token (version_id_col). Each public operation
  is one unit of work run through run_with_retry.
- The apply_* helpers mutate without committing so orchestrators can fold
  them into a larger unit of work.
"""


def _validate_quantity(qty) -> int:
    if isinstance(qty, bool) or not isinstance(qty, int):
        raise ValidationError("quantity must be an integer")
    if qty <= 0:
        raise ValidationError("quantity must be positive")
    return qty


def _validate_reservation_id(reservation_id) -> str:
    if not reservation_id or not str(reservation_id).strip():
        raise ValidationError("reservation_id is required")
    reservation_id = str(reservation_id).strip()
    if len(reservation_id) > 64:
        raise ValidationError("reservation_id must be at most 64 characters")
    return reservation_id


def _load_stock(book_id: int, *, create: bool = False) -> BookStock | None:
    book = db.session.get(Book, book_id)
    if book is None:
        raise NotFound("Book not found", details={"book_id": book_id})

    stock = lock_for_update(db.session.query(BookStock).filter_by(book_id=book_id)).first()
    if stock is None and create:
        stock = BookStock(book_id=book_id, available_qty=0, reserved_qty=0, sold_qty=0)
        db.session.add(stock)
        db.session.flush()
    return stock


def _record_movement(
    stock: BookStock,
    movement_type: str,
    qty: int,
    before: tuple[int, int],
    *,
    reservation_id: str | None = None,
    reference: str | None = None,
    actor_id: str | None = None,
    note: str | None = None,
) -> StockMovement:
    movement = StockMovement(
        book_id=stock.book_id,
        movement_type=movement_type,
        quantity=qty,
        reservation_id=reservation_id,
        reference=reference,
        actor_id=actor_id,
        note=note,
        available_before=before[0],
        reserved_before=before[1],
        available_after=stock.available_qty,
        reserved_after=stock.reserved_qty,
        occurred_at=utcnow(),
    )
    db.session.add(movement)
    return movement


def _get_reservation(reservation_id: str) -> StockReservation | None:
    return StockReservation.query.filter_by(reservation_id=reservation_id).first()


def _ensure_same_hold(reservation: StockReservation, book_id: int, holder_id: str | None, qty: int | None) -> None:
    mismatches = {}
    if reservation.book_id != book_id:
        mismatches["book_id"] = reservation.book_id
    if holder_id is not None and reservation.holder_id != str(holder_id):
        mismatches["holder_id"] = reservation.holder_id
    if qty is not None and reservation.quantity != qty:
        mismatches["quantity"] = reservation.quantity
    if mismatches:
        raise ValidationError(
            "reservation_id already correlates a different hold",
            details={"reservation_id": reservation.reservation_id, "expected": mismatches},
        )


# =============================================================================
# Reads
# =============================================================================

def get_stock(book_id: int) -> dict:
    """Current counters for a book (zeros when no stock row exists yet)."""
    stock = _load_stock(book_id)
    if stock is None:
        return {
            "book_id": book_id,
            "available_qty": 0,
            "reserved_qty": 0,
            "sold_qty": 0,
            "physical_qty": 0,
            "version": 0,
            "updated_at": None,
        }
    return stock.to_dict()


def get_reservation(reservation_id: str) -> StockReservation:
    reservation = _get_reservation(_validate_reservation_id(reservation_id))
    if reservation is None:
        raise UnknownReservation("Unknown reservation", details={"reservation_id": reservation_id})
    return reservation


def list_movements(book_id: int, limit: int = 100) -> list[StockMovement]:
    return (
        StockMovement.query
        .filter_by(book_id=book_id)
        .order_by(StockMovement.id.desc())
        .limit(limit)
        .all()
    )


# =============================================================================
# Reserve / Release / Commit
# =============================================================================

def reserve(book_id: int, qty: int, holder_id: str, reservation_id: str, *, actor_id: str | None = None) -> StockReservation:
    """
    Move qty units of a book from available to reserved under reservation_id.

    Raises InsufficientStock when fewer than qty units are available.
    Replaying the same reservation_id is a no-op success.
    """
    qty = _validate_quantity(qty)
    reservation_id = _validate_reservation_id(reservation_id)
    if not holder_id:
        raise ValidationError("holder_id is required")
    holder_id = str(holder_id)

    def _op():
        existing = _get_reservation(reservation_id)
        if existing is not None:
            _ensure_same_hold(existing, book_id, holder_id, qty)
            return existing

        stock = _load_stock(book_id)
        available = stock.available_qty if stock is not None else 0
        if available < qty:
            raise InsufficientStock(
                "Insufficient stock",
                details={"book_id": book_id, "requested": qty, "available": available},
            )

        before = (stock.available_qty, stock.reserved_qty)
        stock.available_qty -= qty
        stock.reserved_qty += qty

        reservation = StockReservation(
            reservation_id=reservation_id,
            book_id=book_id,
            holder_id=holder_id,
            quantity=qty,
            status=RESERVATION_ACTIVE,
        )
        db.session.add(reservation)
        _record_movement(
            stock, MOVEMENT_RESERVE, qty, before,
            reservation_id=reservation_id, actor_id=actor_id or holder_id,
        )
        db.session.commit()
        return reservation

    try:
        return run_with_retry(_op)
    except IntegrityError:
        # Lost an insert race on the same reservation_id; answer as a replay
        existing = _get_reservation(reservation_id)
        if existing is None:
            raise
        _ensure_same_hold(existing, book_id, holder_id, qty)
        return existing


def _apply_release(book_id: int, reservation_id: str, *, holder_id=None, qty=None, actor_id=None) -> StockReservation:
    reservation = _get_reservation(reservation_id)
    if reservation is None:
        raise UnknownReservation("Unknown reservation", details={"reservation_id": reservation_id})
    _ensure_same_hold(reservation, book_id, holder_id, qty)

    if reservation.status != RESERVATION_ACTIVE:
        return reservation

    stock = _load_stock(book_id)
    before = (stock.available_qty, stock.reserved_qty)
    stock.reserved_qty -= reservation.quantity
    stock.available_qty += reservation.quantity

    reservation.status = RESERVATION_RELEASED
    reservation.released_at = utcnow()
    _record_movement(
        stock, MOVEMENT_RELEASE, reservation.quantity, before,
        reservation_id=reservation_id, actor_id=actor_id or reservation.holder_id,
    )
    return reservation


def release(book_id: int, qty: int | None, holder_id: str | None, reservation_id: str, *, actor_id: str | None = None) -> StockReservation:
    """
    Return the units held under reservation_id to available stock.

    Idempotent: releasing a released or committed reservation changes nothing.
    """
    if qty is not None:
        qty = _validate_quantity(qty)
    reservation_id = _validate_reservation_id(reservation_id)

    def _op():
        reservation = _apply_release(
            book_id, reservation_id, holder_id=holder_id, qty=qty, actor_id=actor_id
        )
        db.session.commit()
        return reservation

    return run_with_retry(_op)


def apply_commit(book_id: int, reservation_id: str, transaction_id: str, *, holder_id=None, qty=None, actor_id=None) -> StockReservation:
    reservation = _get_reservation(reservation_id)
    if reservation is None:
        raise UnknownReservation("Unknown reservation", details={"reservation_id": reservation_id})
    _ensure_same_hold(reservation, book_id, holder_id, qty)

    if reservation.status == RESERVATION_COMMITTED:
        return reservation
    if reservation.status == RESERVATION_RELEASED:
        raise InvalidStateTransition(
            "Reservation was already released",
            details={"reservation_id": reservation_id, "status": reservation.status},
        )

    stock = _load_stock(book_id)
    before = (stock.available_qty, stock.reserved_qty)
    stock.reserved_qty -= reservation.quantity
    stock.sold_qty += reservation.quantity

    reservation.status = RESERVATION_COMMITTED
    reservation.transaction_id = transaction_id
    reservation.committed_at = utcnow()
    _record_movement(
        stock, MOVEMENT_COMMIT, reservation.quantity, before,
        reservation_id=reservation_id, reference=transaction_id,
        actor_id=actor_id or reservation.holder_id,
    )
    return reservation


def commit(book_id: int, qty: int | None, holder_id: str | None, reservation_id: str, transaction_id: str, *, actor_id: str | None = None) -> StockReservation:
    """
    Turn a reservation into a permanent decrement (reserved -> sold).

    Replaying the commit is a no-op. Committing a released reservation
    raises InvalidStateTransition.
    """
    if qty is not None:
        qty = _validate_quantity(qty)
    reservation_id = _validate_reservation_id(reservation_id)
    if not transaction_id or not str(transaction_id).strip():
        raise ValidationError("transaction_id is required")
    transaction_id = str(transaction_id).strip()

    def _op():
        reservation = apply_commit(
            book_id, reservation_id, transaction_id,
            holder_id=holder_id, qty=qty, actor_id=actor_id,
        )
        db.session.commit()
        return reservation

    return run_with_retry(_op)


# =============================================================================
# Restock / admin adjustment
# =============================================================================

def apply_restock(book_id: int, qty: int, *, reason: str, reference: str | None = None, actor_id: str | None = None) -> BookStock:
    if reference:
        already = StockMovement.query.filter_by(
            book_id=book_id, movement_type=MOVEMENT_RESTOCK, reference=reference
        ).first()
        if already is not None:
            return _load_stock(book_id)

    stock = _load_stock(book_id, create=True)
    before = (stock.available_qty, stock.reserved_qty)
    stock.available_qty += qty
    _record_movement(
        stock, MOVEMENT_RESTOCK, qty, before,
        reference=reference, actor_id=actor_id, note=reason,
    )
    return stock


def restock(book_id: int, qty: int, *, reason: str, reference: str | None = None, actor_id: str | None = None) -> dict:
    """Return units to available stock (returns, cancelled sales, deliveries)."""
    qty = _validate_quantity(qty)
    if not reason or not reason.strip():
        raise ValidationError("reason is required")

    def _op():
        stock = apply_restock(book_id, qty, reason=reason.strip(), reference=reference, actor_id=actor_id)
        db.session.commit()
        return stock.to_dict()

    return run_with_retry(_op)


def set_stock(book_id: int, available_qty: int, *, reason: str, actor_id: str | None = None) -> dict:
    """
    Admin edit of the available counter. Reserved and sold units are untouched.
    """
    if isinstance(available_qty, bool) or not isinstance(available_qty, int):
        raise ValidationError("available_qty must be an integer")
    if available_qty < 0:
        raise ValidationError("available_qty cannot be negative")
    if not reason or not reason.strip():
        raise ValidationError("reason is required")

    def _op():
        stock = _load_stock(book_id, create=True)
        before = (stock.available_qty, stock.reserved_qty)
        delta = available_qty - stock.available_qty
        stock.available_qty = available_qty
        _record_movement(
            stock, MOVEMENT_ADJUST, delta, before,
            actor_id=actor_id, note=reason.strip(),
        )
        db.session.commit()
        return stock.to_dict()

    return run_with_retry(_op)
