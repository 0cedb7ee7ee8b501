from __future__ import annotations

from ..extensions import db
from ..time_utils import to_utc_z


RESERVATION_ACTIVE = "activa"
RESERVATION_RELEASED = "liberada"
RESERVATION_COMMITTED = "confirmada"

MOVEMENT_RESERVE = "reserva"
MOVEMENT_RELEASE = "liberacion"
MOVEMENT_COMMIT = "venta"
MOVEMENT_RESTOCK = "reabastecimiento"
MOVEMENT_ADJUST = "ajuste"


class StockReservation(db.Model):
    """
    One logical hold on stock, correlated by a caller-chosen reservation_id.

    The row outlives the hold so that replays of reserve/release/commit can
    be answered from its status.
    """
    __tablename__ = "stock_reservations"
    __table_args__ = (
        db.CheckConstraint("quantity > 0", name="ck_stock_reservations_qty_positive"),
        db.Index("ix_stock_reservations_book_status", "book_id", "status"),
        {"sqlite_autoincrement": True},
    )

    id = db.Column(db.Integer, primary_key=True)
    reservation_id = db.Column(db.String(64), nullable=False, unique=True)
    book_id = db.Column(db.Integer, db.ForeignKey("books.id"), nullable=False)
    holder_id = db.Column(db.String(64), nullable=False)
    quantity = db.Column(db.Integer, nullable=False)

    status = db.Column(db.String(16), nullable=False, default=RESERVATION_ACTIVE)
    transaction_id = db.Column(db.String(64), nullable=True, index=True)

    created_at = db.Column(db.DateTime(timezone=True), nullable=False, server_default=db.func.now())
    released_at = db.Column(db.DateTime(timezone=True), nullable=True)
    committed_at = db.Column(db.DateTime(timezone=True), nullable=True)

    def to_dict(self) -> dict:
        return {
            "reservation_id": self.reservation_id,
            "book_id": self.book_id,
            "holder_id": self.holder_id,
            "quantity": self.quantity,
            "status": self.status,
            "transaction_id": self.transaction_id,
            "created_at": to_utc_z(self.created_at),
            "released_at": to_utc_z(self.released_at),
            "committed_at": to_utc_z(self.committed_at),
        }


class StockMovement(db.Model):
    """Append-only audit row for every stock ledger mutation."""
    __tablename__ = "stock_movements"
    __table_args__ = (
        db.Index("ix_stock_movements_book_occurred", "book_id", "occurred_at"),
        db.Index("ix_stock_movements_type_reference", "movement_type", "reference"),
        {"sqlite_autoincrement": True},
    )

    id = db.Column(db.Integer, primary_key=True)
    book_id = db.Column(db.Integer, db.ForeignKey("books.id"), nullable=False)
    movement_type = db.Column(db.String(32), nullable=False)
    quantity = db.Column(db.Integer, nullable=False)

    reservation_id = db.Column(db.String(64), nullable=True)
    reference = db.Column(db.String(128), nullable=True)
    actor_id = db.Column(db.String(64), nullable=True)
    note = db.Column(db.String(255), nullable=True)

    available_before = db.Column(db.Integer, nullable=False)
    reserved_before = db.Column(db.Integer, nullable=False)
    available_after = db.Column(db.Integer, nullable=False)
    reserved_after = db.Column(db.Integer, nullable=False)

    occurred_at = db.Column(db.DateTime(timezone=True), nullable=False, server_default=db.func.now())

    def to_dict(self) -> dict:
        return {
            "id": self.id,
            "book_id": self.book_id,
            "movement_type": self.movement_type,
            "quantity": self.quantity,
            "reservation_id": self.reservation_id,
            "reference": self.reference,
            "actor_id": self.actor_id,
            "note": self.note,
            "before": {"available": self.available_before, "reserved": self.reserved_before},
            "after": {"available": self.available_after, "reserved": self.reserved_after},
            "occurred_at": to_utc_z(self.occurred_at),
        }
