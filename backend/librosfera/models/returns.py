from __future__ import annotations

from ..extensions import db
from ..time_utils import to_utc_z


RETURN_REQUESTED = "solicitada"
RETURN_APPROVED = "aprobada"
RETURN_REJECTED = "rechazada"
RETURN_AWAITING_SHIPMENT = "esperando_envio"
RETURN_IN_TRANSIT = "en_transito"
RETURN_RECEIVED = "recibida"
RETURN_IN_INSPECTION = "en_inspeccion"
RETURN_REFUND_APPROVED = "reembolso_aprobado"
RETURN_REFUND_PROCESSING = "reembolso_procesando"
RETURN_REFUND_COMPLETED = "reembolso_completado"
RETURN_CLOSED = "cerrada"
RETURN_CANCELLED = "cancelada"


ITEM_REQUESTED = "solicitado"
ITEM_APPROVED = "aprobado"
ITEM_REJECTED = "rechazado"
ITEM_RECEIVED = "recibido"
ITEM_INSPECTED = "inspeccionado"
ITEM_REFUNDED = "reembolsado"

INSPECTION_APPROVED = "aprobado"
INSPECTION_REJECTED = "rechazado"
INSPECTION_PARTIAL = "aprobado_parcial"
INSPECTION_RESULTS = (INSPECTION_APPROVED, INSPECTION_REJECTED, INSPECTION_PARTIAL)

RETURN_REASONS = (
    "producto_danado",
    "producto_incorrecto",
    "no_coincide_descripcion",
    "no_satisfecho",
    "error_compra",
    "producto_no_llego",
    "otro",
)


class Return(db.Model):
    """
    Return request against one delivered sale.

    Amounts reconcile against the sale's item snapshots, never against the
    current catalog.
    """
    __tablename__ = "returns"
    __table_args__ = (
        db.Index("ix_returns_customer_created", "customer_id", "created_at"),
        db.Index("ix_returns_state", "state"),
        {"sqlite_autoincrement": True},
    )

    id = db.Column(db.Integer, primary_key=True)
    code = db.Column(db.String(32), nullable=False, unique=True)
    sale_id = db.Column(db.Integer, db.ForeignKey("sales.id"), nullable=False, index=True)
    customer_id = db.Column(db.String(64), nullable=False)

    state = db.Column(db.String(24), nullable=False, default=RETURN_REQUESTED)

    requested_refund_cents = db.Column(db.Integer, nullable=False, default=0)
    approved_refund_cents = db.Column(db.Integer, nullable=False, default=0)
    refunded_cents = db.Column(db.Integer, nullable=False, default=0)

    return_tracking_number = db.Column(db.String(64), nullable=True)
    return_carrier = db.Column(db.String(64), nullable=True)
    received_at = db.Column(db.DateTime(timezone=True), nullable=True)

    refund_reference = db.Column(db.String(128), nullable=True)
    refund_processed_at = db.Column(db.DateTime(timezone=True), nullable=True)

    rejection_reason = db.Column(db.String(255), nullable=True)
    cancel_reason = db.Column(db.String(255), nullable=True)
    cancelled_by_id = db.Column(db.String(64), nullable=True)
    cancelled_at = db.Column(db.DateTime(timezone=True), nullable=True)
    closed_at = db.Column(db.DateTime(timezone=True), nullable=True)

    created_at = db.Column(db.DateTime(timezone=True), nullable=False, server_default=db.func.now())
    updated_at = db.Column(
        db.DateTime(timezone=True),
        nullable=False,
        server_default=db.func.now(),
        onupdate=db.func.now(),
    )
    version_id = db.Column(db.Integer, nullable=False, default=1)

    sale = db.relationship("Sale", backref=db.backref("returns", lazy=True))
    items = db.relationship(
        "ReturnItem", backref="return_request", lazy=True, cascade="all, delete-orphan", order_by="ReturnItem.id"
    )
    events = db.relationship(
        "ReturnEvent", backref="return_request", lazy=True, cascade="all, delete-orphan", order_by="ReturnEvent.id"
    )

    __mapper_args__ = {"version_id_col": version_id}

    def to_dict(self, include_history: bool = False) -> dict:
        data = {
            "id": self.id,
            "code": self.code,
            "sale_number": self.sale.number if self.sale else None,
            "customer_id": self.customer_id,
            "state": self.state,
            "items": [item.to_dict() for item in self.items],
            "totals": {
                "requested_refund_cents": self.requested_refund_cents,
                "approved_refund_cents": self.approved_refund_cents,
                "refunded_cents": self.refunded_cents,
            },
            "return_shipping": {
                "tracking_number": self.return_tracking_number,
                "carrier": self.return_carrier,
                "received_at": to_utc_z(self.received_at),
            },
            "refund_reference": self.refund_reference,
            "refund_processed_at": to_utc_z(self.refund_processed_at),
            "rejection_reason": self.rejection_reason,
            "cancellation": {
                "reason": self.cancel_reason,
                "cancelled_by_id": self.cancelled_by_id,
                "cancelled_at": to_utc_z(self.cancelled_at),
            } if self.cancelled_at else None,
            "closed_at": to_utc_z(self.closed_at),
            "created_at": to_utc_z(self.created_at),
        }
        if include_history:
            data["history"] = [event.to_dict() for event in self.events]
        return data


class ReturnItem(db.Model):
    __tablename__ = "return_items"
    __table_args__ = (
        db.CheckConstraint("requested_qty > 0", name="ck_return_items_qty_positive"),
        {"sqlite_autoincrement": True},
    )

    id = db.Column(db.Integer, primary_key=True)
    return_id = db.Column(db.Integer, db.ForeignKey("returns.id"), nullable=False, index=True)
    sale_item_id = db.Column(db.Integer, db.ForeignKey("sale_items.id"), nullable=False)
    book_id = db.Column(db.Integer, db.ForeignKey("books.id"), nullable=False)

    # Snapshot copied from the sale item
    title = db.Column(db.String(255), nullable=False)
    unit_price_cents = db.Column(db.Integer, nullable=False)
    purchased_qty = db.Column(db.Integer, nullable=False)

    requested_qty = db.Column(db.Integer, nullable=False)
    reason = db.Column(db.String(32), nullable=False)
    description = db.Column(db.Text, nullable=True)

    item_state = db.Column(db.String(16), nullable=False, default=ITEM_REQUESTED)

    inspection_result = db.Column(db.String(24), nullable=True)
    inspection_notes = db.Column(db.Text, nullable=True)
    refund_percentage = db.Column(db.Integer, nullable=True)
    refund_amount_cents = db.Column(db.Integer, nullable=False, default=0)
    inspected_by_id = db.Column(db.String(64), nullable=True)
    inspected_at = db.Column(db.DateTime(timezone=True), nullable=True)

    sale_item = db.relationship("SaleItem")

    def to_dict(self) -> dict:
        return {
            "id": self.id,
            "sale_item_id": self.sale_item_id,
            "book_id": self.book_id,
            "title": self.title,
            "unit_price_cents": self.unit_price_cents,
            "purchased_qty": self.purchased_qty,
            "requested_qty": self.requested_qty,
            "reason": self.reason,
            "description": self.description,
            "item_state": self.item_state,
            "inspection": {
                "result": self.inspection_result,
                "notes": self.inspection_notes,
                "refund_percentage": self.refund_percentage,
                "inspected_by_id": self.inspected_by_id,
                "inspected_at": to_utc_z(self.inspected_at),
            } if self.inspection_result else None,
            "refund_amount_cents": self.refund_amount_cents,
        }


class ReturnEvent(db.Model):
    __tablename__ = "return_events"
    __table_args__ = ({"sqlite_autoincrement": True},)

    id = db.Column(db.Integer, primary_key=True)
    return_id = db.Column(db.Integer, db.ForeignKey("returns.id"), nullable=False, index=True)
    event = db.Column(db.String(32), nullable=False)
    from_state = db.Column(db.String(24), nullable=True)
    to_state = db.Column(db.String(24), nullable=True)
    description = db.Column(db.String(255), nullable=True)
    actor_id = db.Column(db.String(64), nullable=True)
    occurred_at = db.Column(db.DateTime(timezone=True), nullable=False, server_default=db.func.now())

    def to_dict(self) -> dict:
        return {
            "event": self.event,
            "from_state": self.from_state,
            "to_state": self.to_state,
            "description": self.description,
            "actor_id": self.actor_id,
            "occurred_at": to_utc_z(self.occurred_at),
        }
