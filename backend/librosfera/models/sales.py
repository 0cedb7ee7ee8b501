from __future__ import annotations

from ..extensions import db
from ..time_utils import to_utc_z


SALE_CREATED = "creada"
SALE_PENDING_PAYMENT = "pendiente_pago"
SALE_PAID = "pagada"
SALE_READY_TO_SHIP = "listo_para_envio"
SALE_SHIPPED = "enviado"
SALE_DELIVERED = "entregado"
SALE_CANCELLED = "cancelada"

PAYMENT_APPROVED = "aprobado"
PAYMENT_PARTIALLY_REFUNDED = "reembolso_parcial"
PAYMENT_REFUNDED = "reembolsado"

SHIPPING_HOME = "domicilio"
SHIPPING_STORE_PICKUP = "recogida_tienda"
SHIPPING_TYPES = (SHIPPING_HOME, SHIPPING_STORE_PICKUP)


class Sale(db.Model):
    """
    A finalized purchase.

    Items are snapshots taken at creation time; totals are the quote that
    was charged. Sales are never deleted, cancellation is a state.
    """
    __tablename__ = "sales"
    __table_args__ = (
        db.Index("ix_sales_customer_created", "customer_id", "created_at"),
        db.Index("ix_sales_state_created", "state", "created_at"),
        {"sqlite_autoincrement": True},
    )

    id = db.Column(db.Integer, primary_key=True)
    number = db.Column(db.String(32), nullable=False, unique=True)
    customer_id = db.Column(db.String(64), nullable=False)
    cart_id = db.Column(db.Integer, db.ForeignKey("carts.id"), nullable=True)

    state = db.Column(db.String(24), nullable=False, default=SALE_CREATED)

    # Payment
    payment_method = db.Column(db.String(24), nullable=False)
    card_id = db.Column(db.String(32), nullable=False)
    payment_state = db.Column(db.String(24), nullable=False, default=PAYMENT_APPROVED)
    payment_reference = db.Column(db.String(128), nullable=True)

    # Shipping
    shipping_type = db.Column(db.String(24), nullable=False)
    shipping_address = db.Column(db.JSON, nullable=True)
    pickup_store_id = db.Column(db.String(64), nullable=True)
    tracking_number = db.Column(db.String(64), nullable=True)
    carrier = db.Column(db.String(64), nullable=True)
    shipped_at = db.Column(db.DateTime(timezone=True), nullable=True)
    delivered_at = db.Column(db.DateTime(timezone=True), nullable=True)

    # Totals (cents)
    subtotal_cents = db.Column(db.Integer, nullable=False, default=0)
    discount_cents = db.Column(db.Integer, nullable=False, default=0)
    tax_cents = db.Column(db.Integer, nullable=False, default=0)
    shipping_cost_cents = db.Column(db.Integer, nullable=False, default=0)
    total_cents = db.Column(db.Integer, nullable=False, default=0)
    refunded_cents = db.Column(db.Integer, nullable=False, default=0)

    tax_paid_by_customer = db.Column(db.Boolean, nullable=False, default=False)
    discount_codes = db.Column(db.JSON, nullable=False, default=list)

    # Cancellation / restock audit
    cancelled_at = db.Column(db.DateTime(timezone=True), nullable=True)
    cancel_reason = db.Column(db.String(255), nullable=True)
    cancelled_by_id = db.Column(db.String(64), nullable=True)
    cancelled_by_role = db.Column(db.String(24), nullable=True)
    restocked_at = db.Column(db.DateTime(timezone=True), nullable=True)

    created_at = db.Column(db.DateTime(timezone=True), nullable=False, server_default=db.func.now())
    updated_at = db.Column(
        db.DateTime(timezone=True),
        nullable=False,
        server_default=db.func.now(),
        onupdate=db.func.now(),
    )
    version_id = db.Column(db.Integer, nullable=False, default=1)

    items = db.relationship(
        "SaleItem", backref="sale", lazy=True, cascade="all, delete-orphan", order_by="SaleItem.id"
    )
    events = db.relationship(
        "SaleEvent", backref="sale", lazy=True, cascade="all, delete-orphan", order_by="SaleEvent.id"
    )

    __mapper_args__ = {"version_id_col": version_id}

    @property
    def refundable_cents(self) -> int:
        return max(0, self.total_cents - self.refunded_cents)

    def tax_info(self) -> dict:
        if self.tax_paid_by_customer:
            return {
                "paid_by_customer": True,
                "tax_cents": self.tax_cents,
                "note": "Tax is paid separately by the customer",
            }
        return {
            "paid_by_customer": False,
            "tax_cents": self.tax_cents,
            "note": "Tax is included in the total",
        }

    def to_dict(self, include_history: bool = False) -> dict:
        data = {
            "id": self.id,
            "number": self.number,
            "customer_id": self.customer_id,
            "state": self.state,
            "payment": {
                "method": self.payment_method,
                "card_id": self.card_id,
                "state": self.payment_state,
                "reference": self.payment_reference,
            },
            "shipping": {
                "type": self.shipping_type,
                "address": self.shipping_address,
                "pickup_store_id": self.pickup_store_id,
                "tracking_number": self.tracking_number,
                "carrier": self.carrier,
                "shipped_at": to_utc_z(self.shipped_at),
                "delivered_at": to_utc_z(self.delivered_at),
            },
            "totals": {
                "subtotal_cents": self.subtotal_cents,
                "discount_cents": self.discount_cents,
                "tax_cents": self.tax_cents,
                "shipping_cost_cents": self.shipping_cost_cents,
                "total_cents": self.total_cents,
                "refunded_cents": self.refunded_cents,
            },
            "tax_info": self.tax_info(),
            "discount_codes": list(self.discount_codes or []),
            "items": [item.to_dict() for item in self.items],
            "cancellation": {
                "cancelled_at": to_utc_z(self.cancelled_at),
                "reason": self.cancel_reason,
                "cancelled_by_id": self.cancelled_by_id,
                "cancelled_by_role": self.cancelled_by_role,
            } if self.cancelled_at else None,
            "restocked_at": to_utc_z(self.restocked_at),
            "created_at": to_utc_z(self.created_at),
            "version_id": self.version_id,
        }
        if include_history:
            data["history"] = [event.to_dict() for event in self.events]
        return data


class SaleItem(db.Model):
    """Immutable line snapshot of a sale."""
    __tablename__ = "sale_items"
    __table_args__ = (
        db.CheckConstraint("quantity > 0", name="ck_sale_items_qty_positive"),
        {"sqlite_autoincrement": True},
    )

    id = db.Column(db.Integer, primary_key=True)
    sale_id = db.Column(db.Integer, db.ForeignKey("sales.id"), nullable=False, index=True)
    book_id = db.Column(db.Integer, db.ForeignKey("books.id"), nullable=False)

    title = db.Column(db.String(255), nullable=False)
    author = db.Column(db.String(255), nullable=False)
    isbn = db.Column(db.String(32), nullable=True)

    unit_price_cents = db.Column(db.Integer, nullable=False)
    quantity = db.Column(db.Integer, nullable=False)
    discount_cents = db.Column(db.Integer, nullable=False, default=0)
    tax_cents = db.Column(db.Integer, nullable=False, default=0)
    line_total_cents = db.Column(db.Integer, nullable=False)

    reservation_id = db.Column(db.String(64), nullable=True)

    # Units already claimed by return requests
    returned_qty_requested = db.Column(db.Integer, nullable=False, default=0)

    @property
    def gross_cents(self) -> int:
        return self.unit_price_cents * self.quantity

    def to_dict(self) -> dict:
        return {
            "id": self.id,
            "book_id": self.book_id,
            "title": self.title,
            "author": self.author,
            "isbn": self.isbn,
            "unit_price_cents": self.unit_price_cents,
            "quantity": self.quantity,
            "discount_cents": self.discount_cents,
            "tax_cents": self.tax_cents,
            "line_total_cents": self.line_total_cents,
            "returned_qty_requested": self.returned_qty_requested,
        }


class SaleEvent(db.Model):
    """Append-only sale history (state transitions, notes)."""
    __tablename__ = "sale_events"
    __table_args__ = ({"sqlite_autoincrement": True},)

    id = db.Column(db.Integer, primary_key=True)
    sale_id = db.Column(db.Integer, db.ForeignKey("sales.id"), nullable=False, index=True)
    event = db.Column(db.String(32), nullable=False)
    from_state = db.Column(db.String(24), nullable=True)
    to_state = db.Column(db.String(24), nullable=True)
    description = db.Column(db.String(255), nullable=True)
    actor_id = db.Column(db.String(64), nullable=True)
    internal = db.Column(db.Boolean, nullable=False, default=False)
    occurred_at = db.Column(db.DateTime(timezone=True), nullable=False, server_default=db.func.now())

    def to_dict(self) -> dict:
        return {
            "event": self.event,
            "from_state": self.from_state,
            "to_state": self.to_state,
            "description": self.description,
            "actor_id": self.actor_id,
            "internal": self.internal,
            "occurred_at": to_utc_z(self.occurred_at),
        }
