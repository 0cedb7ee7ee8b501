from __future__ import annotations

from ..extensions import db
from ..time_utils import to_utc_z


CART_ACTIVE = "activo"
CART_CONVERTED = "convertido"


class Cart(db.Model):
    """
    Mutable per-customer cart.

    Totals are derived data: the cart service recomputes them through the
    pricing engine after every mutation and stores the result for display.
    """
    __tablename__ = "carts"
    __table_args__ = (
        db.Index("ix_carts_customer_status", "customer_id", "status"),
        {"sqlite_autoincrement": True},
    )

    id = db.Column(db.Integer, primary_key=True)
    customer_id = db.Column(db.String(64), nullable=False)
    status = db.Column(db.String(16), nullable=False, default=CART_ACTIVE)

    discount_codes = db.Column(db.JSON, nullable=False, default=list)

    subtotal_cents = db.Column(db.Integer, nullable=False, default=0)
    discount_cents = db.Column(db.Integer, nullable=False, default=0)
    tax_cents = db.Column(db.Integer, nullable=False, default=0)
    total_cents = db.Column(db.Integer, nullable=False, default=0)

    created_at = db.Column(db.DateTime(timezone=True), nullable=False, server_default=db.func.now())
    updated_at = db.Column(
        db.DateTime(timezone=True),
        nullable=False,
        server_default=db.func.now(),
        onupdate=db.func.now(),
    )
    version_id = db.Column(db.Integer, nullable=False, default=1)

    items = db.relationship(
        "CartItem",
        backref="cart",
        lazy=True,
        cascade="all, delete-orphan",
        order_by="CartItem.id",
    )

    __mapper_args__ = {"version_id_col": version_id}

    @property
    def has_price_drift(self) -> bool:
        return any(item.price_changed for item in self.items)

    def to_dict(self) -> dict:
        return {
            "id": self.id,
            "customer_id": self.customer_id,
            "status": self.status,
            "discount_codes": list(self.discount_codes or []),
            "items": [item.to_dict() for item in self.items],
            "item_count": sum(item.quantity for item in self.items),
            "subtotal_cents": self.subtotal_cents,
            "discount_cents": self.discount_cents,
            "tax_cents": self.tax_cents,
            "total_cents": self.total_cents,
            "has_price_drift": self.has_price_drift,
            "updated_at": to_utc_z(self.updated_at),
        }


class CartItem(db.Model):
    __tablename__ = "cart_items"
    __table_args__ = (
        db.UniqueConstraint("cart_id", "book_id", name="uq_cart_items_cart_book"),
        db.CheckConstraint("quantity > 0", name="ck_cart_items_qty_positive"),
        {"sqlite_autoincrement": True},
    )

    id = db.Column(db.Integer, primary_key=True)
    cart_id = db.Column(db.Integer, db.ForeignKey("carts.id"), nullable=False, index=True)
    book_id = db.Column(db.Integer, db.ForeignKey("books.id"), nullable=False)
    quantity = db.Column(db.Integer, nullable=False)

    # Price the customer saw when adding the line
    unit_price_cents = db.Column(db.Integer, nullable=False)

    # Drift detection
    price_changed = db.Column(db.Boolean, nullable=False, default=False)
    current_price_cents = db.Column(db.Integer, nullable=True)

    # Last computed line totals
    discount_cents = db.Column(db.Integer, nullable=False, default=0)
    tax_cents = db.Column(db.Integer, nullable=False, default=0)
    line_total_cents = db.Column(db.Integer, nullable=False, default=0)

    added_at = db.Column(db.DateTime(timezone=True), nullable=False, server_default=db.func.now())

    book = db.relationship("Book")

    def to_dict(self) -> dict:
        return {
            "id": self.id,
            "book_id": self.book_id,
            "title": self.book.title if self.book else None,
            "quantity": self.quantity,
            "unit_price_cents": self.unit_price_cents,
            "price_changed": self.price_changed,
            "current_price_cents": self.current_price_cents,
            "discount_cents": self.discount_cents,
            "tax_cents": self.tax_cents,
            "line_total_cents": self.line_total_cents,
            "added_at": to_utc_z(self.added_at),
        }
