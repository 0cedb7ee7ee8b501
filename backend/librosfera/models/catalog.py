from __future__ import annotations

from ..extensions import db
from ..time_utils import to_utc_z


DISCOUNT_PERCENTAGE = "porcentaje"
DISCOUNT_FIXED = "valor_fijo"
DISCOUNT_TWO_FOR_ONE = "promocion_2x1"
DISCOUNT_BUNDLE = "bundle"
DISCOUNT_KINDS = (DISCOUNT_PERCENTAGE, DISCOUNT_FIXED, DISCOUNT_TWO_FOR_ONE, DISCOUNT_BUNDLE)


class Book(db.Model):
    """
    Catalog entry, reduced to what fulfillment needs.

    price_cents is the CURRENT price. Carts remember the add-time price and
    sales keep their own snapshot, so editing a book never rewrites history.
    """
    __tablename__ = "books"
    __table_args__ = (
        db.Index("ix_books_active_title", "is_active", "title"),
        {"sqlite_autoincrement": True},
    )

    id = db.Column(db.Integer, primary_key=True)
    isbn = db.Column(db.String(32), nullable=True, unique=True)
    title = db.Column(db.String(255), nullable=False)
    author = db.Column(db.String(255), nullable=False)

    price_cents = db.Column(db.Integer, nullable=False)

    # None means "use TAX_RATE_PERCENT from config"
    tax_percent = db.Column(db.Integer, nullable=True)

    is_active = db.Column(db.Boolean, nullable=False, default=True)
    version_id = db.Column(db.Integer, nullable=False, default=1)

    created_at = db.Column(db.DateTime(timezone=True), nullable=False, server_default=db.func.now())

    __mapper_args__ = {"version_id_col": version_id}

    def to_dict(self) -> dict:
        return {
            "id": self.id,
            "isbn": self.isbn,
            "title": self.title,
            "author": self.author,
            "price_cents": self.price_cents,
            "tax_percent": self.tax_percent,
            "is_active": self.is_active,
        }


class BookStock(db.Model):
    """
    Physical stock counters for one book.

    Only the stock ledger service mutates this row. version is the optimistic
    concurrency token: every UPDATE is guarded by the version read, a
    mismatch raises StaleDataError and the caller retries.
    """
    __tablename__ = "book_stock"
    __table_args__ = (
        db.CheckConstraint("available_qty >= 0", name="ck_book_stock_available_nonneg"),
        db.CheckConstraint("reserved_qty >= 0", name="ck_book_stock_reserved_nonneg"),
        db.CheckConstraint("sold_qty >= 0", name="ck_book_stock_sold_nonneg"),
    )

    id = db.Column(db.Integer, primary_key=True)
    book_id = db.Column(db.Integer, db.ForeignKey("books.id"), nullable=False, unique=True)

    available_qty = db.Column(db.Integer, nullable=False, default=0)
    reserved_qty = db.Column(db.Integer, nullable=False, default=0)
    sold_qty = db.Column(db.Integer, nullable=False, default=0)

    version = db.Column(db.Integer, nullable=False, default=1)
    updated_at = db.Column(
        db.DateTime(timezone=True),
        nullable=False,
        server_default=db.func.now(),
        onupdate=db.func.now(),
    )

    book = db.relationship("Book", backref=db.backref("stock", uselist=False))

    __mapper_args__ = {"version_id_col": version}

    @property
    def physical_qty(self) -> int:
        return self.available_qty + self.reserved_qty

    def to_dict(self) -> dict:
        return {
            "book_id": self.book_id,
            "available_qty": self.available_qty,
            "reserved_qty": self.reserved_qty,
            "sold_qty": self.sold_qty,
            "physical_qty": self.physical_qty,
            "version": self.version,
            "updated_at": to_utc_z(self.updated_at),
        }


class Discount(db.Model):
    """
    A price rule for one book, or for every line when book_id is NULL.

    Rules without a code apply automatically; coded rules apply only when the
    code was entered on the cart.

    value semantics by kind:
    - porcentaje: percent off the line (clamped to 0..100)
    - valor_fijo: cents off each unit
    - bundle: percent off the line once quantity >= min_quantity
    - promocion_2x1: ignored, every second unit is free
    """
    __tablename__ = "discounts"
    __table_args__ = (
        db.Index("ix_discounts_code", "code"),
        db.Index("ix_discounts_book_active", "book_id", "is_active"),
        {"sqlite_autoincrement": True},
    )

    id = db.Column(db.Integer, primary_key=True)
    book_id = db.Column(db.Integer, db.ForeignKey("books.id"), nullable=True)

    kind = db.Column(db.String(32), nullable=False)
    value = db.Column(db.Integer, nullable=False, default=0)
    min_quantity = db.Column(db.Integer, nullable=False, default=2)

    code = db.Column(db.String(64), nullable=True)
    description = db.Column(db.String(255), nullable=True)

    starts_at = db.Column(db.DateTime(timezone=True), nullable=True)
    ends_at = db.Column(db.DateTime(timezone=True), nullable=True)
    is_active = db.Column(db.Boolean, nullable=False, default=True)

    created_at = db.Column(db.DateTime(timezone=True), nullable=False, server_default=db.func.now())

    book = db.relationship("Book", backref=db.backref("discounts", lazy=True))

    def is_current(self, now) -> bool:
        if not self.is_active:
            return False
        if self.starts_at and now < self.starts_at:
            return False
        if self.ends_at and now > self.ends_at:
            return False
        return True

    def to_dict(self) -> dict:
        return {
            "id": self.id,
            "book_id": self.book_id,
            "kind": self.kind,
            "value": self.value,
            "min_quantity": self.min_quantity,
            "code": self.code,
            "description": self.description,
            "starts_at": to_utc_z(self.starts_at),
            "ends_at": to_utc_z(self.ends_at),
            "is_active": self.is_active,
        }
