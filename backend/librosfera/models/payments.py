from __future__ import annotations

from ..extensions import db
from ..time_utils import to_utc_z


CARD_CREDIT = "credito"
CARD_DEBIT = "debito"
CARD_KINDS = (CARD_CREDIT, CARD_DEBIT)

CARD_BRANDS = ("visa", "mastercard", "american_express", "diners", "otra")

MOVEMENT_DEBIT = "debito"
MOVEMENT_CREDIT = "credito"
MOVEMENT_ABSOLUTE = "ajuste_absoluto"


class Card(db.Model):
    """
    Stored payment card.

    Only debit cards carry a spendable balance_cents. Credit cards are
    authorized without a balance check; their movements are still audited.
    """
    __tablename__ = "cards"
    __table_args__ = (
        db.CheckConstraint("balance_cents >= 0", name="ck_cards_balance_nonneg"),
        db.Index("ix_cards_owner_active", "owner_id", "is_active"),
        {"sqlite_autoincrement": True},
    )

    id = db.Column(db.Integer, primary_key=True)
    card_id = db.Column(db.String(32), nullable=False, unique=True)
    owner_id = db.Column(db.String(64), nullable=False)

    kind = db.Column(db.String(16), nullable=False)
    brand = db.Column(db.String(32), nullable=False)
    holder_name = db.Column(db.String(128), nullable=False)
    last_digits = db.Column(db.String(4), nullable=False)
    expiry_month = db.Column(db.Integer, nullable=False)
    expiry_year = db.Column(db.Integer, nullable=False)

    balance_cents = db.Column(db.Integer, nullable=False, default=0)

    is_default = db.Column(db.Boolean, nullable=False, default=False)
    is_active = db.Column(db.Boolean, nullable=False, default=True)

    created_at = db.Column(db.DateTime(timezone=True), nullable=False, server_default=db.func.now())
    updated_at = db.Column(
        db.DateTime(timezone=True),
        nullable=False,
        server_default=db.func.now(),
        onupdate=db.func.now(),
    )
    version = db.Column(db.Integer, nullable=False, default=1)

    __mapper_args__ = {"version_id_col": version}

    def is_expired(self, now) -> bool:
        # A card is valid through the last day of its expiry month
        return (now.year, now.month) > (self.expiry_year, self.expiry_month)

    def to_dict(self) -> dict:
        return {
            "card_id": self.card_id,
            "owner_id": self.owner_id,
            "kind": self.kind,
            "brand": self.brand,
            "holder_name": self.holder_name,
            "masked_number": f"**** **** **** {self.last_digits}",
            "last_digits": self.last_digits,
            "expiry": f"{self.expiry_month:02d}/{self.expiry_year}",
            "balance_cents": self.balance_cents if self.kind == CARD_DEBIT else None,
            "is_default": self.is_default,
            "is_active": self.is_active,
            "created_at": to_utc_z(self.created_at),
        }


class CardMovement(db.Model):
    """
    Audit of every balance mutation on a card.

    reference is the idempotency key of the mutation: replaying a debit or
    credit with a known reference returns the stored movement.
    """
    __tablename__ = "card_movements"
    __table_args__ = (
        db.UniqueConstraint("kind", "reference", name="uq_card_movements_kind_reference"),
        {"sqlite_autoincrement": True},
    )

    id = db.Column(db.Integer, primary_key=True)
    card_pk = db.Column(db.Integer, db.ForeignKey("cards.id"), nullable=False, index=True)
    kind = db.Column(db.String(24), nullable=False)
    amount_cents = db.Column(db.Integer, nullable=False)

    balance_before_cents = db.Column(db.Integer, nullable=False)
    balance_after_cents = db.Column(db.Integer, nullable=False)

    reference = db.Column(db.String(128), nullable=True)
    reason = db.Column(db.String(255), nullable=True)
    actor_id = db.Column(db.String(64), nullable=True)

    occurred_at = db.Column(db.DateTime(timezone=True), nullable=False, server_default=db.func.now())

    card = db.relationship("Card", backref=db.backref("movements", lazy=True))

    def to_dict(self) -> dict:
        return {
            "id": self.id,
            "card_id": self.card.card_id if self.card else None,
            "kind": self.kind,
            "amount_cents": self.amount_cents,
            "balance_before_cents": self.balance_before_cents,
            "balance_after_cents": self.balance_after_cents,
            "reference": self.reference,
            "reason": self.reason,
            "actor_id": self.actor_id,
            "occurred_at": to_utc_z(self.occurred_at),
        }
