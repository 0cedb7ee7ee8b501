from __future__ import annotations

from ..extensions import db
from ..time_utils import to_utc_z


IMPORTANCE_HIGH = "alto"
IMPORTANCE_MEDIUM = "medio"
IMPORTANCE_LOW = "bajo"
IMPORTANCE_LEVELS = (IMPORTANCE_HIGH, IMPORTANCE_MEDIUM, IMPORTANCE_LOW)


class ActivityLog(db.Model):
    """Structured business event written after a state transition commits."""
    __tablename__ = "activity_log"
    __table_args__ = (
        db.Index("ix_activity_log_entity", "entity_type", "entity_id"),
        db.Index("ix_activity_log_occurred", "occurred_at"),
        {"sqlite_autoincrement": True},
    )

    id = db.Column(db.Integer, primary_key=True)
    entity_type = db.Column(db.String(32), nullable=False)
    entity_id = db.Column(db.String(64), nullable=False)
    action = db.Column(db.String(64), nullable=False)
    importance = db.Column(db.String(8), nullable=False, default=IMPORTANCE_MEDIUM)
    actor_id = db.Column(db.String(64), nullable=True)
    actor_role = db.Column(db.String(24), nullable=True)
    details = db.Column(db.JSON, nullable=True)
    occurred_at = db.Column(db.DateTime(timezone=True), nullable=False, server_default=db.func.now())

    def to_dict(self) -> dict:
        return {
            "id": self.id,
            "entity_type": self.entity_type,
            "entity_id": self.entity_id,
            "action": self.action,
            "importance": self.importance,
            "actor_id": self.actor_id,
            "actor_role": self.actor_role,
            "details": self.details,
            "occurred_at": to_utc_z(self.occurred_at),
        }


class IdempotencyRecord(db.Model):
    """Outcome of an operation keyed by (operation, key), kept until expires_at."""
    __tablename__ = "idempotency_records"
    __table_args__ = (
        db.UniqueConstraint("operation", "key", name="uq_idempotency_operation_key"),
        {"sqlite_autoincrement": True},
    )

    id = db.Column(db.Integer, primary_key=True)
    operation = db.Column(db.String(64), nullable=False)
    key = db.Column(db.String(128), nullable=False)
    outcome = db.Column(db.JSON, nullable=False)
    created_at = db.Column(db.DateTime(timezone=True), nullable=False, server_default=db.func.now())
    expires_at = db.Column(db.DateTime(timezone=True), nullable=False, index=True)
