# Overview: Keyed deduplication store, (operation, key) -> recorded outcome.

from __future__ import annotations

from datetime import timedelta

from flask import current_app
from sqlalchemy.exc import IntegrityError

from ..extensions import db
from ..models import IdempotencyRecord
from ..time_utils import utcnow


PENDING_OUTCOME = {"estado": "pendiente"}


def is_pending(outcome: dict | None) -> bool:
    return bool(outcome) and outcome.get("estado") == PENDING_OUTCOME["estado"]


def _find(operation: str, key: str) -> IdempotencyRecord | None:
    return IdempotencyRecord.query.filter_by(operation=operation, key=key).first()


def claim(operation: str, key: str) -> dict | None:
    """
    Take ownership of (operation, key) before running the operation.

    Returns None when the caller now owns the key and must finish with
    complete() or release(). Otherwise returns the outcome stored by the
    current owner: either a completed outcome or PENDING_OUTCOME while the
    owner is still running. The unique (operation, key) constraint decides
    between concurrent claimants.
    """
    ttl_hours = current_app.config.get("IDEMPOTENCY_TTL_HOURS", 48)
    now = utcnow()

    existing = _find(operation, key)
    if existing is not None:
        if existing.expires_at >= now:
            return existing.outcome
        db.session.delete(existing)
        db.session.flush()

    db.session.add(IdempotencyRecord(
        operation=operation,
        key=key,
        outcome=dict(PENDING_OUTCOME),
        expires_at=now + timedelta(hours=ttl_hours),
    ))
    try:
        db.session.commit()
    except IntegrityError:
        db.session.rollback()
        winner = _find(operation, key)
        if winner is None:
            raise
        return winner.outcome
    return None


def complete(operation: str, key: str, outcome: dict) -> dict:
    """Store the final outcome for a claimed key and commit."""
    ttl_hours = current_app.config.get("IDEMPOTENCY_TTL_HOURS", 48)
    record = _find(operation, key)
    if record is None:
        record = IdempotencyRecord(operation=operation, key=key)
        db.session.add(record)
    record.outcome = dict(outcome)
    record.expires_at = utcnow() + timedelta(hours=ttl_hours)
    db.session.commit()
    return record.outcome


def release(operation: str, key: str) -> None:
    """Drop a pending claim after a failed operation so the key can be retried."""
    db.session.rollback()
    record = _find(operation, key)
    if record is not None and is_pending(record.outcome):
        db.session.delete(record)
        db.session.commit()


def purge_expired(now=None) -> int:
    """Delete expired records. Returns the number removed."""
    now = now or utcnow()
    removed = IdempotencyRecord.query.filter(IdempotencyRecord.expires_at < now).delete(
        synchronize_session=False
    )
    db.session.commit()
    return removed
