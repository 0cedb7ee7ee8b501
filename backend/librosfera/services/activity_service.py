# Overview: Business activity log; writes never block the transition that triggered them.

from __future__ import annotations

from flask import current_app
from sqlalchemy.exc import SQLAlchemyError

from ..extensions import db
from ..models import ActivityLog
from ..models.activity import IMPORTANCE_LEVELS, IMPORTANCE_MEDIUM


def record(
    entity_type: str,
    entity_id,
    action: str,
    *,
    principal=None,
    importance: str = IMPORTANCE_MEDIUM,
    details: dict | None = None,
) -> ActivityLog | None:
    """
    Append an activity entry in its own small unit of work.

    Call this AFTER the state transition has been committed. A failure here
    is rolled back and logged; the caller's transition stands regardless.
    """
    if importance not in IMPORTANCE_LEVELS:
        importance = IMPORTANCE_MEDIUM

    entry = ActivityLog(
        entity_type=entity_type,
        entity_id=str(entity_id),
        action=action,
        importance=importance,
        actor_id=principal.user_id if principal else None,
        actor_role=principal.role if principal else None,
        details=details or {},
    )
    try:
        db.session.add(entry)
        db.session.commit()
    except SQLAlchemyError:
        db.session.rollback()
        current_app.logger.warning(
            "Activity log write failed for %s %s (%s)", entity_type, entity_id, action, exc_info=True
        )
        return None
    return entry

