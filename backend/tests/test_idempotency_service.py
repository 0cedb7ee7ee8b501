from datetime import timedelta

from librosfera.models import IdempotencyRecord
from librosfera.services import idempotency_service
from librosfera.time_utils import utcnow


OPERATION = "venta.crear"


def test_first_claim_owns_the_key(db_session):
    assert idempotency_service.claim(OPERATION, "cliente-1:k") is None

    second = idempotency_service.claim(OPERATION, "cliente-1:k")

    assert idempotency_service.is_pending(second)


def test_completed_outcome_is_returned_to_later_claims(db_session):
    idempotency_service.claim(OPERATION, "cliente-1:k")
    idempotency_service.complete(OPERATION, "cliente-1:k", {"number": "VTA-1"})

    assert idempotency_service.claim(OPERATION, "cliente-1:k") == {"number": "VTA-1"}


def test_release_frees_a_pending_key(db_session):
    idempotency_service.claim(OPERATION, "cliente-1:k")

    idempotency_service.release(OPERATION, "cliente-1:k")

    assert IdempotencyRecord.query.count() == 0
    assert idempotency_service.claim(OPERATION, "cliente-1:k") is None


def test_release_keeps_a_completed_outcome(db_session):
    idempotency_service.claim(OPERATION, "cliente-1:k")
    idempotency_service.complete(OPERATION, "cliente-1:k", {"number": "VTA-1"})

    idempotency_service.release(OPERATION, "cliente-1:k")

    assert IdempotencyRecord.query.one().outcome == {"number": "VTA-1"}


def test_expired_key_can_be_claimed_again(db_session):
    idempotency_service.complete(OPERATION, "cliente-1:k", {"number": "VTA-1"})
    record = IdempotencyRecord.query.one()
    record.expires_at = utcnow() - timedelta(hours=1)
    db_session.commit()

    assert idempotency_service.claim(OPERATION, "cliente-1:k") is None
    assert idempotency_service.is_pending(IdempotencyRecord.query.one().outcome)
