# Overview: Return/refund workflow; per-item inspection reconciled against the sale snapshot.

from __future__ import annotations

import secrets
from datetime import timedelta

from flask import current_app

from ..errors import (
    InvalidStateTransition,
    NotFound,
    ReturnWindowExpired,
    ValidationError,
)
from ..extensions import db
from ..models import Return, ReturnEvent, ReturnItem, Sale
from ..models.activity import IMPORTANCE_HIGH, IMPORTANCE_MEDIUM
from ..models.returns import (
    INSPECTION_APPROVED,
    INSPECTION_REJECTED,
    INSPECTION_RESULTS,
    ITEM_APPROVED,
    ITEM_INSPECTED,
    ITEM_RECEIVED,
    ITEM_REFUNDED,
    ITEM_REJECTED,
    RETURN_APPROVED,
    RETURN_AWAITING_SHIPMENT,
    RETURN_CANCELLED,
    RETURN_CLOSED,
    RETURN_IN_INSPECTION,
    RETURN_IN_TRANSIT,
    RETURN_REASONS,
    RETURN_RECEIVED,
    RETURN_REFUND_APPROVED,
    RETURN_REFUND_COMPLETED,
    RETURN_REFUND_PROCESSING,
    RETURN_REJECTED,
    RETURN_REQUESTED,
)
from ..models.sales import PAYMENT_PARTIALLY_REFUNDED, PAYMENT_REFUNDED, SALE_DELIVERED
from ..principal import ROLE_CUSTOMER, Principal
from ..time_utils import utcnow
from . import activity_service, card_service, stock_service
from .concurrency import run_with_retry
from .pricing_service import apply_percent


RETURN_TRANSITIONS = {
    RETURN_REQUESTED: (RETURN_APPROVED, RETURN_REJECTED, RETURN_CANCELLED),
    RETURN_APPROVED: (RETURN_AWAITING_SHIPMENT, RETURN_CANCELLED),
    RETURN_AWAITING_SHIPMENT: (RETURN_IN_TRANSIT, RETURN_RECEIVED, RETURN_CANCELLED),
    RETURN_IN_TRANSIT: (RETURN_RECEIVED,),
    RETURN_RECEIVED: (RETURN_IN_INSPECTION,),
    RETURN_IN_INSPECTION: (RETURN_REFUND_APPROVED,),
    RETURN_REFUND_APPROVED: (RETURN_REFUND_PROCESSING,),
    RETURN_REFUND_PROCESSING: (RETURN_REFUND_COMPLETED,),
    RETURN_REFUND_COMPLETED: (RETURN_CLOSED,),
    RETURN_CLOSED: (),
    RETURN_REJECTED: (),
    RETURN_CANCELLED: (),
}


class ReturnLineRequest:
    """One requested line: which sale item, how many units and why."""

    def __init__(self, sale_item_id, quantity, reason, description=None):
        self.sale_item_id = sale_item_id
        self.quantity = quantity
        self.reason = reason
        self.description = description

    @classmethod
    def from_dict(cls, data: dict) -> "ReturnLineRequest":
        return cls(
            sale_item_id=data.get("sale_item_id"),
            quantity=data.get("quantity"),
            reason=data.get("reason"),
            description=data.get("description"),
        )

    def validate(self) -> None:
        if isinstance(self.sale_item_id, bool) or not isinstance(self.sale_item_id, int):
            raise ValidationError("sale_item_id must be an integer")
        if isinstance(self.quantity, bool) or not isinstance(self.quantity, int) or self.quantity < 1:
            raise ValidationError("quantity must be a positive integer", details={"sale_item_id": self.sale_item_id})
        if self.reason not in RETURN_REASONS:
            raise ValidationError(
                f"Invalid return reason: {self.reason}",
                details={"allowed": list(RETURN_REASONS)},
            )


# =============================================================================
# Helpers
# =============================================================================

def _generate_return_code(now=None) -> str:
    now = now or utcnow()
    for _ in range(10):
        code = f"DEV-{now:%Y%m%d}-{secrets.token_hex(3).upper()}"
        if Return.query.filter_by(code=code).first() is None:
            return code
    raise ValidationError("Could not allocate a return code, please retry")


def _add_event(ret: Return, event: str, *, from_state=None, to_state=None, description=None, actor_id=None) -> None:
    ret.events.append(ReturnEvent(
        event=event,
        from_state=from_state,
        to_state=to_state,
        description=description,
        actor_id=actor_id,
        occurred_at=utcnow(),
    ))


def _transition(ret: Return, new_state: str, *, actor_id=None, description=None) -> None:
    allowed = RETURN_TRANSITIONS.get(ret.state, ())
    if new_state not in allowed:
        raise InvalidStateTransition(
            f"Cannot move return from {ret.state} to {new_state}",
            details={"code": ret.code, "state": ret.state, "allowed": list(allowed)},
        )
    previous = ret.state
    ret.state = new_state
    _add_event(ret, "cambio_estado", from_state=previous, to_state=new_state,
               description=description, actor_id=actor_id)


def _get_return(code: str) -> Return:
    ret = Return.query.filter_by(code=code).first()
    if ret is None:
        raise NotFound("Return not found", details={"code": code})
    return ret


def _get_visible_return(principal: Principal, code: str) -> Return:
    ret = _get_return(code)
    if not principal.is_admin and ret.customer_id != principal.user_id:
        raise NotFound("Return not found", details={"code": code})
    return ret


def _release_requested_quantities(ret: Return) -> None:
    for item in ret.items:
        sale_item = item.sale_item
        sale_item.returned_qty_requested = max(0, sale_item.returned_qty_requested - item.requested_qty)


def _require_reason(reason, what: str) -> str:
    if not reason or not str(reason).strip():
        raise ValidationError(f"A {what} reason is required")
    return str(reason).strip()


def max_item_refund_cents(item: ReturnItem) -> int:
    """Upper bound for any refund on a return line: the snapshot line amount."""
    return item.unit_price_cents * item.purchased_qty


def compute_item_refund(item: ReturnItem, percentage) -> int:
    amount = apply_percent(item.unit_price_cents * item.requested_qty, percentage)
    return max(0, min(amount, max_item_refund_cents(item)))


# =============================================================================
# Creation
# =============================================================================

def create_return(principal: Principal, sale_number: str, lines: list, *, notes: str | None = None) -> Return:
    """
    Open a return request for a delivered sale of the calling customer.

    Raises ReturnWindowExpired once RETURN_WINDOW_DAYS have passed since
    delivery. Requested quantities are bounded by what was bought minus
    what earlier requests already claimed.
    """
    principal.require_role(ROLE_CUSTOMER)
    if not lines:
        raise ValidationError("At least one item is required")

    requests = [line if isinstance(line, ReturnLineRequest) else ReturnLineRequest.from_dict(line) for line in lines]
    for request in requests:
        request.validate()

    window_days = int(current_app.config.get("RETURN_WINDOW_DAYS", 8))

    def _op():
        sale = Sale.query.filter_by(number=sale_number).first()
        if sale is None or sale.customer_id != principal.user_id:
            raise NotFound("Sale not found", details={"number": sale_number})
        if sale.state != SALE_DELIVERED:
            raise InvalidStateTransition(
                "Only delivered sales can be returned",
                details={"number": sale_number, "state": sale.state},
            )

        now = utcnow()
        if sale.delivered_at is None or now - sale.delivered_at > timedelta(days=window_days):
            raise ReturnWindowExpired(
                f"Returns are accepted up to {window_days} days after delivery",
                details={"number": sale_number, "window_days": window_days},
            )

        sale_items = {item.id: item for item in sale.items}
        totals_by_item = {}
        for request in requests:
            if request.sale_item_id not in sale_items:
                raise ValidationError(
                    "Item does not belong to this sale",
                    details={"sale_item_id": request.sale_item_id},
                )
            totals_by_item[request.sale_item_id] = totals_by_item.get(request.sale_item_id, 0) + request.quantity

        for sale_item_id, qty in totals_by_item.items():
            sale_item = sale_items[sale_item_id]
            remaining = sale_item.quantity - sale_item.returned_qty_requested
            if qty > remaining:
                raise ValidationError(
                    "Requested quantity exceeds what can still be returned",
                    details={"sale_item_id": sale_item_id, "requested": qty, "returnable": remaining},
                )

        ret = Return(
            code=_generate_return_code(now),
            sale_id=sale.id,
            customer_id=principal.user_id,
            state=RETURN_REQUESTED,
        )
        requested_refund = 0
        for request in requests:
            sale_item = sale_items[request.sale_item_id]
            ret.items.append(ReturnItem(
                sale_item_id=sale_item.id,
                book_id=sale_item.book_id,
                title=sale_item.title,
                unit_price_cents=sale_item.unit_price_cents,
                purchased_qty=sale_item.quantity,
                requested_qty=request.quantity,
                reason=request.reason,
                description=request.description,
            ))
            sale_item.returned_qty_requested += request.quantity
            requested_refund += sale_item.unit_price_cents * request.quantity

        ret.requested_refund_cents = requested_refund
        _add_event(ret, "creacion", to_state=RETURN_REQUESTED, actor_id=principal.user_id,
                   description=notes or "Return requested")
        db.session.add(ret)
        db.session.commit()
        return ret

    ret = run_with_retry(_op)
    activity_service.record(
        "devolucion", ret.code, "devolucion_solicitada",
        principal=principal,
        importance=IMPORTANCE_MEDIUM,
        details={"sale_number": sale_number, "requested_refund_cents": ret.requested_refund_cents},
    )
    return ret


# =============================================================================
# Review and logistics
# =============================================================================

def approve_return(principal: Principal, code: str, notes: str | None = None) -> Return:
    """Approve a request; it moves straight on to esperando_envio."""
    principal.require_admin()

    def _op():
        ret = _get_return(code)
        _transition(ret, RETURN_APPROVED, actor_id=principal.user_id, description=notes)
        for item in ret.items:
            item.item_state = ITEM_APPROVED
        _transition(ret, RETURN_AWAITING_SHIPMENT, actor_id=principal.user_id,
                    description="Waiting for the customer to ship the items")
        db.session.commit()
        return ret

    ret = run_with_retry(_op)
    activity_service.record("devolucion", code, "devolucion_aprobada", principal=principal)
    return ret


def reject_return(principal: Principal, code: str, reason: str) -> Return:
    principal.require_admin()
    reason = _require_reason(reason, "rejection")

    def _op():
        ret = _get_return(code)
        _transition(ret, RETURN_REJECTED, actor_id=principal.user_id, description=reason)
        for item in ret.items:
            item.item_state = ITEM_REJECTED
        _release_requested_quantities(ret)
        ret.rejection_reason = reason
        ret.closed_at = utcnow()
        db.session.commit()
        return ret

    ret = run_with_retry(_op)
    activity_service.record(
        "devolucion", code, "devolucion_rechazada",
        principal=principal, details={"reason": reason},
    )
    return ret


def mark_in_transit(principal: Principal, code: str, tracking_number: str, carrier: str | None = None) -> Return:
    if not tracking_number or not tracking_number.strip():
        raise ValidationError("tracking_number is required")

    def _op():
        ret = _get_visible_return(principal, code)
        _transition(ret, RETURN_IN_TRANSIT, actor_id=principal.user_id,
                    description=f"Shipped back with tracking {tracking_number.strip()}")
        ret.return_tracking_number = tracking_number.strip()
        ret.return_carrier = carrier
        db.session.commit()
        return ret

    ret = run_with_retry(_op)
    activity_service.record("devolucion", code, "devolucion_en_transito", principal=principal)
    return ret


def receive_return(principal: Principal, code: str, notes: str | None = None) -> Return:
    """Register the parcel at the warehouse and open inspection."""
    principal.require_admin()

    def _op():
        ret = _get_return(code)
        _transition(ret, RETURN_RECEIVED, actor_id=principal.user_id, description=notes)
        ret.received_at = utcnow()
        for item in ret.items:
            if item.item_state == ITEM_APPROVED:
                item.item_state = ITEM_RECEIVED
        _transition(ret, RETURN_IN_INSPECTION, actor_id=principal.user_id)
        db.session.commit()
        return ret

    ret = run_with_retry(_op)
    activity_service.record("devolucion", code, "devolucion_recibida", principal=principal)
    return ret


# =============================================================================
# Inspection and refund
# =============================================================================

def _resolve_percentage(result: str, refund_percentage) -> int:
    if result == INSPECTION_APPROVED:
        return 100
    if result == INSPECTION_REJECTED:
        return 0
    if refund_percentage is None or isinstance(refund_percentage, bool):
        raise ValidationError("refund_percentage is required for a partial approval")
    if not isinstance(refund_percentage, int) or not 0 <= refund_percentage <= 100:
        raise ValidationError("refund_percentage must be a whole number between 0 and 100")
    return refund_percentage


def inspect_item(principal: Principal, code: str, item_id: int, result: str, *, refund_percentage=None, notes: str | None = None) -> Return:
    """
    Record the inspection outcome of one line. Once every line is inspected
    the return aggregates its approved refund and moves to reembolso_aprobado.
    """
    principal.require_admin()
    if result not in INSPECTION_RESULTS:
        raise ValidationError(
            f"Invalid inspection result: {result}",
            details={"allowed": list(INSPECTION_RESULTS)},
        )
    percentage = _resolve_percentage(result, refund_percentage)

    def _op():
        ret = _get_return(code)
        if ret.state != RETURN_IN_INSPECTION:
            raise InvalidStateTransition(
                "Return is not under inspection",
                details={"code": code, "state": ret.state},
            )
        item = next((i for i in ret.items if i.id == item_id), None)
        if item is None:
            raise NotFound("Return item not found", details={"code": code, "item_id": item_id})
        if item.item_state != ITEM_RECEIVED:
            raise InvalidStateTransition(
                "Item must be received before inspection",
                details={"item_id": item_id, "item_state": item.item_state},
            )

        item.inspection_result = result
        item.inspection_notes = notes
        item.refund_percentage = percentage
        item.refund_amount_cents = compute_item_refund(item, percentage)
        item.inspected_by_id = principal.user_id
        item.inspected_at = utcnow()
        item.item_state = ITEM_INSPECTED
        _add_event(ret, "inspeccion_item", actor_id=principal.user_id,
                   description=f"Item {item.id}: {result} ({item.refund_amount_cents} cents)")

        completed = all(i.item_state == ITEM_INSPECTED for i in ret.items)
        if completed:
            ret.approved_refund_cents = sum(i.refund_amount_cents for i in ret.items)
            _transition(ret, RETURN_REFUND_APPROVED, actor_id=principal.user_id,
                        description=f"Approved refund {ret.approved_refund_cents} cents")
        db.session.commit()
        return ret, completed

    ret, completed = run_with_retry(_op)
    activity_service.record(
        "devolucion", code, "item_inspeccionado",
        principal=principal,
        details={"item_id": item_id, "result": result, "inspection_completed": completed},
    )
    return ret


def process_refund(principal: Principal, code: str) -> Return:
    """
    Credit the approved refund to the sale's card, restock refunded units and
    close the return, all in one unit of work.

    The amount never exceeds what the sale still has unrefunded.
    """
    principal.require_admin()

    def _op():
        ret = _get_return(code)
        _transition(ret, RETURN_REFUND_PROCESSING, actor_id=principal.user_id)
        sale = ret.sale

        amount = min(ret.approved_refund_cents, sale.refundable_cents)
        reference = f"devolucion:{code}"
        if amount > 0:
            card_service.apply_credit(
                sale.card_id, amount,
                reference=reference,
                actor_id=principal.user_id,
                reason=f"Refund for return {code}",
            )
            sale.refunded_cents += amount
            if sale.refunded_cents >= sale.total_cents:
                sale.payment_state = PAYMENT_REFUNDED
            else:
                sale.payment_state = PAYMENT_PARTIALLY_REFUNDED

        for item in ret.items:
            if item.refund_amount_cents > 0:
                stock_service.apply_restock(
                    item.book_id, item.requested_qty,
                    reason=f"Return {code}",
                    reference=f"devolucion:{code}:item:{item.id}",
                    actor_id=principal.user_id,
                )
                item.item_state = ITEM_REFUNDED

        now = utcnow()
        ret.refunded_cents = amount
        ret.refund_reference = reference if amount > 0 else None
        ret.refund_processed_at = now
        _transition(ret, RETURN_REFUND_COMPLETED, actor_id=principal.user_id,
                    description=f"Refunded {amount} cents")
        _transition(ret, RETURN_CLOSED, actor_id=principal.user_id)
        ret.closed_at = now
        db.session.commit()
        return ret

    ret = run_with_retry(_op)
    activity_service.record(
        "devolucion", code, "reembolso_completado",
        principal=principal,
        importance=IMPORTANCE_HIGH,
        details={"refunded_cents": ret.refunded_cents},
    )
    return ret


def cancel_return(principal: Principal, code: str, reason: str) -> Return:
    """Withdraw a request before the items are shipped back."""
    reason = _require_reason(reason, "cancellation")

    def _op():
        ret = _get_visible_return(principal, code)
        _transition(ret, RETURN_CANCELLED, actor_id=principal.user_id, description=reason)
        _release_requested_quantities(ret)
        ret.cancel_reason = reason
        ret.cancelled_by_id = principal.user_id
        ret.cancelled_at = utcnow()
        db.session.commit()
        return ret

    ret = run_with_retry(_op)
    activity_service.record(
        "devolucion", code, "devolucion_cancelada",
        principal=principal, details={"reason": reason},
    )
    return ret


# =============================================================================
# Queries
# =============================================================================

def get_return(principal: Principal, code: str) -> Return:
    return _get_visible_return(principal, code)


def list_customer_returns(principal: Principal, *, state: str | None = None) -> list[Return]:
    query = Return.query.filter_by(customer_id=principal.user_id)
    if state:
        query = query.filter_by(state=state)
    return query.order_by(Return.created_at.desc(), Return.id.desc()).all()


def list_returns(principal: Principal, *, state: str | None = None, sale_number: str | None = None) -> list[Return]:
    principal.require_admin()
    query = Return.query
    if state:
        query = query.filter_by(state=state)
    if sale_number:
        query = query.join(Sale, Sale.id == Return.sale_id).filter(Sale.number == sale_number)
    return query.order_by(Return.created_at.desc(), Return.id.desc()).all()
