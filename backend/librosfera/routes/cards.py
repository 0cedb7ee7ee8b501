# Overview: Flask API routes for stored cards and admin balance overrides.

from flask import Blueprint, jsonify, g

from ..principal import ADMIN_ROLES
from ..services import card_service
from ..decorators import require_auth, require_role
from ..validation import MAX_AMOUNT_CENTS, json_body, parse_bool, parse_int, parse_str


cards_bp = Blueprint("cards", __name__, url_prefix="/api/tarjetas")


def _visible_card(card_id: str):
    if g.principal.is_admin:
        return card_service.get_card(card_id)
    return card_service.get_card_for_owner(card_id, g.principal.user_id)


@cards_bp.post("")
@require_auth
def register_card_route():
    """
    Request body:
    {
        "tipo": "credito" | "debito",
        "marca": "visa",
        "nombre_titular": "...",
        "ultimos_digitos": "4242",
        "mes_expiracion": 12,
        "anio_expiracion": 2030,
        "saldo_centavos": 10000,  (debit only, optional)
        "predeterminada": true    (optional)
    }
    """
    data = json_body()
    card = card_service.register_card(
        g.principal,
        kind=parse_str(data.get("tipo"), "tipo", max_length=16),
        brand=parse_str(data.get("marca"), "marca", max_length=32),
        holder_name=parse_str(data.get("nombre_titular"), "nombre_titular", max_length=128),
        last_digits=parse_str(data.get("ultimos_digitos"), "ultimos_digitos", max_length=4),
        expiry_month=parse_int(data.get("mes_expiracion"), "mes_expiracion", minimum=1, maximum=12),
        expiry_year=parse_int(data.get("anio_expiracion"), "anio_expiracion"),
        balance_cents=parse_int(
            data.get("saldo_centavos"), "saldo_centavos", required=False, minimum=0, maximum=MAX_AMOUNT_CENTS
        ) or 0,
        is_default=parse_bool(data.get("predeterminada"), "predeterminada"),
    )
    return jsonify(card.to_dict()), 201


@cards_bp.get("")
@require_auth
def list_cards_route():
    cards = card_service.list_cards(g.principal)
    return jsonify({"cards": [c.to_dict() for c in cards]}), 200


@cards_bp.get("/<card_id>")
@require_auth
def get_card_route(card_id: str):
    return jsonify(_visible_card(card_id).to_dict()), 200


@cards_bp.patch("/<card_id>/saldo")
@require_auth
@require_role(*ADMIN_ROLES)
def set_balance_route(card_id: str):
    data = json_body()
    movement = card_service.set_absolute_balance(
        g.principal,
        card_id,
        parse_int(data.get("saldo_centavos"), "saldo_centavos", minimum=0, maximum=MAX_AMOUNT_CENTS),
        parse_str(data.get("motivo"), "motivo"),
    )
    card = card_service.get_card(card_id)
    return jsonify({"card": card.to_dict(), "movement": movement.to_dict()}), 200


@cards_bp.patch("/<card_id>/predeterminada")
@require_auth
def set_default_route(card_id: str):
    card = card_service.set_default_card(g.principal, card_id)
    return jsonify(card.to_dict()), 200


@cards_bp.delete("/<card_id>")
@require_auth
def deactivate_card_route(card_id: str):
    card = card_service.deactivate_card(g.principal, card_id)
    return jsonify(card.to_dict()), 200


@cards_bp.get("/<card_id>/movimientos")
@require_auth
def list_movements_route(card_id: str):
    card = _visible_card(card_id)
    movements = card_service.list_movements(card.card_id)
    return jsonify({"movements": [m.to_dict() for m in movements]}), 200
