# Overview: Flask API routes for returns; review, logistics, per-item inspection and refund.

from flask import Blueprint, jsonify, g, request

from ..principal import ADMIN_ROLES, ROLE_CUSTOMER
from ..services import return_service
from ..decorators import require_auth, require_role
from ..validation import json_body, parse_int, parse_str


returns_bp = Blueprint("returns", __name__, url_prefix="/api/devoluciones")


# =============================================================================
# QUERIES
# =============================================================================

@returns_bp.get("/mis-devoluciones")
@require_auth
@require_role(ROLE_CUSTOMER)
def my_returns_route():
    returns = return_service.list_customer_returns(g.principal, state=request.args.get("estado") or None)
    return jsonify({"returns": [r.to_dict() for r in returns]}), 200


@returns_bp.get("")
@require_auth
@require_role(*ADMIN_ROLES)
def list_returns_route():
    returns = return_service.list_returns(
        g.principal,
        state=request.args.get("estado") or None,
        sale_number=request.args.get("venta") or None,
    )
    return jsonify({"returns": [r.to_dict() for r in returns]}), 200


@returns_bp.get("/<codigo>")
@require_auth
def get_return_route(codigo: str):
    ret = return_service.get_return(g.principal, codigo)
    return jsonify(ret.to_dict(include_history=True)), 200


# =============================================================================
# REVIEW AND LOGISTICS
# =============================================================================

@returns_bp.patch("/<codigo>/aprobar")
@require_auth
@require_role(*ADMIN_ROLES)
def approve_return_route(codigo: str):
    data = json_body()
    ret = return_service.approve_return(
        g.principal, codigo, notes=parse_str(data.get("notas"), "notas", required=False)
    )
    return jsonify(ret.to_dict()), 200


@returns_bp.patch("/<codigo>/rechazar")
@require_auth
@require_role(*ADMIN_ROLES)
def reject_return_route(codigo: str):
    data = json_body()
    ret = return_service.reject_return(g.principal, codigo, parse_str(data.get("motivo"), "motivo"))
    return jsonify(ret.to_dict()), 200


@returns_bp.patch("/<codigo>/transito")
@require_auth
def in_transit_route(codigo: str):
    data = json_body()
    ret = return_service.mark_in_transit(
        g.principal,
        codigo,
        parse_str(data.get("numero_guia"), "numero_guia", max_length=64),
        carrier=parse_str(data.get("transportadora"), "transportadora", required=False, max_length=64),
    )
    return jsonify(ret.to_dict()), 200


@returns_bp.patch("/<codigo>/recibir")
@require_auth
@require_role(*ADMIN_ROLES)
def receive_return_route(codigo: str):
    data = json_body()
    ret = return_service.receive_return(
        g.principal, codigo, notes=parse_str(data.get("notas"), "notas", required=False)
    )
    return jsonify(ret.to_dict()), 200


@returns_bp.patch("/<codigo>/cancelar")
@require_auth
def cancel_return_route(codigo: str):
    data = json_body()
    ret = return_service.cancel_return(g.principal, codigo, parse_str(data.get("motivo"), "motivo"))
    return jsonify(ret.to_dict()), 200


# =============================================================================
# INSPECTION AND REFUND
# =============================================================================

@returns_bp.patch("/<codigo>/items/<int:item_id>/inspeccionar")
@require_auth
@require_role(*ADMIN_ROLES)
def inspect_item_route(codigo: str, item_id: int):
    """
    Request body:
    {
        "resultado": "aprobado" | "rechazado" | "aprobado_parcial",
        "porcentaje_reembolso": 50,  (required for aprobado_parcial)
        "notas": "..."
    }
    """
    data = json_body()
    ret = return_service.inspect_item(
        g.principal,
        codigo,
        item_id,
        parse_str(data.get("resultado"), "resultado", max_length=24),
        refund_percentage=parse_int(
            data.get("porcentaje_reembolso"), "porcentaje_reembolso", required=False, minimum=0, maximum=100
        ),
        notes=parse_str(data.get("notas"), "notas", required=False, max_length=1000),
    )
    return jsonify(ret.to_dict()), 200


@returns_bp.patch("/<codigo>/reembolsar")
@require_auth
@require_role(*ADMIN_ROLES)
def process_refund_route(codigo: str):
    ret = return_service.process_refund(g.principal, codigo)
    return jsonify(ret.to_dict()), 200
