# Overview: Flask API routes for sales; checkout, shipment lifecycle, cancellation and return requests.

from flask import Blueprint, jsonify, g, request

from ..principal import ADMIN_ROLES, ROLE_CUSTOMER
from ..services import return_service, sale_service
from ..decorators import require_auth, require_role
from ..validation import json_body, pagination_args, parse_bool, parse_int, parse_str


sales_bp = Blueprint("sales", __name__, url_prefix="/api/ventas")


# =============================================================================
# CHECKOUT
# =============================================================================

@sales_bp.post("")
@require_auth
@require_role(ROLE_CUSTOMER)
def create_sale_route():
    """
    Create a sale from the caller's cart.

    Request body:
    {
        "id_tarjeta": "CARD...",
        "tipo_envio": "domicilio" | "recogida_tienda",
        "direccion_envio": {"calle": "...", "ciudad": "...", ...},  (domicilio)
        "id_tienda": "...",  (recogida_tienda)
        "impuesto_pagado_por_cliente": false  (optional)
    }

    The optional Idempotency-Key header (or "clave_idempotencia") makes a
    retried request return the sale created by the first one.

    Returns:
        201: Sale created
        400: Validation / invalid card
        402: Insufficient balance
        409: Insufficient stock, price drift or concurrent modification
    """
    data = json_body()
    idempotency_key = request.headers.get("Idempotency-Key") or data.get("clave_idempotencia")

    sale = sale_service.create_sale(
        g.principal,
        card_id=parse_str(data.get("id_tarjeta"), "id_tarjeta", max_length=32),
        shipping_type=parse_str(data.get("tipo_envio"), "tipo_envio", max_length=24),
        shipping_address=data.get("direccion_envio"),
        store_id=parse_str(data.get("id_tienda"), "id_tienda", required=False, max_length=64),
        customer_pays_tax=parse_bool(data.get("impuesto_pagado_por_cliente"), "impuesto_pagado_por_cliente"),
        idempotency_key=parse_str(idempotency_key, "clave_idempotencia", required=False, max_length=64),
    )
    return jsonify(sale.to_dict()), 201


# =============================================================================
# QUERIES
# =============================================================================

@sales_bp.get("/mis-ventas")
@require_auth
@require_role(ROLE_CUSTOMER)
def my_sales_route():
    page, per_page = pagination_args()
    sales, total = sale_service.list_customer_sales(
        g.principal, state=request.args.get("estado") or None, page=page, per_page=per_page
    )
    return jsonify({
        "sales": [s.to_dict() for s in sales],
        "total": total,
        "page": page,
        "limit": per_page,
    }), 200


@sales_bp.get("")
@require_auth
@require_role(*ADMIN_ROLES)
def list_sales_route():
    page, per_page = pagination_args()
    sales, total = sale_service.list_sales(
        g.principal,
        state=request.args.get("estado") or None,
        customer_id=request.args.get("cliente") or None,
        page=page,
        per_page=per_page,
    )
    return jsonify({
        "sales": [s.to_dict() for s in sales],
        "total": total,
        "page": page,
        "limit": per_page,
    }), 200


@sales_bp.get("/<numero>")
@require_auth
def get_sale_route(numero: str):
    sale = sale_service.get_sale(g.principal, numero)
    return jsonify(sale.to_dict(include_history=True)), 200


# =============================================================================
# LIFECYCLE
# =============================================================================

@sales_bp.patch("/<numero>/cancelar")
@require_auth
def cancel_sale_route(numero: str):
    data = json_body()
    sale = sale_service.cancel_sale(g.principal, numero, parse_str(data.get("motivo"), "motivo"))
    return jsonify(sale.to_dict()), 200


@sales_bp.patch("/<numero>/envio")
@require_auth
@require_role(*ADMIN_ROLES)
def update_shipment_route(numero: str):
    """
    Request body:
    {
        "estado": "listo_para_envio" | "enviado" | "entregado",
        "numero_guia": "...",  (required for enviado)
        "transportadora": "...",
        "nota": "..."
    }
    """
    data = json_body()
    sale = sale_service.update_shipment(
        g.principal,
        numero,
        parse_str(data.get("estado"), "estado", max_length=24),
        tracking_number=parse_str(data.get("numero_guia"), "numero_guia", required=False, max_length=64),
        carrier=parse_str(data.get("transportadora"), "transportadora", required=False, max_length=64),
        note=parse_str(data.get("nota"), "nota", required=False),
    )
    return jsonify(sale.to_dict()), 200


@sales_bp.post("/<numero>/reabastecer")
@require_auth
@require_role(*ADMIN_ROLES)
def restock_sale_route(numero: str):
    data = json_body()
    sale = sale_service.restock_cancelled_sale(g.principal, numero, parse_str(data.get("motivo"), "motivo"))
    return jsonify(sale.to_dict()), 200


@sales_bp.post("/<numero>/notas")
@require_auth
@require_role(*ADMIN_ROLES)
def add_note_route(numero: str):
    data = json_body()
    sale = sale_service.add_internal_note(g.principal, numero, parse_str(data.get("nota"), "nota"))
    return jsonify(sale.to_dict(include_history=True)), 201


# =============================================================================
# RETURN REQUEST
# =============================================================================

@sales_bp.post("/<numero>/devolucion")
@require_auth
@require_role(ROLE_CUSTOMER)
def request_return_route(numero: str):
    """
    Request body:
    {
        "items": [
            {"id_item_venta": 1, "cantidad": 1, "motivo": "producto_danado", "descripcion": "..."}
        ],
        "notas": "..."
    }

    Returns:
        201: Return created (solicitada)
        409: Sale not delivered
        410: Return window expired
    """
    data = json_body()
    raw_items = data.get("items")
    if not isinstance(raw_items, list):
        raw_items = []

    lines = [
        return_service.ReturnLineRequest(
            sale_item_id=parse_int(item.get("id_item_venta"), "id_item_venta"),
            quantity=parse_int(item.get("cantidad"), "cantidad", minimum=1),
            reason=parse_str(item.get("motivo"), "motivo", max_length=32),
            description=parse_str(item.get("descripcion"), "descripcion", required=False, max_length=1000),
        )
        for item in raw_items
        if isinstance(item, dict)
    ]
    ret = return_service.create_return(
        g.principal, numero, lines,
        notes=parse_str(data.get("notas"), "notas", required=False),
    )
    return jsonify(ret.to_dict()), 201
