# Overview: Flask API routes for the customer cart; parses input and returns JSON responses.

from flask import Blueprint, jsonify, g, request

from ..principal import ROLE_CUSTOMER
from ..services import cart_service, pricing_service
from ..decorators import require_auth, require_role
from ..validation import json_body, parse_bool, parse_int, parse_str


cart_bp = Blueprint("cart", __name__, url_prefix="/api/carrito")


def _quote_args():
    customer_pays_tax = parse_bool(request.args.get("impuesto_cliente"), "impuesto_cliente")
    shipping_type = request.args.get("tipo_envio") or None
    return customer_pays_tax, shipping_type


@cart_bp.get("")
@require_auth
@require_role(ROLE_CUSTOMER)
def get_cart_route():
    customer_pays_tax, shipping_type = _quote_args()
    summary = cart_service.cart_summary(
        g.principal.user_id,
        customer_pays_tax=customer_pays_tax,
        shipping_type=shipping_type,
    )
    return jsonify(summary), 200


@cart_bp.delete("")
@require_auth
@require_role(ROLE_CUSTOMER)
def clear_cart_route():
    cart = cart_service.clear_cart(g.principal.user_id)
    return jsonify(cart.to_dict()), 200


@cart_bp.post("/agregar")
@require_auth
@require_role(ROLE_CUSTOMER)
def add_item_route():
    """
    Add a book to the cart.

    Request body:
    {
        "id_libro": 12,
        "cantidad": 1   (optional, default 1, max 3 per book)
    }
    """
    data = json_body()
    cart = cart_service.add_item(
        g.principal.user_id,
        parse_int(data.get("id_libro"), "id_libro"),
        parse_int(data.get("cantidad", 1), "cantidad"),
    )
    return jsonify(cart.to_dict()), 200


@cart_bp.put("/item/<int:book_id>")
@require_auth
@require_role(ROLE_CUSTOMER)
def update_item_route(book_id: int):
    data = json_body()
    cart = cart_service.update_item(
        g.principal.user_id, book_id, parse_int(data.get("cantidad"), "cantidad")
    )
    return jsonify(cart.to_dict()), 200


@cart_bp.delete("/item/<int:book_id>")
@require_auth
@require_role(ROLE_CUSTOMER)
def remove_item_route(book_id: int):
    cart = cart_service.remove_item(g.principal.user_id, book_id)
    return jsonify(cart.to_dict()), 200


@cart_bp.post("/codigo-descuento")
@require_auth
@require_role(ROLE_CUSTOMER)
def apply_code_route():
    data = json_body()
    cart = cart_service.apply_discount_code(
        g.principal.user_id, parse_str(data.get("codigo"), "codigo", max_length=64)
    )
    return jsonify(cart.to_dict()), 200


@cart_bp.delete("/codigo-descuento")
@require_auth
@require_role(ROLE_CUSTOMER)
def remove_code_route():
    data = json_body()
    cart = cart_service.remove_discount_code(
        g.principal.user_id,
        parse_str(data.get("codigo"), "codigo", required=False, max_length=64),
    )
    return jsonify(cart.to_dict()), 200


@cart_bp.post("/confirmar-precios")
@require_auth
@require_role(ROLE_CUSTOMER)
def confirm_prices_route():
    data = json_body()
    cart = cart_service.confirm_prices(
        g.principal.user_id,
        parse_int(data.get("id_libro"), "id_libro", required=False),
    )
    return jsonify(cart.to_dict()), 200


@cart_bp.get("/total")
@require_auth
@require_role(ROLE_CUSTOMER)
def cart_total_route():
    customer_pays_tax, shipping_type = _quote_args()
    cart = cart_service.get_or_create_cart(g.principal.user_id)
    quote = pricing_service.quote(
        cart, customer_pays_tax=customer_pays_tax, shipping_type=shipping_type
    )
    return jsonify(quote.to_dict()), 200
