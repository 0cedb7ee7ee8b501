# Overview: Flask API routes for book stock; reserve/release/commit primitives and admin restock.

from flask import Blueprint, jsonify, g

from ..extensions import db
from ..errors import NotFound
from ..models import Book
from ..principal import ADMIN_ROLES
from ..services import stock_service
from ..decorators import require_auth, require_role
from ..validation import json_body, parse_int, parse_str


books_bp = Blueprint("books", __name__, url_prefix="/api/libros")


def _holder_for_request():
    # Admins may act on any customer's reservation
    return None if g.principal.is_admin else g.principal.user_id


@books_bp.get("")
def list_books_route():
    books = Book.query.filter_by(is_active=True).order_by(Book.title.asc()).all()
    return jsonify({"books": [b.to_dict() for b in books]}), 200


@books_bp.get("/<int:book_id>")
def get_book_route(book_id: int):
    book = db.session.get(Book, book_id)
    if book is None:
        raise NotFound("Book not found", details={"book_id": book_id})
    data = book.to_dict()
    data["stock"] = stock_service.get_stock(book_id)
    return jsonify(data), 200


# =============================================================================
# STOCK LEDGER
# =============================================================================

@books_bp.get("/<int:book_id>/stock")
@require_auth
def get_stock_route(book_id: int):
    return jsonify(stock_service.get_stock(book_id)), 200


@books_bp.post("/<int:book_id>/reservar")
@require_auth
def reserve_route(book_id: int):
    """
    Reserve units of a book.

    Request body:
    {
        "cantidad": 2,
        "id_reserva": "client-chosen-id"
    }

    Returns:
        201: Reservation (also on replay of the same id_reserva)
        409: InsufficientStock / ConcurrentModification
    """
    data = json_body()
    reservation = stock_service.reserve(
        book_id,
        parse_int(data.get("cantidad"), "cantidad", minimum=1),
        g.principal.user_id,
        parse_str(data.get("id_reserva"), "id_reserva", max_length=64),
        actor_id=g.principal.user_id,
    )
    return jsonify({
        "reservation": reservation.to_dict(),
        "stock": stock_service.get_stock(book_id),
    }), 201


@books_bp.post("/<int:book_id>/liberar")
@require_auth
def release_route(book_id: int):
    data = json_body()
    reservation = stock_service.release(
        book_id,
        parse_int(data.get("cantidad"), "cantidad", required=False, minimum=1),
        _holder_for_request(),
        parse_str(data.get("id_reserva"), "id_reserva", max_length=64),
        actor_id=g.principal.user_id,
    )
    return jsonify({
        "reservation": reservation.to_dict(),
        "stock": stock_service.get_stock(book_id),
    }), 200


@books_bp.post("/<int:book_id>/comprar")
@require_auth
def commit_route(book_id: int):
    data = json_body()
    reservation = stock_service.commit(
        book_id,
        parse_int(data.get("cantidad"), "cantidad", required=False, minimum=1),
        _holder_for_request(),
        parse_str(data.get("id_reserva"), "id_reserva", max_length=64),
        parse_str(data.get("id_transaccion"), "id_transaccion", max_length=64),
        actor_id=g.principal.user_id,
    )
    return jsonify({
        "reservation": reservation.to_dict(),
        "stock": stock_service.get_stock(book_id),
    }), 200


@books_bp.post("/<int:book_id>/reabastecer")
@require_auth
@require_role(*ADMIN_ROLES)
def restock_route(book_id: int):
    data = json_body()
    stock = stock_service.restock(
        book_id,
        parse_int(data.get("cantidad"), "cantidad", minimum=1),
        reason=parse_str(data.get("motivo"), "motivo"),
        reference=parse_str(data.get("referencia"), "referencia", required=False, max_length=128),
        actor_id=g.principal.user_id,
    )
    return jsonify(stock), 200


@books_bp.put("/<int:book_id>/stock")
@require_auth
@require_role(*ADMIN_ROLES)
def set_stock_route(book_id: int):
    data = json_body()
    stock = stock_service.set_stock(
        book_id,
        parse_int(data.get("disponible"), "disponible", minimum=0),
        reason=parse_str(data.get("motivo"), "motivo"),
        actor_id=g.principal.user_id,
    )
    return jsonify(stock), 200


@books_bp.get("/<int:book_id>/movimientos")
@require_auth
@require_role(*ADMIN_ROLES)
def list_movements_route(book_id: int):
    movements = stock_service.list_movements(book_id)
    return jsonify({"movements": [m.to_dict() for m in movements]}), 200
