from quart import Blueprint, jsonify, request

from .service import add_book, create_order, get_order, list_orders, update_order_status
from ..common.database import fetch_book, fetch_books, fetch_notifications
from ..common.errors import NotFoundError, ValidationError
from ..common.http import extension, int_arg, read_json

bp = Blueprint("orders", __name__)


@bp.post("/orders")
async def orders_post():
    data = await read_json()
    order = await create_order(data)
    return jsonify({"success": True, "order": order}), 201


@bp.get("/orders")
async def orders_list():
    limit = int_arg(request.args.get("limit"), "limit", default=50)
    orders = await list_orders(
        status=request.args.get("status"),
        payment_status=request.args.get("payment_status"),
        limit=limit,
    )
    return jsonify({"orders": orders, "count": len(orders)})


@bp.get("/orders/<int:order_id>")
async def order_detail(order_id: int):
    order = await get_order(extension("artifact_store"), order_id)
    return jsonify({"order": order})


@bp.put("/orders/<int:order_id>/status")
async def order_status_put(order_id: int):
    data = await read_json()
    order = await update_order_status(
        order_id, status=data.get("status"), payment_status=data.get("payment_status")
    )
    return jsonify({"success": True, "order": order})


@bp.post("/books")
async def books_post():
    data = await read_json()
    book = await add_book(data)
    return jsonify({"success": True, "book": book}), 201


@bp.get("/books")
async def books_list():
    books = await fetch_books()
    return jsonify({"books": books})


@bp.get("/books/<int:book_id>")
async def book_detail(book_id: int):
    book = await fetch_book(book_id)
    if not book:
        raise NotFoundError(f"Book {book_id} not found")
    return jsonify({"book": book})


@bp.get("/notifications")
async def notifications_list():
    user_id = request.args.get("user_id")
    if not user_id:
        raise ValidationError("user_id is required")
    notes = await fetch_notifications(user_id)
    return jsonify({"notifications": notes})
