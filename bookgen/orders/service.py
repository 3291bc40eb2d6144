import logging
from typing import Any, Dict, List, Optional

from ..artifacts.service import needs_refresh, refresh_order_urls
from ..artifacts.store import LocalArtifactStore
from ..common.config import settings
from ..common.database import (
    create_book,
    existing_book_ids,
    fetch_order,
    fetch_order_items,
    fetch_orders,
    insert_order,
    update_order_fields,
)
from ..common.db import utcnow
from ..common.errors import NotFoundError, StorageError, ValidationError
from ..generation import queue
from .model import ORDER_STATUSES, PAYMENT_STATUSES, Order

_logger = logging.getLogger(__name__)

_BOOK_FIELDS = ("title", "description", "genre", "age_range", "cover_image_url", "pdf_url",
                "images", "characters", "ideal_for")


def _number(value: Any, name: str, default: float, minimum: float, cast=float):
    if value is None:
        return default
    try:
        number = cast(value)
    except (TypeError, ValueError):
        raise ValidationError(f"{name} must be a number")
    if number < minimum:
        raise ValidationError(f"{name} must be >= {minimum}")
    return number


def _validate_items(raw_items: Any) -> List[Dict[str, Any]]:
    if not isinstance(raw_items, list) or not raw_items:
        raise ValidationError("items must be a non-empty list")
    items = []
    for index, raw in enumerate(raw_items):
        if not isinstance(raw, dict):
            raise ValidationError(f"items[{index}] must be an object")
        if raw.get("book_id") is None:
            raise ValidationError(f"items[{index}].book_id is required")
        personalization = raw.get("personalization_data") or {}
        if not isinstance(personalization, dict):
            raise ValidationError(f"items[{index}].personalization_data must be an object")
        items.append(
            {
                "book_id": _number(raw.get("book_id"), f"items[{index}].book_id", 0, 1, int),
                "quantity": _number(raw.get("quantity"), f"items[{index}].quantity", 1, 1, int),
                "unit_price": _number(raw.get("unit_price"), f"items[{index}].unit_price", 0.0, 0.0),
                "personalization_data": personalization,
            }
        )
    return items


def _validate_status(value: Optional[str], allowed, name: str) -> Optional[str]:
    if value is not None and value not in allowed:
        raise ValidationError(f"{name} must be one of: {', '.join(allowed)}")
    return value


async def create_order(payload: Dict[str, Any]) -> Dict[str, Any]:
    """Place an order and queue one generation entry per item."""
    items = _validate_items(payload.get("items"))
    status = _validate_status(payload.get("status", "pending"), ORDER_STATUSES, "status")
    payment_status = _validate_status(
        payload.get("payment_status", "pending"), PAYMENT_STATUSES, "payment_status"
    )
    wanted = {item["book_id"] for item in items}
    missing = wanted - await existing_book_ids(list(wanted))
    if missing:
        raise NotFoundError(f"Unknown book id(s): {', '.join(str(b) for b in sorted(missing))}")

    default_total = sum(item["quantity"] * item["unit_price"] for item in items)
    order_data = {
        "order_number": payload.get("order_number"),
        "user_id": payload.get("user_id"),
        "status": status,
        "payment_status": payment_status,
        "total_amount": _number(payload.get("total_amount"), "total_amount", default_total, 0.0),
        "shipping_address": payload.get("shipping_address"),
        "billing_address": payload.get("billing_address"),
    }
    # Items and their queue entries are written in one transaction
    order_id = await insert_order(order_data, items)
    for item in await fetch_order_items(order_id):
        entry = await queue.get_entry_for_item(item.id)
        await queue.announce_pending(entry)
    _logger.info("Order created | order_id=%s items=%s payment_status=%s", order_id, len(items), payment_status)
    order = await fetch_order(order_id)
    return order.to_dict()


def present_order(order: Order) -> Dict[str, Any]:
    """Serialize an order, hiding any signed URL that is already past expiry."""
    data = order.to_dict()
    now = utcnow()
    for item, item_data in zip(order.items, data["order_items"]):
        if item.pdf_url_expires_at is not None and item.pdf_url_expires_at <= now:
            item_data["pdf_url"] = None
        if item.cover_url_expires_at is not None and item.cover_url_expires_at <= now:
            item_data["cover_image_url"] = None
    return data


async def get_order(store: LocalArtifactStore, order_id: int) -> Dict[str, Any]:
    order = await fetch_order(order_id)
    if order is None:
        raise NotFoundError(f"Order {order_id} not found")
    now = utcnow()
    if any(needs_refresh(item, now, settings.REFRESH_MARGIN) for item in order.items):
        try:
            await refresh_order_urls(store, order_id)
        except StorageError as e:
            _logger.warning("URL refresh on read failed | order_id=%s err=%s", order_id, e.message)
        order = await fetch_order(order_id)
    return present_order(order)


async def list_orders(
    status: Optional[str] = None, payment_status: Optional[str] = None, limit: int = 50
) -> List[Dict[str, Any]]:
    _validate_status(status, ORDER_STATUSES, "status")
    _validate_status(payment_status, PAYMENT_STATUSES, "payment_status")
    orders = await fetch_orders(status=status, payment_status=payment_status, limit=limit)
    return [present_order(o) for o in orders]


async def update_order_status(
    order_id: int, status: Optional[str] = None, payment_status: Optional[str] = None
) -> Dict[str, Any]:
    values = {}
    if status is not None:
        values["status"] = _validate_status(status, ORDER_STATUSES, "status")
    if payment_status is not None:
        values["payment_status"] = _validate_status(payment_status, PAYMENT_STATUSES, "payment_status")
    if not values:
        raise ValidationError("status or payment_status is required")
    if not await update_order_fields(order_id, values):
        raise NotFoundError(f"Order {order_id} not found")
    _logger.info("Order status updated | order_id=%s %s", order_id, values)
    order = await fetch_order(order_id)
    return present_order(order)


async def add_book(payload: Dict[str, Any]) -> Dict[str, Any]:
    if not payload.get("title"):
        raise ValidationError("title is required")
    images = payload.get("images") or []
    if not isinstance(images, list) or not all(isinstance(u, str) for u in images):
        raise ValidationError("images must be a list of URLs")
    data = {k: payload.get(k) for k in _BOOK_FIELDS if payload.get(k) is not None}
    data["images"] = images
    return await create_book(data)
