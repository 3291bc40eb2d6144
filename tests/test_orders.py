from datetime import timedelta

import pytest

from bookgen.common.db import utcnow
from bookgen.common.errors import ValidationError
from bookgen.orders.model import personalization_fields
from bookgen.orders.service import add_book, get_order, list_orders

from conftest import place_order, set_item


def test_personalization_fields_accept_camel_case():
    fields = personalization_fields({"childName": "Mia", "childImage": "data:x", "child_age": 5})
    assert fields == {
        "child_name": "Mia",
        "child_age": 5,
        "child_gender": None,
        "child_image_url": "data:x",
    }
    assert personalization_fields(None)["child_name"] is None


async def test_expired_url_is_hidden_when_refresh_cannot_help(book, store):
    order = await place_order(book["id"], ["Mia"])
    item_id = order["order_items"][0]["id"]
    await set_item(
        item_id,
        generation_status="completed",
        pdf_key="books/gone.pdf",
        pdf_url="http://old/pdf",
        pdf_url_expires_at=utcnow() - timedelta(minutes=5),
        artifact_status="available",
    )

    fetched = await get_order(store, order["id"])
    (item,) = fetched["order_items"]
    assert item["pdf_url"] is None
    assert item["artifact_status"] == "unavailable"


async def test_list_orders_filters_by_payment_status(book):
    await place_order(book["id"], ["Mia"], paid=True)
    await place_order(book["id"], ["Leo"], paid=False)
    paid = await list_orders(payment_status="paid")
    assert len(paid) == 1
    with pytest.raises(ValidationError):
        await list_orders(status="lost")


async def test_add_book_requires_title(db):
    with pytest.raises(ValidationError):
        await add_book({"images": []})
    with pytest.raises(ValidationError):
        await add_book({"title": "x", "images": "not-a-list"})
