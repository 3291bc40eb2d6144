from datetime import timedelta

import pytest

from bookgen.common.database import fetch_order_items, insert_order
from bookgen.common.db import utcnow
from bookgen.common.errors import NotFoundError, TransitionError, ValidationError
from bookgen.generation import queue

from conftest import place_order


async def _entry(book, child="Mia", paid=True):
    order = await place_order(book["id"], [child], paid=paid)
    item_id = order["order_items"][0]["id"]
    return order, await queue.get_entry_for_item(item_id)


async def test_create_order_enqueues_one_pending_entry_per_item(book):
    order = await place_order(book["id"], ["Mia", "Leo"])
    for item in order["order_items"]:
        entry = await queue.get_entry_for_item(item["id"])
        assert entry["status"] == "pending"
        assert entry["started_at"] is None
        assert entry["completed_at"] is None
        assert item["generation_status"] == "pending"
    assert {e["child_name"] for e in await queue.list_entries()} == {"Mia", "Leo"}


async def test_enqueue_is_idempotent(book):
    _, entry = await _entry(book)
    again = await queue.enqueue(entry["order_item_id"])
    assert again["id"] == entry["id"]
    assert len(await queue.list_entries()) == 1


async def test_enqueue_unknown_item(db):
    with pytest.raises(NotFoundError):
        await queue.enqueue(999)


async def test_start_then_complete_mirrors_item(book):
    order, entry = await _entry(book)
    started = await queue.start(entry["id"])
    assert started["status"] == "processing"
    assert started["started_at"] is not None
    assert started["completed_at"] is None
    assert started["attempts"] == 1

    done = await queue.complete(entry["id"], "http://img/cover.png", {"pdf_url": "http://x/book.pdf"})
    assert done["status"] == "completed"
    assert done["completed_at"] is not None
    assert done["generated_image_url"] == "http://img/cover.png"

    (item,) = await fetch_order_items(order["id"])
    assert item.generation_status == "completed"
    assert item.pdf_url == "http://x/book.pdf"
    assert item.generated_at is not None
    assert item.generation_error is None
    assert item.artifact_status == "available"


async def test_fail_records_error_on_both_rows(book):
    order, entry = await _entry(book)
    await queue.start(entry["id"])
    failed = await queue.fail(entry["id"], "provider exploded")
    assert failed["status"] == "failed"
    assert failed["error_message"] == "provider exploded"
    assert failed["completed_at"] is not None

    (item,) = await fetch_order_items(order["id"])
    assert item.generation_status == "failed"
    assert item.generation_error == "provider exploded"
    assert item.pdf_url is None


async def test_complete_from_pending_is_rejected(book):
    _, entry = await _entry(book)
    with pytest.raises(TransitionError) as exc:
        await queue.complete(entry["id"], None)
    assert exc.value.current == "pending"
    assert (await queue.get_entry(entry["id"]))["status"] == "pending"


async def test_start_twice_is_rejected(book):
    _, entry = await _entry(book)
    await queue.start(entry["id"])
    with pytest.raises(TransitionError):
        await queue.start(entry["id"])


async def test_terminal_states_do_not_move(book):
    _, entry = await _entry(book)
    await queue.start(entry["id"])
    await queue.complete(entry["id"], None)
    with pytest.raises(TransitionError):
        await queue.fail(entry["id"], "late failure")
    with pytest.raises(TransitionError):
        await queue.retry(entry["id"])
    assert (await queue.get_entry(entry["id"]))["status"] == "completed"


async def test_unknown_artifact_field_rejected(book):
    _, entry = await _entry(book)
    await queue.start(entry["id"])
    with pytest.raises(ValidationError):
        await queue.complete(entry["id"], None, {"generation_status": "completed"})


async def test_transition_on_missing_entry(db):
    with pytest.raises(NotFoundError):
        await queue.start(12345)


async def test_retry_puts_failed_entry_back(book):
    order, entry = await _entry(book)
    await queue.start(entry["id"])
    await queue.fail(entry["id"], "boom")
    retried = await queue.retry(entry["id"])
    assert retried["status"] == "pending"
    assert retried["started_at"] is None
    assert retried["completed_at"] is None
    assert retried["error_message"] is None
    assert retried["attempts"] == 1

    (item,) = await fetch_order_items(order["id"])
    assert item.generation_status == "pending"
    assert item.generation_error is None

    again = await queue.start(entry["id"])
    assert again["attempts"] == 2


async def test_fail_stale_skips_owned_and_recent_entries(book):
    order = await place_order(book["id"], ["Ann", "Ben", "Cal"])
    entries = [await queue.get_entry_for_item(i["id"]) for i in order["order_items"]]
    for entry in entries:
        await queue.start(entry["id"])

    cutoff = utcnow() + timedelta(seconds=1)
    failed = await queue.fail_stale(cutoff, exclude={entries[0]["id"]})
    assert failed == 2
    assert (await queue.get_entry(entries[0]["id"]))["status"] == "processing"
    for entry in entries[1:]:
        stale = await queue.get_entry(entry["id"])
        assert stale["status"] == "failed"
        assert stale["error_message"] == "Generation interrupted before completion"

    assert await queue.fail_stale(utcnow() - timedelta(hours=1)) == 0


async def test_list_entries_filters_by_status(book):
    order = await place_order(book["id"], ["Ann", "Ben"])
    first = await queue.get_entry_for_item(order["order_items"][0]["id"])
    await queue.start(first["id"])
    processing = await queue.list_entries(status="processing")
    assert [e["id"] for e in processing] == [first["id"]]
    with pytest.raises(ValidationError):
        await queue.list_entries(status="bogus")


async def test_insert_order_writes_queue_entries_with_items(book):
    order_id = await insert_order(
        {"user_id": "user-2", "payment_status": "paid"},
        [{"book_id": book["id"], "quantity": 1, "unit_price": 5.0,
          "personalization_data": {"childName": "Ada", "childImage": "data:x"}}],
    )
    (item,) = await fetch_order_items(order_id)
    entry = await queue.get_entry_for_item(item.id)
    assert entry["status"] == "pending"
    assert entry["child_name"] == "Ada"
    assert entry["child_image_url"] == "data:x"
