from io import BytesIO
from urllib.parse import urlsplit

import pytest
from werkzeug.datastructures import FileStorage

from bookgen.app import create_app
from bookgen.generation import queue

from conftest import data_uri, order_payload, png_bytes


@pytest.fixture
def app(db, store, provider):
    return create_app(provider=provider, store=store, auto_start_monitor=False)


@pytest.fixture
def client(app):
    return app.test_client()


async def test_health(client):
    resp = await client.get("/health")
    assert resp.status_code == 200
    body = await resp.get_json()
    assert body["status"] == "healthy"
    assert body["orderMonitor"]["running"] is False


async def test_metrics_exposed(client):
    await client.get("/health")
    resp = await client.get("/metrics")
    assert resp.status_code == 200
    assert b"http_requests_total" in await resp.get_data()


async def test_create_and_fetch_order(client, book):
    resp = await client.post("/orders", json=order_payload(book["id"], ["Mia"]))
    assert resp.status_code == 201
    order = (await resp.get_json())["order"]
    assert order["order_number"].startswith("ORD-")
    assert order["order_items"][0]["generation_status"] == "pending"

    resp = await client.get(f"/orders/{order['id']}")
    assert resp.status_code == 200
    assert (await resp.get_json())["order"]["id"] == order["id"]

    resp = await client.get("/generation", query_string={"status": "pending"})
    assert (await resp.get_json())["count"] == 1


async def test_create_order_validation(client, book):
    resp = await client.post("/orders", json={"items": []})
    assert resp.status_code == 400
    body = await resp.get_json()
    assert body["success"] is False
    assert body["code"] == "VALIDATION_ERROR"

    resp = await client.post("/orders", json=order_payload(9999, ["Mia"]))
    assert resp.status_code == 404


async def test_update_order_status(client, book):
    resp = await client.post("/orders", json=order_payload(book["id"], ["Mia"], paid=False))
    order_id = (await resp.get_json())["order"]["id"]

    resp = await client.put(f"/orders/{order_id}/status", json={"payment_status": "paid"})
    assert resp.status_code == 200
    assert (await resp.get_json())["order"]["payment_status"] == "paid"

    resp = await client.put(f"/orders/{order_id}/status", json={"status": "teleported"})
    assert resp.status_code == 400
    resp = await client.put("/orders/9999/status", json={"status": "shipped"})
    assert resp.status_code == 404


async def test_retry_requires_failed_entry(client, book):
    resp = await client.post("/orders", json=order_payload(book["id"], ["Mia"]))
    item_id = (await resp.get_json())["order"]["order_items"][0]["id"]
    entry = await queue.get_entry_for_item(item_id)

    resp = await client.post(f"/generation/{entry['id']}/retry")
    assert resp.status_code == 409
    assert (await resp.get_json())["code"] == "INVALID_TRANSITION"

    await queue.start(entry["id"])
    await queue.fail(entry["id"], "boom")
    resp = await client.post(f"/generation/{entry['id']}/retry")
    assert resp.status_code == 200
    assert (await resp.get_json())["entry"]["status"] == "pending"


async def test_generation_entry_not_found(client):
    resp = await client.get("/generation/4242")
    assert resp.status_code == 404


async def test_monitor_endpoints(client):
    resp = await client.post("/monitor/start")
    assert (await resp.get_json())["message"] == "Order monitor started successfully"
    resp = await client.post("/monitor/start")
    assert (await resp.get_json())["message"] == "Order monitor is already running"
    resp = await client.get("/monitor/status")
    assert (await resp.get_json())["running"] is True

    resp = await client.post("/monitor/stop")
    assert (await resp.get_json())["status"]["running"] is False
    resp = await client.post("/monitor/stop")
    assert (await resp.get_json())["message"] == "Order monitor is not running"


async def test_generate_image_requires_prompt(client):
    resp = await client.post("/generate-image", json={"image": data_uri(png_bytes())})
    assert resp.status_code == 400


async def test_generate_cover(client):
    resp = await client.post(
        "/generate-cover",
        json={
            "originalCoverImage": data_uri(png_bytes()),
            "childImage": data_uri(png_bytes("purple")),
            "bookData": {"title": "Space Pirates"},
            "childData": {"name": "Mia"},
        },
    )
    assert resp.status_code == 200
    body = await resp.get_json()
    assert body["success"] is True
    assert body["coverImage"]


async def test_process_complete_book(client):
    resp = await client.post(
        "/process-complete-book",
        json={
            "bookPages": [data_uri(png_bytes("red")), data_uri(png_bytes("green"))],
            "childImage": data_uri(png_bytes("purple")),
            "childName": "Mia",
            "bookTitle": "Garden Friends",
        },
    )
    assert resp.status_code == 200
    body = await resp.get_json()
    assert body["totalPages"] == 2
    assert body["characterReplacements"] == 2
    assert body["personalizedBook"]["metadata"]["child_name"] == "Mia"


async def test_process_complete_book_requires_pages(client):
    resp = await client.post("/process-complete-book", json={"childImage": "x", "childName": "Mia"})
    assert resp.status_code == 400


async def test_signed_url_round_trip(client, store):
    await store.put("covers/demo.png", png_bytes())
    resp = await client.post("/generate-signed-url", json={"key": "covers/demo.png", "expiresIn": 120})
    assert resp.status_code == 200
    url = urlsplit((await resp.get_json())["signedUrl"])

    resp = await client.get(f"{url.path}?{url.query}")
    assert resp.status_code == 200
    assert await resp.get_data() == png_bytes()

    resp = await client.get(url.path)
    assert resp.status_code == 403

    resp = await client.post("/generate-signed-url", json={"key": "covers/missing.png"})
    assert resp.status_code == 410


async def test_pdf_upload_info_delete(client):
    pdf = b"%PDF-1.4\n%fake\n"
    resp = await client.post(
        "/api/upload-pdf",
        files={"pdf": FileStorage(BytesIO(pdf), filename="story.pdf", content_type="application/pdf")},
    )
    assert resp.status_code == 200
    data = (await resp.get_json())["data"]
    assert data["size"] == len(pdf)
    filename = data["filename"]

    resp = await client.get(f"/api/pdf-info/{filename}")
    info = (await resp.get_json())["data"]
    assert info["exists"] is True
    assert info["size"] == len(pdf)

    resp = await client.delete(f"/api/pdf/{filename}")
    assert resp.status_code == 200
    resp = await client.delete(f"/api/pdf/{filename}")
    assert resp.status_code == 404
    resp = await client.get(f"/api/pdf-info/{filename}")
    assert (await resp.get_json())["data"]["exists"] is False


async def test_pdf_upload_rejects_other_types(client):
    resp = await client.post(
        "/api/upload-pdf",
        files={"pdf": FileStorage(BytesIO(b"hello"), filename="notes.txt", content_type="text/plain")},
    )
    assert resp.status_code == 400
    assert (await resp.get_json())["code"] == "INVALID_FILE_TYPE"

    resp = await client.post("/api/upload-pdf")
    assert (await resp.get_json())["code"] == "NO_FILE_UPLOADED"


async def test_notifications_require_user(client):
    resp = await client.get("/notifications")
    assert resp.status_code == 400


async def test_serving_lifecycle_starts_and_stops_monitor(db, store, provider):
    app = create_app(provider=provider, store=store, auto_start_monitor=True)
    monitor = app.extensions["order_monitor"]
    async with app.test_app():
        assert monitor.running
    assert not monitor.running


@pytest.mark.parametrize(
    "path,body",
    [
        ("/generate-signed-url", {"key": 123}),
        ("/generate-image", {"prompt": 5, "image": "aGVsbG8="}),
        ("/generate-image", {"prompt": "a dragon", "image": ["x"]}),
        ("/generate-cover", {"originalCoverImage": "aGVsbG8=", "childImage": "aGVsbG8=", "bookData": "x"}),
        ("/generate-cover", {"originalCoverImage": "aGVsbG8=", "childImage": "aGVsbG8=", "childData": [1]}),
        ("/process-complete-book",
         {"bookPages": ["aGVsbG8="], "childImage": 7, "childName": "Mia"}),
        ("/process-complete-book",
         {"bookPages": ["aGVsbG8="], "childImage": "aGVsbG8=", "childName": "Mia", "processingOptions": "fast"}),
    ],
)
async def test_wrongly_typed_fields_are_validation_errors(client, path, body):
    resp = await client.post(path, json=body)
    assert resp.status_code == 400
    assert (await resp.get_json())["code"] == "VALIDATION_ERROR"


async def test_health_reports_auto_start_setting(db, store, provider):
    app = create_app(provider=provider, store=store, auto_start_monitor=True)
    resp = await app.test_client().get("/health")
    assert (await resp.get_json())["orderMonitor"] == {"enabled": True, "running": False}
