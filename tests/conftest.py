import asyncio
import base64
import os
import tempfile
from io import BytesIO

_TMP = tempfile.mkdtemp(prefix="bookgen-tests-")
os.environ["DB_URL"] = f"sqlite+aiosqlite:///{_TMP}/test.db"
os.environ["EVENTS_ENABLED"] = "false"
os.environ["AUTO_START_MONITOR"] = "false"
os.environ["STORAGE_DIR"] = f"{_TMP}/uploads"

import pytest
import sqlalchemy as sa
from PIL import Image

from bookgen.artifacts.store import LocalArtifactStore
from bookgen.common.database import AsyncSessionLocal, drop_db, engine, init_db
from bookgen.generation.provider import MockProvider
from bookgen.orders.model import OrderItem
from bookgen.orders.service import add_book, create_order


def png_bytes(color: str = "red", size=(40, 60)) -> bytes:
    buf = BytesIO()
    Image.new("RGB", size, color).save(buf, format="PNG")
    return buf.getvalue()


def data_uri(data: bytes) -> str:
    return "data:image/png;base64," + base64.b64encode(data).decode("ascii")


class FakeProvider(MockProvider):
    """Mock provider whose cover step can be delayed or held per child."""

    def __init__(self):
        self.delays = {}
        self.gates = {}
        self.cover_calls = []
        self.failing_pages = set()

    async def generate_cover(self, cover_image, child_image, book, child):
        name = child.get("name")
        self.cover_calls.append(name)
        gate = self.gates.get(name)
        if gate is not None:
            await gate.wait()
        if self.delays.get(name):
            await asyncio.sleep(self.delays[name])
        return await super().generate_cover(cover_image, child_image, book, child)

    async def personalize_page(self, page_image, child_image, child_name, analysis):
        if analysis.get("page_number") in self.failing_pages:
            from bookgen.common.errors import ProviderError
            raise ProviderError("page rejected", status=400)
        return await super().personalize_page(page_image, child_image, child_name, analysis)


@pytest.fixture
async def db():
    await drop_db()
    await init_db()
    yield
    await engine.dispose()


@pytest.fixture
def store(tmp_path):
    return LocalArtifactStore(str(tmp_path / "store"), "http://testserver", "test-secret")


@pytest.fixture
def provider():
    return FakeProvider()


@pytest.fixture
async def book(db):
    return await add_book(
        {
            "title": "The Brave Little Explorer",
            "cover_image_url": data_uri(png_bytes("blue")),
            "images": [data_uri(png_bytes("green")), data_uri(png_bytes("yellow"))],
        }
    )


def order_payload(book_id, children, paid=True, user_id="user-1"):
    return {
        "user_id": user_id,
        "payment_status": "paid" if paid else "pending",
        "items": [
            {
                "book_id": book_id,
                "quantity": 1,
                "unit_price": 19.99,
                "personalization_data": {
                    "child_name": name,
                    "child_age": 6,
                    "child_image_url": data_uri(png_bytes("purple")),
                },
            }
            for name in children
        ],
    }


async def place_order(book_id, children, paid=True):
    return await create_order(order_payload(book_id, children, paid=paid))


async def set_item(item_id, **values):
    async with AsyncSessionLocal() as session:
        await session.execute(sa.update(OrderItem).where(OrderItem.id == item_id).values(**values))
        await session.commit()


async def wait_for(predicate, timeout=5.0, interval=0.02):
    loop = asyncio.get_running_loop()
    deadline = loop.time() + timeout
    while not predicate():
        if loop.time() > deadline:
            raise AssertionError("condition not met in time")
        await asyncio.sleep(interval)
