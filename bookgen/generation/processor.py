import asyncio
import logging
import time
from typing import Any, Dict, Optional

from ..artifacts.store import LocalArtifactStore
from ..common.config import settings
from ..common.database import create_notification, fetch_item_context
from ..common.errors import BookGenError, NotFoundError, TransitionError, ValidationError
from ..common.metrics import GENERATION_DURATION
from ..orders.model import personalization_fields
from . import queue
from .book import build_pdf, process_complete_book
from .provider import GenerationProvider, load_image

_logger = logging.getLogger(__name__)


class GenerationProcessor:
    """Runs one queue entry end to end: cover, pages, PDF, upload, sign.

    ``process`` always leaves the entry completed or failed; the whole
    external part runs under ``timeout`` seconds.
    """

    def __init__(
        self,
        provider: GenerationProvider,
        store: LocalArtifactStore,
        timeout: Optional[float] = None,
        page_batch_size: Optional[int] = None,
        url_ttl: Optional[int] = None,
    ):
        self.provider = provider
        self.store = store
        self.timeout = timeout if timeout is not None else settings.GENERATION_TIMEOUT
        self.page_batch_size = page_batch_size or settings.PAGE_BATCH_SIZE
        self.url_ttl = url_ttl or settings.SIGNED_URL_TTL

    async def process(self, entry_id: int) -> Optional[Dict[str, Any]]:
        try:
            entry = await queue.start(entry_id)
        except TransitionError as e:
            _logger.warning("Skipping entry not pending | entry_id=%s status=%s", entry_id, e.current)
            return None

        started = time.monotonic()
        _logger.info(
            "Processing order item | entry_id=%s order_item_id=%s attempt=%s",
            entry_id, entry["order_item_id"], entry["attempts"],
        )
        try:
            result = await asyncio.wait_for(self._generate(entry), timeout=self.timeout)
        except asyncio.CancelledError:
            _logger.warning("Generation cancelled | entry_id=%s", entry_id)
            await asyncio.shield(queue.fail(entry_id, "Generation interrupted by shutdown"))
            GENERATION_DURATION.labels(outcome="failed").observe(time.monotonic() - started)
            raise
        except asyncio.TimeoutError:
            error = f"Generation timed out after {self.timeout:g}s"
        except BookGenError as e:
            error = e.message
        except Exception as e:
            _logger.exception("Generation crashed | entry_id=%s", entry_id)
            error = f"Unexpected error: {e}"
        else:
            final = await queue.complete(entry_id, result["cover_url"], result["artifacts"])
            GENERATION_DURATION.labels(outcome="completed").observe(time.monotonic() - started)
            _logger.info("Order item completed | entry_id=%s order_item_id=%s", entry_id, entry["order_item_id"])
            await self._notify(result)
            return final

        final = await queue.fail(entry_id, error)
        GENERATION_DURATION.labels(outcome="failed").observe(time.monotonic() - started)
        _logger.error("Order item failed | entry_id=%s order_item_id=%s err=%s", entry_id, entry["order_item_id"], error)
        return final

    async def _generate(self, entry: Dict[str, Any]) -> Dict[str, Any]:
        ctx = await fetch_item_context(entry["order_item_id"])
        if ctx is None:
            raise NotFoundError(f"Order item {entry['order_item_id']} not found")
        item, order, book = ctx["item"], ctx["order"], ctx["book"]

        child = personalization_fields(item.personalization_data)
        if not child["child_image_url"]:
            raise ValidationError("Child image not found in personalization data")
        if not child["child_name"]:
            raise ValidationError("Child name not found in personalization data")
        if not book.cover_image_url:
            raise ValidationError(f"Book {book.id} has no cover image")
        if not book.images:
            raise ValidationError(f"Book {book.id} has no page images")

        child_image = await load_image(child["child_image_url"])
        cover_source = await load_image(book.cover_image_url)
        pages = list(await asyncio.gather(*(load_image(url) for url in book.images)))

        cover = await self.provider.generate_cover(
            cover_source,
            child_image,
            {
                "title": book.title,
                "description": book.description,
                "genre": book.genre,
                "age_range": book.age_range,
                "characters": book.characters,
                "ideal_for": book.ideal_for,
            },
            {"name": child["child_name"], "age": child["child_age"], "gender": child["child_gender"]},
        )
        cover_key = f"covers/order_{order.id}_item_{item.id}_cover.png"
        await self.store.put(cover_key, cover)

        book_result = await process_complete_book(
            self.provider, pages, child_image, child["child_name"], book.title, self.page_batch_size
        )
        if not book_result["success"]:
            raise ValidationError("No page of the book could be personalized")
        page_images = [p["image"] for p in book_result["personalized_book"]["pages"]]
        pdf = await asyncio.to_thread(build_pdf, cover, page_images)
        pdf_key = f"books/order_{order.id}_item_{item.id}_book.pdf"
        await self.store.put(pdf_key, pdf)

        cover_url = self.store.sign(cover_key, self.url_ttl)
        pdf_url = self.store.sign(pdf_key, self.url_ttl)
        return {
            "cover_url": cover_url.url,
            "artifacts": {
                "cover_key": cover_key,
                "cover_image_url": cover_url.url,
                "cover_url_expires_at": cover_url.expires_at,
                "pdf_key": pdf_key,
                "pdf_url": pdf_url.url,
                "pdf_url_expires_at": pdf_url.expires_at,
            },
            "user_id": order.user_id,
            "order_id": order.id,
            "order_item_id": item.id,
            "book_id": book.id,
            "book_title": book.title,
        }

    async def _notify(self, result: Dict[str, Any]) -> None:
        if not result["user_id"]:
            _logger.warning("No user for completion notification | order_id=%s", result["order_id"])
            return
        try:
            await create_notification(
                result["user_id"],
                "Your Book is Ready!",
                f'"{result["book_title"]}" has been personalized and is ready to download.',
                "book_completed",
                {
                    "order_id": result["order_id"],
                    "order_item_id": result["order_item_id"],
                    "book_id": result["book_id"],
                    "pdf_url": result["artifacts"]["pdf_url"],
                    "cover_url": result["cover_url"],
                },
            )
        except Exception as e:
            # Completion is already committed
            _logger.warning("Failed to create notification | order_id=%s err=%s", result["order_id"], e)
