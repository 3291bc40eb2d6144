import asyncio
import logging

from quart import Blueprint, jsonify, request

from . import queue
from .book import analyze_book, process_complete_book
from .provider import decode_image, encode_image, load_image
from ..common.config import settings
from ..common.errors import ProviderError, ValidationError
from ..common.http import dict_field, extension, int_arg, read_json, str_field

_logger = logging.getLogger(__name__)

bp = Blueprint("generation", __name__)


async def _bounded(coro, what: str):
    try:
        return await asyncio.wait_for(coro, timeout=settings.GENERATION_TIMEOUT)
    except asyncio.TimeoutError:
        raise ProviderError(f"{what} timed out after {settings.GENERATION_TIMEOUT:g}s")


def _page_list(value, name: str):
    if not isinstance(value, list) or not value or not all(isinstance(p, str) for p in value):
        raise ValidationError(f"{name} array is required")
    return value


@bp.post("/generate-image")
async def generate_image():
    data = await read_json()
    if not data.get("prompt") or not data.get("image"):
        raise ValidationError("prompt and image parameters are required")
    prompt, image = str_field(data, "prompt"), str_field(data, "image")
    _logger.info("Generating image | prompt=%s", prompt[:100])
    provider = extension("generation_provider")
    generated = await _bounded(provider.generate_image(prompt, decode_image(image)), "Image generation")
    return jsonify({
        "success": True,
        "generated_image": encode_image(generated),
        "message": "Image generated successfully",
    })


@bp.post("/generate-cover")
async def generate_cover():
    data = await read_json()
    if not data.get("originalCoverImage") or not data.get("childImage"):
        raise ValidationError("originalCoverImage and childImage are required")
    original, child_image = str_field(data, "originalCoverImage"), str_field(data, "childImage")
    book = dict_field(data, "bookData")
    child = dict_field(data, "childData")
    _logger.info("Generating personalized cover | book=%s", book.get("name") or book.get("title") or "unknown")
    provider = extension("generation_provider")
    cover = await _bounded(
        provider.generate_cover(decode_image(original), decode_image(child_image), book, child),
        "Cover generation",
    )
    return jsonify({
        "success": True,
        "coverImage": encode_image(cover),
        "message": "Personalized cover generated successfully",
    })


@bp.post("/process-complete-book")
async def process_book():
    data = await read_json()
    if data.get("bookPages"):
        pages = [decode_image(p) for p in _page_list(data["bookPages"], "bookPages")]
    elif data.get("bookPageUrls"):
        urls = _page_list(data["bookPageUrls"], "bookPageUrls")
        pages = list(await asyncio.gather(*(load_image(u) for u in urls)))
    else:
        raise ValidationError("Either bookPages or bookPageUrls array is required")
    if not data.get("childImage") or not data.get("childName"):
        raise ValidationError("childImage and childName are required")
    child_image = await load_image(str_field(data, "childImage"))
    child_name = str_field(data, "childName")
    options = dict_field(data, "processingOptions")
    batch_size = int_arg(options.get("batchSize"), "batchSize", default=settings.PAGE_BATCH_SIZE)
    title = str_field(data, "bookTitle", required=False) or "Personalized Book"

    _logger.info("Processing complete book | title=%s pages=%s", title, len(pages))
    result = await _bounded(
        process_complete_book(
            extension("generation_provider"), pages, child_image, child_name, title, batch_size
        ),
        "Book processing",
    )
    book = result["personalized_book"]
    for page in book["pages"]:
        page["image"] = encode_image(page["image"])
    status = 200 if result["success"] else 502
    return jsonify({
        "success": result["success"],
        "personalizedBook": book,
        "totalPages": result["total_pages"],
        "processingTime": result["processing_time"],
        "characterReplacements": result["character_replacements"],
        "message": "Complete book processed successfully" if result["success"] else "Complete book processing failed",
    }), status


@bp.post("/analyze-book")
async def analyze():
    data = await read_json()
    pages = [decode_image(p) for p in _page_list(data.get("bookPages"), "bookPages")]
    _logger.info("Analyzing book | pages=%s", len(pages))
    analysis = await _bounded(
        analyze_book(extension("generation_provider"), pages, concurrency=settings.PAGE_BATCH_SIZE),
        "Book analysis",
    )
    return jsonify({"success": True, "bookAnalysis": analysis, "message": "Book analysis completed successfully"})


@bp.get("/generation")
async def generation_list():
    limit = int_arg(request.args.get("limit"), "limit", default=50)
    entries = await queue.list_entries(status=request.args.get("status"), limit=limit)
    return jsonify({"entries": entries, "count": len(entries)})


@bp.get("/generation/<int:entry_id>")
async def generation_detail(entry_id: int):
    return jsonify({"entry": await queue.get_entry(entry_id)})


@bp.post("/generation/<int:entry_id>/retry")
async def generation_retry(entry_id: int):
    entry = await queue.retry(entry_id)
    return jsonify({"success": True, "entry": entry})
