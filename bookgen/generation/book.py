"""Whole-book personalization: page analysis, character mapping, page
replacement and PDF assembly."""
import asyncio
import logging
import time
from collections import Counter
from io import BytesIO
from typing import Any, Dict, List, Optional

from PIL import Image, UnidentifiedImageError

from ..common.db import utcnow
from ..common.errors import ProviderError, ValidationError
from .provider import GenerationProvider

_logger = logging.getLogger(__name__)

# A4 at 72 dpi, in points
A4_SIZE = (595, 842)


def fallback_analysis(page_number: int, error: str) -> Dict[str, Any]:
    return {
        "page_number": page_number,
        "characters": [],
        "scene": {"action": "unknown", "setting": "unknown", "mood": "unknown"},
        "text": {"content": "", "character_names": [], "context": "unknown"},
        "error": error,
    }


def identify_main_character(pages: List[Dict[str, Any]]) -> Dict[str, Any]:
    counts = Counter(
        (char.get("description") or "").lower()
        for page in pages
        for char in page.get("characters", [])
        if char.get("is_main_character")
    )
    if not counts:
        return {"description": "main character", "frequency": 0, "total_pages": len(pages)}
    description, frequency = counts.most_common(1)[0]
    return {"description": description, "frequency": frequency, "total_pages": len(pages)}


def character_consistency(pages: List[Dict[str, Any]]) -> Dict[str, Any]:
    appearances = sum(
        1 for page in pages if any(c.get("is_main_character") for c in page.get("characters", []))
    )
    return {
        "total_appearances": appearances,
        "consistency": appearances / len(pages) if pages else 0.0,
        "needs_replacement": appearances > 0,
    }


def replacement_strategy(character: Dict[str, Any]) -> Dict[str, Any]:
    return {
        "face_replacement": character.get("size") in ("large", "medium"),
        "full_body_replacement": character.get("pose") != "face_only",
        "position": character.get("position"),
        "size": character.get("size"),
        "emotion": character.get("emotion"),
        "pose": character.get("pose"),
    }


async def analyze_book(
    provider: GenerationProvider, pages: List[bytes], concurrency: int = 3
) -> Dict[str, Any]:
    if not pages:
        raise ValidationError("bookPages array is required")
    sem = asyncio.Semaphore(max(1, concurrency))

    async def analyze(index: int, page: bytes) -> Dict[str, Any]:
        async with sem:
            try:
                return await provider.analyze_page(page, index + 1)
            except ProviderError as e:
                _logger.warning("Page analysis failed, using fallback | page=%s err=%s", index + 1, e.message)
                return fallback_analysis(index + 1, e.message)

    analyses = list(await asyncio.gather(*(analyze(i, p) for i, p in enumerate(pages))))
    return {
        "total_pages": len(pages),
        "pages": analyses,
        "main_character": identify_main_character(analyses),
        "book_style": {"dominant_style": "children's book illustration", "consistency": "high"},
        "character_consistency": character_consistency(analyses),
    }


def map_characters(analysis: Dict[str, Any]) -> List[Dict[str, Any]]:
    """Pages that show the main character, with how to replace it."""
    mapping = []
    for index, page in enumerate(analysis["pages"]):
        main = next((c for c in page.get("characters", []) if c.get("is_main_character")), None)
        if main is None:
            continue
        mapping.append(
            {
                "page_index": index,
                "page_number": index + 1,
                "character": main,
                "strategy": replacement_strategy(main),
                "analysis": page,
            }
        )
    return mapping


def assemble_book(pages: List[Dict[str, Any]], title: str, child_name: str) -> Dict[str, Any]:
    pages = sorted(pages, key=lambda p: p["page_number"])
    failed = [p for p in pages if not p["success"]]
    return {
        "metadata": {
            "title": title,
            "child_name": child_name,
            "total_pages": len(pages),
            "successful_pages": len(pages) - len(failed),
            "failed_pages": len(failed),
            "created_at": utcnow().isoformat(),
        },
        "pages": pages,
        "success": len(failed) < len(pages),
    }


async def process_complete_book(
    provider: GenerationProvider,
    pages: List[bytes],
    child_image: bytes,
    child_name: str,
    title: str,
    batch_size: int = 3,
) -> Dict[str, Any]:
    """Analyze every page and swap the main character for the child.

    At most ``batch_size`` provider calls run at once. A page whose
    personalization fails keeps its original image.
    """
    started = time.monotonic()
    analysis = await analyze_book(provider, pages, concurrency=batch_size)
    mapping = map_characters(analysis)
    _logger.info("Character mapping | book=%s replacements=%s", title, len(mapping))
    sem = asyncio.Semaphore(max(1, batch_size))

    async def personalize(entry: Dict[str, Any]) -> Dict[str, Any]:
        original = pages[entry["page_index"]]
        async with sem:
            try:
                image = await provider.personalize_page(original, child_image, child_name, entry["analysis"])
            except ProviderError as e:
                _logger.warning("Page personalization failed | page=%s err=%s", entry["page_number"], e.message)
                return {"page_number": entry["page_number"], "image": original, "personalized": False,
                        "success": False, "error": e.message}
        return {"page_number": entry["page_number"], "image": image, "personalized": True, "success": True}

    processed = {p["page_number"]: p for p in await asyncio.gather(*(personalize(m) for m in mapping))}
    out_pages = [
        processed.get(n, {"page_number": n, "image": page, "personalized": False, "success": True})
        for n, page in enumerate(pages, start=1)
    ]
    book = assemble_book(out_pages, title, child_name)
    return {
        "success": book["success"],
        "personalized_book": book,
        "total_pages": len(out_pages),
        "character_replacements": len(mapping),
        "processing_time": int((time.monotonic() - started) * 1000),
        "book_analysis": analysis,
    }


def _a4_page(data: bytes) -> Image.Image:
    try:
        img = Image.open(BytesIO(data))
        img.load()
    except (UnidentifiedImageError, OSError) as e:
        raise ValidationError(f"Unreadable page image: {e}") from e
    img = img.convert("RGB")
    img.thumbnail(A4_SIZE)
    page = Image.new("RGB", A4_SIZE, "white")
    page.paste(img, ((A4_SIZE[0] - img.width) // 2, (A4_SIZE[1] - img.height) // 2))
    return page


def build_pdf(cover: Optional[bytes], pages: List[bytes]) -> bytes:
    """A4 PDF, cover first, one image per page."""
    images = [_a4_page(data) for data in ([cover] if cover else []) + list(pages)]
    if not images:
        raise ValidationError("No pages to put in the PDF")
    buf = BytesIO()
    images[0].save(buf, format="PDF", save_all=True, append_images=images[1:], resolution=72.0)
    return buf.getvalue()
