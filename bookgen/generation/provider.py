from __future__ import annotations

import asyncio
import base64
import binascii
import logging
import random
from abc import ABC, abstractmethod
from io import BytesIO
from typing import Any, Dict, Optional

import aiohttp
from PIL import Image, ImageDraw

from ..common.config import settings
from ..common.errors import ProviderError, ValidationError

_logger = logging.getLogger(__name__)


def encode_image(data: bytes) -> str:
    return base64.b64encode(data).decode("ascii")


def decode_image(value: str) -> bytes:
    """Accept plain base64 or a ``data:image/...;base64,`` URI."""
    if value.startswith("data:"):
        _, _, value = value.partition(",")
    try:
        return base64.b64decode(value, validate=True)
    except (binascii.Error, ValueError) as e:
        raise ValidationError("Image is not valid base64") from e


async def load_image(source: Optional[str], timeout: float = 30.0) -> bytes:
    """Image bytes from an http(s) URL, a data URI or a bare base64 string."""
    if not source:
        raise ValidationError("Image URL or base64 is required")
    if not source.startswith(("http://", "https://")):
        return decode_image(source)
    try:
        async with aiohttp.ClientSession(timeout=aiohttp.ClientTimeout(total=timeout)) as session:
            async with session.get(source) as resp:
                if resp.status >= 400:
                    raise ProviderError(
                        f"Failed to download image from {source}: HTTP {resp.status}", status=resp.status
                    )
                return await resp.read()
    except (aiohttp.ClientError, asyncio.TimeoutError) as e:
        raise ProviderError(f"Failed to download image from {source}: {e}", retryable=True) from e


def is_retryable(status: Optional[int]) -> bool:
    # 429 and 5xx are transient; any other 4xx is the caller's fault
    if status is None:
        return True
    return status == 429 or 500 <= status < 600


class GenerationProvider(ABC):
    name = "abstract"

    @abstractmethod
    async def generate_image(self, prompt: str, image: bytes) -> bytes:
        raise NotImplementedError

    @abstractmethod
    async def generate_cover(
        self, cover_image: bytes, child_image: bytes, book: Dict[str, Any], child: Dict[str, Any]
    ) -> bytes:
        raise NotImplementedError

    @abstractmethod
    async def analyze_page(self, page_image: bytes, page_number: int) -> Dict[str, Any]:
        raise NotImplementedError

    @abstractmethod
    async def personalize_page(
        self, page_image: bytes, child_image: bytes, child_name: str, analysis: Dict[str, Any]
    ) -> bytes:
        raise NotImplementedError

    async def close(self) -> None:
        return None


def _mock_png(text: str, width: int = 595, height: int = 842, color: str = "white") -> bytes:
    img = Image.new("RGB", (width, height), color)
    draw = ImageDraw.Draw(img)
    draw.text((20, 20), text[:200], fill="black")
    buf = BytesIO()
    img.save(buf, format="PNG")
    return buf.getvalue()


class MockProvider(GenerationProvider):
    """Offline provider: draws labelled placeholder pages."""

    name = "mock"

    async def generate_image(self, prompt: str, image: bytes) -> bytes:
        return _mock_png(f"Mock image\n{prompt}")

    async def generate_cover(self, cover_image, child_image, book, child) -> bytes:
        title = book.get("title") or book.get("name") or "Untitled"
        return _mock_png(f"{title}\nstarring {child.get('name') or 'you'}", color="lightyellow")

    async def analyze_page(self, page_image: bytes, page_number: int) -> Dict[str, Any]:
        return {
            "page_number": page_number,
            "characters": [
                {
                    "description": "main character",
                    "is_main_character": True,
                    "size": "medium",
                    "position": "center",
                    "pose": "standing",
                    "emotion": "happy",
                }
            ],
            "scene": {"action": "unknown", "setting": "unknown", "mood": "cheerful"},
            "text": {"content": "", "character_names": [], "context": "story"},
        }

    async def personalize_page(self, page_image, child_image, child_name, analysis) -> bytes:
        return _mock_png(f"Page {analysis.get('page_number')}\n{child_name}")


class HttpProvider(GenerationProvider):
    """Generation service reached over HTTP with base64 JSON payloads."""

    name = "http"

    def __init__(self, base_url: str, max_retries: int = 3, timeout: float = 60.0, backoff: float = 1.0):
        if not base_url:
            raise ValueError("GENERATION_PROVIDER_URL is not configured")
        self.base_url = base_url.rstrip("/")
        self.max_retries = max(1, max_retries)
        self.timeout = timeout
        self.backoff = backoff
        self._session: Optional[aiohttp.ClientSession] = None

    async def _get_session(self) -> aiohttp.ClientSession:
        if self._session is None or self._session.closed:
            self._session = aiohttp.ClientSession(timeout=aiohttp.ClientTimeout(total=self.timeout))
        return self._session

    async def close(self) -> None:
        if self._session is not None:
            await self._session.close()
            self._session = None

    async def _post(self, path: str, payload: Dict[str, Any]) -> Dict[str, Any]:
        url = f"{self.base_url}/{path.lstrip('/')}"
        backoff = self.backoff
        last_exc: Optional[ProviderError] = None
        for attempt in range(1, self.max_retries + 1):
            try:
                session = await self._get_session()
                async with session.post(url, json=payload) as resp:
                    if resp.status >= 400:
                        body = await resp.text()
                        raise ProviderError(
                            f"Provider {path} returned HTTP {resp.status}: {body[:200]}",
                            status=resp.status,
                            retryable=is_retryable(resp.status),
                        )
                    return await resp.json()
            except ProviderError as e:
                last_exc = e
            except (aiohttp.ClientError, asyncio.TimeoutError) as e:
                last_exc = ProviderError(f"Provider {path} unreachable: {e}", retryable=True)

            if not last_exc.retryable or attempt == self.max_retries:
                break
            delay = backoff + random.uniform(0, backoff / 2)
            _logger.warning(
                "Provider call failed, retrying | path=%s attempt=%s/%s delay=%.1fs err=%s",
                path, attempt, self.max_retries, delay, last_exc.message,
            )
            await asyncio.sleep(delay)
            backoff = min(backoff * 2, 30.0)
        raise last_exc

    @staticmethod
    def _image_from(result: Dict[str, Any], path: str) -> bytes:
        image = result.get("image")
        if not image:
            raise ProviderError(f"Provider {path} returned no image data")
        return decode_image(image)

    async def generate_image(self, prompt: str, image: bytes) -> bytes:
        result = await self._post("generate-image", {"prompt": prompt, "image": encode_image(image)})
        return self._image_from(result, "generate-image")

    async def generate_cover(self, cover_image, child_image, book, child) -> bytes:
        payload = {
            "cover_image": encode_image(cover_image),
            "child_image": encode_image(child_image),
            "book": book,
            "child": child,
        }
        return self._image_from(await self._post("generate-cover", payload), "generate-cover")

    async def analyze_page(self, page_image: bytes, page_number: int) -> Dict[str, Any]:
        result = await self._post("analyze-page", {"image": encode_image(page_image), "page_number": page_number})
        result.setdefault("page_number", page_number)
        result.setdefault("characters", [])
        return result

    async def personalize_page(self, page_image, child_image, child_name, analysis) -> bytes:
        payload = {
            "page_image": encode_image(page_image),
            "child_image": encode_image(child_image),
            "child_name": child_name,
            "analysis": analysis,
        }
        return self._image_from(await self._post("personalize-page", payload), "personalize-page")


def get_provider(name: Optional[str] = None) -> GenerationProvider:
    name = name or settings.GENERATION_PROVIDER
    if name == "http":
        return HttpProvider(
            settings.GENERATION_PROVIDER_URL,
            max_retries=settings.PROVIDER_MAX_RETRIES,
            timeout=settings.PROVIDER_REQUEST_TIMEOUT,
        )
    if name != "mock":
        _logger.warning("Unknown generation provider %r, using mock", name)
    return MockProvider()
