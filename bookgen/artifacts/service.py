import asyncio
import logging
from datetime import datetime, timedelta
from typing import Any, Dict, List, Optional

import sqlalchemy as sa

from ..common.config import settings
from ..common.database import AsyncSessionLocal, fetch_order, fetch_order_item, fetch_order_items
from ..common.db import utcnow
from ..common.errors import ArtifactMissingError, NotFoundError, StorageError
from ..orders.model import ARTIFACT_AVAILABLE, ARTIFACT_UNAVAILABLE, OrderItem
from .store import LocalArtifactStore, SignedUrl

_logger = logging.getLogger(__name__)

# (key column, url column, expiry column)
_ARTIFACTS = (
    ("pdf_key", "pdf_url", "pdf_url_expires_at"),
    ("cover_key", "cover_image_url", "cover_url_expires_at"),
)


def get_signed_url(store: LocalArtifactStore, key: str, ttl: Optional[int] = None) -> SignedUrl:
    return store.sign(key, ttl or settings.SIGNED_URL_TTL)


def needs_refresh(item: OrderItem, now: datetime, margin: int) -> bool:
    threshold = now + timedelta(seconds=margin)
    for key_col, url_col, exp_col in _ARTIFACTS:
        if not getattr(item, key_col):
            continue
        expires_at = getattr(item, exp_col)
        if getattr(item, url_col) is None or expires_at is None or expires_at <= threshold:
            return True
    return False


async def _refresh_item(
    store: LocalArtifactStore, item: OrderItem, force: bool, ttl: int, margin: int
) -> Dict[str, Any]:
    result = {
        "order_item_id": item.id,
        "refreshed": False,
        "pdfUrl": item.pdf_url,
        "coverUrl": item.cover_image_url,
        "artifact_status": item.artifact_status,
    }
    if not item.pdf_key and not item.cover_key:
        return result
    if not force and not needs_refresh(item, utcnow(), margin):
        return result

    values: Dict[str, Any] = {}
    missing: List[str] = []
    for key_col, url_col, exp_col in _ARTIFACTS:
        key = getattr(item, key_col)
        if not key:
            continue
        try:
            signed = get_signed_url(store, key, ttl)
        except ArtifactMissingError:
            missing.append(key)
            continue
        # New URL replaces the old one in the same write; never nulled
        values[url_col] = signed.url
        values[exp_col] = signed.expires_at

    values["artifact_status"] = ARTIFACT_UNAVAILABLE if missing else ARTIFACT_AVAILABLE
    async with AsyncSessionLocal() as session:
        await session.execute(
            sa.update(OrderItem).where(OrderItem.id == item.id).values(updated_at=utcnow(), **values)
        )
        await session.commit()

    if missing:
        _logger.error(
            "Stored artifact missing, item marked unavailable | order_item_id=%s keys=%s",
            item.id, ",".join(missing),
        )
    else:
        _logger.info("Refreshed URLs | order_item_id=%s", item.id)

    result.update(
        refreshed="pdf_url" in values or "cover_image_url" in values,
        pdfUrl=values.get("pdf_url", item.pdf_url),
        coverUrl=values.get("cover_image_url", item.cover_image_url),
        artifact_status=values["artifact_status"],
    )
    return result


async def refresh_order_urls(
    store: LocalArtifactStore,
    order_id: int,
    force: bool = False,
    ttl: Optional[int] = None,
    margin: Optional[int] = None,
) -> List[Dict[str, Any]]:
    """Re-sign expired or nearly expired artifact URLs of every item of an order.

    Items are independent and refreshed concurrently. If any item fails the
    others still commit, then an error is raised (StorageError last, so an
    unexpected failure is never masked as a retryable one).
    """
    if await fetch_order(order_id) is None:
        raise NotFoundError(f"Order {order_id} not found")
    ttl = ttl or settings.SIGNED_URL_TTL
    margin = settings.REFRESH_MARGIN if margin is None else margin
    items = await fetch_order_items(order_id)
    outcomes = await asyncio.gather(
        *(_refresh_item(store, item, force, ttl, margin) for item in items),
        return_exceptions=True,
    )
    errors = [o for o in outcomes if isinstance(o, BaseException)]
    if errors:
        raise next((e for e in errors if not isinstance(e, StorageError)), errors[0])
    return list(outcomes)


async def refresh_item_urls(
    store: LocalArtifactStore, order_item_id: int, force: bool = True, ttl: Optional[int] = None
) -> Dict[str, Any]:
    item = await fetch_order_item(order_item_id)
    if item is None:
        raise NotFoundError(f"Order item {order_item_id} not found")
    if not item.pdf_key and not item.cover_key:
        raise NotFoundError(f"No stored artifacts for order item {order_item_id}")
    return await _refresh_item(store, item, force, ttl or settings.SIGNED_URL_TTL, settings.REFRESH_MARGIN)
