"""Generation queue state machine.

    pending -> processing -> completed
                          -> failed -> (manual retry) -> pending

Every transition is a conditional UPDATE on the entry's current status, and
the mirrored order item fields (generation_status, pdf_url, generated_at,
generation_error) change in the same transaction.
"""
import logging
from datetime import datetime
from typing import Any, Dict, Iterable, List, Optional

import sqlalchemy as sa
from sqlalchemy.exc import IntegrityError

from ..common.database import AsyncSessionLocal
from ..common.db import utcnow
from ..common.errors import NotFoundError, TransitionError, ValidationError
from ..common.metrics import GENERATION_TRANSITIONS
from ..common.redis_client import publish_event
from ..orders.model import ARTIFACT_AVAILABLE, OrderItem, personalization_fields
from .model import COMPLETED, FAILED, PENDING, PROCESSING, STATUSES, GenerationQueueEntry

_logger = logging.getLogger(__name__)

ARTIFACT_FIELDS = (
    "pdf_key",
    "pdf_url",
    "pdf_url_expires_at",
    "cover_key",
    "cover_image_url",
    "cover_url_expires_at",
)


async def _entry_for_item(session, order_item_id: int) -> Optional[GenerationQueueEntry]:
    res = await session.execute(
        sa.select(GenerationQueueEntry).where(GenerationQueueEntry.order_item_id == order_item_id)
    )
    return res.scalar_one_or_none()


async def enqueue(order_item_id: int) -> Dict[str, Any]:
    """Create the pending entry for an order item, or return the one it already has."""
    async with AsyncSessionLocal() as session:
        item = await session.get(OrderItem, order_item_id)
        if item is None:
            raise NotFoundError(f"Order item {order_item_id} not found")
        existing = await _entry_for_item(session, order_item_id)
        if existing is not None:
            return existing.to_dict()

        fields = personalization_fields(item.personalization_data)
        entry = GenerationQueueEntry(
            order_item_id=order_item_id,
            book_id=item.book_id,
            child_name=fields["child_name"],
            child_image_url=fields["child_image_url"],
            status=PENDING,
        )
        session.add(entry)
        try:
            await session.commit()
        except IntegrityError:
            # Lost a race with a concurrent enqueue of the same item
            await session.rollback()
            existing = await _entry_for_item(session, order_item_id)
            return existing.to_dict()
        data = entry.to_dict()

    await announce_pending(data)
    return data


async def announce_pending(entry: Dict[str, Any]) -> None:
    """Metric and event for an entry that just entered the queue."""
    _logger.info("Generation enqueued | entry_id=%s order_item_id=%s", entry["id"], entry["order_item_id"])
    GENERATION_TRANSITIONS.labels(status=PENDING).inc()
    await publish_event("generation.pending", {"entry_id": entry["id"], "order_item_id": entry["order_item_id"]})


async def _transition(
    entry_id: int,
    expected: str,
    target: str,
    entry_values: Dict[str, Any],
    item_values: Dict[str, Any],
) -> Dict[str, Any]:
    now = utcnow()
    async with AsyncSessionLocal() as session:
        async with session.begin():
            res = await session.execute(
                sa.update(GenerationQueueEntry)
                .where(GenerationQueueEntry.id == entry_id, GenerationQueueEntry.status == expected)
                .values(status=target, **entry_values)
            )
            if (res.rowcount or 0) == 0:
                current = (
                    await session.execute(
                        sa.select(GenerationQueueEntry.status).where(GenerationQueueEntry.id == entry_id)
                    )
                ).scalar_one_or_none()
                if current is None:
                    raise NotFoundError(f"Generation entry {entry_id} not found")
                raise TransitionError(entry_id, current, target)

            order_item_id = (
                await session.execute(
                    sa.select(GenerationQueueEntry.order_item_id).where(GenerationQueueEntry.id == entry_id)
                )
            ).scalar_one()
            await session.execute(
                sa.update(OrderItem)
                .where(OrderItem.id == order_item_id)
                .values(generation_status=target, updated_at=now, **item_values)
            )
        entry = await session.get(GenerationQueueEntry, entry_id)
        data = entry.to_dict()

    GENERATION_TRANSITIONS.labels(status=target).inc()
    _logger.info(
        "Generation transition | entry_id=%s order_item_id=%s %s->%s",
        entry_id, order_item_id, expected, target,
    )
    await publish_event(
        f"generation.{target}",
        {"entry_id": entry_id, "order_item_id": order_item_id, "error": data["error_message"]},
    )
    return data


async def start(entry_id: int) -> Dict[str, Any]:
    return await _transition(
        entry_id,
        PENDING,
        PROCESSING,
        {"started_at": utcnow(), "attempts": GenerationQueueEntry.attempts + 1},
        {},
    )


async def complete(
    entry_id: int, generated_image_url: Optional[str], artifacts: Optional[Dict[str, Any]] = None
) -> Dict[str, Any]:
    artifacts = artifacts or {}
    unknown = set(artifacts) - set(ARTIFACT_FIELDS)
    if unknown:
        raise ValidationError(f"Unknown artifact fields: {', '.join(sorted(unknown))}")
    now = utcnow()
    item_values = {
        "generated_at": now,
        "generation_error": None,
        "artifact_status": ARTIFACT_AVAILABLE,
        **artifacts,
    }
    return await _transition(
        entry_id,
        PROCESSING,
        COMPLETED,
        {"completed_at": now, "generated_image_url": generated_image_url, "error_message": None},
        item_values,
    )


async def fail(entry_id: int, error_message: str) -> Dict[str, Any]:
    error_message = error_message or "Generation failed"
    return await _transition(
        entry_id,
        PROCESSING,
        FAILED,
        {"completed_at": utcnow(), "error_message": error_message},
        {"generation_error": error_message},
    )


async def retry(entry_id: int) -> Dict[str, Any]:
    """Manually put a failed entry back in the queue."""
    return await _transition(
        entry_id,
        FAILED,
        PENDING,
        {"started_at": None, "completed_at": None, "error_message": None, "generated_image_url": None},
        {"generation_error": None},
    )


async def fail_stale(older_than: datetime, exclude: Iterable[int] = ()) -> int:
    """Fail entries stuck in processing since before ``older_than``.

    Entries in ``exclude`` are still being worked on by this process.
    """
    exclude = set(exclude)
    async with AsyncSessionLocal() as session:
        res = await session.execute(
            sa.select(GenerationQueueEntry.id).where(
                GenerationQueueEntry.status == PROCESSING,
                GenerationQueueEntry.started_at < older_than,
            )
        )
        stale = [row[0] for row in res.all() if row[0] not in exclude]

    failed = 0
    for entry_id in stale:
        try:
            await fail(entry_id, "Generation interrupted before completion")
            failed += 1
        except TransitionError:
            # Finished between the scan and the update
            continue
    if failed:
        _logger.warning("Failed stale generation entries | count=%s", failed)
    return failed


async def get_entry(entry_id: int) -> Dict[str, Any]:
    async with AsyncSessionLocal() as session:
        entry = await session.get(GenerationQueueEntry, entry_id)
        if entry is None:
            raise NotFoundError(f"Generation entry {entry_id} not found")
        return entry.to_dict()


async def get_entry_for_item(order_item_id: int) -> Optional[Dict[str, Any]]:
    async with AsyncSessionLocal() as session:
        entry = await _entry_for_item(session, order_item_id)
        return entry.to_dict() if entry else None


async def list_entries(status: Optional[str] = None, limit: int = 50) -> List[Dict[str, Any]]:
    if status is not None and status not in STATUSES:
        raise ValidationError(f"Unknown generation status: {status}")
    stmt = sa.select(GenerationQueueEntry)
    if status:
        stmt = stmt.where(GenerationQueueEntry.status == status)
    stmt = stmt.order_by(GenerationQueueEntry.created_at.desc(), GenerationQueueEntry.id.desc()).limit(limit)
    async with AsyncSessionLocal() as session:
        res = await session.execute(stmt)
        return [e.to_dict() for e in res.scalars().all()]
