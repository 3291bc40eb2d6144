from datetime import datetime
from typing import Any, Dict, List, Optional
import uuid

import sqlalchemy as sa
from sqlalchemy.ext.asyncio import create_async_engine, async_sessionmaker, AsyncSession

from .config import settings
from .db import Base, utcnow
from ..orders.model import Book, Notification, Order, OrderItem, personalization_fields
from ..generation.model import GenerationQueueEntry, PENDING, COMPLETED


# Async SQLAlchemy engine and session factory
engine = create_async_engine(settings.DB_URL, future=True, echo=False)
AsyncSessionLocal = async_sessionmaker(engine, expire_on_commit=False, class_=AsyncSession)


async def init_db() -> None:
    async with engine.begin() as conn:
        await conn.run_sync(Base.metadata.create_all)


async def drop_db() -> None:
    async with engine.begin() as conn:
        await conn.run_sync(Base.metadata.drop_all)


# Books

async def create_book(data: Dict[str, Any]) -> Dict[str, Any]:
    async with AsyncSessionLocal() as session:
        book = Book(**data)
        session.add(book)
        await session.commit()
        return book.to_dict()


async def fetch_book(book_id: int) -> Optional[Dict[str, Any]]:
    async with AsyncSessionLocal() as session:
        book = await session.get(Book, book_id)
        return book.to_dict() if book else None


async def fetch_books() -> List[Dict[str, Any]]:
    async with AsyncSessionLocal() as session:
        res = await session.execute(sa.select(Book).order_by(Book.id))
        return [b.to_dict() for b in res.scalars().all()]


async def existing_book_ids(book_ids: List[int]) -> set:
    async with AsyncSessionLocal() as session:
        res = await session.execute(sa.select(Book.id).where(Book.id.in_(book_ids)))
        return {row[0] for row in res.all()}


# Orders

def _order_number() -> str:
    return f"ORD-{utcnow():%Y%m%d}-{uuid.uuid4().hex[:8].upper()}"


async def insert_order(order_data: Dict[str, Any], items: List[Dict[str, Any]]) -> int:
    async with AsyncSessionLocal() as session:
        async with session.begin():
            order = Order(
                order_number=order_data.get("order_number") or _order_number(),
                user_id=order_data.get("user_id"),
                status=order_data.get("status", "pending"),
                payment_status=order_data.get("payment_status", "pending"),
                total_amount=order_data.get("total_amount", 0.0),
                shipping_address=order_data.get("shipping_address"),
                billing_address=order_data.get("billing_address"),
            )
            session.add(order)
            await session.flush()  # assign PK
            order_items = [OrderItem(order_id=order.id, generation_status=PENDING, **item) for item in items]
            session.add_all(order_items)
            await session.flush()
            # Queue entries commit with their items
            for item in order_items:
                child = personalization_fields(item.personalization_data)
                session.add(
                    GenerationQueueEntry(
                        order_item_id=item.id,
                        book_id=item.book_id,
                        child_name=child["child_name"],
                        child_image_url=child["child_image_url"],
                        status=PENDING,
                    )
                )
            order_id = int(order.id)
        return order_id


async def fetch_order(order_id: int) -> Optional[Order]:
    async with AsyncSessionLocal() as session:
        return await session.get(Order, order_id)


async def fetch_orders(
    status: Optional[str] = None, payment_status: Optional[str] = None, limit: int = 50
) -> List[Order]:
    stmt = sa.select(Order)
    if status:
        stmt = stmt.where(Order.status == status)
    if payment_status:
        stmt = stmt.where(Order.payment_status == payment_status)
    stmt = stmt.order_by(Order.created_at.desc(), Order.id.desc()).limit(limit)
    async with AsyncSessionLocal() as session:
        res = await session.execute(stmt)
        return list(res.scalars().all())


async def update_order_fields(order_id: int, values: Dict[str, Any]) -> bool:
    async with AsyncSessionLocal() as session:
        stmt = sa.update(Order).where(Order.id == order_id).values(updated_at=utcnow(), **values)
        res = await session.execute(stmt)
        await session.commit()
        return (res.rowcount or 0) > 0


async def fetch_order_item(order_item_id: int) -> Optional[OrderItem]:
    async with AsyncSessionLocal() as session:
        return await session.get(OrderItem, order_item_id)


async def fetch_order_items(order_id: int) -> List[OrderItem]:
    async with AsyncSessionLocal() as session:
        res = await session.execute(
            sa.select(OrderItem).where(OrderItem.order_id == order_id).order_by(OrderItem.id)
        )
        return list(res.scalars().all())


async def fetch_item_context(order_item_id: int) -> Optional[Dict[str, Any]]:
    """Order item with its order and book, as the generation worker needs them."""
    async with AsyncSessionLocal() as session:
        stmt = (
            sa.select(OrderItem, Order, Book)
            .join(Order, OrderItem.order_id == Order.id)
            .join(Book, OrderItem.book_id == Book.id)
            .where(OrderItem.id == order_item_id)
        )
        row = (await session.execute(stmt)).first()
        if not row:
            return None
        item, order, book = row
        return {"item": item, "order": order, "book": book}


async def fetch_dispatchable_entries(limit: int, exclude: Optional[set] = None) -> List[int]:
    """Pending queue entries whose order has been paid, oldest first."""
    stmt = (
        sa.select(GenerationQueueEntry.id)
        .join(OrderItem, GenerationQueueEntry.order_item_id == OrderItem.id)
        .join(Order, OrderItem.order_id == Order.id)
        .where(GenerationQueueEntry.status == PENDING, Order.payment_status == "paid")
        .order_by(GenerationQueueEntry.created_at, GenerationQueueEntry.id)
    )
    if exclude:
        stmt = stmt.where(GenerationQueueEntry.id.not_in(list(exclude)))
    stmt = stmt.limit(limit)
    async with AsyncSessionLocal() as session:
        res = await session.execute(stmt)
        return [row[0] for row in res.all()]


async def fetch_unqueued_items(limit: int) -> List[int]:
    """Pending items of paid orders that have no queue entry at all."""
    stmt = (
        sa.select(OrderItem.id)
        .join(Order, OrderItem.order_id == Order.id)
        .outerjoin(GenerationQueueEntry, GenerationQueueEntry.order_item_id == OrderItem.id)
        .where(
            OrderItem.generation_status == PENDING,
            Order.payment_status == "paid",
            GenerationQueueEntry.id.is_(None),
        )
        .order_by(OrderItem.id)
        .limit(limit)
    )
    async with AsyncSessionLocal() as session:
        res = await session.execute(stmt)
        return [row[0] for row in res.all()]


async def fetch_orders_expiring(before: datetime) -> List[int]:
    """Orders with a completed, available item whose signed URL expires before ``before``."""
    stmt = (
        sa.select(OrderItem.order_id)
        .where(
            OrderItem.generation_status == COMPLETED,
            OrderItem.artifact_status == "available",
            sa.or_(
                sa.and_(OrderItem.pdf_key.is_not(None), OrderItem.pdf_url_expires_at < before),
                sa.and_(OrderItem.cover_key.is_not(None), OrderItem.cover_url_expires_at < before),
            ),
        )
        .distinct()
        .order_by(OrderItem.order_id)
    )
    async with AsyncSessionLocal() as session:
        res = await session.execute(stmt)
        return [row[0] for row in res.all()]


# Notifications

async def create_notification(
    user_id: str, title: str, message: str, type_: str, extra: Dict[str, Any]
) -> int:
    async with AsyncSessionLocal() as session:
        note = Notification(user_id=user_id, title=title, message=message, type=type_, extra=extra)
        session.add(note)
        await session.flush()
        note_id = int(note.id)
        await session.commit()
        return note_id


async def fetch_notifications(user_id: str, limit: int = 50) -> List[Dict[str, Any]]:
    async with AsyncSessionLocal() as session:
        res = await session.execute(
            sa.select(Notification)
            .where(Notification.user_id == user_id)
            .order_by(Notification.created_at.desc(), Notification.id.desc())
            .limit(limit)
        )
        return [n.to_dict() for n in res.scalars().all()]
