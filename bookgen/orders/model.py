from datetime import datetime
from typing import Any, Dict, List, Optional

from sqlalchemy import JSON, Boolean, DateTime, Float, ForeignKey, Integer, String, Text
from sqlalchemy.orm import Mapped, mapped_column, relationship

from ..common.db import Base, utcnow

ORDER_STATUSES = ("pending", "processing", "shipped", "delivered", "cancelled")
PAYMENT_STATUSES = ("pending", "paid", "failed", "refunded")

# artifact_status: None means nothing has been generated yet
ARTIFACT_AVAILABLE = "available"
ARTIFACT_UNAVAILABLE = "unavailable"


_PERSONALIZATION_ALIASES = {
    "child_name": ("child_name", "childName"),
    "child_age": ("child_age", "childAge"),
    "child_gender": ("child_gender", "childGender"),
    "child_image_url": ("child_image_url", "childImage", "child_image"),
}


def personalization_fields(data: Optional[Dict[str, Any]]) -> Dict[str, Any]:
    """Normalize snake_case and camelCase personalization keys."""
    data = data or {}
    fields = {}
    for name, aliases in _PERSONALIZATION_ALIASES.items():
        fields[name] = next((data[a] for a in aliases if data.get(a) not in (None, "")), None)
    return fields


def _iso(value: Optional[datetime]) -> Optional[str]:
    return value.isoformat() if value is not None else None


class Book(Base):
    __tablename__ = "books"

    id: Mapped[int] = mapped_column(Integer, primary_key=True, autoincrement=True)
    title: Mapped[str] = mapped_column(String(255), nullable=False)
    description: Mapped[Optional[str]] = mapped_column(Text, nullable=True)
    genre: Mapped[Optional[str]] = mapped_column(String(64), nullable=True)
    age_range: Mapped[Optional[str]] = mapped_column(String(32), nullable=True)
    cover_image_url: Mapped[Optional[str]] = mapped_column(String(1024), nullable=True)
    pdf_url: Mapped[Optional[str]] = mapped_column(String(1024), nullable=True)
    images: Mapped[List[str]] = mapped_column(JSON, nullable=False, default=list)
    characters: Mapped[Optional[str]] = mapped_column(Text, nullable=True)
    ideal_for: Mapped[Optional[str]] = mapped_column(Text, nullable=True)
    created_at: Mapped[datetime] = mapped_column(DateTime, nullable=False, default=utcnow)

    def to_dict(self) -> Dict[str, Any]:
        return {
            "id": self.id,
            "title": self.title,
            "description": self.description,
            "genre": self.genre,
            "age_range": self.age_range,
            "cover_image_url": self.cover_image_url,
            "pdf_url": self.pdf_url,
            "images": list(self.images or []),
            "characters": self.characters,
            "ideal_for": self.ideal_for,
            "created_at": _iso(self.created_at),
        }


class Order(Base):
    __tablename__ = "orders"

    id: Mapped[int] = mapped_column(Integer, primary_key=True, autoincrement=True)
    order_number: Mapped[str] = mapped_column(String(64), nullable=False, unique=True)
    user_id: Mapped[Optional[str]] = mapped_column(String(64), nullable=True, index=True)
    status: Mapped[str] = mapped_column(String(32), nullable=False, default="pending")
    payment_status: Mapped[str] = mapped_column(String(32), nullable=False, default="pending")
    total_amount: Mapped[float] = mapped_column(Float, nullable=False, default=0.0)
    shipping_address: Mapped[Optional[Dict[str, Any]]] = mapped_column(JSON, nullable=True)
    billing_address: Mapped[Optional[Dict[str, Any]]] = mapped_column(JSON, nullable=True)
    created_at: Mapped[datetime] = mapped_column(DateTime, nullable=False, default=utcnow)
    updated_at: Mapped[datetime] = mapped_column(DateTime, nullable=False, default=utcnow)

    items: Mapped[List["OrderItem"]] = relationship(
        back_populates="order", order_by="OrderItem.id", lazy="selectin"
    )

    def to_dict(self, with_items: bool = True) -> Dict[str, Any]:
        data = {
            "id": self.id,
            "order_number": self.order_number,
            "user_id": self.user_id,
            "status": self.status,
            "payment_status": self.payment_status,
            "total_amount": self.total_amount,
            "shipping_address": self.shipping_address,
            "billing_address": self.billing_address,
            "created_at": _iso(self.created_at),
            "updated_at": _iso(self.updated_at),
        }
        if with_items:
            data["order_items"] = [item.to_dict() for item in self.items]
        return data


class OrderItem(Base):
    __tablename__ = "order_items"

    id: Mapped[int] = mapped_column(Integer, primary_key=True, autoincrement=True)
    order_id: Mapped[int] = mapped_column(ForeignKey("orders.id"), nullable=False, index=True)
    book_id: Mapped[int] = mapped_column(ForeignKey("books.id"), nullable=False)
    quantity: Mapped[int] = mapped_column(Integer, nullable=False, default=1)
    unit_price: Mapped[float] = mapped_column(Float, nullable=False, default=0.0)
    personalization_data: Mapped[Dict[str, Any]] = mapped_column(JSON, nullable=False, default=dict)

    # Fields rendered verbatim by the admin dashboards
    generation_status: Mapped[str] = mapped_column(String(32), nullable=False, default="pending", index=True)
    pdf_url: Mapped[Optional[str]] = mapped_column(String(2048), nullable=True)
    generated_at: Mapped[Optional[datetime]] = mapped_column(DateTime, nullable=True)
    generation_error: Mapped[Optional[str]] = mapped_column(Text, nullable=True)

    pdf_key: Mapped[Optional[str]] = mapped_column(String(512), nullable=True)
    pdf_url_expires_at: Mapped[Optional[datetime]] = mapped_column(DateTime, nullable=True)
    cover_key: Mapped[Optional[str]] = mapped_column(String(512), nullable=True)
    cover_image_url: Mapped[Optional[str]] = mapped_column(String(2048), nullable=True)
    cover_url_expires_at: Mapped[Optional[datetime]] = mapped_column(DateTime, nullable=True)
    artifact_status: Mapped[Optional[str]] = mapped_column(String(32), nullable=True)
    updated_at: Mapped[datetime] = mapped_column(DateTime, nullable=False, default=utcnow)

    order: Mapped[Order] = relationship(back_populates="items")

    def to_dict(self) -> Dict[str, Any]:
        return {
            "id": self.id,
            "order_id": self.order_id,
            "book_id": self.book_id,
            "quantity": self.quantity,
            "unit_price": self.unit_price,
            "personalization_data": self.personalization_data,
            "generation_status": self.generation_status,
            "pdf_url": self.pdf_url,
            "generated_at": _iso(self.generated_at),
            "generation_error": self.generation_error,
            "cover_image_url": self.cover_image_url,
            "pdf_url_expires_at": _iso(self.pdf_url_expires_at),
            "cover_url_expires_at": _iso(self.cover_url_expires_at),
            "artifact_status": self.artifact_status,
        }


class Notification(Base):
    __tablename__ = "notifications"

    id: Mapped[int] = mapped_column(Integer, primary_key=True, autoincrement=True)
    user_id: Mapped[str] = mapped_column(String(64), nullable=False, index=True)
    title: Mapped[str] = mapped_column(String(255), nullable=False)
    message: Mapped[str] = mapped_column(Text, nullable=False)
    type: Mapped[str] = mapped_column(String(32), nullable=False)
    # "metadata" is reserved on declarative classes
    extra: Mapped[Dict[str, Any]] = mapped_column("metadata", JSON, nullable=False, default=dict)
    is_read: Mapped[bool] = mapped_column(Boolean, nullable=False, default=False)
    created_at: Mapped[datetime] = mapped_column(DateTime, nullable=False, default=utcnow)

    def to_dict(self) -> Dict[str, Any]:
        return {
            "id": self.id,
            "user_id": self.user_id,
            "title": self.title,
            "message": self.message,
            "type": self.type,
            "metadata": self.extra,
            "is_read": self.is_read,
            "created_at": _iso(self.created_at),
        }
