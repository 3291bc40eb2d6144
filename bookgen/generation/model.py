from datetime import datetime
from typing import Any, Dict, Optional

from sqlalchemy import DateTime, ForeignKey, Integer, String, Text
from sqlalchemy.orm import Mapped, mapped_column

from ..common.db import Base, utcnow

PENDING = "pending"
PROCESSING = "processing"
COMPLETED = "completed"
FAILED = "failed"

STATUSES = (PENDING, PROCESSING, COMPLETED, FAILED)
TERMINAL = (COMPLETED, FAILED)


class GenerationQueueEntry(Base):
    __tablename__ = "generation_queue"

    id: Mapped[int] = mapped_column(Integer, primary_key=True, autoincrement=True)
    # One entry per order item, ever; retries reuse it
    order_item_id: Mapped[int] = mapped_column(ForeignKey("order_items.id"), nullable=False, unique=True)
    book_id: Mapped[int] = mapped_column(ForeignKey("books.id"), nullable=False)
    child_name: Mapped[Optional[str]] = mapped_column(String(255), nullable=True)
    child_image_url: Mapped[Optional[str]] = mapped_column(Text, nullable=True)
    generated_image_url: Mapped[Optional[str]] = mapped_column(String(2048), nullable=True)
    status: Mapped[str] = mapped_column(String(32), nullable=False, default=PENDING, index=True)
    error_message: Mapped[Optional[str]] = mapped_column(Text, nullable=True)
    attempts: Mapped[int] = mapped_column(Integer, nullable=False, default=0)
    created_at: Mapped[datetime] = mapped_column(DateTime, nullable=False, default=utcnow)
    started_at: Mapped[Optional[datetime]] = mapped_column(DateTime, nullable=True)
    completed_at: Mapped[Optional[datetime]] = mapped_column(DateTime, nullable=True)

    def to_dict(self) -> Dict[str, Any]:
        return {
            "id": self.id,
            "order_item_id": self.order_item_id,
            "book_id": self.book_id,
            "child_name": self.child_name,
            "child_image_url": self.child_image_url,
            "generated_image_url": self.generated_image_url,
            "status": self.status,
            "error_message": self.error_message,
            "attempts": self.attempts,
            "created_at": self.created_at.isoformat() if self.created_at else None,
            "started_at": self.started_at.isoformat() if self.started_at else None,
            "completed_at": self.completed_at.isoformat() if self.completed_at else None,
        }
