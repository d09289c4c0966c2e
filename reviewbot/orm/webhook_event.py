"""ORM model for the inbound webhook audit log."""

from datetime import datetime
from typing import Any, Optional

from sqlalchemy import JSON, Boolean, DateTime, ForeignKey, Index, String
from sqlalchemy.orm import Mapped, mapped_column

from .base import SqlalchemyBase


class WebhookEvent(SqlalchemyBase):
    """Append-only record of a webhook delivery. Only the processed flag changes."""

    __tablename__ = "webhook_events"
    __table_args__ = (
        Index("idx_webhook_events_delivery_id", "delivery_id"),
        Index("idx_webhook_events_repository_id", "repository_id"),
        Index("idx_webhook_events_created_at", "created_at"),
    )

    delivery_id: Mapped[Optional[str]] = mapped_column(String, nullable=True)  # X-GitHub-Delivery
    repository_id: Mapped[Optional[str]] = mapped_column(
        String, ForeignKey("repositories.id", ondelete="SET NULL"), nullable=True
    )
    event_type: Mapped[str] = mapped_column(String, nullable=False)
    action: Mapped[Optional[str]] = mapped_column(String, nullable=True)
    payload: Mapped[dict[str, Any]] = mapped_column(JSON, nullable=False)

    processed: Mapped[bool] = mapped_column(Boolean, nullable=False, default=False)
    processed_at: Mapped[Optional[datetime]] = mapped_column(DateTime(timezone=True), nullable=True)

    def __repr__(self) -> str:
        """String representation."""
        return (
            f"<WebhookEvent(id={self.id}, delivery_id={self.delivery_id}, "
            f"event_type={self.event_type}, action={self.action}, processed={self.processed})>"
        )
