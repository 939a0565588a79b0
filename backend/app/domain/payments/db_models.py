from __future__ import annotations

import uuid
from datetime import datetime, timezone
from typing import Any

from sqlalchemy import JSON, DateTime, ForeignKey, Index, String, Text, func
from sqlalchemy.orm import Mapped, mapped_column

from app.infra.db import Base


def _utcnow() -> datetime:
    return datetime.now(timezone.utc)


class PaymentEvent(Base):
    """Append-only ledger of externally observed payment events.

    ``event_id`` carries the provider's identifier and is the idempotency key:
    the unique constraint on it decides which concurrent delivery wins.
    """

    __tablename__ = "payment_events"

    payment_event_id: Mapped[str] = mapped_column(
        String(36),
        primary_key=True,
        default=lambda: str(uuid.uuid4()),
    )
    provider: Mapped[str] = mapped_column(String(16), nullable=False)
    event_id: Mapped[str] = mapped_column(String(255), nullable=False, unique=True)
    event_type: Mapped[str] = mapped_column(String(128), nullable=False)
    status: Mapped[str] = mapped_column(String(16), nullable=False)
    project_id: Mapped[str | None] = mapped_column(
        ForeignKey("projects.project_id", ondelete="SET NULL"),
        nullable=True,
    )
    error_msg: Mapped[str | None] = mapped_column(Text())
    event_metadata: Mapped[dict[str, Any]] = mapped_column(
        "metadata", JSON, nullable=False, default=dict
    )
    payload_hash: Mapped[str | None] = mapped_column(String(64))
    processed_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True),
        default=_utcnow,
        server_default=func.now(),
        nullable=False,
    )

    __table_args__ = (
        Index("ix_payment_events_project_id", "project_id"),
        Index("ix_payment_events_status", "status"),
    )
