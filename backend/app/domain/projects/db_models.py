from __future__ import annotations

import secrets
import uuid
from datetime import datetime, timezone
from typing import TYPE_CHECKING

from sqlalchemy import Boolean, DateTime, Index, Integer, String, func
from sqlalchemy.orm import Mapped, mapped_column, relationship

from app.domain.projects import statuses
from app.infra.db import Base

if TYPE_CHECKING:  # pragma: no cover
    from app.domain.deliverables.db_models import Deliverable


def _new_public_id() -> str:
    return secrets.token_urlsafe(12)


def _utcnow() -> datetime:
    return datetime.now(timezone.utc)


class Project(Base):
    __tablename__ = "projects"

    project_id: Mapped[str] = mapped_column(
        String(36),
        primary_key=True,
        default=lambda: str(uuid.uuid4()),
    )
    public_id: Mapped[str] = mapped_column(
        String(32), nullable=False, unique=True, default=_new_public_id
    )
    name: Mapped[str] = mapped_column(String(255), nullable=False)
    client_id: Mapped[str | None] = mapped_column(String(64), index=True)
    payment_status: Mapped[str] = mapped_column(
        String(16), nullable=False, default=statuses.PAYMENT_UNPAID
    )
    payment_provider: Mapped[str | None] = mapped_column(String(16))
    payment_required: Mapped[bool] = mapped_column(Boolean, nullable=False, default=True)
    payment_amount_cents: Mapped[int | None] = mapped_column(Integer)
    currency: Mapped[str] = mapped_column(String(8), nullable=False, default="usd")
    paid_at: Mapped[datetime | None] = mapped_column(DateTime(timezone=True))
    refunded_at: Mapped[datetime | None] = mapped_column(DateTime(timezone=True))
    payment_link_id: Mapped[str | None] = mapped_column(String(255))
    payment_link_url: Mapped[str | None] = mapped_column(String(2048))
    stripe_checkout_session_id: Mapped[str | None] = mapped_column(String(255))
    stripe_payment_intent_id: Mapped[str | None] = mapped_column(String(255))
    last_payment_event_id: Mapped[str | None] = mapped_column(String(255))
    portal_stage: Mapped[str] = mapped_column(
        String(16), nullable=False, default=statuses.PortalStage.SCHEDULED.value
    )
    last_update_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True),
        default=_utcnow,
        server_default=func.now(),
        nullable=False,
    )
    created_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True),
        default=_utcnow,
        server_default=func.now(),
        nullable=False,
    )

    deliverables: Mapped[list["Deliverable"]] = relationship(
        "Deliverable",
        back_populates="project",
        cascade="all, delete-orphan",
        passive_deletes=True,
        order_by="Deliverable.version",
    )

    __table_args__ = (
        Index("ix_projects_stripe_payment_intent_id", "stripe_payment_intent_id"),
        Index("ix_projects_payment_status", "payment_status"),
    )

    @property
    def is_paid(self) -> bool:
        return self.payment_status == statuses.PAYMENT_PAID

    @property
    def payment_satisfied(self) -> bool:
        return not self.payment_required or self.is_paid
