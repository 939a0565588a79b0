from __future__ import annotations

import uuid
from datetime import datetime, timezone
from typing import TYPE_CHECKING

from sqlalchemy import (
    BigInteger,
    DateTime,
    ForeignKey,
    Index,
    Integer,
    String,
    Text,
    UniqueConstraint,
    func,
)
from sqlalchemy.orm import Mapped, mapped_column, relationship

from app.domain.deliverables import statuses
from app.infra.db import Base

if TYPE_CHECKING:  # pragma: no cover
    from app.domain.projects.db_models import Project


def _utcnow() -> datetime:
    return datetime.now(timezone.utc)


class Deliverable(Base):
    __tablename__ = "deliverables"

    deliverable_id: Mapped[str] = mapped_column(
        String(36),
        primary_key=True,
        default=lambda: str(uuid.uuid4()),
    )
    project_id: Mapped[str] = mapped_column(
        ForeignKey("projects.project_id", ondelete="CASCADE"),
        nullable=False,
    )
    title: Mapped[str] = mapped_column(String(255), nullable=False)
    version: Mapped[int] = mapped_column(Integer, nullable=False)
    state: Mapped[str] = mapped_column(String(16), nullable=False, default=statuses.STATE_DRAFT)
    preview_key: Mapped[str | None] = mapped_column(String(512))
    download_key: Mapped[str | None] = mapped_column(String(512))
    watermark_status: Mapped[str] = mapped_column(String(16), nullable=False)
    mime_type: Mapped[str] = mapped_column(String(128), nullable=False)
    byte_size: Mapped[int] = mapped_column(BigInteger, nullable=False)
    original_filename: Mapped[str] = mapped_column(String(255), nullable=False)
    uploaded_by: Mapped[str | None] = mapped_column(String(100))
    created_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True),
        default=_utcnow,
        server_default=func.now(),
        nullable=False,
    )

    project: Mapped["Project"] = relationship("Project", back_populates="deliverables")

    __table_args__ = (
        UniqueConstraint("project_id", "version", name="uq_deliverables_project_version"),
        Index("ix_deliverables_project_id", "project_id"),
    )


class Feedback(Base):
    __tablename__ = "deliverable_feedback"

    feedback_id: Mapped[str] = mapped_column(
        String(36),
        primary_key=True,
        default=lambda: str(uuid.uuid4()),
    )
    project_id: Mapped[str] = mapped_column(
        ForeignKey("projects.project_id", ondelete="CASCADE"),
        nullable=False,
    )
    deliverable_id: Mapped[str] = mapped_column(
        ForeignKey("deliverables.deliverable_id", ondelete="CASCADE"),
        nullable=False,
    )
    feedback_type: Mapped[str] = mapped_column(String(32), nullable=False)
    notes: Mapped[str | None] = mapped_column(Text())
    submitted_by_name: Mapped[str] = mapped_column(String(255), nullable=False)
    submitted_by_email: Mapped[str] = mapped_column(String(255), nullable=False)
    created_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True),
        default=_utcnow,
        server_default=func.now(),
        nullable=False,
    )

    __table_args__ = (Index("ix_deliverable_feedback_deliverable_id", "deliverable_id"),)


class Signoff(Base):
    __tablename__ = "signoffs"

    signoff_id: Mapped[str] = mapped_column(
        String(36),
        primary_key=True,
        default=lambda: str(uuid.uuid4()),
    )
    project_id: Mapped[str] = mapped_column(
        ForeignKey("projects.project_id", ondelete="CASCADE"),
        nullable=False,
    )
    deliverable_id: Mapped[str] = mapped_column(
        ForeignKey("deliverables.deliverable_id", ondelete="CASCADE"),
        nullable=False,
    )
    signed_by_name: Mapped[str] = mapped_column(String(255), nullable=False)
    signed_by_email: Mapped[str] = mapped_column(String(255), nullable=False)
    action: Mapped[str] = mapped_column(
        String(32), nullable=False, default=statuses.SIGNOFF_APPROVED_AND_RELEASED
    )
    signed_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True),
        default=_utcnow,
        server_default=func.now(),
        nullable=False,
    )

    __table_args__ = (UniqueConstraint("project_id", name="uq_signoffs_project_id"),)
