from __future__ import annotations
"""server/calendar_dispatch/infrastructure/persistence/database/models/event.py
~~~~~~~~~~~~~~~~~~~~~~~~
Table events (source de vérité start_at / end_at / timezone).
"""
import uuid
from datetime import datetime, timezone

import sqlalchemy as sa
from sqlalchemy.orm import Mapped, mapped_column, relationship

from calendar_dispatch.infrastructure.persistence.database.base import Base
from calendar_dispatch.infrastructure.persistence.database.types import TstzPortable, UUIDPortable


class Event(Base):
    __tablename__ = "events"
    __table_args__ = (
        sa.CheckConstraint("end_at >= start_at", name="ck_events_end_after_start"),
        sa.Index("ix_events_start_at", "start_at"),
    )

    id: Mapped[uuid.UUID] = mapped_column(UUIDPortable(), primary_key=True, default=uuid.uuid4)
    title: Mapped[str] = mapped_column(sa.String(255), nullable=False, default="")
    description: Mapped[str] = mapped_column(sa.Text, nullable=False, default="")
    start_at: Mapped[datetime] = mapped_column(TstzPortable(), nullable=False)
    end_at: Mapped[datetime] = mapped_column(TstzPortable(), nullable=False)
    timezone: Mapped[str] = mapped_column(sa.String(64), nullable=False, default="UTC")
    all_day: Mapped[bool] = mapped_column(sa.Boolean, nullable=False, default=False)
    location: Mapped[str | None] = mapped_column(sa.String(255), nullable=True)
    color: Mapped[str | None] = mapped_column(sa.String(32), nullable=True)

    created_at: Mapped[datetime] = mapped_column(
        TstzPortable(), nullable=False, default=lambda: datetime.now(timezone.utc)
    )
    updated_at: Mapped[datetime] = mapped_column(
        TstzPortable(), nullable=False, default=lambda: datetime.now(timezone.utc),
        onupdate=lambda: datetime.now(timezone.utc),
    )

    outbox_items = relationship(
        "OutboxItem",
        back_populates="event",
        cascade="all, delete-orphan",
        passive_deletes=True,
        lazy="selectin",
    )

    def __repr__(self) -> str:  # pragma: no cover
        return f"<Event id={self.id} title={self.title!r} start_at={self.start_at}>"
