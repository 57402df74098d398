from __future__ import annotations
"""server/calendar_dispatch/infrastructure/persistence/database/models/outbox_item.py
~~~~~~~~~~~~~~~~~~~~~~~~
Table notification_outbox (file durable des rappels à livrer).
"""

import uuid
from datetime import datetime, timezone

import sqlalchemy as sa
from sqlalchemy.orm import Mapped, mapped_column, relationship

from calendar_dispatch.domain.status import OutboxStatus
from calendar_dispatch.infrastructure.persistence.database.base import Base
from calendar_dispatch.infrastructure.persistence.database.types import (
    JSONPortable,
    TstzPortable,
    UUIDPortable,
)


def StatusEnum():
    """
    Enum non natif (VARCHAR + CHECK) sur tous les dialectes, valeurs en
    minuscules ('pending', 'processing', ...) comme dans la migration.
    """
    return sa.Enum(
        OutboxStatus,
        name="outbox_status",
        native_enum=False,
        create_constraint=True,
        length=16,
        values_callable=lambda enum_cls: [m.value for m in enum_cls],
        validate_strings=True,
    )


class OutboxItem(Base):
    __tablename__ = "notification_outbox"
    __table_args__ = (
        # Rend le scan des items dus bon marché quand la table grossit.
        sa.Index("ix_notification_outbox_status_scheduled_for", "status", "scheduled_for"),
        sa.Index("ix_notification_outbox_event_id", "event_id"),
        sa.CheckConstraint(
            "(status = 'sent' AND sent_at IS NOT NULL) OR (status <> 'sent' AND sent_at IS NULL)",
            name="ck_notification_outbox_sent_at",
        ),
        sa.CheckConstraint("attempts >= 0", name="ck_notification_outbox_attempts"),
    )

    id: Mapped[uuid.UUID] = mapped_column(UUIDPortable(), primary_key=True, default=uuid.uuid4)
    event_id: Mapped[uuid.UUID] = mapped_column(
        UUIDPortable(), sa.ForeignKey("events.id", ondelete="CASCADE"), nullable=False
    )

    scheduled_for: Mapped[datetime] = mapped_column(TstzPortable(), nullable=False)
    channel: Mapped[str] = mapped_column(sa.String(32), nullable=False, default="in_app")
    payload: Mapped[dict] = mapped_column(JSONPortable(), nullable=False, default=dict)

    status: Mapped[OutboxStatus] = mapped_column(
        StatusEnum(), nullable=False, default=OutboxStatus.PENDING
    )
    attempts: Mapped[int] = mapped_column(sa.Integer, nullable=False, default=0)
    last_error: Mapped[str] = mapped_column(sa.Text, nullable=False, default="")
    sent_at: Mapped[datetime | None] = mapped_column(TstzPortable(), nullable=True)

    created_at: Mapped[datetime] = mapped_column(
        TstzPortable(), nullable=False, default=lambda: datetime.now(timezone.utc)
    )
    updated_at: Mapped[datetime] = mapped_column(
        TstzPortable(), nullable=False, default=lambda: datetime.now(timezone.utc),
        onupdate=lambda: datetime.now(timezone.utc),
    )

    event = relationship("Event", back_populates="outbox_items")

    def __repr__(self) -> str:  # pragma: no cover
        return (
            f"<OutboxItem id={self.id} event_id={self.event_id} status={self.status} "
            f"attempts={self.attempts} scheduled_for={self.scheduled_for}>"
        )
