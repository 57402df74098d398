from __future__ import annotations
"""server/calendar_dispatch/infrastructure/persistence/database/models/scheduler_state.py
~~~~~~~~~~~~~~~~~~~~~~~~
Table scheduler_state : clé → valeur JSON (watermark, lease du dispatcher).
"""
from datetime import datetime, timezone

import sqlalchemy as sa
from sqlalchemy.orm import Mapped, mapped_column

from calendar_dispatch.infrastructure.persistence.database.base import Base
from calendar_dispatch.infrastructure.persistence.database.types import JSONPortable, TstzPortable


class SchedulerState(Base):
    __tablename__ = "scheduler_state"

    key: Mapped[str] = mapped_column(sa.String(128), primary_key=True)
    value: Mapped[dict] = mapped_column(JSONPortable(), nullable=False, default=dict)
    updated_at: Mapped[datetime] = mapped_column(
        TstzPortable(), nullable=False, default=lambda: datetime.now(timezone.utc)
    )

    def __repr__(self) -> str:  # pragma: no cover
        return f"<SchedulerState key={self.key} value={self.value}>"
