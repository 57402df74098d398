from __future__ import annotations
"""server/calendar_dispatch/infrastructure/notifications/payload.py
~~~~~~~~~~~~~~~~~~~~~~~~
Validation (Pydantic) du payload d'un rappel avant envoi.
"""

import uuid
from datetime import datetime
from typing import Any, Dict, Optional
from zoneinfo import ZoneInfo, ZoneInfoNotFoundError

from pydantic import BaseModel, ConfigDict, Field, field_validator

from calendar_dispatch.core.utils.datetime import as_utc


class ReminderPayload(BaseModel):
    """Payload écrit par les hooks évènements, lu par les providers."""

    model_config = ConfigDict(extra="allow")

    kind: str = "event_reminder"
    event_id: uuid.UUID
    title: str = ""
    start_at: datetime
    end_at: Optional[datetime] = None
    timezone: str = "UTC"
    all_day: bool = False
    location: Optional[str] = None
    offset_minutes: int = 0
    recipient: Optional[str] = None
    context: Dict[str, Any] = Field(default_factory=dict)

    @field_validator("timezone")
    @classmethod
    def validate_timezone(cls, v: str) -> str:
        try:
            ZoneInfo(v)
        except (ZoneInfoNotFoundError, ValueError) as exc:
            raise ValueError(f"unknown timezone {v!r}") from exc
        return v

    def local_start(self) -> datetime:
        """start_at affiché dans le fuseau de l'évènement (affichage uniquement)."""
        return as_utc(self.start_at).astimezone(ZoneInfo(self.timezone))

    def summary(self) -> str:
        if self.all_day:
            when = self.local_start().strftime("%Y-%m-%d")
        else:
            when = self.local_start().strftime("%Y-%m-%d %H:%M %Z")
        text = f"{self.title or 'Évènement'} ({when})"
        if self.location:
            text += f" @ {self.location}"
        return text
