# coding: utf-8
# server/calendar_dispatch/core/utils/datetime.py
"""server/calendar_dispatch/core/utils/datetime.py
~~~~~~~~~~~~~~~~~~~~~~~~
Utilitaires pour la gestion des dates et heures.
"""

from datetime import datetime, timedelta, timezone
from typing import Callable, Optional

Clock = Callable[[], datetime]


def utc_now() -> datetime:
    """Horloge par défaut : now UTC timezone-aware."""
    return datetime.now(timezone.utc)


def as_utc(dt_val: Optional[datetime]) -> Optional[datetime]:
    """
    Normalise un datetime en UTC timezone-aware.
    - si naïf: on suppose UTC
    - sinon: conversion UTC
    """
    if dt_val is None:
        return None
    if dt_val.tzinfo is None:
        return dt_val.replace(tzinfo=timezone.utc)
    return dt_val.astimezone(timezone.utc)


def ms(value: int) -> timedelta:
    """Millisecondes → timedelta."""
    return timedelta(milliseconds=value)


def to_iso(dt_val: Optional[datetime]) -> Optional[str]:
    """Sérialisation ISO-8601 UTC (pour les valeurs JSON de scheduler_state)."""
    dt_val = as_utc(dt_val)
    return dt_val.isoformat() if dt_val else None


def from_iso(raw: Optional[str]) -> Optional[datetime]:
    if not raw:
        return None
    return as_utc(datetime.fromisoformat(raw))
