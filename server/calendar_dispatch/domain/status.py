# server/calendar_dispatch/domain/status.py
from __future__ import annotations
"""
Machine à états d'un OutboxItem.

    pending ──claim──▶ processing ──ok──▶ sent
       ▲                   │
       └──── retry ────────┤──épuisé──▶ failed
    pending|processing ──annulation──▶ cancelled

sent / failed / cancelled sont terminaux.
"""

import enum

from calendar_dispatch.domain.errors import InvalidTransition


class OutboxStatus(str, enum.Enum):
    PENDING = "pending"
    PROCESSING = "processing"
    SENT = "sent"
    FAILED = "failed"
    CANCELLED = "cancelled"

    @property
    def is_terminal(self) -> bool:
        return self in TERMINAL_STATUSES


TERMINAL_STATUSES = frozenset({OutboxStatus.SENT, OutboxStatus.FAILED, OutboxStatus.CANCELLED})

ALLOWED_TRANSITIONS: dict[OutboxStatus, frozenset[OutboxStatus]] = {
    OutboxStatus.PENDING: frozenset({OutboxStatus.PROCESSING, OutboxStatus.CANCELLED}),
    OutboxStatus.PROCESSING: frozenset(
        {OutboxStatus.SENT, OutboxStatus.PENDING, OutboxStatus.FAILED, OutboxStatus.CANCELLED}
    ),
    OutboxStatus.SENT: frozenset(),
    OutboxStatus.FAILED: frozenset(),
    OutboxStatus.CANCELLED: frozenset(),
}


def can_transition(src: OutboxStatus, dst: OutboxStatus) -> bool:
    return dst in ALLOWED_TRANSITIONS[OutboxStatus(src)]


def ensure_transition(src: OutboxStatus, dst: OutboxStatus) -> OutboxStatus:
    """Retourne `dst` si la transition est permise, lève InvalidTransition sinon."""
    src, dst = OutboxStatus(src), OutboxStatus(dst)
    if not can_transition(src, dst):
        raise InvalidTransition(src.value, dst.value)
    return dst


def sources_of(dst: OutboxStatus) -> tuple[OutboxStatus, ...]:
    """Statuts depuis lesquels `dst` est atteignable (garde des UPDATE conditionnels)."""
    return tuple(s for s, targets in ALLOWED_TRANSITIONS.items() if dst in targets)
