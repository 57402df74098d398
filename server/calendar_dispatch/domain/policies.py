# server/calendar_dispatch/domain/policies.py

from __future__ import annotations
"""
Règles métier du retry.

Fonctions principales :
    backoff_delay(attempts, base_ms, max_ms)
        min(base * 2**attempts, max) : non décroissant, plafonné.
    decide_after_failure(attempts, policy)
        RETRY tant que attempts < max_attempts, sinon GIVE_UP.
"""

import enum
from datetime import datetime, timedelta

from calendar_dispatch.core.config import RetryPolicy

# Au-delà, 2**attempts n'apporte plus rien face au plafond et grossit pour rien.
_MAX_EXPONENT = 62


class FailureDecision(str, enum.Enum):
    RETRY = "retry"
    GIVE_UP = "give_up"


def backoff_ms(attempts: int, base_ms: int, max_ms: int) -> int:
    if attempts < 0:
        raise ValueError(f"attempts must be >= 0, got {attempts}")
    exponent = min(attempts, _MAX_EXPONENT)
    return min(base_ms * (2 ** exponent), max_ms)


def backoff_delay(attempts: int, base_ms: int, max_ms: int) -> timedelta:
    return timedelta(milliseconds=backoff_ms(attempts, base_ms, max_ms))


def next_attempt_at(now: datetime, attempts: int, policy: RetryPolicy) -> datetime:
    return now + backoff_delay(attempts, policy.backoff_base_ms, policy.backoff_max_ms)


def decide_after_failure(attempts: int, policy: RetryPolicy) -> FailureDecision:
    """`attempts` = nombre de tentatives déjà consommées, celle qui vient d'échouer incluse."""
    if attempts < policy.max_attempts:
        return FailureDecision.RETRY
    return FailureDecision.GIVE_UP
