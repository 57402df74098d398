from __future__ import annotations
"""server/calendar_dispatch/core/config.py
~~~~~~~~~~~~~~~~~~~~~~~~
Paramètres (pydantic-settings) + configuration typée du dispatcher.
"""

import json
import socket
import os
from typing import Any, Optional

from pydantic import BaseModel, ConfigDict, Field, model_validator
from pydantic_settings import BaseSettings, SettingsConfigDict


class Settings(BaseSettings):
    DATABASE_URL: str = "postgresql+psycopg://postgres:postgres@db:5432/calendar"
    DB_CONNECT_TIMEOUT: int = 5
    REDIS_URL: str = "redis://redis:6379/0"

    # Dispatcher (toutes les durées en millisecondes)
    DISPATCH_POLL_INTERVAL_MS: int = 5_000
    DISPATCH_BATCH_SIZE: int = 100
    DISPATCH_MAX_ATTEMPTS: int = 5
    DISPATCH_BACKOFF_BASE_MS: int = 30_000
    DISPATCH_BACKOFF_MAX_MS: int = 3_600_000
    DISPATCH_LEASE_DURATION_MS: int = 30_000
    DISPATCH_NOTIFIER_TIMEOUT_MS: int = 10_000
    DISPATCH_STALE_AFTER_MS: int = 300_000
    # JSON : {"email": {"max_attempts": 3, "backoff_base_ms": 60000}}
    DISPATCH_CHANNEL_OVERRIDES: Optional[str] = None
    DISPATCHER_ID: Optional[str] = None

    # Hooks évènements : "15" ou "60,15"
    REMINDER_OFFSETS_MINUTES: str = "15"
    DEFAULT_CHANNEL: str = "in_app"

    # Canaux de livraison
    IN_APP_PUSH_URL: Optional[str] = None
    SLACK_WEBHOOK: Optional[str] = None
    SLACK_DEFAULT_CHANNEL: str = "#calendar-reminders"
    SMTP_HOST: Optional[str] = None
    SMTP_PORT: int = 587
    SMTP_USERNAME: Optional[str] = None
    SMTP_PASSWORD: Optional[str] = None
    SMTP_USE_TLS: bool = True
    SMTP_FROM: Optional[str] = None
    STUB_NOTIFIER: bool = False

    model_config = SettingsConfigDict(
        env_file=".env",
        env_file_encoding="utf-8",
        case_sensitive=True,
        extra="ignore",
    )


settings = Settings()


class RetryPolicy(BaseModel):
    """Politique de retry d'un canal (max_attempts + backoff exponentiel plafonné)."""

    model_config = ConfigDict(frozen=True)

    max_attempts: int = Field(5, ge=1)
    backoff_base_ms: int = Field(30_000, ge=0)
    backoff_max_ms: int = Field(3_600_000, ge=0)

    @model_validator(mode="after")
    def _check_cap(self) -> "RetryPolicy":
        if self.backoff_base_ms > self.backoff_max_ms:
            raise ValueError("backoff_base_ms must be <= backoff_max_ms")
        return self


class DispatchConfig(BaseModel):
    """
    Réglages du dispatcher, immuables.

    Les six réglages de base ({poll_interval_ms, batch_size, max_attempts,
    backoff_base_ms, backoff_max_ms, lease_duration_ms}) + timeouts et
    surcharges par canal (point d'extension : un canal soumis à son propre
    rate-limit peut avoir une politique distincte).
    """

    model_config = ConfigDict(frozen=True)

    poll_interval_ms: int = Field(5_000, gt=0)
    batch_size: int = Field(100, gt=0)
    max_attempts: int = Field(5, ge=1)
    backoff_base_ms: int = Field(30_000, ge=0)
    backoff_max_ms: int = Field(3_600_000, ge=0)
    lease_duration_ms: int = Field(30_000, gt=0)
    notifier_timeout_ms: int = Field(10_000, gt=0)
    stale_after_ms: int = Field(300_000, gt=0)
    channel_overrides: dict[str, RetryPolicy] = Field(default_factory=dict)

    @model_validator(mode="after")
    def _check_cap(self) -> "DispatchConfig":
        if self.backoff_base_ms > self.backoff_max_ms:
            raise ValueError("backoff_base_ms must be <= backoff_max_ms")
        # Un item encore en cours d'envoi ne doit pas être vu comme bloqué.
        if self.stale_after_ms <= self.notifier_timeout_ms:
            raise ValueError("stale_after_ms must be > notifier_timeout_ms")
        return self

    @property
    def default_policy(self) -> RetryPolicy:
        return RetryPolicy(
            max_attempts=self.max_attempts,
            backoff_base_ms=self.backoff_base_ms,
            backoff_max_ms=self.backoff_max_ms,
        )

    def policy_for(self, channel: str | None) -> RetryPolicy:
        """Politique du canal, ou la politique par défaut si non surchargée."""
        if channel and channel in self.channel_overrides:
            return self.channel_overrides[channel]
        return self.default_policy

    @classmethod
    def from_settings(cls, s: Settings | None = None) -> "DispatchConfig":
        s = s or settings
        return cls(
            poll_interval_ms=s.DISPATCH_POLL_INTERVAL_MS,
            batch_size=s.DISPATCH_BATCH_SIZE,
            max_attempts=s.DISPATCH_MAX_ATTEMPTS,
            backoff_base_ms=s.DISPATCH_BACKOFF_BASE_MS,
            backoff_max_ms=s.DISPATCH_BACKOFF_MAX_MS,
            lease_duration_ms=s.DISPATCH_LEASE_DURATION_MS,
            notifier_timeout_ms=s.DISPATCH_NOTIFIER_TIMEOUT_MS,
            stale_after_ms=s.DISPATCH_STALE_AFTER_MS,
            channel_overrides=_parse_channel_overrides(s, s.DISPATCH_CHANNEL_OVERRIDES),
        )


def _parse_channel_overrides(s: Settings, raw: Any) -> dict[str, RetryPolicy]:
    """
    Accepte un JSON {canal: {max_attempts?, backoff_base_ms?, backoff_max_ms?}}.
    Les clés absentes reprennent les valeurs globales.
    """
    if not raw:
        return {}
    data = json.loads(raw) if isinstance(raw, str) else dict(raw)
    out: dict[str, RetryPolicy] = {}
    for channel, opts in data.items():
        opts = opts or {}
        out[str(channel)] = RetryPolicy(
            max_attempts=opts.get("max_attempts", s.DISPATCH_MAX_ATTEMPTS),
            backoff_base_ms=opts.get("backoff_base_ms", s.DISPATCH_BACKOFF_BASE_MS),
            backoff_max_ms=opts.get("backoff_max_ms", s.DISPATCH_BACKOFF_MAX_MS),
        )
    return out


def parse_reminder_offsets(raw: Any = None) -> list[int]:
    """
    Accepte :
      - une liste/tuple d'entiers
      - une chaîne CSV "60,15"
    Fallback par défaut : [15]. Les doublons sont retirés, ordre décroissant.
    """
    raw = raw if raw is not None else settings.REMINDER_OFFSETS_MINUTES
    if isinstance(raw, (list, tuple)):
        values = [int(x) for x in raw]
    elif not raw:
        values = [15]
    else:
        values = [int(x.strip()) for x in str(raw).split(",") if x.strip()]
    if any(v < 0 for v in values):
        raise ValueError(f"reminder offsets must be >= 0, got {values!r}")
    return sorted(set(values), reverse=True)


def default_dispatcher_id() -> str:
    """Identité du holder de lease : DISPATCHER_ID sinon hostname:pid."""
    return settings.DISPATCHER_ID or f"{socket.gethostname()}:{os.getpid()}"
