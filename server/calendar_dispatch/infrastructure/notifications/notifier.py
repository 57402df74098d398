from __future__ import annotations
"""server/calendar_dispatch/infrastructure/notifications/notifier.py
~~~~~~~~~~~~~~~~~~~~~~~~
Frontière de livraison : Notifier.send(channel, payload) -> DeliveryOutcome.

ChannelNotifier route par `channel` vers un provider enregistré. Toute
exception du provider, tout retour False et tout canal inconnu deviennent
un DeliveryOutcome en échec (jamais d'exception vers le dispatcher).
"""

import logging
from dataclasses import dataclass, field
from typing import Any, Mapping, Protocol

from pydantic import ValidationError

from calendar_dispatch.core.config import Settings, settings as default_settings
from calendar_dispatch.infrastructure.notifications.payload import ReminderPayload

log = logging.getLogger(__name__)


@dataclass(frozen=True)
class DeliveryOutcome:
    ok: bool
    error: str | None = None
    receipt: dict[str, Any] = field(default_factory=dict)

    @classmethod
    def success(cls, **receipt: Any) -> "DeliveryOutcome":
        return cls(ok=True, receipt=dict(receipt))

    @classmethod
    def failure(cls, error: str) -> "DeliveryOutcome":
        return cls(ok=False, error=error or "unknown delivery error")


class Notifier(Protocol):
    def send(self, channel: str, payload: Mapping[str, Any]) -> DeliveryOutcome: ...


class Provider(Protocol):
    def deliver(self, payload: ReminderPayload) -> bool: ...


class ChannelNotifier:
    def __init__(self, providers: Mapping[str, Provider] | None = None):
        self._providers: dict[str, Provider] = dict(providers or {})

    def register(self, channel: str, provider: Provider) -> None:
        self._providers[channel] = provider

    @property
    def channels(self) -> list[str]:
        return sorted(self._providers)

    def send(self, channel: str, payload: Mapping[str, Any]) -> DeliveryOutcome:
        provider = self._providers.get(channel)
        if provider is None:
            return DeliveryOutcome.failure(f"no provider configured for channel {channel!r}")

        try:
            validated = ReminderPayload(**dict(payload))
        except ValidationError as e:
            log.warning("notifier: invalid payload for channel=%s: %s", channel, e.errors())
            return DeliveryOutcome.failure(f"payload_validation_error: {e.error_count()} error(s)")

        try:
            ok = provider.deliver(validated)
        except Exception as exc:
            # Erreur réseau / SMTP / HTTP : transitoire, le dispatcher décide du retry.
            log.warning("notifier: channel=%s raised %s: %s", channel, type(exc).__name__, exc)
            return DeliveryOutcome.failure(f"{channel}: {type(exc).__name__}: {exc}")

        if not ok:
            return DeliveryOutcome.failure(f"{channel}: provider reported failure")
        return DeliveryOutcome.success(channel=channel)


def build_notifier(s: Settings | None = None) -> ChannelNotifier:
    """
    Construit le notifier depuis la config :
    - STUB_NOTIFIER=1 → provider "log" sur tous les canaux connus
    - sinon un provider par canal effectivement configuré
    """
    from calendar_dispatch.infrastructure.notifications.providers.email_provider import EmailProvider
    from calendar_dispatch.infrastructure.notifications.providers.in_app_provider import InAppProvider
    from calendar_dispatch.infrastructure.notifications.providers.log_provider import LogProvider
    from calendar_dispatch.infrastructure.notifications.providers.slack_provider import SlackProvider

    s = s or default_settings
    notifier = ChannelNotifier()

    if s.STUB_NOTIFIER:
        for channel in ("in_app", "slack", "email"):
            notifier.register(channel, LogProvider(channel))
        return notifier

    if s.IN_APP_PUSH_URL:
        notifier.register("in_app", InAppProvider(s.IN_APP_PUSH_URL, timeout=s.DISPATCH_NOTIFIER_TIMEOUT_MS / 1000))
    if s.SLACK_WEBHOOK:
        notifier.register("slack", SlackProvider(s.SLACK_WEBHOOK, channel=s.SLACK_DEFAULT_CHANNEL))
    if s.SMTP_HOST and s.SMTP_FROM:
        notifier.register("email", EmailProvider(s))

    if not notifier.channels:
        log.warning("notifier: aucun canal configuré, tous les envois échoueront")
    return notifier
