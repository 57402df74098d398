from __future__ import annotations
"""server/calendar_dispatch/infrastructure/notifications/providers/slack_provider.py
~~~~~~~~~~~~~~~~~~~~~~~~
SlackProvider : rappels via webhook Slack (Incoming Webhooks).
"""

import os
from typing import Any, Dict, Optional

import requests

from calendar_dispatch.infrastructure.notifications.payload import ReminderPayload


class SlackProvider:
    def __init__(self, webhook: Optional[str] = None, *, channel: Optional[str] = None, timeout: float = 5):
        self.webhook = webhook or os.getenv("SLACK_WEBHOOK")
        if not self.webhook:
            raise ValueError("Slack webhook URL must be provided")
        self.channel = channel
        self.timeout = timeout

    def deliver(self, payload: ReminderPayload) -> bool:
        """
        Envoie le rappel.
        - Les champs utiles (lieu, fuseau, offset) sont mappés en fields.
        - Slack Incoming Webhooks renvoie HTTP 200 en cas de succès.
        - Les exceptions réseau remontent (le notifier les convertit en échec).
        """
        body: Dict[str, Any] = {
            "text": f"⏰ {payload.summary()}",
            "attachments": [
                {
                    "color": "#36a64f",
                    "fields": self._format_context(
                        {
                            "Fuseau": payload.timezone,
                            "Rappel": f"{payload.offset_minutes} min avant",
                            **({"Lieu": payload.location} if payload.location else {}),
                            **payload.context,
                        }
                    ),
                    "footer": f"event {payload.event_id}",
                }
            ],
        }
        if self.channel:
            body["channel"] = self.channel

        r = requests.post(
            self.webhook,
            json=body,
            headers={"Content-Type": "application/json"},
            timeout=self.timeout,
        )
        return r.status_code == 200

    def _format_context(self, context: Dict[str, Any]) -> list:
        return [
            {"title": key, "value": str(value), "short": True}
            for key, value in context.items()
        ]
