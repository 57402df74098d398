# server/calendar_dispatch/infrastructure/notifications/providers/email_provider.py

import smtplib
from email.mime.text import MIMEText

from calendar_dispatch.core.config import Settings
from calendar_dispatch.infrastructure.notifications.payload import ReminderPayload


class EmailProvider:
    """
    Envoi d'e-mails via SMTP simple (texte).
    Pré-requis: SMTP_HOST et SMTP_FROM ; le destinataire vient de payload.recipient.
    """

    def __init__(self, s: Settings):
        if not s.SMTP_HOST:
            raise ValueError("SMTP_HOST not configured")
        if not s.SMTP_FROM:
            raise ValueError("SMTP_FROM not configured")

        self.host = s.SMTP_HOST
        self.port = s.SMTP_PORT
        self.username = s.SMTP_USERNAME
        self.password = s.SMTP_PASSWORD
        self.use_tls = s.SMTP_USE_TLS
        self.sender = s.SMTP_FROM
        self.timeout = s.DISPATCH_NOTIFIER_TIMEOUT_MS / 1000

    def deliver(self, payload: ReminderPayload) -> bool:
        if not payload.recipient:
            raise ValueError("email reminder without recipient")

        msg = MIMEText(payload.summary(), _charset="utf-8")
        msg["Subject"] = f"Rappel : {payload.title or 'évènement'}"
        msg["From"] = self.sender
        msg["To"] = payload.recipient

        server = smtplib.SMTP(self.host, self.port, timeout=self.timeout)
        try:
            if self.use_tls:
                server.starttls()
            if self.username and self.password:
                server.login(self.username, self.password)
            server.sendmail(self.sender, [payload.recipient], msg.as_string())
            return True
        finally:
            server.quit()
