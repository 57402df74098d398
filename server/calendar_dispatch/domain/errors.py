from __future__ import annotations
"""server/calendar_dispatch/domain/errors.py
~~~~~~~~~~~~~~~~~~~~~~~~
Exceptions métier du dispatcher.

- DeliveryError      : échec transitoire de livraison (retry selon backoff)
- DeliveryTimeout    : appel Notifier trop long (traité comme un échec)
- StaleWork          : item claimé mais déjà annulé (pas d'envoi, pas de retry)
- StorageUnavailable : base injoignable → le cycle entier est abandonné
- InvalidTransition  : changement de statut interdit par la machine à états
- EventValidationError : écriture d'évènement invalide (dates, fuseau)

Une course perdue au claim n'est PAS une exception : claim() retourne False.
"""


class DispatchError(Exception):
    """Racine des erreurs du dispatcher."""


class DeliveryError(DispatchError):
    def __init__(self, message: str, *, channel: str | None = None):
        super().__init__(message)
        self.channel = channel


class DeliveryTimeout(DeliveryError):
    pass


class StaleWork(DispatchError):
    def __init__(self, item_id):
        super().__init__(f"outbox item {item_id} was cancelled before send")
        self.item_id = item_id


class StorageUnavailable(DispatchError):
    pass


class InvalidTransition(DispatchError):
    def __init__(self, src, dst):
        super().__init__(f"invalid outbox transition {src} -> {dst}")
        self.src = src
        self.dst = dst


class EventValidationError(ValueError):
    pass
