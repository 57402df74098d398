from __future__ import annotations
"""server/calendar_dispatch/infrastructure/persistence/database/types.py
~~~~~~~~~~~~~~~~~~~~~~~~
Types portables Postgres / SQLite (les tests unitaires tournent sur SQLite).
"""
import uuid

import sqlalchemy as sa

from calendar_dispatch.core.utils.datetime import as_utc


class JSONPortable(sa.types.TypeDecorator):
    """JSONB sur Postgres, JSON ailleurs."""
    impl = sa.JSON
    cache_ok = True

    def load_dialect_impl(self, dialect):
        if dialect.name == "postgresql":
            from sqlalchemy.dialects.postgresql import JSONB
            return dialect.type_descriptor(JSONB(astext_type=sa.Text()))
        return dialect.type_descriptor(sa.JSON())


class UUIDPortable(sa.types.TypeDecorator):
    """UUID natif sur Postgres, VARCHAR(36) ailleurs."""
    impl = sa.String(36)
    cache_ok = True

    def load_dialect_impl(self, dialect):
        if dialect.name == "postgresql":
            from sqlalchemy.dialects.postgresql import UUID as PGUUID
            return dialect.type_descriptor(PGUUID(as_uuid=True))
        return dialect.type_descriptor(sa.String(36))

    def process_bind_param(self, value, dialect):
        if value is None:
            return None
        if dialect.name == "postgresql":
            return value if isinstance(value, uuid.UUID) else uuid.UUID(str(value))
        return str(value)

    def process_result_value(self, value, dialect):
        if value is None or isinstance(value, uuid.UUID):
            return value
        return uuid.UUID(str(value))


class TstzPortable(sa.types.TypeDecorator):
    """
    TIMESTAMPTZ sur Postgres, DateTime() ailleurs.
    Hors Postgres on stocke de l'UTC naïf et on relit en UTC aware, pour que
    les comparaisons `scheduled_for <= :now` restent justes.
    """
    impl = sa.DateTime
    cache_ok = True

    def load_dialect_impl(self, dialect):
        if dialect.name == "postgresql":
            return dialect.type_descriptor(sa.TIMESTAMP(timezone=True))
        return dialect.type_descriptor(sa.DateTime())

    def process_bind_param(self, value, dialect):
        value = as_utc(value)
        if value is not None and dialect.name != "postgresql":
            return value.replace(tzinfo=None)
        return value

    def process_result_value(self, value, dialect):
        return as_utc(value)
