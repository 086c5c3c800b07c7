"""
Declarative bases for the import schema.

Every table must run unchanged on PostgreSQL (production) and SQLite (tests):

- UUIDs are stored as 36-character strings.
- Ledger amounts map to ``Numeric(38, 9)``, never float.
- ``int`` maps to BigInteger: byte cursors and line ordinals of large
  ledgers exceed 2**31.
- ``dict`` columns use the generic JSON type (JSON on PostgreSQL, TEXT on
  SQLite).
"""

from datetime import datetime
from decimal import Decimal
from typing import Any, ClassVar
from uuid import UUID as PyUUID, uuid4

from sqlalchemy import JSON, BigInteger, DateTime, Numeric, String, func
from sqlalchemy.orm import DeclarativeBase, Mapped, mapped_column
from sqlalchemy.types import TypeDecorator


class UUIDString(TypeDecorator):
    """UUID on the Python side, ``String(36)`` in the database."""

    impl = String(36)
    cache_ok = True

    def process_bind_param(self, value, dialect):
        return None if value is None else str(value)

    def process_result_value(self, value, dialect):
        return None if value is None else PyUUID(value)


class Base(DeclarativeBase):
    type_annotation_map: ClassVar[dict] = {
        PyUUID: UUIDString(),
        Decimal: Numeric(38, 9),
        datetime: DateTime(timezone=True),
        int: BigInteger,
        dict[str, Any]: JSON,
    }

    id: Mapped[PyUUID] = mapped_column(primary_key=True, default=uuid4)


class TrackedBase(Base):
    """
    Rows that record who created them and when.

    ``created_by_id`` is the owner of the import job that produced the row;
    ``updated_by_id`` is set when a later job touches it (branch metadata).
    """

    __abstract__ = True

    created_at: Mapped[datetime] = mapped_column(server_default=func.now())
    updated_at: Mapped[datetime] = mapped_column(server_default=func.now(), onupdate=func.now())
    created_by_id: Mapped[PyUUID]
    updated_by_id: Mapped[PyUUID | None]


UUID = PyUUID
