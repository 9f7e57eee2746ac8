"""Declarative base, mixins and type-map for all renderq ORM models.

Uses SQLAlchemy 2.0 ``DeclarativeBase`` with a ``type_annotation_map``
that maps Python built-in types to portable SA column types.

Mixins
------
* **TimestampMixin** - ``created_at`` / ``updated_at`` set from Python so the
  same models work on SQLite and PostgreSQL.
"""

from __future__ import annotations

import datetime

from sqlalchemy import JSON, Boolean, DateTime, Float, Integer, Text
from sqlalchemy.orm import DeclarativeBase, Mapped, mapped_column

from renderq.core.timestamps import utc_now


class RenderqBase(DeclarativeBase):
    """Shared declarative base for every renderq table.

    * ``str``   -> ``Text``
    * ``int``   -> ``Integer``
    * ``float`` -> ``Float``
    * ``bool``  -> ``Boolean``
    * ``datetime.datetime`` -> ``DateTime(timezone=True)``
    * ``dict``  -> ``JSON``
    """

    type_annotation_map = {
        str: Text,
        int: Integer,
        float: Float,
        bool: Boolean,
        datetime.datetime: DateTime(timezone=True),
        dict: JSON,
        list: JSON,
    }


class TimestampMixin:
    """Mixin that adds ``created_at`` and ``updated_at``."""

    created_at: Mapped[datetime.datetime] = mapped_column(
        nullable=False,
        default=utc_now,
    )
    updated_at: Mapped[datetime.datetime] = mapped_column(
        nullable=False,
        default=utc_now,
        onupdate=utc_now,
    )
