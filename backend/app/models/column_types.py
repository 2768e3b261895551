"""
models/column_types.py — Column type factories shared by several models.

Enums are stored as VARCHAR plus a CHECK constraint (native_enum=False) so
the same models run against PostgreSQL in production and SQLite in the test
suite. JSON columns use JSONB on PostgreSQL and plain JSON elsewhere.
"""

from __future__ import annotations

import enum

from sqlalchemy import JSON, Enum
from sqlalchemy.dialects.postgresql import JSONB


def _enum_values(enum_cls: type[enum.Enum]) -> list[str]:
    """Ensure SQLAlchemy stores enum values (e.g., 'merchant'), not names ('MERCHANT')."""
    return [member.value for member in enum_cls]


def enum_column_type(enum_cls: type[enum.Enum], name: str) -> Enum:
    return Enum(
        enum_cls,
        name=name,
        native_enum=False,
        create_constraint=True,
        length=32,
        values_callable=_enum_values,
        validate_strings=True,
    )


def json_column_type() -> JSON:
    return JSON().with_variant(JSONB(), "postgresql")
