"""
Column types shared by the chain mirror tables.
"""
from decimal import Decimal

from sqlalchemy import JSON, Numeric, String
from sqlalchemy.dialects.postgresql import JSONB
from sqlalchemy.types import TypeDecorator


class Uint256(TypeDecorator):
    """
    Unsigned 256-bit integer (wei amounts, scores).

    Stored as NUMERIC(78,0) on PostgreSQL and as a decimal string elsewhere,
    so no dialect ever routes the value through a float. Always read back as int.
    """

    impl = String(78)
    cache_ok = True

    def load_dialect_impl(self, dialect):
        if dialect.name == "postgresql":
            return dialect.type_descriptor(Numeric(78, 0))
        return dialect.type_descriptor(String(78))

    def process_bind_param(self, value, dialect):
        if value is None:
            return None
        value = int(value)
        if value < 0:
            raise ValueError(f"Uint256 cannot store negative value {value}")
        if dialect.name == "postgresql":
            return Decimal(value)
        return str(value)

    def process_result_value(self, value, dialect):
        if value is None:
            return None
        return int(value)


# Variable-shape payloads: JSONB on PostgreSQL, JSON text elsewhere
JSONPayload = JSON().with_variant(JSONB(), "postgresql")
