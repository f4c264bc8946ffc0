"""Exact 256-bit unsigned integer column type.

Wei amounts are stored as `NUMERIC(78, 0)` on PostgreSQL, which covers the
full uint256 range. SQLite has no exact type that wide, so the value is kept
as a decimal string there. Both round-trip Python `int`.
"""

from __future__ import annotations

from decimal import Decimal
from typing import Any

from sqlalchemy import Numeric, String
from sqlalchemy.types import TypeDecorator

UINT256_DIGITS = 78


class Uint256(TypeDecorator[int]):
    impl = Numeric(UINT256_DIGITS, 0)
    cache_ok = True

    def load_dialect_impl(self, dialect: Any) -> Any:
        if dialect.name == "sqlite":
            return dialect.type_descriptor(String(UINT256_DIGITS))
        return dialect.type_descriptor(Numeric(UINT256_DIGITS, 0))

    def process_bind_param(self, value: Any, dialect: Any) -> Any:
        if value is None:
            return None
        as_int = int(value)
        if as_int < 0:
            raise ValueError("uint256 column cannot hold a negative value")
        if dialect.name == "sqlite":
            return str(as_int)
        return Decimal(as_int)

    def process_result_value(self, value: Any, dialect: Any) -> int | None:  # noqa: ARG002
        if value is None:
            return None
        if isinstance(value, Decimal):
            return int(value)
        return int(str(value))
