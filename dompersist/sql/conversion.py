"""
Conversion between field values and column values.

Most conversions are left to SQLAlchemy's type processing of the reflected
columns. Enums are stored by name; values coming back from loosely typed
backends (SQLite stores almost everything as text or numbers) are coerced
into the declared field type.
"""
import enum
import logging
from datetime import date, datetime, time
from decimal import Decimal
from typing import Any, Optional, Tuple
from uuid import UUID

from dompersist.domain.entity import DomainObject

logger = logging.getLogger("Conversion")


def to_column_value(value: Any) -> Any:
    """Field (or collection element) value -> value bound to a statement."""
    if value is None:
        return None
    if isinstance(value, DomainObject):
        return value.id
    if isinstance(value, enum.Enum):
        return value.name
    if isinstance(value, UUID):
        return str(value)
    return value


def to_field_value(value_type: Any, value: Any) -> Any:
    """Column value -> value of declared type ``value_type``."""
    if value is None or value_type is None:
        return value
    if isinstance(value_type, type) and issubclass(value_type, enum.Enum):
        if isinstance(value, value_type):
            return value
        try:
            return value_type[value]
        except KeyError:
            return value_type(value)
    if value_type is bool:
        if isinstance(value, str):
            return value.strip().lower() in ("true", "1", "t", "y", "yes")
        return bool(value)
    if value_type is int and not isinstance(value, int):
        return int(value)
    if value_type is float and not isinstance(value, float):
        return float(value)
    if value_type is Decimal and not isinstance(value, Decimal):
        return Decimal(str(value))
    if value_type is str and not isinstance(value, str):
        return str(value)
    if value_type is datetime and isinstance(value, str):
        return datetime.fromisoformat(value)
    if value_type is date and isinstance(value, datetime):
        return value.date()
    if value_type is date and isinstance(value, str):
        return date.fromisoformat(value)
    if value_type is time and isinstance(value, str):
        return time.fromisoformat(value)
    if value_type is UUID and not isinstance(value, UUID):
        return UUID(str(value))
    if value_type is bytes and isinstance(value, memoryview):
        return value.tobytes()
    return value


def truncate(value: Any, max_length: Optional[int]) -> Tuple[Any, bool]:
    """Cut strings exceeding ``max_length``; returns (value, truncated)."""
    if isinstance(value, str) and max_length and len(value) > max_length:
        return value[:max_length], True
    return value, False
