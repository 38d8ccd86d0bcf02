"""
Object records: the diff baseline of every stored object.

An object record maps record keys (table-qualified columns, entry table
names for multi-valued fields) to the last values known to be persisted, in
field space: references are held as ids, collections as copies.
"""
from datetime import datetime, timezone
from typing import Any, Dict, Optional

from dompersist.domain.entity import DomainObject
from dompersist.domain.schema import CollectionKind, FieldDescriptor, FieldKind
from dompersist.sql.registry import LAST_MODIFIED_COL, SqlRegistry

Record = Dict[str, Any]


def utc_now() -> datetime:
    """Naive UTC timestamp as stored in LAST_MODIFIED columns."""
    return datetime.now(timezone.utc).replace(tzinfo=None)


def empty_collection(f: FieldDescriptor) -> Any:
    if f.collection_kind is CollectionKind.LIST:
        return []
    if f.collection_kind is CollectionKind.SET:
        return set()
    return {}


def copy_collection(f: FieldDescriptor, value: Any) -> Any:
    if value is None:
        return empty_collection(f)
    if f.collection_kind is CollectionKind.LIST:
        return list(value)
    if f.collection_kind is CollectionKind.SET:
        return set(value)
    return dict(value)


def record_value(obj: DomainObject, f: FieldDescriptor) -> Any:
    """Current value of field ``f`` in record space."""
    value = getattr(obj, f.name)
    if f.kind is FieldKind.REFERENCE:
        return value.id if value is not None else None
    if f.kind is FieldKind.MULTI_VALUED:
        return copy_collection(f, value)
    return value


def record_from_fields(registry: SqlRegistry, obj: DomainObject) -> Record:
    """Record reflecting the object's live field values."""
    record = {registry.record_key(f): record_value(obj, f) for f in registry.data_fields(type(obj))}
    for f in registry.multi_valued_fields(type(obj)):
        record[registry.record_key(f)] = record_value(obj, f)
    if obj.last_modified_in_db is not None:
        record[LAST_MODIFIED_COL] = obj.last_modified_in_db
    return dict(sorted(record.items()))


def field_changes(registry: SqlRegistry, obj: DomainObject,
                  record: Optional[Record]) -> Dict[FieldDescriptor, Any]:
    """
    Fields whose live value differs from ``record``; every persistent field
    if there is no record yet. Values are in record space.
    """
    changes: Dict[FieldDescriptor, Any] = {}
    cls = type(obj)
    for f in registry.data_fields(cls) + registry.multi_valued_fields(cls):
        current = record_value(obj, f)
        if record is None:
            changes[f] = current
            continue
        previous = record.get(registry.record_key(f))
        if f.kind is FieldKind.MULTI_VALUED and previous is None:
            previous = empty_collection(f)
        if not values_equal(current, previous):
            changes[f] = current
    return changes


def values_equal(a: Any, b: Any) -> bool:
    if a is None or b is None:
        return a is b
    try:
        return bool(a == b)
    except (TypeError, ValueError):
        return False
