"""
Delete engine: removes an object and all of its direct and indirect
dependents (registered objects referencing it) from store and database.

Dependents are unregistered depth-first before the database is touched.
Before the rows of a stored object are deleted, references pointing at it
from objects currently being deleted (back-references of a cycle) are set to
NULL in memory and in the database, so the DELETE cannot violate a foreign
key. Rows are deleted entry tables first, then class tables leaf to root.

If anything fails, the caller rolls back and ``restore_after_rollback``
re-registers every unregistered object with the object record it had before
the call (the snapshot, not a record rebuilt from live field values: nulled
back-references would otherwise end up in the baseline) and restores nulled
references, leaving the store exactly as before the call. A record is only
rebuilt from the fields for a stored object that had none.
"""
import logging
from typing import Any, List, Optional, Tuple

from dompersist.domain.entity import DomainObject
from dompersist.domain.schema import FieldDescriptor
from dompersist.sql.connection import SqlConnection
from dompersist.sql.entries import EntryTableWriter
from dompersist.sql.records import Record, record_from_fields
from dompersist.sql.registry import ID_COL


class Deleter:
    """Delete engine bound to one connection (one transaction)."""

    _logger = logging.getLogger("DeleteEngine")

    def __init__(self, controller, connection: SqlConnection):
        self.registry = controller.registry
        self.store = controller.store
        self.gateway = controller.gateway
        self.connection = connection
        self.entries = EntryTableWriter(self.registry, self.gateway, connection.connection,
                                        controller.settings.max_in_clause)
        self._unregistered: List[Tuple[DomainObject, Optional[Record]]] = []
        self._nulled: List[Tuple[DomainObject, FieldDescriptor, DomainObject]] = []

    @property
    def conn(self):
        return self.connection.connection

    def delete(self, obj: DomainObject) -> None:
        self._delete_recursive(obj, [])
        self._logger.info(f"Deleted {obj!r} and {len(self._unregistered) - 1} dependent object(s)")

    def _delete_recursive(self, obj: DomainObject, stack: List[DomainObject]) -> None:
        with obj._lock:
            record = self.store.object_record(obj)
            self.store.unregister(obj)
            self._unregistered.append((obj, dict(record) if record is not None else None))
            stack.append(obj)

            for child in self.store.direct_children(obj):
                if not any(o is child for o in stack):
                    self._delete_recursive(child, stack)

            if obj.stored:
                self._reset_circular_references(obj, stack)
                self._delete_rows(obj)

            stack.pop()

    def _reset_circular_references(self, obj: DomainObject, stack: List[DomainObject]) -> None:
        for holder in stack:
            if holder is obj:
                continue
            for f in self.registry.reference_fields(type(holder)):
                if getattr(holder, f.name) is not obj:
                    continue
                self._logger.debug(f"Reset circular reference {holder!r}.{f.name} -> {obj!r} before deletion")
                setattr(holder, f.name, None)
                self._nulled.append((holder, f, obj))
                if holder.stored:
                    self.gateway.update(self.conn, self.registry.table_name(f.declaring_class),
                                        {self.registry.column_name(f): None}, {ID_COL: holder.id})

    def _delete_rows(self, obj: DomainObject) -> None:
        for f in self.registry.multi_valued_fields(type(obj)):
            self.entries.delete_all(obj.id, f)
        for cls in reversed(self.registry.chain(type(obj))):
            table = self.registry.table_name(cls)
            count = self.gateway.delete(self.conn, table, {ID_COL: obj.id})
            if count != 1:
                self._logger.warning(f"Deleting {obj!r} from {table} affected {count} rows")
        self._logger.debug(f"Deleted rows of {obj!r}")

    def restore_after_rollback(self) -> None:
        """Undo all in-memory effects of the failed deletion."""
        for holder, f, target in reversed(self._nulled):
            setattr(holder, f.name, target)
        for obj, record in self._unregistered:
            if obj.stored and record is None:
                record = record_from_fields(self.registry, obj)
            self.store.reregister(obj, record)
        for obj, _ in self._unregistered:
            self.store.update_accumulations(obj)
        self._logger.info(f"Re-registered {len(self._unregistered)} object(s) after failed deletion")
        self._unregistered.clear()
        self._nulled.clear()

    def deleted_objects(self) -> List[Any]:
        return [obj for obj, _ in self._unregistered]
