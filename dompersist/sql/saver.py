"""
Save engine: persists the outstanding field changes of one object, and of
every object needed to satisfy its non-nullable foreign keys, inside the
caller's transaction.

Save order and cycles:
- unsaved targets of NOT NULL reference columns are saved first (recursively);
  a cycle of such references cannot be stored at all and is rejected up front
- unsaved targets of nullable reference columns are detached, the object is
  written with NULL there, and the references are re-attached and written by
  an UPDATE once the object's own rows exist (deferred pass)
- an explicit stack of objects being saved guards the recursion

Failure handling:
- a failed INSERT classifies constraint violations into field errors,
  restores detached references and propagates (the caller rolls back)
- a failed multi-column UPDATE is retried column by column; only columns that
  keep failing get a field error
- on rollback, ``restore_after_rollback`` resets the stored flags and object
  records of everything written in the transaction
"""
import logging
from typing import Any, Dict, List, NamedTuple, Optional, Set, Tuple

from sqlalchemy.exc import SQLAlchemyError

from dompersist.domain.dependency.graph import CycleStatus, ReferenceGraph
from dompersist.domain.entity import DomainObject
from dompersist.domain.schema import FieldDescriptor, FieldKind
from dompersist.errors import CircularReferenceError, DomainError, ObjectDeletedError
from dompersist.sql.connection import SqlConnection
from dompersist.sql.constraints import ConstraintChecker
from dompersist.sql.conversion import to_column_value, truncate
from dompersist.sql.entries import EntryTableWriter
from dompersist.sql.records import Record, copy_collection, empty_collection, field_changes, utc_now
from dompersist.sql.registry import DOMAIN_CLASS_COL, ID_COL, LAST_MODIFIED_COL


class _Snapshot(NamedTuple):
    obj: DomainObject
    stored: bool
    record: Optional[Record]
    last_modified: Any


class _ColumnItem(NamedTuple):
    column_value: Any
    record_key: str
    record_value: Any
    field: Optional[FieldDescriptor]


def _cause(e: Exception) -> str:
    return str(getattr(e, "orig", None) or e).splitlines()[0]


class Saver:
    """Save engine bound to one connection (one transaction)."""

    _logger = logging.getLogger("SaveEngine")

    def __init__(self, controller, connection: SqlConnection):
        self.registry = controller.registry
        self.store = controller.store
        self.gateway = controller.gateway
        self.connection = connection
        self.constraints = ConstraintChecker(self.registry, self.store)
        self.entries = EntryTableWriter(self.registry, self.gateway, connection.connection,
                                        controller.settings.max_in_clause)
        self._undo: List[_Snapshot] = []
        self._snapshotted: Set[int] = set()

    @property
    def conn(self):
        return self.connection.connection

    ##############################
    # Entry point
    ##############################

    def save(self, obj: DomainObject) -> bool:
        """Save ``obj``; True if anything was written."""
        self.check_required_reference_cycles(obj)
        return self._save(obj, [])

    def check_required_reference_cycles(self, obj: DomainObject) -> None:
        """Reject unsaved objects referencing each other through NOT NULL columns."""
        graph = ReferenceGraph()
        if graph.build_graph([obj], self._unsaved_required_targets) is CycleStatus.CYCLE_DETECTED:
            cycle = graph.get_cycles()[0]
            names = " -> ".join(repr(graph.find_item_by_id(i)) for i in cycle)
            raise CircularReferenceError(f"Unsaved objects reference each other through NOT NULL columns: {names}")

    def _unsaved_required_targets(self, obj: DomainObject):
        for f in self.registry.reference_fields(type(obj)):
            target = getattr(obj, f.name)
            if target is not None and not target.stored and not self.registry.is_nullable(f):
                yield target

    def _save(self, obj: DomainObject, stack: List[DomainObject]) -> bool:
        with obj._lock:
            if not self.store.is_registered(obj):
                self.store.register(obj)
            if any(o is obj for o in stack):
                return False
            stack.append(obj)
            try:
                return self._save_object(obj, stack)
            finally:
                stack.pop()

    def _save_object(self, obj: DomainObject, stack: List[DomainObject]) -> bool:
        record = self.store.object_record(obj)
        is_new = not obj.stored
        if not is_new and not field_changes(self.registry, obj, record):
            self._logger.debug(f"{obj!r} is unchanged")
            return False

        obj.clear_errors()
        self._snapshot(obj)
        detached = self._store_or_detach_unsaved_targets(obj, stack)
        new_record: Record = dict(record) if record else {}
        try:
            changes = field_changes(self.registry, obj, record)
            if is_new:
                self._insert(obj, changes, new_record)
            else:
                self._update(obj, changes, new_record)
            self._update_entries(obj, changes, record, new_record)
        except Exception:
            self._restore_detached(obj, detached)
            raise

        obj._stored = True
        self.store.set_object_record(obj, new_record)
        if detached:
            self._save_detached(obj, detached, stack, new_record)
            self.store.set_object_record(obj, new_record)
        self.store.update_accumulations(obj)
        self._logger.info(f"{'Inserted' if is_new else 'Updated'} {obj!r}")
        return True

    ##############################
    # Unsaved reference targets
    ##############################

    def _store_or_detach_unsaved_targets(self, obj: DomainObject,
                                         stack: List[DomainObject]) -> List[Tuple[FieldDescriptor, DomainObject]]:
        detached: List[Tuple[FieldDescriptor, DomainObject]] = []
        for f in self.registry.reference_fields(type(obj)):
            target = getattr(obj, f.name)
            if target is None or target.stored:
                continue
            if self.registry.is_nullable(f):
                self._logger.debug(f"Detach unsaved {target!r} from {obj!r}.{f.name} until {obj!r} is stored")
                setattr(obj, f.name, None)
                detached.append((f, target))
                continue
            if any(o is target for o in stack):
                self._restore_detached(obj, detached)
                raise CircularReferenceError(
                    f"{obj!r}.{f.name} requires {target!r} to be stored first, which is being saved already")
            try:
                self._save(target, stack)
            except Exception:
                obj.set_field_error(f.name, "REFERENCED_OBJECT_COULD_NOT_BE_STORED", target)
                self._restore_detached(obj, detached)
                raise
        return detached

    def _restore_detached(self, obj: DomainObject, detached: List[Tuple[FieldDescriptor, DomainObject]]) -> None:
        for f, target in detached:
            setattr(obj, f.name, target)

    def _save_detached(self, obj: DomainObject, detached: List[Tuple[FieldDescriptor, DomainObject]],
                       stack: List[DomainObject], new_record: Record) -> None:
        for f, target in detached:
            if not self.store.is_registered(target) and not self.store.register(target):
                self._logger.error(f"{target!r} referenced by {obj!r}.{f.name} cannot be registered: "
                                   f"id is taken by another object")
                obj.set_field_error(f.name, "REFERENCED_OBJECT_COULD_NOT_BE_SAVED", target)
                setattr(obj, f.name, target)
                continue

            if not target.stored:
                mark = len(self._undo)
                try:
                    with self.connection.savepoint():
                        self._save(target, stack)
                except (SQLAlchemyError, DomainError) as e:
                    self._undo_since(mark)
                    self._logger.error(f"{target!r} referenced by {obj!r}.{f.name} could not be saved: {_cause(e)}")
                    obj.set_field_error(f.name, "REFERENCED_OBJECT_COULD_NOT_BE_SAVED", target)
                    setattr(obj, f.name, target)
                    continue

            setattr(obj, f.name, target)
            table = self.registry.table_name(f.declaring_class)
            try:
                with self.connection.savepoint():
                    self.gateway.update(self.conn, table, {self.registry.column_name(f): target.id}, {ID_COL: obj.id})
                new_record[self.registry.record_key(f)] = target.id
            except SQLAlchemyError as e:
                obj.set_field_error(f.name, f"CANNOT_UPDATE_COLUMN - {_cause(e)}", target)

    ##############################
    # Class table rows
    ##############################

    def _column_items(self, obj: DomainObject, cls: type,
                      changes: Dict[FieldDescriptor, Any]) -> Dict[str, _ColumnItem]:
        items: Dict[str, _ColumnItem] = {}
        for f in self.registry.own_fields(cls):
            if f not in changes or f.kind not in (FieldKind.SCALAR, FieldKind.REFERENCE):
                continue
            value = changes[f]
            column_value = to_column_value(value)
            if f.kind is FieldKind.SCALAR:
                column_value, truncated = truncate(column_value, self.registry.column_info(f).max_length)
                if truncated:
                    self._logger.warning(f"Value of {obj!r}.{f.name} exceeds maximum size "
                                         f"{self.registry.column_info(f).max_length} of its column: truncated")
                    obj.set_field_warning(f.name, "CONTENT_TRUNCATED_IN_DATABASE", value)
                    setattr(obj, f.name, column_value)
                    value = column_value
            items[self.registry.column_name(f)] = _ColumnItem(column_value, self.registry.record_key(f), value, f)
        return items

    def _insert(self, obj: DomainObject, changes: Dict[FieldDescriptor, Any], new_record: Record) -> None:
        now = utc_now()
        chain = self.registry.chain(type(obj))
        try:
            for cls in chain:
                items = self._column_items(obj, cls, changes)
                values = {column: item.column_value for column, item in items.items()}
                values[ID_COL] = obj.id
                values[DOMAIN_CLASS_COL] = type(obj).__name__
                if cls is chain[0]:
                    values[LAST_MODIFIED_COL] = now
                self.gateway.insert(self.conn, self.registry.table_name(cls), values)
                for item in items.values():
                    new_record[item.record_key] = item.record_value
        except SQLAlchemyError as e:
            obj._current_exception = e
            if not self.constraints.has_constraint_violations(obj):
                self._logger.error(f"INSERT of {obj!r} failed: {_cause(e)}")
            raise
        new_record[LAST_MODIFIED_COL] = now
        obj._last_modified_in_db = now

    def _update(self, obj: DomainObject, changes: Dict[FieldDescriptor, Any], new_record: Record) -> None:
        now = utc_now()
        chain = self.registry.chain(type(obj))
        for cls in chain:
            items = self._column_items(obj, cls, changes)
            if cls is chain[0] and changes:
                items[LAST_MODIFIED_COL] = _ColumnItem(now, LAST_MODIFIED_COL, now, None)
            if not items:
                continue

            table = self.registry.table_name(cls)
            try:
                with self.connection.savepoint():
                    count = self.gateway.update(self.conn, table,
                                                {c: item.column_value for c, item in items.items()}, {ID_COL: obj.id})
            except SQLAlchemyError as e:
                if len(items) == 1:
                    self._column_failed(obj, next(iter(items.values())), e)
                    continue
                self._logger.warning(f"UPDATE of {obj!r} in {table} failed ({_cause(e)}): "
                                     f"retrying column by column")
                self._update_column_by_column(obj, table, items, new_record)
                continue

            if count == 0:
                self._object_deleted(obj, table)
            for item in items.values():
                new_record[item.record_key] = item.record_value
            if LAST_MODIFIED_COL in items:
                obj._last_modified_in_db = now

    def _update_column_by_column(self, obj: DomainObject, table: str,
                                 items: Dict[str, _ColumnItem], new_record: Record) -> None:
        for column, item in items.items():
            try:
                with self.connection.savepoint():
                    count = self.gateway.update(self.conn, table, {column: item.column_value}, {ID_COL: obj.id})
            except SQLAlchemyError as e:
                self._column_failed(obj, item, e)
                continue
            if count == 0:
                self._object_deleted(obj, table)
            new_record[item.record_key] = item.record_value
            if column == LAST_MODIFIED_COL:
                obj._last_modified_in_db = item.record_value

    def _column_failed(self, obj: DomainObject, item: _ColumnItem, e: Exception) -> None:
        if item.field is None:
            self._logger.error(f"Stamping {LAST_MODIFIED_COL} of {obj!r} failed: {_cause(e)}")
            return
        self._logger.error(f"Column for {obj!r}.{item.field.name} cannot be updated: {_cause(e)}")
        obj.set_field_error(item.field.name, f"CANNOT_UPDATE_COLUMN - {_cause(e)}", getattr(obj, item.field.name))

    def _object_deleted(self, obj: DomainObject, table: str) -> None:
        self._logger.warning(f"{obj!r} was deleted by another process: no row in {table}")
        self.store.unregister(obj)
        raise ObjectDeletedError(f"{obj!r} does not exist in database anymore")

    ##############################
    # Entry tables
    ##############################

    def _update_entries(self, obj: DomainObject, changes: Dict[FieldDescriptor, Any],
                        old_record: Optional[Record], new_record: Record) -> None:
        for f, new in changes.items():
            if f.kind is not FieldKind.MULTI_VALUED:
                continue
            key = self.registry.record_key(f)
            old = (old_record or {}).get(key)
            if old is None:
                old = empty_collection(f)
            try:
                self.entries.update(obj.id, f, old, new)
            except SQLAlchemyError as e:
                obj._current_exception = e
                obj.set_field_error(f.name, f"CANNOT_UPDATE_ENTRIES - {_cause(e)}", new)
                raise
            new_record[key] = copy_collection(f, new)

    ##############################
    # Rollback support
    ##############################

    def _snapshot(self, obj: DomainObject) -> None:
        if id(obj) in self._snapshotted:
            return
        record = self.store.object_record(obj)
        self._undo.append(_Snapshot(obj, obj.stored, dict(record) if record else None, obj.last_modified_in_db))
        self._snapshotted.add(id(obj))

    def _undo_since(self, mark: int) -> None:
        for snapshot in reversed(self._undo[mark:]):
            obj = snapshot.obj
            obj._stored = snapshot.stored
            obj._last_modified_in_db = snapshot.last_modified
            if self.store.is_registered(obj):
                if snapshot.record is None:
                    self.store.remove_object_record(obj)
                else:
                    self.store.set_object_record(obj, snapshot.record)
            self._snapshotted.discard(id(obj))
        del self._undo[mark:]

    def restore_after_rollback(self) -> None:
        """Forget everything written in the rolled back transaction."""
        if self._undo:
            self._logger.info(f"Restoring in-memory state of {len(self._undo)} object(s) after rollback")
        self._undo_since(0)
