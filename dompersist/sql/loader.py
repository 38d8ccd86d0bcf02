"""
Load engine: materializes a consistent, reference-resolved subgraph of
objects from the database into the object store.

A load runs in rounds:

1. SELECT the requested records: one joined statement over the class table
   and all ancestor tables, plus one statement per multi-valued field over its
   entry table (restricted to the retrieved ids, split into IN lists of
   bounded size).
2. Build objects: unknown ids become new objects; known ones are diffed
   against their object record and externally changed columns overwrite the
   live fields (discarding unsaved local changes with a warning).
3. References to ids not in the store are recorded as unresolved. Their
   concrete classes are determined (discriminator lookup where needed), the
   missing objects are loaded in the next round, and so on until no new
   unresolved references appear.
4. Finally all unresolved references are attached to the loaded objects.

All records of a round are retrieved before any object is touched, so a
failing statement leaves no half-applied round behind.
"""
import logging
from typing import Any, Callable, Dict, List, Optional, Set, Tuple

from pydantic import BaseModel, ConfigDict, Field
from sqlalchemy import select, text
from sqlalchemy.sql import ColumnElement

from dompersist.domain.entity import DomainObject
from dompersist.domain.schema import CollectionKind, FieldDescriptor, FieldKind
from dompersist.sql.connection import SqlConnection
from dompersist.sql.conversion import to_field_value
from dompersist.sql.records import Record, copy_collection, empty_collection, record_value, values_equal
from dompersist.sql.registry import (
    DOMAIN_CLASS_COL, ELEMENT_COL, ID_COL, KEY_COL, LAST_MODIFIED_COL, ORDER_COL, VALUE_COL,
)

# class -> id -> record
LoadedRecords = Dict[type, Dict[int, Record]]


class UnresolvedReference(BaseModel):
    """Reference of a loaded object to an id which is not (yet) in the store."""
    holder: Any = Field(exclude=True)
    field: FieldDescriptor
    referenced_class: Any
    referenced_id: int

    model_config = ConfigDict(arbitrary_types_allowed=True)

    def __str__(self) -> str:
        return f"{self.holder!r}.{self.field.name} -> {self.referenced_class.__name__}@{self.referenced_id}"


class LoadResult(BaseModel):
    """Objects touched by one load call."""
    loaded: List[Any] = Field(default_factory=list)
    created: List[Any] = Field(default_factory=list)
    changed: List[Any] = Field(default_factory=list)
    unresolved: List[UnresolvedReference] = Field(default_factory=list)

    model_config = ConfigDict(arbitrary_types_allowed=True)

    def objects_of(self, cls: type) -> List[Any]:
        return [o for o in self.loaded if isinstance(o, cls)]


class Loader:
    """Load engine bound to one connection."""

    _logger = logging.getLogger("LoadEngine")

    def __init__(self, controller, connection: SqlConnection):
        self.registry = controller.registry
        self.store = controller.store
        self.gateway = controller.gateway
        self.max_in_clause = controller.settings.max_in_clause
        self.connection = connection

    ##############################
    # Retrieval
    ##############################

    def retrieve_records(self, cls: type, where: Optional[str] = None,
                         params: Optional[Dict[str, Any]] = None, max_count: int = 0,
                         condition: Optional[ColumnElement] = None) -> Dict[int, Record]:
        """
        SELECT records of object domain class ``cls`` including all
        multi-valued field contents. ``where`` is an SQL fragment over
        table-qualified columns (e.g. ``DOM_BIKE.MODEL = :model``) bound with
        ``params``; ``condition`` an additional SQLAlchemy expression.
        """
        statement, labels = self._main_statement(cls)
        if condition is not None:
            statement = statement.where(condition)
        if where:
            statement = statement.where(text(where))
        if max_count > 0:
            statement = statement.limit(max_count)

        rows = self.gateway.select(self.connection.connection, statement, params)
        records: Dict[int, Record] = {}
        for row in rows:
            records[int(row[ID_COL])] = self._row_to_record(labels, row)

        if records:
            self._retrieve_entries(cls, records)
        self._logger.debug(f"Retrieved {len(records)} {cls.__name__} record(s)")
        return records

    def _main_statement(self, cls: type):
        chain = self.registry.chain(cls)
        leaf_name = self.registry.table_name(cls)
        base_name = self.registry.table_name(chain[0])
        leaf = self.gateway.table(leaf_name)

        columns = [
            self.gateway.column(leaf_name, ID_COL).label(ID_COL),
            self.gateway.column(leaf_name, DOMAIN_CLASS_COL).label(DOMAIN_CLASS_COL),
            self.gateway.column(base_name, LAST_MODIFIED_COL).label(LAST_MODIFIED_COL),
        ]
        labels: Dict[str, FieldDescriptor] = {}
        for index, f in enumerate(self.registry.data_fields(cls)):
            table_name = self.registry.table_name(f.declaring_class)
            column = self.gateway.column(table_name, self.registry.column_name(f))
            label = f"F{index}"
            labels[label] = f
            columns.append(column.label(label))

        joined = leaf
        leaf_id = self.gateway.column(leaf_name, ID_COL)
        for ancestor in chain[:-1]:
            name = self.registry.table_name(ancestor)
            joined = joined.join(self.gateway.table(name), self.gateway.column(name, ID_COL) == leaf_id)
        return select(*columns).select_from(joined), labels

    def _row_to_record(self, labels: Dict[str, FieldDescriptor], row: Dict[str, Any]) -> Record:
        record: Record = {LAST_MODIFIED_COL: row.get(LAST_MODIFIED_COL)}
        for label, f in labels.items():
            raw = row.get(label)
            if f.kind is FieldKind.REFERENCE:
                record[self.registry.record_key(f)] = int(raw) if raw is not None else None
            else:
                record[self.registry.record_key(f)] = to_field_value(f.value_type, raw)
        return record

    def _retrieve_entries(self, cls: type, records: Dict[int, Record]) -> None:
        ids = list(records)
        for f in self.registry.multi_valued_fields(cls):
            key = self.registry.record_key(f)
            for record in records.values():
                record[key] = empty_collection(f)

            table_name = self.registry.entry_table_name(f)
            owner = self.gateway.column(table_name, self.registry.entry_owner_column(f))
            if f.collection_kind is CollectionKind.MAP:
                columns = [owner.label("OWNER"),
                           self.gateway.column(table_name, KEY_COL).label(KEY_COL),
                           self.gateway.column(table_name, VALUE_COL).label(VALUE_COL)]
            else:
                columns = [owner.label("OWNER"), self.gateway.column(table_name, ELEMENT_COL).label(ELEMENT_COL)]
            order_by = [owner]
            if f.collection_kind is CollectionKind.LIST:
                order_by.append(self.gateway.column(table_name, ORDER_COL))

            for chunk in self.chunks(ids):
                statement = select(*columns).where(owner.in_(chunk)).order_by(*order_by)
                for row in self.gateway.select(self.connection.connection, statement):
                    collection = records[int(row["OWNER"])][key]
                    if f.collection_kind is CollectionKind.MAP:
                        k = to_field_value(f.key_type, row[KEY_COL])
                        collection[k] = to_field_value(f.value_type, row[VALUE_COL])
                    elif f.collection_kind is CollectionKind.SET:
                        collection.add(to_field_value(f.value_type, row[ELEMENT_COL]))
                    else:
                        collection.append(to_field_value(f.value_type, row[ELEMENT_COL]))

    def chunks(self, values: List[Any]) -> List[List[Any]]:
        size = self.max_in_clause
        return [values[i:i + size] for i in range(0, len(values), size)]

    ##############################
    # Load with referential integrity
    ##############################

    def load(self, select_records: Callable[[], LoadedRecords]) -> LoadResult:
        """Run ``select_records`` and load everything referenced by its result."""
        result = LoadResult()
        attempted: Set[Tuple[type, int]] = set()
        pending_unresolved: List[UnresolvedReference] = []

        loaded = select_records()
        while loaded:
            for cls, records in loaded.items():
                base = self.registry.base_class(cls)
                attempted.update((base, object_id) for object_id in records)
            new_unresolved = self._build_objects(loaded, result)
            pending_unresolved.extend(new_unresolved)
            loaded = self._load_missing_objects(new_unresolved, attempted)

        self._resolve(pending_unresolved, result)
        for obj in result.loaded:
            self.store.update_accumulations(obj)

        self._logger.info(f"Loaded {len(result.loaded)} object(s): {len(result.created)} new, "
                          f"{len(result.changed)} changed, {len(result.unresolved)} unresolvable reference(s)")
        return result

    def _build_objects(self, loaded: LoadedRecords, result: LoadResult) -> List[UnresolvedReference]:
        unresolved: List[UnresolvedReference] = []
        for cls, records in loaded.items():
            for object_id, record in records.items():
                obj = self.store.find(self.registry.base_class(cls), object_id)
                if obj is None:
                    obj = self._create_object(cls, object_id, record, unresolved)
                    result.created.append(obj)
                elif type(obj) is not cls:
                    self._logger.error(f"Loaded {cls.__name__}@{object_id} but {obj!r} is registered under this id")
                    continue
                elif self._update_object(obj, record, unresolved):
                    result.changed.append(obj)
                result.loaded.append(obj)
        return unresolved

    def _create_object(self, cls: type, object_id: int, record: Record,
                       unresolved: List[UnresolvedReference]) -> DomainObject:
        obj = self.registry.instantiate(cls)
        self.store.register_by_id(obj, object_id)
        for f in self.registry.data_fields(cls) + self.registry.multi_valued_fields(cls):
            self._assign(obj, f, record.get(self.registry.record_key(f)), unresolved)
        obj._stored = True
        obj._last_modified_in_db = record.get(LAST_MODIFIED_COL)
        self.store.set_object_record(obj, record)
        self._logger.debug(f"Loaded new object {obj!r}")
        return obj

    def _update_object(self, obj: DomainObject, record: Record,
                       unresolved: List[UnresolvedReference]) -> bool:
        """Push database changes made by others into ``obj``; True if anything changed."""
        known = self.store.object_record(obj) or {}
        changed = False
        for f in self.registry.data_fields(type(obj)) + self.registry.multi_valued_fields(type(obj)):
            key = self.registry.record_key(f)
            loaded_value = record.get(key)
            if key in known and values_equal(loaded_value, known[key]):
                continue

            local_value = record_value(obj, f)
            if key in known and not values_equal(local_value, known[key]) \
                    and not values_equal(local_value, loaded_value):
                self._logger.warning(f"Discarded unsaved changed value {local_value!r} of field {f} "
                                     f"of {obj!r} on loading object from database")
                obj.set_field_warning(f.name, "DISCARDED_UNSAVED_CHANGE", local_value)

            self._logger.debug(f"{obj!r}.{f.name}: database value {loaded_value!r} replaces {known.get(key)!r}")
            self._assign(obj, f, loaded_value, unresolved)
            changed = True

        obj._stored = True
        obj._last_modified_in_db = record.get(LAST_MODIFIED_COL)
        self.store.set_object_record(obj, record)
        return changed

    def _assign(self, obj: DomainObject, f: FieldDescriptor, value: Any,
                unresolved: List[UnresolvedReference]) -> None:
        if f.kind is FieldKind.REFERENCE:
            if value is None:
                setattr(obj, f.name, None)
                return
            target = self.store.find(f.value_type, value)
            if target is None:
                setattr(obj, f.name, None)
                unresolved.append(UnresolvedReference(
                    holder=obj, field=f, referenced_class=f.value_type, referenced_id=value))
            else:
                setattr(obj, f.name, target)
        elif f.kind is FieldKind.MULTI_VALUED:
            setattr(obj, f.name, copy_collection(f, value))
        else:
            setattr(obj, f.name, value)

    ##############################
    # Unresolved references
    ##############################

    def _load_missing_objects(self, unresolved: List[UnresolvedReference],
                              attempted: Set[Tuple[type, int]]) -> LoadedRecords:
        missing: Dict[type, List[int]] = {}
        for u in unresolved:
            base = self.registry.base_class(u.referenced_class)
            if (base, u.referenced_id) in attempted or self.store.find(base, u.referenced_id) is not None:
                continue
            ids = missing.setdefault(u.referenced_class, [])
            if u.referenced_id not in ids:
                ids.append(u.referenced_id)
        if not missing:
            return {}

        by_concrete: Dict[type, List[int]] = {}
        for referenced_class, ids in missing.items():
            if self.registry.is_object_domain_class(referenced_class):
                by_concrete.setdefault(referenced_class, []).extend(ids)
            else:
                for cls, concrete_ids in self._concrete_classes(referenced_class, ids).items():
                    by_concrete.setdefault(cls, []).extend(concrete_ids)

        loaded: LoadedRecords = {}
        for cls, ids in by_concrete.items():
            self._logger.debug(f"Loading {len(ids)} missing {cls.__name__} object(s)")
            id_column = self.gateway.column(self.registry.table_name(cls), ID_COL)
            records: Dict[int, Record] = {}
            for chunk in self.chunks(ids):
                records.update(self.retrieve_records(cls, condition=id_column.in_(chunk)))
            if records:
                loaded[cls] = records
        return loaded

    def _concrete_classes(self, cls: type, ids: List[int]) -> Dict[type, List[int]]:
        """Concrete classes of polymorphic references, by discriminator lookup."""
        table_name = self.registry.table_name(cls)
        id_column = self.gateway.column(table_name, ID_COL)
        discriminator = self.gateway.column(table_name, DOMAIN_CLASS_COL)
        result: Dict[type, List[int]] = {}
        for chunk in self.chunks(ids):
            statement = select(id_column.label(ID_COL), discriminator.label(DOMAIN_CLASS_COL)).where(
                id_column.in_(chunk))
            for row in self.gateway.select(self.connection.connection, statement):
                concrete = self.registry.class_by_name(row[DOMAIN_CLASS_COL])
                result.setdefault(concrete, []).append(int(row[ID_COL]))
        return result

    def _resolve(self, unresolved: List[UnresolvedReference], result: LoadResult) -> None:
        for u in unresolved:
            if not self.store.is_registered(u.holder):
                continue
            target = self.store.find(u.referenced_class, u.referenced_id)
            if target is not None:
                setattr(u.holder, u.field.name, target)
            else:
                self._logger.warning(f"Unresolvable reference {u}: object does not exist in database")
                result.unresolved.append(u)
