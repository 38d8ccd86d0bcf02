"""
Application-facing domain controller.

One controller per application lifecycle: it owns the settings, the SQL
gateway (connection pool), the schema registry and the object store, and
runs the load / save / delete engines and the exclusive allocator, each
database operation on its own pooled connection and transaction.

Example Usage:
```python
controller = SqlDomainController(DomainSettings.from_env())
controller.initialize(Manufacturer, Bike, RaceBike)

bike = controller.create(Bike, lambda b: setattr(b, "model", "Tour"))
controller.save(bike)

controller.load(Bike, "DOM_BIKE.MODEL = :model", {"model": "Tour"})

if controller.allocate_exclusively(bike, "in_progress", lambda b: setattr(b, "state", State.BUSY)):
    ...
    controller.release(bike, "in_progress", lambda b: setattr(b, "state", State.DONE))

controller.close()
```
"""
import logging
from typing import Any, Callable, Dict, Iterable, Iterator, List, Optional, Set, Tuple, Type, TypeVar

from dompersist.config import DomainSettings
from dompersist.domain.dependency.graph import ReferenceGraph
from dompersist.domain.entity import DomainObject
from dompersist.domain.store import ObjectStore
from dompersist.sql.allocation import AllocationStatistics, ExclusiveAllocator
from dompersist.sql.connection import SqlConnection
from dompersist.sql.constraints import ConstraintChecker
from dompersist.sql.deleter import Deleter
from dompersist.sql.gateway import SqlGateway
from dompersist.sql.horizon import DataHorizon, LastModifiedHorizon
from dompersist.sql.loader import LoadedRecords, Loader, LoadResult
from dompersist.sql.records import field_changes
from dompersist.sql.registry import ID_COL, SqlRegistry
from dompersist.sql.saver import Saver

T = TypeVar("T", bound=DomainObject)


class SqlDomainController:
    """Keeps registered domain objects synchronized with the database."""

    _logger = logging.getLogger("DomainController")

    def __init__(self, settings: Optional[DomainSettings] = None, gateway: Optional[SqlGateway] = None):
        self.settings = settings or DomainSettings.from_env()
        self.gateway = gateway or SqlGateway(
            self.settings.db_url,
            pool_size=self.settings.pool_size,
            pool_timeout=self.settings.pool_timeout,
            query_timeout=self.settings.query_timeout,
            echo=self.settings.echo_sql,
        )
        self.registry = SqlRegistry()
        self.store = ObjectStore(self.registry, owner=self)
        self.allocator = ExclusiveAllocator(self.gateway)
        self._horizons: Dict[type, DataHorizon] = {}
        self._shadow_tables: Set[str] = set()

    ##############################
    # Lifecycle
    ##############################

    def initialize(self, *domain_classes: Type[DomainObject]) -> "SqlDomainController":
        """Register domain classes and bind them to their tables. Raises ConfigError on mismatch."""
        self.registry.register(*domain_classes)
        with self.connection() as sc:
            self.registry.bind(self.gateway, sc.connection)
        for cls in self.registry.domain_classes():
            if getattr(cls, "use_data_horizon", False) and self.registry.superclass(cls) is None:
                self._horizons.setdefault(cls, LastModifiedHorizon(self.settings.data_horizon_period))
        self._logger.info(f"Initialized with {len(self.registry.domain_classes())} domain classes")
        return self

    def connection(self, auto_commit: bool = False) -> SqlConnection:
        return SqlConnection(self.gateway, auto_commit=auto_commit)

    def close(self) -> None:
        self.store.clear()
        self.gateway.close()

    def __enter__(self) -> "SqlDomainController":
        return self

    def __exit__(self, exc_type, exc_value, traceback) -> bool:
        self.close()
        return False

    ##############################
    # Object store access
    ##############################

    def create(self, cls: Type[T], init: Optional[Callable[[T], None]] = None) -> T:
        return self.store.create(cls, init)

    def register(self, obj: DomainObject) -> bool:
        return self.store.register(obj)

    def find(self, cls: Type[T], object_id: int) -> Optional[T]:
        return self.store.find(cls, object_id)

    def get(self, cls: Type[T], object_id: int) -> T:
        return self.store.get(cls, object_id)

    def all(self, cls: Type[T]) -> List[T]:
        return self.store.all(cls)

    def all_valid(self, cls: Type[T]) -> List[T]:
        return [o for o in self.store.all(cls) if o.is_valid()]

    def find_all(self, cls: Type[T], predicate: Callable[[T], bool]) -> List[T]:
        return self.store.find_all(cls, predicate)

    def find_any(self, cls: Type[T], predicate: Callable[[T], bool]) -> Optional[T]:
        return self.store.find_any(cls, predicate)

    def count(self, cls: type, predicate: Optional[Callable[[Any], bool]] = None) -> int:
        return self.store.count(cls, predicate)

    def is_registered(self, obj: DomainObject) -> bool:
        return self.store.is_registered(obj)

    def has_constraint_violations(self, obj: DomainObject) -> bool:
        """Check ``obj`` against column size, unique and not-null constraints, recording field errors."""
        return ConstraintChecker(self.registry, self.store).has_constraint_violations(obj)

    ##############################
    # Data horizon
    ##############################

    def set_data_horizon(self, cls: type, horizon: Optional[DataHorizon]) -> None:
        """Install (or remove, with None) the visibility predicate of ``cls``' class family."""
        base = self.registry.base_class(cls)
        if horizon is None:
            self._horizons.pop(base, None)
        else:
            self._horizons[base] = horizon

    def data_horizon(self, cls: type) -> Optional[DataHorizon]:
        return self._horizons.get(self.registry.base_class(cls))

    ##############################
    # Load
    ##############################

    def load(self, cls: Type[T], where: Optional[str] = None, params: Optional[Dict[str, Any]] = None,
             max_count: int = 0) -> List[T]:
        """
        Load objects of ``cls`` (and its concrete subclasses) matching the
        SQL fragment ``where``, together with everything they reference.
        ``max_count`` limits the number of selected objects over all
        concrete classes together (0 = no limit).
        """
        selected: List[int] = []
        with self.connection() as sc:
            loader = Loader(self, sc)

            def select_records() -> LoadedRecords:
                loaded: LoadedRecords = {}
                for concrete, limit in self._limited(cls, max_count, selected):
                    records = loader.retrieve_records(concrete, where, params, limit)
                    if records:
                        loaded[concrete] = records
                        selected.extend(records)
                return loaded

            result = loader.load(select_records)
        wanted = set(selected)
        return [o for o in result.loaded if isinstance(o, cls) and o.id in wanted]

    def _limited(self, cls: type, max_count: int, selected: List[int]) -> Iterator[Tuple[type, int]]:
        """Concrete classes of ``cls`` with the row limit left over after ``selected``."""
        for concrete in self.registry.concrete_subclasses(cls):
            if max_count <= 0:
                yield concrete, 0
                continue
            remaining = max_count - len(selected)
            if remaining <= 0:
                return
            yield concrete, remaining

    def reload(self, obj: DomainObject) -> bool:
        """
        Replace all field values of ``obj`` by the database content,
        discarding unsaved and invalid local state.
        """
        if not obj.stored:
            self._logger.warning(f"{obj!r} cannot be reloaded: it was never stored")
            return False
        if not self.store.is_registered(obj):
            self._logger.warning(f"{obj!r} cannot be reloaded: it is not registered")
            return False

        previous = self.store.object_record(obj)
        self.store.set_object_record(obj, {})
        obj.clear_errors()
        cls = type(obj)
        try:
            with self.connection() as sc:
                loader = Loader(self, sc)
                id_column = self.gateway.column(self.registry.table_name(cls), ID_COL)
                result = loader.load(lambda: {cls: loader.retrieve_records(cls, condition=id_column == obj.id)})
        except Exception:
            self.store.set_object_record(obj, previous or {})
            raise
        if not any(o is obj for o in result.loaded):
            self._logger.warning(f"{obj!r} does not exist in database anymore")
            self.store.set_object_record(obj, previous or {})
            return False
        return True

    def synchronize(self, *exclude: type) -> LoadResult:
        """
        Save all unsaved objects, then load every object domain class
        (horizon-controlled ones within their data horizon) and unregister
        objects which were deleted in the database meanwhile.
        """
        self.save_all(only_new=True)
        classes = [c for c in self.registry.object_domain_classes()
                   if not any(issubclass(c, e) for e in exclude)]

        with self.connection() as sc:
            loader = Loader(self, sc)

            def select_records() -> LoadedRecords:
                loaded: LoadedRecords = {}
                for cls in classes:
                    horizon = self.data_horizon(cls)
                    condition = None
                    if horizon is not None:
                        base_table = self.gateway.table(self.registry.table_name(self.registry.base_class(cls)))
                        condition = horizon.condition(base_table)
                    records = loader.retrieve_records(cls, condition=condition)
                    if records:
                        loaded[cls] = records
                return loaded

            result = loader.load(select_records)

        loaded = set(result.loaded)
        removed = 0
        for cls in classes:
            for obj in self.store.all(cls):
                if not obj.stored or obj in loaded:
                    continue
                if any(child in loaded for child in self.store.direct_children(obj)):
                    continue
                self.store.unregister(obj)
                removed += 1
        self._logger.info(f"Synchronized: {len(result.loaded)} object(s) loaded, {removed} unregistered")
        return result

    ##############################
    # Save
    ##############################

    def save(self, obj: DomainObject) -> bool:
        """
        Save ``obj`` (and required referenced objects) in one transaction.
        Returns True if anything was written. SQL and save errors propagate
        after rollback; field-level problems are recorded on the objects.
        """
        connection = self.connection().open()
        saver = Saver(self, connection)
        try:
            changed = saver.save(obj)
            connection.commit()
            return changed
        except Exception as e:
            self._logger.error(f"Saving {obj!r} failed, rolling back: {e}")
            if obj.current_exception is None:
                obj._current_exception = e
            connection.rollback()
            saver.restore_after_rollback()
            raise
        finally:
            connection.close(commit=False)

    def create_and_save(self, cls: Type[T], init: Optional[Callable[[T], None]] = None) -> T:
        obj = self.create(cls, init)
        self.save(obj)
        return obj

    def save_all(self, only_new: bool = False) -> int:
        """
        Save every registered object which is unsaved (or changed, unless
        ``only_new``), referenced objects first. Failures are recorded on the
        objects. Returns the number of objects saved successfully.
        """
        candidates = []
        for obj in self.store.registered_objects():
            if not obj.stored:
                candidates.append(obj)
            elif not only_new and field_changes(self.registry, obj, self.store.object_record(obj)):
                candidates.append(obj)
        if not candidates:
            return 0

        pending = set(candidates)

        def referenced_candidates(o: DomainObject) -> Iterable[DomainObject]:
            for f in self.registry.reference_fields(type(o)):
                target = getattr(o, f.name)
                if target is not None and target in pending:
                    yield target

        graph = ReferenceGraph()
        graph.build_graph(candidates, referenced_candidates)
        saved = 0
        for obj in graph.get_topological_sort():
            if obj.stored and not field_changes(self.registry, obj, self.store.object_record(obj)):
                continue
            if obj.save():
                saved += 1
        self._logger.info(f"Saved {saved} of {len(candidates)} object(s)")
        return saved

    ##############################
    # Delete
    ##############################

    def delete(self, obj: DomainObject) -> bool:
        """
        Delete ``obj`` and all objects referencing it. Returns False without
        side effects if a business rule forbids the deletion; SQL errors
        propagate after rollback and full restoration of the object store.
        """
        if not self.store.is_registered(obj):
            self._logger.warning(f"{obj!r} cannot be deleted: it is not registered")
            return False
        if not self.store.can_be_deleted_recursive(obj):
            return False

        connection = self.connection().open()
        deleter = Deleter(self, connection)
        try:
            deleter.delete(obj)
            connection.commit()
        except Exception as e:
            self._logger.error(f"Deleting {obj!r} failed, rolling back: {e}")
            obj._current_exception = e
            connection.rollback()
            deleter.restore_after_rollback()
            raise
        finally:
            connection.close(commit=False)

        for deleted in deleter.deleted_objects():
            deleted._stored = False
            deleted._last_modified_in_db = None
        return True

    ##############################
    # Exclusive allocation
    ##############################

    def _shadow_table(self, cls: type, purpose: str) -> str:
        name = self.registry.shadow_table_name(self.registry.base_class(cls), purpose)
        if name not in self._shadow_tables:
            with self.connection() as sc:
                self.allocator.register_shadow_table(sc.connection, name)
            self._shadow_tables.add(name)
        return name

    def allocate_exclusively(self, obj: DomainObject, purpose: str,
                             update: Optional[Callable[[Any], None]] = None) -> bool:
        """
        Claim ``obj`` for ``purpose`` across all threads and processes. On
        success the object is reloaded, ``update`` applied and the object
        saved. Returns False if somebody else holds the allocation.
        """
        if not obj.stored:
            self._logger.warning(f"{obj!r} cannot be allocated: it was never stored")
            return False
        table = self._shadow_table(type(obj), purpose)
        with self.connection(auto_commit=True) as sc:
            if not self.allocator.try_acquire(sc.connection, table, obj.id):
                return False

        try:
            if not self.reload(obj):
                self._release_row(table, obj.id)
                return False
            if update is not None:
                update(obj)
                self.save(obj)
        except Exception:
            self._release_row(table, obj.id)
            raise
        self._logger.info(f"{obj!r} allocated exclusively for {purpose}")
        return True

    def allocate_objects_exclusively(self, cls: Type[T], purpose: str, where: Optional[str] = None,
                                     params: Optional[Dict[str, Any]] = None, max_count: int = 0,
                                     update: Optional[Callable[[T], None]] = None) -> List[T]:
        """
        Claim up to ``max_count`` objects of ``cls`` matching ``where`` which
        are not allocated for ``purpose`` yet; load, update and save the
        claimed ones and return them.
        """
        table = self._shadow_table(cls, purpose)
        stats = AllocationStatistics()
        allocated: Dict[type, List[int]] = {}

        with self.connection() as sc:
            loader = Loader(self, sc)
            candidates: Dict[type, List[int]] = {}
            selected: List[int] = []
            for concrete, limit in self._limited(cls, max_count, selected):
                id_column = self.gateway.column(self.registry.table_name(concrete), ID_COL)
                condition = self.allocator.allocated_ids_condition(table, id_column)
                records = loader.retrieve_records(concrete, where, params, limit, condition=condition)
                candidates[concrete] = list(records)
                selected.extend(records)

        for concrete, ids in candidates.items():
            for object_id in ids:
                if self.allocator.holds(table, object_id):
                    stats.in_use_by_this_instance += 1
                    continue
                with self.connection(auto_commit=True) as sc:
                    acquired = self.allocator.try_acquire(sc.connection, table, object_id)
                if acquired:
                    stats.successful += 1
                    allocated.setdefault(concrete, []).append(object_id)
                else:
                    stats.in_use_by_other_instance += 1
        self._logger.info(f"Exclusive allocation of {cls.__name__} for {purpose}: {stats}")
        if not allocated:
            return []

        with self.connection() as sc:
            loader = Loader(self, sc)

            def select_records() -> LoadedRecords:
                loaded: LoadedRecords = {}
                for concrete, ids in allocated.items():
                    id_column = self.gateway.column(self.registry.table_name(concrete), ID_COL)
                    records = {}
                    for chunk in loader.chunks(ids):
                        records.update(loader.retrieve_records(concrete, condition=id_column.in_(chunk)))
                    loaded[concrete] = records
                return loaded

            result = loader.load(select_records)

        claimed = {object_id for ids in allocated.values() for object_id in ids}
        objects = [o for o in result.loaded if isinstance(o, cls) and o.id in claimed]
        if update is not None:
            for obj in objects:
                update(obj)
                obj.save()
        return objects

    def release(self, obj: DomainObject, purpose: str, update: Optional[Callable[[Any], None]] = None) -> bool:
        """
        Release the allocation of ``obj`` for ``purpose``, applying and saving
        ``update`` first. Returns False if the object was not allocated by
        this instance; an allocation held by somebody else is left alone.
        """
        table = self._shadow_table(type(obj), purpose)
        if not self.allocator.holds(table, obj.id):
            self._logger.warning(f"{obj!r} is not allocated for {purpose} by this instance")
            return False
        with self.connection() as sc:
            allocated = self.allocator.is_allocated(sc.connection, table, obj.id)
        if not allocated:
            self._logger.warning(f"{obj!r} is not allocated for {purpose}")
            self.allocator.forget(table, obj.id)
            return False
        if update is not None:
            update(obj)
            self.save(obj)
        released = self._release_row(table, obj.id)
        self._logger.info(f"{obj!r} released from {purpose}")
        return released

    def release_objects(self, objects: Iterable[DomainObject], purpose: str,
                        update: Optional[Callable[[Any], None]] = None) -> int:
        """Release several allocations; returns how many were released."""
        released = 0
        for obj in objects:
            try:
                if self.release(obj, purpose, update):
                    released += 1
            except Exception as e:
                self._logger.error(f"Releasing {obj!r} from {purpose} failed: {e}")
                obj._current_exception = e
        return released

    def compute_exclusively_on_objects(self, cls: Type[T], purpose: str, compute: Callable[[T], None],
                                       where: Optional[str] = None, params: Optional[Dict[str, Any]] = None,
                                       max_count: int = 0) -> List[T]:
        """Allocate matching objects, run ``compute`` on each, save and release them."""
        objects = self.allocate_objects_exclusively(cls, purpose, where, params, max_count)
        try:
            for obj in objects:
                compute(obj)
                obj.save()
        finally:
            self.release_objects(objects, purpose)
        return objects

    def _release_row(self, table: str, object_id: int) -> bool:
        with self.connection(auto_commit=True) as sc:
            return self.allocator.release(sc.connection, table, object_id)
