import logging
import threading
from typing import Any, Callable, Dict, List, Optional, Tuple, Type, TypeVar

from dompersist.domain.dependency.graph import ReferenceGraph
from dompersist.domain.entity import DomainObject, new_object_id
from dompersist.domain.schema import FieldKind, SchemaRegistry
from dompersist.errors import ObjectNotFoundError

T = TypeVar("T", bound=DomainObject)

##############################
# Object Store
##############################

class ObjectStore:
    """
    In-process registry of live domain objects.

    Objects are indexed under every class of their ancestor chain, so a lookup
    by any superclass finds them. Object records (the persisted-state
    snapshots used as diff baseline) are kept per object. Accumulation fields
    of referenced objects are maintained here as well.

    One store exists per controller lifecycle; all access is guarded by a
    re-entrant lock so concurrent loads of different objects stay consistent.
    """
    _logger = logging.getLogger("ObjectStore")

    def __init__(self, registry: SchemaRegistry, owner: Any = None):
        self._registry = registry
        self._owner = owner
        self._lock = threading.RLock()
        self._objects: Dict[type, Dict[int, DomainObject]] = {}
        self._records: Dict[Tuple[type, int], Dict[str, Any]] = {}
        # Reference field values as last seen by the accumulation bookkeeping
        self._seen_refs: Dict[DomainObject, Dict[str, Optional[DomainObject]]] = {}

    # Creation

    def instantiate(self, cls: Type[T]) -> T:
        return self._registry.instantiate(cls)

    def create(self, cls: Type[T], init: Optional[Callable[[T], None]] = None) -> T:
        """Instantiate ``cls``, apply ``init`` and register the new object."""
        obj = self.instantiate(cls)
        if init is not None:
            init(obj)
        self.register(obj)
        return obj

    # Registration

    def register(self, obj: DomainObject) -> bool:
        """Register ``obj``, assigning a new id unless it already has one."""
        with self._lock:
            if self.is_registered(obj):
                return False
            return self.register_by_id(obj, obj.id or new_object_id())

    def register_by_id(self, obj: DomainObject, object_id: int) -> bool:
        """Register ``obj`` under ``object_id``; False if that id is already taken."""
        with self._lock:
            chain = self._registry.chain(type(obj))
            if object_id in self._objects.get(chain[0], {}):
                self._logger.debug(f"{type(obj).__name__}@{object_id} is already registered")
                return False
            obj.id = object_id
            obj._controller = self._owner
            for cls in chain:
                self._objects.setdefault(cls, {})[object_id] = obj
            self.update_accumulations(obj)
            self._logger.debug(f"Registered {obj!r}")
            return True

    def unregister(self, obj: DomainObject) -> None:
        """Remove ``obj`` together with its object record and its accumulation entries."""
        with self._lock:
            if not self.is_registered(obj):
                self._logger.warning(f"{obj!r} cannot be unregistered: not registered")
                return
            for cls in self._registry.chain(type(obj)):
                self._objects.get(cls, {}).pop(obj.id, None)
            self._records.pop(self._record_key(obj), None)
            self._remove_from_accumulations(obj)
            self._logger.debug(f"Unregistered {obj!r}")

    def reregister(self, obj: DomainObject, record: Optional[Dict[str, Any]]) -> None:
        """Register ``obj`` again under its id, restoring ``record`` if it is stored."""
        with self._lock:
            self.register_by_id(obj, obj.id)
            if obj.stored and record is not None:
                self._records[self._record_key(obj)] = record
            self._logger.debug(f"Re-registered {obj!r}")

    def is_registered(self, obj: DomainObject) -> bool:
        with self._lock:
            return self._objects.get(type(obj), {}).get(obj.id) is obj

    def clear(self) -> None:
        with self._lock:
            self._objects.clear()
            self._records.clear()
            self._seen_refs.clear()
            self._logger.info("Object store cleared")

    # Lookup

    def find(self, cls: Type[T], object_id: int) -> Optional[T]:
        with self._lock:
            return self._objects.get(cls, {}).get(object_id)

    def get(self, cls: Type[T], object_id: int) -> T:
        obj = self.find(cls, object_id)
        if obj is None:
            raise ObjectNotFoundError(cls, object_id)
        return obj

    def all(self, cls: Type[T]) -> List[T]:
        with self._lock:
            return list(self._objects.get(cls, {}).values())

    def find_all(self, cls: Type[T], predicate: Callable[[T], bool]) -> List[T]:
        return [o for o in self.all(cls) if predicate(o)]

    def find_any(self, cls: Type[T], predicate: Callable[[T], bool]) -> Optional[T]:
        return next((o for o in self.all(cls) if predicate(o)), None)

    def count(self, cls: type, predicate: Optional[Callable[[Any], bool]] = None) -> int:
        if predicate is None:
            with self._lock:
                return len(self._objects.get(cls, {}))
        return len(self.find_all(cls, predicate))

    def registered_objects(self) -> List[DomainObject]:
        with self._lock:
            seen: Dict[int, DomainObject] = {}
            for cls in self._registry.domain_classes():
                if self._registry.superclass(cls) is None:
                    seen.update(self._objects.get(cls, {}))
            return list(seen.values())

    # Object records

    def _record_key(self, obj: DomainObject) -> Tuple[type, int]:
        return self._registry.base_class(type(obj)), obj.id

    def object_record(self, obj: DomainObject) -> Optional[Dict[str, Any]]:
        with self._lock:
            return self._records.get(self._record_key(obj))

    def set_object_record(self, obj: DomainObject, record: Dict[str, Any]) -> None:
        with self._lock:
            self._records[self._record_key(obj)] = dict(sorted(record.items()))

    def remove_object_record(self, obj: DomainObject) -> None:
        with self._lock:
            self._records.pop(self._record_key(obj), None)

    # References

    def direct_children(self, obj: DomainObject) -> List[DomainObject]:
        """Registered objects with a reference field pointing at ``obj``."""
        children: List[DomainObject] = []
        for f in self._registry.referencing_fields(type(obj)):
            for candidate in self.all(f.declaring_class):
                if getattr(candidate, f.name) is obj and candidate not in children:
                    children.append(candidate)
        return children

    def is_referenced(self, obj: DomainObject) -> bool:
        return bool(self.direct_children(obj))

    def can_be_deleted_recursive(self, obj: DomainObject) -> bool:
        """Business rule check over ``obj`` and every direct or indirect dependent."""
        graph = ReferenceGraph()
        graph.build_graph([obj], self.direct_children)
        for item in graph.items():
            if not item.can_be_deleted():
                self._logger.info(f"{obj!r} cannot be deleted: {item!r} refuses deletion")
                return False
        return True

    # Accumulations

    def update_accumulations(self, obj: DomainObject) -> None:
        """Move ``obj`` between accumulation sets of the objects its references point at."""
        with self._lock:
            seen = self._seen_refs.setdefault(obj, {})
            for f in self._registry.fields(type(obj), FieldKind.REFERENCE):
                current = getattr(obj, f.name)
                previous = seen.get(f.name)
                if current is previous:
                    continue
                if previous is not None:
                    self._accumulate(previous, f, obj, add=False)
                if current is not None:
                    self._accumulate(current, f, obj, add=True)
                seen[f.name] = current

    def _remove_from_accumulations(self, obj: DomainObject) -> None:
        seen = self._seen_refs.pop(obj, {})
        for f in self._registry.fields(type(obj), FieldKind.REFERENCE):
            parent = seen.get(f.name)
            if parent is not None:
                self._accumulate(parent, f, obj, add=False)

    def _accumulate(self, parent: DomainObject, ref_field, child: DomainObject, add: bool) -> None:
        for acc in self._registry.accumulations_of(type(parent), ref_field):
            if not isinstance(child, acc.value_type):
                continue
            members = getattr(parent, acc.name)
            if add:
                members.add(child)
            else:
                members.discard(child)
