"""
Schema registry: one reflection pass over the domain classes at startup.

Every declared field of a registered ``DomainObject`` subclass is classified
once into a ``FieldKind`` and kept as a static ``FieldDescriptor``; nothing is
re-classified later. Inheritance is modelled as an explicit ancestor chain
(root first) of registered domain classes.
"""
import enum
import inspect
import logging
import types
import typing
from datetime import date, datetime, time
from decimal import Decimal
from enum import Enum
from typing import Any, Dict, Iterable, List, Optional, Set, Tuple, Type, get_args, get_origin
from uuid import UUID

from pydantic import BaseModel, ConfigDict

from dompersist.domain.entity import ACCUMULATION_KEY, TRANSIENT_KEY, DomainObject
from dompersist.domain.dependency.graph import ReferenceGraph, CycleStatus
from dompersist.errors import ConfigError

SCALAR_TYPES: Tuple[type, ...] = (str, int, float, bool, Decimal, datetime, date, time, bytes, UUID)


class FieldKind(Enum):
    SCALAR = "scalar"
    REFERENCE = "reference"
    MULTI_VALUED = "multi_valued"
    DERIVED = "derived"


class CollectionKind(Enum):
    LIST = "list"
    SET = "set"
    MAP = "map"


class FieldDescriptor(BaseModel):
    """
    Static description of one persistent (or derived) field.

    ``value_type`` is the scalar type for scalar fields, the referenced domain
    class for references, the element (or map value) type for multi-valued
    fields and the accumulated domain class for derived fields.
    """
    name: str
    kind: FieldKind
    declaring_class: Any
    value_type: Any
    key_type: Any = None
    collection_kind: Optional[CollectionKind] = None
    accumulation_of: Optional[str] = None

    model_config = ConfigDict(arbitrary_types_allowed=True, frozen=True)

    @property
    def qualified_name(self) -> str:
        return f"{self.declaring_class.__name__}.{self.name}"

    def __str__(self) -> str:
        return self.qualified_name

    def __repr__(self) -> str:
        return f"FieldDescriptor({self.qualified_name}, {self.kind.value})"


def _is_domain_class(tp: Any) -> bool:
    return inspect.isclass(tp) and issubclass(tp, DomainObject) and tp is not DomainObject


def _strip(tp: Any) -> Tuple[Any, bool]:
    """Remove ``Annotated`` and ``Optional`` wrappers, return (type, optional)."""
    if get_origin(tp) is typing.Annotated:
        tp = get_args(tp)[0]
    optional = False
    if get_origin(tp) in (typing.Union, types.UnionType):
        args = [a for a in get_args(tp) if a is not type(None)]
        optional = len(args) < len(get_args(tp))
        if len(args) != 1:
            return tp, optional
        tp = args[0]
    return tp, optional


def _is_scalar_type(tp: Any) -> bool:
    return inspect.isclass(tp) and (issubclass(tp, SCALAR_TYPES) or issubclass(tp, enum.Enum))


class SchemaRegistry:
    """Reflected metadata of all registered domain classes."""

    _logger = logging.getLogger("SchemaRegistry")

    def __init__(self):
        self._classes: List[type] = []
        self._own_fields: Dict[type, List[FieldDescriptor]] = {}
        self._by_name: Dict[str, type] = {}
        self._chains: Dict[type, List[type]] = {}
        self._ordered: Optional[List[type]] = None

    ##############################
    # Registration
    ##############################

    def register(self, *classes: Type[DomainObject]) -> None:
        """
        Register domain classes together with their domain superclasses and
        every domain class reachable through reference or accumulation fields.
        """
        pending = list(classes)
        while pending:
            cls = pending.pop(0)
            if cls in self._own_fields:
                continue
            if not _is_domain_class(cls):
                raise ConfigError(f"{cls!r} is not a DomainObject subclass")
            for base in cls.__mro__[1:]:
                if _is_domain_class(base) and base not in self._own_fields:
                    pending.insert(0, cls)
                    pending.insert(0, base)
                    break
            else:
                fields = self._reflect(cls)
                self._own_fields[cls] = fields
                self._classes.append(cls)
                name = cls.__name__
                if name in self._by_name and self._by_name[name] is not cls:
                    raise ConfigError(f"Domain class name {name} is used twice")
                self._by_name[name] = cls
                for f in fields:
                    if f.kind in (FieldKind.REFERENCE, FieldKind.DERIVED) and f.value_type not in self._own_fields:
                        pending.append(f.value_type)
        self._chains.clear()
        self._ordered = None
        self._check_accumulations()

    def _reflect(self, cls: type) -> List[FieldDescriptor]:
        # Rebuilding resolves forward references between domain classes in place
        try:
            cls.model_rebuild()
        except Exception as e:
            raise ConfigError(f"Cannot resolve field types of {cls.__name__}: {e}") from e

        own = inspect.get_annotations(cls)
        result: List[FieldDescriptor] = []
        for name in own:
            if name == "id" or name.startswith("_") or name not in cls.model_fields:
                continue
            info = cls.model_fields[name]
            extra = info.json_schema_extra if isinstance(info.json_schema_extra, dict) else {}
            if extra.get(TRANSIENT_KEY):
                continue
            result.append(self._classify(cls, name, info.annotation, extra))
        self._logger.debug(f"Reflected {cls.__name__}: {[repr(f) for f in result]}")
        return result

    def _classify(self, cls: type, name: str, hint: Any, extra: Dict[str, Any]) -> FieldDescriptor:
        tp, _ = _strip(hint)
        origin = get_origin(tp)
        args = get_args(tp)

        if extra.get(ACCUMULATION_KEY):
            if origin not in (set, Set) or not args or not _is_domain_class(args[0]):
                raise ConfigError(f"Accumulation {cls.__name__}.{name} must be declared as Set[DomainClass]")
            return FieldDescriptor(name=name, kind=FieldKind.DERIVED, declaring_class=cls,
                                   value_type=args[0], accumulation_of=extra[ACCUMULATION_KEY])

        if _is_domain_class(tp):
            return FieldDescriptor(name=name, kind=FieldKind.REFERENCE, declaring_class=cls, value_type=tp)

        if origin in (list, set, dict):
            kind = {list: CollectionKind.LIST, set: CollectionKind.SET, dict: CollectionKind.MAP}[origin]
            key_type = None
            if kind is CollectionKind.MAP:
                key_type, value_type = (_strip(a)[0] for a in args) if len(args) == 2 else (str, str)
            else:
                value_type = _strip(args[0])[0] if args else str
            for element_type in (key_type, value_type):
                if element_type is None:
                    continue
                if _is_domain_class(element_type):
                    raise ConfigError(
                        f"{cls.__name__}.{name}: collections of domain objects are only supported as accumulations")
                if not _is_scalar_type(element_type):
                    raise ConfigError(f"{cls.__name__}.{name}: unsupported element type {element_type!r}")
            return FieldDescriptor(name=name, kind=FieldKind.MULTI_VALUED, declaring_class=cls,
                                   value_type=value_type, key_type=key_type, collection_kind=kind)

        if _is_scalar_type(tp):
            return FieldDescriptor(name=name, kind=FieldKind.SCALAR, declaring_class=cls, value_type=tp)

        raise ConfigError(f"{cls.__name__}.{name}: unsupported field type {hint!r}")

    def _check_accumulations(self) -> None:
        for cls in self._classes:
            for f in self._own_fields[cls]:
                if f.kind is not FieldKind.DERIVED:
                    continue
                target = self.find_field(f.value_type, f.accumulation_of)
                if target is None or target.kind is not FieldKind.REFERENCE:
                    raise ConfigError(
                        f"Accumulation {f.qualified_name}: {f.value_type.__name__}.{f.accumulation_of} "
                        f"is not a reference field")

    ##############################
    # Class queries
    ##############################

    def is_registered(self, cls: type) -> bool:
        return cls in self._own_fields

    def domain_classes(self) -> List[type]:
        return list(self._classes)

    def is_object_domain_class(self, cls: type) -> bool:
        """Concrete classes: registered classes without registered subclasses."""
        return cls in self._own_fields and not any(
            c is not cls and issubclass(c, cls) for c in self._classes)

    def object_domain_classes(self) -> List[type]:
        """Concrete classes, referenced classes before referencing ones where possible."""
        if self._ordered is None:
            self._ordered = self._order_by_references()
        return list(self._ordered)

    def concrete_subclasses(self, cls: type) -> List[type]:
        return [c for c in self.object_domain_classes() if issubclass(c, cls)]

    def superclass(self, cls: type) -> Optional[type]:
        for base in cls.__mro__[1:]:
            if _is_domain_class(base):
                return base
        return None

    def chain(self, cls: type) -> List[type]:
        """Ancestor chain of ``cls``, root class first, ``cls`` last."""
        if cls not in self._chains:
            if not self.is_registered(cls):
                raise ConfigError(f"{cls.__name__} is not a registered domain class")
            chain = [cls]
            parent = self.superclass(cls)
            while parent is not None:
                chain.insert(0, parent)
                parent = self.superclass(parent)
            self._chains[cls] = chain
        return self._chains[cls]

    def base_class(self, cls: type) -> type:
        return self.chain(cls)[0]

    def class_by_name(self, name: str) -> type:
        try:
            return self._by_name[name]
        except KeyError:
            raise ConfigError(f"Unknown domain class {name}") from None

    def instantiate(self, cls: type) -> DomainObject:
        """Create an object through the no-argument constructor."""
        try:
            return cls()
        except Exception as e:
            raise ConfigError(f"{cls.__name__} cannot be instantiated without arguments: {e}") from e

    ##############################
    # Field queries
    ##############################

    def own_fields(self, cls: type, kind: Optional[FieldKind] = None) -> List[FieldDescriptor]:
        fields = self._own_fields.get(cls, [])
        return [f for f in fields if kind is None or f.kind is kind]

    def fields(self, cls: type, kind: Optional[FieldKind] = None) -> List[FieldDescriptor]:
        """Fields of the whole chain, root class fields first."""
        return [f for c in self.chain(cls) for f in self.own_fields(c, kind)]

    def data_fields(self, cls: type) -> List[FieldDescriptor]:
        """Scalar and reference fields: everything stored in class table columns."""
        return [f for c in self.chain(cls) for f in self.own_fields(c)
                if f.kind in (FieldKind.SCALAR, FieldKind.REFERENCE)]

    def reference_fields(self, cls: type) -> List[FieldDescriptor]:
        return self.fields(cls, FieldKind.REFERENCE)

    def multi_valued_fields(self, cls: type) -> List[FieldDescriptor]:
        return self.fields(cls, FieldKind.MULTI_VALUED)

    def derived_fields(self, cls: type) -> List[FieldDescriptor]:
        return self.fields(cls, FieldKind.DERIVED)

    def find_field(self, cls: type, name: str) -> Optional[FieldDescriptor]:
        for f in self.fields(cls):
            if f.name == name:
                return f
        return None

    def referencing_fields(self, cls: type) -> List[FieldDescriptor]:
        """Reference fields of any registered class which may point at an object of ``cls``."""
        chain = self.chain(cls)
        return [f for c in self._classes for f in self.own_fields(c, FieldKind.REFERENCE)
                if f.value_type in chain]

    def accumulations_of(self, parent_cls: type, ref_field: FieldDescriptor) -> List[FieldDescriptor]:
        """Accumulation fields of ``parent_cls`` which collect the holders of ``ref_field``."""
        return [f for f in self.derived_fields(parent_cls)
                if f.accumulation_of == ref_field.name
                and (issubclass(ref_field.declaring_class, f.value_type)
                     or issubclass(f.value_type, ref_field.declaring_class))]

    ##############################
    # Ordering
    ##############################

    def _order_by_references(self) -> List[type]:
        concrete = [c for c in self._classes if self.is_object_domain_class(c)]

        def referenced_classes(cls: type) -> Iterable[type]:
            for f in self.reference_fields(cls):
                for c in concrete:
                    if issubclass(c, f.value_type) and c is not cls:
                        yield c

        graph = ReferenceGraph()
        status = graph.build_graph(concrete, referenced_classes, get_id=lambda c: c.__name__)
        if status is CycleStatus.CYCLE_DETECTED:
            self._logger.debug(f"Circular class references: {graph.get_cycles()}")
        ordered = graph.get_topological_sort()
        self._logger.info(f"Object domain classes in load order: {[c.__name__ for c in ordered]}")
        return ordered
