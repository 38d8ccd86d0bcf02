############################################################
# entity.py
############################################################

"""
Domain objects kept synchronized with a relational database.

Key concepts:

1. IDENTITY:
   - Every domain object carries an integer ``id`` which is unique within its
     domain class family (a class and all of its ancestors share the id space)
   - Ids are generated in memory when the object is registered, never by the
     database
   - Equality and hashing are by object identity: the object store guarantees
     there is at most one live object per (class, id)

2. PERSISTENCE STATE:
   - ``stored`` tells whether the object was ever persisted (or loaded)
   - ``last_modified_in_db`` is the timestamp of the last write known to this
     process
   - Both live in pydantic private attributes and are never persisted as fields

3. VALIDITY:
   - Constraint violations found on save are not raised but recorded as
     ``FieldError`` entries (critical errors or warnings) keyed by field name
   - ``current_exception`` keeps the exception of the last failed operation
   - Invalid field content stays in place so callers can inspect or correct it

4. FIELD DECLARATION:
   - Scalar fields: any non-domain annotation (str, int, Enum, datetime, ...)
   - Reference fields: ``Optional[OtherDomainClass]``
   - Multi-valued fields: ``List[T]``, ``Set[T]``, ``Dict[K, V]`` of scalars
   - Accumulations: ``Set[Child] = accumulation("parent_field")``, a derived
     view of all registered children referencing this object
   - Transient fields: ``transient(default)``, never persisted

Example Usage:
```python
class Manufacturer(DomainObject):
    name: str = ""
    bikes: Set["Bike"] = accumulation("manufacturer")

class Bike(DomainObject):
    model: str = ""
    manufacturer: Optional[Manufacturer] = None
    sizes: List[str] = Field(default_factory=list)

bike = controller.create(Bike, lambda b: setattr(b, "model", "Tour"))
controller.save(bike)
```
"""

import logging
import random
import threading
import time
from datetime import datetime
from typing import Any, Callable, Dict, List, Optional

from pydantic import BaseModel, ConfigDict, Field, PrivateAttr

ACCUMULATION_KEY = "dompersist_accumulation"
TRANSIENT_KEY = "dompersist_transient"

##############################
# 1) Field declaration helpers
##############################

def accumulation(ref_field: str) -> Any:
    """
    Declare a derived set of all registered objects whose reference field
    ``ref_field`` points at the holder. Never persisted.
    """
    return Field(default_factory=set, exclude=True, json_schema_extra={ACCUMULATION_KEY: ref_field})


def transient(default: Any = None, default_factory: Optional[Callable[[], Any]] = None) -> Any:
    """Declare a field which is kept in memory only."""
    if default_factory is not None:
        return Field(default_factory=default_factory, exclude=True, json_schema_extra={TRANSIENT_KEY: True})
    return Field(default=default, exclude=True, json_schema_extra={TRANSIENT_KEY: True})


##############################
# 2) Id generation
##############################

class _IdGenerator:
    """Process-unique, monotonic ids: millisecond clock * 1e6 + random offset, strictly increasing."""

    def __init__(self):
        self._lock = threading.Lock()
        self._last = 0

    def next_id(self) -> int:
        with self._lock:
            candidate = int(time.time() * 1000) * 1_000_000 + random.randrange(1000) * 1000
            self._last = max(self._last + 1, candidate)
            return self._last


_id_generator = _IdGenerator()


def new_object_id() -> int:
    return _id_generator.next_id()


##############################
# 3) Field errors
##############################

class FieldError(BaseModel):
    """A constraint violation (critical) or a warning attached to one field."""
    is_critical: bool
    obj: Any = Field(exclude=True)
    field: str
    message: str
    invalid_content: Any = None

    model_config = ConfigDict(arbitrary_types_allowed=True)

    def __str__(self) -> str:
        kind = "ERROR" if self.is_critical else "WARNING"
        text = f"{kind} {self.obj!r}.{self.field}: {self.message}"
        if self.invalid_content is not None:
            text += f" (content: {self.invalid_content!r})"
        return text

    def __repr__(self) -> str:
        return self.__str__()


##############################
# 4) Domain object base class
##############################

class DomainObject(BaseModel):
    """
    Base class of all persistable domain classes.

    Subclasses declare their persistent fields as ordinary pydantic fields and
    must be instantiable without arguments (every field needs a default).
    """
    id: int = 0

    model_config = ConfigDict(
        arbitrary_types_allowed=True,
        validate_assignment=False,
        revalidate_instances="never",
    )

    _stored: bool = PrivateAttr(default=False)
    _last_modified_in_db: Optional[datetime] = PrivateAttr(default=None)
    _current_exception: Optional[BaseException] = PrivateAttr(default=None)
    _field_errors: Dict[str, FieldError] = PrivateAttr(default_factory=dict)
    _controller: Any = PrivateAttr(default=None)
    _lock: Any = PrivateAttr(default_factory=threading.RLock)

    # Object graphs are cyclic: never compare or print field by field
    def __eq__(self, other: object) -> bool:
        return self is other

    def __hash__(self) -> int:
        return id(self)

    def __repr__(self) -> str:
        return f"{type(self).__name__}@{self.id}"

    def __str__(self) -> str:
        return self.__repr__()

    # Persistence state

    @property
    def stored(self) -> bool:
        return self._stored

    @property
    def last_modified_in_db(self) -> Optional[datetime]:
        return self._last_modified_in_db

    @property
    def current_exception(self) -> Optional[BaseException]:
        return self._current_exception

    def can_be_deleted(self) -> bool:
        """Business rule hook checked for the object and all of its dependents before deletion."""
        return True

    # Validity

    def set_field_error(self, field: str, message: str, invalid_content: Any = None) -> None:
        self._field_errors[field] = FieldError(
            is_critical=True, obj=self, field=field, message=message, invalid_content=invalid_content)

    def set_field_warning(self, field: str, message: str, invalid_content: Any = None) -> None:
        self._field_errors[field] = FieldError(
            is_critical=False, obj=self, field=field, message=message, invalid_content=invalid_content)

    def clear_field_error(self, field: str) -> None:
        self._field_errors.pop(field, None)

    def clear_errors(self) -> None:
        self._current_exception = None
        self._field_errors.clear()

    def is_valid(self) -> bool:
        """No critical field error and no pending exception."""
        return self._current_exception is None and not any(
            e.is_critical for e in self._field_errors.values())

    def has_errors_or_warnings(self) -> bool:
        return self._current_exception is not None or bool(self._field_errors)

    def invalid_fields(self) -> List[str]:
        return [f for f, e in self._field_errors.items() if e.is_critical]

    def error_or_warning(self, field: str) -> Optional[FieldError]:
        return self._field_errors.get(field)

    def errors_and_warnings(self) -> List[FieldError]:
        return list(self._field_errors.values())

    # Convenience delegation to the owning controller

    def save(self) -> bool:
        """
        Save this object through its controller.

        Never raises; returns False if the save failed, in which case the
        exception is available as ``current_exception``.
        """
        if self._controller is None:
            logging.getLogger("DomainObject").warning(f"{self!r} is not registered in any controller")
            return False
        try:
            self._controller.save(self)
            return True
        except Exception as e:
            logging.getLogger("DomainObject").error(f"Saving {self!r} failed: {e}")
            self._current_exception = e
            return False

    def delete(self) -> bool:
        """Delete this object through its controller. Never raises."""
        if self._controller is None:
            logging.getLogger("DomainObject").warning(f"{self!r} is not registered in any controller")
            return False
        try:
            return self._controller.delete(self)
        except Exception as e:
            logging.getLogger("DomainObject").error(f"Deleting {self!r} failed: {e}")
            self._current_exception = e
            return False
