import logging

from dompersist.domain.entity import DomainObject
from dompersist.domain.schema import FieldKind
from dompersist.domain.store import ObjectStore
from dompersist.sql.records import record_value
from dompersist.sql.registry import SqlRegistry


class ConstraintChecker:
    """
    Finds the fields responsible for a failed INSERT by checking table
    constraints against in-memory state. Checks run in ascending order of
    severity (column size, uniqueness, not-null) so the most specific error
    ends up on a field checked by more than one of them.
    """

    _logger = logging.getLogger("ConstraintChecker")

    def __init__(self, registry: SqlRegistry, store: ObjectStore):
        self.registry = registry
        self.store = store

    def has_constraint_violations(self, obj: DomainObject) -> bool:
        violated = self.has_column_size_violations(obj)
        violated = self.has_unique_constraint_violations(obj) or violated
        violated = self.has_not_null_constraint_violations(obj) or violated
        return violated

    def has_column_size_violations(self, obj: DomainObject) -> bool:
        """Enum names too long for their column (long strings are truncated on save instead)."""
        violated = False
        for f in self.registry.data_fields(type(obj)):
            if f.kind is not FieldKind.SCALAR:
                continue
            value = getattr(obj, f.name)
            max_length = self.registry.column_info(f).max_length
            if value is None or not max_length or isinstance(value, str):
                continue
            text = getattr(value, "name", None)
            if isinstance(text, str) and len(text) > max_length:
                self._logger.error(f"Field {f}: value {text!r} of {obj!r} is too long for column with "
                                   f"maximum length {max_length}")
                obj.set_field_error(f.name, "COLUMN_SIZE_VIOLATION", value)
                violated = True
        return violated

    def has_unique_constraint_violations(self, obj: DomainObject) -> bool:
        violated = False
        for fields in self.registry.unique_field_groups(type(obj)):
            values = [record_value(obj, f) for f in fields]
            if all(v is None for v in values):
                continue
            holder_class = fields[0].declaring_class
            same = self.store.count(holder_class, lambda o: [record_value(o, f) for f in fields] == values)
            if same > 1:
                names = [f.name for f in fields]
                self._logger.error(f"Fields {names} of {obj!r} are unique by constraint but another "
                                   f"{holder_class.__name__} object has the same values {values}")
                for f in fields:
                    obj.set_field_error(f.name, f"COMBINED_UNIQUE_CONSTRAINT_VIOLATION_OF {names}: {values}",
                                        getattr(obj, f.name))
                violated = True
        return violated

    def has_not_null_constraint_violations(self, obj: DomainObject) -> bool:
        violated = False
        for f in self.registry.data_fields(type(obj)):
            if not self.registry.is_nullable(f) and getattr(obj, f.name) is None:
                self._logger.error(f"Field {f} of {obj!r} is null but its column is NOT NULL")
                obj.set_field_error(f.name, "NOT_NULL_CONSTRAINT_VIOLATION")
                violated = True
        return violated
