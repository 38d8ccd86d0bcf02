"""
Exception hierarchy of the persistence engine.

SQL failures are not wrapped: they surface as ``sqlalchemy.exc.SQLAlchemyError``
after being logged together with the failed statement. Field-level problems
(constraint violations, truncations, discarded changes) are recorded on the
object as ``FieldError`` entries instead of being raised.
"""


class DomainError(Exception):
    """Base class of all engine errors."""


class ConfigError(DomainError):
    """Invalid domain class definitions or table metadata. Fatal at startup."""


class ObjectNotFoundError(DomainError, KeyError):
    """No registered object for the requested (class, id)."""

    def __init__(self, domain_class: type, object_id: int):
        self.domain_class = domain_class
        self.object_id = object_id
        super().__init__(f"{domain_class.__name__}@{object_id} is not registered")

    def __str__(self) -> str:
        return self.args[0]


class SaveError(DomainError):
    """Save could not be performed; the transaction was rolled back."""


class CircularReferenceError(SaveError):
    """Unsaved objects reference each other through non-nullable columns."""


class ObjectDeletedError(SaveError):
    """UPDATE hit no row: the object was deleted by another process."""
