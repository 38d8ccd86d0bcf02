"""
Association of domain classes with database tables.

Naming rules (the database schema is generated to match them):

    class Bike              -> table  DOM_BIKE
    field frame_size        -> column FRAME_SIZE
    reference manufacturer  -> column MANUFACTURER_ID
    multi-valued Bike.sizes -> entry table DOM_BIKE_SIZES, owner column BIKE_ID,
                               ELEMENT [, ELEMENT_ORDER] or ENTRY_KEY, ENTRY_VALUE
    allocation purpose      -> shadow table DOM_BIKE_IN_PROGRESS (ID [, LAST_MODIFIED])

Every class table carries ID (primary key, shared along the inheritance chain)
and DOMAIN_CLASS (concrete class discriminator); the root class table carries
LAST_MODIFIED. A class may override its table name with ``__tablename__``.
"""
import re
import logging
from typing import Dict, List

from sqlalchemy.engine import Connection

from dompersist.domain.schema import CollectionKind, FieldDescriptor, FieldKind, SchemaRegistry
from dompersist.errors import ConfigError
from dompersist.sql.gateway import ColumnInfo, SqlGateway, TableInfo

ID_COL = "ID"
DOMAIN_CLASS_COL = "DOMAIN_CLASS"
LAST_MODIFIED_COL = "LAST_MODIFIED"
ELEMENT_COL = "ELEMENT"
ORDER_COL = "ELEMENT_ORDER"
KEY_COL = "ENTRY_KEY"
VALUE_COL = "ENTRY_VALUE"

TABLE_PREFIX = "DOM_"

RESERVED_WORDS = {
    "ORDER", "GROUP", "USER", "KEY", "VALUE", "TYPE", "DATE", "TIME", "NUMBER", "LEVEL", "SIZE",
    "COMMENT", "SELECT", "FROM", "WHERE", "TABLE", "INDEX", "CHECK", "DEFAULT", "FILE", "START",
    "END", "LIMIT", "OFFSET", "ROW", "ROWS", "COUNT", "MODE", "PASSWORD", "CLASS",
}


def to_sql_name(name: str) -> str:
    """'frameSize' / 'frame_size' / 'FrameSize' -> 'FRAME_SIZE'"""
    return re.sub(r"(?<=[a-z0-9])(?=[A-Z])", "_", name).upper()


class SqlRegistry(SchemaRegistry):
    """Schema registry extended by table and column bindings."""

    _logger = logging.getLogger("SqlRegistry")

    def __init__(self):
        super().__init__()
        self._table_infos: Dict[type, TableInfo] = {}
        self._column_infos: Dict[FieldDescriptor, ColumnInfo] = {}
        self._entry_infos: Dict[FieldDescriptor, TableInfo] = {}
        self._bound = False

    ##############################
    # Naming
    ##############################

    def table_name(self, cls: type) -> str:
        explicit = cls.__dict__.get("__tablename__")
        if explicit:
            return str(explicit).upper()
        return TABLE_PREFIX + to_sql_name(cls.__name__)

    def column_name(self, f: FieldDescriptor) -> str:
        name = to_sql_name(f.name)
        if f.kind is FieldKind.REFERENCE:
            return name + "_ID"
        if name in RESERVED_WORDS or name in (ID_COL, DOMAIN_CLASS_COL, LAST_MODIFIED_COL):
            return TABLE_PREFIX + name
        return name

    def record_key(self, f: FieldDescriptor) -> str:
        """Key of a field in object records: table-qualified column or entry table name."""
        if f.kind is FieldKind.MULTI_VALUED:
            return self.entry_table_name(f)
        return f"{self.table_name(f.declaring_class)}.{self.column_name(f)}"

    def entry_table_name(self, f: FieldDescriptor) -> str:
        return f"{self.table_name(f.declaring_class)}_{to_sql_name(f.name)}"

    def entry_owner_column(self, f: FieldDescriptor) -> str:
        table = self.table_name(f.declaring_class)
        if table.startswith(TABLE_PREFIX):
            table = table[len(TABLE_PREFIX):]
        return f"{table}_ID"

    def shadow_table_name(self, cls: type, purpose: str) -> str:
        return f"{self.table_name(cls)}_{to_sql_name(purpose)}"

    ##############################
    # Binding
    ##############################

    def bind(self, gateway: SqlGateway, conn: Connection) -> None:
        """
        Reflect the tables of all registered classes and check that every
        field has its column or entry table. Raises ConfigError otherwise.
        """
        for cls in self.domain_classes():
            info = gateway.register_table(conn, self.table_name(cls))
            for required in (ID_COL, DOMAIN_CLASS_COL):
                if not info.has_column(required):
                    raise ConfigError(f"Table {info.name} of {cls.__name__} lacks column {required}")
            if self.superclass(cls) is None and not info.has_column(LAST_MODIFIED_COL):
                raise ConfigError(f"Base table {info.name} of {cls.__name__} lacks column {LAST_MODIFIED_COL}")
            self._table_infos[cls] = info

            for f in self.own_fields(cls):
                if f.kind in (FieldKind.SCALAR, FieldKind.REFERENCE):
                    column = self.column_name(f)
                    if not info.has_column(column):
                        raise ConfigError(f"Column {info.name}.{column} for field {f} does not exist")
                    self._column_infos[f] = info.column(column)
                elif f.kind is FieldKind.MULTI_VALUED:
                    self._entry_infos[f] = self._bind_entry_table(gateway, conn, f)

        self._bound = True
        self._logger.info(f"Bound {len(self._table_infos)} domain classes to their tables")

    def _bind_entry_table(self, gateway: SqlGateway, conn: Connection, f: FieldDescriptor) -> TableInfo:
        info = gateway.register_table(conn, self.entry_table_name(f))
        required = [self.entry_owner_column(f)]
        if f.collection_kind is CollectionKind.MAP:
            required += [KEY_COL, VALUE_COL]
        else:
            required.append(ELEMENT_COL)
        if f.collection_kind is CollectionKind.LIST:
            required.append(ORDER_COL)
        for column in required:
            if not info.has_column(column):
                raise ConfigError(f"Entry table {info.name} for field {f} lacks column {column}")
        return info

    @property
    def is_bound(self) -> bool:
        return self._bound

    def table_info(self, cls: type) -> TableInfo:
        try:
            return self._table_infos[cls]
        except KeyError:
            raise ConfigError(f"{cls.__name__} is not bound to a table") from None

    def column_info(self, f: FieldDescriptor) -> ColumnInfo:
        return self._column_infos[f]

    def entry_table_info(self, f: FieldDescriptor) -> TableInfo:
        return self._entry_infos[f]

    def is_nullable(self, f: FieldDescriptor) -> bool:
        return self._column_infos[f].nullable

    def unique_field_groups(self, cls: type) -> List[List[FieldDescriptor]]:
        """Fields of ``cls``' chain which are UNIQUE (alone or combined) by table constraint."""
        groups = []
        for c in self.chain(cls):
            info = self.table_info(c)
            by_column = {self.column_name(f): f for f in self.own_fields(c)
                         if f.kind in (FieldKind.SCALAR, FieldKind.REFERENCE)}
            for columns in info.unique_constraints:
                fields = [by_column.get(col.upper()) for col in columns]
                if fields and all(fields):
                    groups.append(fields)
        return groups
