"""
Entry table maintenance for multi-valued fields.

Sets and maps are diffed against the previously stored content: removed
elements / keys are deleted (NULL separately, IN lists cannot match it), new
ones inserted and, for maps, changed values updated in place. Lists are
rewritten completely because position changes are not cheaply diffable:
all rows of the owner are deleted and the new sequence is inserted with
ELEMENT_ORDER 0..n-1.
"""
import logging
from typing import Any, Dict, List

from sqlalchemy.engine import Connection

from dompersist.domain.schema import CollectionKind, FieldDescriptor
from dompersist.sql.conversion import to_column_value
from dompersist.sql.gateway import SqlGateway
from dompersist.sql.registry import ELEMENT_COL, KEY_COL, ORDER_COL, VALUE_COL, SqlRegistry

logger = logging.getLogger("EntryTables")


class EntryTableWriter:
    """Writes the entry rows of one owner object."""

    def __init__(self, registry: SqlRegistry, gateway: SqlGateway, conn: Connection, max_in_clause: int):
        self.registry = registry
        self.gateway = gateway
        self.conn = conn
        self.max_in_clause = max_in_clause

    def update(self, owner_id: int, f: FieldDescriptor, old: Any, new: Any) -> None:
        table = self.registry.entry_table_name(f)
        owner_col = self.registry.entry_owner_column(f)
        if f.collection_kind is CollectionKind.LIST:
            self._rewrite_list(table, owner_col, owner_id, list(new))
        elif f.collection_kind is CollectionKind.SET:
            self._update_set(table, owner_col, owner_id, set(old), set(new))
        else:
            self._update_map(table, owner_col, owner_id, dict(old), dict(new))

    def _rewrite_list(self, table: str, owner_col: str, owner_id: int, new: List[Any]) -> None:
        deleted = self.gateway.delete(self.conn, table, {owner_col: owner_id})
        rows = [{owner_col: owner_id, ELEMENT_COL: to_column_value(e), ORDER_COL: i} for i, e in enumerate(new)]
        self.gateway.insert_many(self.conn, table, rows)
        logger.debug(f"{table}: replaced {deleted} row(s) of owner {owner_id} by {len(rows)}")

    def _update_set(self, table: str, owner_col: str, owner_id: int, old: set, new: set) -> None:
        self._delete_values(table, owner_col, owner_id, ELEMENT_COL, [e for e in old if e not in new])
        rows = [{owner_col: owner_id, ELEMENT_COL: to_column_value(e)} for e in new if e not in old]
        self.gateway.insert_many(self.conn, table, rows)

    def _update_map(self, table: str, owner_col: str, owner_id: int, old: Dict[Any, Any], new: Dict[Any, Any]) -> None:
        self._delete_values(table, owner_col, owner_id, KEY_COL, [k for k in old if k not in new])
        for key, value in new.items():
            if key in old and old[key] != value:
                self.gateway.update(self.conn, table, {VALUE_COL: to_column_value(value)},
                                    {owner_col: owner_id, KEY_COL: to_column_value(key)})
        rows = [{owner_col: owner_id, KEY_COL: to_column_value(k), VALUE_COL: to_column_value(v)}
                for k, v in new.items() if k not in old]
        self.gateway.insert_many(self.conn, table, rows)

    def _delete_values(self, table: str, owner_col: str, owner_id: int, column: str, removed: List[Any]) -> None:
        if not removed:
            return
        if any(v is None for v in removed):
            self.gateway.delete(self.conn, table, {owner_col: owner_id, column: None})
        values = [to_column_value(v) for v in removed if v is not None]
        for i in range(0, len(values), self.max_in_clause):
            self.gateway.delete(self.conn, table, {owner_col: owner_id, column: values[i:i + self.max_in_clause]})

    def delete_all(self, owner_id: int, f: FieldDescriptor) -> int:
        return self.gateway.delete(self.conn, self.registry.entry_table_name(f),
                                   {self.registry.entry_owner_column(f): owner_id})
