"""
Exclusive allocation: database-uniqueness-as-mutex.

A shadow table per purpose holds one row per allocated object id. Inserting
that row is the acquisition: the primary key makes exactly one concurrent
INSERT succeed, across threads and processes. Deleting the row releases the
allocation. A failed INSERT because of the key constraint is not an error but
means "held by somebody else".

The allocator works on plain ids and table names and is independent of the
object store and the save / delete engines.
"""
import logging
import threading
from typing import Set, Tuple

from pydantic import BaseModel
from sqlalchemy import select
from sqlalchemy.engine import Connection
from sqlalchemy.exc import IntegrityError

from dompersist.sql.gateway import SqlGateway
from dompersist.sql.records import utc_now
from dompersist.sql.registry import ID_COL, LAST_MODIFIED_COL


class AllocationStatistics(BaseModel):
    """Outcome counters of a batch allocation."""
    successful: int = 0
    in_use_by_this_instance: int = 0
    in_use_by_other_instance: int = 0

    def __str__(self) -> str:
        return (f"{self.successful} allocated, {self.in_use_by_this_instance} in use by this instance, "
                f"{self.in_use_by_other_instance} in use by other instances")


class ExclusiveAllocator:
    """Claims and releases shadow rows."""

    _logger = logging.getLogger("ExclusiveAllocation")

    def __init__(self, gateway: SqlGateway):
        self.gateway = gateway
        self._lock = threading.Lock()
        self._held: Set[Tuple[str, int]] = set()

    def register_shadow_table(self, conn: Connection, table: str) -> None:
        self.gateway.register_table(conn, table)

    def holds(self, table: str, object_id: int) -> bool:
        """True if this instance currently holds the allocation."""
        with self._lock:
            return (table.upper(), object_id) in self._held

    def try_acquire(self, conn: Connection, table: str, object_id: int) -> bool:
        """
        INSERT the shadow row for ``object_id``. Returns False if the row
        exists already (allocated by this or another instance). The caller
        commits; other SQL failures propagate.
        """
        key = (table.upper(), object_id)
        with self._lock:
            if key in self._held:
                self._logger.debug(f"{table}@{object_id} is already allocated by this instance")
                return False

        values = {ID_COL: object_id}
        if self.gateway.table_info(table).has_column(LAST_MODIFIED_COL):
            values[LAST_MODIFIED_COL] = utc_now()
        try:
            self.gateway.insert(conn, table, values)
        except IntegrityError:
            self._logger.info(f"{table}@{object_id} is allocated by another instance")
            conn.rollback()
            return False

        with self._lock:
            self._held.add(key)
        self._logger.debug(f"Allocated {table}@{object_id}")
        return True

    def release(self, conn: Connection, table: str, object_id: int) -> bool:
        """DELETE the shadow row; False if there was none."""
        count = self.gateway.delete(conn, table, {ID_COL: object_id})
        with self._lock:
            self._held.discard((table.upper(), object_id))
        if count == 0:
            self._logger.warning(f"{table}@{object_id} was not allocated")
            return False
        self._logger.debug(f"Released {table}@{object_id}")
        return True

    def is_allocated(self, conn: Connection, table: str, object_id: int) -> bool:
        """True if any instance holds the allocation."""
        id_column = self.gateway.column(table, ID_COL)
        rows = self.gateway.select(conn, select(id_column).where(id_column == object_id))
        return bool(rows)

    def allocated_ids_condition(self, table: str, id_column):
        """``id_column NOT IN (SELECT ID FROM <shadow table>)``"""
        return id_column.not_in(select(self.gateway.column(table, ID_COL)))

    def forget(self, table: str, object_id: int) -> None:
        with self._lock:
            self._held.discard((table.upper(), object_id))
