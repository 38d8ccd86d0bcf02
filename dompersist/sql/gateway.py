"""
Thin typed wrapper around SQLAlchemy Core.

The gateway owns the engine and its bounded connection pool, reflects table
metadata on demand and executes parameterized SELECT / INSERT / UPDATE /
DELETE statements. Every statement runs under a query timeout which is
enforced by the driver where the dialect supports it and by a backstop timer
which cancels the DBAPI connection otherwise. Failed statements are logged
together with their SQL text and re-raised unchanged.
"""
import logging
import threading
from typing import Any, Dict, List, Mapping, Optional, Sequence, Union

from pydantic import BaseModel, ConfigDict, Field
from sqlalchemy import MetaData, Table, create_engine, delete, event, insert, inspect, text, update
from sqlalchemy.engine import Connection, Engine, make_url
from sqlalchemy.exc import NoSuchTableError, SQLAlchemyError
from sqlalchemy.pool import QueuePool
from sqlalchemy.sql import ColumnElement, Executable

from dompersist.errors import ConfigError

AUTO_COMMIT_KEY = "dompersist_auto_commit"

SUPPORTED_BACKENDS = ("sqlite", "postgresql", "mysql", "mariadb", "oracle", "mssql")

# Condition values: scalar -> "=", None -> "IS NULL", list/tuple/set -> "IN (...)"
Where = Union[Mapping[str, Any], ColumnElement]


class ColumnInfo(BaseModel):
    """Reflected metadata of one column."""
    name: str
    sql_type: str
    python_type: Any = None
    nullable: bool = True
    max_length: Optional[int] = None
    primary_key: bool = False

    model_config = ConfigDict(arbitrary_types_allowed=True)


class ForeignKeyInfo(BaseModel):
    columns: List[str]
    referred_table: str
    referred_columns: List[str]


class TableInfo(BaseModel):
    """
    Reflected metadata of one table.

    Columns are looked up case-insensitively; ``ColumnInfo.name`` holds the
    name as the database reports it.
    """
    name: str
    columns: Dict[str, ColumnInfo] = Field(default_factory=dict)
    primary_key: List[str] = Field(default_factory=list)
    foreign_keys: List[ForeignKeyInfo] = Field(default_factory=list)
    unique_constraints: List[List[str]] = Field(default_factory=list)

    def has_column(self, name: str) -> bool:
        return name.upper() in self.columns

    def column(self, name: str) -> ColumnInfo:
        try:
            return self.columns[name.upper()]
        except KeyError:
            raise ConfigError(f"Table {self.name} has no column {name}") from None


class SqlGateway:
    """Pooled access to one relational database."""

    _logger = logging.getLogger("SqlGateway")

    def __init__(self, url: str, pool_size: int = 5, pool_timeout: float = 30.0,
                 query_timeout: float = 30.0, echo: bool = False):
        self.url = make_url(url)
        self.backend = self.url.get_backend_name()
        self.query_timeout = query_timeout

        if self.backend not in SUPPORTED_BACKENDS:
            raise ConfigError(f"Unsupported database type '{self.backend}'")

        connect_args: Dict[str, Any] = {}
        if self.backend == "sqlite":
            if self.url.database in (None, "", ":memory:"):
                raise ConfigError("In-memory SQLite databases cannot be shared by a connection pool")
            connect_args = {"timeout": query_timeout, "check_same_thread": False}
        elif self.backend == "postgresql":
            connect_args = {"options": f"-c statement_timeout={int(query_timeout * 1000)}"}

        self.engine: Engine = create_engine(
            self.url,
            echo=echo,
            poolclass=QueuePool,
            pool_size=pool_size,
            max_overflow=0,
            pool_timeout=pool_timeout,
            connect_args=connect_args,
        )
        if self.backend == "sqlite":
            self._configure_sqlite(self.engine)

        self.metadata = MetaData()
        self._tables: Dict[str, Table] = {}
        self._infos: Dict[str, TableInfo] = {}
        self._lock = threading.Lock()
        self._logger.info(f"Connection pool for {self.url.render_as_string(hide_password=True)} "
                          f"created (size {pool_size})")

    @staticmethod
    def _configure_sqlite(engine: Engine) -> None:
        # Let SQLAlchemy emit BEGIN itself so SAVEPOINTs work; take the write
        # lock up front so concurrent writers queue on the busy timeout
        @event.listens_for(engine, "connect")
        def _on_connect(dbapi_connection, connection_record):
            dbapi_connection.isolation_level = None
            cursor = dbapi_connection.cursor()
            cursor.execute("PRAGMA foreign_keys=ON")
            cursor.close()

        @event.listens_for(engine, "begin")
        def _on_begin(conn):
            conn.exec_driver_sql("BEGIN IMMEDIATE")

    def connect(self) -> Connection:
        return self.engine.connect()

    def close(self) -> None:
        self.engine.dispose()
        self._logger.info("Connection pool disposed")

    ##############################
    # Metadata
    ##############################

    def register_table(self, conn: Connection, name: str) -> TableInfo:
        """Reflect table ``name`` (case-insensitive) once and cache its metadata."""
        key = name.upper()
        with self._lock:
            if key in self._infos:
                return self._infos[key]

            inspector = inspect(conn)
            actual = next((t for t in inspector.get_table_names() if t.upper() == key), None)
            if actual is None:
                raise ConfigError(f"Table {name} does not exist in database")
            try:
                table = Table(actual, self.metadata, autoload_with=conn)
            except NoSuchTableError as e:
                raise ConfigError(f"Table {name} cannot be reflected: {e}") from e

            info = TableInfo(name=actual)
            for column in table.columns:
                try:
                    python_type = column.type.python_type
                except NotImplementedError:
                    python_type = None
                info.columns[column.name.upper()] = ColumnInfo(
                    name=column.name,
                    sql_type=str(column.type),
                    python_type=python_type,
                    nullable=bool(column.nullable) and not column.primary_key,
                    max_length=getattr(column.type, "length", None),
                    primary_key=column.primary_key,
                )
            info.primary_key = [c.name for c in table.primary_key.columns]
            for fk in inspector.get_foreign_keys(actual):
                info.foreign_keys.append(ForeignKeyInfo(
                    columns=fk["constrained_columns"],
                    referred_table=fk["referred_table"],
                    referred_columns=fk["referred_columns"]))
            for uc in inspector.get_unique_constraints(actual):
                info.unique_constraints.append(list(uc["column_names"]))
            for index in inspector.get_indexes(actual):
                columns = [c for c in index["column_names"] if c is not None]
                if index.get("unique") and columns not in info.unique_constraints:
                    info.unique_constraints.append(columns)

            self._tables[key] = table
            self._infos[key] = info
            self._logger.debug(f"Registered table {actual} with columns {list(info.columns)}")
            return info

    def table(self, name: str) -> Table:
        try:
            return self._tables[name.upper()]
        except KeyError:
            raise ConfigError(f"Table {name} was not registered") from None

    def table_info(self, name: str) -> TableInfo:
        try:
            return self._infos[name.upper()]
        except KeyError:
            raise ConfigError(f"Table {name} was not registered") from None

    def column(self, table_name: str, column_name: str):
        """SQLAlchemy column object of a registered table."""
        info = self.table_info(table_name)
        return self.table(table_name).c[info.column(column_name).name]

    ##############################
    # Statements
    ##############################

    def select(self, conn: Connection, statement: Union[str, Executable],
               params: Optional[Mapping[str, Any]] = None) -> List[Dict[str, Any]]:
        if isinstance(statement, str):
            statement = text(statement)
        result = self._execute(conn, statement, params)
        return [dict(row) for row in result.mappings()]

    def insert(self, conn: Connection, table_name: str, column_values: Mapping[str, Any]) -> Any:
        """INSERT one row; returns the (first) primary key value of the new row."""
        statement = insert(self.table(table_name)).values(self._columns(table_name, column_values))
        result = self._execute(conn, statement)
        key = result.inserted_primary_key
        return key[0] if key else None

    def insert_many(self, conn: Connection, table_name: str, rows: Sequence[Mapping[str, Any]]) -> int:
        """INSERT several rows of identical shape with one executemany."""
        if not rows:
            return 0
        table = self.table(table_name)
        info = self.table_info(table_name)
        payload = [{info.column(k).name: v for k, v in row.items()} for row in rows]
        self._execute(conn, insert(table), payload)
        return len(payload)

    def update(self, conn: Connection, table_name: str, column_values: Mapping[str, Any], where: Where) -> int:
        statement = (update(self.table(table_name))
                     .where(self._where(table_name, where))
                     .values(self._columns(table_name, column_values)))
        return self._execute(conn, statement).rowcount

    def delete(self, conn: Connection, table_name: str, where: Where) -> int:
        statement = delete(self.table(table_name)).where(self._where(table_name, where))
        return self._execute(conn, statement).rowcount

    def _columns(self, table_name: str, column_values: Mapping[str, Any]) -> Dict[str, Any]:
        info = self.table_info(table_name)
        return {info.column(k).name: v for k, v in column_values.items()}

    def _where(self, table_name: str, where: Where) -> ColumnElement:
        if isinstance(where, ColumnElement):
            return where
        clauses = []
        for name, value in where.items():
            column = self.column(table_name, name)
            if value is None:
                clauses.append(column.is_(None))
            elif isinstance(value, (list, tuple, set, frozenset)):
                clauses.append(column.in_(list(value)))
            else:
                clauses.append(column == value)
        if not clauses:
            raise ValueError(f"Refusing to run unconditional statement on {table_name}")
        condition = clauses[0]
        for clause in clauses[1:]:
            condition = condition & clause
        return condition

    def _execute(self, conn: Connection, statement: Executable, params: Any = None):
        timer = threading.Timer(self.query_timeout, self._cancel, args=(conn, statement))
        timer.daemon = True
        timer.start()
        try:
            if params is None:
                result = conn.execute(statement)
            else:
                result = conn.execute(statement, params)
            if conn.info.get(AUTO_COMMIT_KEY):
                conn.commit()
            return result
        except SQLAlchemyError as e:
            cause = getattr(e, "orig", None) or e
            self._logger.error(f"{type(cause).__name__}: {cause} -- statement: {self._sql_text(conn, statement)}")
            raise
        finally:
            timer.cancel()

    def _cancel(self, conn: Connection, statement: Executable) -> None:
        """Backstop for drivers whose own statement timeout did not fire."""
        self._logger.warning(f"Statement exceeded {self.query_timeout}s and is cancelled: "
                             f"{self._sql_text(conn, statement)}")
        try:
            dbapi_connection = conn.connection.driver_connection
            if hasattr(dbapi_connection, "interrupt"):
                dbapi_connection.interrupt()
            elif hasattr(dbapi_connection, "cancel"):
                dbapi_connection.cancel()
        except Exception as e:
            self._logger.error(f"Cancelling statement failed: {e}")

    @staticmethod
    def _sql_text(conn: Connection, statement: Executable) -> str:
        try:
            return str(statement.compile(dialect=conn.dialect)).replace("\n", " ")
        except Exception:
            return repr(statement)
