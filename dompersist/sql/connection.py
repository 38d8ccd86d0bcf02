import logging
from contextlib import contextmanager
from typing import Iterator, Optional

from sqlalchemy.engine import Connection

from dompersist.sql.gateway import AUTO_COMMIT_KEY, SqlGateway


class SqlConnection:
    """
    One pooled connection carrying one transaction.

    Used as a context manager: the transaction is committed when the block
    ends normally and rolled back when it raises; either way the connection
    returns to the pool. With ``auto_commit`` every statement is committed
    on its own.
    """

    _logger = logging.getLogger("SqlConnection")

    def __init__(self, gateway: SqlGateway, auto_commit: bool = False):
        self.gateway = gateway
        self.auto_commit = auto_commit
        self._connection: Optional[Connection] = None

    def open(self) -> "SqlConnection":
        self._connection = self.gateway.connect()
        self._connection.info[AUTO_COMMIT_KEY] = self.auto_commit
        return self

    @property
    def connection(self) -> Connection:
        if self._connection is None:
            raise RuntimeError("Connection is not open")
        return self._connection

    def commit(self) -> None:
        self.connection.commit()

    def rollback(self) -> None:
        self._logger.debug("Rolling back transaction")
        self.connection.rollback()

    @contextmanager
    def savepoint(self) -> Iterator[None]:
        """Make a failing statement sequence roll back on its own, leaving the transaction usable."""
        if self.auto_commit:
            yield
            return
        nested = self.connection.begin_nested()
        try:
            yield
        except Exception:
            nested.rollback()
            raise
        else:
            nested.commit()

    def close(self, commit: bool = True) -> None:
        if self._connection is None:
            return
        try:
            if commit:
                self._connection.commit()
            else:
                self._connection.rollback()
        finally:
            self._connection.info.pop(AUTO_COMMIT_KEY, None)
            self._connection.close()
            self._connection = None

    def __enter__(self) -> "SqlConnection":
        return self.open()

    def __exit__(self, exc_type, exc_value, traceback) -> bool:
        self.close(commit=exc_type is None)
        return False
