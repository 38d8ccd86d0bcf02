"""
Common fixtures and setup for persistence tests.
Provides the test domain classes, the matching database schema and
controllers bound to a fresh SQLite database file per test.
"""
import logging
from enum import Enum
from typing import Any, Callable, ClassVar, Dict, List, Optional, Set

import pytest
from pydantic import Field
from sqlalchemy import (
    BigInteger, Boolean, Column, DateTime, Float, ForeignKey, Integer, MetaData, String, Table,
    create_engine, event, text,
)

from dompersist.config import DomainSettings
from dompersist.domain.entity import DomainObject, accumulation, transient
from dompersist.sql.controller import SqlDomainController

logging.basicConfig(level=logging.INFO)


# Custom test markers
def pytest_configure(config):
    """Configure custom markers."""
    markers = [
        "slow: marks tests as slow",
        "concurrency: marks tests running several threads against one database",
    ]
    for marker in markers:
        config.addinivalue_line("markers", marker)


# ========================================================================
# Test domain classes
# ========================================================================

class Color(Enum):
    RED = "red"
    BLUE = "blue"
    ANTHRACITE_GREY = "anthracite grey"


class Manufacturer(DomainObject):
    """Referenced by bikes and warranties."""
    name: str = ""
    country: Optional[str] = None
    bikes: Set["Bike"] = accumulation("manufacturer")


class Bike(DomainObject):
    """Abstract: only its subclasses are object domain classes."""
    name: str = ""
    color: Optional[Color] = None
    manufacturer: Optional[Manufacturer] = None
    sizes: List[str] = Field(default_factory=list)
    notes: str = transient("")


class CityBike(Bike):
    basket: bool = False
    accessories: Set[Optional[str]] = Field(default_factory=set)


class RaceBike(Bike):
    weight: float = 0.0
    ratings: Dict[str, int] = Field(default_factory=dict)


class Node(DomainObject):
    """Nullable self reference: cycles are saved through the deferred pass."""
    name: str = ""
    next: Optional["Node"] = None


class Part(DomainObject):
    """Non-nullable self reference."""
    label: str = ""
    required: Optional["Part"] = None


class Account(DomainObject):
    code: str = ""
    name: Optional[str] = None
    description: str = ""


class Job(DomainObject):
    use_data_horizon: ClassVar[bool] = True

    title: str = ""
    state: str = "NEW"


class Warranty(DomainObject):
    manufacturer: Optional[Manufacturer] = None
    locked: bool = False

    def can_be_deleted(self) -> bool:
        return not self.locked


DOMAIN_CLASSES = [Manufacturer, CityBike, RaceBike, Node, Part, Account, Job, Warranty]


# ========================================================================
# Database schema matching the domain classes
# ========================================================================

metadata = MetaData()


def _class_table(name: str, *columns: Column, base: Optional[str] = None) -> Table:
    if base is None:
        keys = [Column("ID", BigInteger, primary_key=True, autoincrement=False),
                Column("DOMAIN_CLASS", String(64), nullable=False),
                Column("LAST_MODIFIED", DateTime)]
    else:
        keys = [Column("ID", BigInteger, ForeignKey(f"{base}.ID"), primary_key=True, autoincrement=False),
                Column("DOMAIN_CLASS", String(64), nullable=False)]
    return Table(name, metadata, *keys, *columns)


_class_table("DOM_MANUFACTURER",
             Column("NAME", String(64)),
             Column("COUNTRY", String(32)))
_class_table("DOM_BIKE",
             Column("NAME", String(64)),
             Column("COLOR", String(8)),
             Column("MANUFACTURER_ID", BigInteger, ForeignKey("DOM_MANUFACTURER.ID")))
Table("DOM_BIKE_SIZES", metadata,
      Column("BIKE_ID", BigInteger, ForeignKey("DOM_BIKE.ID"), nullable=False),
      Column("ELEMENT", String(16)),
      Column("ELEMENT_ORDER", Integer, nullable=False))
_class_table("DOM_CITY_BIKE",
             Column("BASKET", Boolean),
             base="DOM_BIKE")
Table("DOM_CITY_BIKE_ACCESSORIES", metadata,
      Column("CITY_BIKE_ID", BigInteger, ForeignKey("DOM_CITY_BIKE.ID"), nullable=False),
      Column("ELEMENT", String(32)))
_class_table("DOM_RACE_BIKE",
             Column("WEIGHT", Float),
             base="DOM_BIKE")
Table("DOM_RACE_BIKE_RATINGS", metadata,
      Column("RACE_BIKE_ID", BigInteger, ForeignKey("DOM_RACE_BIKE.ID"), nullable=False),
      Column("ENTRY_KEY", String(32)),
      Column("ENTRY_VALUE", Integer))
_class_table("DOM_NODE",
             Column("NAME", String(32)),
             Column("NEXT_ID", BigInteger, ForeignKey("DOM_NODE.ID")))
_class_table("DOM_PART",
             Column("LABEL", String(32)),
             Column("REQUIRED_ID", BigInteger, ForeignKey("DOM_PART.ID"), nullable=False))
_class_table("DOM_ACCOUNT",
             Column("CODE", String(16), unique=True),
             Column("NAME", String(32), nullable=False),
             Column("DESCRIPTION", String(10)))
_class_table("DOM_JOB",
             Column("TITLE", String(64)),
             Column("STATE", String(16)))
Table("DOM_JOB_IN_PROGRESS", metadata,
      Column("ID", BigInteger, primary_key=True, autoincrement=False),
      Column("LAST_MODIFIED", DateTime))
Table("DOM_BIKE_IN_PROGRESS", metadata,
      Column("ID", BigInteger, primary_key=True, autoincrement=False))
_class_table("DOM_WARRANTY",
             Column("MANUFACTURER_ID", BigInteger, ForeignKey("DOM_MANUFACTURER.ID")),
             Column("LOCKED", Boolean))


# ========================================================================
# Fixtures
# ========================================================================

@pytest.fixture
def db_url(tmp_path) -> str:
    """Fresh database file with the complete schema."""
    url = f"sqlite:///{tmp_path / 'domain.db'}"
    engine = create_engine(url)
    metadata.create_all(engine)
    engine.dispose()
    return url


@pytest.fixture
def settings(db_url) -> DomainSettings:
    return DomainSettings(db_url=db_url, pool_size=4, pool_timeout=10, query_timeout=10)


@pytest.fixture
def make_controller(settings):
    """Factory for independent controllers (one per simulated process)."""
    controllers: List[SqlDomainController] = []

    def _make() -> SqlDomainController:
        controller = SqlDomainController(settings).initialize(*DOMAIN_CLASSES)
        controllers.append(controller)
        return controller

    yield _make
    for controller in controllers:
        controller.close()


@pytest.fixture
def controller(make_controller) -> SqlDomainController:
    return make_controller()


@pytest.fixture
def other_controller(make_controller) -> SqlDomainController:
    """A second controller on the same database, standing in for another process."""
    return make_controller()


@pytest.fixture
def statements(controller) -> List[str]:
    """SQL statements executed by ``controller``, recorded in order."""
    recorded: List[str] = []

    def _record(conn, cursor, statement, parameters, context, executemany):
        recorded.append(" ".join(statement.split()))

    event.listen(controller.gateway.engine, "before_cursor_execute", _record)
    yield recorded
    event.remove(controller.gateway.engine, "before_cursor_execute", _record)


@pytest.fixture
def query(db_url) -> Callable[..., List[Dict[str, Any]]]:
    """Run raw SQL against the test database outside of any controller."""
    def _query(sql: str, **params) -> List[Dict[str, Any]]:
        engine = create_engine(db_url)
        try:
            with engine.begin() as conn:
                result = conn.execute(text(sql), params)
                if not result.returns_rows:
                    return []
                return [dict(row) for row in result.mappings()]
        finally:
            engine.dispose()

    return _query


def count_statements(statements: List[str], verb: str) -> int:
    return sum(1 for s in statements if s.upper().startswith(verb.upper()))
