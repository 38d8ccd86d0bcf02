"""
Tests for the schema registry: field classification, inheritance chains and
table / column naming.
"""
from typing import List, Optional

import pytest

from dompersist.domain.entity import DomainObject
from dompersist.domain.schema import CollectionKind, FieldKind, SchemaRegistry
from dompersist.errors import ConfigError
from dompersist.sql.controller import SqlDomainController
from dompersist.sql.registry import SqlRegistry, to_sql_name
from conftest import (
    DOMAIN_CLASSES, Account, Bike, CityBike, Color, Manufacturer, Node, Part, RaceBike, Warranty,
)


@pytest.fixture
def registry() -> SqlRegistry:
    reg = SqlRegistry()
    reg.register(*DOMAIN_CLASSES)
    return reg


def test_field_classification(registry):
    """Every declared field is classified exactly once."""
    kinds = {f.name: f.kind for f in registry.fields(CityBike)}
    assert kinds == {
        "name": FieldKind.SCALAR,
        "color": FieldKind.SCALAR,
        "manufacturer": FieldKind.REFERENCE,
        "sizes": FieldKind.MULTI_VALUED,
        "basket": FieldKind.SCALAR,
        "accessories": FieldKind.MULTI_VALUED,
    }
    assert registry.find_field(CityBike, "notes") is None  # transient

    color = registry.find_field(Bike, "color")
    assert color.value_type is Color

    ratings = registry.find_field(RaceBike, "ratings")
    assert ratings.collection_kind is CollectionKind.MAP
    assert ratings.key_type is str and ratings.value_type is int

    accessories = registry.find_field(CityBike, "accessories")
    assert accessories.collection_kind is CollectionKind.SET
    assert accessories.value_type is str


def test_accumulation_is_derived(registry):
    bikes = registry.find_field(Manufacturer, "bikes")
    assert bikes.kind is FieldKind.DERIVED
    assert bikes.value_type is Bike
    assert bikes.accumulation_of == "manufacturer"
    assert registry.accumulations_of(Manufacturer, registry.find_field(Bike, "manufacturer")) == [bikes]


def test_inheritance_chain(registry):
    assert registry.chain(CityBike) == [Bike, CityBike]
    assert registry.base_class(RaceBike) is Bike
    assert registry.superclass(Bike) is None
    # Fields of the root class come first
    assert [f.name for f in registry.data_fields(RaceBike)] == ["name", "color", "manufacturer", "weight"]


def test_object_domain_classes(registry):
    assert registry.is_registered(Bike)
    assert not registry.is_object_domain_class(Bike)
    assert set(registry.concrete_subclasses(Bike)) == {CityBike, RaceBike}
    assert registry.class_by_name("RaceBike") is RaceBike

    ordered = registry.object_domain_classes()
    assert Bike not in ordered
    # Referenced classes load before referencing ones
    assert ordered.index(Manufacturer) < ordered.index(CityBike)
    assert ordered.index(Manufacturer) < ordered.index(Warranty)


def test_referencing_fields(registry):
    names = {f.qualified_name for f in registry.referencing_fields(Manufacturer)}
    assert names == {"Bike.manufacturer", "Warranty.manufacturer"}
    assert [f.qualified_name for f in registry.referencing_fields(Node)] == ["Node.next"]


def test_naming(registry):
    assert registry.table_name(CityBike) == "DOM_CITY_BIKE"
    assert registry.column_name(registry.find_field(Bike, "manufacturer")) == "MANUFACTURER_ID"
    assert registry.column_name(registry.find_field(Part, "required")) == "REQUIRED_ID"

    sizes = registry.find_field(CityBike, "sizes")
    assert registry.entry_table_name(sizes) == "DOM_BIKE_SIZES"
    assert registry.entry_owner_column(sizes) == "BIKE_ID"
    assert registry.record_key(sizes) == "DOM_BIKE_SIZES"
    assert registry.record_key(registry.find_field(Account, "code")) == "DOM_ACCOUNT.CODE"

    assert registry.shadow_table_name(Bike, "in_progress") == "DOM_BIKE_IN_PROGRESS"
    assert to_sql_name("frameSize") == "FRAME_SIZE"
    assert to_sql_name("frame_size") == "FRAME_SIZE"


def test_reserved_column_names():
    class Ticket(DomainObject):
        order: int = 0
        size: Optional[str] = None

    registry = SqlRegistry()
    registry.register(Ticket)
    assert registry.column_name(registry.find_field(Ticket, "order")) == "DOM_ORDER"
    assert registry.column_name(registry.find_field(Ticket, "size")) == "DOM_SIZE"


def test_explicit_table_name():
    class LegacyRecord(DomainObject):
        __tablename__ = "legacy_records"
        title: str = ""

    registry = SqlRegistry()
    registry.register(LegacyRecord)
    assert registry.table_name(LegacyRecord) == "LEGACY_RECORDS"


def test_collection_of_domain_objects_is_rejected():
    class Fleet(DomainObject):
        bikes: List[Manufacturer] = []

    with pytest.raises(ConfigError):
        SchemaRegistry().register(Fleet)


def test_unsupported_type_is_rejected():
    class Opaque(DomainObject):
        payload: Optional[object] = None

    with pytest.raises(ConfigError):
        SchemaRegistry().register(Opaque)


def test_bind_requires_tables(settings):
    class Orphan(DomainObject):
        title: str = ""

    controller = SqlDomainController(settings)
    try:
        with pytest.raises(ConfigError):
            controller.initialize(Orphan)
    finally:
        controller.close()


def test_bind_reflects_constraints(controller):
    registry = controller.registry
    assert registry.is_bound
    assert not registry.is_nullable(registry.find_field(Account, "name"))
    assert not registry.is_nullable(registry.find_field(Part, "required"))
    assert registry.is_nullable(registry.find_field(Node, "next"))
    assert registry.column_info(registry.find_field(Account, "description")).max_length == 10
    groups = registry.unique_field_groups(Account)
    assert [[f.name for f in group] for group in groups] == [["code"]]
    sizes = registry.entry_table_info(registry.find_field(CityBike, "sizes"))
    assert sizes.has_column("ELEMENT_ORDER")
