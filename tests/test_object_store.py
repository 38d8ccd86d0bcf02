"""
Tests for the in-process object store: registration, lookup, object records,
accumulations and dependents.
"""
import pytest

from dompersist.domain.schema import SchemaRegistry
from dompersist.domain.store import ObjectStore
from dompersist.errors import ObjectNotFoundError
from conftest import DOMAIN_CLASSES, Bike, CityBike, Manufacturer, Node, RaceBike, Warranty


@pytest.fixture
def store() -> ObjectStore:
    registry = SchemaRegistry()
    registry.register(*DOMAIN_CLASSES)
    return ObjectStore(registry)


def test_register_assigns_unique_ids(store):
    first = store.create(Manufacturer, lambda m: setattr(m, "name", "Acme"))
    second = store.create(Manufacturer)

    assert first.id > 0 and second.id > 0
    assert first.id != second.id
    assert first.name == "Acme"
    assert store.is_registered(first)
    assert not store.register(first)


def test_register_by_id_refuses_duplicates(store):
    bike = CityBike()
    assert store.register_by_id(bike, 42)
    assert not store.register_by_id(RaceBike(), 42)  # same class family
    assert store.register_by_id(Manufacturer(), 42)  # other family, own id space


def test_lookup_by_any_class_of_the_chain(store):
    bike = store.create(CityBike)

    assert store.find(CityBike, bike.id) is bike
    assert store.find(Bike, bike.id) is bike
    assert store.find(RaceBike, bike.id) is None
    assert store.get(Bike, bike.id) is bike
    assert store.all(Bike) == [bike]
    assert store.count(Bike) == 1


def test_get_unknown_object_raises(store):
    with pytest.raises(ObjectNotFoundError):
        store.get(Manufacturer, 1)
    # Also a KeyError for mapping-style callers
    with pytest.raises(KeyError):
        store.get(Manufacturer, 1)


def test_predicates(store):
    for name in ("a", "b", "c"):
        store.create(Manufacturer, lambda m, n=name: setattr(m, "name", n))

    assert len(store.find_all(Manufacturer, lambda m: m.name != "b")) == 2
    assert store.find_any(Manufacturer, lambda m: m.name == "c").name == "c"
    assert store.find_any(Manufacturer, lambda m: m.name == "z") is None
    assert store.count(Manufacturer, lambda m: m.name in ("a", "b")) == 2


def test_unregister_removes_object_and_record(store):
    node = store.create(Node)
    store.set_object_record(node, {"DOM_NODE.NAME": "x"})

    store.unregister(node)
    assert not store.is_registered(node)
    assert store.find(Node, node.id) is None
    assert store.object_record(node) is None


def test_object_records_are_sorted_copies(store):
    node = store.create(Node)
    record = {"DOM_NODE.NEXT_ID": None, "DOM_NODE.NAME": "x"}
    store.set_object_record(node, record)
    record["DOM_NODE.NAME"] = "changed"

    assert list(store.object_record(node)) == ["DOM_NODE.NAME", "DOM_NODE.NEXT_ID"]
    assert store.object_record(node)["DOM_NODE.NAME"] == "x"


def test_accumulations_follow_references(store):
    acme = store.create(Manufacturer)
    other = store.create(Manufacturer)
    bike = store.create(CityBike, lambda b: setattr(b, "manufacturer", acme))
    assert acme.bikes == {bike}

    bike.manufacturer = other
    store.update_accumulations(bike)
    assert acme.bikes == set()
    assert other.bikes == {bike}

    store.unregister(bike)
    assert other.bikes == set()


def test_direct_children(store):
    acme = store.create(Manufacturer)
    bike = store.create(RaceBike, lambda b: setattr(b, "manufacturer", acme))
    warranty = store.create(Warranty, lambda w: setattr(w, "manufacturer", acme))
    store.create(RaceBike)

    assert set(store.direct_children(acme)) == {bike, warranty}
    assert store.is_referenced(acme)
    assert not store.is_referenced(bike)


def test_can_be_deleted_recursive(store):
    acme = store.create(Manufacturer)
    warranty = store.create(Warranty, lambda w: setattr(w, "manufacturer", acme))
    assert store.can_be_deleted_recursive(acme)

    warranty.locked = True
    assert not store.can_be_deleted_recursive(acme)


def test_can_be_deleted_recursive_with_cycle(store):
    first = store.create(Node)
    second = store.create(Node, lambda n: setattr(n, "next", first))
    first.next = second

    assert store.can_be_deleted_recursive(first)


def test_reregister_restores_record(store):
    node = store.create(Node)
    node._stored = True
    store.set_object_record(node, {"DOM_NODE.NAME": "x"})
    record = store.object_record(node)

    store.unregister(node)
    store.reregister(node, record)
    assert store.find(Node, node.id) is node
    assert store.object_record(node) == {"DOM_NODE.NAME": "x"}


def test_clear(store):
    store.create(Manufacturer)
    store.clear()
    assert store.count(Manufacturer) == 0
    assert store.registered_objects() == []
