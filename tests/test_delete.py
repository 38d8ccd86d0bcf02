"""
Tests for the delete engine.

This test suite verifies that:
1. Deleting an object deletes every registered object referencing it
2. A business rule veto leaves store and database untouched
3. Back-references of a cycle are reset before the rows are deleted
4. A failed deletion restores the object store exactly
"""
import pytest
from sqlalchemy.exc import IntegrityError

from conftest import CityBike, Manufacturer, Node, Warranty


def _acme_with_dependents(controller):
    acme = controller.create(Manufacturer, lambda m: setattr(m, "name", "Acme"))
    bike = controller.create(CityBike, lambda b: (setattr(b, "manufacturer", acme), setattr(b, "sizes", ["S", "M"])))
    warranty = controller.create(Warranty, lambda w: setattr(w, "manufacturer", acme))
    controller.save_all()
    return acme, bike, warranty


def test_delete_cascades_to_dependents(controller, query):
    acme, bike, warranty = _acme_with_dependents(controller)

    assert controller.delete(acme)

    for obj in (acme, bike, warranty):
        assert not controller.is_registered(obj)
        assert not obj.stored
    assert acme.bikes == set()
    for table in ("DOM_MANUFACTURER", "DOM_BIKE", "DOM_CITY_BIKE", "DOM_BIKE_SIZES", "DOM_WARRANTY"):
        assert query(f"SELECT * FROM {table}") == [], table


def test_business_rule_veto(controller, query):
    acme, bike, warranty = _acme_with_dependents(controller)
    warranty.locked = True
    controller.save(warranty)

    assert not controller.delete(acme)

    assert all(controller.is_registered(o) for o in (acme, bike, warranty))
    assert acme.bikes == {bike}
    assert len(query("SELECT * FROM DOM_MANUFACTURER")) == 1
    assert len(query("SELECT * FROM DOM_WARRANTY")) == 1


def test_cycle_back_reference_is_reset_first(controller, query, statements):
    first = controller.create(Node, lambda n: setattr(n, "name", "first"))
    second = controller.create(Node, lambda n: (setattr(n, "name", "second"), setattr(n, "next", first)))
    first.next = second
    controller.save(first)

    statements.clear()
    assert controller.delete(first)

    verbs = [s.split()[0].upper() for s in statements if s.split()[0].upper() in ("UPDATE", "DELETE")]
    assert verbs[0] == "UPDATE"
    assert verbs.count("DELETE") == 2
    assert query("SELECT * FROM DOM_NODE") == []


def test_unstored_object_is_only_unregistered(controller, statements):
    node = controller.create(Node)

    assert controller.delete(node)
    assert not controller.is_registered(node)
    assert statements == []


def test_delete_unregistered_object(controller):
    node = controller.create_and_save(Node)
    assert controller.delete(node)
    assert not controller.delete(node)


def test_failed_delete_restores_store(controller, other_controller, query):
    _acme_with_dependents(controller)

    # The other controller does not know the bike and warranty referencing the manufacturer
    acme = other_controller.load(Manufacturer)[0]
    record = dict(other_controller.store.object_record(acme))

    with pytest.raises(IntegrityError):
        other_controller.delete(acme)

    assert other_controller.is_registered(acme)
    assert acme.stored
    assert other_controller.store.object_record(acme) == record
    assert isinstance(acme.current_exception, IntegrityError)
    assert len(query("SELECT * FROM DOM_MANUFACTURER")) == 1

    # Same failure through the object itself, without raising
    assert not acme.delete()
    assert other_controller.is_registered(acme)
