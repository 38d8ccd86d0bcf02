"""
Tests for domain object identity, validity state and ids.
"""
from dompersist.domain.entity import DomainObject, new_object_id
from conftest import Manufacturer, Node


def test_identity_semantics():
    first, second = Node(name="x"), Node(name="x")
    assert first != second
    assert first == first
    assert len({first, second}) == 2
    first.id = 12
    assert repr(first) == "Node@12"


def test_cyclic_graphs_compare_and_print():
    first, second = Node(name="a"), Node(name="b")
    first.next, second.next = second, first
    assert first != second
    assert str(first).startswith("Node@")


def test_ids_strictly_increase():
    ids = [new_object_id() for _ in range(1000)]
    assert ids == sorted(ids)
    assert len(set(ids)) == len(ids)


def test_field_errors_and_warnings():
    node = Node()
    assert node.is_valid() and not node.has_errors_or_warnings()

    node.set_field_warning("name", "CONTENT_TRUNCATED_IN_DATABASE", "long")
    assert node.is_valid()
    assert node.has_errors_or_warnings()

    node.set_field_error("next", "NOT_NULL_CONSTRAINT_VIOLATION")
    assert not node.is_valid()
    assert node.invalid_fields() == ["next"]
    assert "ERROR Node@0.next" in str(node.error_or_warning("next"))
    assert len(node.errors_and_warnings()) == 2

    node.clear_field_error("next")
    assert node.is_valid()
    node.clear_errors()
    assert node.errors_and_warnings() == []


def test_unregistered_object_cannot_save_or_delete():
    maker = Manufacturer(name="Acme")
    assert not maker.save()
    assert not maker.delete()
    assert not maker.stored
    assert maker.last_modified_in_db is None


def test_default_delete_rule():
    assert DomainObject().can_be_deleted()
