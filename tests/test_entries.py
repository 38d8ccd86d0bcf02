"""
Tests for multi-valued fields stored in entry tables.
"""
from sqlalchemy import event

from dompersist.sql.controller import SqlDomainController
from conftest import DOMAIN_CLASSES, CityBike, RaceBike


def test_list_rewrite_renumbers_order(controller, query):
    bike = controller.create(CityBike, lambda b: setattr(b, "sizes", ["S", "M", "L"]))
    controller.save(bike)

    bike.sizes = ["L", "S", "M"]
    assert controller.save(bike)

    rows = query("SELECT ELEMENT, ELEMENT_ORDER FROM DOM_BIKE_SIZES WHERE BIKE_ID = :id ORDER BY ELEMENT_ORDER",
                 id=bike.id)
    assert rows == [
        {"ELEMENT": "L", "ELEMENT_ORDER": 0},
        {"ELEMENT": "S", "ELEMENT_ORDER": 1},
        {"ELEMENT": "M", "ELEMENT_ORDER": 2},
    ]


def test_list_order_survives_loading(controller, other_controller):
    bike = controller.create(CityBike, lambda b: setattr(b, "sizes", ["XL", "S", "M", "S"]))
    controller.save(bike)

    copy = other_controller.load(CityBike)[0]
    assert copy.sizes == ["XL", "S", "M", "S"]


def test_unchanged_list_is_not_rewritten(controller, statements):
    bike = controller.create(CityBike, lambda b: setattr(b, "sizes", ["S"]))
    controller.save(bike)

    statements.clear()
    bike.name = "renamed"
    controller.save(bike)
    assert not any("DOM_BIKE_SIZES" in s for s in statements)


def test_set_diff_including_null(controller, query, statements):
    bike = controller.create(CityBike, lambda b: setattr(b, "accessories", {"bell", "lamp", None}))
    controller.save(bike)
    assert len(query("SELECT * FROM DOM_CITY_BIKE_ACCESSORIES")) == 3

    statements.clear()
    bike.accessories = {"bell", "rack"}
    controller.save(bike)

    deletes = [s for s in statements if s.upper().startswith("DELETE")]
    # One statement for the NULL element, one IN list for the others
    assert len(deletes) == 2
    assert any("IS NULL" in s for s in deletes)
    rows = query("SELECT ELEMENT FROM DOM_CITY_BIKE_ACCESSORIES WHERE CITY_BIKE_ID = :id", id=bike.id)
    assert {r["ELEMENT"] for r in rows} == {"bell", "rack"}


def test_set_with_null_loads_back(controller, other_controller):
    bike = controller.create(CityBike, lambda b: setattr(b, "accessories", {"bell", None}))
    controller.save(bike)

    copy = other_controller.load(CityBike)[0]
    assert copy.accessories == {"bell", None}


def test_map_insert_update_delete(controller, other_controller, query):
    bike = controller.create(RaceBike, lambda b: setattr(b, "ratings", {"speed": 4, "comfort": 2}))
    controller.save(bike)

    bike.ratings = {"speed": 5, "weight": 3}
    assert controller.save(bike)

    rows = query("SELECT ENTRY_KEY, ENTRY_VALUE FROM DOM_RACE_BIKE_RATINGS WHERE RACE_BIKE_ID = :id", id=bike.id)
    assert {r["ENTRY_KEY"]: r["ENTRY_VALUE"] for r in rows} == {"speed": 5, "weight": 3}

    copy = other_controller.load(RaceBike)[0]
    assert copy.ratings == {"speed": 5, "weight": 3}


def test_in_lists_are_split(settings, query):
    controller = SqlDomainController(settings.model_copy(update={"max_in_clause": 2})).initialize(*DOMAIN_CLASSES)
    recorded = []

    def _record(conn, cursor, statement, parameters, context, executemany):
        recorded.append(statement)

    event.listen(controller.gateway.engine, "before_cursor_execute", _record)
    try:
        elements = {f"part-{i}" for i in range(5)}
        bike = controller.create(CityBike, lambda b: setattr(b, "accessories", set(elements)))
        controller.save(bike)

        recorded.clear()
        bike.accessories = set()
        controller.save(bike)
        deletes = [s for s in recorded if s.lstrip().upper().startswith("DELETE")]
        assert len(deletes) == 3
        assert query("SELECT * FROM DOM_CITY_BIKE_ACCESSORIES") == []

        # Loading splits the owner ids the same way
        for _ in range(4):
            controller.create_and_save(CityBike)
        other = SqlDomainController(settings.model_copy(update={"max_in_clause": 2})).initialize(*DOMAIN_CLASSES)
        try:
            assert len(other.load(CityBike)) == 5
        finally:
            other.close()
    finally:
        controller.close()
