import pytest

from errors import ConcurrencyConflict, InvalidAdjustment, NotFound, ValidationError
from inventory import DEFAULT_LOG_LIMIT, MAX_LOG_LIMIT, InventoryStore, clamp_limit, validate_items
from tests.conftest import InterleavedCollection


def line_entries(store, hospital_id, blood_group, rh):
    """Ledger entries for one line, oldest first."""
    entries = store.ledger.list_for_hospital(hospital_id, MAX_LOG_LIMIT)
    return [e for e in reversed(entries) if e["blood_group"] == blood_group and e["rh"] == rh]


def units_of(store, hospital_id, blood_group, rh):
    for line in store.list(hospital_id):
        if line["blood_group"] == blood_group and line["rh"] == rh:
            return line["units"]
    return None


@pytest.fixture
def store(db):
    return InventoryStore(db)


def test_adjust_creates_line_with_zero_previous(store, hospital):
    line = store.adjust(hospital["id"], "O", "+", 4)

    assert line["units"] == 4
    assert line["hospital_id"] == hospital["id"]
    [entry] = line_entries(store, hospital["id"], "O", "+")
    assert entry["action"] == "adjust"
    assert entry["previous_units"] == 0
    assert entry["new_units"] == 4
    assert entry["delta_units"] == 4


def test_adjust_cannot_create_negative_line(store, hospital):
    with pytest.raises(InvalidAdjustment, match="negative"):
        store.adjust(hospital["id"], "A", "-", -1)

    assert store.list(hospital["id"]) == []
    assert store.ledger.list_for_hospital(hospital["id"]) == []


def test_adjust_records_pre_mutation_units(store, hospital):
    store.adjust(hospital["id"], "B", "+", 10)
    line = store.adjust(hospital["id"], "B", "+", -3)

    assert line["units"] == 7
    entries = line_entries(store, hospital["id"], "B", "+")
    assert [(e["previous_units"], e["new_units"]) for e in entries] == [(0, 10), (10, 7)]


def test_units_never_go_negative(store, hospital):
    store.adjust(hospital["id"], "AB", "-", 3)
    deltas = [-2, -2, 5, -6, -1, 1, -5]
    observed = []
    for delta in deltas:
        try:
            store.adjust(hospital["id"], "AB", "-", delta)
        except InvalidAdjustment:
            pass
        observed.append(units_of(store, hospital["id"], "AB", "-"))

    assert observed == [1, 1, 6, 0, 0, 1, 1]
    assert all(u >= 0 for u in observed)


def test_rejected_adjust_leaves_line_and_ledger_unchanged(store, hospital):
    store.adjust(hospital["id"], "O", "-", 2)

    with pytest.raises(InvalidAdjustment, match="Resulting units would be negative"):
        store.adjust(hospital["id"], "O", "-", -3)

    assert units_of(store, hospital["id"], "O", "-") == 2
    assert len(line_entries(store, hospital["id"], "O", "-")) == 1


@pytest.mark.parametrize("blood_group, rh, delta", [("C", "+", 1), ("A", "x", 1), ("A", "+", 1.5), ("A", "+", True)])
def test_adjust_validates_input(store, hospital, blood_group, rh, delta):
    with pytest.raises(ValidationError):
        store.adjust(hospital["id"], blood_group, rh, delta)


def test_adjust_unknown_hospital(store):
    with pytest.raises(NotFound):
        store.adjust("64b000000000000000000000", "A", "+", 1)


def test_replace_all_sets_lines_and_logs_each(store, hospital):
    items = [
        {"blood_group": "A", "rh": "+", "units": 5},
        {"blood_group": "O", "rh": "-", "units": 0},
        {"blood_group": "AB", "rh": "+", "units": 12},
    ]
    lines = store.replace_all(hospital["id"], items)

    assert {(l["blood_group"], l["rh"], l["units"]) for l in lines} == {("A", "+", 5), ("O", "-", 0), ("AB", "+", 12)}
    entries = store.ledger.list_for_hospital(hospital["id"])
    assert len(entries) == 3
    assert all(e["action"] == "replace" and e["previous_units"] is None for e in entries)
    assert {(e["blood_group"], e["rh"], e["new_units"], e["delta_units"]) for e in entries} == {
        ("A", "+", 5, 5), ("O", "-", 0, 0), ("AB", "+", 12, 12)}


def test_replace_all_drops_lines_not_supplied(store, hospital):
    store.adjust(hospital["id"], "B", "-", 3)
    store.adjust(hospital["id"], "A", "+", 1)

    lines = store.replace_all(hospital["id"], [{"blood_group": "A", "rh": "+", "units": 9}])

    assert [(l["blood_group"], l["rh"], l["units"]) for l in lines] == [("A", "+", 9)]


def test_replace_all_with_empty_list_clears_inventory(store, hospital):
    store.adjust(hospital["id"], "B", "-", 3)
    assert store.replace_all(hospital["id"], []) == []


def test_replace_all_is_all_or_nothing_on_validation(store, hospital):
    store.replace_all(hospital["id"], [{"blood_group": "A", "rh": "+", "units": 4},
                                       {"blood_group": "O", "rh": "-", "units": 2}])
    before_lines = store.list(hospital["id"])
    before_log = store.ledger.list_for_hospital(hospital["id"])

    items = [
        {"blood_group": "A", "rh": "+", "units": 1},
        {"blood_group": "A", "rh": "-", "units": 1},
        {"blood_group": "B", "rh": "+", "units": 1},
        {"blood_group": "B", "rh": "-", "units": 1},
        {"blood_group": "O", "rh": "+", "units": 1},
        {"blood_group": "O", "rh": "-", "units": -1},
    ]
    with pytest.raises(ValidationError, match="units"):
        store.replace_all(hospital["id"], items)

    assert store.list(hospital["id"]) == before_lines
    assert store.ledger.list_for_hospital(hospital["id"]) == before_log


@pytest.mark.parametrize("items, message", [
    ([{"blood_group": "A", "rh": "+", "units": 1}, {"blood_group": "A", "rh": "+", "units": 2}], "Duplicate entry for A+"),
    ([{"blood_group": "Z", "rh": "+", "units": 1}], "Invalid blood_group"),
    ([{"blood_group": "A", "rh": "?", "units": 1}], "Invalid rh"),
    ([{"blood_group": "A", "rh": "+", "units": "3"}], "Invalid units"),
    ([{"blood_group": "A", "rh": "+"}], "Invalid units"),
    ([None], "Missing item"),
])
def test_validate_items_reasons(items, message):
    with pytest.raises(ValidationError, match=message):
        validate_items(items)


def test_replace_all_unknown_hospital(store):
    with pytest.raises(NotFound):
        store.replace_all("64b000000000000000000000", [])


def test_ledger_is_complete_for_mixed_mutations(store, hospital):
    h = hospital["id"]
    store.replace_all(h, [{"blood_group": "A", "rh": "+", "units": 5}])
    store.adjust(h, "A", "+", 3)
    store.adjust(h, "A", "+", -2)
    store.replace_all(h, [{"blood_group": "A", "rh": "+", "units": 7}, {"blood_group": "O", "rh": "+", "units": 1}])
    store.adjust(h, "A", "+", 1)

    entries = line_entries(store, h, "A", "+")
    assert len(entries) == 5
    assert [e["action"] for e in entries] == ["replace", "adjust", "adjust", "replace", "adjust"]
    assert entries[-1]["new_units"] == units_of(store, h, "A", "+") == 8


def test_ledger_lists_most_recent_first_with_limit(store, hospital):
    for _ in range(60):
        store.adjust(hospital["id"], "O", "+", 1)

    entries = store.ledger.list_for_hospital(hospital["id"])
    assert len(entries) == DEFAULT_LOG_LIMIT
    assert entries[0]["new_units"] == 60
    assert [e["new_units"] for e in entries] == list(range(60, 60 - DEFAULT_LOG_LIMIT, -1))
    assert len(store.ledger.list_for_hospital(hospital["id"], 5)) == 5


@pytest.mark.parametrize("requested, expected", [(None, 50), (0, 50), (-3, 50), (10, 10), (200, 200), (1000, 200)])
def test_clamp_limit(requested, expected):
    assert clamp_limit(requested) == expected


def test_interleaved_adjust_is_not_lost(db, store, hospital):
    h = hospital["id"]
    store.adjust(h, "A", "+", 10)
    competitor = InventoryStore(db)
    store.lines = InterleavedCollection(store.lines, [lambda: competitor.adjust(h, "A", "+", 5)])

    line = store.adjust(h, "A", "+", 3)

    assert line["units"] == 18
    assert units_of(competitor, h, "A", "+") == 18
    entries = line_entries(competitor, h, "A", "+")
    assert [(e["previous_units"], e["new_units"]) for e in entries] == [(0, 10), (10, 15), (15, 18)]


def test_concurrent_adjust_stress_keeps_every_delta(db, store, hospital):
    h = hospital["id"]
    store.adjust(h, "O", "-", 50)
    competitor = InventoryStore(db)

    for _ in range(25):
        store.lines = InterleavedCollection(db["inventory"], [lambda: competitor.adjust(h, "O", "-", 2)])
        store.adjust(h, "O", "-", -1)

    assert units_of(competitor, h, "O", "-") == 75
    entries = line_entries(competitor, h, "O", "-")
    assert len(entries) == 51
    for earlier, later in zip(entries, entries[1:]):
        assert later["previous_units"] == earlier["new_units"]
        assert later["new_units"] == later["previous_units"] + later["delta_units"]
    assert entries[-1]["new_units"] == 75


def test_adjust_gives_up_after_repeated_conflicts(db, store, hospital):
    h = hospital["id"]
    store.adjust(h, "B", "+", 10)
    competitor = InventoryStore(db)
    store.lines = InterleavedCollection(
        store.lines, [lambda: competitor.adjust(h, "B", "+", 1)] * store.max_retries)

    with pytest.raises(ConcurrencyConflict):
        store.adjust(h, "B", "+", 100)

    assert units_of(competitor, h, "B", "+") == 10 + store.max_retries
    assert len(line_entries(competitor, h, "B", "+")) == 1 + store.max_retries


def test_replace_during_adjust_wins_then_adjust_applies_on_top(db, store, hospital):
    h = hospital["id"]
    store.adjust(h, "AB", "+", 4)
    competitor = InventoryStore(db)
    store.lines = InterleavedCollection(
        store.lines, [lambda: competitor.replace_all(h, [{"blood_group": "AB", "rh": "+", "units": 20}])])

    line = store.adjust(h, "AB", "+", -5)

    assert line["units"] == 15
    entries = line_entries(competitor, h, "AB", "+")
    assert [(e["action"], e["previous_units"], e["new_units"]) for e in entries] == [
        ("adjust", 0, 4), ("replace", None, 20), ("adjust", 20, 15)]


def test_unique_line_per_hospital_type(db, store, hospital):
    store.adjust(hospital["id"], "A", "-", 1)
    store.adjust(hospital["id"], "A", "-", 1)
    store.replace_all(hospital["id"], [{"blood_group": "A", "rh": "-", "units": 3}])
    assert db["inventory"].count_documents({"hospital_id": hospital["id"], "blood_group": "A", "rh": "-"}) == 1


def test_line_created_during_replace_survives_prune(db, store, hospital):
    h = hospital["id"]
    store.adjust(h, "A", "+", 1)
    competitor = InventoryStore(db)
    store.lines = InterleavedCollection(
        store.lines, [lambda: competitor.adjust(h, "B", "-", 4)], method="update_one")

    store.replace_all(h, [{"blood_group": "A", "rh": "+", "units": 9}])

    assert units_of(competitor, h, "A", "+") == 9
    assert units_of(competitor, h, "B", "-") == 4
    [entry] = line_entries(competitor, h, "B", "-")
    assert (entry["action"], entry["new_units"]) == ("adjust", 4)


def test_stale_line_adjusted_during_replace_keeps_ledger_consistent(db, store, hospital):
    h = hospital["id"]
    store.adjust(h, "A", "+", 1)
    store.adjust(h, "O", "-", 3)
    competitor = InventoryStore(db)
    store.lines = InterleavedCollection(
        store.lines, [lambda: competitor.adjust(h, "O", "-", 2)], method="update_one")

    store.replace_all(h, [{"blood_group": "A", "rh": "+", "units": 9}])

    entries = line_entries(competitor, h, "O", "-")
    assert entries[-1]["new_units"] == units_of(competitor, h, "O", "-") == 5
