from __future__ import annotations

import itertools
import random
import sys
from pathlib import Path

import pytest

ROOT = Path(__file__).resolve().parents[1]
SRC = ROOT / "src"
if str(SRC) not in sys.path:
    sys.path.insert(0, str(SRC))

from pim_mapping.merge import MergeEngine, key_index_from_items  # noqa: E402
from pim_mapping.models import AttributeMappingItem, AttributeValue, MappingStatus  # noqa: E402
from pim_mapping.state import MappingStateStore, canonical_serialize, state_from_records  # noqa: E402
from pim_mapping.validation import MissingSelection, ReferenceNotFound  # noqa: E402


def _item(key: str, *values: str) -> AttributeMappingItem:
    return AttributeMappingItem(key=key, label=key.title(), values=[AttributeValue(key=v, label=v) for v in values])


def _engine(supports_values: bool = False) -> MergeEngine:
    master = [_item("A", "a1", "a2"), _item("B", "b1"), _item("C")]
    target = [_item("t1", "x", "y"), _item("t2", "z"), _item("t3")]
    store = MappingStateStore(state_from_records([], master, supports_values))
    return MergeEngine(store, key_index_from_items(master, target), supports_values=supports_values)


def _assert_injective(engine: MergeEngine) -> None:
    assigned = [t for t in engine.store.working.targets.values() if t]
    assert len(assigned) == len(set(assigned))
    for sub in engine.store.working.values.values():
        used = [t for t in sub.values() if t]
        assert len(used) == len(set(used))


def test_newest_assignment_displaces_previous_holder() -> None:
    engine = _engine()

    engine.assign("A", "t1")
    displaced = engine.assign("B", "t1")

    assert displaced == ["A"]
    assert engine.current("A") is None
    assert engine.current("B") == "t1"


def test_injectivity_holds_for_random_sequences() -> None:
    engine = _engine()
    rng = random.Random(7)
    for _ in range(200):
        master = rng.choice(["A", "B", "C"])
        if rng.random() < 0.2:
            engine.clear(master)
        else:
            engine.assign(master, rng.choice(["t1", "t2", "t3"]))
        _assert_injective(engine)


def test_clear_is_idempotent() -> None:
    engine = _engine(supports_values=True)
    engine.assign("A", "t1")

    engine.clear("A")
    once = canonical_serialize(engine.store.working)
    engine.clear("A")

    assert canonical_serialize(engine.store.working) == once
    assert engine.current("A") is None


def test_noop_assign_keeps_store_clean() -> None:
    engine = _engine(supports_values=True)
    engine.assign("A", "t1")
    engine.assign_value("A", "a1", "x")
    engine.store.commit(engine.store.snapshot())

    engine.assign("A", "t1")

    assert engine.store.is_dirty() is False
    assert engine.store.working.values["A"]["a1"] == "x"


def test_changing_target_resets_value_mappings() -> None:
    engine = _engine(supports_values=True)
    engine.assign("A", "t1")
    engine.assign_value("A", "a1", "x")

    engine.assign("A", "t2")

    assert engine.store.working.values["A"] == {"a1": None, "a2": None}


def test_displaced_key_loses_values_and_status() -> None:
    engine = _engine(supports_values=True)
    engine.assign("A", "t1", status=MappingStatus.CONFIRMED)
    engine.assign_value("A", "a1", "x")

    engine.assign("B", "t1", status=MappingStatus.CONFIRMED)

    working = engine.store.working
    assert working.values["A"] == {"a1": None, "a2": None}
    assert "A" not in working.statuses
    assert working.statuses["B"] is MappingStatus.CONFIRMED


def test_value_assignment_is_injective_within_one_key() -> None:
    engine = _engine(supports_values=True)
    engine.assign("A", "t1")

    engine.assign_value("A", "a1", "x")
    displaced = engine.assign_value("A", "a2", "x")

    assert displaced == ["a1"]
    assert engine.store.working.values["A"] == {"a1": None, "a2": "x"}
    _assert_injective(engine)


def test_rejected_calls_leave_state_untouched() -> None:
    engine = _engine(supports_values=True)
    engine.assign("A", "t1")
    before = canonical_serialize(engine.store.working)

    with pytest.raises(ReferenceNotFound):
        engine.assign("A", "t9")
    with pytest.raises(ReferenceNotFound):
        engine.assign("Z", "t1")
    with pytest.raises(ReferenceNotFound):
        engine.assign_value("A", "a1", "z")
    with pytest.raises(MissingSelection):
        engine.assign_value("B", "b1", None)

    assert canonical_serialize(engine.store.working) == before


def test_assignment_order_decides_contested_target() -> None:
    for order in itertools.permutations(["A", "B", "C"]):
        engine = _engine()
        for master in order:
            engine.assign(master, "t2")
        assert engine.current(order[-1]) == "t2"
        assert sum(1 for t in engine.store.working.targets.values() if t == "t2") == 1
