from __future__ import annotations

import sys
from pathlib import Path

ROOT = Path(__file__).resolve().parents[1]
SRC = ROOT / "src"
if str(SRC) not in sys.path:
    sys.path.insert(0, str(SRC))

from pim_mapping.models import (  # noqa: E402
    AttributeMappingItem,
    AttributeMappingRecord,
    AttributeValue,
    CanonicalNode,
    Mapping,
    MappingStatus,
)
from pim_mapping.state import (  # noqa: E402
    MappingState,
    MappingStateStore,
    canonical_serialize,
    records_from_state,
    state_from_records,
    state_from_tree,
)


def _items() -> list[AttributeMappingItem]:
    return [
        AttributeMappingItem(
            key="color",
            label="Color",
            values=[AttributeValue(key="red", label="Red"), AttributeValue(key="blue", label="Blue")],
        ),
        AttributeMappingItem(key="size", label="Size", values=[AttributeValue(key="m", label="M")]),
    ]


def test_serialization_ignores_key_order_and_null_entries() -> None:
    left = MappingState(targets={"a": "t1", "b": None}, values={"a": {"x": None}})
    right = MappingState(targets={"a": "t1"})

    assert canonical_serialize(left) == canonical_serialize(right)
    assert canonical_serialize(MappingState(targets={"b": "t2", "a": "t1"})) == canonical_serialize(
        MappingState(targets={"a": "t1", "b": "t2"})
    )


def test_store_is_clean_after_load_and_dirty_after_change() -> None:
    store = MappingStateStore(MappingState(targets={"a": "t1"}))
    assert store.is_dirty() is False

    changed = store.snapshot()
    changed.targets["a"] = "t2"
    store.replace_working(changed)

    assert store.is_dirty() is True
    assert store.persisted.targets["a"] == "t1"


def test_reset_and_commit_clear_the_dirty_flag() -> None:
    store = MappingStateStore(MappingState(targets={"a": "t1"}))
    changed = store.snapshot()
    changed.targets["a"] = None
    store.replace_working(changed)

    store.reset()
    assert store.is_dirty() is False
    assert store.working.targets["a"] == "t1"

    store.replace_working(MappingState(targets={"a": "t3"}))
    store.commit(MappingState(targets={"a": "t3"}))
    assert store.is_dirty() is False
    assert store.persisted.targets["a"] == "t3"


def test_load_deep_copies_the_baseline() -> None:
    baseline = MappingState(targets={"a": "t1"}, values={"a": {"x": "y"}})
    store = MappingStateStore(baseline)
    baseline.values["a"]["x"] = "z"

    assert store.working.values["a"]["x"] == "y"
    assert store.working is not store.persisted


def test_state_from_records_seeds_every_master_key() -> None:
    records = [
        AttributeMappingRecord.model_validate(
            {"master_key": "color", "target_key": "barva", "values": [{"master_key": "red", "target_key": "rosu"}]}
        )
    ]
    state = state_from_records(records, _items(), supports_values=True)

    assert state.targets == {"color": "barva", "size": None}
    assert state.values["color"] == {"red": "rosu", "blue": None}
    assert state.values["size"] == {"m": None}


def test_records_from_state_drops_null_values() -> None:
    state = MappingState(targets={"size": None, "color": "barva"}, values={"color": {"red": "rosu", "blue": None}})
    records = records_from_state(state, supports_values=True)

    assert [r.master_key for r in records] == ["color", "size"]
    assert [v.model_dump() for v in records[0].values] == [{"master_key": "red", "target_key": "rosu"}]
    assert records[1].values == []


def test_state_from_tree_reads_node_mappings() -> None:
    forest = [
        CanonicalNode(
            id="c1",
            guid="g1",
            name="Garden",
            mapping=Mapping(status=MappingStatus.CONFIRMED, shop_category_node_id="s1"),
            children=(CanonicalNode(id="c2", guid="g2", name="Tools", mapping=Mapping(status=MappingStatus.REJECTED)),),
        )
    ]
    state = state_from_tree(forest)

    assert state.targets == {"c1": "s1", "c2": None}
    assert state.statuses == {"c1": MappingStatus.CONFIRMED, "c2": MappingStatus.REJECTED}
