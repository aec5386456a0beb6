from __future__ import annotations

import sys
from pathlib import Path

ROOT = Path(__file__).resolve().parents[1]
SRC = ROOT / "src"
if str(SRC) not in sys.path:
    sys.path.insert(0, str(SRC))

from pim_mapping.merge import MergeEngine, key_index_from_items, key_index_from_trees  # noqa: E402
from pim_mapping.models import (  # noqa: E402
    AiSuggestion,
    AttributeMappingItem,
    AttributeValue,
    CanonicalNode,
    CanonicalRef,
    MappingStatus,
    ShopNode,
    SuggestedRef,
)
from pim_mapping.state import MappingStateStore, state_from_records, state_from_tree  # noqa: E402
from pim_mapping.suggestions import (  # noqa: E402
    AiSuggestionReconciler,
    parse_attribute_suggestions,
    parse_category_suggestions,
)
from pim_mapping.tree_index import build_tree_index  # noqa: E402


def _trees() -> tuple[list[CanonicalNode], list[ShopNode]]:
    canonical = [
        CanonicalNode(id="X", guid="gx", name="Shoes"),
        CanonicalNode(id="Y", guid="gy", name="Boots"),
        CanonicalNode(id="Z", guid="gz", name="Socks"),
    ]
    shop = [
        ShopNode(id="s1", remote_guid="r1", name="Pantofi"),
        ShopNode(id="s2", remote_guid="r2", name="Cizme"),
    ]
    return canonical, shop


def _category_engine() -> MergeEngine:
    canonical, shop = _trees()
    keys = key_index_from_trees(build_tree_index(canonical), build_tree_index(shop))
    return MergeEngine(MappingStateStore(state_from_tree(canonical)), keys)


def _suggestion(master: str, target: str | None, similarity: float) -> AiSuggestion:
    return AiSuggestion(
        canonical=CanonicalRef(id=master, name=master),
        suggested=SuggestedRef(id=target, name=target) if target else None,
        similarity=similarity,
    )


def test_null_suggestion_above_threshold_unmaps_and_is_removed() -> None:
    engine = _category_engine()
    engine.assign("X", "s1", status=MappingStatus.SUGGESTED)
    reconciler = AiSuggestionReconciler(engine, [_suggestion("X", None, 0.95)], track_status=True)

    result = reconciler.apply_all_above_threshold(0.9)

    assert result.applied == 1
    assert engine.current("X") is None
    assert engine.store.working.statuses["X"] is MappingStatus.REJECTED
    assert reconciler.pending == []


def test_only_suggestions_at_or_above_threshold_are_applied() -> None:
    engine = _category_engine()
    reconciler = AiSuggestionReconciler(
        engine, [_suggestion("X", "s1", 0.9), _suggestion("Y", "s2", 0.89)], track_status=True
    )

    result = reconciler.apply_all_above_threshold(0.9)

    assert result.applied == 1
    assert engine.current("X") == "s1"
    assert engine.current("Y") is None
    assert [s.master_key for s in reconciler.pending] == ["Y"]


def test_default_threshold_comes_from_settings() -> None:
    engine = _category_engine()
    reconciler = AiSuggestionReconciler(engine, [_suggestion("X", "s1", 0.85)])

    result = reconciler.apply_all_above_threshold()

    assert result.applied == 0
    assert engine.current("X") is None


def test_bulk_apply_can_be_cancelled_between_operations() -> None:
    engine = _category_engine()
    reconciler = AiSuggestionReconciler(
        engine, [_suggestion("X", "s1", 0.99), _suggestion("Y", "s2", 0.99)], track_status=True
    )
    calls = iter([True, False])

    result = reconciler.apply_all_above_threshold(0.9, should_continue=lambda: next(calls))

    assert result.cancelled is True
    assert result.applied == 1
    assert engine.current("X") == "s1"
    assert engine.current("Y") is None
    assert [s.master_key for s in reconciler.pending] == ["Y"]


def test_sequential_apply_resolves_contested_target_deterministically() -> None:
    engine = _category_engine()
    reconciler = AiSuggestionReconciler(
        engine, [_suggestion("X", "s1", 0.95), _suggestion("Y", "s1", 0.97)], track_status=True
    )

    result = reconciler.apply_all_above_threshold(0.9)

    assert result.applied == 2
    assert result.displaced == ["X"]
    assert engine.current("X") is None
    assert engine.current("Y") == "s1"


def test_confirmed_mapping_is_kept_when_displacement_is_disabled() -> None:
    engine = _category_engine()
    engine.assign("X", "s1", status=MappingStatus.CONFIRMED)
    reconciler = AiSuggestionReconciler(
        engine, [_suggestion("Y", "s1", 0.99)], track_status=True, displace_confirmed=False
    )

    result = reconciler.apply_all_above_threshold(0.9)

    assert result.applied == 0
    assert result.skipped == 1
    assert engine.current("X") == "s1"
    assert "confirmed" in result.warnings[0]


def test_dismiss_and_newer_suggestion_replaces_older() -> None:
    engine = _category_engine()
    reconciler = AiSuggestionReconciler(engine, [_suggestion("X", "s1", 0.5)])
    reconciler.extend([_suggestion("X", "s2", 0.7)])

    assert len(reconciler.pending) == 1
    assert reconciler.pending[0].target_key == "s2"
    assert reconciler.dismiss("X") is True
    assert reconciler.dismiss("X") is False
    assert engine.store.is_dirty() is False


def test_unknown_reference_is_collected_as_warning() -> None:
    engine = _category_engine()
    reconciler = AiSuggestionReconciler(engine, [_suggestion("Q", "s1", 0.99), _suggestion("X", "s2", 0.99)])

    result = reconciler.apply_all_above_threshold(0.9)

    assert result.applied == 1
    assert result.skipped == 1
    assert 'master category "Q" not found' in result.warnings[0]


def test_parse_category_suggestions_validates_ids() -> None:
    canonical, shop = _trees()
    document = {
        "mappings": [
            {"canonical_id": "X", "target_id": "s1", "confidence": 0.93, "reason": "same meaning"},
            {"canonical_id": "Y", "target_id": None},
            {"canonical_id": "Z", "target_id": "s9", "confidence": 0.99},
            {"canonical_id": "nope", "target_id": "s1"},
            {"target_id": "s1"},
            {"canonical_id": "Z", "target_id": "s2", "confidence": 7},
        ]
    }

    suggestions, warnings = parse_category_suggestions(document, build_tree_index(canonical), build_tree_index(shop))

    assert [(s.master_key, s.target_key, s.similarity) for s in suggestions] == [
        ("X", "s1", 0.93),
        ("Y", None, 0.5),
        ("Z", "s2", 1.0),
    ]
    assert suggestions[0].canonical.guid == "gx"
    assert suggestions[0].suggested.remote_guid == "r1"
    assert [w.split(":")[0] for w in warnings] == ["Row 3", "Row 4", "Row 5"]


def test_attribute_suggestions_apply_values() -> None:
    master = [AttributeMappingItem(key="color", values=[AttributeValue(key="red"), AttributeValue(key="blue")])]
    target = [AttributeMappingItem(key="culoare", values=[AttributeValue(key="rosu")])]
    store = MappingStateStore(state_from_records([], master, True))
    engine = MergeEngine(store, key_index_from_items(master, target), supports_values=True)

    suggestions = parse_attribute_suggestions(
        {
            "mappings": [
                {
                    "master_key": "color",
                    "target_key": "culoare",
                    "values": [
                        {"master_key": "red", "target_key": "rosu"},
                        {"master_key": "blue", "target_key": "albastru"},
                    ],
                },
                {"target_key": "culoare"},
            ]
        }
    )
    reconciler = AiSuggestionReconciler(engine, suggestions)
    result = reconciler.apply_all_above_threshold(0.9)

    assert len(suggestions) == 1
    assert suggestions[0].similarity == 1.0
    assert result.applied == 1
    assert store.working.values["color"] == {"red": "rosu", "blue": None}
    assert len(result.warnings) == 1
    assert result.warnings[0].startswith('"color": value "blue" skipped:')


def test_refused_value_pairs_reach_the_batch_warnings() -> None:
    master = [AttributeMappingItem(key="A", values=[AttributeValue(key="a1"), AttributeValue(key="a2")])]
    target = [AttributeMappingItem(key="t1", values=[AttributeValue(key="v1")])]
    store = MappingStateStore(state_from_records([], master, True))
    engine = MergeEngine(store, key_index_from_items(master, target), supports_values=True)
    suggestions = parse_attribute_suggestions(
        {
            "mappings": [
                {
                    "master_key": "A",
                    "target_key": "t1",
                    "similarity": 0.95,
                    "values": [
                        {"master_key": "a1", "target_key": "nope"},
                        {"master_key": "a2", "target_key": "v1"},
                    ],
                }
            ]
        }
    )

    result = AiSuggestionReconciler(engine, suggestions).apply_all_above_threshold(0.9)

    assert (result.applied, result.skipped) == (1, 0)
    assert [w.split(" skipped:")[0] for w in result.warnings] == ['"A": value "a1"']
    assert store.working.values["A"] == {"a1": None, "a2": "v1"}
