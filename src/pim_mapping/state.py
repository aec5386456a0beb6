"""Working/persisted mapping state and canonical dirty-checking."""

from __future__ import annotations

import json
from copy import deepcopy
from dataclasses import dataclass, field
from typing import Any, Iterable, Sequence

from .models import (
    AttributeMappingItem,
    AttributeMappingRecord,
    AttributeValueMappingRecord,
    CanonicalNode,
    MappingStatus,
)
from .tree_index import build_tree_index


@dataclass
class MappingState:
    """master_key -> target_key, plus per-value sub-maps and (category scope) statuses."""

    targets: dict[str, str | None] = field(default_factory=dict)
    values: dict[str, dict[str, str | None]] = field(default_factory=dict)
    statuses: dict[str, MappingStatus] = field(default_factory=dict)

    def copy(self) -> "MappingState":
        return MappingState(
            targets=dict(self.targets),
            values={key: dict(sub) for key, sub in self.values.items()},
            statuses=dict(self.statuses),
        )

    def holders_of(self, target_key: str) -> list[str]:
        return [key for key, assigned in self.targets.items() if assigned == target_key]

    def used_targets(self) -> set[str]:
        return {assigned for assigned in self.targets.values() if assigned}


def _prune(mapping: dict[str, Any]) -> dict[str, Any]:
    out: dict[str, Any] = {}
    for key, value in mapping.items():
        if isinstance(value, dict):
            value = _prune(value)
            if not value:
                continue
        elif value is None or value is False:
            continue
        out[key] = value
    return out


def canonical_serialize(state: MappingState) -> str:
    """Key-sorted compact JSON; null entries and empty sub-maps are omitted."""
    payload = {
        "targets": state.targets,
        "values": state.values,
        "statuses": {key: status.value for key, status in state.statuses.items()},
    }
    return json.dumps(_prune(payload), sort_keys=True, separators=(",", ":"), ensure_ascii=True)


class MappingStateStore:
    """Holds the persisted baseline and the working draft for one mapping context."""

    def __init__(self, persisted: MappingState | None = None) -> None:
        self._persisted = MappingState()
        self._working = MappingState()
        self.load(persisted or MappingState())

    @property
    def working(self) -> MappingState:
        return self._working

    @property
    def persisted(self) -> MappingState:
        return self._persisted

    def load(self, persisted: MappingState) -> MappingState:
        self._persisted = deepcopy(persisted)
        self._working = deepcopy(persisted)
        return self._working

    def snapshot(self) -> MappingState:
        return self._working.copy()

    def replace_working(self, state: MappingState) -> None:
        self._working = state

    def is_dirty(self) -> bool:
        return canonical_serialize(self._working) != canonical_serialize(self._persisted)

    def commit(self, new_persisted: MappingState) -> None:
        self.load(new_persisted)

    def reset(self) -> None:
        self._working = deepcopy(self._persisted)


def empty_value_map(item: AttributeMappingItem | None) -> dict[str, str | None]:
    if item is None:
        return {}
    return {value.key: None for value in item.values}


def state_from_records(
    records: Iterable[AttributeMappingRecord],
    master_items: Sequence[AttributeMappingItem],
    supports_values: bool,
) -> MappingState:
    """Seed every master key (and value key) to null, then overlay the stored records."""
    state = MappingState()
    masters = {item.key: item for item in master_items}
    for item in master_items:
        state.targets[item.key] = None
        if supports_values:
            state.values[item.key] = empty_value_map(item)

    records = list(records)
    for record in records:
        state.targets[record.master_key] = record.target_key

    if not supports_values:
        return state

    for record in records:
        if not record.target_key:
            continue
        item = masters.get(record.master_key)
        if item is None or not item.values:
            continue
        sub = state.values.setdefault(record.master_key, empty_value_map(item))
        for value in record.values:
            if value.target_key and value.master_key in sub:
                sub[value.master_key] = value.target_key
    return state


def records_from_state(state: MappingState, supports_values: bool) -> list[AttributeMappingRecord]:
    records: list[AttributeMappingRecord] = []
    for master_key in sorted(state.targets):
        target_key = state.targets[master_key]
        record = AttributeMappingRecord(master_key=master_key, target_key=target_key)
        if supports_values and target_key:
            record.values = [
                AttributeValueMappingRecord(master_key=value_key, target_key=value_target)
                for value_key, value_target in sorted(state.values.get(master_key, {}).items())
                if value_target
            ]
        records.append(record)
    return records


def state_from_tree(canonical: Sequence[CanonicalNode]) -> MappingState:
    """Category mapping state from the node ``mapping`` fields of a canonical forest."""
    state = MappingState()
    for node_id, node in build_tree_index(canonical).by_id.items():
        mapping = node.mapping
        state.targets[node_id] = mapping.shop_category_node_id if mapping else None
        if mapping is not None:
            state.statuses[node_id] = mapping.status
    return state
