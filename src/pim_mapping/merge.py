"""Injective assignment of master keys to target keys (and values within a key)."""

from __future__ import annotations

from dataclasses import dataclass, field
from typing import Sequence

import structlog

from .models import AttributeMappingItem, MappingStatus
from .state import MappingState, MappingStateStore
from .tree_index import TreeIndex
from .validation import MissingSelection, ReferenceNotFound

logger = structlog.get_logger(__name__)


@dataclass(frozen=True)
class KeyIndex:
    """Known master and target keys, each with its allowed value keys."""

    master: dict[str, frozenset[str]] = field(default_factory=dict)
    target: dict[str, frozenset[str]] = field(default_factory=dict)
    master_kind: str = "master parameter"
    target_kind: str = "target parameter"


def key_index_from_items(
    master_items: Sequence[AttributeMappingItem],
    target_items: Sequence[AttributeMappingItem],
) -> KeyIndex:
    return KeyIndex(
        master={item.key: frozenset(item.value_keys()) for item in master_items},
        target={item.key: frozenset(item.value_keys()) for item in target_items},
    )


def key_index_from_trees(canonical: TreeIndex, shop: TreeIndex) -> KeyIndex:
    return KeyIndex(
        master={node_id: frozenset() for node_id in canonical.order},
        target={node_id: frozenset() for node_id in shop.order},
        master_kind="master category",
        target_kind="target category",
    )


class MergeEngine:
    """The only mutator of a store's working state.

    Every operation validates its references first and then swaps in a modified
    copy of the working state, so a rejected call leaves the state untouched.
    """

    def __init__(self, store: MappingStateStore, keys: KeyIndex, supports_values: bool = False) -> None:
        self.store = store
        self.keys = keys
        self.supports_values = supports_values

    def _require_master(self, master_key: str) -> None:
        if master_key not in self.keys.master:
            raise ReferenceNotFound(self.keys.master_kind, master_key)

    def _require_target(self, target_key: str) -> None:
        if target_key not in self.keys.target:
            raise ReferenceNotFound(self.keys.target_kind, target_key)

    def _empty_values(self, master_key: str) -> dict[str, str | None]:
        return {value_key: None for value_key in sorted(self.keys.master.get(master_key, ()))}

    def _release(self, state: MappingState, master_key: str) -> None:
        state.targets[master_key] = None
        state.statuses.pop(master_key, None)
        if self.supports_values:
            state.values[master_key] = self._empty_values(master_key)

    def current(self, master_key: str) -> str | None:
        return self.store.working.targets.get(master_key)

    def assign(self, master_key: str, target_key: str, status: MappingStatus | None = None) -> list[str]:
        """Map ``master_key`` to ``target_key``; returns the master keys it displaced."""
        self._require_master(master_key)
        self._require_target(target_key)

        state = self.store.snapshot()
        displaced = [other for other in state.holders_of(target_key) if other != master_key]
        for other in displaced:
            self._release(state, other)

        previous = state.targets.get(master_key)
        state.targets[master_key] = target_key
        if status is not None:
            state.statuses[master_key] = status
        if self.supports_values and previous != target_key:
            state.values[master_key] = self._empty_values(master_key)

        self.store.replace_working(state)
        logger.debug(
            "mapping_assigned",
            master_key=master_key,
            target_key=target_key,
            previous=previous,
            displaced=displaced,
        )
        return displaced

    def clear(self, master_key: str, status: MappingStatus | None = None) -> None:
        self._require_master(master_key)
        state = self.store.snapshot()
        self._release(state, master_key)
        if status is not None:
            state.statuses[master_key] = status
        self.store.replace_working(state)
        logger.debug("mapping_cleared", master_key=master_key, status=status.value if status else None)

    def assign_value(self, master_key: str, master_value_key: str, target_value_key: str | None) -> list[str]:
        """Map one value of ``master_key``; injective within that key's sub-map only."""
        self._require_master(master_key)
        target_key = self.current(master_key)
        if not target_key:
            raise MissingSelection(
                f'{self.keys.master_kind} "{master_key}" has no target assigned',
                {"master_key": master_key},
            )
        if master_value_key not in self.keys.master[master_key]:
            raise ReferenceNotFound("master value", master_value_key)
        if target_value_key is not None and target_value_key not in self.keys.target.get(target_key, ()):
            raise ReferenceNotFound("target value", target_value_key)

        state = self.store.snapshot()
        sub = state.values.setdefault(master_key, self._empty_values(master_key))
        displaced: list[str] = []
        if target_value_key is not None:
            displaced = [key for key, assigned in sub.items() if assigned == target_value_key and key != master_value_key]
            for key in displaced:
                sub[key] = None
        sub[master_value_key] = target_value_key
        self.store.replace_working(state)
        return displaced
