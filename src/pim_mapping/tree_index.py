"""Lookup tables and pure transforms over category forests."""

from __future__ import annotations

from dataclasses import dataclass, field
from typing import Sequence, Union

from .models import CanonicalNode, Mapping, MappingStatus, MappingSummary, ShopNode
from .validation import ReferenceNotFound

Node = Union[CanonicalNode, ShopNode]

PATH_SEPARATOR = " > "
STATUS_FILTERS = ("all", "confirmed", "suggested", "rejected", "unmapped")


@dataclass(frozen=True)
class TreeIndex:
    by_id: dict[str, Node] = field(default_factory=dict)
    by_guid: dict[str, str] = field(default_factory=dict)
    parent_by_id: dict[str, str | None] = field(default_factory=dict)
    order: tuple[str, ...] = ()

    def __contains__(self, node_id: object) -> bool:
        return node_id in self.by_id

    def __len__(self) -> int:
        return len(self.by_id)

    def require(self, node_id: str, kind: str = "category") -> Node:
        node = self.by_id.get(node_id)
        if node is None:
            raise ReferenceNotFound(kind, node_id)
        return node

    def resolve_guid(self, guid: str | None) -> Node | None:
        if not guid:
            return None
        node_id = self.by_guid.get(guid)
        return self.by_id.get(node_id) if node_id is not None else None

    def ancestors(self, node_id: str) -> list[str]:
        """Ids from the root down to (excluding) ``node_id``."""
        chain: list[str] = []
        seen = {node_id}
        parent = self.parent_by_id.get(node_id)
        while parent is not None and parent not in seen:
            seen.add(parent)
            chain.append(parent)
            parent = self.parent_by_id.get(parent)
        chain.reverse()
        return chain

    def depth_of(self, node_id: str) -> int:
        return len(self.ancestors(node_id))

    def path_of(self, node_id: str) -> str | None:
        node = self.by_id.get(node_id)
        if node is None:
            return None
        if node.path:
            return node.path
        names = [self.by_id[a].name.strip() for a in self.ancestors(node_id)]
        names.append(node.name.strip())
        names = [n for n in names if n]
        return PATH_SEPARATOR.join(names) if names else None


def _node_guid(node: Node) -> str | None:
    if isinstance(node, CanonicalNode):
        return node.guid
    return node.remote_guid


def build_tree_index(forest: Sequence[Node]) -> TreeIndex:
    """Pre-order traversal producing id and guid lookups. Empty forest gives empty maps."""
    by_id: dict[str, Node] = {}
    by_guid: dict[str, str] = {}
    parent_by_id: dict[str, str | None] = {}
    order: list[str] = []

    stack: list[tuple[Node, str | None]] = [(node, None) for node in reversed(forest)]
    while stack:
        node, parent_id = stack.pop()
        by_id[node.id] = node
        parent_by_id[node.id] = parent_id
        order.append(node.id)
        guid = _node_guid(node)
        if guid:
            by_guid.setdefault(guid, node.id)
        for child in reversed(node.children):
            stack.append((child, node.id))

    return TreeIndex(by_id=by_id, by_guid=by_guid, parent_by_id=parent_by_id, order=tuple(order))


def _matches(term: str, value: str | None) -> bool:
    if not term.strip():
        return True
    return term.strip().lower() in (value or "").lower()


def _status_matches(node: CanonicalNode, status_filter: str) -> bool:
    if status_filter == "all":
        return True
    mapping = node.mapping
    if status_filter == "unmapped":
        return mapping is None or not mapping.is_mapped
    return mapping is not None and mapping.status.value == status_filter


def filter_canonical_tree(
    forest: Sequence[CanonicalNode],
    search: str = "",
    status_filter: str = "all",
) -> list[CanonicalNode]:
    """Keep nodes matching search and status, plus every ancestor of a match."""
    if status_filter not in STATUS_FILTERS:
        raise ValueError(f"unknown status filter: {status_filter}")
    out: list[CanonicalNode] = []
    for node in forest:
        children = filter_canonical_tree(node.children, search, status_filter)
        mapped_path = node.mapping.shop_category.path if node.mapping and node.mapping.shop_category else None
        search_hit = _matches(search, node.name) or _matches(search, node.path) or _matches(search, mapped_path)
        if (search_hit and _status_matches(node, status_filter)) or children:
            out.append(node.model_copy(update={"children": tuple(children)}))
    return out


def filter_shop_tree(forest: Sequence[ShopNode], search: str = "") -> list[ShopNode]:
    if not search.strip():
        return list(forest)
    out: list[ShopNode] = []
    for node in forest:
        children = filter_shop_tree(node.children, search)
        if _matches(search, node.name) or _matches(search, node.path) or children:
            out.append(node.model_copy(update={"children": tuple(children)}))
    return out


def collapse_mapped_nodes(forest: Sequence[CanonicalNode]) -> list[CanonicalNode]:
    """Drop confirmed nodes whose subtree collapses to nothing."""
    out: list[CanonicalNode] = []
    for node in forest:
        children = collapse_mapped_nodes(node.children)
        confirmed = node.mapping is not None and node.mapping.status is MappingStatus.CONFIRMED
        if confirmed and not children:
            continue
        out.append(node.model_copy(update={"children": tuple(children)}))
    return out


def count_unmapped(forest: Sequence[CanonicalNode]) -> int:
    total = 0
    for node in forest:
        if node.mapping is None or node.mapping.shop_category_node_id is None:
            total += 1
        total += count_unmapped(node.children)
    return total


def with_mapping(forest: Sequence[CanonicalNode], node_id: str, mapping: Mapping | None) -> list[CanonicalNode]:
    """New forest where ``node_id`` carries ``mapping``; untouched subtrees are shared."""
    out: list[CanonicalNode] = []
    for node in forest:
        if node.id == node_id:
            out.append(node.model_copy(update={"mapping": mapping}))
            continue
        children = with_mapping(node.children, node_id, mapping)
        if any(a is not b for a, b in zip(children, node.children)):
            node = node.model_copy(update={"children": tuple(children)})
        out.append(node)
    return out


def summarize_mappings(forest: Sequence[CanonicalNode]) -> MappingSummary:
    summary = MappingSummary()
    for node in build_tree_index(forest).by_id.values():
        mapping = node.mapping
        if mapping is None:
            continue
        summary.total += 1
        if mapping.status is MappingStatus.CONFIRMED:
            summary.confirmed += 1
        elif mapping.status is MappingStatus.SUGGESTED:
            summary.suggested += 1
        elif mapping.status is MappingStatus.REJECTED:
            summary.rejected += 1
    return summary
