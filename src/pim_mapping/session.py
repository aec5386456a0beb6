"""Mapping sessions: one working draft per (master shop, target shop, scope) context."""

from __future__ import annotations

from abc import ABC, abstractmethod
from typing import Any, Callable, Iterable, Optional, Sequence

import structlog

from .drift import validate_default_categories
from .export import build_attribute_export, build_category_export
from .importer import ImportResult, ImportValidator
from .merge import MergeEngine, key_index_from_items, key_index_from_trees
from .models import (
    AttributeMappingItem,
    AttributeMappingRecord,
    AttributePayload,
    AttributeType,
    CanonicalNode,
    DefaultCategoryUpdate,
    Mapping,
    MappingStatus,
    ProductSnapshot,
    ShopCategoryRef,
    TreePayload,
    TreeSummary,
)
from .state import MappingState, MappingStateStore, records_from_state, state_from_records, state_from_tree
from .suggestions import (
    AiSuggestionReconciler,
    BulkApplyResult,
    Suggestion,
    parse_attribute_suggestions,
    parse_category_suggestions,
)
from .tree_index import build_tree_index, summarize_mappings, with_mapping
from .validation import (
    MissingSelection,
    PersistenceConflict,
    ValidationError,
    validate_attribute_payload,
    validate_tree_payload,
)

logger = structlog.get_logger(__name__)

PersistFn = Callable[[dict[str, Any]], Any]

DEFAULT_CATEGORY_TARGETS = ("master", "shop")


class _MappingSession(ABC):
    scope = "mapping"

    def __init__(self, master_shop_id: Optional[int], target_shop_id: Optional[int]) -> None:
        self.master_shop_id = master_shop_id
        self.target_shop_id = target_shop_id
        self.log = logger.bind(scope=self.scope, master_shop_id=master_shop_id, target_shop_id=target_shop_id)
        self.store: MappingStateStore
        self.engine: MergeEngine
        self.reconciler: AiSuggestionReconciler

    def _require_context(self) -> None:
        if self.master_shop_id is None:
            raise MissingSelection("no master shop selected", {"field": "master_shop_id"})
        if self.target_shop_id is None:
            raise MissingSelection("no target shop selected", {"field": "target_shop_id"})

    def is_dirty(self) -> bool:
        return self.store.is_dirty()

    def reset(self) -> None:
        self.store.reset()
        self.log.info("mapping_draft_reset")

    # -- AI suggestions -----------------------------------------------------

    @property
    def pending_suggestions(self) -> list[Suggestion]:
        return self.reconciler.pending

    def dismiss_suggestion(self, master_key: str) -> bool:
        return self.reconciler.dismiss(master_key)

    def apply_suggestion(self, master_key: str) -> list[str]:
        self._require_context()
        for suggestion in self.reconciler.pending:
            if suggestion.master_key == master_key:
                return self.reconciler.apply_one(suggestion)
        return []

    def apply_suggestions(
        self,
        threshold: float | None = None,
        should_continue: Callable[[], bool] | None = None,
    ) -> BulkApplyResult:
        self._require_context()
        return self.reconciler.apply_all_above_threshold(threshold, should_continue)

    # -- persistence --------------------------------------------------------

    @abstractmethod
    def build_save_payload(self) -> dict[str, Any]:
        """Payload handed to ``persist``."""

    @abstractmethod
    def _confirmed_state(self, confirmed: Any) -> MappingState:
        """State built from the mappings ``persist`` confirmed."""

    def save(self, persist: PersistFn) -> Any:
        """Hand the draft to ``persist``; commit what it confirms.

        ``persist`` returns the server-confirmed mappings, or ``None`` when the
        payload was stored as sent. A ``PersistenceConflict`` leaves the draft as it was.
        """
        self._require_context()
        payload = self.build_save_payload()
        try:
            confirmed = persist(payload)
        except PersistenceConflict as exc:
            self.log.warning("mapping_save_conflict", reason=exc.message)
            raise
        new_state = self.store.working.copy() if confirmed is None else self._confirmed_state(confirmed)
        self.store.commit(new_state)
        self.log.info("mapping_saved", mappings=len(payload["mappings"]))
        return confirmed


class CategoryMappingSession(_MappingSession):
    """Category mapping of a canonical (master) tree onto one target shop tree."""

    scope = "categories"

    def __init__(
        self,
        master_shop_id: Optional[int],
        target_shop_id: Optional[int],
        tree_payload: TreePayload | dict[str, Any],
    ) -> None:
        super().__init__(master_shop_id, target_shop_id)
        if not isinstance(tree_payload, TreePayload):
            validate_tree_payload(tree_payload)
            tree_payload = TreePayload.model_validate(tree_payload)
        self.canonical_forest: list[CanonicalNode] = list(tree_payload.canonical)
        self.shop_forest = list(tree_payload.shop)
        self.canonical = build_tree_index(self.canonical_forest)
        self.shop = build_tree_index(self.shop_forest)

        self.store = MappingStateStore(state_from_tree(self.canonical_forest))
        self.engine = MergeEngine(self.store, key_index_from_trees(self.canonical, self.shop))
        self.reconciler = AiSuggestionReconciler(self.engine, track_status=True)

    def confirm_mapping(self, master_id: str, target_id: str) -> list[str]:
        self._require_context()
        return self.engine.assign(master_id, target_id, status=MappingStatus.CONFIRMED)

    def reject_mapping(self, master_id: str) -> None:
        self._require_context()
        self.engine.clear(master_id, status=MappingStatus.REJECTED)

    def load_suggestions(self, document: Any) -> list[str]:
        suggestions, warnings = parse_category_suggestions(document, self.canonical, self.shop)
        self.reconciler.extend(suggestions)
        self.log.info("category_suggestions_loaded", count=len(suggestions), warnings=len(warnings))
        return warnings

    def _mapping_for(self, state: MappingState, node_id: str) -> Mapping | None:
        target_id = state.targets.get(node_id)
        status = state.statuses.get(node_id)
        if target_id is None and status is None:
            return None
        if status is None:
            status = MappingStatus.SUGGESTED

        original = self.canonical.by_id[node_id].mapping
        confidence = source = None
        if original is not None and original.shop_category_node_id == target_id:
            confidence, source = original.confidence, original.source

        shop_category = None
        shop_node = self.shop.by_id.get(target_id) if target_id else None
        if shop_node is not None:
            shop_category = ShopCategoryRef(
                id=shop_node.id,
                name=shop_node.name,
                path=self.shop.path_of(shop_node.id),
                remote_guid=shop_node.remote_guid,
            )
        return Mapping(
            status=status,
            shop_category_node_id=target_id,
            confidence=confidence,
            source=source,
            shop_category=shop_category,
        )

    def mappings(self, state: MappingState | None = None) -> dict[str, Mapping]:
        state = state or self.store.working
        out: dict[str, Mapping] = {}
        for node_id in self.canonical.order:
            mapping = self._mapping_for(state, node_id)
            if mapping is not None:
                out[node_id] = mapping
        return out

    def current_tree(self) -> list[CanonicalNode]:
        """Canonical forest carrying the working mappings."""
        forest = self.canonical_forest
        state = self.store.working
        for node_id in self.canonical.order:
            mapping = self._mapping_for(state, node_id)
            if mapping != self.canonical.by_id[node_id].mapping:
                forest = with_mapping(forest, node_id, mapping)
        return list(forest)

    def summary(self) -> TreeSummary:
        return TreeSummary(
            canonical_count=len(self.canonical),
            shop_count=len(self.shop),
            mappings=summarize_mappings(self.current_tree()),
        )

    def build_save_payload(self) -> dict[str, Any]:
        """Rows for every mapped node, plus a null row for each node unmapped since the last save."""
        state = self.store.working
        persisted = self.store.persisted
        rows = []
        for node_id in self.canonical.order:
            target_id = state.targets.get(node_id)
            status = state.statuses.get(node_id)
            if target_id is None and status is None:
                if persisted.targets.get(node_id) is None and persisted.statuses.get(node_id) is None:
                    continue
                rows.append({"canonical_id": node_id, "shop_category_node_id": None, "status": None})
                continue
            rows.append(
                {
                    "canonical_id": node_id,
                    "shop_category_node_id": target_id,
                    "status": (status or MappingStatus.SUGGESTED).value,
                }
            )
        return {
            "master_shop_id": self.master_shop_id,
            "target_shop_id": self.target_shop_id,
            "mappings": rows,
        }

    def _confirmed_state(self, confirmed: Any) -> MappingState:
        rows = confirmed.get("mappings", []) if isinstance(confirmed, dict) else confirmed
        state = MappingState(targets={node_id: None for node_id in self.canonical.order})
        for row in rows:
            node_id = row["canonical_id"]
            state.targets[node_id] = row.get("shop_category_node_id")
            if row.get("status"):
                state.statuses[node_id] = MappingStatus(row["status"])
        return state

    def validate_defaults(self, products: Iterable[ProductSnapshot], **options: Any) -> dict[str, Any]:
        """Drift report against the persisted (not the draft) mappings."""
        return validate_default_categories(
            self.canonical_forest,
            self.shop_forest,
            self.mappings(self.store.persisted),
            products,
            **options,
        )

    def apply_default_category(self, product_id: str, target: str, category_id: str | None) -> DefaultCategoryUpdate:
        """Build the command that sets a product's default category in one catalog."""
        if target not in DEFAULT_CATEGORY_TARGETS:
            raise ValidationError(f"unknown default category target: {target}", {"target": target})
        if target == "shop":
            if self.target_shop_id is None:
                raise MissingSelection("no target shop selected", {"field": "target_shop_id"})
            if category_id is not None:
                self.shop.require(category_id, "target category")
            shop_id = self.target_shop_id
        else:
            if category_id is not None:
                self.canonical.require(category_id, "master category")
            shop_id = self.master_shop_id
        self.log.info("default_category_update", product_id=product_id, target=target, category_id=category_id)
        return DefaultCategoryUpdate(product_id=product_id, target=target, category_id=category_id, shop_id=shop_id)

    def export_prompt(self, master_shop: str | None = None, target_shop: str | None = None, instructions: str = "") -> dict[str, Any]:
        return build_category_export(
            master_shop or str(self.master_shop_id),
            target_shop or str(self.target_shop_id),
            self.current_tree(),
            self.shop_forest,
            instructions,
        )


class AttributeMappingSession(_MappingSession):
    """Attribute mapping (variants, filtering parameters or flags) between two shops."""

    scope = "attributes"

    def __init__(
        self,
        master_shop_id: Optional[int],
        target_shop_id: Optional[int],
        attribute_type: AttributeType | str,
        attribute_payload: AttributePayload | dict[str, Any],
    ) -> None:
        super().__init__(master_shop_id, target_shop_id)
        try:
            self.attribute_type = AttributeType(attribute_type)
        except ValueError as exc:
            raise ValidationError(f"unknown attribute type: {attribute_type}", {"type": str(attribute_type)}) from exc
        self.log = self.log.bind(attribute_type=self.attribute_type.value)
        if not isinstance(attribute_payload, AttributePayload):
            validate_attribute_payload(attribute_payload)
            attribute_payload = AttributePayload.model_validate(attribute_payload)
        self.master_items: list[AttributeMappingItem] = list(attribute_payload.master)
        self.target_items: list[AttributeMappingItem] = list(attribute_payload.target)
        self.supports_values = self.attribute_type.supports_values

        self.store = MappingStateStore(
            state_from_records(attribute_payload.mappings, self.master_items, self.supports_values)
        )
        self.engine = MergeEngine(
            self.store,
            key_index_from_items(self.master_items, self.target_items),
            supports_values=self.supports_values,
        )
        self.reconciler = AiSuggestionReconciler(self.engine)
        self.importer = ImportValidator(self.engine, self.master_items, self.target_items, self.attribute_type)

    def assign(self, master_key: str, target_key: str) -> list[str]:
        self._require_context()
        return self.engine.assign(master_key, target_key)

    def clear(self, master_key: str) -> None:
        self._require_context()
        self.engine.clear(master_key)

    def assign_value(self, master_key: str, master_value_key: str, target_value_key: str | None) -> list[str]:
        self._require_context()
        return self.engine.assign_value(master_key, master_value_key, target_value_key)

    def target_of(self, master_key: str) -> str | None:
        return self.engine.current(master_key)

    def available_targets(self, search: str = "", master_key: str | None = None) -> list[AttributeMappingItem]:
        """Targets still free to drop on ``master_key``; untranslated ones are hidden."""
        used = self.store.working.used_targets()
        own = self.target_of(master_key) if master_key else None
        needle = search.strip().lower()
        out = []
        for item in self.target_items:
            if item.likely_master_language:
                continue
            if item.key in used and item.key != own:
                continue
            if needle and not any(needle in (text or "").lower() for text in (item.key, item.label, item.code)):
                continue
            out.append(item)
        return out

    def mapped_count(self) -> int:
        return sum(1 for target in self.store.working.targets.values() if target)

    def import_document(self, document: Any) -> ImportResult:
        self._require_context()
        return self.importer.import_document(document)

    def load_suggestions(self, document: Any) -> int:
        suggestions = parse_attribute_suggestions(document)
        self.reconciler.extend(suggestions)
        self.log.info("attribute_suggestions_loaded", count=len(suggestions))
        return len(suggestions)

    def records(self) -> list[AttributeMappingRecord]:
        return records_from_state(self.store.working, self.supports_values)

    def build_save_payload(self) -> dict[str, Any]:
        return {
            "type": self.attribute_type.value,
            "master_shop_id": self.master_shop_id,
            "target_shop_id": self.target_shop_id,
            "mappings": [record.model_dump() for record in self.records()],
        }

    def _confirmed_state(self, confirmed: Any) -> MappingState:
        rows: Sequence[Any] = confirmed.get("mappings", []) if isinstance(confirmed, dict) else confirmed
        records = [AttributeMappingRecord.model_validate(row) for row in rows]
        return state_from_records(records, self.master_items, self.supports_values)

    def save_attribute_mappings(self, persist: PersistFn) -> Any:
        return self.save(persist)

    def export_prompt(self, master_shop: str | None = None, target_shop: str | None = None) -> dict[str, Any]:
        return build_attribute_export(
            master_shop or str(self.master_shop_id),
            target_shop or str(self.target_shop_id),
            self.attribute_type,
            self.master_items,
            self.target_items,
        )
