"""AI suggestion ingestion, sequential application and dismissal."""

from __future__ import annotations

from dataclasses import dataclass, field
from typing import Any, Callable, Sequence, Union

import structlog

from .config import get_settings
from .merge import MergeEngine
from .models import (
    AiSuggestion,
    AttributeSuggestion,
    AttributeValueMappingRecord,
    CanonicalRef,
    MappingStatus,
    SuggestedRef,
)
from .tree_index import TreeIndex
from .validation import MappingError, validate_import_document

logger = structlog.get_logger(__name__)

Suggestion = Union[AiSuggestion, AttributeSuggestion]

DEFAULT_CATEGORY_CONFIDENCE = 0.5


@dataclass
class BulkApplyResult:
    applied: int = 0
    skipped: int = 0
    cancelled: bool = False
    displaced: list[str] = field(default_factory=list)
    warnings: list[str] = field(default_factory=list)

    def to_dict(self) -> dict[str, Any]:
        return {
            "applied": self.applied,
            "skipped": self.skipped,
            "cancelled": self.cancelled,
            "displaced": list(self.displaced),
            "warnings": list(self.warnings),
        }


class AiSuggestionReconciler:
    """Pending AI suggestions for one session, applied through the merge engine.

    ``track_status`` is set for category sessions: an applied match is stored as
    confirmed and an applied "no match" as rejected.
    """

    def __init__(
        self,
        engine: MergeEngine,
        suggestions: Sequence[Suggestion] = (),
        *,
        track_status: bool = False,
        displace_confirmed: bool | None = None,
    ) -> None:
        self.engine = engine
        self.track_status = track_status
        self.displace_confirmed = (
            get_settings().ai_displace_confirmed if displace_confirmed is None else displace_confirmed
        )
        self._pending: list[Suggestion] = []
        self.extend(suggestions)

    @property
    def pending(self) -> list[Suggestion]:
        return list(self._pending)

    def extend(self, suggestions: Sequence[Suggestion]) -> None:
        """Add suggestions; a newer suggestion for the same master key replaces the older one."""
        for suggestion in suggestions:
            self._pending = [s for s in self._pending if s.master_key != suggestion.master_key]
            self._pending.append(suggestion)

    def dismiss(self, master_id: str) -> bool:
        before = len(self._pending)
        self._pending = [s for s in self._pending if s.master_key != master_id]
        return len(self._pending) != before

    def _confirmed_holder(self, target_key: str, master_key: str) -> str | None:
        state = self.engine.store.working
        for holder in state.holders_of(target_key):
            if holder != master_key and state.statuses.get(holder) is MappingStatus.CONFIRMED:
                return holder
        return None

    def apply_one(self, suggestion: Suggestion, warnings: list[str] | None = None) -> list[str]:
        """Apply one suggestion and dismiss it. Returns displaced master keys.

        Value pairs the merge engine refuses are skipped and reported into ``warnings``.
        """
        master_key = suggestion.master_key
        target_key = suggestion.target_key
        displaced: list[str] = []
        if target_key is not None:
            status = MappingStatus.CONFIRMED if self.track_status else None
            displaced = self.engine.assign(master_key, target_key, status=status)
        else:
            status = MappingStatus.REJECTED if self.track_status else None
            self.engine.clear(master_key, status=status)

        if isinstance(suggestion, AttributeSuggestion) and target_key is not None and self.engine.supports_values:
            for value in suggestion.values:
                try:
                    self.engine.assign_value(master_key, value.master_key, value.target_key)
                except MappingError as exc:
                    logger.warning("suggestion_value_skipped", master_key=master_key, reason=str(exc))
                    if warnings is not None:
                        warnings.append(f'"{master_key}": value "{value.master_key}" skipped: {exc}')

        self.dismiss(master_key)
        logger.info(
            "suggestion_applied",
            master_key=master_key,
            target_key=target_key,
            similarity=suggestion.similarity,
            displaced=displaced,
        )
        return displaced

    def apply_all_above_threshold(
        self,
        threshold: float | None = None,
        should_continue: Callable[[], bool] | None = None,
    ) -> BulkApplyResult:
        """Apply every pending suggestion with ``similarity >= threshold``, one at a time."""
        if threshold is None:
            threshold = get_settings().ai_apply_threshold
        result = BulkApplyResult()
        selected = [s for s in self._pending if s.similarity >= threshold]
        if not selected:
            logger.info("bulk_apply_nothing_above_threshold", threshold=threshold)
            return result

        for suggestion in selected:
            if should_continue is not None and not should_continue():
                result.cancelled = True
                break

            target_key = suggestion.target_key
            if target_key is not None and not self.displace_confirmed:
                holder = self._confirmed_holder(target_key, suggestion.master_key)
                if holder is not None:
                    result.skipped += 1
                    result.warnings.append(
                        f'"{suggestion.master_key}": target "{target_key}" is confirmed for "{holder}", not displaced.'
                    )
                    continue

            try:
                displaced = self.apply_one(suggestion, result.warnings)
            except MappingError as exc:
                result.skipped += 1
                result.warnings.append(f'"{suggestion.master_key}": {exc}')
                continue
            result.applied += 1
            result.displaced.extend(displaced)

        logger.info(
            "bulk_apply_finished",
            threshold=threshold,
            applied=result.applied,
            skipped=result.skipped,
            cancelled=result.cancelled,
        )
        return result


def _clamp(value: Any, default: float) -> float:
    if isinstance(value, bool) or not isinstance(value, (int, float)):
        return default
    return max(0.0, min(1.0, float(value)))


def parse_category_suggestions(
    document: Any,
    canonical: TreeIndex,
    shop: TreeIndex,
) -> tuple[list[AiSuggestion], list[str]]:
    """Read ``{"mappings": [{canonical_id, target_id, confidence, reason}]}`` into suggestions."""
    validate_import_document(document)
    suggestions: list[AiSuggestion] = []
    warnings: list[str] = []

    for index, entry in enumerate(document["mappings"], start=1):
        entry = entry if isinstance(entry, dict) else {}
        canonical_id = entry.get("canonical_id")
        if not isinstance(canonical_id, str) or not canonical_id:
            warnings.append(f"Row {index}: missing valid canonical_id.")
            continue
        node = canonical.by_id.get(canonical_id)
        if node is None:
            warnings.append(f"Row {index}: master category {canonical_id} was not found.")
            continue

        target_id = entry.get("target_id")
        target_id = target_id if isinstance(target_id, str) and target_id else None
        shop_node = shop.by_id.get(target_id) if target_id else None
        if target_id and shop_node is None:
            warnings.append(f"Row {index}: target category {target_id} was not found, row skipped.")
            continue

        reason = entry.get("reason")
        suggestions.append(
            AiSuggestion(
                canonical=CanonicalRef(
                    id=node.id,
                    guid=node.guid,
                    name=node.name,
                    path=canonical.path_of(node.id),
                ),
                suggested=SuggestedRef(
                    id=shop_node.id,
                    name=shop_node.name,
                    path=shop.path_of(shop_node.id),
                    remote_guid=shop_node.remote_guid,
                )
                if shop_node is not None
                else None,
                similarity=_clamp(entry.get("confidence"), DEFAULT_CATEGORY_CONFIDENCE),
                reason=reason if isinstance(reason, str) else None,
            )
        )

    return suggestions, warnings


def parse_attribute_suggestions(document: Any) -> list[AttributeSuggestion]:
    """Read an attribute AI response; rows without a master key are dropped."""
    validate_import_document(document)
    out: list[AttributeSuggestion] = []
    for entry in document["mappings"]:
        if not isinstance(entry, dict) or not isinstance(entry.get("master_key"), str):
            continue
        target_key = entry.get("target_key")
        raw_score = entry.get("similarity", entry.get("confidence"))
        values = [
            AttributeValueMappingRecord(
                master_key=v["master_key"],
                target_key=v["target_key"] if isinstance(v.get("target_key"), str) else None,
            )
            for v in entry.get("values") or []
            if isinstance(v, dict) and isinstance(v.get("master_key"), str)
        ]
        reason = entry.get("reason")
        out.append(
            AttributeSuggestion(
                master_key=entry["master_key"],
                target_key=target_key if isinstance(target_key, str) and target_key else None,
                similarity=_clamp(raw_score, 1.0),
                reason=reason if isinstance(reason, str) else None,
                values=values,
            )
        )
    return out
