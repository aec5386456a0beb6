"""Row-by-row import of externally supplied attribute mapping documents."""

from __future__ import annotations

from dataclasses import dataclass, field
from typing import Any, Sequence

import structlog

from .config import get_settings
from .merge import MergeEngine
from .models import AttributeMappingItem, AttributeType
from .validation import DuplicateValueUsage, MappingError, ReferenceNotFound, validate_import_document

logger = structlog.get_logger(__name__)


@dataclass
class ImportResult:
    applied_count: int = 0
    skipped_count: int = 0
    warnings: list[str] = field(default_factory=list)

    @property
    def nothing_to_import(self) -> bool:
        return self.applied_count == 0

    def summary_message(self, preview: int | None = None) -> str:
        if self.nothing_to_import:
            return "The document contains no valid mappings, nothing to import."
        if preview is None:
            preview = get_settings().import_warning_preview
        lines = [f"Imported {self.applied_count} mappings, skipped {self.skipped_count}."]
        lines.extend(self.warnings[:preview])
        hidden = len(self.warnings) - preview
        if hidden > 0:
            lines.append(f"... and {hidden} more warnings.")
        return "\n".join(lines)

    def to_dict(self) -> dict[str, Any]:
        return {
            "appliedCount": self.applied_count,
            "skippedCount": self.skipped_count,
            "warnings": list(self.warnings),
            "nothingToImport": self.nothing_to_import,
        }


class ImportValidator:
    """Validates each row against the current item lists and routes it through the merge engine."""

    def __init__(
        self,
        engine: MergeEngine,
        master_items: Sequence[AttributeMappingItem],
        target_items: Sequence[AttributeMappingItem],
        attribute_type: AttributeType | None = None,
    ) -> None:
        self.engine = engine
        self.attribute_type = attribute_type
        self.master_map = {item.key: item for item in master_items}
        self.target_map = {item.key: item for item in target_items}

    def import_document(self, document: Any) -> ImportResult:
        validate_import_document(document)
        result = ImportResult()

        doc_type = document.get("type")
        if doc_type and self.attribute_type is not None and doc_type != self.attribute_type.value:
            result.warnings.append(
                f'The document is meant for type "{doc_type}" but the current type is '
                f'"{self.attribute_type.value}". Continuing anyway.'
            )

        for index, entry in enumerate(document["mappings"], start=1):
            if self._import_row(index, entry if isinstance(entry, dict) else {}, result):
                result.applied_count += 1
            else:
                result.skipped_count += 1

        logger.info(
            "mapping_import_finished",
            attribute_type=self.attribute_type.value if self.attribute_type else None,
            applied=result.applied_count,
            skipped=result.skipped_count,
            warnings=len(result.warnings),
        )
        return result

    def _import_row(self, index: int, entry: dict[str, Any], result: ImportResult) -> bool:
        master_key = entry.get("master_key")
        if not isinstance(master_key, str) or not master_key:
            result.warnings.append(f"Row {index}: missing master_key.")
            return False
        if master_key not in self.master_map:
            result.warnings.append(f'Row {index}: master parameter "{master_key}" was not found.')
            return False

        raw_target = entry.get("target_key")
        target_key = raw_target if isinstance(raw_target, str) and raw_target else None
        if target_key is not None and target_key not in self.target_map:
            result.warnings.append(f'Row {index}: target parameter "{target_key}" does not exist.')
            return False

        try:
            if target_key is None:
                self.engine.clear(master_key)
            else:
                self.engine.assign(master_key, target_key)
        except MappingError as exc:
            result.warnings.append(f"Row {index}: {exc}")
            return False

        values = entry.get("values")
        if self.engine.supports_values and target_key is not None and isinstance(values, list):
            self._import_values(index, master_key, target_key, values, result)
        return True

    def _import_values(
        self,
        index: int,
        master_key: str,
        target_key: str,
        values: list[Any],
        result: ImportResult,
    ) -> None:
        allowed_master = self.master_map[master_key].value_keys()
        allowed_target = self.target_map[target_key].value_keys()
        used_targets: set[str] = set()

        for value_index, value_entry in enumerate(values, start=1):
            value_entry = value_entry if isinstance(value_entry, dict) else {}
            try:
                master_value, target_value = self._check_value(
                    value_index, value_entry, allowed_master, allowed_target, used_targets
                )
                self.engine.assign_value(master_key, master_value, target_value)
            except MappingError as exc:
                result.warnings.append(f"Row {index}: {exc}")
                continue
            used_targets.add(target_value)

    @staticmethod
    def _check_value(
        value_index: int,
        value_entry: dict[str, Any],
        allowed_master: set[str],
        allowed_target: set[str],
        used_targets: set[str],
    ) -> tuple[str, str]:
        master_value = value_entry.get("master_key")
        target_value = value_entry.get("target_key")
        if not isinstance(master_value, str) or master_value not in allowed_master:
            raise ReferenceNotFound("master value", master_value if isinstance(master_value, str) else f"#{value_index}")
        if not isinstance(target_value, str) or target_value not in allowed_target:
            raise ReferenceNotFound("target value", target_value)
        if target_value in used_targets:
            raise DuplicateValueUsage(
                f'value "{master_value}" uses target value "{target_value}" more than once',
                {"master_value_key": master_value, "target_value_key": target_value},
            )
        return master_value, target_value
