"""Batch entry points: payload validation -> session -> artifacts (or an error envelope)."""

from __future__ import annotations

from typing import Any, Optional

import pydantic
import structlog

from .drift import aggregate_issues, issues_to_csv_rows
from .models import ProductSnapshot
from .session import AttributeMappingSession, CategoryMappingSession
from .validation import MappingError, build_error_envelope, validate_products

logger = structlog.get_logger(__name__)


def _failure(exc: Exception, pipeline: str) -> dict[str, Any]:
    if isinstance(exc, MappingError):
        envelope = exc.to_dict()
    else:
        envelope = build_error_envelope("Validation", f"{exc.__class__.__name__}: {exc}", {})
    logger.warning("pipeline_failed", pipeline=pipeline, error=envelope["error"], reason=envelope["reason"])
    return envelope


def run_import_pipeline(
    attribute_payload: dict[str, Any],
    document: dict[str, Any],
    attribute_type: str,
    master_shop_id: Optional[int] = None,
    target_shop_id: Optional[int] = None,
) -> dict[str, Any]:
    """Import an attribute mapping document onto the stored mappings."""
    try:
        session = AttributeMappingSession(master_shop_id, target_shop_id, attribute_type, attribute_payload)
        result = session.import_document(document)
    except (MappingError, pydantic.ValidationError) as exc:
        return _failure(exc, "import")

    return {
        "artifacts": {
            "import-result.json": {**result.to_dict(), "message": result.summary_message()},
            "attribute-mappings.json": session.build_save_payload(),
        },
        "dirty": session.is_dirty(),
    }


def run_suggestion_pipeline(
    suggestions: dict[str, Any],
    tree_payload: dict[str, Any] | None = None,
    attribute_payload: dict[str, Any] | None = None,
    attribute_type: str | None = None,
    threshold: float | None = None,
    master_shop_id: Optional[int] = None,
    target_shop_id: Optional[int] = None,
) -> dict[str, Any]:
    """Bulk-apply AI suggestions above ``threshold`` to a category tree or attribute set."""
    try:
        if tree_payload is not None:
            session: CategoryMappingSession | AttributeMappingSession = CategoryMappingSession(
                master_shop_id, target_shop_id, tree_payload
            )
            warnings = session.load_suggestions(suggestions)
            artifact_name = "category-mappings.json"
        elif attribute_payload is not None and attribute_type is not None:
            session = AttributeMappingSession(master_shop_id, target_shop_id, attribute_type, attribute_payload)
            session.load_suggestions(suggestions)
            warnings = []
            artifact_name = "attribute-mappings.json"
        else:
            return build_error_envelope(
                "Validation", "either a tree payload or an attribute payload with its type is required", {}
            )
        result = session.apply_suggestions(threshold)
    except (MappingError, pydantic.ValidationError) as exc:
        return _failure(exc, "suggestions")

    report = result.to_dict()
    report["warnings"] = warnings + report["warnings"]
    report["pending"] = len(session.pending_suggestions)
    return {
        "artifacts": {
            "bulk-apply.json": report,
            artifact_name: session.build_save_payload(),
        },
        "dirty": session.is_dirty(),
    }


def run_validation_pipeline(
    tree_payload: dict[str, Any],
    products: list[dict[str, Any]],
    page: int = 1,
    per_page: int | None = None,
    search: str | None = None,
    all_pages: bool = False,
    master_shop_id: Optional[int] = None,
    target_shop_id: Optional[int] = None,
) -> dict[str, Any]:
    """Default-category drift report for a product snapshot."""
    try:
        validate_products(products)
        snapshots = [ProductSnapshot.model_validate(product) for product in products]
        session = CategoryMappingSession(master_shop_id, target_shop_id, tree_payload)
        report = session.validate_defaults(
            snapshots, page=page, per_page=per_page, search=search, all_pages=all_pages
        )
    except (MappingError, pydantic.ValidationError) as exc:
        return _failure(exc, "validation")

    aggregated = aggregate_issues(report["data"])
    return {
        "artifacts": {
            "default-category-validation.json": {
                "data": [issue.model_dump(mode="json") for issue in report["data"]],
                "meta": report["meta"],
                "stats": report["stats"],
            },
            "default-category-issues.json": [issue.model_dump(mode="json") for issue in aggregated],
            "default-category-issues.csv": issues_to_csv_rows(aggregated),
        },
    }


def run_export_pipeline(
    tree_payload: dict[str, Any] | None = None,
    attribute_payload: dict[str, Any] | None = None,
    attribute_type: str | None = None,
    master_shop: str | None = None,
    target_shop: str | None = None,
    instructions: str = "",
) -> dict[str, Any]:
    """AI prompt plus JSON sources for the category tree or an attribute set."""
    try:
        if tree_payload is not None:
            export = CategoryMappingSession(None, None, tree_payload).export_prompt(
                master_shop, target_shop, instructions
            )
            stem = "ai-category-mapping"
        elif attribute_payload is not None and attribute_type is not None:
            export = AttributeMappingSession(None, None, attribute_type, attribute_payload).export_prompt(
                master_shop, target_shop
            )
            stem = f"ai-attribute-mapping-{attribute_type}"
        else:
            return build_error_envelope(
                "Validation", "either a tree payload or an attribute payload with its type is required", {}
            )
    except (MappingError, pydantic.ValidationError) as exc:
        return _failure(exc, "export")

    return {
        "artifacts": {
            f"{stem}.txt": export["prompt"],
            f"{stem}.sources.json": export["sources"],
        },
    }
