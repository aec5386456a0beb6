"""Prompt + machine-readable sources for AI round-tripping of mappings."""

from __future__ import annotations

import json
from typing import Any, Sequence

from .models import AttributeMappingItem, AttributeType, CanonicalNode, ShopNode

IGNORED_BRANCH_MARKERS = ("nové produkty", "nove produkty", "new products")

TYPE_LABELS = {
    AttributeType.VARIANTS: "variant parameters",
    AttributeType.FILTERING_PARAMETERS: "filtering parameters",
    AttributeType.FLAGS: "product flags",
}


def _is_ignored(name: str | None, path: str | None) -> bool:
    normalized = f"{name or ''} {path or ''}".lower()
    return any(marker in normalized for marker in IGNORED_BRANCH_MARKERS)


def flatten_canonical(nodes: Sequence[CanonicalNode], depth: int = 0, skip: bool = False) -> list[dict[str, Any]]:
    """Pre-order rows with depth; a top-level "new products" branch is left out entirely."""
    rows: list[dict[str, Any]] = []
    for node in nodes:
        skip_here = skip or (depth == 0 and _is_ignored(node.name, node.path))
        if not skip_here:
            mapping = node.mapping
            shop_category = mapping.shop_category if mapping else None
            rows.append(
                {
                    "id": node.id,
                    "name": node.name,
                    "path": node.path,
                    "depth": depth,
                    "mapping_status": mapping.status.value if mapping else None,
                    "mapped_name": shop_category.name if shop_category else None,
                    "mapped_path": shop_category.path if shop_category else None,
                }
            )
        rows.extend(flatten_canonical(node.children, depth + 1, skip_here))
    return rows


def flatten_shop(nodes: Sequence[ShopNode], depth: int = 0, skip: bool = False) -> list[dict[str, Any]]:
    rows: list[dict[str, Any]] = []
    for node in nodes:
        skip_here = skip or (depth == 0 and _is_ignored(node.name, node.path))
        if not skip_here:
            rows.append({"id": node.id, "name": node.name, "path": node.path, "depth": depth})
        rows.extend(flatten_shop(node.children, depth + 1, skip_here))
    return rows


def _category_line(prefix: str, row: dict[str, Any]) -> str:
    line = f"- {prefix}:{row['id']} | depth:{row['depth']} | {row['name']}"
    if row.get("path"):
        line += f" (path: {row['path']})"
    return line


CATEGORY_RESPONSE_SHAPE = """{
  "mappings": [
    {
      "canonical_id": "<master category ID>",
      "target_id": "<target category ID or null>",
      "reason": "short explanation of the decision",
      "confidence": 0.0-1.0
    }
  ]
}"""


def build_category_export(
    master_shop: str,
    target_shop: str,
    canonical: Sequence[CanonicalNode],
    shop: Sequence[ShopNode],
    instructions: str = "",
) -> dict[str, Any]:
    canonical_rows = flatten_canonical(canonical)
    shop_rows = flatten_shop(shop)

    canonical_list = "\n".join(_category_line("MasterID", row) for row in canonical_rows) or "-"
    shop_list = "\n".join(_category_line("TargetID", row) for row in shop_rows) or "-"
    extra = f"\nAdditional instructions: {instructions.strip()}\n" if instructions.strip() else ""

    prompt = "\n".join(
        [
            "### Task",
            f'Map categories between the master shop "{master_shop}" and the target shop "{target_shop}".',
            "Map as many master categories as possible. Prefer semantic matches, keep the tree depth "
            "within one level and preserve parent/child logic. Set target_id to null only when no "
            "suitable match exists.",
            extra,
            "### Sources: master",
            canonical_list,
            "",
            "### Sources: target shop",
            shop_list,
            "",
            "### Expected response",
            "Return JSON of the form:",
            "",
            CATEGORY_RESPONSE_SHAPE,
            "",
            "Use only IDs present in the source lists.",
        ]
    )
    return {
        "prompt": prompt,
        "sources": {
            "master_shop": master_shop,
            "target_shop": target_shop,
            "canonical": canonical_rows,
            "shop": shop_rows,
        },
    }


def _attribute_sources(
    master_shop: str,
    target_shop: str,
    attribute_type: AttributeType,
    master_items: Sequence[AttributeMappingItem],
    target_items: Sequence[AttributeMappingItem],
) -> dict[str, Any]:
    return {
        "master_shop": master_shop,
        "target_shop": target_shop,
        "type": attribute_type.value,
        "master_parameters": [
            {
                "key": item.key,
                "label": item.label,
                "code": item.code,
                "description": item.description,
                "values": [{"key": v.key, "label": v.label} for v in item.values],
            }
            for item in master_items
        ],
        "target_parameters": [
            {
                "key": item.key,
                "label": item.label,
                "code": item.code,
                "description": item.description,
                "likely_master_language": item.likely_master_language,
                "values": [
                    {"key": v.key, "label": v.label, "likely_master_language": v.likely_master_language}
                    for v in item.values
                ],
            }
            for item in target_items
        ],
    }


def build_attribute_export(
    master_shop: str,
    target_shop: str,
    attribute_type: AttributeType,
    master_items: Sequence[AttributeMappingItem],
    target_items: Sequence[AttributeMappingItem],
) -> dict[str, Any]:
    sources = _attribute_sources(master_shop, target_shop, attribute_type, master_items, target_items)
    response_shape = json.dumps(
        {
            "type": attribute_type.value,
            "mappings": [
                {
                    "master_key": "<master parameter key>",
                    "target_key": "<target parameter key or null>",
                    "reason": "optional short explanation",
                    "values": [
                        {
                            "master_key": "<master value key>",
                            "target_key": "<target value key or null>",
                        }
                    ],
                }
            ],
        },
        indent=2,
    )
    prompt = "\n".join(
        [
            f"Task: match {TYPE_LABELS[attribute_type]} between the master shop "
            f'"{master_shop}" and the target shop "{target_shop}".',
            "Rules:",
            "1. The master list is the source of truth. Each master parameter maps to at most one target parameter.",
            '2. Target parameters flagged "likely_master_language": true are probably untranslated; ignore them.',
            "3. Judge values by meaning, not by language.",
            '4. When a parameter has no counterpart in the target shop, set "target_key": null.',
            "5. Do not invent names or edit text; only pair existing keys.",
            "",
            "Data (JSON):",
            json.dumps(sources, indent=2, ensure_ascii=False),
            "",
            "The result must be valid JSON of the form:",
            response_shape,
            "Output nothing but the JSON.",
        ]
    )
    return {"prompt": prompt, "sources": sources}
