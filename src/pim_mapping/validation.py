"""Error taxonomy and validation of inbound payload contracts."""

from __future__ import annotations

from typing import Any

ERROR_NAMES = {
    "Validation",
    "ReferenceNotFound",
    "DuplicateValueUsage",
    "PersistenceConflict",
    "MissingSelection",
}


class MappingError(ValueError):
    """Base class for engine errors. ``code`` doubles as the envelope error name."""

    code = "Validation"

    def __init__(self, message: str, details: dict[str, Any] | None = None) -> None:
        super().__init__(message)
        self.message = message
        self.details = details or {}

    def to_dict(self) -> dict[str, Any]:
        return build_error_envelope(self.code, self.message, self.details)


class ValidationError(MappingError):
    """Raised when input contracts are violated."""


class ReferenceNotFound(MappingError):
    """A key is absent from the current tree or attribute index."""

    code = "ReferenceNotFound"

    def __init__(self, kind: str, key: Any) -> None:
        super().__init__(f'{kind} "{key}" not found', {"kind": kind, "key": key})
        self.kind = kind
        self.key = key


class DuplicateValueUsage(MappingError):
    """A target value is used more than once within one import row."""

    code = "DuplicateValueUsage"


class PersistenceConflict(MappingError):
    """The persistence layer rejected a commit. The working draft is kept."""

    code = "PersistenceConflict"


class MissingSelection(MappingError):
    """A mapping action was attempted without the required shop/category context."""

    code = "MissingSelection"


def _ensure(condition: bool, message: str) -> None:
    if not condition:
        raise ValidationError(message)


def build_error_envelope(error: str, reason: str, details: dict[str, Any] | None = None) -> dict[str, Any]:
    """Build the ``{"error", "reason", "details"}`` envelope returned by batch entry points."""
    _ensure(error in ERROR_NAMES, "error type is not allowed")
    _ensure(isinstance(reason, str) and reason != "", "reason must be non-empty string")
    return {
        "error": error,
        "reason": reason,
        "details": details if details is not None else {},
    }


def is_envelope(payload: Any) -> bool:
    return isinstance(payload, dict) and set(payload.keys()) == {"error", "reason", "details"}


def _is_non_empty_str(value: Any) -> bool:
    return isinstance(value, str) and value != ""


def _validate_nodes(nodes: Any, *, context: str, seen: set[str]) -> None:
    _ensure(isinstance(nodes, list), f"{context} must be an array")
    for idx, node in enumerate(nodes):
        where = f"{context}[{idx}]"
        _ensure(isinstance(node, dict), f"{where} must be object")
        node_id = node.get("id")
        _ensure(_is_non_empty_str(node_id), f"{where}.id is required")
        _ensure(node_id not in seen, f"{where}.id '{node_id}' is duplicated")
        seen.add(node_id)
        _ensure(isinstance(node.get("name"), str), f"{where}.name must be string")
        _validate_nodes(node.get("children", []), context=f"{where}.children", seen=seen)


def validate_tree_payload(payload: dict[str, Any]) -> None:
    _ensure(isinstance(payload, dict), "tree payload must be an object")
    _ensure("canonical" in payload, "tree.canonical is required")
    _validate_nodes(payload["canonical"], context="tree.canonical", seen=set())
    _validate_nodes(payload.get("shop", []), context="tree.shop", seen=set())


def _validate_items(items: Any, *, context: str) -> None:
    _ensure(isinstance(items, list), f"{context} must be an array")
    keys: list[str] = []
    for idx, item in enumerate(items):
        where = f"{context}[{idx}]"
        _ensure(isinstance(item, dict), f"{where} must be object")
        _ensure(_is_non_empty_str(item.get("key")), f"{where}.key is required")
        keys.append(item["key"])
        values = item.get("values") or []
        _ensure(isinstance(values, list), f"{where}.values must be an array")
        value_keys = []
        for v_idx, value in enumerate(values):
            _ensure(
                isinstance(value, dict) and _is_non_empty_str(value.get("key")),
                f"{where}.values[{v_idx}].key is required",
            )
            value_keys.append(value["key"])
        _ensure(len(value_keys) == len(set(value_keys)), f"{where}.values keys must be unique")
    _ensure(len(keys) == len(set(keys)), f"{context} keys must be unique")


def validate_attribute_payload(payload: dict[str, Any]) -> None:
    _ensure(isinstance(payload, dict), "attribute payload must be an object")
    for section in ("master", "target"):
        _ensure(section in payload, f"attributes.{section} is required")
        _validate_items(payload[section], context=f"attributes.{section}")
    mappings = payload.get("mappings", [])
    _ensure(isinstance(mappings, list), "attributes.mappings must be an array")
    for idx, record in enumerate(mappings):
        _ensure(
            isinstance(record, dict) and _is_non_empty_str(record.get("master_key")),
            f"attributes.mappings[{idx}].master_key is required",
        )


def validate_import_document(document: Any) -> None:
    _ensure(isinstance(document, dict), "import document must be an object")
    _ensure(isinstance(document.get("mappings"), list), 'import document has no "mappings" array')


def validate_products(products: Any) -> None:
    _ensure(isinstance(products, list), "products must be an array")
    for idx, product in enumerate(products):
        _ensure(isinstance(product, dict), f"products[{idx}] must be object")
        _ensure(product.get("product_id") not in (None, ""), f"products[{idx}].product_id is required")
