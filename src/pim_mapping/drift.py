"""Default-category drift validation between master products and a target shop."""

from __future__ import annotations

import json
import math
import re
from typing import Any, Iterable, Mapping as MappingType, Sequence

import structlog

from .config import get_settings
from .models import (
    REASON_ORDER,
    AggregatedIssue,
    CanonicalNode,
    CategoryRef,
    DefaultCategoryIssue,
    Mapping,
    MappingStatus,
    ProductSnapshot,
    ReasonCode,
    ShopNode,
)
from .tree_index import TreeIndex, build_tree_index

logger = structlog.get_logger(__name__)

_ARROW_SPLIT = re.compile(r"\s*>\s*")
_SLASH_SPLIT = re.compile(r"\s*/\s*")


def split_path_segments(path: str | None) -> list[str]:
    """Split on ``>``; fall back to ``/`` when that yields a single segment."""
    if not isinstance(path, str) or not path.strip():
        return []
    trimmed = path.strip()
    segments = _ARROW_SPLIT.split(trimmed)
    if len(segments) <= 1:
        segments = _SLASH_SPLIT.split(trimmed)
    return [s.strip() for s in segments if s.strip()]


def _fold(segments: Sequence[str]) -> list[str]:
    return [s.casefold() for s in segments]


def _is_strict_extension(base: Sequence[str], candidate: Sequence[str]) -> bool:
    if len(candidate) <= len(base):
        return False
    return _fold(candidate[: len(base)]) == _fold(base)


def expected_targets(
    canonical: TreeIndex,
    shop: TreeIndex,
    mappings: MappingType[str, Mapping],
) -> dict[str, ShopNode]:
    """canonical guid -> mapped shop node, for mappings that point at a known shop node."""
    out: dict[str, ShopNode] = {}
    for node_id, mapping in mappings.items():
        if mapping.status is MappingStatus.REJECTED or not mapping.shop_category_node_id:
            continue
        node = canonical.by_id.get(node_id)
        shop_node = shop.by_id.get(mapping.shop_category_node_id)
        if node is None or shop_node is None:
            continue
        out[node.guid] = shop_node
    return out


def _shop_ref(shop: TreeIndex, node: ShopNode) -> CategoryRef:
    return CategoryRef(
        id=node.id,
        guid=node.remote_guid,
        remote_guid=node.remote_guid,
        name=node.name,
        path=shop.path_of(node.id),
    )


def _ref_guid(ref: CategoryRef | None) -> str | None:
    if ref is None:
        return None
    return ref.guid or ref.remote_guid


def _resolve_ref(index: TreeIndex, ref: CategoryRef | None):
    """Node for ``ref`` by guid, falling back to its id."""
    if ref is None:
        return None
    node = index.resolve_guid(_ref_guid(ref))
    if node is None and ref.id:
        node = index.by_id.get(ref.id)
    return node


def _has_reference(ref: CategoryRef | None) -> bool:
    return ref is not None and bool(_ref_guid(ref) or ref.id)


def _candidates(product: ProductSnapshot, shop: TreeIndex) -> list[CategoryRef]:
    """Target-side category assignments of a product, resolved against the shop tree."""
    target = product.target
    if target is None:
        return []
    refs = list(target.categories)
    if target.default_category is not None:
        refs.append(target.default_category)

    seen: set[str] = set()
    out: list[CategoryRef] = []
    for ref in refs:
        guid = _ref_guid(ref)
        node = _resolve_ref(shop, ref)
        path = ref.path
        name = ref.name
        node_id = ref.id
        if node is not None:
            path = path or shop.path_of(node.id)
            name = name or node.name
            node_id = node.id
            guid = guid or node.remote_guid
        if not guid and not path:
            continue
        key = f"{guid or ''}|{(path or '').strip()}".lower()
        if key in seen:
            continue
        seen.add(key)
        out.append(CategoryRef(id=node_id, guid=guid, remote_guid=guid, name=name, path=path.strip() if path else None))
    return out


def find_deeper_category(
    default_guid: str | None,
    default_path: str | None,
    candidates: Iterable[CategoryRef],
) -> CategoryRef | None:
    """Deepest candidate whose path strictly extends ``default_path``; ties broken by path."""
    base = split_path_segments(default_path)
    if not base:
        return None
    found: list[tuple[int, str, CategoryRef]] = []
    for candidate in candidates:
        guid = _ref_guid(candidate)
        if guid and default_guid and guid.casefold() == default_guid.casefold():
            continue
        segments = split_path_segments(candidate.path)
        if not segments or not _is_strict_extension(base, segments):
            continue
        found.append((-len(segments), candidate.path or "", candidate))
    if not found:
        return None
    found.sort(key=lambda entry: (entry[0], entry[1]))
    return found[0][2]


def evaluate_product(
    product: ProductSnapshot,
    canonical: TreeIndex,
    shop: TreeIndex,
    expected_by_guid: MappingType[str, ShopNode],
) -> DefaultCategoryIssue | None:
    """Classify one product; ``None`` when its target default category is correct."""
    master_ref = product.master_default
    master_guid = _ref_guid(master_ref)
    canonical_node = _resolve_ref(canonical, master_ref)
    expected_node = expected_by_guid.get(canonical_node.guid) if canonical_node is not None else None

    actual_ref = product.target.default_category if product.target is not None else None
    actual_node = _resolve_ref(shop, actual_ref)
    actual_guid = _ref_guid(actual_ref) or (actual_node.remote_guid if actual_node is not None else None)

    recommended: CategoryRef | None = None
    if not _has_reference(master_ref):
        reason = ReasonCode.MISSING_MASTER_DEFAULT
    elif canonical_node is None:
        reason = ReasonCode.CANONICAL_NOT_FOUND
    elif expected_node is None:
        reason = ReasonCode.MISSING_MAPPING
    elif product.target is None:
        reason = ReasonCode.MISSING_TARGET_SNAPSHOT
    elif not _has_reference(actual_ref):
        reason = ReasonCode.MISSING_ACTUAL_DEFAULT
    elif actual_node is not None and actual_node.id != expected_node.id:
        reason = ReasonCode.MISMATCH
    elif actual_node is None and (not expected_node.remote_guid or expected_node.remote_guid != actual_guid):
        reason = ReasonCode.MISMATCH
    else:
        comparison_path = (
            shop.path_of(actual_node.id) if actual_node is not None else None
        ) or (actual_ref.path if actual_ref else None) or shop.path_of(expected_node.id)
        recommended = find_deeper_category(actual_guid, comparison_path, _candidates(product, shop))
        if recommended is None:
            return None
        reason = ReasonCode.DEFAULT_NOT_DEEPEST

    master_category = CategoryRef(
        id=canonical_node.id if canonical_node is not None else (master_ref.id if master_ref else None),
        guid=canonical_node.guid if canonical_node is not None else master_guid,
        name=canonical_node.name if canonical_node is not None else (master_ref.name if master_ref else None),
        path=canonical.path_of(canonical_node.id) if canonical_node is not None else None,
    )

    actual: CategoryRef | None = None
    if actual_node is not None:
        actual = CategoryRef(
            id=actual_node.id,
            guid=actual_guid,
            name=actual_node.name,
            path=shop.path_of(actual_node.id) or actual_node.name,
        )
    elif _has_reference(actual_ref) or (actual_ref is not None and (actual_ref.name or actual_ref.path)):
        actual = CategoryRef(id=actual_ref.id, guid=actual_guid, name=actual_ref.name, path=actual_ref.path)

    return DefaultCategoryIssue(
        product_id=product.product_id,
        sku=product.sku,
        name=product.name,
        codes=sorted({code for code in product.codes if code}),
        reason=reason,
        master_category=master_category,
        expected_category=_shop_ref(shop, expected_node) if expected_node is not None else None,
        actual_category=actual,
        recommended_category=recommended,
    )


def _matches_search(product: ProductSnapshot, search: str) -> bool:
    needle = search.strip().lower()
    if not needle:
        return True
    if needle in (product.sku or "").lower():
        return True
    return any(needle in code.lower() for code in product.codes)


def validate_default_categories(
    canonical_forest: Sequence[CanonicalNode],
    shop_forest: Sequence[ShopNode],
    mappings: MappingType[str, Mapping],
    products: Iterable[ProductSnapshot],
    page: int = 1,
    per_page: int | None = None,
    search: str | None = None,
    all_pages: bool = False,
) -> dict[str, Any]:
    """Evaluate every product and return ``{data, meta, stats}`` for the requested page."""
    settings = get_settings()
    page = max(1, page)
    per_page = settings.validation_per_page if per_page is None else per_page
    per_page = max(1, min(per_page, settings.validation_max_per_page))

    canonical = build_tree_index(canonical_forest)
    shop = build_tree_index(shop_forest)
    expected_by_guid = expected_targets(canonical, shop, mappings)

    ordered = sorted(products, key=lambda p: (p.sku or "", p.product_id))
    results: list[DefaultCategoryIssue] = []
    stats: dict[str, int] = {}
    total = 0
    offset = (page - 1) * per_page

    for product in ordered:
        if search and not _matches_search(product, search):
            continue
        issue = evaluate_product(product, canonical, shop, expected_by_guid)
        if issue is None:
            continue
        total += 1
        stats[issue.reason.value] = stats.get(issue.reason.value, 0) + 1
        if not all_pages and (total <= offset or len(results) >= per_page):
            continue
        results.append(issue)

    last_page = 1 if total == 0 else math.ceil(total / per_page)
    logger.info("default_category_validation", total=total, page=page, per_page=per_page, stats=stats)
    return {
        "data": results,
        "meta": {"page": page, "per_page": per_page, "total": total, "last_page": max(1, last_page)},
        "stats": stats,
    }


# ---------------------------------------------------------------------------
# Aggregation
# ---------------------------------------------------------------------------

_RESOLVED_FIELDS = ("sku", "name", "expected_category", "actual_category", "recommended_category")


def _canonical_key(value: Any) -> str:
    if hasattr(value, "model_dump"):
        value = value.model_dump(mode="json")
    return json.dumps(value, sort_keys=True, separators=(",", ":"), ensure_ascii=True)


def _resolve(values: Iterable[Any]) -> Any:
    present = [v for v in values if v is not None]
    if not present:
        return None
    return min(present, key=_canonical_key)


def issue_group_key(issue: DefaultCategoryIssue) -> tuple[str, str]:
    return (issue.product_id, issue.master_category.guid or "unknown")


def aggregate_issues(issues: Iterable[DefaultCategoryIssue]) -> list[AggregatedIssue]:
    """Merge issues sharing ``(product_id, master guid)``; result does not depend on input order."""
    groups: dict[tuple[str, str], list[DefaultCategoryIssue]] = {}
    for issue in issues:
        groups.setdefault(issue_group_key(issue), []).append(issue)

    out: list[AggregatedIssue] = []
    for key in sorted(groups):
        group = groups[key]
        reasons = sorted({issue.reason for issue in group}, key=REASON_ORDER.__getitem__)
        codes = sorted({code for issue in group for code in issue.codes})
        resolved = {name: _resolve(getattr(issue, name) for issue in group) for name in _RESOLVED_FIELDS}
        master = _resolve(issue.master_category for issue in group)
        out.append(
            AggregatedIssue(
                product_id=key[0],
                codes=codes,
                reason=reasons[0],
                master_category=master,
                reasons=reasons,
                combined_codes=codes,
                **resolved,
            )
        )
    return out


REASON_LABELS = {
    ReasonCode.MISSING_MASTER_DEFAULT: "Master product has no category",
    ReasonCode.CANONICAL_NOT_FOUND: "Category outside the master tree",
    ReasonCode.MISSING_MAPPING: "Mapping missing",
    ReasonCode.MISSING_TARGET_SNAPSHOT: "Target shop data missing",
    ReasonCode.MISSING_ACTUAL_DEFAULT: "Target shop has no category",
    ReasonCode.MISMATCH: "Category does not match mapping",
    ReasonCode.DEFAULT_NOT_DEEPEST: "Not the deepest category",
}

CSV_HEADER = ["SKU", "Name", "Codes", "Master category", "Expected category", "Actual category", "Reasons"]


def _describe(ref: CategoryRef | None) -> str:
    if ref is None:
        return ""
    text = ref.name or ""
    if ref.path:
        text = f"{text} | {ref.path}"
    return text.strip()


def issues_to_csv_rows(issues: Sequence[AggregatedIssue]) -> list[list[str]]:
    rows = [list(CSV_HEADER)]
    for issue in issues:
        rows.append(
            [
                issue.sku or "",
                issue.name or "",
                ", ".join(issue.combined_codes),
                _describe(issue.master_category),
                _describe(issue.expected_category),
                _describe(issue.actual_category),
                ", ".join(REASON_LABELS[reason] for reason in issue.reasons),
            ]
        )
    return rows


def default_target_for(issue: AggregatedIssue) -> str:
    """Which catalog a remediation should edit first."""
    return "master" if ReasonCode.MISSING_MASTER_DEFAULT in issue.reasons else "shop"
