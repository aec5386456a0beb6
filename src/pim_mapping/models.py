"""Pydantic models for trees, attribute items, suggestions and drift issues."""

from __future__ import annotations

from enum import Enum
from typing import Optional

from pydantic import BaseModel, ConfigDict, Field, model_validator


class BaseSchema(BaseModel):
    """Base for all schemas: trims strings and accepts field names or aliases."""

    model_config = ConfigDict(str_strip_whitespace=True, populate_by_name=True)


class FrozenSchema(BaseSchema):
    model_config = ConfigDict(str_strip_whitespace=True, populate_by_name=True, frozen=True)


class MappingStatus(str, Enum):
    CONFIRMED = "confirmed"
    SUGGESTED = "suggested"
    REJECTED = "rejected"


class AttributeType(str, Enum):
    VARIANTS = "variants"
    FILTERING_PARAMETERS = "filtering_parameters"
    FLAGS = "flags"

    @property
    def supports_values(self) -> bool:
        return self in (AttributeType.VARIANTS, AttributeType.FILTERING_PARAMETERS)


class ReasonCode(str, Enum):
    # Declaration order is evaluation order and the order of aggregated reasons.
    MISSING_MASTER_DEFAULT = "missing_master_default"
    CANONICAL_NOT_FOUND = "canonical_not_found"
    MISSING_MAPPING = "missing_mapping"
    MISSING_TARGET_SNAPSHOT = "missing_target_snapshot"
    MISSING_ACTUAL_DEFAULT = "missing_actual_default"
    MISMATCH = "mismatch"
    DEFAULT_NOT_DEEPEST = "default_not_deepest"


REASON_ORDER = {reason: idx for idx, reason in enumerate(ReasonCode)}


# ---------------------------------------------------------------------------
# Category trees
# ---------------------------------------------------------------------------


class ShopCategoryRef(FrozenSchema):
    id: str
    name: str
    path: Optional[str] = None
    remote_guid: Optional[str] = None


class Mapping(FrozenSchema):
    status: MappingStatus
    shop_category_node_id: Optional[str] = None
    confidence: Optional[float] = None
    source: Optional[str] = None
    shop_category: Optional[ShopCategoryRef] = None

    @model_validator(mode="after")
    def _confirmed_needs_target(self) -> "Mapping":
        if self.status is MappingStatus.CONFIRMED and self.shop_category_node_id is None:
            raise ValueError("confirmed mapping requires shop_category_node_id")
        return self

    @property
    def is_mapped(self) -> bool:
        """Counts toward coverage: has a target and was not rejected."""
        return self.shop_category_node_id is not None and self.status is not MappingStatus.REJECTED


class CanonicalNode(FrozenSchema):
    id: str
    guid: str
    name: str
    path: Optional[str] = None
    children: tuple["CanonicalNode", ...] = ()
    mapping: Optional[Mapping] = None


class ShopNode(FrozenSchema):
    id: str
    remote_guid: Optional[str] = None
    name: str
    path: Optional[str] = None
    children: tuple["ShopNode", ...] = ()


class MappingSummary(BaseSchema):
    total: int = 0
    confirmed: int = 0
    suggested: int = 0
    rejected: int = 0


class TreeSummary(BaseSchema):
    canonical_count: int = 0
    shop_count: int = 0
    mappings: MappingSummary = Field(default_factory=MappingSummary)


class TreePayload(BaseSchema):
    canonical: list[CanonicalNode] = Field(default_factory=list)
    shop: list[ShopNode] = Field(default_factory=list)
    summary: Optional[TreeSummary] = None


# ---------------------------------------------------------------------------
# Attributes
# ---------------------------------------------------------------------------


class AttributeValue(BaseSchema):
    key: str
    label: str = ""
    likely_master_language: bool = False


class AttributeMappingItem(BaseSchema):
    key: str
    label: str = ""
    code: Optional[str] = None
    description: Optional[str] = None
    likely_master_language: bool = False
    values: list[AttributeValue] = Field(default_factory=list)

    def value_keys(self) -> set[str]:
        return {value.key for value in self.values}


class AttributeValueMappingRecord(BaseSchema):
    master_key: str
    target_key: Optional[str] = None


class AttributeMappingRecord(BaseSchema):
    master_key: str
    target_key: Optional[str] = None
    values: list[AttributeValueMappingRecord] = Field(default_factory=list)


class AttributePayload(BaseSchema):
    master: list[AttributeMappingItem] = Field(default_factory=list)
    target: list[AttributeMappingItem] = Field(default_factory=list)
    mappings: list[AttributeMappingRecord] = Field(default_factory=list)


# ---------------------------------------------------------------------------
# AI suggestions (ephemeral)
# ---------------------------------------------------------------------------


class CanonicalRef(BaseSchema):
    id: str
    guid: Optional[str] = None
    name: str = ""
    path: Optional[str] = None


class SuggestedRef(BaseSchema):
    id: str
    name: str = ""
    path: Optional[str] = None
    remote_guid: Optional[str] = None


class AiSuggestion(BaseSchema):
    canonical: CanonicalRef
    suggested: Optional[SuggestedRef] = None
    similarity: float = Field(ge=0, le=1)
    reason: Optional[str] = None

    @property
    def master_key(self) -> str:
        return self.canonical.id

    @property
    def target_key(self) -> Optional[str]:
        return self.suggested.id if self.suggested else None


class AttributeSuggestion(BaseSchema):
    master_key: str
    target_key: Optional[str] = None
    similarity: float = Field(default=1.0, ge=0, le=1)
    reason: Optional[str] = None
    values: list[AttributeValueMappingRecord] = Field(default_factory=list)


# ---------------------------------------------------------------------------
# Default-category drift
# ---------------------------------------------------------------------------


class CategoryRef(BaseSchema):
    id: Optional[str] = None
    guid: Optional[str] = None
    remote_guid: Optional[str] = None
    name: Optional[str] = None
    path: Optional[str] = None


class TargetSnapshot(BaseSchema):
    default_category: Optional[CategoryRef] = None
    categories: list[CategoryRef] = Field(default_factory=list)


class ProductSnapshot(BaseSchema):
    product_id: str
    sku: Optional[str] = None
    name: Optional[str] = None
    codes: list[str] = Field(default_factory=list)
    master_default: Optional[CategoryRef] = None
    target: Optional[TargetSnapshot] = None


class DefaultCategoryIssue(BaseSchema):
    product_id: str
    sku: Optional[str] = None
    name: Optional[str] = None
    codes: list[str] = Field(default_factory=list)
    reason: ReasonCode
    master_category: CategoryRef
    expected_category: Optional[CategoryRef] = None
    actual_category: Optional[CategoryRef] = None
    recommended_category: Optional[CategoryRef] = None


class AggregatedIssue(DefaultCategoryIssue):
    reasons: list[ReasonCode] = Field(default_factory=list)
    combined_codes: list[str] = Field(default_factory=list)


class DefaultCategoryUpdate(BaseSchema):
    """Remediation command handed to the persistence layer."""

    product_id: str
    target: str
    category_id: Optional[str] = None
    shop_id: Optional[int] = None
