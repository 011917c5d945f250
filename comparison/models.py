"""Comparison result models.

All models serialise with camelCase aliases (``originalValue``,
``isIdentical``, ``totalDifferences`` ...) which is the shape the reports and
the execution record carry.
"""

from enum import Enum
from typing import Any, Dict, List, Optional

from pydantic import BaseModel, ConfigDict, Field
from pydantic.alias_generators import to_camel


class ComparisonModel(BaseModel):
    """Base for immutable, camelCase-serialised comparison models."""

    model_config = ConfigDict(
        alias_generator=to_camel,
        populate_by_name=True,
        frozen=True,
    )

    def to_dict(self) -> Dict[str, Any]:
        return self.model_dump(mode="json", by_alias=True)


class FieldState(str, Enum):
    """Presence-aware outcome of a single field comparison."""
    IDENTICAL = "identical"
    DIFFERENT = "different"
    ABSENT = "absent"  # missing on at least one side


class FieldComparison(ComparisonModel):
    field: str
    original_value: Any = None
    new_value: Any = None
    path: str
    is_identical: bool
    state: FieldState


class TaxData(ComparisonModel):
    """Parsed tax figures for one category. ``None`` means no condition record."""
    rate: Optional[float] = None
    base: Optional[float] = None
    base_value: Optional[float] = None
    amount: Optional[float] = None


class TaxComparison(ComparisonModel):
    original: TaxData = Field(default_factory=TaxData)
    new: TaxData = Field(default_factory=TaxData)
    differences: List[str] = Field(default_factory=list)


class ItemComparison(ComparisonModel):
    item_number: str
    fields: List[FieldComparison]
    taxes: Dict[str, TaxComparison]


class ComparisonSummary(ComparisonModel):
    total_differences: int = 0
    header_differences: int = 0
    item_differences: int = 0
    tax_differences: int = 0
    sections_with_differences: List[str] = Field(default_factory=list)


class OrderInfo(ComparisonModel):
    """Identification block of one side, used by exports."""
    id: str = ""
    customer: str = ""
    total: str = ""
    items: int = 0
    date: str = ""


class ComparisonResult(ComparisonModel):
    order_id: Optional[str] = None
    new_order_id: Optional[str] = None
    header: List[FieldComparison]
    items: List[ItemComparison]
    summary: ComparisonSummary
    original_order: OrderInfo
    new_order: OrderInfo


# =============================================================================
# Flattened rows (query-optimised sink)
# =============================================================================

class HeaderComparisonRow(BaseModel):
    test_execution_id: str
    field_name: str
    field_path: str
    original_value: str
    new_value: str
    is_identical: bool


class ItemComparisonRow(BaseModel):
    test_execution_id: str
    item_number: str
    item_position: int
    field_name: str
    field_path: str
    original_value: str
    new_value: str
    is_identical: bool


class TaxComparisonRow(BaseModel):
    test_execution_id: str
    item_number: str
    tax_type: str
    original_rate: str
    original_base: str
    original_base_value: str
    original_amount: str
    new_rate: str
    new_base: str
    new_base_value: str
    new_amount: str
    has_differences: bool
    differences_list: List[str] = Field(default_factory=list)


class ComparisonRows(BaseModel):
    """The three independent row sets produced from one comparison."""
    header: List[HeaderComparisonRow] = Field(default_factory=list)
    items: List[ItemComparisonRow] = Field(default_factory=list)
    taxes: List[TaxComparisonRow] = Field(default_factory=list)

    @property
    def stats(self) -> Dict[str, int]:
        return {
            "headerRecords": len(self.header),
            "itemRecords": len(self.items),
            "taxRecords": len(self.taxes),
        }
