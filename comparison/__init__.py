"""Comparison Engine - structural diff of a reference order and its replica.

Covers header fields, items matched by business key, and the six tax
categories of each item. Pure functions, no I/O.
"""

from comparison.constants import HEADER_FIELDS, ITEM_FIELDS, TAX_CATEGORIES, TAX_MAPPING
from comparison.engine import compare_orders
from comparison.fields import compare_header_fields, compare_item_fields
from comparison.flatten import flatten_comparison
from comparison.models import (
    ComparisonResult,
    ComparisonRows,
    ComparisonSummary,
    FieldComparison,
    FieldState,
    ItemComparison,
    TaxComparison,
    TaxData,
)
from comparison.summary import calculate_summary
from comparison.taxes import (
    compare_item_taxes,
    compare_tax_data,
    default_tax_structure,
    extract_tax_data,
)
from comparison.values import MISSING, format_number, parse_number, strict_equals

__all__ = [
    "compare_orders",
    "compare_header_fields",
    "compare_item_fields",
    "calculate_summary",
    "compare_item_taxes",
    "compare_tax_data",
    "default_tax_structure",
    "extract_tax_data",
    "flatten_comparison",
    "ComparisonResult",
    "ComparisonRows",
    "ComparisonSummary",
    "FieldComparison",
    "FieldState",
    "ItemComparison",
    "TaxComparison",
    "TaxData",
    "HEADER_FIELDS",
    "ITEM_FIELDS",
    "TAX_CATEGORIES",
    "TAX_MAPPING",
    "MISSING",
    "format_number",
    "parse_number",
    "strict_equals",
]
