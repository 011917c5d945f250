"""Difference summary over a comparison."""

from typing import List, Sequence

from comparison.constants import (
    EXCLUDED_HEADER_FIELDS,
    EXCLUDED_ITEM_FIELDS,
    SECTION_HEADER,
    SECTION_ITEMS,
)
from comparison.models import ComparisonSummary, FieldComparison, ItemComparison


def calculate_summary(
    header: Sequence[FieldComparison],
    items: Sequence[ItemComparison],
) -> ComparisonSummary:
    """Count differences, leaving out fields that differ by construction.

    Tax differences are the lengths of every category's ``differences`` list
    and are never filtered.
    """
    header_differences = sum(
        1 for f in header
        if not f.is_identical and f.field not in EXCLUDED_HEADER_FIELDS
    )

    item_differences = 0
    tax_differences = 0
    for item in items:
        item_differences += sum(
            1 for f in item.fields
            if not f.is_identical and f.field not in EXCLUDED_ITEM_FIELDS
        )
        tax_differences += sum(len(tax.differences) for tax in item.taxes.values())

    sections: List[str] = []
    if header_differences > 0:
        sections.append(SECTION_HEADER)
    if item_differences > 0 or tax_differences > 0:
        sections.append(SECTION_ITEMS)

    return ComparisonSummary(
        total_differences=header_differences + item_differences + tax_differences,
        header_differences=header_differences,
        item_differences=item_differences,
        tax_differences=tax_differences,
        sections_with_differences=sections,
    )
