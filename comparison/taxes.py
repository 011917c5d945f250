"""Tax extraction and comparison for sales order items.

Tax figures live in each item's pricing elements (``to_PricingElement``).
For every category in ``TAX_MAPPING`` the first element carrying the mapped
condition type supplies the figure; a category with no element at all stays
``None`` so "not priced" never looks like "priced at zero".
"""

from typing import Any, Dict, List, Mapping, Optional, Sequence

from comparison.constants import (
    TAX_CATEGORIES,
    TAX_MAPPING,
    TAX_ROLE_LABELS,
    TAX_ROLE_SOURCE_FIELD,
)
from comparison.models import TaxComparison, TaxData
from comparison.values import format_number, parse_number


# Role -> TaxData attribute
_ROLE_ATTRIBUTES = {
    "rate": "rate",
    "base": "base",
    "baseValue": "base_value",
    "amount": "amount",
}


def pricing_elements(record: Optional[Mapping[str, Any]]) -> List[Dict[str, Any]]:
    """Return ``record.to_PricingElement.results`` or an empty list."""
    if not isinstance(record, Mapping):
        return []
    navigation = record.get("to_PricingElement")
    if not isinstance(navigation, Mapping):
        return []
    results = navigation.get("results")
    if not isinstance(results, list):
        return []
    return [element for element in results if isinstance(element, Mapping)]


def _find_condition(elements: Sequence[Mapping[str, Any]], condition_type: str) -> Optional[Mapping[str, Any]]:
    for element in elements:
        if element.get("ConditionType") == condition_type:
            return element
    return None


def extract_tax_data(elements: Sequence[Mapping[str, Any]], tax_type: str) -> TaxData:
    """Extract rate, base, base value and amount of one tax category.

    Args:
        elements: Pricing elements of one item
        tax_type: Category key of ``TAX_MAPPING`` (e.g. "ICMS")

    Returns:
        TaxData where a figure is ``None`` if its condition is absent and
        ``0`` if the condition exists but its number is unreadable
    """
    mapping = TAX_MAPPING.get(tax_type)
    if not mapping:
        return TaxData()

    values: Dict[str, Optional[float]] = {}
    for role, attribute in _ROLE_ATTRIBUTES.items():
        element = _find_condition(elements, mapping[role])
        if element is None:
            values[attribute] = None
            continue
        parsed = parse_number(element.get(TAX_ROLE_SOURCE_FIELD[role]))
        values[attribute] = parsed if parsed else 0.0

    return TaxData(**values)


def compare_tax_data(original: TaxData, new: TaxData, tax_type: str) -> List[str]:
    """List display-ready differences between two tax tuples.

    Format: ``"<tax_type> <label>: <original> → <new>"``, absent values print as 0.
    """
    differences: List[str] = []
    for role, attribute in _ROLE_ATTRIBUTES.items():
        original_value = getattr(original, attribute)
        new_value = getattr(new, attribute)
        if original_value != new_value:
            differences.append(
                f"{tax_type} {TAX_ROLE_LABELS[role]}: "
                f"{format_number(original_value)} → {format_number(new_value)}"
            )
    return differences


def compare_item_taxes(
    original_item: Optional[Mapping[str, Any]],
    new_item: Optional[Mapping[str, Any]],
) -> Dict[str, TaxComparison]:
    """Compare all six tax categories of a matched item pair."""
    original_elements = pricing_elements(original_item)
    new_elements = pricing_elements(new_item)

    result: Dict[str, TaxComparison] = {}
    for tax_type in TAX_CATEGORIES:
        original_tax = extract_tax_data(original_elements, tax_type)
        new_tax = extract_tax_data(new_elements, tax_type)
        result[tax_type] = TaxComparison(
            original=original_tax,
            new=new_tax,
            differences=compare_tax_data(original_tax, new_tax, tax_type),
        )
    return result


def default_tax_structure() -> Dict[str, TaxComparison]:
    """All six categories, empty, for items that exist on one side only."""
    return {tax_type: TaxComparison() for tax_type in TAX_CATEGORIES}
