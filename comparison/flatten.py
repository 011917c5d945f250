"""Flatten a comparison into header, item-field and tax rows for querying."""

from typing import Optional

from comparison.constants import TAX_CATEGORIES
from comparison.models import (
    ComparisonResult,
    ComparisonRows,
    HeaderComparisonRow,
    ItemComparisonRow,
    TaxComparisonRow,
)
from comparison.values import stringify


def _number(value: Optional[float]) -> str:
    return "" if value is None else stringify(value)


def flatten_comparison(execution_id: str, result: ComparisonResult) -> ComparisonRows:
    """Explode ``result`` into three row sets owned by ``execution_id``.

    ``item_position`` is the zero-based index of the item in ``result.items``.
    """
    rows = ComparisonRows()

    for field in result.header:
        rows.header.append(
            HeaderComparisonRow(
                test_execution_id=execution_id,
                field_name=field.field,
                field_path=field.path or f"header.{field.field}",
                original_value=stringify(field.original_value),
                new_value=stringify(field.new_value),
                is_identical=field.is_identical,
            )
        )

    for position, item in enumerate(result.items):
        for field in item.fields:
            rows.items.append(
                ItemComparisonRow(
                    test_execution_id=execution_id,
                    item_number=item.item_number,
                    item_position=position,
                    field_name=field.field,
                    field_path=field.path or f"items[{item.item_number}].{field.field}",
                    original_value=stringify(field.original_value),
                    new_value=stringify(field.new_value),
                    is_identical=field.is_identical,
                )
            )

        for tax_type in TAX_CATEGORIES:
            tax = item.taxes.get(tax_type)
            if tax is None:
                continue
            rows.taxes.append(
                TaxComparisonRow(
                    test_execution_id=execution_id,
                    item_number=item.item_number,
                    tax_type=tax_type,
                    original_rate=_number(tax.original.rate),
                    original_base=_number(tax.original.base),
                    original_base_value=_number(tax.original.base_value),
                    original_amount=_number(tax.original.amount),
                    new_rate=_number(tax.new.rate),
                    new_base=_number(tax.new.base),
                    new_base_value=_number(tax.new.base_value),
                    new_amount=_number(tax.new.amount),
                    has_differences=bool(tax.differences),
                    differences_list=list(tax.differences),
                )
            )

    return rows
