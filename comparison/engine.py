"""
Order Comparison Engine

Compares a reference sales order with its replica:
1. Header fields (strict equality, identical fields included)
2. Items matched by SalesOrderItem, fields and taxes
3. Summary excluding fields that differ by construction

Pure: no I/O, no clock. The same two documents always give the same result.
"""

from typing import Any, List, Mapping, Optional

from comparison.fields import compare_header_fields, compare_item_fields
from comparison.models import ComparisonResult, OrderInfo
from comparison.summary import calculate_summary


def order_items(order: Optional[Mapping[str, Any]]) -> List[Mapping[str, Any]]:
    """Return ``order.to_Item.results`` or an empty list."""
    if not isinstance(order, Mapping):
        return []
    navigation = order.get("to_Item")
    if not isinstance(navigation, Mapping):
        return []
    results = navigation.get("results")
    return results if isinstance(results, list) else []


def _text(value: Any) -> str:
    if value is None:
        return ""
    return str(value)


def order_info(order: Optional[Mapping[str, Any]]) -> OrderInfo:
    if not isinstance(order, Mapping):
        return OrderInfo()
    total = order.get("TotalNetAmount")
    if total in (None, ""):
        total = order.get("NetAmount")
    return OrderInfo(
        id=_text(order.get("SalesOrder")),
        customer=_text(order.get("SoldToParty")),
        total=_text(total),
        items=len(order_items(order)),
        date=_text(order.get("SalesOrderDate")),
    )


def compare_orders(
    original: Optional[Mapping[str, Any]],
    new: Optional[Mapping[str, Any]],
) -> ComparisonResult:
    """Run the full comparison of two sales orders.

    Args:
        original: Reference order as returned by the OData service (``d``)
        new: Replica order, same shape

    Returns:
        ComparisonResult with header, items, summary and per-side info
    """
    header = compare_header_fields(original, new)
    items = compare_item_fields(order_items(original), order_items(new))
    summary = calculate_summary(header, items)

    original_info = order_info(original)
    new_info = order_info(new)

    return ComparisonResult(
        order_id=original_info.id or None,
        new_order_id=new_info.id or None,
        header=header,
        items=items,
        summary=summary,
        original_order=original_info,
        new_order=new_info,
    )
