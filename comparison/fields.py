"""Header and item field comparison."""

from typing import Any, Dict, List, Mapping, Optional, Sequence

from comparison.constants import EXISTENCE_FIELD, HEADER_FIELDS, ITEM_FIELDS, ITEM_KEY_FIELD
from comparison.models import FieldComparison, FieldState, ItemComparison
from comparison.taxes import compare_item_taxes, default_tax_structure
from comparison.values import MISSING, lookup, public_value, strict_equals
from core.observability.logging import get_logger

logger = get_logger(__name__)

UNKNOWN_ITEM = "Unknown"


def compare_field(field: str, original_value: Any, new_value: Any, path: str) -> FieldComparison:
    """Compare one raw value pair, keeping absence distinct from ``None``."""
    identical = strict_equals(original_value, new_value)
    if original_value is MISSING or new_value is MISSING:
        state = FieldState.ABSENT
    elif identical:
        state = FieldState.IDENTICAL
    else:
        state = FieldState.DIFFERENT

    return FieldComparison(
        field=field,
        original_value=public_value(original_value),
        new_value=public_value(new_value),
        path=path,
        is_identical=identical,
        state=state,
    )


def compare_header_fields(
    original: Optional[Mapping[str, Any]],
    new: Optional[Mapping[str, Any]],
) -> List[FieldComparison]:
    """Compare every tracked header field, identical ones included."""
    return [
        compare_field(field, lookup(original, field), lookup(new, field), f"header.{field}")
        for field in HEADER_FIELDS
    ]


def _existence(key: str, original_exists: bool) -> ItemComparison:
    return ItemComparison(
        item_number=key,
        fields=[
            FieldComparison(
                field=EXISTENCE_FIELD,
                original_value="exists" if original_exists else "missing",
                new_value="missing" if original_exists else "exists",
                path=f"items[{key}]",
                is_identical=False,
                state=FieldState.DIFFERENT,
            )
        ],
        taxes=default_tax_structure(),
    )


def _item_key(item: Mapping[str, Any]) -> Optional[str]:
    key = item.get(ITEM_KEY_FIELD)
    if key is None or key == "":
        return None
    return str(key)


def _index_items(items: Sequence[Mapping[str, Any]], side: str) -> Dict[str, Mapping[str, Any]]:
    """Index items by business key. First occurrence of a key wins."""
    index: Dict[str, Mapping[str, Any]] = {}
    for item in items:
        if not isinstance(item, Mapping):
            continue
        key = _item_key(item)
        if key is None:
            continue
        if key in index:
            logger.warning(
                f"Duplicate item {key} in {side} order, keeping first occurrence",
                extra_fields={"item_number": key, "side": side},
            )
            continue
        index[key] = item
    return index


def compare_item_fields(
    original_items: Optional[Sequence[Mapping[str, Any]]],
    new_items: Optional[Sequence[Mapping[str, Any]]],
) -> List[ItemComparison]:
    """Match items by ``SalesOrderItem`` and compare them.

    Originals are walked in order; replica items left unmatched are appended
    afterwards. Items present on one side only yield a single ``existence``
    record with an empty tax block.
    """
    original_items = original_items or []
    new_index = _index_items(new_items or [], "replica")

    results: List[ItemComparison] = []
    seen = set()

    for original_item in original_items:
        if not isinstance(original_item, Mapping):
            continue
        key = _item_key(original_item)

        if key is None:
            results.append(_existence(UNKNOWN_ITEM, original_exists=True))
            continue
        if key in seen:
            logger.warning(
                f"Duplicate item {key} in original order, keeping first occurrence",
                extra_fields={"item_number": key, "side": "original"},
            )
            continue
        seen.add(key)

        new_item = new_index.get(key)
        if new_item is None:
            results.append(_existence(key, original_exists=True))
            continue

        fields = [
            compare_field(
                field,
                lookup(original_item, field),
                lookup(new_item, field),
                f"items[{key}].{field}",
            )
            for field in ITEM_FIELDS
        ]
        results.append(
            ItemComparison(
                item_number=key,
                fields=fields,
                taxes=compare_item_taxes(original_item, new_item),
            )
        )

    for key in new_index:
        if key not in seen:
            results.append(_existence(key, original_exists=False))

    return results
