"""Replica sales order payload.

Builds the ``A_SalesOrder`` POST body from a reference order. Only pricing
elements a user changed manually are replayed; automatic conditions are
left for SAP to determine again on the replica.
"""

from typing import Any, Dict, List, Mapping, Optional

from core.observability.logging import get_logger

logger = get_logger(__name__)

DEFAULT_TEXT_LANGUAGE = "PT"

# Optional header fields copied as-is, falsy values sent as null
_OPTIONAL_HEADER_FIELDS = [
    "CustomerGroup",
    "PurchaseOrderByShipToParty",
    "SalesGroup",
    "SalesOffice",
    "PaymentMethod",
    "CustomerPurchaseOrderType",
    "HeaderBillingBlockReason",
    "DeliveryBlockReason",
    "RequestedDeliveryDate",
    "CustomerPurchaseOrderSuplmnt",
]


def _results(record: Optional[Mapping[str, Any]], navigation: str) -> List[Dict[str, Any]]:
    if not isinstance(record, Mapping):
        return []
    value = record.get(navigation)
    if not isinstance(value, Mapping):
        return []
    results = value.get("results")
    return results if isinstance(results, list) else []


def is_manual_condition(element: Mapping[str, Any]) -> bool:
    return element.get("ConditionIsManuallyChanged") in (True, "true")


def is_header_level_condition(element: Mapping[str, Any]) -> bool:
    return element.get("PrcgProcedureCounterForHeader") in ("1", 1)


def _condition_payload(element: Mapping[str, Any]) -> Dict[str, Any]:
    return {
        "ConditionCurrency": element.get("ConditionCurrency"),
        "ConditionType": element.get("ConditionType"),
        "ConditionRateValue": element.get("ConditionRateValue"),
    }


def build_replica_payload(
    original: Mapping[str, Any],
    original_order_id: str,
    warehouse_code: Optional[str] = None,
) -> Dict[str, Any]:
    """Build the creation payload of a replica order.

    Args:
        original: Reference order (``d`` of the expanded GET)
        original_order_id: Reference order number, stamped in PurchaseOrderByCustomer
        warehouse_code: Storage location override for every item

    Returns:
        OData v2 deep-insert body with ``{"results": [...]}`` envelopes
    """
    header_conditions_from_items: List[Mapping[str, Any]] = []
    items: List[Dict[str, Any]] = []

    for position, item in enumerate(_results(original, "to_Item"), start=1):
        elements = _results(item, "to_PricingElement")
        manual = [e for e in elements if is_manual_condition(e)]
        header_level = [e for e in manual if is_header_level_condition(e)]
        item_level = [e for e in manual if not is_header_level_condition(e)]
        header_conditions_from_items.extend(header_level)

        automatic = [e.get("ConditionType") for e in elements if not is_manual_condition(e)]
        if automatic:
            logger.debug(f"Item {position}: excluded automatic conditions {', '.join(map(str, automatic))}")

        item_payload: Dict[str, Any] = {
            "SalesOrderItemCategory": item.get("SalesOrderItemCategory"),
            "SalesOrderItem": item.get("SalesOrderItem"),
            "RequestedQuantityISOUnit": item.get("RequestedQuantityISOUnit") or "",
            "ProductionPlant": item.get("ProductionPlant"),
            "DeliveryPriority": item.get("DeliveryPriority") or "0",
            "TransactionCurrency": item.get("TransactionCurrency"),
            "IncotermsClassification": item.get("IncotermsClassification"),
            "IncotermsTransferLocation": item.get("IncotermsTransferLocation"),
            "PurchaseOrderByCustomer": original.get("PurchaseOrderByCustomer"),
            "Material": item.get("Material"),
            "RequestedQuantity": item.get("RequestedQuantity"),
            "StorageLocation": warehouse_code or item.get("StorageLocation"),
            "to_PricingElement": {
                "results": [_condition_payload(e) for e in item_level],
            },
        }
        if item.get("HigherLevelItem"):
            item_payload["HigherLevelItem"] = item["HigherLevelItem"]

        items.append(item_payload)

    payload: Dict[str, Any] = {
        "SalesOrderType": original.get("SalesOrderType"),
        "CustomerPaymentTerms": original.get("CustomerPaymentTerms"),
        "CompleteDeliveryIsDefined": (
            True if original.get("CompleteDeliveryIsDefined") is None
            else original.get("CompleteDeliveryIsDefined")
        ),
        "SalesOrganization": original.get("SalesOrganization"),
        "DistributionChannel": original.get("DistributionChannel"),
        "OrganizationDivision": original.get("OrganizationDivision"),
        "TransactionCurrency": original.get("TransactionCurrency"),
        "IncotermsClassification": original.get("IncotermsClassification"),
        "IncotermsTransferLocation": original.get("IncotermsTransferLocation"),
        "SoldToParty": original.get("SoldToParty"),
        "PurchaseOrderByCustomer": f"REF_{original_order_id}",
    }
    for name in _OPTIONAL_HEADER_FIELDS:
        payload[name] = original.get(name) or None
    payload["to_Item"] = {"results": items}

    # Customer partners are derived by SAP from SoldToParty
    suppliers = [
        {"PartnerFunction": p.get("PartnerFunction"), "Supplier": p.get("Supplier")}
        for p in _results(original, "to_Partner")
        if p.get("Supplier")
    ]
    if suppliers:
        payload["to_Partner"] = {"results": suppliers}

    header_conditions = [e for e in _results(original, "to_PricingElement") if is_manual_condition(e)]
    header_conditions.extend(header_conditions_from_items)
    if header_conditions:
        payload["to_PricingElement"] = {
            "results": [_condition_payload(e) for e in header_conditions],
        }

    texts = _results(original, "to_Text")
    if texts:
        payload["to_Text"] = {
            "results": [
                {
                    "LongTextID": t.get("LongTextID"),
                    "LongText": t.get("LongText"),
                    "Language": t.get("Language") or DEFAULT_TEXT_LANGUAGE,
                }
                for t in texts
            ],
        }

    logger.info(
        f"Replica payload for order {original_order_id}: {len(items)} items, "
        f"{len(header_conditions)} header conditions"
    )
    return payload
