"""Constants for sales order comparison.

Tax mapping follows the RVABRA pricing procedure: each tax category maps the
four roles (rate, base, base value, amount) to the SAP condition type that
carries it.
"""

from typing import Dict, List


# =============================================================================
# Tax Mapping Table
# =============================================================================

TAX_MAPPING: Dict[str, Dict[str, str]] = {
    "ICMS": {
        "rate": "BX13",
        "base": "ICBS",
        "baseValue": "BX13",
        "amount": "BX13",
    },
    "PIS": {
        "rate": "BPI1",
        "base": "BPI2",
        "baseValue": "BX70",
        "amount": "BX72",
    },
    "COFINS": {
        "rate": "BCO1",
        "base": "BCO2",
        "baseValue": "BX80",
        "amount": "BX82",
    },
    "ICMS_ST": {
        "rate": "ISTS",
        "base": "IBRX",
        "baseValue": "BX40",
        "amount": "BX41",
    },
    "CBS": {
        "rate": "CBS3",
        "base": "IBRX",
        "baseValue": "IBRX",
        "amount": "CBS3",
    },
    "IBS": {
        "rate": "IB3S",
        "base": "IBRX",
        "baseValue": "IBRX",
        "amount": "IB3S",
    },
}

TAX_CATEGORIES: List[str] = ["ICMS", "PIS", "COFINS", "ICMS_ST", "CBS", "IBS"]

# Role -> pricing element attribute holding the number
TAX_ROLE_SOURCE_FIELD: Dict[str, str] = {
    "rate": "ConditionRateValue",
    "base": "ConditionRateValue",
    "baseValue": "ConditionAmount",
    "amount": "ConditionAmount",
}

# Role -> label used in the difference strings rendered by reports
TAX_ROLE_LABELS: Dict[str, str] = {
    "rate": "Taxa",
    "base": "Base Cálculo",
    "baseValue": "Valor Base",
    "amount": "Valor Imposto",
}


# =============================================================================
# Tracked Fields
# =============================================================================

HEADER_FIELDS: List[str] = [
    "SalesOrder",
    "SalesOrderType",
    "SalesOrganization",
    "DistributionChannel",
    "OrganizationDivision",
    "SoldToParty",
    "PurchaseOrderByCustomer",
    "CustomerPaymentTerms",
    "ShippingCondition",
    "IncotermsClassification",
    "IncotermsLocation1",
]

ITEM_FIELDS: List[str] = [
    "SalesOrderItem",
    "Material",
    "RequestedQuantity",
    "RequestedQuantityUnit",
    "NetAmount",
    "ShippingPoint",
    "ProductionPlant",
    "SalesOrderItemCategory",
    "MaterialGroup",
    "ProductTaxClassification1",
    "ProfitCenter",
]

ITEM_KEY_FIELD = "SalesOrderItem"
EXISTENCE_FIELD = "existence"

# Fields that differ by construction and never count in the summary
EXCLUDED_HEADER_FIELDS: List[str] = [
    "SalesOrder",
    "PurchaseOrderByCustomer",
    "SalesOrderType",
    "nfAuthenticationDate",
    "nfeDocumentStatus",
    "nfeNumber",
    "notaFiscal",
]

EXCLUDED_ITEM_FIELDS: List[str] = [
    "brNfSourceDocumentNumber",
    "purchaseOrder",
    "notaFiscal",
]

SECTION_HEADER = "Header"
SECTION_ITEMS = "Items"
