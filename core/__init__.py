"""Core module - flow state, persistence, audit, configuration.

ERP-specific logic (the SAP OData client) belongs in /connectors/.
"""

__version__ = "1.0.0"
