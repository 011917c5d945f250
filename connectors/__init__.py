"""ERP Connectors.

Contains the SAP S/4HANA connector used by the replication flow. Workflow
and API code depend on ``connectors.sap`` only through the step client and
its typed errors; no aiohttp types leak past the connector.
"""
