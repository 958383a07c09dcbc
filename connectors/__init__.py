"""ERP Connectors.

ERP specific authentication, payload models and API communication live here.
Reconciliation activities depend on the typed services in connectors.sap and
never build Service Layer URLs themselves.
"""
