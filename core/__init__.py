"""Core module - ERP-neutral configuration, models, storage and observability.

ERP-specific logic (SAP Service Layer) belongs in /connectors/.
"""

__version__ = "0.1.0"
