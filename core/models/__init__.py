"""Core data models.

Local domain entities, operation reports and queue jobs. ERP payload models
live with the SAP connector in connectors/sap/sl_models.py.
"""

from core.models.entities import (
    ChatGroup,
    ChatThread,
    Contract,
    ContractStatus,
    DeliveryPlace,
    ItemGroup,
    ItemGroupCategory,
    Product,
)

from core.models.operations import (
    Job,
    JobStatus,
    OperationReport,
    OperationReportItem,
    OperationReportItemStatus,
    OperationReportSummary,
    OperationType,
)

__all__ = [
    # Entities
    "ChatGroup",
    "ChatThread",
    "Contract",
    "ContractStatus",
    "DeliveryPlace",
    "ItemGroup",
    "ItemGroupCategory",
    "Product",
    # Operations
    "Job",
    "JobStatus",
    "OperationReport",
    "OperationReportItem",
    "OperationReportItemStatus",
    "OperationReportSummary",
    "OperationType",
]
