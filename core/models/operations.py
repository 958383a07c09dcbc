"""Operation reports and queue jobs."""

from __future__ import annotations

from datetime import datetime
from enum import Enum
from typing import Any, Dict, Optional

from pydantic import BaseModel, Field


class OperationType(str, Enum):
    """Reconciliation batches an operator can start."""
    SAP_CONTACT_SYNC = "SAP_CONTACT_SYNC"
    SAP_DELIVERY_PLACE_SYNC = "SAP_DELIVERY_PLACE_SYNC"
    SAP_ITEM_GROUP_SYNC = "SAP_ITEM_GROUP_SYNC"
    SAP_CONTRACT_SYNC = "SAP_CONTRACT_SYNC"
    SAP_CONTRACT_SAPID_SYNC = "SAP_CONTRACT_SAPID_SYNC"
    SAP_CONTRACT_DELIVERED_QUANTITY_SYNC = "SAP_CONTRACT_DELIVERED_QUANTITY_SYNC"


class OperationReportItemStatus(str, Enum):
    PENDING = "PENDING"
    SUCCESS = "SUCCESS"
    FAILURE = "FAILURE"


class OperationReport(BaseModel):
    id: Optional[int] = None
    external_id: str
    type: OperationType
    created_at: datetime = Field(default_factory=datetime.utcnow)


class OperationReportItem(BaseModel):
    """Outcome of one job of an operation.

    Created pending and completed exactly once by the queue manager.
    """
    id: Optional[int] = None
    operation_report_id: int
    message: Optional[str] = None
    completed: bool = False
    success: bool = False

    @property
    def status(self) -> OperationReportItemStatus:
        if not self.completed:
            return OperationReportItemStatus.PENDING
        if self.success:
            return OperationReportItemStatus.SUCCESS
        return OperationReportItemStatus.FAILURE


class OperationReportSummary(BaseModel):
    """Polling view of an operation report; counts are derived from its items."""
    id: str
    type: OperationType
    started: datetime
    pending_count: int = 0
    failed_count: int = 0
    success_count: int = 0


class JobStatus(str, Enum):
    PENDING = "pending"
    ACTIVE = "active"
    FINISHED = "finished"
    FAILED = "failed"


class Job(BaseModel):
    """One unit of queue work, as reported by its job workflow."""
    id: str
    queue_name: str
    payload: Dict[str, Any] = Field(default_factory=dict)
    status: JobStatus = JobStatus.PENDING
    attempts: int = 0

    @property
    def operation_report_item_id(self) -> Optional[int]:
        return self.payload.get("operation_report_item_id")
