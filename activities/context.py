"""Collaborators and result types shared by the reconciliation activities."""

from dataclasses import dataclass, field
from typing import Any, Dict, Optional

from temporalio.exceptions import ApplicationError

from connectors.sap.sl_services import SapServices
from core.config import DEFAULT_DB_PATH, ItemGroupConfig
from core.storage.db import DbPath
from identity.provider import IdentityProvider


@dataclass
class TaskResult:
    """Successful (or retry requesting) outcome of a task."""
    message: str
    operation_report_item_id: Optional[int] = None
    retry: bool = False


class TaskFailure(ApplicationError):
    """Resolvable business failure. Reported on the report item, never retried.

    The report item id travels as the first failure detail so the job
    workflow can complete the right item.
    """
    def __init__(self, message: str, operation_report_item_id: Optional[int] = None):
        super().__init__(message, operation_report_item_id, type="TaskFailure", non_retryable=True)
        self.operation_report_item_id = operation_report_item_id


@dataclass
class ActivityContext:
    """Everything an activity needs besides its job payload.

    Activities take the context as first argument; the engine binds it with
    functools.partial when registering them as queue processing functions.
    """
    db_path: DbPath = DEFAULT_DB_PATH
    sap: Optional[SapServices] = None
    identity: Optional[IdentityProvider] = None
    item_groups: ItemGroupConfig = field(default_factory=ItemGroupConfig)

    def require_sap(self) -> SapServices:
        if self.sap is None:
            raise RuntimeError("SAP services are not configured")
        return self.sap

    def require_identity(self) -> IdentityProvider:
        if self.identity is None:
            raise RuntimeError("Identity provider is not configured")
        return self.identity


def report_item_id(payload: Dict[str, Any]) -> Optional[int]:
    return payload.get("operation_report_item_id")
