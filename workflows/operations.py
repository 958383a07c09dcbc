"""Operations: operator started reconciliation batches.

An operation lists the records to reconcile, creates an operation report
with one pending item per record and pushes one job per record to the
matching queue. The queue manager completes the items; progress is read by
counting them.

Usage:
    operations = OperationsService(queues, sap_services, db_path)
    report = await operations.start_operation(OperationType.SAP_CONTACT_SYNC)
    summary = operations.get_operation_report(report.id)
"""

import uuid
from typing import Any, Dict, List, Optional, Tuple

from activities.contracts import agreement_year, contract_sap_id
from connectors.sap.sl_services import SapServices
from core.config import (
    DEFAULT_DB_PATH,
    QUEUE_SAP_CONTACT_UPDATE,
    QUEUE_SAP_CONTRACT_DELIVERED_QUANTITY_UPDATE,
    QUEUE_SAP_CONTRACT_SAPID_UPDATE,
    QUEUE_SAP_CONTRACT_UPDATE,
    QUEUE_SAP_DELIVERY_PLACE_UPDATE,
    QUEUE_SAP_ITEM_GROUP_UPDATE,
)
from core.models.entities import ContractStatus
from core.models.operations import (
    OperationReport,
    OperationReportItem,
    OperationReportSummary,
    OperationType,
)
from core.observability.logging import get_logger, with_correlation
from core.storage.db import DbPath
from core.storage.repository import (
    count_operation_report_items,
    create_operation_report,
    create_operation_report_item,
    get_operation_report,
    list_contracts,
    list_operation_report_items,
    list_operation_reports,
)
from workers.queue_manager import QueueManager

logger = get_logger(__name__)

# (queue name, job payload without report references)
PendingJob = Tuple[str, Dict[str, Any]]

DELIVERED_QUANTITY_JOB_ID = "delivered-quantities"

OPERATION_QUEUES = {
    OperationType.SAP_CONTACT_SYNC: QUEUE_SAP_CONTACT_UPDATE,
    OperationType.SAP_DELIVERY_PLACE_SYNC: QUEUE_SAP_DELIVERY_PLACE_UPDATE,
    OperationType.SAP_ITEM_GROUP_SYNC: QUEUE_SAP_ITEM_GROUP_UPDATE,
    OperationType.SAP_CONTRACT_SYNC: QUEUE_SAP_CONTRACT_UPDATE,
    OperationType.SAP_CONTRACT_SAPID_SYNC: QUEUE_SAP_CONTRACT_SAPID_UPDATE,
    OperationType.SAP_CONTRACT_DELIVERED_QUANTITY_SYNC: QUEUE_SAP_CONTRACT_DELIVERED_QUANTITY_UPDATE,
}


class OperationsService:
    """Starts operations and reports their progress."""

    def __init__(self, queues: QueueManager, sap: Optional[SapServices] = None, db_path: DbPath = DEFAULT_DB_PATH):
        self.queues = queues
        self.sap = sap
        self.db_path = db_path

    def _require_sap(self) -> SapServices:
        if self.sap is None:
            raise RuntimeError("SAP services are not configured")
        return self.sap

    # =========================================================================
    # Job collection
    # =========================================================================

    async def _contact_jobs(self) -> List[PendingJob]:
        partners = await self._require_sap().business_partners.list_business_partners()
        return [
            (QUEUE_SAP_CONTACT_UPDATE, {"id": partner.card_code, "business_partner": partner.to_payload()})
            for partner in partners
            if partner.card_code
        ]

    async def _delivery_place_jobs(self) -> List[PendingJob]:
        places = await self._require_sap().delivery_places.list_delivery_places()
        return [
            (QUEUE_SAP_DELIVERY_PLACE_UPDATE, {"id": place.code, "delivery_place": place.to_payload()})
            for place in places
            if place.code
        ]

    async def _item_group_jobs(self) -> List[PendingJob]:
        groups = await self._require_sap().item_groups.list_item_groups()
        return [
            (QUEUE_SAP_ITEM_GROUP_UPDATE, {"id": str(group.number), "item_group": group.to_payload()})
            for group in groups
            if group.number is not None
        ]

    async def _contract_jobs(self) -> List[PendingJob]:
        """One job per (agreement, item group) pair."""
        jobs: List[PendingJob] = []
        for sap_contract in await self._require_sap().contracts.list_contracts():
            year = agreement_year(sap_contract)
            if year is None or sap_contract.doc_num is None:
                logger.warning(f"Skipping SAP contract {sap_contract.agreement_no} without start date or document number")
                continue
            payload = sap_contract.to_payload()
            for item_group in sap_contract.item_groups():
                jobs.append((QUEUE_SAP_CONTRACT_UPDATE, {
                    "id": contract_sap_id(year, sap_contract.doc_num, item_group),
                    "contract": payload,
                    "item_group": item_group,
                }))
        return jobs

    async def _contract_sap_id_jobs(self) -> List[PendingJob]:
        contracts = list_contracts(status=ContractStatus.APPROVED, has_sap_id=False, db_path=self.db_path)
        return [
            (QUEUE_SAP_CONTRACT_SAPID_UPDATE, {"id": f"contract-{contract.id}", "contract_id": contract.id})
            for contract in contracts
        ]

    async def _delivered_quantity_jobs(self) -> List[PendingJob]:
        return [(QUEUE_SAP_CONTRACT_DELIVERED_QUANTITY_UPDATE, {"id": DELIVERED_QUANTITY_JOB_ID})]

    async def collect_jobs(self, operation_type: OperationType) -> List[PendingJob]:
        collectors = {
            OperationType.SAP_CONTACT_SYNC: self._contact_jobs,
            OperationType.SAP_DELIVERY_PLACE_SYNC: self._delivery_place_jobs,
            OperationType.SAP_ITEM_GROUP_SYNC: self._item_group_jobs,
            OperationType.SAP_CONTRACT_SYNC: self._contract_jobs,
            OperationType.SAP_CONTRACT_SAPID_SYNC: self._contract_sap_id_jobs,
            OperationType.SAP_CONTRACT_DELIVERED_QUANTITY_SYNC: self._delivered_quantity_jobs,
        }
        return await collectors[operation_type]()

    # =========================================================================
    # Operations
    # =========================================================================

    async def start_operation(self, operation_type: OperationType) -> OperationReport:
        """Create the report, its pending items and push the jobs.

        Raises:
            Exception: If listing the records fails; the report is kept with
                no items
        """
        operation_type = OperationType(operation_type)
        report = create_operation_report(operation_type, external_id=str(uuid.uuid4()), db_path=self.db_path)

        with with_correlation(operation_report_id=report.id, operation_type=operation_type.value):
            logger.info(f"Starting operation {operation_type.value}")
            jobs = await self.collect_jobs(operation_type)

            items = [create_operation_report_item(report.id, db_path=self.db_path) for _ in jobs]
            for (queue_name, payload), item in zip(jobs, items):
                await self.queues.push(queue_name, {
                    **payload,
                    "operation_report_id": report.id,
                    "operation_report_item_id": item.id,
                })

            logger.info(f"Queued {len(jobs)} jobs for operation {operation_type.value}")
        return report

    def _summarize(self, report: OperationReport) -> OperationReportSummary:
        counts = count_operation_report_items(report.id, db_path=self.db_path)
        return OperationReportSummary(
            id=report.external_id,
            type=report.type,
            started=report.created_at,
            pending_count=counts["pending"],
            failed_count=counts["failed"],
            success_count=counts["success"],
        )

    def get_operation_report(self, report_id: int) -> Optional[OperationReportSummary]:
        report = get_operation_report(report_id, db_path=self.db_path)
        return self._summarize(report) if report else None

    def list_operation_reports(self) -> List[OperationReportSummary]:
        """Summaries of every report, newest first."""
        return [self._summarize(report) for report in list_operation_reports(db_path=self.db_path)]

    def list_operation_report_items(self, report_id: int) -> List[OperationReportItem]:
        return list_operation_report_items(report_id, db_path=self.db_path)
