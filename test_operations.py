"""
Tests for operations: report creation, job fan-out and progress counts.

Run with: pytest test_operations.py -v
"""

from datetime import date
from functools import partial

import pytest

from activities.contacts import sync_contact
from activities.context import ActivityContext
from core.config import (
    QUEUE_SAP_CONTACT_UPDATE,
    QUEUE_SAP_CONTRACT_DELIVERED_QUANTITY_UPDATE,
    QUEUE_SAP_CONTRACT_SAPID_UPDATE,
    QUEUE_SAP_CONTRACT_UPDATE,
    QUEUE_SAP_DELIVERY_PLACE_UPDATE,
    QUEUE_SAP_ITEM_GROUP_UPDATE,
)
from core.models.entities import Contract, ContractStatus
from core.models.operations import OperationType
from core.storage.repository import create_contract, find_operation_report_by_external_id
from identity.provider import UserRecord
from workers.queue_manager import QueueManager
from workflows.operations import DELIVERED_QUANTITY_JOB_ID, OperationsService

YEAR = date.today().year


class RecordingQueues:
    """Collects pushed jobs instead of running them."""

    def __init__(self):
        self.pushed = []

    async def push(self, queue_name, payload):
        self.pushed.append((queue_name, payload))
        return payload["id"]

    def payloads(self, queue_name):
        return {payload["id"]: payload for name, payload in self.pushed if name == queue_name}


@pytest.fixture
def queues():
    return RecordingQueues()


@pytest.fixture
def operations(queues, sap_services, db_path):
    return OperationsService(queues, sap_services, db_path)


class TestCollectJobs:
    """Each operation type lists its records and builds one job per record."""

    async def test_contact_jobs(self, fake_sap, operations):
        fake_sap.add("BusinessPartners", {"CardCode": "S0001", "CardType": "cSupplier"})
        fake_sap.add("BusinessPartners", {"CardCode": "S0002", "CardType": "cSupplier"})

        jobs = await operations.collect_jobs(OperationType.SAP_CONTACT_SYNC)

        assert [(queue, payload["id"]) for queue, payload in jobs] == [
            (QUEUE_SAP_CONTACT_UPDATE, "S0001"),
            (QUEUE_SAP_CONTACT_UPDATE, "S0002"),
        ]
        assert jobs[0][1]["business_partner"]["CardCode"] == "S0001"

    async def test_delivery_place_jobs(self, fake_sap, operations):
        fake_sap.add("U_PFZ_TOIMITUSPAIKKA", {"Code": "T1", "Name": "Terminal 1"})

        [(queue, payload)] = await operations.collect_jobs(OperationType.SAP_DELIVERY_PLACE_SYNC)

        assert queue == QUEUE_SAP_DELIVERY_PLACE_UPDATE
        assert payload == {"id": "T1", "delivery_place": {"Code": "T1", "Name": "Terminal 1"}}

    async def test_item_group_jobs(self, fake_sap, operations):
        fake_sap.add("ItemGroups", {"Number": 100, "GroupName": "Mustikka"})

        [(queue, payload)] = await operations.collect_jobs(OperationType.SAP_ITEM_GROUP_SYNC)

        assert queue == QUEUE_SAP_ITEM_GROUP_UPDATE
        assert payload["id"] == "100"

    async def test_contract_jobs_per_item_group(self, fake_sap, operations):
        """One job per (agreement, item group) keyed by the composite sap id."""
        fake_sap.add("BlanketAgreements", {
            "AgreementNo": 12,
            "DocNum": 1012,
            "StartDate": f"{YEAR}-05-01",
            "Status": "asApproved",
            "BlanketAgreements_ItemsLines": [{"ItemGroup": 100}, {"ItemGroup": 200}, {"ItemGroup": 100}],
        })

        jobs = await operations.collect_jobs(OperationType.SAP_CONTRACT_SYNC)

        assert [payload["id"] for _, payload in jobs] == [f"{YEAR}-1012-100", f"{YEAR}-1012-200"]
        assert {queue for queue, _ in jobs} == {QUEUE_SAP_CONTRACT_UPDATE}
        assert [payload["item_group"] for _, payload in jobs] == [100, 200]

    async def test_contract_sap_id_jobs(self, db_path, operations):
        common = dict(user_id="user-1", year=YEAR, delivery_place_id=1, item_group_id=1)
        unlinked = create_contract(Contract(status=ContractStatus.APPROVED, **common), db_path=db_path)
        create_contract(Contract(status=ContractStatus.APPROVED, sap_id=f"{YEAR}-1-1", **common), db_path=db_path)
        create_contract(Contract(status=ContractStatus.DRAFT, **common), db_path=db_path)

        jobs = await operations.collect_jobs(OperationType.SAP_CONTRACT_SAPID_SYNC)

        assert jobs == [(QUEUE_SAP_CONTRACT_SAPID_UPDATE, {"id": f"contract-{unlinked.id}", "contract_id": unlinked.id})]

    async def test_delivered_quantity_job(self, operations):
        jobs = await operations.collect_jobs(OperationType.SAP_CONTRACT_DELIVERED_QUANTITY_SYNC)
        assert jobs == [(QUEUE_SAP_CONTRACT_DELIVERED_QUANTITY_UPDATE, {"id": DELIVERED_QUANTITY_JOB_ID})]


class TestStartOperation:
    """Reports are created with one pending item per job."""

    async def test_report_items_pending_until_processed(self, db_path, fake_sap, queues, operations):
        fake_sap.add("ItemGroups", {"Number": 100, "GroupName": "Mustikka"})
        fake_sap.add("ItemGroups", {"Number": 200, "GroupName": "Puolukka"})

        report = await operations.start_operation(OperationType.SAP_ITEM_GROUP_SYNC)

        summary = operations.get_operation_report(report.id)
        assert summary.id == report.external_id
        assert summary.type == OperationType.SAP_ITEM_GROUP_SYNC
        assert summary.pending_count == 2
        assert summary.success_count == 0
        assert find_operation_report_by_external_id(report.external_id, db_path=db_path).id == report.id

        payloads = queues.payloads(QUEUE_SAP_ITEM_GROUP_UPDATE)
        assert payloads["100"]["operation_report_id"] == report.id
        items = operations.list_operation_report_items(report.id)
        assert {payloads[job_id]["operation_report_item_id"] for job_id in ("100", "200")} == {
            item.id for item in items
        }

    async def test_operation_runs_to_completion(self, db_path, fake_sap, sap_services, identity, temporal_client, task_queue_prefix):
        """Contact sync: one grower found, one missing, both items completed."""
        fake_sap.add("BusinessPartners", {"CardCode": "S0001", "CardType": "cSupplier", "EmailAddress": "a@example.com"})
        fake_sap.add("BusinessPartners", {"CardCode": "S0002", "CardType": "cSupplier", "EmailAddress": "b@example.com"})
        identity.add_user(UserRecord(id="user-1", email="a@example.com"))

        ctx = ActivityContext(db_path=db_path, sap=sap_services, identity=identity)
        manager = QueueManager(temporal_client, db_path, task_queue_prefix=task_queue_prefix)
        manager.create_queue(QUEUE_SAP_CONTACT_UPDATE, partial(sync_contact, ctx))
        operations = OperationsService(manager, sap_services, db_path)

        await manager.start()
        try:
            report = await operations.start_operation(OperationType.SAP_CONTACT_SYNC)
            await manager.drain(timeout=30)
        finally:
            await manager.stop()

        summary = operations.get_operation_report(report.id)
        assert (summary.pending_count, summary.success_count, summary.failed_count) == (0, 1, 1)
        messages = sorted(item.message for item in operations.list_operation_report_items(report.id))
        assert messages == [
            "Could not find user with SAP id S0002 nor with email b@example.com",
            "Synchronized contact details from SAP a@example.com / S0001",
        ]

    async def test_empty_operation(self, operations):
        report = await operations.start_operation(OperationType.SAP_DELIVERY_PLACE_SYNC)

        summary = operations.get_operation_report(report.id)
        assert (summary.pending_count, summary.success_count, summary.failed_count) == (0, 0, 0)

    async def test_operation_without_erp(self, queues, db_path):
        operations = OperationsService(queues, None, db_path)
        with pytest.raises(RuntimeError, match="SAP services are not configured"):
            await operations.start_operation(OperationType.SAP_CONTACT_SYNC)

    def test_unknown_report(self, operations):
        assert operations.get_operation_report(404) is None

    async def test_reports_listed_newest_first(self, operations):
        first = await operations.start_operation(OperationType.SAP_DELIVERY_PLACE_SYNC)
        second = await operations.start_operation(OperationType.SAP_CONTRACT_DELIVERED_QUANTITY_SYNC)

        summaries = operations.list_operation_reports()

        assert [s.id for s in summaries] == [second.external_id, first.external_id]
        assert summaries[0].pending_count == 1
