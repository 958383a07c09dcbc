"""
Tests for the ERP to local reconciliation activities.

Run with: pytest test_activities.py -v
"""

from datetime import date
from functools import partial

import pytest

from activities.contacts import contact_attributes, sync_contact, translate_vat_liable
from activities.context import ActivityContext, TaskFailure
from activities.contracts import (
    contract_sap_id,
    delivered_quantities_by_sap_id,
    parse_contract_sap_id,
    sync_contract,
    sync_contract_sap_id,
    sync_delivered_quantities,
)
from activities.delivery_places import sync_delivery_place
from activities.item_groups import PREREQUISITE_RETRY_MESSAGE, sync_item_group
from connectors.sap.sl_models import SapBusinessPartner, SapContract
from core.config import QueueOptions
from core.models.entities import Contract, ContractStatus, DeliveryPlace, ItemGroup, ItemGroupCategory
from core.storage.repository import (
    create_contract,
    find_contract_by_sap_id,
    find_item_group_by_sap_id,
    get_contract,
    list_contracts,
    list_delivery_places,
    list_item_groups,
    update_contract,
    upsert_delivery_place,
    upsert_item_group,
)
from identity.provider import UserAttribute, UserRecord
from workers.queue_manager import QueueManager

YEAR = date.today().year


@pytest.fixture
def ctx(db_path, sap_services, identity, item_group_config):
    return ActivityContext(db_path=db_path, sap=sap_services, identity=identity, item_groups=item_group_config)


@pytest.fixture
def grower(identity):
    return identity.add_user(UserRecord(
        id="user-1",
        email="grower@example.com",
        attributes={UserAttribute.SAP_ID.value: ["S0001"]},
    ))


@pytest.fixture
def reference_data(db_path):
    delivery_place, _ = upsert_delivery_place(DeliveryPlace(sap_id="T1", name="Terminal 1"), db_path=db_path)
    item_group, _ = upsert_item_group(
        ItemGroup(sap_id="100", name="Frozen blueberry", category=ItemGroupCategory.FROZEN),
        db_path=db_path,
    )
    return delivery_place, item_group


def agreement(**overrides):
    data = {
        "AgreementNo": 12,
        "DocNum": 1012,
        "BPCode": "S0001",
        "StartDate": f"{YEAR}-05-01",
        "EndDate": f"{YEAR + 1}-01-31",
        "SigningDate": f"{YEAR}-04-20",
        "Status": "asApproved",
        "U_PFZ_Toi": "T1",
        "Remarks": "From SAP",
        "U_TR_100": 2500,
        "BlanketAgreements_ItemsLines": [
            {"ItemGroup": 100, "ItemNo": "MUS-1", "PlannedQuantity": 1, "CumulativeQuantity": 300, "U_PFZ_ToiP": "T1"},
            {"ItemGroup": 100, "ItemNo": "MUS-2", "PlannedQuantity": 1, "CumulativeQuantity": 150},
        ],
    }
    data.update(overrides)
    return data


# =============================================================================
# Contacts
# =============================================================================

def partner_payload(**overrides):
    data = {
        "CardCode": "S0001",
        "CardName": " Marjatila Oy ",
        "EmailAddress": "grower@example.com",
        "Phone1": "040 123",
        "FederalTaxID": "FI123",
        "VatLiable": "vLiable",
        "BPAddresses": [
            {"AddressType": "bo_BillTo", "Street": "Main street 2", "ZipCode": "00100", "City": "Helsinki"},
            {"AddressType": "bo_ShipTo", "Street": "Farm road 1", "ZipCode": "51200", "City": "Kangasniemi"},
        ],
        "BPBankAccounts": [{"IBAN": "FI2112345600000785", "BICSwiftCode": "NDEAFIHH"}],
    }
    data.update(overrides)
    return {"business_partner": data, "operation_report_item_id": 5}


class TestContacts:
    """Business partner details into user attributes."""

    def test_vat_liable_translation(self):
        assert translate_vat_liable("vLiable") == "YES"
        assert translate_vat_liable("vExempted") == "NO"
        assert translate_vat_liable("vEC") == "EU"
        assert translate_vat_liable(None) is None

    def test_attributes_from_addresses(self):
        partner = SapBusinessPartner.model_validate(partner_payload()["business_partner"])
        attributes = contact_attributes(partner)

        assert attributes[UserAttribute.COMPANY_NAME] == "Marjatila Oy"
        assert attributes[UserAttribute.STREET_1] == "Main street 2"
        assert attributes[UserAttribute.POSTAL_CODE_2] == "51200"
        assert attributes[UserAttribute.CITY_2] == "Kangasniemi"
        assert attributes[UserAttribute.IBAN] == "FI2112345600000785"
        assert attributes[UserAttribute.BIC] == "NDEAFIHH"

    async def test_user_found_by_sap_id(self, ctx, identity, grower):
        result = await sync_contact(ctx, partner_payload(EmailAddress="other@example.com"))

        user = await identity.find_user("user-1")
        assert result.message == "Synchronized contact details from SAP other@example.com / S0001"
        assert result.operation_report_item_id == 5
        assert user.get_single_attribute(UserAttribute.COMPANY_NAME.value) == "Marjatila Oy"
        assert user.get_single_attribute(UserAttribute.VAT_LIABLE.value) == "YES"
        assert user.get_single_attribute(UserAttribute.PHONE_2.value) is None

    async def test_user_found_by_email(self, ctx, identity):
        identity.add_user(UserRecord(id="user-2", email="Grower@Example.com"))

        await sync_contact(ctx, partner_payload())

        user = await identity.find_user("user-2")
        assert user.get_single_attribute(UserAttribute.SAP_ID.value) == "S0001"

    async def test_missing_email(self, ctx, grower):
        with pytest.raises(TaskFailure) as exc_info:
            await sync_contact(ctx, partner_payload(EmailAddress=None))

        assert exc_info.value.message == "Could not synchronize user with SAP id S0001 because email is null"
        assert exc_info.value.operation_report_item_id == 5

    async def test_unknown_user(self, ctx):
        with pytest.raises(TaskFailure) as exc_info:
            await sync_contact(ctx, partner_payload())

        assert exc_info.value.message == "Could not find user with SAP id S0001 nor with email grower@example.com"


# =============================================================================
# Item groups
# =============================================================================

class TestItemGroups:
    """Item groups with static category and prerequisite data."""

    async def test_creates_item_group(self, ctx, db_path):
        result = await sync_item_group(ctx, {"item_group": {"Number": 100, "GroupName": "Mustikka"}})

        stored = find_item_group_by_sap_id("100", db_path=db_path)
        assert result.message == "Synchronized item group details from SAP Mustikka / 100"
        assert stored.category == ItemGroupCategory.FROZEN
        assert stored.display_name == "Frozen blueberries"
        assert stored.minimum_profit_estimation == 0.5

    async def test_unknown_category(self, ctx):
        with pytest.raises(TaskFailure, match="Failed to resolve SAP item group 999 category"):
            await sync_item_group(ctx, {"item_group": {"Number": 999, "GroupName": "Unknown"}})

    async def test_missing_prerequisite_requests_retry(self, ctx, db_path):
        result = await sync_item_group(ctx, {"item_group": {"Number": 101, "GroupName": "Puolukka"}})

        assert result.retry
        assert result.message == PREREQUISITE_RETRY_MESSAGE
        assert find_item_group_by_sap_id("101", db_path=db_path) is None

    async def test_sync_twice_keeps_one_row(self, ctx, db_path):
        first = await sync_item_group(ctx, {"item_group": {"Number": 100, "GroupName": "Mustikka"}})
        before = find_item_group_by_sap_id("100", db_path=db_path)
        second = await sync_item_group(ctx, {"item_group": {"Number": 100, "GroupName": "Mustikka"}})

        assert first.message == second.message
        assert list_item_groups(db_path=db_path) == [before]

    async def test_prerequisite_order_converges_through_queue(self, ctx, db_path, temporal_client, task_queue_prefix):
        """A group pushed before its prerequisite completes after a retry."""
        manager = QueueManager(temporal_client, db_path, task_queue_prefix=task_queue_prefix)
        queue = manager.create_queue(
            "sapItemGroupUpdate",
            partial(sync_item_group, ctx),
            QueueOptions(retry_delay=0.5),
        )
        await queue.push({"id": "101", "item_group": {"Number": 101, "GroupName": "Puolukka"}})
        await queue.push({"id": "100", "item_group": {"Number": 100, "GroupName": "Mustikka"}})

        await manager.start()
        try:
            await manager.drain(timeout=30)
        finally:
            await manager.stop()

        parent = find_item_group_by_sap_id("100", db_path=db_path)
        child = find_item_group_by_sap_id("101", db_path=db_path)
        assert child.prerequisite_contract_item_group_id == parent.id


# =============================================================================
# Delivery places
# =============================================================================

class TestDeliveryPlaces:
    async def test_create_then_update(self, ctx, db_path):
        created = await sync_delivery_place(ctx, {"delivery_place": {"Code": "T1", "Name": "Terminal"}})
        updated = await sync_delivery_place(ctx, {"delivery_place": {"Code": "T1", "Name": "Terminal 1"}})

        assert created.message == "Created new delivery place from SAP Terminal / T1"
        assert updated.message == "Updated delivery place from SAP Terminal 1 / T1"
        assert [p.name for p in list_delivery_places(db_path=db_path)] == ["Terminal 1"]

    async def test_missing_name(self, ctx):
        with pytest.raises(TaskFailure):
            await sync_delivery_place(ctx, {"delivery_place": {"Code": "T1"}})


# =============================================================================
# Contracts
# =============================================================================

class TestContractSapIds:
    def test_compose(self):
        assert contract_sap_id(2024, 1012, 100) == "2024-1012-100"

    def test_parse(self):
        assert parse_contract_sap_id("2024-1012-100") == (2024, 1012, "100")

    @pytest.mark.parametrize("sap_id", ["", "2024-1012", "2024-abc-100", "a-b-c-d"])
    def test_parse_invalid(self, sap_id):
        with pytest.raises(ValueError, match="is invalid"):
            parse_contract_sap_id(sap_id)

    def test_delivered_quantities_summed_per_group(self):
        contracts = [SapContract.model_validate(agreement(BlanketAgreements_ItemsLines=[
            {"ItemGroup": 100, "CumulativeQuantity": 300},
            {"ItemGroup": 100, "CumulativeQuantity": 150},
            {"ItemGroup": 200, "CumulativeQuantity": 20},
        ]))]

        assert delivered_quantities_by_sap_id(contracts) == {
            f"{YEAR}-1012-100": 450,
            f"{YEAR}-1012-200": 20,
        }


class TestSyncContract:
    """One local contract per (agreement, item group)."""

    async def test_creates_contract(self, ctx, db_path, grower, reference_data):
        delivery_place, item_group = reference_data

        result = await sync_contract(ctx, {"contract": agreement(), "item_group": 100})

        sap_id = f"{YEAR}-1012-100"
        contract = find_contract_by_sap_id(sap_id, db_path=db_path)
        assert result.message == f"Created new contract from SAP {sap_id}"
        assert contract.user_id == "user-1"
        assert contract.status == ContractStatus.APPROVED
        assert contract.contract_quantity == 2500
        assert contract.proposed_quantity == 2500
        assert contract.delivered_quantity == 450
        assert contract.delivery_place_id == delivery_place.id
        assert contract.proposed_delivery_place_id == delivery_place.id
        assert contract.item_group_id == item_group.id
        assert contract.start_date == date(YEAR, 5, 1)
        assert contract.remarks == "From SAP"

    async def test_update_keeps_user_fields(self, ctx, db_path, grower, reference_data):
        await sync_contract(ctx, {"contract": agreement(), "item_group": 100})
        sap_id = f"{YEAR}-1012-100"
        contract = find_contract_by_sap_id(sap_id, db_path=db_path)
        update_contract(contract.model_copy(update={
            "proposed_quantity": 2000,
            "quantity_comment": "Less this year",
            "area_details": "3 ha",
            "remarks": "Edited locally",
        }), db_path=db_path)

        result = await sync_contract(ctx, {"contract": agreement(U_TR_100=3000, Status="asTerminated"), "item_group": 100})

        updated = find_contract_by_sap_id(sap_id, db_path=db_path)
        assert result.message == f"Updated contract details from SAP {sap_id}"
        assert updated.id == contract.id
        assert updated.contract_quantity == 3000
        assert updated.status == ContractStatus.TERMINATED
        assert updated.proposed_quantity == 2000
        assert updated.quantity_comment == "Less this year"
        assert updated.area_details == "3 ha"
        assert updated.remarks == "Edited locally"

    async def test_sync_twice_keeps_one_contract(self, ctx, db_path, grower, reference_data):
        """Running the same job again leaves the contract as it was."""
        await sync_contract(ctx, {"contract": agreement(), "item_group": 100})
        [before] = list_contracts(db_path=db_path)

        result = await sync_contract(ctx, {"contract": agreement(), "item_group": 100})

        assert result.message == f"Updated contract details from SAP {YEAR}-1012-100"
        assert list_contracts(db_path=db_path) == [before]

    async def test_agreement_split_per_item_group(self, ctx, db_path, grower, reference_data):
        """An agreement with lines for two item groups becomes two local contracts."""
        fresh, _ = upsert_item_group(
            ItemGroup(sap_id="200", name="Fresh lingonberry", category=ItemGroupCategory.FRESH),
            db_path=db_path,
        )
        data = agreement(U_TR_200=800, BlanketAgreements_ItemsLines=[
            {"ItemGroup": 100, "ItemNo": "MUS-1", "CumulativeQuantity": 300},
            {"ItemGroup": 200, "ItemNo": "PUO-1", "CumulativeQuantity": 40},
        ])

        for item_group in (100, 200):
            await sync_contract(ctx, {"contract": data, "item_group": item_group})

        contracts = {c.sap_id: c for c in list_contracts(db_path=db_path)}
        assert sorted(contracts) == [f"{YEAR}-1012-100", f"{YEAR}-1012-200"]
        frozen, fresh_contract = contracts[f"{YEAR}-1012-100"], contracts[f"{YEAR}-1012-200"]
        assert (frozen.contract_quantity, frozen.delivered_quantity) == (2500, 300)
        assert (fresh_contract.contract_quantity, fresh_contract.delivered_quantity) == (800, 40)
        assert fresh_contract.item_group_id == fresh.id
        assert frozen.item_group_id == reference_data[1].id

    async def test_contract_quantity_falls_back_to_lines(self, ctx, db_path, grower, reference_data):
        data = agreement()
        del data["U_TR_100"]

        await sync_contract(ctx, {"contract": data, "item_group": 100})

        assert find_contract_by_sap_id(f"{YEAR}-1012-100", db_path=db_path).contract_quantity == 2

    async def test_missing_delivery_place(self, ctx, grower, reference_data):
        data = agreement(U_PFZ_Toi="T9", BlanketAgreements_ItemsLines=[{"ItemGroup": 100, "ItemNo": "MUS-1"}])

        with pytest.raises(TaskFailure) as exc_info:
            await sync_contract(ctx, {"contract": data, "item_group": 100})

        assert exc_info.value.message == (
            f"Failed to synchronize SAP contract {YEAR}-1012-100 because delivery place T9 was not found from the system"
        )

    async def test_missing_item_group(self, ctx, grower, reference_data):
        data = agreement(BlanketAgreements_ItemsLines=[{"ItemGroup": 200, "U_PFZ_ToiP": "T1"}])

        with pytest.raises(TaskFailure, match="because item group 200 was not found from the system"):
            await sync_contract(ctx, {"contract": data, "item_group": 200})

    async def test_missing_user(self, ctx, reference_data):
        with pytest.raises(TaskFailure, match="because user S0001 was not found from the system"):
            await sync_contract(ctx, {"contract": agreement(), "item_group": 100})


class TestSyncContractSapId:
    """Approved local contracts are linked to their ERP agreement."""

    def local_contract(self, db_path, reference_data, **overrides):
        delivery_place, item_group = reference_data
        values = dict(
            user_id="user-1",
            year=YEAR,
            delivery_place_id=delivery_place.id,
            item_group_id=item_group.id,
            status=ContractStatus.APPROVED,
        )
        values.update(overrides)
        return create_contract(Contract(**values), db_path=db_path)

    async def test_links_contract(self, ctx, db_path, fake_sap, grower, reference_data):
        fake_sap.add("BlanketAgreements", agreement())
        contract = self.local_contract(db_path, reference_data)

        result = await sync_contract_sap_id(ctx, {"contract_id": contract.id})

        assert result.message == f"Contract {contract.id} SAP id changed to {YEAR}-1012-100"
        assert get_contract(contract.id, db_path=db_path).sap_id == f"{YEAR}-1012-100"

    async def test_agreement_without_group_line(self, ctx, db_path, fake_sap, grower, reference_data):
        fake_sap.add("BlanketAgreements", agreement(BlanketAgreements_ItemsLines=[{"ItemGroup": 200}]))
        contract = self.local_contract(db_path, reference_data)

        with pytest.raises(TaskFailure) as exc_info:
            await sync_contract_sap_id(ctx, {"contract_id": contract.id})

        assert exc_info.value.message == (
            f"Contract {contract.id} SAP creation failed because sap contract could not be resolved"
        )

    async def test_missing_contract(self, ctx):
        with pytest.raises(TaskFailure, match="Contract 404 SAP creation failed because contract could not be found"):
            await sync_contract_sap_id(ctx, {"contract_id": 404})

    async def test_user_without_sap_id(self, ctx, db_path, identity, reference_data):
        identity.add_user(UserRecord(id="user-2", email="new@example.com"))
        contract = self.local_contract(db_path, reference_data, user_id="user-2")

        with pytest.raises(TaskFailure, match="user SAP id could not be resolved"):
            await sync_contract_sap_id(ctx, {"contract_id": contract.id})

    async def test_already_linked(self, ctx, db_path, grower, reference_data):
        contract = self.local_contract(db_path, reference_data, sap_id=f"{YEAR}-1-100")

        result = await sync_contract_sap_id(ctx, {"contract_id": contract.id})

        assert "already has SAP id" in result.message


class TestSyncDeliveredQuantities:
    async def test_updates_approved_contracts(self, ctx, db_path, fake_sap, reference_data):
        delivery_place, item_group = reference_data
        fake_sap.add("BlanketAgreements", agreement())
        common = dict(user_id="user-1", year=YEAR, delivery_place_id=delivery_place.id, item_group_id=item_group.id)
        linked = create_contract(Contract(sap_id=f"{YEAR}-1012-100", status=ContractStatus.APPROVED, **common), db_path=db_path)
        create_contract(Contract(sap_id=f"{YEAR}-9999-100", status=ContractStatus.APPROVED, **common), db_path=db_path)
        draft = create_contract(Contract(sap_id=f"{YEAR}-1012-200", status=ContractStatus.DRAFT, **common), db_path=db_path)

        result = await sync_delivered_quantities(ctx, {"id": "delivered-quantities"})

        assert result.message == "Synchronized contract 1 / 2 delivered quantities from SAP"
        assert get_contract(linked.id, db_path=db_path).delivered_quantity == 450
        assert get_contract(draft.id, db_path=db_path).delivered_quantity is None
