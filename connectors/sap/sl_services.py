"""Typed Service Layer resource services.

One service per Service Layer collection. Every call runs in its own
session (see SapSessionManager.session) and errors are re-raised as
SapApiError with the failing operation stacked onto the message.
"""

from dataclasses import dataclass
from datetime import date
from typing import Any, Generic, List, Optional, Type, TypeVar

from connectors.sap.sl_client import SapApiError, SapServiceLayerClient, entity_path
from connectors.sap.sl_models import (
    SapBaseModel,
    SapBusinessPartner,
    SapContract,
    SapContractStatus,
    SapDeliveryPlace,
    SapItemGroup,
    SapPurchaseDeliveryNote,
    SapStockTransfer,
)

ModelT = TypeVar("ModelT", bound=SapBaseModel)


def odata_literal(value: str) -> str:
    """Quote a string for use in a $filter expression."""
    return "'" + str(value).replace("'", "''") + "'"


class SapResourceService(Generic[ModelT]):
    """Shared list/find/create/update plumbing for one collection."""

    resource: str = ""
    model: Type[SapBaseModel] = SapBaseModel
    description: str = ""

    def __init__(self, client: SapServiceLayerClient):
        self.client = client

    async def _list(self, filter: Optional[str] = None, select: Optional[List[str]] = None) -> List[ModelT]:
        try:
            records = await self.client.list_all(self.resource, filter=filter, select=select)
            return [self.model.model_validate(record) for record in records]
        except Exception as e:
            raise SapApiError.wrap(f"Failed to list SAP {self.description}", e) from e

    async def _find(self, key: Any) -> Optional[ModelT]:
        try:
            record = await self.client.request("GET", entity_path(self.resource, key))
            return self.model.model_validate(record) if record is not None else None
        except Exception as e:
            raise SapApiError.wrap(f"Failed to find SAP {self.description} {key}", e) from e

    async def _create(self, entity: ModelT, expected_status: Optional[int] = None) -> ModelT:
        try:
            record = await self.client.request(
                "POST", self.resource,
                body=entity.to_payload(),
                expected_status=expected_status,
            )
            return self.model.model_validate(record or {})
        except Exception as e:
            raise SapApiError.wrap(f"Failed to create SAP {self.description}", e) from e

    async def _update(self, key: Any, entity: ModelT) -> None:
        try:
            await self.client.request("PATCH", entity_path(self.resource, key), body=entity.to_payload())
        except Exception as e:
            raise SapApiError.wrap(f"Failed to update SAP {self.description} {key}", e) from e


class BusinessPartnersService(SapResourceService[SapBusinessPartner]):
    resource = "BusinessPartners"
    model = SapBusinessPartner
    description = "business partners"

    SELECT = [
        "CardCode", "CardType", "CardName", "CardForeignName", "Phone1", "Phone2",
        "EmailAddress", "BPAddresses", "BPBankAccounts", "FederalTaxID", "VatLiable",
        "U_audit", "U_muu",
    ]

    async def list_business_partners(self) -> List[SapBusinessPartner]:
        """List supplier business partners."""
        return await self._list(filter="CardType eq 'cSupplier'", select=self.SELECT)

    async def find_business_partner(self, card_code: str) -> Optional[SapBusinessPartner]:
        return await self._find(card_code)


class ContractsService(SapResourceService[SapContract]):
    resource = "BlanketAgreements"
    model = SapContract
    description = "contracts"

    async def list_contracts(self, today: Optional[date] = None) -> List[SapContract]:
        """List approved or terminated agreements starting this year or last year."""
        today = today or date.today()
        start_of_last_year = date(today.year - 1, 1, 1).isoformat()
        return await self._list(filter=(
            f"StartDate ge '{start_of_last_year}' and "
            f"(Status eq '{SapContractStatus.APPROVED.value}' or Status eq '{SapContractStatus.TERMINATED.value}')"
        ))

    async def list_active_contracts_by_business_partner(self, bp_code: str, year: int) -> List[SapContract]:
        """List a business partner's non-terminated agreements starting in `year`."""
        return await self._list(filter=(
            f"BPCode eq {odata_literal(bp_code)} and "
            f"StartDate ge '{year}-01-01' and StartDate le '{year}-12-31' and "
            f"Status ne '{SapContractStatus.TERMINATED.value}'"
        ))

    async def find_contract(self, agreement_no: int) -> Optional[SapContract]:
        return await self._find(int(agreement_no))

    async def create_contract(self, contract: SapContract) -> SapContract:
        return await self._create(contract)

    async def update_contract(self, contract: SapContract) -> SapContract:
        """PATCH an agreement keyed by its AgreementNo."""
        if contract.agreement_no is None:
            raise SapApiError("Cannot update SAP contract without AgreementNo")
        await self._update(int(contract.agreement_no), contract)
        return contract


class ItemGroupsService(SapResourceService[SapItemGroup]):
    resource = "ItemGroups"
    model = SapItemGroup
    description = "item groups"

    async def list_item_groups(self) -> List[SapItemGroup]:
        return await self._list(select=["GroupName", "Number"])

    async def find_item_group(self, number: int) -> Optional[SapItemGroup]:
        return await self._find(int(number))


class DeliveryPlacesService(SapResourceService[SapDeliveryPlace]):
    resource = "U_PFZ_TOIMITUSPAIKKA"
    model = SapDeliveryPlace
    description = "delivery places"

    async def list_delivery_places(self) -> List[SapDeliveryPlace]:
        return await self._list()

    async def find_delivery_place(self, code: str) -> Optional[SapDeliveryPlace]:
        return await self._find(code)


class PurchaseDeliveryNotesService(SapResourceService[SapPurchaseDeliveryNote]):
    resource = "PurchaseDeliveryNotes"
    model = SapPurchaseDeliveryNote
    description = "purchase delivery note"

    async def create_purchase_delivery_note(self, note: SapPurchaseDeliveryNote) -> SapPurchaseDeliveryNote:
        return await self._create(note)

    async def find_purchase_delivery_note(self, doc_entry: int) -> Optional[SapPurchaseDeliveryNote]:
        return await self._find(int(doc_entry))


class StockTransfersService(SapResourceService[SapStockTransfer]):
    resource = "StockTransfers"
    model = SapStockTransfer
    description = "stock transfer"

    async def create_stock_transfer(self, transfer: SapStockTransfer) -> SapStockTransfer:
        return await self._create(transfer, expected_status=201)

    async def find_stock_transfer(self, doc_entry: int) -> Optional[SapStockTransfer]:
        return await self._find(int(doc_entry))


@dataclass
class SapServices:
    """All resource services sharing one client."""
    business_partners: BusinessPartnersService
    contracts: ContractsService
    item_groups: ItemGroupsService
    delivery_places: DeliveryPlacesService
    purchase_delivery_notes: PurchaseDeliveryNotesService
    stock_transfers: StockTransfersService

    @classmethod
    def create(cls, client: SapServiceLayerClient) -> "SapServices":
        return cls(
            business_partners=BusinessPartnersService(client),
            contracts=ContractsService(client),
            item_groups=ItemGroupsService(client),
            delivery_places=DeliveryPlacesService(client),
            purchase_delivery_notes=PurchaseDeliveryNotesService(client),
            stock_transfers=StockTransfersService(client),
        )
