"""SAP Service Layer data models.

These map to the Service Layer JSON schema; attribute names are snake_case
with the Service Layer field names as aliases. They are separate from the
local entities in /core/models/.
"""

import re
from enum import Enum
from typing import Any, Dict, List, Optional

from pydantic import BaseModel, Field, model_validator


# =============================================================================
# Enums
# =============================================================================

class SapAddressType(str, Enum):
    BILLING = "bo_BillTo"
    SHIPPING = "bo_ShipTo"


class SapVatLiable(str, Enum):
    YES = "vLiable"
    NO = "vExempted"
    EU = "vEC"


class SapContractStatus(str, Enum):
    TERMINATED = "asTerminated"
    APPROVED = "asApproved"
    ON_HOLD = "asOnHold"
    DRAFT = "asDraft"


class SapDocObjectCode(str, Enum):
    PURCHASE_DELIVERY_NOTE = "oPurchaseDeliveryNotes"


class SapBinActionType(str, Enum):
    TO_WAREHOUSE = "batToWarehouse"
    FROM_WAREHOUSE = "batFromWarehouse"


# =============================================================================
# Base
# =============================================================================

class SapBaseModel(BaseModel):
    """Base model for Service Layer entities."""

    class Config:
        populate_by_name = True
        use_enum_values = True

    def to_payload(self) -> Dict[str, Any]:
        """Serialize for a Service Layer request body."""
        return self.model_dump(by_alias=True, exclude_none=True)


# =============================================================================
# Business partners
# =============================================================================

class SapBPAddress(SapBaseModel):
    address_type: Optional[SapAddressType] = Field(None, alias="AddressType")
    street: Optional[str] = Field(None, alias="Street")
    zip_code: Optional[str] = Field(None, alias="ZipCode")
    city: Optional[str] = Field(None, alias="City")


class SapBPBankAccount(SapBaseModel):
    iban: Optional[str] = Field(None, alias="IBAN")
    bic_swift_code: Optional[str] = Field(None, alias="BICSwiftCode")


class SapBusinessPartner(SapBaseModel):
    """Supplier business partner.

    Maps to: /BusinessPartners
    """
    card_code: Optional[str] = Field(None, alias="CardCode")
    card_type: Optional[str] = Field(None, alias="CardType")
    card_name: Optional[str] = Field(None, alias="CardName")
    card_foreign_name: Optional[str] = Field(None, alias="CardForeignName")
    phone1: Optional[str] = Field(None, alias="Phone1")
    phone2: Optional[str] = Field(None, alias="Phone2")
    email_address: Optional[str] = Field(None, alias="EmailAddress")
    bp_addresses: List[SapBPAddress] = Field(default_factory=list, alias="BPAddresses")
    bp_bank_accounts: List[SapBPBankAccount] = Field(default_factory=list, alias="BPBankAccounts")
    federal_tax_id: Optional[str] = Field(None, alias="FederalTaxID")
    vat_liable: Optional[SapVatLiable] = Field(None, alias="VatLiable")
    u_audit: Optional[str] = Field(None, alias="U_audit")
    u_muu: Optional[str] = Field(None, alias="U_muu")

    def get_address(self, address_type: SapAddressType) -> Optional[SapBPAddress]:
        for address in self.bp_addresses:
            if address.address_type == address_type.value:
                return address
        return None


# =============================================================================
# Item groups and delivery places
# =============================================================================

class SapItemGroup(SapBaseModel):
    """Maps to: /ItemGroups"""
    number: Optional[int] = Field(None, alias="Number")
    group_name: Optional[str] = Field(None, alias="GroupName")


class SapDeliveryPlace(SapBaseModel):
    """Maps to: /U_PFZ_TOIMITUSPAIKKA (user defined table)"""
    code: Optional[str] = Field(None, alias="Code")
    name: Optional[str] = Field(None, alias="Name")


# =============================================================================
# Blanket agreements
# =============================================================================

PLANNED_QUANTITY_PREFIX = "U_TR_"
_PLANNED_QUANTITY_PATTERN = re.compile(r"^U_TR_(\d+)$")


class SapContractLine(SapBaseModel):
    item_group: Optional[int] = Field(None, alias="ItemGroup")
    item_no: Optional[str] = Field(None, alias="ItemNo")
    planned_quantity: Optional[float] = Field(None, alias="PlannedQuantity")
    cumulative_quantity: Optional[float] = Field(None, alias="CumulativeQuantity")
    shipping_type: Optional[int] = Field(None, alias="ShippingType")
    u_pfz_toip: Optional[str] = Field(None, alias="U_PFZ_ToiP")


class SapContract(SapBaseModel):
    """Blanket agreement.

    Maps to: /BlanketAgreements

    The Service Layer carries the agreed quantity of each item group in a
    user field named U_TR_<item group number>. Those fields are collected
    into `planned_quantities` when parsing and written back by to_payload().
    """
    agreement_no: Optional[int] = Field(None, alias="AgreementNo")
    doc_num: Optional[int] = Field(None, alias="DocNum")
    bp_code: Optional[str] = Field(None, alias="BPCode")
    bp_name: Optional[str] = Field(None, alias="BPName")
    contact_person_code: Optional[int] = Field(None, alias="ContactPersonCode")
    start_date: Optional[str] = Field(None, alias="StartDate")
    end_date: Optional[str] = Field(None, alias="EndDate")
    terminate_date: Optional[str] = Field(None, alias="TerminateDate")
    signing_date: Optional[str] = Field(None, alias="SigningDate")
    status: Optional[SapContractStatus] = Field(None, alias="Status")
    u_pfz_toi: Optional[str] = Field(None, alias="U_PFZ_Toi")
    remarks: Optional[str] = Field(None, alias="Remarks")
    lines: List[SapContractLine] = Field(default_factory=list, alias="BlanketAgreements_ItemsLines")
    planned_quantities: Dict[int, float] = Field(default_factory=dict, exclude=True)

    @model_validator(mode="before")
    @classmethod
    def _collect_planned_quantities(cls, data: Any) -> Any:
        if not isinstance(data, dict):
            return data

        planned = dict(data.get("planned_quantities") or {})
        for key, value in data.items():
            match = _PLANNED_QUANTITY_PATTERN.match(key)
            if match and value is not None:
                planned[int(match.group(1))] = float(value)

        result = {k: v for k, v in data.items() if not _PLANNED_QUANTITY_PATTERN.match(k)}
        result["planned_quantities"] = planned
        return result

    def to_payload(self) -> Dict[str, Any]:
        payload = super().to_payload()
        for item_group, quantity in sorted(self.planned_quantities.items()):
            payload[f"{PLANNED_QUANTITY_PREFIX}{item_group}"] = quantity
        return payload

    def has_item_group_line(self, item_group: int) -> bool:
        return any(line.item_group == item_group for line in self.lines)

    def item_groups(self) -> List[int]:
        """Distinct item group numbers of the agreement lines, in line order."""
        seen: List[int] = []
        for line in self.lines:
            if line.item_group is not None and line.item_group not in seen:
                seen.append(line.item_group)
        return seen


# =============================================================================
# Documents
# =============================================================================

class SapPurchaseDeliveryNoteLine(SapBaseModel):
    item_code: Optional[str] = Field(None, alias="ItemCode")
    quantity: Optional[float] = Field(None, alias="Quantity")
    unit_price: Optional[float] = Field(None, alias="UnitPrice")
    warehouse_code: Optional[str] = Field(None, alias="WarehouseCode")
    u_pfz_ref: Optional[str] = Field(None, alias="U_PFZ_REF")


class SapPurchaseDeliveryNote(SapBaseModel):
    """Maps to: /PurchaseDeliveryNotes"""
    doc_entry: Optional[int] = Field(None, alias="DocEntry")
    doc_object_code: SapDocObjectCode = Field(SapDocObjectCode.PURCHASE_DELIVERY_NOTE, alias="DocObjectCode")
    doc_date: Optional[str] = Field(None, alias="DocDate")
    card_code: Optional[str] = Field(None, alias="CardCode")
    comments: Optional[str] = Field(None, alias="Comments")
    sales_person_code: Optional[int] = Field(None, alias="SalesPersonCode")
    document_lines: List[SapPurchaseDeliveryNoteLine] = Field(default_factory=list, alias="DocumentLines")


class SapBinAllocation(SapBaseModel):
    bin_abs_entry: Optional[int] = Field(None, alias="BinAbsEntry")
    quantity: Optional[float] = Field(None, alias="Quantity")
    bin_action_type: Optional[SapBinActionType] = Field(None, alias="BinActionType")


class SapStockTransferLine(SapBaseModel):
    item_code: Optional[str] = Field(None, alias="ItemCode")
    quantity: Optional[float] = Field(None, alias="Quantity")
    warehouse_code: Optional[str] = Field(None, alias="WarehouseCode")
    from_warehouse_code: Optional[str] = Field(None, alias="FromWarehouseCode")
    bin_allocations: List[SapBinAllocation] = Field(default_factory=list, alias="DocumentLinesBinAllocations")


class SapStockTransfer(SapBaseModel):
    """Maps to: /StockTransfers"""
    doc_entry: Optional[int] = Field(None, alias="DocEntry")
    doc_date: Optional[str] = Field(None, alias="DocDate")
    card_code: Optional[str] = Field(None, alias="CardCode")
    comments: Optional[str] = Field(None, alias="Comments")
    sales_person_code: Optional[int] = Field(None, alias="SalesPersonCode")
    from_warehouse: Optional[str] = Field(None, alias="FromWarehouse")
    to_warehouse: Optional[str] = Field(None, alias="ToWarehouse")
    stock_transfer_lines: List[SapStockTransferLine] = Field(default_factory=list, alias="StockTransferLines")
