"""Local domain entities reconciled against the ERP.

Each entity owns a local integer id plus an optional sap_id correlating it
with the ERP record it was synchronized from.
"""

from __future__ import annotations

from datetime import date
from enum import Enum
from typing import Optional

from pydantic import BaseModel, Field


class ItemGroupCategory(str, Enum):
    FROZEN = "FROZEN"
    FRESH = "FRESH"


class ContractStatus(str, Enum):
    """Local contract lifecycle status."""
    APPROVED = "APPROVED"
    ON_HOLD = "ON_HOLD"
    DRAFT = "DRAFT"
    TERMINATED = "TERMINATED"
    REJECTED = "REJECTED"


class DeliveryPlace(BaseModel):
    id: Optional[int] = None
    sap_id: Optional[str] = None
    name: str


class ItemGroup(BaseModel):
    """Product group contracts are made for.

    Attributes:
        sap_id: ERP item group number
        display_name: Name shown to contract holders, from static configuration
        category: FROZEN or FRESH, from static configuration
        minimum_profit_estimation: Per-kilo profit estimate, defaults to 0
        prerequisite_contract_item_group_id: Local id of the item group a
            contract holder must have a contract for before this one
    """
    id: Optional[int] = None
    sap_id: Optional[str] = None
    name: str
    display_name: Optional[str] = None
    category: ItemGroupCategory
    minimum_profit_estimation: float = 0.0
    prerequisite_contract_item_group_id: Optional[int] = None

    class Config:
        from_attributes = True


class Product(BaseModel):
    """Sellable product belonging to an item group."""
    id: Optional[int] = None
    item_group_id: int
    sap_item_code: str
    name: str


class Contract(BaseModel):
    """Yearly supply contract between the cooperative and a contract holder.

    ERP owned fields (quantities, dates, status) are overwritten on every pull
    from the ERP; the comment, proposal and area fields are edited by users
    and survive synchronization.
    """
    id: Optional[int] = None
    user_id: str
    year: int
    sap_id: Optional[str] = None
    delivery_place_id: int
    proposed_delivery_place_id: Optional[int] = None
    item_group_id: int
    contract_quantity: Optional[float] = None
    delivered_quantity: Optional[float] = None
    proposed_quantity: Optional[float] = None
    start_date: Optional[date] = None
    end_date: Optional[date] = None
    sign_date: Optional[date] = None
    term_date: Optional[date] = None
    status: ContractStatus = ContractStatus.DRAFT
    area_details: Optional[str] = None
    deliver_all: bool = False
    remarks: Optional[str] = None
    delivery_place_comment: Optional[str] = None
    quantity_comment: Optional[str] = None
    reject_comment: Optional[str] = None

    class Config:
        from_attributes = True


class ChatGroup(BaseModel):
    id: Optional[int] = None
    title: str
    type: str = Field(default="CHAT", description="CHAT or QUESTION")


class ChatThread(BaseModel):
    id: Optional[int] = None
    chat_group_id: int
    title: str
