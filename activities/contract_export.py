"""
Contract Export

Local to ERP direction. A grower's contracts of one year share a single ERP
blanket agreement; each contract contributes the product lines of its item
group and the U_TR_<item group> planned quantity.

The Service Layer rejects most edits to an approved agreement, so an
approved agreement is put on hold before the changes are sent.
"""

from typing import List, Optional

from activities.context import ActivityContext
from activities.contracts import parse_contract_sap_id
from connectors.sap.sl_models import SapContract, SapContractLine, SapContractStatus
from core.models.entities import Contract, DeliveryPlace, ItemGroup, Product
from core.observability.logging import get_logger, with_correlation
from core.storage.repository import get_delivery_place, get_item_group, list_products_by_item_group
from identity.provider import UserAttribute

logger = get_logger(__name__)

# Preferred agreement to update, in order
AGREEMENT_STATUS_PREFERENCE = [
    SapContractStatus.APPROVED.value,
    SapContractStatus.ON_HOLD.value,
    SapContractStatus.DRAFT.value,
]


class ContractExportError(Exception):
    """Contract could not be written to the ERP."""

    @classmethod
    def wrap(cls, context: str, cause: BaseException) -> "ContractExportError":
        return cls(f"{context}: {cause}")


def _item_group_number(item_group: ItemGroup) -> int:
    if not item_group.sap_id or not item_group.sap_id.isdigit():
        raise ContractExportError(f'SAP ID "{item_group.sap_id}" in item group "{item_group.name}" is invalid')
    return int(item_group.sap_id)


def get_doc_num_from_contract_sap_id(sap_id: Optional[str]) -> Optional[int]:
    """Return the agreement document number of a composite contract sap_id.

    Raises:
        ContractExportError: If the sap_id is not a valid composite id
    """
    if not sap_id:
        return None
    try:
        _, doc_num, _ = parse_contract_sap_id(sap_id)
    except ValueError as e:
        raise ContractExportError(str(e)) from e
    return doc_num


def update_sap_contract_lines(
    lines: List[SapContractLine],
    products: List[Product],
    item_group: ItemGroup,
    delivery_place: DeliveryPlace,
) -> List[SapContractLine]:
    """Append a line for every item group product not yet on the agreement."""
    item_group_number = _item_group_number(item_group)
    result = list(lines)
    for product in products:
        if product.item_group_id != item_group.id:
            logger.info(f"Product {product.sap_item_code} is not in item group {item_group.id}, not added")
            continue
        if any(line.item_no == product.sap_item_code for line in result):
            logger.info(f"Product {product.sap_item_code} is already on the SAP contract, not added")
            continue
        result.append(SapContractLine(
            item_group=item_group_number,
            item_no=product.sap_item_code,
            planned_quantity=1,
            cumulative_quantity=0,
            shipping_type=-1,
            u_pfz_toip=delivery_place.sap_id,
        ))
    return result


async def _business_partner_code(ctx: ActivityContext, contract: Contract) -> str:
    user = await ctx.require_identity().find_user(contract.user_id)
    if user is None:
        raise ContractExportError(f'Contract user with ID "{contract.user_id}" could not be found')
    code = user.get_single_attribute(UserAttribute.SAP_ID.value)
    if not code:
        raise ContractExportError("Contract user SAP ID could not be found")
    return code


async def create_new_sap_contract(
    ctx: ActivityContext,
    contract: Contract,
    item_group: ItemGroup,
    delivery_place: DeliveryPlace,
) -> SapContract:
    """Create a draft agreement for the contract year."""
    try:
        bp_code = await _business_partner_code(ctx, contract)
        item_group_number = _item_group_number(item_group)
        products = list_products_by_item_group(item_group.id, db_path=ctx.db_path)

        sap_contract = SapContract(
            bp_code=bp_code,
            contact_person_code=0,
            lines=update_sap_contract_lines([], products, item_group, delivery_place),
            start_date=f"{contract.year}-05-01",
            end_date=f"{contract.year + 1}-01-31",
            signing_date=contract.sign_date.isoformat() if contract.sign_date else None,
            status=SapContractStatus.DRAFT,
            u_pfz_toi=delivery_place.sap_id,
            remarks=contract.remarks or None,
            planned_quantities={item_group_number: contract.contract_quantity or 0},
        )
        return await ctx.require_sap().contracts.create_contract(sap_contract)
    except Exception as e:
        raise ContractExportError.wrap("Failed to create new SAP contract", e) from e


async def update_existing_sap_contract(
    ctx: ActivityContext,
    sap_contract: SapContract,
    contract: Contract,
    item_group: ItemGroup,
    delivery_place: DeliveryPlace,
) -> SapContract:
    """Add the contract's lines and quantity to an existing agreement."""
    try:
        item_group_number = _item_group_number(item_group)
        updated = sap_contract.model_copy(deep=True)

        if not updated.has_item_group_line(item_group_number):
            products = list_products_by_item_group(item_group.id, db_path=ctx.db_path)
            updated.lines = update_sap_contract_lines(updated.lines, products, item_group, delivery_place)

        updated.planned_quantities[item_group_number] = contract.contract_quantity or 0
        updated.u_pfz_toi = delivery_place.sap_id
        updated.remarks = contract.remarks

        contracts = ctx.require_sap().contracts
        if sap_contract.status == SapContractStatus.APPROVED.value:
            await contracts.update_contract(sap_contract.model_copy(update={"status": SapContractStatus.ON_HOLD.value}))

        return await contracts.update_contract(updated)
    except Exception as e:
        raise ContractExportError.wrap("Failed to update existing SAP contract", e) from e


async def create_or_update_sap_contract(
    ctx: ActivityContext,
    contract: Contract,
    delivery_place: Optional[DeliveryPlace] = None,
    item_group: Optional[ItemGroup] = None,
) -> SapContract:
    """Write a local contract into the grower's agreement of the contract year.

    Updates the grower's approved agreement, else the one on hold, else the
    draft one. Creates a new draft agreement when none exists.
    """
    with with_correlation(stage="export_contract"):
        try:
            delivery_place = delivery_place or get_delivery_place(contract.delivery_place_id, db_path=ctx.db_path)
            if delivery_place is None:
                raise ContractExportError(f"Delivery place {contract.delivery_place_id} could not be found")
            item_group = item_group or get_item_group(contract.item_group_id, db_path=ctx.db_path)
            if item_group is None:
                raise ContractExportError(f"Item group {contract.item_group_id} could not be found")

            bp_code = await _business_partner_code(ctx, contract)
            existing = await ctx.require_sap().contracts.list_active_contracts_by_business_partner(bp_code, contract.year)

            for status in AGREEMENT_STATUS_PREFERENCE:
                sap_contract = next((c for c in existing if c.status == status), None)
                if sap_contract is not None:
                    logger.info(f"Updating SAP contract {sap_contract.agreement_no} ({status}) with contract {contract.id}")
                    return await update_existing_sap_contract(ctx, sap_contract, contract, item_group, delivery_place)

            logger.info(f"Creating new SAP contract for contract {contract.id}")
            return await create_new_sap_contract(ctx, contract, item_group, delivery_place)
        except Exception as e:
            raise ContractExportError.wrap("Failed to create or update SAP contract", e) from e


async def remove_contract_from_sap_contract(
    ctx: ActivityContext,
    contract: Contract,
    item_group: Optional[ItemGroup] = None,
) -> SapContract:
    """Zero the planned quantity of the contract's item group on its agreement."""
    try:
        if not contract.sap_id:
            raise ContractExportError("Contract has no SAP ID")

        doc_num = get_doc_num_from_contract_sap_id(contract.sap_id)
        contracts = ctx.require_sap().contracts
        sap_contract = await contracts.find_contract(doc_num)
        if sap_contract is None:
            raise ContractExportError(f'SAP contract with document number "{doc_num}" could not be found')

        item_group = item_group or get_item_group(contract.item_group_id, db_path=ctx.db_path)
        if item_group is None:
            raise ContractExportError(f"Item group {contract.item_group_id} could not be found")

        updated = sap_contract.model_copy(deep=True)
        updated.planned_quantities[_item_group_number(item_group)] = 0
        return await contracts.update_contract(updated)
    except Exception as e:
        raise ContractExportError.wrap("Failed to remove contract data from SAP contract", e) from e
