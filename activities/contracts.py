"""
Contract Activities

ERP to local reconciliation of contracts.

One ERP blanket agreement backs one local contract per item group it has
lines for. The local contract is correlated with the agreement through a
composite sap_id "{year}-{DocNum}-{ItemGroup}".

- sync_contract: create or merge one (agreement, item group) pair
- sync_contract_sap_id: attach an approved local contract to its agreement
- sync_delivered_quantities: copy cumulative quantities to approved contracts
"""

from datetime import date
from typing import Any, Dict, List, Optional, Tuple

from activities.context import ActivityContext, TaskFailure, TaskResult, report_item_id
from connectors.sap.sl_models import SapContract, SapContractLine, SapContractStatus
from core.models.entities import Contract, ContractStatus
from core.observability.logging import get_logger, with_correlation
from core.storage.repository import (
    create_contract,
    find_contract_by_sap_id,
    find_delivery_place_by_sap_id,
    find_item_group_by_sap_id,
    get_contract,
    get_item_group,
    list_contracts,
    update_contract,
)
from identity.provider import UserAttribute

logger = get_logger(__name__)


CONTRACT_STATUSES = {
    SapContractStatus.APPROVED.value: ContractStatus.APPROVED,
    SapContractStatus.TERMINATED.value: ContractStatus.TERMINATED,
    SapContractStatus.ON_HOLD.value: ContractStatus.ON_HOLD,
    SapContractStatus.DRAFT.value: ContractStatus.DRAFT,
}


# =============================================================================
# Composite SAP ids
# =============================================================================

def contract_sap_id(year: int, doc_num: int, item_group: Any) -> str:
    return f"{year}-{doc_num}-{item_group}"


def parse_contract_sap_id(sap_id: str) -> Tuple[int, int, str]:
    """Split a composite contract sap_id into (year, doc number, item group).

    Raises:
        ValueError: If the id does not have three parts with numeric year
            and document number
    """
    parts = sap_id.split("-") if sap_id else []
    if len(parts) != 3:
        raise ValueError(f'SAP ID "{sap_id}" is invalid')
    try:
        return int(parts[0]), int(parts[1]), parts[2]
    except ValueError:
        raise ValueError(f'SAP ID "{sap_id}" is invalid')


def _parse_date(value: Optional[str]) -> Optional[date]:
    if not value:
        return None
    return date.fromisoformat(value[:10])


def agreement_year(sap_contract: SapContract) -> Optional[int]:
    start_date = _parse_date(sap_contract.start_date)
    return start_date.year if start_date else None


def agreement_lines(sap_contract: SapContract, item_group: int) -> List[SapContractLine]:
    return [line for line in sap_contract.lines if line.item_group == item_group]


def agreement_contract_quantity(sap_contract: SapContract, item_group: int) -> float:
    """Agreed quantity of an item group, falling back to the line sum."""
    if item_group in sap_contract.planned_quantities:
        return sap_contract.planned_quantities[item_group]
    return sum(line.planned_quantity or 0 for line in agreement_lines(sap_contract, item_group))


def agreement_delivered_quantity(sap_contract: SapContract, item_group: int) -> float:
    return sum(line.cumulative_quantity or 0 for line in agreement_lines(sap_contract, item_group))


def agreement_delivery_place(sap_contract: SapContract, item_group: int) -> Optional[str]:
    for line in agreement_lines(sap_contract, item_group):
        if line.u_pfz_toip:
            return line.u_pfz_toip
    return sap_contract.u_pfz_toi


def delivered_quantities_by_sap_id(sap_contracts: List[SapContract]) -> Dict[str, float]:
    """Sum cumulative quantities per composite sap_id over all agreement lines."""
    quantities: Dict[str, float] = {}
    for sap_contract in sap_contracts:
        year = agreement_year(sap_contract)
        if year is None or sap_contract.doc_num is None:
            logger.warning(f"Skipping SAP contract {sap_contract.agreement_no} without start date or document number")
            continue
        for line in sap_contract.lines:
            if line.item_group is None:
                continue
            sap_id = contract_sap_id(year, sap_contract.doc_num, line.item_group)
            quantities[sap_id] = quantities.get(sap_id, 0) + (line.cumulative_quantity or 0)
    return quantities


# =============================================================================
# Pull sync
# =============================================================================

async def sync_contract(ctx: ActivityContext, payload: Dict[str, Any]) -> TaskResult:
    """Create or update the local contract of one (agreement, item group) pair.

    ERP owned fields are overwritten. Fields users edit locally are kept:
    proposed quantity (once set), proposed delivery place, comments, area
    details, deliver-all and remarks.
    """
    item_id = report_item_id(payload)
    sap_contract = SapContract.model_validate(payload["contract"])
    item_group_number = int(payload["item_group"])

    year = agreement_year(sap_contract)
    if year is None:
        raise TaskFailure(f"SAP contract {sap_contract.agreement_no} has no start date", item_id)

    sap_id = contract_sap_id(year, sap_contract.doc_num, item_group_number)
    with with_correlation(sap_id=sap_id, stage="sync_contract"):
        sap_delivery_place_id = agreement_delivery_place(sap_contract, item_group_number)
        delivery_place = find_delivery_place_by_sap_id(sap_delivery_place_id, db_path=ctx.db_path) if sap_delivery_place_id else None
        if delivery_place is None:
            raise TaskFailure(
                f"Failed to synchronize SAP contract {sap_id} because delivery place {sap_delivery_place_id} was not found from the system",
                item_id,
            )

        item_group = find_item_group_by_sap_id(str(item_group_number), db_path=ctx.db_path)
        if item_group is None:
            raise TaskFailure(
                f"Failed to synchronize SAP contract {sap_id} because item group {item_group_number} was not found from the system",
                item_id,
            )

        sap_user_id = sap_contract.bp_code
        user = None
        if sap_user_id:
            user = await ctx.require_identity().find_user_by_attribute(UserAttribute.SAP_ID.value, sap_user_id)
        if user is None:
            raise TaskFailure(
                f"Failed to synchronize SAP contract {sap_id} because user {sap_user_id} was not found from the system",
                item_id,
            )

        contract_quantity = agreement_contract_quantity(sap_contract, item_group_number)
        erp_fields = {
            "user_id": user.id,
            "year": year,
            "delivery_place_id": delivery_place.id,
            "item_group_id": item_group.id,
            "contract_quantity": contract_quantity,
            "delivered_quantity": agreement_delivered_quantity(sap_contract, item_group_number),
            "start_date": _parse_date(sap_contract.start_date),
            "end_date": _parse_date(sap_contract.end_date),
            "sign_date": _parse_date(sap_contract.signing_date),
            "term_date": _parse_date(sap_contract.terminate_date),
            "status": CONTRACT_STATUSES.get(sap_contract.status, ContractStatus.DRAFT),
        }

        existing = find_contract_by_sap_id(sap_id, db_path=ctx.db_path)
        if existing is None:
            create_contract(
                Contract(
                    sap_id=sap_id,
                    proposed_delivery_place_id=delivery_place.id,
                    proposed_quantity=contract_quantity,
                    remarks=sap_contract.remarks,
                    **erp_fields,
                ),
                db_path=ctx.db_path,
            )
            return TaskResult(message=f"Created new contract from SAP {sap_id}", operation_report_item_id=item_id)

        if existing.proposed_quantity is None:
            erp_fields["proposed_quantity"] = contract_quantity
        update_contract(existing.model_copy(update=erp_fields), db_path=ctx.db_path)
        return TaskResult(message=f"Updated contract details from SAP {sap_id}", operation_report_item_id=item_id)


# =============================================================================
# Sap id sync
# =============================================================================

async def sync_contract_sap_id(ctx: ActivityContext, payload: Dict[str, Any]) -> TaskResult:
    """Find the ERP agreement of an approved local contract and store its sap_id."""
    item_id = report_item_id(payload)
    contract_id = int(payload["contract_id"])

    def fail(reason: str) -> TaskFailure:
        return TaskFailure(f"Contract {contract_id} SAP creation failed because {reason}", item_id)

    with with_correlation(stage="sync_contract_sap_id"):
        contract = get_contract(contract_id, db_path=ctx.db_path)
        if contract is None:
            raise fail("contract could not be found")
        if contract.sap_id:
            return TaskResult(
                message=f"Contract {contract_id} already has SAP id {contract.sap_id}",
                operation_report_item_id=item_id,
            )

        item_group = get_item_group(contract.item_group_id, db_path=ctx.db_path)
        if item_group is None:
            raise fail("item group could not be found")

        user = await ctx.require_identity().find_user(contract.user_id)
        if user is None:
            raise fail("user could not be found")

        if not item_group.sap_id or not item_group.sap_id.isdigit():
            raise fail("SAP item group id could not be resolved")

        user_sap_id = user.get_single_attribute(UserAttribute.SAP_ID.value)
        if not user_sap_id:
            raise fail("user SAP id could not be resolved")

        candidates = await ctx.require_sap().contracts.list_active_contracts_by_business_partner(user_sap_id, contract.year)
        item_group_number = int(item_group.sap_id)
        sap_contract = next((c for c in candidates if c.has_item_group_line(item_group_number)), None)
        if sap_contract is None or sap_contract.doc_num is None:
            raise fail("sap contract could not be resolved")

        sap_id = contract_sap_id(contract.year, sap_contract.doc_num, item_group.sap_id)
        update_contract(contract.model_copy(update={"sap_id": sap_id}), db_path=ctx.db_path)

        return TaskResult(
            message=f"Contract {contract_id} SAP id changed to {sap_id}",
            operation_report_item_id=item_id,
        )


# =============================================================================
# Delivered quantities
# =============================================================================

async def sync_delivered_quantities(ctx: ActivityContext, payload: Dict[str, Any]) -> TaskResult:
    """Copy ERP cumulative quantities onto approved contracts with a sap_id.

    Contracts missing from the ERP are logged and counted but do not fail
    the job.
    """
    item_id = report_item_id(payload)

    with with_correlation(stage="sync_delivered_quantities"):
        sap_contracts = await ctx.require_sap().contracts.list_contracts()
        delivered = delivered_quantities_by_sap_id(sap_contracts)

        contracts = list_contracts(status=ContractStatus.APPROVED, has_sap_id=True, db_path=ctx.db_path)
        synced = 0
        missing: List[str] = []
        for contract in contracts:
            quantity = delivered.get(contract.sap_id)
            if quantity is None:
                missing.append(contract.sap_id)
                continue

            if contract.delivered_quantity != quantity:
                update_contract(contract.model_copy(update={"delivered_quantity": quantity}), db_path=ctx.db_path)
                logger.info(
                    f"Updated delivered quantity of contract {contract.id} "
                    f"from {contract.delivered_quantity} into {quantity}"
                )
            synced += 1

        if missing:
            logger.error(f"Could not find following contracts from SAP {','.join(missing)}")

        return TaskResult(
            message=f"Synchronized contract {synced} / {len(contracts)} delivered quantities from SAP",
            operation_report_item_id=item_id,
        )
