"""
Item Group Activities

Upserts ERP item groups with the static data the ERP does not carry:
category, display name, minimum profit estimation and prerequisite group.
"""

from typing import Any, Dict

from activities.context import ActivityContext, TaskFailure, TaskResult, report_item_id
from connectors.sap.sl_models import SapItemGroup
from core.models.entities import ItemGroup, ItemGroupCategory
from core.observability.logging import get_logger, with_correlation
from core.storage.repository import find_item_group_by_sap_id, upsert_item_group

logger = get_logger(__name__)

PREREQUISITE_RETRY_MESSAGE = "Required prerequisite contract item group was not found, retrying"


async def sync_item_group(ctx: ActivityContext, payload: Dict[str, Any]) -> TaskResult:
    """Synchronize one item group.

    When the configured prerequisite item group has not been synchronized
    yet, asks the queue to run the job again later instead of failing.
    """
    item_id = report_item_id(payload)
    sap_item_group = SapItemGroup.model_validate(payload["item_group"])
    sap_id = str(sap_item_group.number)
    name = sap_item_group.group_name or sap_id

    with with_correlation(sap_id=sap_id, stage="sync_item_group"):
        category = ctx.item_groups.get_category(sap_id)
        if not category:
            raise TaskFailure(f"Failed to resolve SAP item group {sap_id} category", item_id)

        prerequisite_id = None
        prerequisite_sap_id = ctx.item_groups.get_prerequisite(sap_id)
        if prerequisite_sap_id:
            prerequisite = find_item_group_by_sap_id(prerequisite_sap_id, db_path=ctx.db_path)
            if prerequisite is None:
                return TaskResult(message=PREREQUISITE_RETRY_MESSAGE, operation_report_item_id=item_id, retry=True)
            prerequisite_id = prerequisite.id

        item_group, created = upsert_item_group(
            ItemGroup(
                sap_id=sap_id,
                name=name,
                display_name=ctx.item_groups.get_display_name(sap_id),
                category=ItemGroupCategory(category),
                minimum_profit_estimation=ctx.item_groups.get_minimum_profit_estimation(sap_id),
                prerequisite_contract_item_group_id=prerequisite_id,
            ),
            db_path=ctx.db_path,
        )
        logger.debug(f"{'Created' if created else 'Updated'} item group {item_group.id}")

        return TaskResult(
            message=f"Synchronized item group details from SAP {name} / {sap_id}",
            operation_report_item_id=item_id,
        )
