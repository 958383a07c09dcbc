"""Delivery place activities."""

from typing import Any, Dict

from activities.context import ActivityContext, TaskFailure, TaskResult, report_item_id
from connectors.sap.sl_models import SapDeliveryPlace
from core.models.entities import DeliveryPlace
from core.observability.logging import with_correlation
from core.storage.repository import upsert_delivery_place


async def sync_delivery_place(ctx: ActivityContext, payload: Dict[str, Any]) -> TaskResult:
    """Create or rename the delivery place with the ERP code."""
    item_id = report_item_id(payload)
    sap_delivery_place = SapDeliveryPlace.model_validate(payload["delivery_place"])
    sap_id = sap_delivery_place.code
    name = sap_delivery_place.name

    with with_correlation(sap_id=sap_id, stage="sync_delivery_place"):
        if not sap_id or not name:
            raise TaskFailure(f"SAP delivery place {sap_id} is missing code or name", item_id)

        _, created = upsert_delivery_place(DeliveryPlace(sap_id=sap_id, name=name), db_path=ctx.db_path)
        if created:
            message = f"Created new delivery place from SAP {name} / {sap_id}"
        else:
            message = f"Updated delivery place from SAP {name} / {sap_id}"

        return TaskResult(message=message, operation_report_item_id=item_id)
