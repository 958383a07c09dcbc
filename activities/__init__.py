"""Activity definitions module."""

from activities.contacts import sync_contact
from activities.context import ActivityContext
from activities.contract_export import (
    ContractExportError,
    create_or_update_sap_contract,
    get_doc_num_from_contract_sap_id,
    remove_contract_from_sap_contract,
)
from activities.contracts import (
    contract_sap_id,
    parse_contract_sap_id,
    sync_contract,
    sync_contract_sap_id,
    sync_delivered_quantities,
)
from activities.delivery_places import sync_delivery_place
from activities.item_groups import sync_item_group

__all__ = [
    "ActivityContext",
    # Pull activities
    "sync_contact",
    "sync_delivery_place",
    "sync_item_group",
    "sync_contract",
    "sync_contract_sap_id",
    "sync_delivered_quantities",
    # Contract export
    "ContractExportError",
    "create_or_update_sap_contract",
    "remove_contract_from_sap_contract",
    "get_doc_num_from_contract_sap_id",
    # Composite ids
    "contract_sap_id",
    "parse_contract_sap_id",
]
