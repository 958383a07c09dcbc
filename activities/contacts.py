"""
Contact Activities

Copies supplier business partner details from the ERP onto the matching
identity service user. The user is resolved by its sapId attribute first and
by e-mail second.
"""

from typing import Any, Dict, Optional

from activities.context import ActivityContext, TaskFailure, TaskResult, report_item_id
from connectors.sap.sl_models import SapAddressType, SapBusinessPartner, SapVatLiable
from core.observability.logging import get_logger, with_correlation
from identity.provider import UserAttribute

logger = get_logger(__name__)


VAT_LIABLE_VALUES = {
    SapVatLiable.YES.value: "YES",
    SapVatLiable.NO.value: "NO",
    SapVatLiable.EU.value: "EU",
}


def _trim(value: Optional[str]) -> Optional[str]:
    if value is None:
        return None
    return value.strip() or None


def translate_vat_liable(sap_vat_liable: Optional[str]) -> Optional[str]:
    """Translate ERP VAT liability into the value stored on users."""
    if not sap_vat_liable:
        return None
    value = VAT_LIABLE_VALUES.get(sap_vat_liable)
    if value is None:
        logger.error(f"Failed to translate {sap_vat_liable} into vat liable value")
    return value


def contact_attributes(business_partner: SapBusinessPartner) -> Dict[UserAttribute, Optional[str]]:
    """User attribute values carried by a business partner, trimmed."""
    billing = business_partner.get_address(SapAddressType.BILLING)
    shipping = business_partner.get_address(SapAddressType.SHIPPING)
    bank_account = business_partner.bp_bank_accounts[0] if business_partner.bp_bank_accounts else None

    return {
        UserAttribute.SAP_ID: _trim(business_partner.card_code),
        UserAttribute.COMPANY_NAME: _trim(business_partner.card_name),
        UserAttribute.PHONE_1: _trim(business_partner.phone1),
        UserAttribute.PHONE_2: _trim(business_partner.phone2),
        UserAttribute.BIC: _trim(bank_account.bic_swift_code) if bank_account else None,
        UserAttribute.IBAN: _trim(bank_account.iban) if bank_account else None,
        UserAttribute.TAX_CODE: _trim(business_partner.federal_tax_id),
        UserAttribute.VAT_LIABLE: translate_vat_liable(business_partner.vat_liable),
        UserAttribute.AUDIT: _trim(business_partner.u_audit),
        UserAttribute.STREET_1: _trim(billing.street) if billing else None,
        UserAttribute.POSTAL_CODE_1: _trim(billing.zip_code) if billing else None,
        UserAttribute.CITY_1: _trim(billing.city) if billing else None,
        UserAttribute.STREET_2: _trim(shipping.street) if shipping else None,
        UserAttribute.POSTAL_CODE_2: _trim(shipping.zip_code) if shipping else None,
        UserAttribute.CITY_2: _trim(shipping.city) if shipping else None,
    }


async def sync_contact(ctx: ActivityContext, payload: Dict[str, Any]) -> TaskResult:
    """Synchronize one business partner into user attributes.

    Payload:
        business_partner: Service Layer business partner
        operation_report_item_id: report item completed by the queue
    """
    item_id = report_item_id(payload)
    business_partner = SapBusinessPartner.model_validate(payload["business_partner"])
    sap_id = _trim(business_partner.card_code)
    email = _trim(business_partner.email_address)

    with with_correlation(sap_id=sap_id, stage="sync_contact"):
        if not email:
            raise TaskFailure(f"Could not synchronize user with SAP id {sap_id} because email is null", item_id)

        identity = ctx.require_identity()
        user = await identity.find_user_by_attribute(UserAttribute.SAP_ID.value, sap_id) if sap_id else None
        if user is None:
            user = await identity.find_user_by_email(email)

        if user is None:
            raise TaskFailure(f"Could not find user with SAP id {sap_id} nor with email {email}", item_id)

        for attribute, value in contact_attributes(business_partner).items():
            user.set_single_attribute(attribute.value, value)

        await identity.update_user(user)

        return TaskResult(
            message=f"Synchronized contact details from SAP {email} / {sap_id}",
            operation_report_item_id=item_id,
        )
