"""Pure mapping from provider charges to payment record fields."""

from typing import Any, Dict, Iterable, Optional

from .models import PaymentRecordFields, ProviderCharge, epoch_to_utc

APPOINTMENT_ID_KEYS = ("appointment_id", "appointmentId", "appointmentID", "AppointmentId")


def metadata_value(metadata: Optional[Dict[str, Any]], keys: Iterable[str]) -> Optional[str]:
    """First non-blank string value among ``keys``, stripped."""
    if not metadata:
        return None
    for key in keys:
        value = metadata.get(key)
        if isinstance(value, str) and value.strip():
            return value.strip()
    return None


def map_charge_to_payment_fields(charge: ProviderCharge) -> PaymentRecordFields:
    """Map a charge to payment record fields. No I/O."""
    method = charge.payment_method_details
    card = method.card if method is not None else None

    if charge.captured_at is not None:
        captured_at = epoch_to_utc(charge.captured_at)
    elif charge.captured:
        captured_at = epoch_to_utc(charge.created)
    else:
        captured_at = None

    return PaymentRecordFields(
        external_charge_id=charge.id,
        amount=charge.amount,
        currency=charge.currency,
        status=charge.status,
        method=method.type if method is not None else None,
        card_brand=card.brand if card is not None else None,
        last4=card.last4 if card is not None else None,
        receipt_url=charge.receipt_url,
        metadata=charge.metadata,
        appointment_id=metadata_value(charge.metadata, APPOINTMENT_ID_KEYS),
        created_at=charge.created_at,
        captured_at=captured_at,
    )
