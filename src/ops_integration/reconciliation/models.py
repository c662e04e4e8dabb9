"""Models for provider charge reconciliation."""

import json
from datetime import datetime, timezone
from typing import Optional, Dict, Any

from pydantic import BaseModel, Field, StrictBool, StrictInt, StrictStr


class ProviderError(RuntimeError):
    """A provider call failed. The message is a summary, never the raw response body."""


class CardDetails(BaseModel):
    brand: Optional[str] = None
    last4: Optional[str] = None


class PaymentMethodDetails(BaseModel):
    type: Optional[str] = None
    card: Optional[CardDetails] = None


class BillingDetails(BaseModel):
    name: Optional[str] = None
    email: Optional[str] = None
    phone: Optional[str] = None


class ProviderCharge(BaseModel):
    """A charge as reported by the payment provider (Stripe charge shape)."""
    id: StrictStr = Field(..., description="Provider charge ID")
    amount: StrictInt = Field(..., description="Charge amount in minor units")
    currency: StrictStr = Field(..., description="Three-letter currency code")
    status: StrictStr
    created: StrictInt = Field(..., description="Creation time, epoch seconds")
    captured: StrictBool
    captured_at: Optional[int] = None
    paid: Optional[bool] = None
    refunded: Optional[bool] = None
    receipt_url: Optional[str] = None
    receipt_email: Optional[str] = None
    metadata: Optional[Dict[str, Any]] = None
    payment_method_details: Optional[PaymentMethodDetails] = None
    billing_details: Optional[BillingDetails] = None

    @property
    def created_at(self) -> datetime:
        return epoch_to_utc(self.created)

    @property
    def is_settled(self) -> bool:
        """True for succeeded, paid, unrefunded charges (the ones worth importing)."""
        if self.refunded:
            return False
        if self.status != "succeeded":
            return False
        return self.paid is not False


class PaymentRecordFields(BaseModel):
    """Column values for a payment record, produced by the mapper."""
    external_charge_id: str
    provider: str = "stripe"
    amount: int
    currency: str
    status: str
    method: Optional[str] = None
    card_brand: Optional[str] = None
    last4: Optional[str] = None
    receipt_url: Optional[str] = None
    metadata: Optional[Dict[str, Any]] = None
    appointment_id: Optional[str] = Field(default=None, description="Appointment id embedded in metadata")
    created_at: datetime
    captured_at: Optional[datetime] = None

    def to_column_values(self, appointment_id: Optional[str] = None) -> Dict[str, Any]:
        """Values for ``PaymentRecordRepository.upsert``."""
        return {
            "external_charge_id": self.external_charge_id,
            "provider": self.provider,
            "amount": self.amount,
            "currency": self.currency,
            "status": self.status,
            "method": self.method,
            "card_brand": self.card_brand,
            "last4": self.last4,
            "receipt_url": self.receipt_url,
            "metadata_json": json.dumps(self.metadata) if self.metadata is not None else None,
            "appointment_id": appointment_id,
            "created_at": self.created_at,
            "captured_at": self.captured_at,
        }


class ReconciliationResult(BaseModel):
    """Outcome of one reconciliation run."""
    fetched: int = Field(default=0, description="Settled charges returned by the provider")
    upserted: int = 0
    inserted: int = 0
    updated: int = 0
    matched: int = Field(default=0, description="Charges resolved to an appointment")
    window_days: int
    window_start: datetime


def epoch_to_utc(seconds: int) -> datetime:
    """Epoch seconds to the naive UTC datetimes stored in the database."""
    return datetime.fromtimestamp(seconds, tz=timezone.utc).replace(tzinfo=None)
