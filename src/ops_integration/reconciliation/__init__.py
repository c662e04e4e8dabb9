"""Reconciliation of provider charges into local payment records.

- Fetch settled charges from the provider for a lookback window
- Map each charge to payment record fields
- Match the charge to a local appointment where one is unambiguous
- Upsert one payment record per provider charge
"""

from .models import (
    ProviderError,
    ProviderCharge,
    PaymentRecordFields,
    ReconciliationResult,
)
from .charge_fetcher import (
    ChargeFetcherBase,
    StripeChargeFetcher,
    get_charge_fetcher,
)
from .mapper import map_charge_to_payment_fields
from .matcher import AppointmentMatcher
from .service import ReconciliationRunner

__all__ = [
    # Models
    "ProviderError",
    "ProviderCharge",
    "PaymentRecordFields",
    "ReconciliationResult",
    # Fetchers
    "ChargeFetcherBase",
    "StripeChargeFetcher",
    "get_charge_fetcher",
    # Core Components
    "map_charge_to_payment_fields",
    "AppointmentMatcher",
    "ReconciliationRunner",
]
