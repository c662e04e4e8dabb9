"""Provider charge fetching for reconciliation."""

import os
import logging
from abc import ABC, abstractmethod
from datetime import datetime, timezone
from typing import Any, Dict, List, Optional

import stripe
from pydantic import ValidationError

from .models import ProviderCharge, ProviderError

logger = logging.getLogger(__name__)

# Stripe's maximum page size
PAGE_SIZE = 100


class ChargeFetcherBase(ABC):
    """Base class for provider charge fetchers."""

    @abstractmethod
    def list_charges_since(self, start: datetime) -> List[ProviderCharge]:
        """Return every settled charge created at or after ``start``.

        Implementations page through the provider exhaustively and drop
        refunded, unpaid and non-succeeded charges.

        Args:
            start: Naive UTC lower bound.

        Raises:
            ProviderError: The provider rejected the request.
            ConnectionError: The provider could not be reached.
        """
        raise NotImplementedError


def _as_dict(charge: Any) -> Dict[str, Any]:
    to_dict = getattr(charge, "to_dict", None)
    if callable(to_dict):
        return to_dict()
    return dict(charge)


def parse_charges(raw_charges) -> List[ProviderCharge]:
    """Validate raw charge documents and keep only settled ones."""
    charges: List[ProviderCharge] = []
    for raw in raw_charges:
        try:
            charge = ProviderCharge.model_validate(_as_dict(raw))
        except (ValidationError, TypeError, ValueError):
            logger.warning("Skipping charge with unexpected shape")
            continue
        if charge.is_settled:
            charges.append(charge)
    return charges


class StripeChargeFetcher(ChargeFetcherBase):
    """Stripe charge fetcher backed by the stripe SDK's auto-pagination."""

    def __init__(self, api_key: Optional[str] = None):
        """Initialize the Stripe fetcher.

        Args:
            api_key: Stripe API key. Falls back to STRIPE_API_KEY env var.

        Raises:
            ValueError: If no API key is provided or found.
        """
        self._api_key = api_key or os.getenv("STRIPE_API_KEY")
        if not self._api_key:
            raise ValueError(
                "STRIPE_API_KEY must be provided either as argument or environment variable"
            )

    def list_charges_since(self, start: datetime) -> List[ProviderCharge]:
        stripe.api_key = self._api_key
        since = int(start.replace(tzinfo=timezone.utc).timestamp())
        logger.info(f"Fetching Stripe charges created since {start.isoformat()}")

        try:
            page = stripe.Charge.list(created={"gte": since}, limit=PAGE_SIZE)
            charges = parse_charges(page.auto_paging_iter())
        except stripe.AuthenticationError as e:
            logger.error("Stripe authentication failed")
            raise ProviderError("Stripe authentication failed") from e
        except stripe.APIConnectionError as e:
            logger.error("Failed to connect to Stripe API")
            raise ConnectionError("Failed to connect to Stripe API") from e
        except stripe.StripeError as e:
            logger.error(f"Stripe API error: {type(e).__name__}")
            raise ProviderError(f"Stripe charge listing failed ({type(e).__name__})") from e

        logger.info(f"Fetched {len(charges)} settled charges from Stripe")
        return charges


def get_charge_fetcher(provider: str = "stripe", api_key: Optional[str] = None) -> ChargeFetcherBase:
    """Factory for the configured provider's charge fetcher.

    Raises:
        ValueError: If the provider is not supported or has no API key.
    """
    fetchers = {
        "stripe": StripeChargeFetcher,
    }
    fetcher_class = fetchers.get(provider.lower())
    if fetcher_class is None:
        raise ValueError(f"Unsupported payment provider: {provider}")
    return fetcher_class(api_key=api_key)
