"""Types for outbox dispatch."""

import enum
from typing import Optional

from pydantic import BaseModel, Field


class OutboxEventType(str, enum.Enum):
    """The closed set of event types the dispatcher knows how to handle."""
    ESTIMATE_REQUESTED = "estimate.requested"
    ESTIMATE_RESCHEDULED = "estimate.rescheduled"
    ESTIMATE_STATUS_CHANGED = "estimate.status_changed"
    LEAD_CREATED = "lead.created"
    QUOTE_SENT = "quote.sent"
    QUOTE_DECISION = "quote.decision"
    PAYMENT_RECORDED = "payment.recorded"
    PIPELINE_STAGE_REQUEST = "pipeline.stage_request"

    @classmethod
    def parse(cls, value: str) -> Optional["OutboxEventType"]:
        """Return the matching member, or None for an unknown tag."""
        try:
            return cls(value)
        except ValueError:
            return None


class HandlerOutcome(str, enum.Enum):
    """What a handler reports when it returns normally."""
    PROCESSED = "processed"
    # Nothing to do (e.g. the referenced record no longer exists)
    SKIPPED = "skipped"


class MalformedPayloadError(ValueError):
    """The event payload cannot be interpreted; retrying will not help."""


class ClaimLostError(RuntimeError):
    """The row was reclaimed by another dispatcher before this one finished it."""


class BatchStats(BaseModel):
    """Aggregate result of one dispatch pass."""
    total: int = Field(default=0, description="Rows selected for this batch")
    succeeded: int = Field(default=0)
    failed: int = Field(default=0)
    skipped: int = Field(default=0, description="Rows handled as a no-op")
    retried: int = Field(default=0, description="Failed rows returned to pending")
    dead_lettered: int = Field(default=0, description="Failed rows that will not be retried")
    lost_claims: int = Field(default=0, description="Rows reclaimed elsewhere before this pass finished them")

    def as_counts(self) -> dict:
        return {"total": self.total, "succeeded": self.succeeded, "failed": self.failed}
