"""Transactional outbox: producers, handlers, dispatcher and poller."""

from .models import (
    OutboxEventType,
    HandlerOutcome,
    MalformedPayloadError,
    ClaimLostError,
    BatchStats,
)
from .handlers import HANDLERS, HandlerContext, resolve_handler
from .dispatcher import ClaimedEvent, OutboxDispatcher
from .poller import OutboxPoller
from .producers import enqueue_event, enqueue_stage_request, record_quote_decision

__all__ = [
    "OutboxEventType",
    "HandlerOutcome",
    "MalformedPayloadError",
    "ClaimLostError",
    "BatchStats",
    "HANDLERS",
    "HandlerContext",
    "resolve_handler",
    "ClaimedEvent",
    "OutboxDispatcher",
    "OutboxPoller",
    "enqueue_event",
    "enqueue_stage_request",
    "record_quote_decision",
]
