"""Notification events emitted on claim and payment transitions.

Delivery (email, push, realtime) belongs to the host; the core only hands
events to an emitter after the transaction that produced them has committed.
"""

from __future__ import annotations

import logging
from collections.abc import Iterable
from dataclasses import dataclass
from typing import Final, Protocol


logger = logging.getLogger(__name__)

ADMIN_RECIPIENT: Final = "role:admin"

EVENT_CLAIM_SUBMITTED: Final = "claim_submitted"
EVENT_CLAIM_APPROVED: Final = "claim_approved"
EVENT_CLAIM_REJECTED: Final = "claim_rejected"
EVENT_CLAIM_INFO_REQUESTED: Final = "claim_info_requested"
EVENT_CLAIM_DISPUTED: Final = "claim_disputed"
EVENT_CLAIM_OVERRIDE: Final = "claim_override"
EVENT_CLAIM_RESUBMITTED: Final = "claim_resubmitted"
EVENT_CLAIM_WITHDRAWN: Final = "claim_withdrawn"
EVENT_PAYMENT_SUBMITTED: Final = "payment_submitted"
EVENT_PAYMENT_VERIFIED: Final = "payment_verified"
EVENT_PAYMENT_REJECTED: Final = "payment_rejected"
EVENT_VIP_CANCELLED: Final = "vip_cancelled"


@dataclass(frozen=True, slots=True)
class NotificationEvent:
    type: str
    recipient_id: str
    claim_id: int | None = None
    transaction_id: int | None = None
    reason_or_notes: str | None = None


class NotificationEmitter(Protocol):
    async def emit(self, event: NotificationEvent) -> None:
        """Hand one event to the delivery collaborator."""


class LoggingNotificationEmitter:
    """Default emitter: records events in the service log."""

    async def emit(self, event: NotificationEvent) -> None:
        logger.info(
            "Notification event %s -> %s (claim=%s transaction=%s)",
            event.type,
            event.recipient_id,
            event.claim_id,
            event.transaction_id,
        )


class MemoryNotificationEmitter:
    """Collects events in memory; used by smoke checks and local tooling."""

    def __init__(self) -> None:
        self.events: list[NotificationEvent] = []

    async def emit(self, event: NotificationEvent) -> None:
        self.events.append(event)

    def of_type(self, event_type: str) -> list[NotificationEvent]:
        return [event for event in self.events if event.type == event_type]

    def clear(self) -> None:
        self.events.clear()


async def emit_all(emitter: NotificationEmitter, events: Iterable[NotificationEvent]) -> None:
    """Emit committed events; a failing emitter never undoes the decision."""
    for event in events:
        try:
            await emitter.emit(event)
        except Exception:
            logger.exception("Failed to emit notification event %s to %s", event.type, event.recipient_id)
