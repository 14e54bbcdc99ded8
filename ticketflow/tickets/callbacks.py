"""Apply asynchronous process engine notifications to tickets."""

from __future__ import annotations

import logging
from dataclasses import dataclass, field
from enum import Enum
from typing import Any, Mapping

from ticketflow.metrics import MetricsRegistry, metrics_registry
from ticketflow.metrics.definitions import ENGINE_CALLBACKS

from .errors import TicketConflictError, TicketValidationError
from .models import Ticket
from .service import TicketService
from .state import TicketEvent, TicketStateMachine

logger = logging.getLogger(__name__)


class EngineEventType(str, Enum):
    DECISION_RECORDED = "decision_recorded"
    INSTANCE_ADVANCED = "instance_advanced"
    INSTANCE_COMPLETED = "instance_completed"
    INSTANCE_CANCELLED = "instance_cancelled"


class CallbackOutcome(str, Enum):
    APPLIED = "applied"
    DUPLICATE = "duplicate"
    DEFERRED = "deferred"
    UNKNOWN_INSTANCE = "unknown_instance"


@dataclass(frozen=True, slots=True)
class EngineNotification:
    process_instance_id: str
    event_type: EngineEventType
    details: Mapping[str, Any] = field(default_factory=dict)


@dataclass(frozen=True, slots=True)
class CallbackResult:
    outcome: CallbackOutcome
    ticket: Ticket | None = None


def _as_bool(value: Any) -> bool:
    if isinstance(value, bool):
        return value
    if isinstance(value, str) and value.strip().lower() in {"true", "1", "yes"}:
        return True
    if isinstance(value, str) and value.strip().lower() in {"false", "0", "no"}:
        return False
    raise TicketValidationError("decision_recorded notifications require a boolean 'approved' detail")


def resolve_event(notification: EngineNotification) -> TicketEvent:
    if notification.event_type is EngineEventType.DECISION_RECORDED:
        approved = _as_bool(notification.details.get("approved"))
        return TicketEvent.DECISION_APPROVED if approved else TicketEvent.DECISION_REJECTED
    if notification.event_type is EngineEventType.INSTANCE_ADVANCED:
        return TicketEvent.INSTANCE_ADVANCED
    if notification.event_type is EngineEventType.INSTANCE_COMPLETED:
        return TicketEvent.INSTANCE_COMPLETED
    return TicketEvent.INSTANCE_CANCELLED


class CallbackReceiver:
    """Feeds engine notifications through the state machine.

    Delivery is assumed at-least-once and unordered: repeats resolve to
    ``duplicate``, early arrivals to ``deferred`` so the sender redelivers,
    and instances no ticket tracks are discarded.
    """

    def __init__(
        self,
        service: TicketService,
        *,
        conflict_retries: int = 3,
        registry: MetricsRegistry | None = None,
    ) -> None:
        self._service = service
        self._conflict_retries = conflict_retries
        self._outcomes = (registry or metrics_registry).counter(ENGINE_CALLBACKS, label_names=("outcome",))

    async def handle(self, notification: EngineNotification) -> CallbackResult:
        result = await self._apply(notification)
        self._outcomes.inc(labels={"outcome": result.outcome.value})
        return result

    async def _apply(self, notification: EngineNotification) -> CallbackResult:
        attempt = 0
        event: TicketEvent | None = None
        while True:
            ticket = await self._service.store.get_by_process_instance(notification.process_instance_id)
            if ticket is None:
                logger.warning(
                    "Discarding %s for untracked process instance %s",
                    notification.event_type.value,
                    notification.process_instance_id,
                )
                return CallbackResult(CallbackOutcome.UNKNOWN_INSTANCE)
            if event is None:
                # Details are validated only for tracked instances.
                event = resolve_event(notification)

            if not TicketStateMachine.can_apply(ticket.status, event):
                if TicketStateMachine.is_pending(ticket.status, event):
                    logger.info(
                        "Deferring %s for ticket %s in status %s",
                        event.value,
                        ticket.id,
                        ticket.status.value,
                    )
                    return CallbackResult(CallbackOutcome.DEFERRED, ticket)
                logger.debug("Ignoring %s for ticket %s in status %s", event.value, ticket.id, ticket.status.value)
                return CallbackResult(CallbackOutcome.DUPLICATE, ticket)

            metadata = {"processInstanceId": notification.process_instance_id, "source": "callback"}
            metadata.update({str(key): str(value) for key, value in notification.details.items()})
            try:
                updated = await self._service.apply_engine_event(ticket, event, metadata)
            except TicketConflictError:
                attempt += 1
                if attempt > self._conflict_retries:
                    raise
                continue
            return CallbackResult(CallbackOutcome.APPLIED, updated)
