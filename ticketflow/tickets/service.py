from __future__ import annotations

import logging
from datetime import datetime, timezone
from uuid import uuid4

from ticketflow.engine.client import InstanceStatus, ProcessEngineClient
from ticketflow.engine.retry import RetryPolicy
from ticketflow.metrics import MetricsRegistry, metrics_registry
from ticketflow.metrics.definitions import TICKET_CONFLICTS, TICKET_TRANSITIONS

from .errors import (
    EngineError,
    InstanceAlreadyDecidedError,
    InvalidTransitionError,
    TicketConflictError,
    TicketNotFoundError,
    TicketValidationError,
)
from .events import (
    TICKET_CREATED,
    NoopEventPublisher,
    TicketEventPublisher,
    routing_key_for,
    ticket_event_payload,
)
from .models import AuditRecord, Ticket, TicketAuditEntry, TicketMutation
from .repository import TicketStore
from .state import SideEffect, TicketEvent, TicketStateMachine, TicketStatus, Transition

logger = logging.getLogger(__name__)

SYSTEM_ACTOR = "system"


def _clean(value: str | None) -> str:
    return (value or "").strip()


class TicketService:
    """Orchestrates ticket writes with the process engine.

    State lives only in the store. Each write carries the version read at the
    start of the operation, and engine side effects run before the write, so
    a failed engine call never leaves a partially applied transition.
    """

    def __init__(
        self,
        store: TicketStore,
        engine: ProcessEngineClient,
        *,
        retry_policy: RetryPolicy | None = None,
        registry: MetricsRegistry | None = None,
        publisher: TicketEventPublisher | None = None,
        decision_write_attempts: int = 3,
    ) -> None:
        self._store = store
        self._engine = engine
        self._retry = retry_policy or RetryPolicy()
        self._publisher = publisher or NoopEventPublisher()
        self._decision_write_attempts = max(1, decision_write_attempts)
        registry = registry or metrics_registry
        self._transitions = registry.counter(TICKET_TRANSITIONS, label_names=("event",))
        self._conflicts = registry.counter(TICKET_CONFLICTS, label_names=("operation",))

    @property
    def store(self) -> TicketStore:
        return self._store

    @property
    def engine(self) -> ProcessEngineClient:
        return self._engine

    async def ensure_schema(self) -> None:
        await self._store.ensure_schema()

    async def create_ticket(
        self,
        *,
        title: str,
        description: str = "",
        requester: str,
        assignee: str | None = None,
    ) -> Ticket:
        title = _clean(title)
        requester = _clean(requester)
        missing = [name for name, value in (("title", title), ("requester", requester)) if not value]
        if missing:
            raise TicketValidationError(f"Missing required fields: {', '.join(missing)}")

        now = datetime.now(timezone.utc)
        ticket = Ticket(
            id=str(uuid4()),
            title=title,
            description=description or "",
            requester=requester,
            assignee=_clean(assignee) or None,
            status=TicketStateMachine.initial_state(),
            process_instance_id=None,
            version=1,
            created_at=now,
            updated_at=now,
        )
        created = await self._store.create(
            ticket, AuditRecord(event="create", actor=requester, note="Ticket created")
        )
        logger.info("Created ticket %s for %s", created.id, created.requester)
        await self._publish(TICKET_CREATED, created)
        return created

    async def get_ticket(self, ticket_id: str) -> Ticket:
        ticket = await self._store.get(ticket_id)
        if ticket is None:
            raise TicketNotFoundError(f"Ticket {ticket_id} not found")
        return ticket

    async def list_tickets(self) -> list[Ticket]:
        return await self._store.list_tickets()

    async def get_audit_log(self, ticket_id: str) -> list[TicketAuditEntry]:
        await self.get_ticket(ticket_id)
        return await self._store.get_audit_log(ticket_id)

    async def update_ticket(
        self,
        ticket_id: str,
        *,
        title: str | None = None,
        description: str | None = None,
        assignee: str | None = None,
        clear_assignee: bool = False,
        actor: str | None = None,
    ) -> Ticket:
        ticket = await self.get_ticket(ticket_id)
        if title is not None or description is not None:
            if ticket.status is not TicketStatus.DRAFT:
                raise InvalidTransitionError(
                    f"Title and description of ticket {ticket_id} can only change while in draft"
                )
            if title is not None and not _clean(title):
                raise TicketValidationError("Title must not be blank")
        if (assignee is not None or clear_assignee) and TicketStateMachine.is_terminal(ticket.status):
            raise InvalidTransitionError(f"Ticket {ticket_id} is {ticket.status.value}; assignee is frozen")

        new_assignee = _clean(assignee)
        mutation = TicketMutation(
            title=None if title is None else _clean(title),
            description=description,
            assignee=new_assignee or None,
            clear_assignee=clear_assignee or (assignee is not None and not new_assignee),
        )
        if mutation.is_empty():
            raise TicketValidationError("No fields provided for update")
        return await self._write(
            ticket,
            mutation,
            AuditRecord(event="edit", actor=actor or ticket.requester, note="Ticket updated"),
            operation="update",
        )

    async def submit_ticket(self, ticket_id: str) -> Ticket:
        ticket = await self.get_ticket(ticket_id)
        transition = TicketStateMachine.apply(ticket.status, TicketEvent.SUBMIT)

        variables = {
            "ticketId": ticket.id,
            "title": ticket.title,
            "requester": ticket.requester,
            "assignee": ticket.assignee,
        }
        process_instance_id = await self._retry.run(
            "start_instance", lambda: self._engine.start_instance(ticket.id, variables)
        )

        metadata = {"processInstanceId": process_instance_id}
        if ticket.process_instance_id:
            metadata["previousProcessInstanceId"] = ticket.process_instance_id
        try:
            return await self._persist_transition(
                ticket,
                transition,
                actor=ticket.requester,
                process_instance_id=process_instance_id,
                metadata=metadata,
            )
        except TicketConflictError:
            await self._discard_instance(ticket.id, process_instance_id)
            raise

    async def decide_ticket(self, ticket_id: str, *, approved: bool, comment: str | None = None) -> Ticket:
        ticket = await self.get_ticket(ticket_id)
        event = TicketEvent.APPROVE if approved else TicketEvent.REJECT
        if ticket.status is TicketStateMachine.target_of(event) and ticket.process_instance_id:
            # Repeated click after the same decision was stored.
            return ticket
        transition = TicketStateMachine.apply(ticket.status, event)
        if not ticket.process_instance_id:
            raise InvalidTransitionError(f"Ticket {ticket_id} has no process instance to decide on")

        process_instance_id = ticket.process_instance_id
        try:
            await self._retry.run(
                "signal_decision",
                lambda: self._engine.signal_decision(process_instance_id, approved, comment),
            )
        except InstanceAlreadyDecidedError as exc:
            logger.info(
                "Decision for ticket %s already recorded on instance %s (approved=%s)",
                ticket_id,
                process_instance_id,
                exc.approved,
            )
            return await self._store_recorded_decision(
                ticket_id, process_instance_id, exc.approved, source="decide"
            )

        metadata = {"processInstanceId": process_instance_id, "approved": str(approved).lower()}
        if comment:
            metadata["comment"] = comment
        actor = ticket.assignee or SYSTEM_ACTOR
        for _ in range(self._decision_write_attempts):
            try:
                return await self._persist_transition(
                    ticket, transition, actor=actor, metadata=metadata, note=comment or ""
                )
            except TicketConflictError:
                # The engine already holds the decision; re-read and store it unless
                # another writer moved the ticket elsewhere.
                ticket = await self.get_ticket(ticket_id)
                if ticket.status is transition.target:
                    return ticket
                if ticket.status is not transition.source or ticket.process_instance_id != process_instance_id:
                    raise
        raise TicketConflictError(f"Ticket {ticket_id} kept changing while storing its decision")

    async def sync_ticket(self, ticket_id: str) -> Ticket:
        """Catch a ticket up with its process instance.

        Covers notifications the engine never delivered and decision responses
        that were lost in transit. A submitted ticket picks up a decision the
        engine already recorded; ended instances then drive the ticket to its
        terminal status. An active, undecided instance leaves the ticket
        untouched.
        """

        ticket = await self.get_ticket(ticket_id)
        process_instance_id = ticket.process_instance_id
        if not process_instance_id or TicketStateMachine.is_terminal(ticket.status):
            return ticket

        state = await self._retry.run("query_state", lambda: self._engine.query_state(process_instance_id))
        if ticket.status is TicketStatus.SUBMITTED:
            approved = await self._retry.run(
                "recorded_decision", lambda: self._engine.recorded_decision(process_instance_id)
            )
            if approved is not None:
                ticket = await self._store_recorded_decision(
                    ticket.id, process_instance_id, approved, source="sync"
                )

        if state.status is InstanceStatus.CANCELLED:
            events = [TicketEvent.INSTANCE_CANCELLED]
        elif state.status is InstanceStatus.COMPLETED:
            events = [TicketEvent.INSTANCE_ADVANCED, TicketEvent.INSTANCE_COMPLETED]
        else:
            return ticket

        metadata = {"processInstanceId": state.id, "source": "sync"}
        for event in events:
            if TicketStateMachine.can_apply(ticket.status, event):
                ticket = await self.apply_engine_event(ticket, event, metadata)
        if not TicketStateMachine.is_terminal(ticket.status):
            logger.warning(
                "Instance %s ended as %s but ticket %s is still %s",
                state.id,
                state.status.value,
                ticket.id,
                ticket.status.value,
            )
        return ticket

    async def apply_engine_event(self, ticket: Ticket, event: TicketEvent, metadata: dict[str, str]) -> Ticket:
        """Persist an engine-originated transition for ``ticket`` as read by the caller."""

        transition = TicketStateMachine.apply(ticket.status, event)
        if transition.side_effect is not SideEffect.NONE:
            raise InvalidTransitionError(f"Event {event.value} cannot be applied from an engine notification")
        return await self._persist_transition(ticket, transition, actor="engine", metadata=metadata)

    async def _store_recorded_decision(
        self, ticket_id: str, process_instance_id: str, approved: bool | None, *, source: str
    ) -> Ticket:
        """Persist a decision the engine holds but the store does not.

        Only applies while the ticket is still submitted on the same instance;
        otherwise the stored ticket is returned as is.
        """

        if approved is None:
            return await self.get_ticket(ticket_id)
        event = TicketEvent.DECISION_APPROVED if approved else TicketEvent.DECISION_REJECTED
        metadata = {"processInstanceId": process_instance_id, "approved": str(approved).lower(), "source": source}
        for _ in range(self._decision_write_attempts):
            ticket = await self.get_ticket(ticket_id)
            if ticket.process_instance_id != process_instance_id or not TicketStateMachine.can_apply(
                ticket.status, event
            ):
                return ticket
            try:
                return await self.apply_engine_event(ticket, event, metadata)
            except TicketConflictError:
                continue
        raise TicketConflictError(f"Ticket {ticket_id} kept changing while storing its recorded decision")

    async def _publish(
        self, routing_key: str, ticket: Ticket, metadata: dict[str, str] | None = None
    ) -> None:
        try:
            await self._publisher.publish(routing_key, ticket_event_payload(routing_key, ticket, metadata))
        except Exception as exc:  # best effort; the store already holds the change
            logger.warning("Publishing %s for ticket %s failed: %s", routing_key, ticket.id, exc)

    async def _persist_transition(
        self,
        ticket: Ticket,
        transition: Transition,
        *,
        actor: str,
        process_instance_id: str | None = None,
        metadata: dict[str, str] | None = None,
        note: str = "",
    ) -> Ticket:
        updated = await self._write(
            ticket,
            TicketMutation(status=transition.target, process_instance_id=process_instance_id),
            AuditRecord(
                event=transition.event,
                actor=actor,
                note=note or f"{transition.source.value} -> {transition.target.value}",
                metadata=metadata or {},
            ),
            operation=transition.event.value,
        )
        self._transitions.inc(labels={"event": transition.event.value})
        logger.info(
            "Ticket %s moved %s -> %s on %s",
            ticket.id,
            transition.source.value,
            transition.target.value,
            transition.event.value,
        )
        await self._publish(routing_key_for(transition.event), updated, metadata)
        return updated

    async def _write(
        self, ticket: Ticket, mutation: TicketMutation, audit: AuditRecord, *, operation: str
    ) -> Ticket:
        try:
            return await self._store.update(
                ticket.id, expected_version=ticket.version, mutation=mutation, audit=audit
            )
        except TicketConflictError:
            self._conflicts.inc(labels={"operation": operation})
            logger.info("Ticket %s changed concurrently during %s", ticket.id, operation)
            raise

    async def _discard_instance(self, ticket_id: str, process_instance_id: str) -> None:
        try:
            await self._engine.cancel_instance(process_instance_id)
        except EngineError as exc:
            logger.error(
                "Could not cancel orphaned instance %s for ticket %s: %s",
                process_instance_id,
                ticket_id,
                exc,
            )
