from __future__ import annotations

from dataclasses import dataclass, field
from datetime import datetime

from .state import TicketEvent, TicketStatus


@dataclass(slots=True)
class Ticket:
    """Aggregate representing a work order routed through the approval process."""

    id: str
    title: str
    description: str
    requester: str
    assignee: str | None
    status: TicketStatus
    process_instance_id: str | None
    version: int
    created_at: datetime
    updated_at: datetime


@dataclass(slots=True)
class TicketAuditEntry:
    """History entry describing a state-affecting write to a ticket."""

    id: str
    ticket_id: str
    from_status: TicketStatus | None
    to_status: TicketStatus
    event: str
    actor: str
    note: str
    created_at: datetime
    metadata: dict[str, str] = field(default_factory=dict)


@dataclass(frozen=True, slots=True)
class TicketMutation:
    """Field changes applied atomically by the store under a version precondition.

    ``None`` leaves a field untouched; ``clear_assignee`` removes the assignee.
    ``status`` must come from a :class:`~ticketflow.tickets.state.Transition`.
    """

    status: TicketStatus | None = None
    process_instance_id: str | None = None
    title: str | None = None
    description: str | None = None
    assignee: str | None = None
    clear_assignee: bool = False

    def is_empty(self) -> bool:
        return (
            self.status is None
            and self.process_instance_id is None
            and self.title is None
            and self.description is None
            and self.assignee is None
            and not self.clear_assignee
        )


@dataclass(frozen=True, slots=True)
class AuditRecord:
    """Audit details supplied by the service alongside a store write."""

    event: TicketEvent | str
    actor: str
    note: str = ""
    metadata: dict[str, str] = field(default_factory=dict)

    @property
    def event_name(self) -> str:
        return self.event.value if isinstance(self.event, TicketEvent) else str(self.event)
