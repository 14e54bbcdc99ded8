"""Ticket domain: state machine, store and orchestration."""

from .errors import (
    EngineRejectedError,
    EngineUnavailableError,
    InstanceAlreadyDecidedError,
    InstanceNotFoundError,
    InvalidTransitionError,
    TicketConflictError,
    TicketNotFoundError,
    TicketServiceError,
    TicketValidationError,
)
from .models import Ticket, TicketAuditEntry, TicketMutation
from .state import TicketEvent, TicketStateMachine, TicketStatus

__all__ = [
    "EngineRejectedError",
    "EngineUnavailableError",
    "InstanceAlreadyDecidedError",
    "InstanceNotFoundError",
    "InvalidTransitionError",
    "Ticket",
    "TicketAuditEntry",
    "TicketConflictError",
    "TicketEvent",
    "TicketMutation",
    "TicketNotFoundError",
    "TicketServiceError",
    "TicketStateMachine",
    "TicketStatus",
    "TicketValidationError",
]
