from __future__ import annotations


class TicketServiceError(RuntimeError):
    """Base error for ticket workflow issues.

    ``kind`` is the machine-readable identifier returned to API clients and
    ``status_code`` the HTTP status it maps to.
    """

    kind = "internal_error"
    status_code = 500
    retryable = False


class TicketValidationError(TicketServiceError):
    """Raised when caller supplied input is invalid."""

    kind = "validation_error"
    status_code = 400


class TicketNotFoundError(TicketServiceError):
    """Raised when a ticket could not be located."""

    kind = "not_found"
    status_code = 404


class InvalidTransitionError(TicketServiceError):
    """Raised when an event is fired from a status that does not allow it."""

    kind = "invalid_transition"
    status_code = 409


class TicketConflictError(TicketServiceError):
    """Raised when a write loses an optimistic concurrency race."""

    kind = "conflict"
    status_code = 409


class EngineError(TicketServiceError):
    """Base error for failures reported by the process engine client."""

    kind = "engine_error"
    status_code = 502


class EngineUnavailableError(EngineError):
    """Transient engine or network failure; safe to retry."""

    kind = "engine_unavailable"
    status_code = 502
    retryable = True


class EngineRejectedError(EngineError):
    """The engine refused the request permanently (e.g. invalid variables)."""

    kind = "engine_rejected"
    status_code = 422


class InstanceNotFoundError(EngineError):
    """The engine does not know the referenced process instance."""

    kind = "instance_not_found"
    status_code = 409


class InstanceAlreadyDecidedError(EngineError):
    """A decision was already recorded for the process instance.

    ``approved`` carries the recorded decision when the engine reported it.
    """

    kind = "instance_already_decided"
    status_code = 409

    def __init__(self, message: str, *, approved: bool | None = None) -> None:
        super().__init__(message)
        self.approved = approved
