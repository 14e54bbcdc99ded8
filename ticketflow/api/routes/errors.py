from __future__ import annotations

from fastapi import HTTPException

from ticketflow.tickets.errors import TicketServiceError


def http_error(exc: TicketServiceError) -> HTTPException:
    """Translate a workflow error into its HTTP status and machine-readable kind."""

    return HTTPException(status_code=exc.status_code, detail={"message": str(exc), "kind": exc.kind})
