from __future__ import annotations

import hmac
from typing import Annotated

from fastapi import Depends, Header, HTTPException, Request

from ticketflow.core.config import Settings, get_settings
from ticketflow.tickets.callbacks import CallbackReceiver
from ticketflow.tickets.service import TicketService


async def get_ticket_service(request: Request) -> TicketService:
    service = getattr(request.app.state, "ticket_service", None)
    if service is None:
        raise HTTPException(status_code=503, detail="Ticket service is not configured")
    return service


async def get_callback_receiver(request: Request) -> CallbackReceiver:
    receiver = getattr(request.app.state, "callback_receiver", None)
    if receiver is None:
        raise HTTPException(status_code=503, detail="Callback receiver is not configured")
    return receiver


async def verify_engine_token(
    settings: Annotated[Settings, Depends(get_settings)],
    x_engine_token: Annotated[str | None, Header()] = None,
) -> None:
    """Reject callbacks without the shared token when one is configured."""

    expected = settings.callback_token
    if not expected:
        return
    if x_engine_token is None or not hmac.compare_digest(x_engine_token, expected):
        raise HTTPException(status_code=401, detail="Invalid engine callback token")


TicketServiceDep = Annotated[TicketService, Depends(get_ticket_service)]
CallbackReceiverDep = Annotated[CallbackReceiver, Depends(get_callback_receiver)]
