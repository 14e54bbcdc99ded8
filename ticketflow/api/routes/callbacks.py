from __future__ import annotations

from typing import Any

from fastapi import APIRouter, Depends, status
from fastapi.responses import JSONResponse
from pydantic import BaseModel, ConfigDict, Field

from ticketflow.dependencies.tickets import CallbackReceiverDep, verify_engine_token
from ticketflow.tickets.callbacks import CallbackOutcome, EngineEventType, EngineNotification
from ticketflow.tickets.errors import TicketServiceError, TicketValidationError

from .errors import http_error

router = APIRouter(prefix="/api/engine", tags=["engine"], dependencies=[Depends(verify_engine_token)])


class EngineCallbackRequest(BaseModel):
    model_config = ConfigDict(populate_by_name=True)

    process_instance_id: str = Field(alias="processInstanceId", min_length=1)
    event_type: str = Field(alias="eventType", min_length=1)
    details: dict[str, Any] = Field(default_factory=dict)


class EngineCallbackResponse(BaseModel):
    model_config = ConfigDict(populate_by_name=True)

    outcome: CallbackOutcome
    ticket_id: str | None = Field(default=None, alias="ticketId")


@router.post(
    "/callbacks",
    response_model=EngineCallbackResponse,
    status_code=status.HTTP_202_ACCEPTED,
    responses={409: {"model": EngineCallbackResponse, "description": "Ticket not ready; redeliver later"}},
)
async def receive_callback(payload: EngineCallbackRequest, receiver: CallbackReceiverDep) -> Any:
    try:
        event_type = EngineEventType(payload.event_type)
    except ValueError as exc:
        raise http_error(TicketValidationError(f"Unsupported event type {payload.event_type!r}")) from exc

    notification = EngineNotification(
        process_instance_id=payload.process_instance_id,
        event_type=event_type,
        details=payload.details,
    )
    try:
        result = await receiver.handle(notification)
    except TicketServiceError as exc:
        raise http_error(exc) from exc

    body = EngineCallbackResponse(
        outcome=result.outcome,
        ticket_id=None if result.ticket is None else result.ticket.id,
    )
    if result.outcome is CallbackOutcome.DEFERRED:
        return JSONResponse(status_code=status.HTTP_409_CONFLICT, content=body.model_dump(mode="json", by_alias=True))
    return body
