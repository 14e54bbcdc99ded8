from __future__ import annotations

from datetime import datetime

from fastapi import APIRouter, Response, status
from pydantic import BaseModel, ConfigDict, Field

from ticketflow.dependencies.tickets import TicketServiceDep
from ticketflow.tickets.errors import TicketServiceError, TicketValidationError
from ticketflow.tickets.models import Ticket, TicketAuditEntry
from ticketflow.tickets.state import TicketStatus

from .errors import http_error

router = APIRouter(prefix="/api/tickets", tags=["tickets"])


class TicketCreateRequest(BaseModel):
    # Required fields are checked by the service so that a missing value is a 400.
    title: str | None = Field(default=None, max_length=255)
    description: str = Field(default="")
    requester: str | None = Field(default=None, max_length=255)
    assignee: str | None = Field(default=None, max_length=255)


class TicketUpdateRequest(BaseModel):
    title: str | None = Field(default=None, max_length=255)
    description: str | None = Field(default=None)
    assignee: str | None = Field(default=None, max_length=255)

    def ensure_payload(self) -> None:
        if not self.model_fields_set:
            raise http_error(TicketValidationError("No fields provided for update"))


class TicketDecisionRequest(BaseModel):
    approved: bool
    comment: str | None = Field(default=None, max_length=2000)


class TicketResponse(BaseModel):
    model_config = ConfigDict(from_attributes=True, populate_by_name=True)

    id: str
    title: str
    description: str
    requester: str
    assignee: str | None
    status: TicketStatus
    process_instance_id: str | None = Field(alias="processInstanceId")
    version: int
    created_at: datetime = Field(alias="createdAt")
    updated_at: datetime = Field(alias="updatedAt")


class TicketAuditResponse(BaseModel):
    model_config = ConfigDict(from_attributes=True, populate_by_name=True)

    id: str
    ticket_id: str = Field(alias="ticketId")
    from_status: TicketStatus | None = Field(alias="fromStatus")
    to_status: TicketStatus = Field(alias="toStatus")
    event: str
    actor: str
    note: str
    metadata: dict[str, str]
    created_at: datetime = Field(alias="createdAt")


def _to_response(ticket: Ticket) -> TicketResponse:
    return TicketResponse.model_validate(ticket)


def _to_audit_response(entry: TicketAuditEntry) -> TicketAuditResponse:
    return TicketAuditResponse.model_validate(entry)


@router.get("", response_model=list[TicketResponse])
async def list_tickets(service: TicketServiceDep) -> list[TicketResponse]:
    tickets = await service.list_tickets()
    return [_to_response(ticket) for ticket in tickets]


@router.post("", response_model=TicketResponse, status_code=status.HTTP_201_CREATED)
async def create_ticket(payload: TicketCreateRequest, service: TicketServiceDep) -> TicketResponse:
    try:
        ticket = await service.create_ticket(
            title=payload.title or "",
            description=payload.description,
            requester=payload.requester or "",
            assignee=payload.assignee,
        )
    except TicketServiceError as exc:
        raise http_error(exc) from exc
    return _to_response(ticket)


@router.get("/{ticket_id}", response_model=TicketResponse)
async def get_ticket(ticket_id: str, service: TicketServiceDep) -> TicketResponse:
    try:
        ticket = await service.get_ticket(ticket_id)
    except TicketServiceError as exc:
        raise http_error(exc) from exc
    return _to_response(ticket)


@router.patch("/{ticket_id}", response_model=TicketResponse)
async def update_ticket(ticket_id: str, payload: TicketUpdateRequest, service: TicketServiceDep) -> TicketResponse:
    payload.ensure_payload()
    fields = payload.model_fields_set
    try:
        ticket = await service.update_ticket(
            ticket_id,
            title=payload.title,
            description=payload.description,
            assignee=payload.assignee,
            clear_assignee="assignee" in fields and payload.assignee is None,
        )
    except TicketServiceError as exc:
        raise http_error(exc) from exc
    return _to_response(ticket)


@router.post("/{ticket_id}/submit", status_code=status.HTTP_204_NO_CONTENT)
async def submit_ticket(ticket_id: str, service: TicketServiceDep) -> Response:
    try:
        await service.submit_ticket(ticket_id)
    except TicketServiceError as exc:
        raise http_error(exc) from exc
    return Response(status_code=status.HTTP_204_NO_CONTENT)


@router.post("/{ticket_id}/decision", status_code=status.HTTP_204_NO_CONTENT)
async def decide_ticket(ticket_id: str, payload: TicketDecisionRequest, service: TicketServiceDep) -> Response:
    try:
        await service.decide_ticket(ticket_id, approved=payload.approved, comment=payload.comment)
    except TicketServiceError as exc:
        raise http_error(exc) from exc
    return Response(status_code=status.HTTP_204_NO_CONTENT)


@router.post("/{ticket_id}/sync", response_model=TicketResponse)
async def sync_ticket(ticket_id: str, service: TicketServiceDep) -> TicketResponse:
    try:
        ticket = await service.sync_ticket(ticket_id)
    except TicketServiceError as exc:
        raise http_error(exc) from exc
    return _to_response(ticket)


@router.get("/{ticket_id}/audit", response_model=list[TicketAuditResponse])
async def get_ticket_audit(ticket_id: str, service: TicketServiceDep) -> list[TicketAuditResponse]:
    try:
        entries = await service.get_audit_log(ticket_id)
    except TicketServiceError as exc:
        raise http_error(exc) from exc
    return [_to_audit_response(entry) for entry in entries]
