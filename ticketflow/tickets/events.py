"""Outbound ticket lifecycle events for downstream consumers."""
from __future__ import annotations

import json
import logging
from datetime import datetime, timezone
from typing import Any, Awaitable, Callable, Mapping, Protocol

import aio_pika
from aio_pika.abc import AbstractExchange, AbstractRobustConnection

from .models import Ticket
from .state import TicketEvent

logger = logging.getLogger(__name__)

TICKET_CREATED = "ticket.created"

_ROUTING_KEYS: Mapping[TicketEvent, str] = {
    TicketEvent.SUBMIT: "ticket.submitted",
    TicketEvent.APPROVE: "ticket.decision",
    TicketEvent.REJECT: "ticket.decision",
    TicketEvent.DECISION_APPROVED: "ticket.decision",
    TicketEvent.DECISION_REJECTED: "ticket.decision",
    TicketEvent.INSTANCE_ADVANCED: "ticket.processing",
    TicketEvent.INSTANCE_COMPLETED: "ticket.completed",
    TicketEvent.INSTANCE_CANCELLED: "ticket.cancelled",
}


def routing_key_for(event: TicketEvent) -> str:
    return _ROUTING_KEYS[event]


def ticket_event_payload(
    routing_key: str, ticket: Ticket, metadata: Mapping[str, str] | None = None
) -> dict[str, Any]:
    return {
        "event": routing_key,
        "ticketId": ticket.id,
        "status": ticket.status.value,
        "processInstanceId": ticket.process_instance_id,
        "title": ticket.title,
        "requester": ticket.requester,
        "assignee": ticket.assignee,
        "version": ticket.version,
        "metadata": dict(metadata or {}),
        "occurredAt": datetime.now(timezone.utc).isoformat(),
    }


class TicketEventPublisher(Protocol):
    async def publish(self, routing_key: str, payload: Mapping[str, Any]) -> None:
        ...

    async def close(self) -> None:
        ...


class NoopEventPublisher:
    """Used when no broker is configured."""

    async def publish(self, routing_key: str, payload: Mapping[str, Any]) -> None:
        logger.debug("No event broker configured; dropping %s for ticket %s", routing_key, payload.get("ticketId"))

    async def close(self) -> None:
        return None


class RabbitMQEventPublisher:
    """Publishes JSON ticket events to a durable RabbitMQ topic exchange.

    ``connect`` must be awaited before the first ``publish``; the robust
    connection reconnects on its own after broker restarts.
    """

    def __init__(
        self,
        url: str,
        *,
        exchange: str = "ticketflow.events",
        connection_factory: Callable[[str], Awaitable[AbstractRobustConnection]] = aio_pika.connect_robust,
    ) -> None:
        self._url = url
        self._exchange_name = exchange
        self._connection_factory = connection_factory
        self._connection: AbstractRobustConnection | None = None
        self._exchange: AbstractExchange | None = None

    async def connect(self) -> None:
        self._connection = await self._connection_factory(self._url)
        channel = await self._connection.channel()
        self._exchange = await channel.declare_exchange(
            self._exchange_name, aio_pika.ExchangeType.TOPIC, durable=True
        )
        logger.info("Publishing ticket events to exchange %s", self._exchange_name)

    async def publish(self, routing_key: str, payload: Mapping[str, Any]) -> None:
        if self._exchange is None:
            raise RuntimeError("RabbitMQEventPublisher.connect() has not been awaited")
        message = aio_pika.Message(
            body=json.dumps(payload).encode("utf-8"),
            content_type="application/json",
            delivery_mode=aio_pika.DeliveryMode.PERSISTENT,
        )
        await self._exchange.publish(message, routing_key=routing_key)

    async def close(self) -> None:
        if self._connection is not None:
            await self._connection.close()
        self._connection = None
        self._exchange = None
