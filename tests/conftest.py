from __future__ import annotations

import asyncio
from datetime import datetime, timezone
from itertools import count

import pytest

from ticketflow.engine.client import InstanceState
from ticketflow.engine.retry import RetryPolicy
from ticketflow.metrics import MetricsRegistry, register_default_metrics
from ticketflow.tickets.callbacks import CallbackReceiver
from ticketflow.tickets.errors import (
    EngineUnavailableError,
    InstanceAlreadyDecidedError,
    InstanceNotFoundError,
)
from ticketflow.tickets.models import Ticket
from ticketflow.tickets.repository import InMemoryTicketRepository
from ticketflow.tickets.service import TicketService
from ticketflow.tickets.state import TicketStatus


class StubEngine:
    """Scriptable stand-in for the process engine client."""

    def __init__(self) -> None:
        self._ids = count(1)
        self.start_failures: list[Exception] = []
        self.signal_failures: list[Exception] = []
        # Decisions the engine stores before the response is lost in transit.
        self.lost_signal_responses = 0
        self.started: list[tuple[str, dict]] = []
        self.signal_calls: list[tuple[str, bool, str | None]] = []
        self.decisions: dict[str, bool] = {}
        self.cancelled: list[str] = []
        self.states: dict[str, InstanceState] = {}

    async def start_instance(self, ticket_id: str, variables=None) -> str:
        # Yield so concurrent callers interleave between read and write.
        await asyncio.sleep(0)
        if self.start_failures:
            raise self.start_failures.pop(0)
        process_instance_id = f"pi-{next(self._ids)}"
        self.started.append((ticket_id, dict(variables or {})))
        return process_instance_id

    async def signal_decision(self, process_instance_id: str, approved: bool, comment: str | None = None) -> None:
        await asyncio.sleep(0)
        self.signal_calls.append((process_instance_id, approved, comment))
        if self.signal_failures:
            raise self.signal_failures.pop(0)
        if process_instance_id in self.decisions:
            raise InstanceAlreadyDecidedError(
                f"{process_instance_id} already decided", approved=self.decisions[process_instance_id]
            )
        self.decisions[process_instance_id] = approved
        if self.lost_signal_responses:
            self.lost_signal_responses -= 1
            raise EngineUnavailableError("connection reset after the decision was stored")

    async def recorded_decision(self, process_instance_id: str) -> bool | None:
        return self.decisions.get(process_instance_id)

    async def query_state(self, process_instance_id: str) -> InstanceState:
        if process_instance_id not in self.states:
            raise InstanceNotFoundError(process_instance_id)
        return self.states[process_instance_id]

    async def cancel_instance(self, process_instance_id: str) -> None:
        self.cancelled.append(process_instance_id)

    async def close(self) -> None:
        return None


def make_ticket(
    *,
    ticket_id: str = "t-1",
    status: TicketStatus = TicketStatus.DRAFT,
    process_instance_id: str | None = None,
    version: int = 1,
    assignee: str | None = None,
) -> Ticket:
    now = datetime.now(timezone.utc)
    return Ticket(
        id=ticket_id,
        title="Laptop request",
        description="New laptop for onboarding",
        requester="alice",
        assignee=assignee,
        status=status,
        process_instance_id=process_instance_id,
        version=version,
        created_at=now,
        updated_at=now,
    )


@pytest.fixture
def ticket_factory():
    return make_ticket


@pytest.fixture
def registry() -> MetricsRegistry:
    return register_default_metrics(MetricsRegistry())


@pytest.fixture
def engine() -> StubEngine:
    return StubEngine()


@pytest.fixture
def store() -> InMemoryTicketRepository:
    return InMemoryTicketRepository()


@pytest.fixture
def service(store, engine, registry) -> TicketService:
    return TicketService(
        store,
        engine,  # type: ignore[arg-type]
        retry_policy=RetryPolicy(max_attempts=3, initial_wait=0.0, max_wait=0.0),
        registry=registry,
    )


@pytest.fixture
def receiver(service, registry) -> CallbackReceiver:
    return CallbackReceiver(service, conflict_retries=2, registry=registry)
