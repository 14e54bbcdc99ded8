from __future__ import annotations

import asyncio

import pytest

from ticketflow.engine.client import InstanceState, InstanceStatus
from ticketflow.engine.retry import RetryPolicy
from ticketflow.metrics.definitions import TICKET_CONFLICTS, TICKET_TRANSITIONS
from ticketflow.tickets.callbacks import CallbackOutcome, EngineEventType, EngineNotification
from ticketflow.tickets.errors import (
    EngineRejectedError,
    EngineUnavailableError,
    InstanceAlreadyDecidedError,
    InvalidTransitionError,
    TicketConflictError,
    TicketNotFoundError,
    TicketValidationError,
)
from ticketflow.tickets.service import TicketService
from ticketflow.tickets.state import TicketEvent, TicketStatus


class RecordingPublisher:
    def __init__(self, failure: Exception | None = None) -> None:
        self.failure = failure
        self.published: list[tuple[str, dict]] = []

    async def publish(self, routing_key, payload):
        if self.failure is not None:
            raise self.failure
        self.published.append((routing_key, dict(payload)))

    async def close(self):
        return None


async def _submitted(service):
    ticket = await service.create_ticket(title="Laptop request", requester="alice")
    return await service.submit_ticket(ticket.id)


@pytest.mark.asyncio
async def test_create_ticket_starts_in_draft_without_engine_calls(service, engine):
    ticket = await service.create_ticket(title="Laptop request", requester="alice", assignee="bob")

    assert ticket.status is TicketStatus.DRAFT
    assert ticket.process_instance_id is None
    assert ticket.assignee == "bob"
    assert ticket.version == 1
    assert engine.started == []


@pytest.mark.asyncio
@pytest.mark.parametrize(("title", "requester"), [("", "alice"), ("Laptop", "   "), (None, None)])
async def test_create_ticket_requires_title_and_requester(service, title, requester):
    with pytest.raises(TicketValidationError):
        await service.create_ticket(title=title, requester=requester)


@pytest.mark.asyncio
async def test_happy_path_submit_then_approve(service, engine, registry):
    ticket = await service.create_ticket(title="Laptop request", requester="alice")

    submitted = await service.submit_ticket(ticket.id)
    assert submitted.status is TicketStatus.SUBMITTED
    assert submitted.process_instance_id == "pi-1"
    assert engine.started[0][0] == ticket.id
    assert engine.started[0][1]["requester"] == "alice"

    approved = await service.decide_ticket(ticket.id, approved=True)
    assert approved.status is TicketStatus.APPROVED
    assert engine.signal_calls == [("pi-1", True, None)]

    transitions = registry.counter(TICKET_TRANSITIONS, label_names=("event",))
    assert transitions.value({"event": "submit"}) == 1
    assert transitions.value({"event": "approve"}) == 1


@pytest.mark.asyncio
async def test_submit_leaves_ticket_untouched_when_engine_stays_unavailable(service, engine):
    ticket = await service.create_ticket(title="Laptop request", requester="alice")
    engine.start_failures = [EngineUnavailableError("down") for _ in range(3)]

    with pytest.raises(EngineUnavailableError):
        await service.submit_ticket(ticket.id)

    stored = await service.get_ticket(ticket.id)
    assert stored.status is TicketStatus.DRAFT
    assert stored.process_instance_id is None
    assert stored.version == 1
    assert engine.start_failures == []


@pytest.mark.asyncio
async def test_submit_recovers_from_transient_engine_failures(service, engine):
    ticket = await service.create_ticket(title="Laptop request", requester="alice")
    engine.start_failures = [EngineUnavailableError("blip"), EngineUnavailableError("blip")]

    submitted = await service.submit_ticket(ticket.id)

    assert submitted.status is TicketStatus.SUBMITTED
    assert submitted.process_instance_id == "pi-1"


@pytest.mark.asyncio
async def test_submit_does_not_retry_engine_rejections(service, engine):
    ticket = await service.create_ticket(title="Laptop request", requester="alice")
    engine.start_failures = [EngineRejectedError("bad variables"), EngineUnavailableError("unused")]

    with pytest.raises(EngineRejectedError):
        await service.submit_ticket(ticket.id)

    assert len(engine.start_failures) == 1
    assert (await service.get_ticket(ticket.id)).status is TicketStatus.DRAFT


@pytest.mark.asyncio
async def test_submit_from_submitted_is_invalid(service, engine):
    ticket = await _submitted(service)

    with pytest.raises(InvalidTransitionError):
        await service.submit_ticket(ticket.id)

    assert len(engine.started) == 1


@pytest.mark.asyncio
async def test_concurrent_submits_produce_one_instance_and_one_conflict(service, engine, registry):
    ticket = await service.create_ticket(title="Laptop request", requester="alice")

    results = await asyncio.gather(
        service.submit_ticket(ticket.id),
        service.submit_ticket(ticket.id),
        return_exceptions=True,
    )

    winners = [result for result in results if not isinstance(result, Exception)]
    losers = [result for result in results if isinstance(result, Exception)]
    assert len(winners) == 1
    assert len(losers) == 1
    assert isinstance(losers[0], TicketConflictError)

    stored = await service.get_ticket(ticket.id)
    assert stored.status is TicketStatus.SUBMITTED
    assert stored.process_instance_id == winners[0].process_instance_id
    # The loser's freshly started instance is cancelled rather than orphaned.
    assert engine.cancelled == [pid for pid in ("pi-1", "pi-2") if pid != stored.process_instance_id]
    conflicts = registry.counter(TICKET_CONFLICTS, label_names=("operation",))
    assert conflicts.value({"operation": "submit"}) == 1


@pytest.mark.asyncio
async def test_decide_on_draft_is_invalid_and_leaves_status(service, engine):
    ticket = await service.create_ticket(title="Laptop request", requester="alice")

    with pytest.raises(InvalidTransitionError):
        await service.decide_ticket(ticket.id, approved=True)

    assert (await service.get_ticket(ticket.id)).status is TicketStatus.DRAFT
    assert engine.signal_calls == []


@pytest.mark.asyncio
async def test_repeated_decision_does_not_signal_twice(service, engine):
    ticket = await _submitted(service)

    first = await service.decide_ticket(ticket.id, approved=True, comment="ok")
    second = await service.decide_ticket(ticket.id, approved=True, comment="ok")

    assert first.status is second.status is TicketStatus.APPROVED
    assert engine.signal_calls == [("pi-1", True, "ok")]


@pytest.mark.asyncio
async def test_already_decided_instance_stores_the_recorded_decision(service, engine):
    ticket = await _submitted(service)
    engine.decisions["pi-1"] = True

    result = await service.decide_ticket(ticket.id, approved=True)

    assert result.status is TicketStatus.APPROVED
    assert result.version == ticket.version + 1
    assert len(engine.signal_calls) == 1
    audit = await service.get_audit_log(ticket.id)
    assert audit[-1].event == TicketEvent.DECISION_APPROVED.value
    assert audit[-1].metadata == {"processInstanceId": "pi-1", "approved": "true", "source": "decide"}


@pytest.mark.asyncio
async def test_recorded_decision_wins_over_a_conflicting_request(service, engine):
    ticket = await _submitted(service)
    engine.decisions["pi-1"] = False

    result = await service.decide_ticket(ticket.id, approved=True)

    assert result.status is TicketStatus.REJECTED
    assert engine.decisions == {"pi-1": False}


@pytest.mark.asyncio
async def test_decision_whose_response_was_lost_is_stored_on_retry(service, engine):
    ticket = await _submitted(service)
    engine.lost_signal_responses = 1

    result = await service.decide_ticket(ticket.id, approved=True, comment="ok")

    assert result.status is TicketStatus.APPROVED
    assert len(engine.signal_calls) == 2
    assert engine.decisions == {"pi-1": True}


@pytest.mark.asyncio
async def test_decision_retries_transient_failures_only(service, engine):
    ticket = await _submitted(service)
    engine.signal_failures = [EngineUnavailableError("blip")]

    rejected = await service.decide_ticket(ticket.id, approved=False, comment="over budget")

    assert rejected.status is TicketStatus.REJECTED
    assert len(engine.signal_calls) == 2
    audit = await service.get_audit_log(ticket.id)
    assert audit[-1].event == TicketEvent.REJECT.value
    assert audit[-1].metadata["comment"] == "over budget"


@pytest.mark.asyncio
async def test_decision_survives_lost_write_race_after_engine_success(service, store, engine):
    ticket = await _submitted(service)
    original_update = store.update
    calls = {"count": 0}

    async def flaky_update(ticket_id, **kwargs):
        calls["count"] += 1
        if calls["count"] == 1:
            raise TicketConflictError("raced")
        return await original_update(ticket_id, **kwargs)

    store.update = flaky_update

    approved = await service.decide_ticket(ticket.id, approved=True)

    assert approved.status is TicketStatus.APPROVED
    assert len(engine.signal_calls) == 1


@pytest.mark.asyncio
async def test_resubmission_after_rejection_replaces_instance(service, engine):
    ticket = await _submitted(service)
    await service.decide_ticket(ticket.id, approved=False)

    resubmitted = await service.submit_ticket(ticket.id)

    assert resubmitted.status is TicketStatus.SUBMITTED
    assert resubmitted.process_instance_id == "pi-2"
    audit = await service.get_audit_log(ticket.id)
    assert audit[-1].metadata == {"processInstanceId": "pi-2", "previousProcessInstanceId": "pi-1"}


@pytest.mark.asyncio
async def test_update_ticket_only_edits_text_in_draft(service):
    ticket = await service.create_ticket(title="Laptop request", requester="alice")

    edited = await service.update_ticket(ticket.id, title="Laptop + dock", assignee="bob")
    assert edited.title == "Laptop + dock"
    assert edited.assignee == "bob"
    assert edited.version == 2

    await service.submit_ticket(ticket.id)
    with pytest.raises(InvalidTransitionError):
        await service.update_ticket(ticket.id, description="changed")

    reassigned = await service.update_ticket(ticket.id, assignee="carol")
    assert reassigned.assignee == "carol"
    cleared = await service.update_ticket(ticket.id, clear_assignee=True)
    assert cleared.assignee is None


@pytest.mark.asyncio
async def test_update_ticket_requires_changes(service):
    ticket = await service.create_ticket(title="Laptop request", requester="alice")

    with pytest.raises(TicketValidationError):
        await service.update_ticket(ticket.id)


@pytest.mark.asyncio
async def test_get_ticket_raises_for_unknown_id(service):
    with pytest.raises(TicketNotFoundError):
        await service.get_ticket("missing")


@pytest.mark.asyncio
async def test_list_tickets_is_in_creation_order(service):
    first = await service.create_ticket(title="First", requester="alice")
    second = await service.create_ticket(title="Second", requester="bob")

    tickets = await service.list_tickets()

    assert [ticket.id for ticket in tickets] == [first.id, second.id]


@pytest.mark.asyncio
async def test_sync_applies_completion_of_ended_instance(service, engine):
    ticket = await _submitted(service)
    await service.decide_ticket(ticket.id, approved=True)
    engine.states["pi-1"] = InstanceState(id="pi-1", business_key=ticket.id, status=InstanceStatus.COMPLETED)

    synced = await service.sync_ticket(ticket.id)

    assert synced.status is TicketStatus.COMPLETED
    events = [entry.event for entry in await service.get_audit_log(ticket.id)]
    assert events[-2:] == ["instance_advanced", "instance_completed"]


@pytest.mark.asyncio
async def test_sync_leaves_active_instance_alone(service, engine):
    ticket = await _submitted(service)
    engine.states["pi-1"] = InstanceState(id="pi-1", business_key=ticket.id, status=InstanceStatus.ACTIVE)

    synced = await service.sync_ticket(ticket.id)

    assert synced.status is TicketStatus.SUBMITTED
    assert synced.version == ticket.version


@pytest.mark.asyncio
async def test_already_decided_error_is_never_retried(service, engine):
    ticket = await _submitted(service)
    engine.signal_failures = [InstanceAlreadyDecidedError("done")]

    result = await service.decide_ticket(ticket.id, approved=True)

    assert len(engine.signal_calls) == 1
    assert result.status is TicketStatus.SUBMITTED


@pytest.mark.asyncio
async def test_sync_stores_decision_recorded_on_active_instance(service, engine):
    ticket = await _submitted(service)
    engine.decisions["pi-1"] = False
    engine.states["pi-1"] = InstanceState(id="pi-1", business_key=ticket.id, status=InstanceStatus.ACTIVE)

    synced = await service.sync_ticket(ticket.id)

    assert synced.status is TicketStatus.REJECTED
    audit = await service.get_audit_log(ticket.id)
    assert audit[-1].event == TicketEvent.DECISION_REJECTED.value
    assert audit[-1].metadata["source"] == "sync"


@pytest.mark.asyncio
async def test_sync_after_lost_decision_response_unblocks_processing(service, receiver, engine, registry):
    ticket = await _submitted(service)
    engine.lost_signal_responses = 1
    service_without_retry = TicketService(
        service.store,
        engine,
        retry_policy=RetryPolicy(max_attempts=1, initial_wait=0.0, max_wait=0.0),
        registry=registry,
    )

    with pytest.raises(EngineUnavailableError):
        await service_without_retry.decide_ticket(ticket.id, approved=True)
    assert (await service.get_ticket(ticket.id)).status is TicketStatus.SUBMITTED

    engine.states["pi-1"] = InstanceState(id="pi-1", business_key=ticket.id, status=InstanceStatus.ACTIVE)
    synced = await service.sync_ticket(ticket.id)
    result = await receiver.handle(
        EngineNotification(process_instance_id="pi-1", event_type=EngineEventType.INSTANCE_ADVANCED)
    )

    assert synced.status is TicketStatus.APPROVED
    assert result.outcome is CallbackOutcome.APPLIED
    assert result.ticket.status is TicketStatus.PROCESSING


@pytest.mark.asyncio
async def test_transitions_are_published_after_they_are_stored(store, engine, registry):
    publisher = RecordingPublisher()
    service = TicketService(
        store,
        engine,
        retry_policy=RetryPolicy(max_attempts=1, initial_wait=0.0, max_wait=0.0),
        registry=registry,
        publisher=publisher,
    )

    ticket = await service.create_ticket(title="Laptop request", requester="alice")
    await service.submit_ticket(ticket.id)
    await service.decide_ticket(ticket.id, approved=True)

    assert [key for key, _ in publisher.published] == ["ticket.created", "ticket.submitted", "ticket.decision"]
    payload = publisher.published[-1][1]
    assert payload["ticketId"] == ticket.id
    assert payload["status"] == "approved"
    assert payload["processInstanceId"] == "pi-1"
    assert payload["metadata"]["approved"] == "true"


@pytest.mark.asyncio
async def test_publisher_failures_do_not_fail_the_transition(store, engine, registry):
    publisher = RecordingPublisher(failure=ConnectionError("broker down"))
    service = TicketService(store, engine, registry=registry, publisher=publisher)

    ticket = await service.create_ticket(title="Laptop request", requester="alice")
    submitted = await service.submit_ticket(ticket.id)

    assert submitted.status is TicketStatus.SUBMITTED
    assert (await store.get(ticket.id)).status is TicketStatus.SUBMITTED
