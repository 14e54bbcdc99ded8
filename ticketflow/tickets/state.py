from __future__ import annotations

from dataclasses import dataclass
from enum import Enum
from typing import Mapping

from .errors import InvalidTransitionError


class TicketStatus(str, Enum):
    """Supported states for a ticket's lifecycle."""

    DRAFT = "draft"
    SUBMITTED = "submitted"
    APPROVED = "approved"
    REJECTED = "rejected"
    PROCESSING = "processing"
    COMPLETED = "completed"
    CANCELLED = "cancelled"


class TicketEvent(str, Enum):
    """Events that move a ticket between statuses."""

    SUBMIT = "submit"
    APPROVE = "approve"
    REJECT = "reject"
    DECISION_APPROVED = "decision_approved"
    DECISION_REJECTED = "decision_rejected"
    INSTANCE_ADVANCED = "instance_advanced"
    INSTANCE_COMPLETED = "instance_completed"
    INSTANCE_CANCELLED = "instance_cancelled"


class SideEffect(str, Enum):
    """Engine interaction the orchestrator must perform before persisting a transition."""

    NONE = "none"
    START_INSTANCE = "start_instance"
    SIGNAL_DECISION = "signal_decision"


@dataclass(frozen=True, slots=True)
class Transition:
    source: TicketStatus
    target: TicketStatus
    event: TicketEvent
    side_effect: SideEffect = SideEffect.NONE


@dataclass(frozen=True, slots=True)
class _Rule:
    sources: frozenset[TicketStatus]
    target: TicketStatus
    side_effect: SideEffect = SideEffect.NONE


_TERMINAL: frozenset[TicketStatus] = frozenset({TicketStatus.COMPLETED, TicketStatus.CANCELLED})
_NON_TERMINAL: frozenset[TicketStatus] = frozenset(set(TicketStatus) - _TERMINAL)


class TicketStateMachine:
    """Pure transition table for the approval workflow.

    ``apply`` never performs I/O and never retries; callers run the returned
    side effect and persist the target status themselves.
    """

    _RULES: Mapping[TicketEvent, _Rule] = {
        TicketEvent.SUBMIT: _Rule(
            frozenset({TicketStatus.DRAFT, TicketStatus.REJECTED}),
            TicketStatus.SUBMITTED,
            SideEffect.START_INSTANCE,
        ),
        TicketEvent.APPROVE: _Rule(
            frozenset({TicketStatus.SUBMITTED}), TicketStatus.APPROVED, SideEffect.SIGNAL_DECISION
        ),
        TicketEvent.REJECT: _Rule(
            frozenset({TicketStatus.SUBMITTED}), TicketStatus.REJECTED, SideEffect.SIGNAL_DECISION
        ),
        TicketEvent.DECISION_APPROVED: _Rule(frozenset({TicketStatus.SUBMITTED}), TicketStatus.APPROVED),
        TicketEvent.DECISION_REJECTED: _Rule(frozenset({TicketStatus.SUBMITTED}), TicketStatus.REJECTED),
        TicketEvent.INSTANCE_ADVANCED: _Rule(frozenset({TicketStatus.APPROVED}), TicketStatus.PROCESSING),
        TicketEvent.INSTANCE_COMPLETED: _Rule(frozenset({TicketStatus.PROCESSING}), TicketStatus.COMPLETED),
        TicketEvent.INSTANCE_CANCELLED: _Rule(_NON_TERMINAL, TicketStatus.CANCELLED),
    }

    @classmethod
    def initial_state(cls) -> TicketStatus:
        return TicketStatus.DRAFT

    @classmethod
    def is_terminal(cls, status: TicketStatus) -> bool:
        return status in _TERMINAL

    @classmethod
    def can_apply(cls, status: TicketStatus, event: TicketEvent) -> bool:
        return status in cls._RULES[event].sources

    @classmethod
    def allowed_events(cls, status: TicketStatus) -> list[TicketEvent]:
        return [event for event, rule in cls._RULES.items() if status in rule.sources]

    @classmethod
    def target_of(cls, event: TicketEvent) -> TicketStatus:
        return cls._RULES[event].target

    @classmethod
    def apply(cls, status: TicketStatus, event: TicketEvent) -> Transition:
        rule = cls._RULES[event]
        if status not in rule.sources:
            raise InvalidTransitionError(f"Cannot apply {event.value} to a ticket in status {status.value}")
        return Transition(source=status, target=rule.target, event=event, side_effect=rule.side_effect)

    @classmethod
    def is_pending(cls, status: TicketStatus, event: TicketEvent) -> bool:
        """Whether ``event`` may become applicable later without a resubmission.

        True when one of the event's source statuses is reachable from
        ``status`` through decision and engine edges. Used to tell a callback
        that arrived early from one that is stale.
        """

        if cls.can_apply(status, event):
            return False
        sources = cls._RULES[event].sources
        seen: set[TicketStatus] = set()
        frontier = [status]
        while frontier:
            current = frontier.pop()
            for candidate_event, rule in cls._RULES.items():
                if candidate_event is TicketEvent.SUBMIT or current not in rule.sources:
                    continue
                if rule.target in sources:
                    return True
                if rule.target not in seen:
                    seen.add(rule.target)
                    frontier.append(rule.target)
        return False
