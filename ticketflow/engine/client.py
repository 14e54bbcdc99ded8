"""Camunda 7 REST client used by the ticket orchestrator."""

from __future__ import annotations

import logging
from dataclasses import dataclass, field
from enum import Enum
from typing import Any, Mapping

import httpx

from ticketflow.core.logging import get_tracer
from ticketflow.metrics import MetricsRegistry, metrics_registry
from ticketflow.metrics.base import track_duration
from ticketflow.metrics.definitions import ENGINE_CALL_DURATION, ENGINE_CALLS
from ticketflow.tickets.errors import (
    EngineRejectedError,
    EngineUnavailableError,
    InstanceAlreadyDecidedError,
    InstanceNotFoundError,
)

logger = logging.getLogger(__name__)

_TRANSIENT_STATUS_CODES = frozenset({408, 429})


class InstanceStatus(str, Enum):
    ACTIVE = "active"
    SUSPENDED = "suspended"
    COMPLETED = "completed"
    CANCELLED = "cancelled"


_HISTORY_STATES: Mapping[str, InstanceStatus] = {
    "ACTIVE": InstanceStatus.ACTIVE,
    "SUSPENDED": InstanceStatus.SUSPENDED,
    "COMPLETED": InstanceStatus.COMPLETED,
    "EXTERNALLY_TERMINATED": InstanceStatus.CANCELLED,
    "INTERNALLY_TERMINATED": InstanceStatus.CANCELLED,
}


@dataclass(frozen=True, slots=True)
class InstanceState:
    """Snapshot of a process instance as reported by the engine history."""

    id: str
    business_key: str | None
    status: InstanceStatus

    @property
    def ended(self) -> bool:
        return self.status in (InstanceStatus.COMPLETED, InstanceStatus.CANCELLED)


@dataclass(frozen=True, slots=True)
class ExternalTask:
    """A locked external task fetched from a topic."""

    id: str
    process_instance_id: str
    activity_id: str
    topic_name: str
    business_key: str | None
    variables: dict[str, Any] = field(default_factory=dict)


def wrap_variables(variables: Mapping[str, Any] | None) -> dict[str, dict[str, Any]]:
    """Convert plain values into Camunda's typed variable representation."""

    wrapped: dict[str, dict[str, Any]] = {}
    for name, value in (variables or {}).items():
        if value is None:
            wrapped[name] = {"value": None, "type": "Null"}
        elif isinstance(value, bool):
            wrapped[name] = {"value": value, "type": "Boolean"}
        elif isinstance(value, int):
            wrapped[name] = {"value": value, "type": "Long"}
        elif isinstance(value, float):
            wrapped[name] = {"value": value, "type": "Double"}
        else:
            wrapped[name] = {"value": str(value), "type": "String"}
    return wrapped


def _unwrap_variables(raw: Any) -> dict[str, Any]:
    if not isinstance(raw, Mapping):
        return {}
    return {
        str(name): item.get("value") if isinstance(item, Mapping) else item
        for name, item in raw.items()
    }


def _error_message(response: httpx.Response) -> str:
    try:
        data = response.json()
    except ValueError:
        return response.text or response.reason_phrase
    if isinstance(data, Mapping) and data.get("message"):
        return str(data["message"])
    return response.reason_phrase


class ProcessEngineClient:
    """Thin async wrapper over the Camunda REST API.

    Every call maps transport failures, timeouts and 5xx/408/429 responses to
    :class:`EngineUnavailableError`; the caller decides whether to retry.
    """

    def __init__(
        self,
        base_url: str,
        *,
        process_key: str,
        decision_message: str = "TicketDecision",
        timeout: float = 15.0,
        http_client: httpx.AsyncClient | None = None,
        registry: MetricsRegistry | None = None,
    ) -> None:
        self._process_key = process_key
        self._decision_message = decision_message
        self._owns_client = http_client is None
        self._http = http_client or httpx.AsyncClient(
            base_url=base_url.rstrip("/"),
            timeout=timeout,
            headers={"Accept": "application/json"},
        )
        registry = registry or metrics_registry
        self._calls = registry.counter(ENGINE_CALLS, label_names=("operation", "outcome"))
        self._durations = registry.distribution(ENGINE_CALL_DURATION, label_names=("operation",))
        self._tracer = get_tracer()

    async def close(self) -> None:
        if self._owns_client:
            await self._http.aclose()

    async def _request(self, operation: str, method: str, path: str, **kwargs: Any) -> httpx.Response:
        labels = {"operation": operation}
        with self._tracer.start_as_current_span(f"engine.{operation}") as span:
            span.set_attribute("http.method", method)
            span.set_attribute("engine.path", path)
            try:
                with track_duration(self._durations, labels=labels):
                    response = await self._http.request(method, path, **kwargs)
            except httpx.HTTPError as exc:
                self._calls.inc(labels={"operation": operation, "outcome": "unavailable"})
                raise EngineUnavailableError(f"Engine request {operation} failed: {exc}") from exc
            span.set_attribute("http.status_code", response.status_code)

        if response.status_code >= 500 or response.status_code in _TRANSIENT_STATUS_CODES:
            self._calls.inc(labels={"operation": operation, "outcome": "unavailable"})
            raise EngineUnavailableError(
                f"Engine request {operation} returned {response.status_code}: {_error_message(response)}"
            )
        outcome = "ok" if response.status_code < 400 else f"http_{response.status_code}"
        self._calls.inc(labels={"operation": operation, "outcome": outcome})
        return response

    async def start_instance(self, ticket_id: str, variables: Mapping[str, Any] | None = None) -> str:
        """Start a process instance keyed by ``ticket_id`` and return its id."""

        response = await self._request(
            "start_instance",
            "POST",
            f"/process-definition/key/{self._process_key}/start",
            json={"businessKey": ticket_id, "variables": wrap_variables(variables)},
        )
        if response.status_code >= 400:
            raise EngineRejectedError(f"Engine refused to start an instance: {_error_message(response)}")
        instance_id = response.json().get("id")
        if not instance_id:
            raise EngineRejectedError("Engine response did not include a process instance id")
        logger.info("Started process instance %s for ticket %s", instance_id, ticket_id)
        return str(instance_id)

    async def signal_decision(self, process_instance_id: str, approved: bool, comment: str | None = None) -> None:
        """Correlate the decision message to the instance exactly once."""

        recorded = await self.recorded_decision(process_instance_id)
        if recorded is not None:
            raise InstanceAlreadyDecidedError(
                f"Process instance {process_instance_id} already has a decision", approved=recorded
            )

        variables: dict[str, Any] = {"approved": approved}
        if comment:
            variables["comment"] = comment
        response = await self._request(
            "signal_decision",
            "POST",
            "/message",
            json={
                "messageName": self._decision_message,
                "processInstanceId": process_instance_id,
                "processVariables": wrap_variables(variables),
            },
        )
        if response.status_code < 400:
            logger.info("Recorded decision approved=%s on instance %s", approved, process_instance_id)
            return
        if response.status_code == 400:
            # No execution is waiting for the message: either gone or past the decision.
            await self.query_state(process_instance_id)
            raise InstanceAlreadyDecidedError(
                f"Process instance {process_instance_id} is not awaiting a decision: {_error_message(response)}",
                approved=await self.recorded_decision(process_instance_id),
            )
        if response.status_code == 404:
            raise InstanceNotFoundError(f"Process instance {process_instance_id} not found")
        raise EngineRejectedError(f"Engine refused the decision: {_error_message(response)}")

    async def recorded_decision(self, process_instance_id: str) -> bool | None:
        """Return the ``approved`` variable stored on the instance, or None if undecided."""

        response = await self._request(
            "decision_lookup",
            "GET",
            "/history/variable-instance",
            params={"processInstanceId": process_instance_id, "variableName": "approved"},
        )
        if response.status_code >= 400:
            raise EngineRejectedError(f"Engine refused the decision lookup: {_error_message(response)}")
        payload = response.json()
        if not isinstance(payload, list) or not payload:
            return None
        value = payload[0].get("value") if isinstance(payload[0], dict) else None
        if isinstance(value, bool):
            return value
        if isinstance(value, str) and value.strip().lower() in {"true", "false"}:
            return value.strip().lower() == "true"
        logger.warning("Unreadable approved variable on instance %s: %r", process_instance_id, value)
        return None

    async def query_state(self, process_instance_id: str) -> InstanceState:
        response = await self._request(
            "query_state", "GET", f"/history/process-instance/{process_instance_id}"
        )
        if response.status_code == 404:
            raise InstanceNotFoundError(f"Process instance {process_instance_id} not found")
        if response.status_code >= 400:
            raise EngineRejectedError(f"Engine refused the state query: {_error_message(response)}")
        payload = response.json()
        raw_state = str(payload.get("state", "")).upper()
        status = _HISTORY_STATES.get(raw_state)
        if status is None:
            raise EngineRejectedError(f"Unknown process instance state {raw_state!r}")
        business_key = payload.get("businessKey")
        return InstanceState(
            id=str(payload.get("id") or process_instance_id),
            business_key=None if business_key is None else str(business_key),
            status=status,
        )

    async def cancel_instance(self, process_instance_id: str) -> None:
        response = await self._request(
            "cancel_instance",
            "DELETE",
            f"/process-instance/{process_instance_id}",
            params={"skipCustomListeners": "true"},
        )
        if response.status_code == 404:
            logger.info("Process instance %s already gone", process_instance_id)
            return
        if response.status_code >= 400:
            raise EngineRejectedError(f"Engine refused to cancel the instance: {_error_message(response)}")
        logger.info("Cancelled process instance %s", process_instance_id)

    async def deploy_process(self, name: str, bpmn: bytes) -> str:
        """Deploy a BPMN definition; duplicates are filtered by the engine."""

        response = await self._request(
            "deploy_process",
            "POST",
            "/deployment/create",
            data={"deployment-name": name, "enable-duplicate-filtering": "true"},
            files={"data": (f"{name}.bpmn", bpmn, "application/octet-stream")},
        )
        if response.status_code >= 400:
            raise EngineRejectedError(f"Engine refused the deployment: {_error_message(response)}")
        return str(response.json().get("id", ""))

    async def fetch_and_lock(
        self,
        worker_id: str,
        topic: str,
        *,
        lock_duration: float,
        max_tasks: int = 5,
    ) -> list[ExternalTask]:
        response = await self._request(
            "fetch_and_lock",
            "POST",
            "/external-task/fetchAndLock",
            json={
                "workerId": worker_id,
                "maxTasks": max_tasks,
                "usePriority": True,
                "topics": [{"topicName": topic, "lockDuration": int(lock_duration * 1000)}],
            },
        )
        if response.status_code >= 400:
            raise EngineRejectedError(f"Engine refused fetchAndLock: {_error_message(response)}")
        tasks: list[ExternalTask] = []
        for item in response.json() or []:
            business_key = item.get("businessKey")
            tasks.append(
                ExternalTask(
                    id=str(item["id"]),
                    process_instance_id=str(item.get("processInstanceId", "")),
                    activity_id=str(item.get("activityId", "")),
                    topic_name=str(item.get("topicName", topic)),
                    business_key=None if business_key is None else str(business_key),
                    variables=_unwrap_variables(item.get("variables")),
                )
            )
        return tasks

    async def complete_external_task(
        self, worker_id: str, task_id: str, variables: Mapping[str, Any] | None = None
    ) -> None:
        response = await self._request(
            "complete_external_task",
            "POST",
            f"/external-task/{task_id}/complete",
            json={"workerId": worker_id, "variables": wrap_variables(variables)},
        )
        if response.status_code >= 400:
            raise EngineRejectedError(f"Engine refused to complete task {task_id}: {_error_message(response)}")
