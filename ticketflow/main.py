from __future__ import annotations

import asyncio
import logging
from contextlib import asynccontextmanager
from pathlib import Path

import asyncpg
from fastapi import FastAPI

from ticketflow.api.routes import callbacks, metrics, ping, tickets
from ticketflow.core.config import Settings, get_settings
from ticketflow.core.logging import configure_logging, init_tracer, shutdown_tracer
from ticketflow.engine.client import ProcessEngineClient
from ticketflow.engine.retry import RetryPolicy
from ticketflow.engine.worker import ExternalTaskWorker
from ticketflow.metrics import metrics_registry
from ticketflow.tickets.callbacks import CallbackReceiver
from ticketflow.tickets.errors import TicketServiceError
from ticketflow.tickets.events import NoopEventPublisher, RabbitMQEventPublisher, TicketEventPublisher
from ticketflow.tickets.repository import InMemoryTicketRepository, TicketRepository, TicketStore
from ticketflow.tickets.service import TicketService

logger = logging.getLogger(__name__)


async def _deploy_definition(engine: ProcessEngineClient, bpmn_path: str) -> None:
    path = Path(bpmn_path)
    try:
        deployment_id = await engine.deploy_process(path.stem, path.read_bytes())
    except (OSError, TicketServiceError) as exc:
        logger.warning("Deploying %s failed: %s", path, exc)
        return
    logger.info("Deployed %s to the process engine (deployment %s)", path.name, deployment_id)


def build_services(
    settings: Settings,
    store: TicketStore,
    engine: ProcessEngineClient,
    publisher: TicketEventPublisher | None = None,
) -> tuple[TicketService, CallbackReceiver]:
    retry_policy = RetryPolicy(
        max_attempts=settings.engine_max_attempts,
        initial_wait=settings.engine_backoff_initial,
        max_wait=settings.engine_backoff_max,
    )
    service = TicketService(
        store, engine, retry_policy=retry_policy, registry=metrics_registry, publisher=publisher
    )
    receiver = CallbackReceiver(
        service, conflict_retries=settings.callback_conflict_retries, registry=metrics_registry
    )
    return service, receiver


async def _open_publisher(settings: Settings) -> TicketEventPublisher:
    if not settings.event_broker_url:
        return NoopEventPublisher()
    publisher = RabbitMQEventPublisher(settings.event_broker_url, exchange=settings.event_exchange)
    await publisher.connect()
    return publisher


async def _stop_worker(worker_task: asyncio.Task[None]) -> None:
    """Cancel the worker and wait for it; a worker that already died is only logged."""

    worker_task.cancel()
    try:
        await worker_task
    except asyncio.CancelledError:
        pass
    except Exception:
        logger.exception("External task worker stopped with an error")


@asynccontextmanager
async def lifespan(app: FastAPI):  # pragma: no cover - executed by framework
    settings = get_settings()
    app.state.logger = configure_logging(settings)
    tracer_provider = init_tracer(settings)

    pool: asyncpg.Pool | None = None
    if settings.ticket_store_backend == "postgres":
        pool = await asyncpg.create_pool(
            dsn=settings.postgres_dsn,
            min_size=settings.postgres_pool_min_size,
            max_size=settings.postgres_pool_max_size,
        )
        store: TicketStore = TicketRepository(pool)
    else:
        logger.warning("Using the in-memory ticket store; data is lost on restart")
        store = InMemoryTicketRepository()

    engine = ProcessEngineClient(
        settings.engine_base_url,
        process_key=settings.engine_process_key,
        decision_message=settings.engine_decision_message,
        timeout=settings.engine_timeout,
        registry=metrics_registry,
    )
    publisher = await _open_publisher(settings)
    service, receiver = build_services(settings, store, engine, publisher)
    await service.ensure_schema()
    if settings.engine_bpmn_path:
        await _deploy_definition(engine, settings.engine_bpmn_path)

    app.state.ticket_service = service
    app.state.callback_receiver = receiver
    app.state.metrics_registry = metrics_registry

    worker_task: asyncio.Task[None] | None = None
    if settings.engine_worker_enabled:
        worker = ExternalTaskWorker(
            engine,
            receiver,
            topic=settings.engine_worker_topic,
            processing_activity=settings.engine_processing_activity,
            interval=settings.engine_worker_interval,
            lock_duration=settings.engine_worker_lock_seconds,
        )
        worker_task = asyncio.create_task(worker.run(), name="external-task-worker")

    try:
        yield
    finally:
        if worker_task is not None:
            await _stop_worker(worker_task)
        await publisher.close()
        await engine.close()
        if pool is not None:
            await pool.close()
        shutdown_tracer(tracer_provider)
        app.state.ticket_service = None
        app.state.callback_receiver = None


def create_app() -> FastAPI:
    settings = get_settings()
    app = FastAPI(title=settings.app_name, lifespan=lifespan)
    app.include_router(ping.router)
    app.include_router(metrics.router)
    app.include_router(tickets.router)
    app.include_router(callbacks.router)
    return app


app = create_app()
