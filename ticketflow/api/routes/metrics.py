from fastapi import APIRouter, Request
from fastapi.responses import PlainTextResponse

from ticketflow.metrics import PrometheusExporter, metrics_registry

router = APIRouter(tags=["health"])


@router.get("/metrics", response_class=PlainTextResponse, summary="Prometheus metrics")
async def metrics(request: Request) -> PlainTextResponse:
    registry = getattr(request.app.state, "metrics_registry", None) or metrics_registry
    exporter = PrometheusExporter(registry)
    return PlainTextResponse(exporter.build_payload(), media_type=exporter.content_type)
