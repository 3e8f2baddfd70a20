from __future__ import annotations

"""Prometheus metrics for the promptsmith API and pipeline.

``REQUEST_LATENCY`` is recorded by an HTTP middleware per method/path/status;
``STAGE_DURATION`` by the orchestrator for every stage run.
"""

import time
from typing import Awaitable, Callable

from prometheus_client import Histogram
from starlette.requests import Request
from starlette.responses import Response

REQUEST_LATENCY = Histogram(
    "promptsmith_request_latency_seconds",
    "HTTP request latency in seconds",
    labelnames=("method", "path", "status"),
    buckets=(0.01, 0.025, 0.05, 0.1, 0.25, 0.5, 1.0, 2.0, 5.0, 10.0),
)

# Generation stages stream for tens of seconds; buckets reach a few minutes.
STAGE_DURATION = Histogram(
    "promptsmith_stage_duration_seconds",
    "Duration of a pipeline stage run in seconds",
    labelnames=("stage", "outcome"),
    buckets=(0.5, 1.0, 2.5, 5.0, 10.0, 20.0, 40.0, 60.0, 120.0, 300.0),
)


def observe_stage(stage: str, outcome: str, elapsed: float) -> None:
    STAGE_DURATION.labels(stage=stage, outcome=outcome).observe(max(0.0, elapsed))


def sanitize_path(path: str) -> str:
    """Collapse ``/sessions/{id}/...`` into ``/sessions/{id}/<action>`` labels."""
    if not path:
        return "/"
    segs = [s for s in path.split("?")[0].split("/") if s]
    if not segs:
        return "/"
    if segs[0] == "sessions" and len(segs) > 1:
        rest = segs[2:]
        # Drop turn ids: /sessions/{id}/messages/{turn}/regenerate -> /sessions/{id}/messages/regenerate
        if rest[:1] == ["messages"] and len(rest) > 1:
            rest = ["messages"] + rest[2:]
        return "/" + "/".join(["sessions", "{id}"] + rest)
    return "/" + segs[0]


def metrics_middleware_factory() -> Callable[[Request, Callable[[Request], Awaitable[Response]]], Awaitable[Response]]:
    async def middleware(request: Request, call_next: Callable[[Request], Awaitable[Response]]) -> Response:
        if request.url.path.startswith("/metrics"):
            return await call_next(request)
        start = time.perf_counter()
        response = await call_next(request)
        elapsed = time.perf_counter() - start
        REQUEST_LATENCY.labels(
            method=request.method,
            path=sanitize_path(request.url.path),
            status=str(response.status_code),
        ).observe(elapsed)
        return response

    return middleware
