from __future__ import annotations
import os
from prometheus_client import (
    Counter,
    Histogram,
    generate_latest,
    CONTENT_TYPE_LATEST,
    REGISTRY,  # Use default registry
)

PROM_ENABLED = os.getenv("PROMETHEUS_ENABLED", "true").lower() == "true"

EXECUTIONS_TOTAL = Counter(
    "rollup_executions_total",
    "Rollup executions by terminal status",
    ["status"],
)
PHASE_LATENCY = Histogram(
    "rollup_phase_latency_seconds",
    "Rollup execution phase latency (s)",
    ["phase"],
    buckets=(0.01, 0.05, 0.1, 0.5, 1, 5, 15, 60, 300),
)
MATCHES_TOTAL = Counter(
    "rollup_matches_total",
    "Accepted cross-repository matches by winning strategy",
    ["strategy"],
)
MERGE_CONFLICTS = Counter(
    "rollup_merge_conflicts_total",
    "Metadata conflicts detected while merging",
    ["resolution"],
)
BLAST_RADIUS_LATENCY = Histogram(
    "rollup_blast_radius_seconds",
    "Blast radius query latency (s)",
    ["cached"],
    buckets=(0.001, 0.01, 0.05, 0.1, 0.5, 1, 5),
)


def metrics_app():
    from starlette.responses import Response, PlainTextResponse
    from starlette.applications import Starlette
    from starlette.routing import Route

    async def metrics(_):
        if not PROM_ENABLED:
            return PlainTextResponse("Prometheus disabled", status_code=404)
        data = generate_latest(REGISTRY)  # Uses default registry
        return Response(data, media_type=CONTENT_TYPE_LATEST)

    return Starlette(routes=[Route("/", metrics)])
