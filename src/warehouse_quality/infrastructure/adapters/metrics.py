import time

from prometheus_client import CollectorRegistry, Counter, Histogram
from starlette.middleware.base import BaseHTTPMiddleware
from starlette.requests import Request
from starlette.responses import Response

registry = CollectorRegistry()

run_counter = Counter(
    "dq_runs_total", "Total validation runs", ["outcome"], registry=registry
)

rule_counter = Counter(
    "dq_rules_evaluated_total",
    "Rules evaluated, by kind and final status",
    ["kind", "status"],
    registry=registry,
)

violation_counter = Counter(
    "dq_violations_total",
    "Violations found, by dataset and severity",
    ["dataset", "severity"],
    registry=registry,
)

rule_duration = Histogram(
    "dq_rule_duration_seconds",
    "Wall time of one rule evaluation",
    ["kind"],
    registry=registry,
)

endpoint_counter = Counter(
    "dq_endpoint_calls_total",
    "HTTP calls by route",
    ["endpoint", "method", "status_code"],
    registry=registry,
)

endpoint_latency = Histogram(
    "dq_endpoint_seconds", "HTTP handling time by route", ["endpoint"], registry=registry
)


def _route(request: Request) -> str:
    route = request.scope.get("route")
    return getattr(route, "path", request.url.path)


class PrometheusMiddleware(BaseHTTPMiddleware):
    async def dispatch(self, request: Request, call_next) -> Response:
        started = time.perf_counter()
        response = await call_next(request)
        endpoint = _route(request)
        endpoint_latency.labels(endpoint=endpoint).observe(time.perf_counter() - started)
        endpoint_counter.labels(
            endpoint=endpoint, method=request.method, status_code=response.status_code
        ).inc()
        return response
