import os
from pathlib import Path

from fastapi import FastAPI, HTTPException
from prometheus_client import generate_latest
from starlette.responses import PlainTextResponse, Response

from warehouse_quality.application.use_cases.run_checks import RunChecks
from warehouse_quality.domain.errors import ConfigurationError
from warehouse_quality.infrastructure.adapters.metrics import PrometheusMiddleware, registry
from warehouse_quality.infrastructure.constants import INFRA_PATH, RULES_PATH
from warehouse_quality.infrastructure.repositories.clickhouse_repository import (
    ClickHouseRepository,
)
from warehouse_quality.infrastructure.serializers.report_serializer import ReportSerializer

app = FastAPI(title="Warehouse Quality")

app.add_middleware(PrometheusMiddleware)


@app.on_event("startup")
def bootstrap() -> None:
    config_path = Path(os.environ.get("DQ_CONFIG", INFRA_PATH))
    app.state.checks = RunChecks.from_paths(
        catalog_path=Path(os.environ.get("DQ_CATALOG", RULES_PATH)),
        source=os.environ.get("DQ_SOURCE", "clickhouse"),
        config_path=config_path if config_path.is_file() else None,
    )


@app.post("/run")
def run_checks(persist: bool = False) -> Response:
    checks: RunChecks = app.state.checks
    try:
        report = checks.execute(persist=persist)
    except ConfigurationError as exc:
        raise HTTPException(status_code=400, detail=str(exc)) from exc
    return Response(ReportSerializer.to_json(report), media_type="application/json")


@app.get("/catalog")
def catalog() -> dict[str, object]:
    checks: RunChecks = app.state.checks
    return {
        "name": checks.catalog.name,
        "datasets": list(checks.catalog.datasets()),
        "rules": [
            {
                "id": rule.id,
                "dataset": rule.dataset,
                "kind": rule.kind.value,
                "severity": rule.severity.value,
                "description": rule.description,
            }
            for rule in checks.catalog.rules
        ],
    }


@app.get("/reports")
def list_reports() -> list[dict[str, object]]:
    accessor = app.state.checks.accessor
    if not isinstance(accessor, ClickHouseRepository):
        raise HTTPException(status_code=404, detail="reports are only stored in clickhouse")
    frame = accessor.list_reports()
    return frame.to_dict(orient="records")


@app.get("/metrics")
def metrics() -> PlainTextResponse:
    return PlainTextResponse(
        generate_latest(registry), media_type="text/plain; version=0.0.4"
    )
