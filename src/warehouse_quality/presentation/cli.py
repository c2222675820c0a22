from __future__ import annotations

import sys
from pathlib import Path
from typing import Optional

import typer
from loguru import logger

from warehouse_quality.application.use_cases.run_checks import RunChecks
from warehouse_quality.domain.errors import QualityError
from warehouse_quality.domain.models.report import ValidationReport
from warehouse_quality.infrastructure.serializers.report_serializer import ReportSerializer

EXIT_PASS = 0
EXIT_VIOLATIONS = 1
EXIT_ERROR = 2

app = typer.Typer(add_completion=False)


def exit_code(report: ValidationReport) -> int:
    if report.partial or report.has_errors:
        return EXIT_ERROR
    return EXIT_PASS if report.is_pass else EXIT_VIOLATIONS


@app.command()
def run_checks(
    catalog: Path = typer.Option(..., exists=True, dir_okay=False, help="Rule catalog (.toml or .yaml)"),
    dataset_source: str = typer.Option(..., help="Directory of csv/parquet files or clickhouse://..."),
    config: Optional[Path] = typer.Option(None, exists=True, dir_okay=False, help="Path to infrastructure.toml"),
    output: Optional[Path] = typer.Option(None, help="Write the JSON report here"),
    violations_csv: Optional[Path] = typer.Option(None, help="Write kept violations as CSV here"),
    max_workers: Optional[int] = typer.Option(None, min=1, help="Rules evaluated in parallel"),
    timeout: Optional[float] = typer.Option(None, min=0.001, help="Run timeout in seconds"),
    persist: bool = typer.Option(False, help="Save the report to ClickHouse"),
) -> None:
    try:
        checks = RunChecks.from_paths(catalog, dataset_source, config)
        logger.remove()
        logger.add(sys.stderr, level=checks.config.logging.level)
        report = checks.execute(max_workers=max_workers, timeout=timeout, persist=persist)
    except QualityError as exc:
        logger.error("{}", exc)
        typer.echo(f"error: {exc}", err=True)
        raise typer.Exit(EXIT_ERROR)

    if output:
        ReportSerializer.write_json(report, output)
    else:
        typer.echo(ReportSerializer.to_json(report, indent=2))
    if violations_csv:
        ReportSerializer.write_csv(report, violations_csv)

    code = exit_code(report)
    typer.echo(
        f"{len(report.outcomes)} rules, {report.total_violations} violations, "
        f"pass={report.is_pass}, partial={report.partial}",
        err=True,
    )
    raise typer.Exit(code)


if __name__ == "__main__":
    app()
