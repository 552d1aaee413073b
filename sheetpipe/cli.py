"""
Command-line interface for SheetPipe.

Usage:
    sheetpipe run -i sales.xlsx -o east.xlsx --filter region=East
    sheetpipe run -i q1.xlsx -i q2.xlsx -o year.xlsx --config stages.json
    sheetpipe validate --config stages.json
    sheetpipe inspect sales.xlsx

Exit codes:
    0  success
    2  user error (bad arguments, invalid configuration)
    1  processing failure (read, transform or write)
"""

import json
import sys
from pathlib import Path
from typing import Any

import click

from sheetpipe import __version__
from sheetpipe.config import settings
from sheetpipe.exceptions.pipeline_exceptions import SheetPipeError
from sheetpipe.services.events import LoggingObserver
from sheetpipe.services.pipeline_service import PipelineService
from sheetpipe.utils.logging import configure_logging

EXIT_OK = 0
EXIT_FAILURE = 1
EXIT_USAGE = 2

USER_ERROR_CODES = {"VALIDATION_ERROR", "FILE_NOT_FOUND"}


def load_stage_file(path: str) -> list[Any]:
    """
    Load stage descriptors from a JSON file.

    The file holds either a list of descriptors or an object with a
    "stages" list.

    Raises:
        click.BadParameter: If the file is not valid JSON of that shape.
    """
    try:
        data = json.loads(Path(path).read_text(encoding="utf-8"))
    except (OSError, json.JSONDecodeError) as e:
        raise click.BadParameter(f"cannot load {path}: {e}", param_hint="--config") from e
    if isinstance(data, dict) and "stages" in data:
        data = data["stages"]
    if not isinstance(data, list):
        raise click.BadParameter(
            "expected a list of stages or an object with a 'stages' list",
            param_hint="--config",
        )
    return data


def parse_filter(expression: str) -> dict[str, Any]:
    """
    Turn "COLUMN=VALUE" into a filterRows stage.

    VALUE is read as JSON when possible, so ``amt=10`` compares with the
    number 10 and ``region=East`` with the text "East".
    """
    column, sep, raw = expression.partition("=")
    if not sep or not column:
        raise click.BadParameter(f"expected COLUMN=VALUE, got {expression!r}", param_hint="--filter")
    try:
        value = json.loads(raw)
    except json.JSONDecodeError:
        value = raw
    if isinstance(value, (dict, list)) or value is None:
        value = raw
    return {"op": "filterRows", "predicate": {"column": column, "eq": value}}


def parse_stage(text: str) -> dict[str, Any]:
    try:
        stage = json.loads(text)
    except json.JSONDecodeError as e:
        raise click.BadParameter(f"invalid JSON: {e}", param_hint="--stage") from e
    if not isinstance(stage, dict):
        raise click.BadParameter("a stage must be a JSON object", param_hint="--stage")
    return stage


def echo_error(error: dict[str, Any]) -> None:
    click.echo(f"Error [{error.get('error_code')}]: {error.get('message')}", err=True)
    for entry in (error.get("details") or {}).get("errors", []):
        location = ".".join(str(part) for part in entry.get("loc", []))
        click.echo(f"  - {location}: {entry.get('msg')}", err=True)


@click.group()
@click.version_option(__version__, prog_name="sheetpipe")
@click.option("--verbose", "-v", is_flag=True, help="Log progress at DEBUG level")
@click.pass_context
def cli(ctx: click.Context, verbose: bool) -> None:
    """Read, transform and write Excel workbooks."""
    configure_logging("DEBUG" if verbose else settings.log_level)
    service = PipelineService()
    if verbose:
        LoggingObserver().attach(service.bus)
    ctx.obj = service


@cli.command("run")
@click.option("--input", "-i", "inputs", multiple=True, required=True, help="Input workbook (repeatable)")
@click.option("--output", "-o", required=True, help="Output workbook path")
@click.option("--config", "-c", "config_path", type=click.Path(dir_okay=False), help="JSON stage file")
@click.option("--stage", "stage_texts", multiple=True, help="Inline JSON stage descriptor (repeatable)")
@click.option("--filter", "filters", multiple=True, help="Shorthand filter COLUMN=VALUE (repeatable)")
@click.option("--streaming/--no-streaming", default=None, help="Force streaming reads on or off")
@click.option("--engine", type=click.Choice(["openpyxl", "xlsxwriter"]), default=None, help="Writer engine")
@click.option("--timeout", type=float, default=None, help="I/O deadline in seconds")
@click.option("--overwrite", is_flag=True, help="Replace the output file if it exists")
@click.option("--json", "as_json", is_flag=True, help="Print the job result as JSON")
@click.pass_obj
def run_cmd(
    service: PipelineService,
    inputs: tuple[str, ...],
    output: str,
    config_path: str | None,
    stage_texts: tuple[str, ...],
    filters: tuple[str, ...],
    streaming: bool | None,
    engine: str | None,
    timeout: float | None,
    overwrite: bool,
    as_json: bool,
) -> None:
    """Run a pipeline over one or more input workbooks."""
    stages: list[Any] = load_stage_file(config_path) if config_path else []
    stages += [parse_stage(text) for text in stage_texts]
    stages += [parse_filter(expression) for expression in filters]

    job: dict[str, Any] = {
        "inputs": list(inputs),
        "output": output,
        "stages": stages,
        "streaming": streaming,
        "writer_engine": engine,
        "overwrite": overwrite,
    }
    if timeout is not None:
        job["timeout_seconds"] = timeout

    result = service.run_pipeline(job)

    if as_json:
        click.echo(result.model_dump_json(indent=2))
    elif result.success:
        click.echo(f"✓ Wrote {result.output_path}")
        click.echo(f"  Sheets read: {result.sheets_read}")
        click.echo(f"  Stages applied: {result.stages_applied}")
        click.echo(f"  Rows written: {result.rows_written}")
        click.echo(f"  Styles: {result.style_count}  Strings: {result.string_count}")

    if result.success:
        sys.exit(EXIT_OK)

    error = result.error or {}
    if not as_json:
        echo_error(error)
        click.echo(f"  Failed during: {result.failed_phase.value}", err=True)
    sys.exit(EXIT_USAGE if error.get("error_code") in USER_ERROR_CODES else EXIT_FAILURE)


@cli.command("validate")
@click.option("--config", "-c", "config_path", required=True, type=click.Path(dir_okay=False), help="JSON stage file")
@click.pass_obj
def validate_cmd(service: PipelineService, config_path: str) -> None:
    """Validate a stage file without reading any workbook."""
    response = service.validate_pipeline(load_stage_file(config_path))
    if response.valid:
        click.echo(f"✓ {len(response.ops)} stage(s) valid: {', '.join(response.ops) or '(none)'}")
        sys.exit(EXIT_OK)

    click.echo("✗ Invalid pipeline configuration", err=True)
    for entry in response.errors:
        location = ".".join(str(part) for part in entry.get("loc", []))
        click.echo(f"  - {location}: {entry.get('msg')}", err=True)
    sys.exit(EXIT_USAGE)


@cli.command("inspect")
@click.argument("file_path")
@click.option("--streaming/--no-streaming", default=None, help="Force streaming reads on or off")
@click.option("--json", "as_json", is_flag=True, help="Print the summary as JSON")
@click.pass_obj
def inspect_cmd(
    service: PipelineService,
    file_path: str,
    streaming: bool | None,
    as_json: bool,
) -> None:
    """Summarize the sheets of a workbook."""
    try:
        summary = service.inspect_workbook(file_path, streaming=streaming)
    except SheetPipeError as e:
        echo_error(e.to_dict())
        sys.exit(EXIT_USAGE if e.error_code in USER_ERROR_CODES else EXIT_FAILURE)

    if as_json:
        click.echo(summary.model_dump_json(indent=2))
        sys.exit(EXIT_OK)

    click.echo(f"{summary.source}: {len(summary.sheets)} sheet(s), {summary.style_count} style(s)")
    for sheet in summary.sheets:
        flags = []
        if sheet.state != "visible":
            flags.append(sheet.state)
        if sheet.protected:
            flags.append("protected")
        if sheet.freeze_panes:
            flags.append(f"frozen at {sheet.freeze_panes}")
        if sheet.declared_dimension and sheet.declared_dimension != sheet.dimension:
            flags.append(f"declares {sheet.declared_dimension}")
        suffix = f" [{', '.join(flags)}]" if flags else ""
        click.echo(
            f"  {sheet.name}: {sheet.row_count} row(s), {sheet.cell_count} cell(s), "
            f"range {sheet.dimension or '-'}{suffix}"
        )
    sys.exit(EXIT_OK)


def main() -> None:
    """Console script entry point."""
    cli()


if __name__ == "__main__":
    main()
