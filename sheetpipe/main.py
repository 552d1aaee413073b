"""
FastAPI application for SheetPipe.

Exposes pipeline validation, job execution and workbook inspection over
REST. Paths in requests refer to files on the server.

API Endpoints:
    - GET /health: Health check
    - POST /pipeline/validate: Validate stage descriptors (no I/O)
    - POST /pipeline/run: Run a read-transform-write job
    - GET /workbook/inspect: Summarize the sheets of a workbook

Example:
    To run the server:
        uvicorn sheetpipe.main:app --reload

    Or programmatically:
        from sheetpipe.main import run_server
        run_server()
"""

from contextlib import asynccontextmanager
from datetime import datetime, timezone
from typing import Annotated, Any

import uvicorn
from fastapi import Body, FastAPI, HTTPException, Query, Request
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import JSONResponse

from sheetpipe import __version__
from sheetpipe.config import settings
from sheetpipe.exceptions.pipeline_exceptions import SheetPipeError
from sheetpipe.models.pipeline_models import (
    ErrorResponse,
    JobResult,
    ValidatePipelineRequest,
    ValidatePipelineResponse,
    WorkbookSummary,
)
from sheetpipe.services.events import LoggingObserver
from sheetpipe.services.pipeline_service import PipelineService
from sheetpipe.utils.logging import configure_logging

STATUS_CODES = {
    "FILE_NOT_FOUND": 404,
    "SHEET_NOT_FOUND": 404,
    "COLUMN_NOT_FOUND": 400,
    "MALFORMED_CONTAINER": 400,
    "UNSUPPORTED_FEATURE": 400,
    "VALIDATION_ERROR": 422,
    "UNSUPPORTED_VALUE": 422,
    "MERGE_CONFLICT": 409,
    "REMAP_COLLISION": 409,
    "DUPLICATE_SHEET": 409,
    "IO_FAILURE": 500,
    "JOB_CANCELLED": 500,
    "INTERNAL_ERROR": 500,
}

pipeline_service: PipelineService | None = None


@asynccontextmanager
async def lifespan(app: FastAPI):
    """
    Application lifespan manager.

    Creates the pipeline service on startup and releases it on shutdown.
    """
    global pipeline_service
    pipeline_service = PipelineService()
    LoggingObserver().attach(pipeline_service.bus)
    yield
    pipeline_service = None


app = FastAPI(
    title="SheetPipe",
    description="""
    Spreadsheet ingestion and transformation service.

    ## Features

    - **Pipelines**: filter, merge, remap, sort, select and rename stages
    - **Formatting fidelity**: cell styles, column widths, sheet protection,
      sheet visibility and frozen panes are carried to the output
    - **Streaming reads** for large inputs and atomic output writes
    """,
    version=__version__,
    lifespan=lifespan,
    docs_url="/docs",
    redoc_url="/redoc",
    openapi_url="/openapi.json",
)

app.add_middleware(
    CORSMiddleware,
    allow_origins=["*"],
    allow_credentials=True,
    allow_methods=["*"],
    allow_headers=["*"],
)


def get_service() -> PipelineService:
    """
    Get the pipeline service instance.

    Raises:
        HTTPException: If the service is not initialized.
    """
    if pipeline_service is None:
        raise HTTPException(
            status_code=503,
            detail="Pipeline service is not initialized",
        )
    return pipeline_service


def error_response(error_code: str, message: str, details: dict | None = None) -> JSONResponse:
    """
    Build an ErrorResponse with the HTTP status mapped from error_code.
    """
    return JSONResponse(
        status_code=STATUS_CODES.get(error_code, 500),
        content=ErrorResponse(
            success=False,
            error_code=error_code,
            message=message,
            details=details,
        ).model_dump(mode="json"),
    )


@app.exception_handler(SheetPipeError)
async def handle_pipeline_error(request: Request, error: SheetPipeError) -> JSONResponse:
    """Convert SheetPipeError to an HTTP error response."""
    return error_response(error.error_code, error.message, error.details)


@app.get(
    "/health",
    tags=["System"],
    summary="Health check",
    response_model=dict,
)
async def health_check() -> dict[str, Any]:
    """
    Check the health status of the service.

    Returns:
        Dictionary containing status and timestamp.
    """
    return {
        "status": "healthy",
        "service": "SheetPipe",
        "version": __version__,
        "timestamp": datetime.now(timezone.utc).isoformat(),
    }


@app.post(
    "/pipeline/validate",
    tags=["Pipeline"],
    summary="Validate stage descriptors",
    response_model=ValidatePipelineResponse,
)
async def validate_pipeline(request: ValidatePipelineRequest) -> ValidatePipelineResponse:
    """
    Validate a list of stage descriptors without opening any file.

    Invalid descriptors are reported in the response body (``valid`` is
    false and ``errors`` lists every problem with its stage index).
    """
    return get_service().validate_pipeline(request.stages)


@app.post(
    "/pipeline/run",
    tags=["Pipeline"],
    summary="Run a pipeline job",
    response_model=JobResult,
    responses={
        404: {"model": ErrorResponse, "description": "Input file or sheet not found"},
        409: {"model": ErrorResponse, "description": "Merge conflict or remap collision"},
        422: {"model": ErrorResponse, "description": "Invalid job or unsupported value"},
        500: {"model": ErrorResponse, "description": "I/O failure"},
    },
)
def run_pipeline(
    job: Annotated[
        dict[str, Any],
        Body(
            description="Job with inputs, output and stages",
            examples=[
                {
                    "inputs": ["/data/sales.xlsx"],
                    "output": "/data/east.xlsx",
                    "stages": [
                        {"op": "filterRows", "predicate": {"column": "region", "eq": "East"}}
                    ],
                }
            ],
        ),
    ],
) -> JobResult | JSONResponse:
    """
    Read the inputs, apply the stages and write the output.

    Runs in the worker thread pool. A failed job answers with the HTTP
    status of its error code; the body carries the failed phase and the
    error details.
    """
    result = get_service().run_pipeline(job)
    if result.success:
        return result

    error = result.error or {}
    details = dict(error.get("details") or {})
    details["job_id"] = result.job_id
    details["failed_phase"] = result.failed_phase.value if result.failed_phase else None
    return error_response(
        error.get("error_code", "INTERNAL_ERROR"),
        error.get("message", "Job failed"),
        details,
    )


@app.get(
    "/workbook/inspect",
    tags=["Workbook"],
    summary="Summarize a workbook",
    response_model=WorkbookSummary,
    responses={
        404: {"model": ErrorResponse, "description": "File not found"},
        400: {"model": ErrorResponse, "description": "Invalid or unsupported workbook"},
    },
)
def inspect_workbook(
    file_path: Annotated[str, Query(description="Path to the Excel file")],
    streaming: Annotated[bool | None, Query(description="Force streaming reads on or off")] = None,
) -> WorkbookSummary:
    """
    Summarize the sheets of a workbook on the server.

    Errors are converted by the SheetPipeError exception handler.
    """
    return get_service().inspect_workbook(file_path, streaming=streaming)


def run_server(
    host: str | None = None,
    port: int | None = None,
    reload: bool = False,
) -> None:
    """
    Run the FastAPI server.

    Args:
        host: Host to bind to. Defaults to the configured server_host.
        port: Port to listen on. Defaults to the configured server_port.
        reload: Whether to enable auto-reload. Defaults to False.

    Example:
        from sheetpipe.main import run_server
        run_server(host="127.0.0.1", port=8080)
    """
    configure_logging(settings.log_level)
    uvicorn.run(
        "sheetpipe.main:app",
        host=host or settings.server_host,
        port=port or settings.server_port,
        reload=reload,
    )


if __name__ == "__main__":
    run_server()
