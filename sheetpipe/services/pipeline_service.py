"""
Transport-agnostic service facade.

PipelineService is the single entry point used by the CLI, the FastAPI
application and the MCP server. It returns pydantic models so that every
transport serializes the same shapes.

Example:
    service = PipelineService()

    check = service.validate_pipeline([{"op": "sortRows", "by": [{"column": "amt"}]}])
    summary = service.inspect_workbook("/data/sales.xlsx")
    result = service.run_pipeline({
        "inputs": ["/data/sales.xlsx"],
        "output": "/data/sorted.xlsx",
        "stages": [{"op": "sortRows", "by": [{"column": "amt"}]}],
    })
"""

import logging
from typing import Any

from sheetpipe.config import Settings, settings as default_settings
from sheetpipe.exceptions.pipeline_exceptions import ValidationError
from sheetpipe.models.pipeline_models import (
    JobResult,
    PipelineJob,
    SheetSummary,
    ValidatePipelineResponse,
    WorkbookSummary,
)
from sheetpipe.services.events import EventBus
from sheetpipe.services.job_control import CancellationToken
from sheetpipe.services.orchestrator import PipelineOrchestrator
from sheetpipe.services.pipeline import TransformPipeline

logger = logging.getLogger(__name__)


class PipelineService:
    """
    Core service layer for pipeline operations.

    Attributes:
        orchestrator: PipelineOrchestrator running the jobs.
        bus: EventBus receiving the jobs' progress events.
    """

    def __init__(
        self,
        orchestrator: PipelineOrchestrator | None = None,
        bus: EventBus | None = None,
        settings: Settings | None = None,
    ) -> None:
        self.settings = settings or default_settings
        self.bus = bus or (orchestrator.bus if orchestrator else EventBus())
        self.orchestrator = orchestrator or PipelineOrchestrator(
            bus=self.bus, settings=self.settings
        )

    # ==================== VALIDATION ====================

    def validate_pipeline(self, stages: list[dict[str, Any]]) -> ValidatePipelineResponse:
        """
        Validate stage descriptors without touching any file.

        Returns:
            ValidatePipelineResponse; invalid descriptors are reported in
            ``errors`` rather than raised.
        """
        try:
            pipeline = TransformPipeline.from_config(stages)
        except ValidationError as e:
            return ValidatePipelineResponse(valid=False, errors=e.errors)
        return ValidatePipelineResponse(valid=True, ops=pipeline.ops)

    # ==================== EXECUTION ====================

    def run_pipeline(
        self,
        job: PipelineJob | dict[str, Any],
        cancel_token: CancellationToken | None = None,
    ) -> JobResult:
        """Run one job; failures are reported in the JobResult."""
        return self.orchestrator.run(job, cancel_token=cancel_token)

    def run_pipelines(
        self,
        jobs: list[PipelineJob | dict[str, Any]],
        max_workers: int | None = None,
    ) -> list[JobResult]:
        """Run independent jobs in parallel."""
        return self.orchestrator.run_many(jobs, max_workers=max_workers)

    # ==================== INSPECTION ====================

    def inspect_workbook(self, file_path: str, streaming: bool | None = None) -> WorkbookSummary:
        """
        Summarize the sheets of a workbook.

        Raises:
            SheetPipeError: If the workbook cannot be read.
        """
        workbook = self.orchestrator.reader.read(file_path, streaming=streaming)
        sheets = [
            SheetSummary(
                name=sheet.name,
                state=sheet.state,
                row_count=sheet.row_count,
                column_count=0 if sheet.is_empty else sheet.max_column - sheet.min_column + 1,
                cell_count=sheet.cell_count,
                dimension=sheet.dimensions,
                declared_dimension=sheet.declared_dimension,
                protected=sheet.protection is not None and sheet.protection.sheet,
                freeze_panes=sheet.freeze_panes,
            )
            for sheet in workbook.sheets
        ]
        return WorkbookSummary(
            source=file_path,
            sheets=sheets,
            style_count=len(workbook.styles),
            string_count=len(workbook.strings),
        )
