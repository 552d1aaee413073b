"""
Pipeline orchestrator.

Runs read -> transform -> write jobs through an explicit state machine:

    idle -> reading -> transforming -> writing -> done

and any state before done can move to failed.

Every failure ends in the failed state with the phase it happened in and
the error's ``to_dict()`` payload; exceptions never escape ``run``. Progress
is reported as ProgressEvents on an EventBus; the orchestrator itself only
logs through the module logger.

Example:
    bus = EventBus()
    LoggingObserver().attach(bus)
    orchestrator = PipelineOrchestrator(bus=bus)
    result = orchestrator.run({
        "inputs": ["sales.xlsx"],
        "output": "east.xlsx",
        "stages": [{"op": "filterRows", "predicate": {"column": "region", "eq": "East"}}],
    })
    assert result.state == JobState.DONE
"""

import logging
import time
from collections.abc import Sequence
from concurrent.futures import ThreadPoolExecutor
from typing import Any

from pydantic import ValidationError as PydanticValidationError

from sheetpipe.config import Settings, settings as default_settings
from sheetpipe.exceptions.pipeline_exceptions import SheetPipeError, ValidationError
from sheetpipe.models.pipeline_models import JobResult, JobState, PipelineJob
from sheetpipe.models.workbook_models import Workbook
from sheetpipe.services import events
from sheetpipe.services.events import EventBus
from sheetpipe.services.job_control import CancellationToken, JobControl
from sheetpipe.services.pipeline import TransformPipeline
from sheetpipe.services.reader import WorkbookReader
from sheetpipe.services.stages import TransformStage
from sheetpipe.services.writer import WorkbookWriter
from sheetpipe.utils.logging import LogContext

logger = logging.getLogger(__name__)

TRANSITIONS: dict[JobState, frozenset[JobState]] = {
    JobState.IDLE: frozenset({JobState.READING, JobState.FAILED}),
    JobState.READING: frozenset({JobState.TRANSFORMING, JobState.FAILED}),
    JobState.TRANSFORMING: frozenset({JobState.WRITING, JobState.FAILED}),
    JobState.WRITING: frozenset({JobState.DONE, JobState.FAILED}),
    JobState.DONE: frozenset(),
    JobState.FAILED: frozenset(),
}


class JobRun:
    """
    State machine for one job.

    Attributes:
        job_id: Job identifier.
        state: Current state.
        history: Every state entered, in order.
        failed_phase: State the job was in when it failed.
    """

    def __init__(self, job_id: str, bus: EventBus) -> None:
        self.job_id = job_id
        self.bus = bus
        self.state = JobState.IDLE
        self.history: list[JobState] = [JobState.IDLE]
        self.failed_phase: JobState | None = None

    @property
    def terminal(self) -> bool:
        return not TRANSITIONS[self.state]

    def advance(self, new_state: JobState) -> None:
        """
        Move to new_state.

        Raises:
            RuntimeError: If the transition is not allowed.
        """
        if new_state not in TRANSITIONS[self.state]:
            raise RuntimeError(
                f"Illegal job state transition: {self.state.value} -> {new_state.value}"
            )
        if new_state == JobState.FAILED:
            self.failed_phase = self.state
        previous = self.state
        self.state = new_state
        self.history.append(new_state)
        self.bus.emit(
            events.JOB_STATE,
            job_id=self.job_id,
            previous=previous.value,
            state=new_state.value,
        )


def _translate(error: Exception) -> SheetPipeError:
    if isinstance(error, SheetPipeError):
        return error
    logger.exception("Unexpected error")
    return SheetPipeError(
        message=f"Unexpected error: {error}",
        error_code="INTERNAL_ERROR",
        details={"exception": type(error).__name__},
    )


class PipelineOrchestrator:
    """
    Wire reader, pipeline and writer for one or many jobs.

    The reader, writer and bus may be shared between concurrently running
    jobs: they hold no per-job state. Each job gets its own Workbook
    values, tables, JobRun and JobControl.

    Args:
        reader: WorkbookReader (default: new instance).
        writer: WorkbookWriter (default: new instance).
        bus: EventBus for progress events (default: private bus).
        settings: Settings for the default timeout and worker count.
    """

    def __init__(
        self,
        reader: WorkbookReader | None = None,
        writer: WorkbookWriter | None = None,
        bus: EventBus | None = None,
        settings: Settings | None = None,
    ) -> None:
        self.settings = settings or default_settings
        self.reader = reader or WorkbookReader(settings=self.settings)
        self.writer = writer or WorkbookWriter(settings=self.settings)
        self.bus = bus or EventBus()

    def _parse_job(self, job: PipelineJob | dict[str, Any]) -> PipelineJob:
        if isinstance(job, PipelineJob):
            return job
        try:
            return PipelineJob.model_validate(job)
        except PydanticValidationError as e:
            errors = []
            for error in e.errors(include_url=False, include_input=False):
                loc = list(error["loc"])
                entry: dict[str, Any] = {"loc": loc, "msg": error["msg"], "type": error["type"]}
                if len(loc) > 1 and loc[0] == "stages" and isinstance(loc[1], int):
                    entry["stage_index"] = loc[1]
                errors.append(entry)
            raise ValidationError(errors) from e

    # ==================== PHASES ====================

    def _read_inputs(self, job: PipelineJob, control: JobControl) -> Workbook:
        workbooks = []
        for index, path in enumerate(job.inputs):
            control.resource = path
            control.checkpoint(f"reading {path}")
            try:
                workbook = self.reader.read(path, streaming=job.streaming, control=control)
            except SheetPipeError as e:
                raise e.add_context(input=path, input_index=index)
            for sheet in workbook.sheets:
                self.bus.emit(
                    events.SHEET_READ,
                    job_id=job.job_id,
                    input=path,
                    sheet=sheet.name,
                    rows=sheet.row_count,
                    cells=sheet.cell_count,
                )
            workbooks.append(workbook)
        return Workbook.combine(workbooks)

    def _transform(
        self,
        job: PipelineJob,
        pipeline: TransformPipeline,
        workbook: Workbook,
        control: JobControl,
    ) -> Workbook:
        def on_stage(index: int, stage: TransformStage, result: Workbook) -> None:
            self.bus.emit(
                events.STAGE_APPLIED,
                job_id=job.job_id,
                stage_index=index,
                op=stage.op,
                sheets=result.sheet_names,
            )

        return pipeline.run(workbook, control=control, on_stage=on_stage)

    # ==================== JOB EXECUTION ====================

    def run(
        self,
        job: PipelineJob | dict[str, Any],
        cancel_token: CancellationToken | None = None,
    ) -> JobResult:
        """
        Run one job to completion or failure.

        Args:
            job: PipelineJob or a raw dict (validated before any I/O).
            cancel_token: Token checked between sheets, rows and stages.

        Returns:
            JobResult with state DONE or FAILED. Never raises for job
            failures.
        """
        start = time.perf_counter()
        job_id = job.job_id if isinstance(job, PipelineJob) else str(job.get("job_id") or job.get("jobId") or "")

        try:
            parsed = self._parse_job(job)
            pipeline = TransformPipeline.from_config(parsed.stages)
        except SheetPipeError as e:
            run = JobRun(job_id or "invalid", self.bus)
            run.advance(JobState.FAILED)
            return self._failed(run, e, start)

        run = JobRun(parsed.job_id, self.bus)
        timeout = parsed.timeout_seconds
        if timeout is None:
            timeout = self.settings.io_timeout_seconds
        control = JobControl(token=cancel_token, timeout_seconds=timeout, resource=parsed.output)

        with LogContext(job_id=parsed.job_id):
            logger.info(
                "Starting job: %d input(s), %d stage(s) -> %s",
                len(parsed.inputs),
                len(pipeline),
                parsed.output,
            )
            result = JobResult(job_id=parsed.job_id, state=JobState.IDLE)
            try:
                run.advance(JobState.READING)
                workbook = self._read_inputs(parsed, control)
                result.sheets_read = len(workbook.sheet_names)

                run.advance(JobState.TRANSFORMING)
                workbook = self._transform(parsed, pipeline, workbook, control)
                result.stages_applied = len(pipeline)

                run.advance(JobState.WRITING)
                control.resource = parsed.output
                written = self.writer.write(
                    workbook,
                    parsed.output,
                    engine=parsed.writer_engine,
                    overwrite=parsed.overwrite,
                    control=control,
                )
                self.bus.emit(
                    events.OUTPUT_WRITTEN,
                    job_id=parsed.job_id,
                    path=written.path,
                    bytes=written.bytes_written,
                    rows=written.rows_written,
                    styles=written.style_count,
                    strings=written.string_count,
                )
                run.advance(JobState.DONE)
            except Exception as e:
                error = _translate(e)
                run.advance(JobState.FAILED)
                return self._failed(run, error, start, result)

        result.state = run.state
        result.output_path = written.path
        result.rows_written = written.rows_written
        result.bytes_written = written.bytes_written
        result.style_count = written.style_count
        result.string_count = written.string_count
        result.processing_time_ms = (time.perf_counter() - start) * 1000
        logger.info("Job %s done in %.1f ms", parsed.job_id, result.processing_time_ms)
        return result

    def _failed(
        self,
        run: JobRun,
        error: SheetPipeError,
        start: float,
        result: JobResult | None = None,
    ) -> JobResult:
        error.add_context(phase=run.failed_phase.value)
        result = result or JobResult(job_id=run.job_id, state=JobState.FAILED)
        result.state = JobState.FAILED
        result.failed_phase = run.failed_phase
        result.error = error.to_dict()
        result.processing_time_ms = (time.perf_counter() - start) * 1000
        self.bus.emit(
            events.JOB_FAILED,
            job_id=run.job_id,
            phase=run.failed_phase.value,
            error_code=error.error_code,
            message=error.message,
        )
        logger.error("Job %s failed during %s: %s", run.job_id, run.failed_phase.value, error)
        return result

    def run_many(
        self,
        jobs: Sequence[PipelineJob | dict[str, Any]],
        max_workers: int | None = None,
        cancel_token: CancellationToken | None = None,
    ) -> list[JobResult]:
        """
        Run independent jobs in parallel on a thread pool.

        Returns:
            One JobResult per job, in input order.
        """
        workers = max_workers or self.settings.max_workers
        with ThreadPoolExecutor(max_workers=workers, thread_name_prefix="sheetpipe") as pool:
            futures = [pool.submit(self.run, job, cancel_token) for job in jobs]
            return [future.result() for future in futures]
