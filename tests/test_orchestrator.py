"""
Tests for the PipelineOrchestrator, its job state machine and the
PipelineService facade.
"""

import warnings
from pathlib import Path

import pytest

import sheetpipe
from sheetpipe.exceptions.pipeline_exceptions import SheetPipeError
from sheetpipe.models.pipeline_models import JobState, PipelineJob
from sheetpipe.services import events
from sheetpipe.services.events import EventBus
from sheetpipe.services.job_control import CancellationToken
from sheetpipe.services.orchestrator import JobRun
from sheetpipe.services.pipeline_service import PipelineService

EAST_FILTER = {"op": "filterRows", "predicate": {"column": "region", "eq": "East"}}


def merge_stage(policy: str) -> dict:
    return {"op": "mergeSheets", "conflictPolicy": policy, "keyColumns": ["id"]}


class TestJobRun:
    """Tests for the job state machine."""

    def test_happy_path(self, bus, event_log):
        run = JobRun("j1", bus)
        for state in (JobState.READING, JobState.TRANSFORMING, JobState.WRITING, JobState.DONE):
            run.advance(state)

        assert run.terminal
        assert run.history[0] == JobState.IDLE
        assert run.history[-1] == JobState.DONE
        assert [e.payload["state"] for e in event_log] == [
            "reading",
            "transforming",
            "writing",
            "done",
        ]

    def test_failure_records_phase(self, bus):
        run = JobRun("j1", bus)
        run.advance(JobState.READING)
        run.advance(JobState.FAILED)
        assert run.failed_phase == JobState.READING
        assert run.terminal

    @pytest.mark.parametrize(
        "path",
        [
            [JobState.WRITING],
            [JobState.READING, JobState.DONE],
            [JobState.READING, JobState.FAILED, JobState.TRANSFORMING],
        ],
    )
    def test_illegal_transitions(self, bus, path):
        run = JobRun("j1", bus)
        with pytest.raises(RuntimeError):
            for state in path:
                run.advance(state)


class TestRunJob:
    """Tests for complete read-transform-write jobs."""

    def test_filter_job(self, orchestrator, reader, sales_file: Path, temp_dir: Path, values):
        """Test the basic Sales filter job end to end."""
        output = temp_dir / "east.xlsx"

        result = orchestrator.run(
            {
                "jobId": "east",
                "inputs": [str(sales_file)],
                "output": str(output),
                "stages": [EAST_FILTER],
            }
        )

        assert result.success
        assert result.state == JobState.DONE
        assert result.job_id == "east"
        assert result.output_path == str(output)
        assert result.sheets_read == 1
        assert result.stages_applied == 1
        assert result.bytes_written == output.stat().st_size
        assert result.error is None
        assert values(reader.read(str(output)).get_sheet("Sales")) == [
            ["region", "amt"],
            ["East", 10],
        ]

    def test_accepts_job_model(self, orchestrator, sales_file: Path, temp_dir: Path):
        job = PipelineJob(inputs=[str(sales_file)], output=str(temp_dir / "copy.xlsx"))
        result = orchestrator.run(job)
        assert result.success
        assert result.job_id == job.job_id

    def test_merge_conflict_fails_in_transforming(
        self, orchestrator, keyed_files, temp_dir: Path
    ):
        """Test that a conflicting key fails the job and writes nothing."""
        output = temp_dir / "merged.xlsx"

        result = orchestrator.run(
            {
                "inputs": [str(path) for path in keyed_files],
                "output": str(output),
                "stages": [merge_stage("error")],
            }
        )

        assert not result.success
        assert result.state == JobState.FAILED
        assert result.failed_phase == JobState.TRANSFORMING
        assert result.error["error_code"] == "MERGE_CONFLICT"
        assert result.error["details"]["sheet"] == "Sheet1 (2)"
        assert result.error["details"]["stage_index"] == 0
        assert result.error["details"]["phase"] == "transforming"
        assert result.sheets_read == 2
        assert not output.exists()

    def test_merge_keep_first(self, orchestrator, reader, keyed_files, temp_dir: Path, values):
        output = temp_dir / "merged.xlsx"

        result = orchestrator.run(
            {
                "inputs": [str(path) for path in keyed_files],
                "output": str(output),
                "stages": [merge_stage("keepFirst")],
            }
        )

        assert result.success
        merged = reader.read(str(output))
        assert merged.sheet_names == ["Sheet1"]
        assert values(merged.get_sheet("Sheet1")) == [
            ["id", "value"],
            [1, "x"],
            [2, "y"],
            [3, "w"],
        ]

    def test_invalid_job_fails_before_reading(self, orchestrator, event_log, temp_dir: Path):
        """Test that descriptor errors are reported without any I/O."""
        result = orchestrator.run(
            {
                "inputs": [str(temp_dir / "never-read.xlsx")],
                "output": str(temp_dir / "out.xlsx"),
                "stages": [{"op": "sortRows"}],
            }
        )

        assert result.state == JobState.FAILED
        assert result.failed_phase == JobState.IDLE
        assert result.error["error_code"] == "VALIDATION_ERROR"
        assert result.error["details"]["errors"][0]["stage_index"] == 0
        assert not any(e.topic == events.SHEET_READ for e in event_log)

    def test_missing_input(self, orchestrator, temp_dir: Path):
        result = orchestrator.run(
            {"inputs": [str(temp_dir / "nope.xlsx")], "output": str(temp_dir / "out.xlsx")}
        )
        assert result.failed_phase == JobState.READING
        assert result.error["error_code"] == "FILE_NOT_FOUND"
        assert result.error["details"]["input_index"] == 0

    def test_malformed_input(self, orchestrator, malformed_file: Path, temp_dir: Path):
        result = orchestrator.run(
            {"inputs": [str(malformed_file)], "output": str(temp_dir / "out.xlsx")}
        )
        assert result.failed_phase == JobState.READING
        assert result.error["error_code"] == "MALFORMED_CONTAINER"

    def test_existing_output_fails_in_writing(self, orchestrator, sales_file: Path, temp_dir: Path):
        output = temp_dir / "out.xlsx"
        output.write_bytes(b"keep")

        result = orchestrator.run({"inputs": [str(sales_file)], "output": str(output)})

        assert result.failed_phase == JobState.WRITING
        assert result.error["error_code"] == "IO_FAILURE"
        assert output.read_bytes() == b"keep"

    def test_engine_override(self, orchestrator, sales_file: Path, temp_dir: Path):
        output = temp_dir / "xw.xlsx"
        result = orchestrator.run(
            {
                "inputs": [str(sales_file)],
                "output": str(output),
                "writerEngine": "xlsxwriter",
            }
        )
        assert result.success
        assert result.string_count == 4


class TestCancellationAndTimeouts:
    """Tests for cooperative cancellation and the job deadline."""

    def test_cancelled_before_start(self, orchestrator, sales_file: Path, temp_dir: Path):
        token = CancellationToken()
        token.cancel()

        result = orchestrator.run(
            {"inputs": [str(sales_file)], "output": str(temp_dir / "out.xlsx")},
            cancel_token=token,
        )

        assert result.failed_phase == JobState.READING
        assert result.error["error_code"] == "JOB_CANCELLED"

    def test_cancelled_after_reading(self, orchestrator, bus, sales_file: Path, temp_dir: Path):
        """Test cancellation requested by an observer while the job runs."""
        token = CancellationToken()
        bus.subscribe(events.SHEET_READ, lambda event: token.cancel())
        output = temp_dir / "out.xlsx"

        result = orchestrator.run(
            {"inputs": [str(sales_file)], "output": str(output), "stages": [EAST_FILTER]},
            cancel_token=token,
        )

        assert result.failed_phase == JobState.TRANSFORMING
        assert result.error["error_code"] == "JOB_CANCELLED"
        assert not output.exists()

    def test_deadline_expires(self, orchestrator, sales_file: Path, temp_dir: Path):
        result = orchestrator.run(
            {
                "inputs": [str(sales_file)],
                "output": str(temp_dir / "out.xlsx"),
                "timeoutSeconds": 1e-9,
            }
        )
        assert result.state == JobState.FAILED
        assert result.error["error_code"] == "IO_FAILURE"
        assert "timed out" in result.error["details"]["reason"]


class TestProgressEvents:
    """Tests for the events published during a job."""

    def test_successful_job_events(self, orchestrator, event_log, sales_file: Path, temp_dir: Path):
        orchestrator.run(
            {
                "jobId": "ev",
                "inputs": [str(sales_file)],
                "output": str(temp_dir / "out.xlsx"),
                "stages": [EAST_FILTER],
            }
        )

        topics = [e.topic for e in event_log]
        assert topics == [
            events.JOB_STATE,
            events.SHEET_READ,
            events.JOB_STATE,
            events.STAGE_APPLIED,
            events.JOB_STATE,
            events.OUTPUT_WRITTEN,
            events.JOB_STATE,
        ]
        assert all(e.job_id == "ev" for e in event_log)

        sheet_read = event_log[1].payload
        assert sheet_read["sheet"] == "Sales"
        assert sheet_read["rows"] == 3
        assert event_log[3].payload["op"] == "filterRows"
        assert event_log[-1].payload["state"] == "done"

    def test_failed_job_event(self, orchestrator, event_log, keyed_files, temp_dir: Path):
        orchestrator.run(
            {
                "inputs": [str(path) for path in keyed_files],
                "output": str(temp_dir / "out.xlsx"),
                "stages": [merge_stage("error")],
            }
        )

        failed = [e for e in event_log if e.topic == events.JOB_FAILED]
        assert len(failed) == 1
        assert failed[0].payload["phase"] == "transforming"
        assert failed[0].payload["error_code"] == "MERGE_CONFLICT"

    def test_failing_observer_does_not_break_job(
        self, orchestrator, bus, sales_file: Path, temp_dir: Path
    ):
        def broken(event):
            raise ValueError("observer bug")

        bus.subscribe(events.STAGE_APPLIED, broken)
        result = orchestrator.run(
            {"inputs": [str(sales_file)], "output": str(temp_dir / "out.xlsx"), "stages": [EAST_FILTER]}
        )
        assert result.success


class TestRunMany:
    """Tests for parallel job execution."""

    def test_results_in_input_order(self, orchestrator, sales_file: Path, keyed_files, temp_dir: Path):
        jobs = [
            {"jobId": "ok", "inputs": [str(sales_file)], "output": str(temp_dir / "ok.xlsx")},
            {
                "jobId": "conflict",
                "inputs": [str(path) for path in keyed_files],
                "output": str(temp_dir / "conflict.xlsx"),
                "stages": [merge_stage("error")],
            },
            {
                "jobId": "east",
                "inputs": [str(sales_file)],
                "output": str(temp_dir / "east.xlsx"),
                "stages": [EAST_FILTER],
            },
        ]

        results = orchestrator.run_many(jobs, max_workers=3)

        assert [r.job_id for r in results] == ["ok", "conflict", "east"]
        assert [r.success for r in results] == [True, False, True]
        assert (temp_dir / "ok.xlsx").exists()
        assert (temp_dir / "east.xlsx").exists()
        assert not (temp_dir / "conflict.xlsx").exists()


class TestPipelineService:
    """Tests for the transport-agnostic facade."""

    @pytest.fixture
    def service(self, orchestrator) -> PipelineService:
        return PipelineService(orchestrator=orchestrator)

    def test_shares_orchestrator_bus(self, service, orchestrator):
        assert service.bus is orchestrator.bus

    def test_default_construction(self):
        service = PipelineService()
        assert isinstance(service.bus, EventBus)
        assert service.orchestrator.bus is service.bus

    def test_validate_pipeline(self, service):
        check = service.validate_pipeline(
            [EAST_FILTER, {"op": "sortRows", "by": [{"column": "amt", "descending": True}]}]
        )
        assert check.valid
        assert check.ops == ["filterRows", "sortRows"]
        assert check.errors == []

    def test_validate_pipeline_reports_errors(self, service):
        check = service.validate_pipeline([EAST_FILTER, {"op": "pivot"}])
        assert not check.valid
        assert check.ops == []
        assert check.errors[0]["stage_index"] == 1

    def test_inspect_workbook(self, service, styled_file: Path):
        summary = service.inspect_workbook(str(styled_file))

        assert summary.source == str(styled_file)
        assert [s.name for s in summary.sheets] == ["Data", "Notes", "Empty"]
        data = summary.sheets[0]
        assert data.row_count == 4
        assert data.column_count == 4
        assert data.dimension == "A1:D4"
        assert data.declared_dimension == "A1:D4"
        assert data.protected
        assert data.freeze_panes == "A2"
        assert summary.sheets[1].state == "hidden"
        assert summary.sheets[2].column_count == 0
        assert summary.sheets[2].declared_dimension == "A1:A1"
        assert summary.string_count > 0

    def test_inspect_missing_file_raises(self, service, temp_dir: Path):
        with pytest.raises(SheetPipeError) as exc_info:
            service.inspect_workbook(str(temp_dir / "nope.xlsx"))
        assert exc_info.value.error_code == "FILE_NOT_FOUND"

    def test_run_pipeline(self, service, sales_file: Path, temp_dir: Path):
        result = service.run_pipeline(
            {"inputs": [str(sales_file)], "output": str(temp_dir / "out.xlsx"), "stages": [EAST_FILTER]}
        )
        assert result.success
        assert result.rows_written == 2


class TestPackageSources:
    """Tests for the package's module sources."""

    def test_modules_compile_without_warnings(self):
        """Test that no docstring or literal holds an invalid escape sequence."""
        package = Path(sheetpipe.__file__).parent
        sources = sorted(package.rglob("*.py"))
        assert package / "services" / "orchestrator.py" in sources
        with warnings.catch_warnings():
            warnings.simplefilter("error")
            for path in sources:
                compile(path.read_text(encoding="utf-8"), str(path), "exec")
