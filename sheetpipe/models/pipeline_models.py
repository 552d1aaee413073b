"""
Pydantic models for pipeline configuration, jobs and results.

Stage descriptors are a tagged union discriminated on ``op``. Option names
are accepted in camelCase (``conflictPolicy``) or snake_case
(``conflict_policy``); unknown options are rejected so that typos fail
validation before any file is opened.
"""

import re
from enum import Enum
from typing import Annotated, Any, Literal, Union
from uuid import uuid4

from pydantic import BaseModel, ConfigDict, Field, field_validator, model_validator
from pydantic.alias_generators import to_camel

COMPARATORS = ("eq", "ne", "gt", "ge", "lt", "le", "contains", "in", "empty", "notEmpty")

INVALID_SHEET_NAME_CHARS = re.compile(r"[\[\]:*?/\\]")

ColumnRef = Annotated[
    str | int,
    Field(description="Header name, zero-based index or column letters written '$C'"),
]


def validate_sheet_name(name: str) -> str:
    """Apply Excel's sheet naming rules."""
    if not name or len(name) > 31:
        raise ValueError("sheet names must be 1 to 31 characters long")
    if INVALID_SHEET_NAME_CHARS.search(name):
        raise ValueError(f"sheet name {name!r} contains one of []:*?/\\")
    if name.startswith("'") or name.endswith("'"):
        raise ValueError("sheet names cannot start or end with an apostrophe")
    return name


class StageOptions(BaseModel):
    """Shared configuration for stage descriptors."""

    model_config = ConfigDict(
        alias_generator=to_camel,
        populate_by_name=True,
        extra="forbid",
        frozen=True,
    )


# ==================== FILTER ====================


class RowPredicate(StageOptions):
    """
    A single row test.

    Accepts the long form ``{"column": "region", "comparator": "eq",
    "value": "East"}`` or the shorthand ``{"column": "region", "eq": "East"}``.
    """

    column: ColumnRef
    comparator: Literal[
        "eq", "ne", "gt", "ge", "lt", "le", "contains", "in", "empty", "notEmpty"
    ] = "eq"
    value: Any = None
    case_sensitive: bool = True

    @model_validator(mode="before")
    @classmethod
    def expand_shorthand(cls, data: Any) -> Any:
        """Turn ``{column, <comparator>: value}`` into the long form."""
        if not isinstance(data, dict) or "comparator" in data:
            return data
        used = [op for op in COMPARATORS if op in data]
        if len(used) > 1:
            raise ValueError(f"predicate has more than one comparator: {used}")
        if used:
            data = dict(data)
            data["comparator"] = used[0]
            data["value"] = data.pop(used[0])
        return data

    @model_validator(mode="after")
    def check_value(self) -> "RowPredicate":
        if self.comparator == "in" and not isinstance(self.value, list):
            raise ValueError("comparator 'in' needs a list value")
        if self.comparator in ("gt", "ge", "lt", "le", "contains") and self.value is None:
            raise ValueError(f"comparator '{self.comparator}' needs a value")
        return self


class FilterRowsConfig(StageOptions):
    """Keep the data rows matching the predicate(s); header rows always stay."""

    op: Literal["filterRows"]
    predicate: RowPredicate | None = None
    predicates: list[RowPredicate] = Field(default_factory=list)
    match: Literal["all", "any"] = "all"
    invert: bool = False
    sheets: list[str] | None = None
    header_rows: int = Field(default=1, ge=0)

    @model_validator(mode="after")
    def check_predicates(self) -> "FilterRowsConfig":
        if self.predicate is None and not self.predicates:
            raise ValueError("filterRows needs 'predicate' or 'predicates'")
        return self

    @property
    def all_predicates(self) -> list[RowPredicate]:
        preds = [self.predicate] if self.predicate is not None else []
        return preds + list(self.predicates)


# ==================== MERGE ====================


class MergeSheetsConfig(StageOptions):
    """
    Merge several sheets into one.

    With key_columns, data rows are unioned by key and a repeated key is a
    conflict. Without key columns the sheets are overlaid cell by cell and
    two different cells at one position are a conflict.
    """

    op: Literal["mergeSheets"]
    sources: Annotated[list[str], Field(min_length=1)] | None = None
    target: str | None = None
    conflict_policy: Literal["keepFirst", "keepLast", "error"]
    key_columns: list[ColumnRef] = Field(default_factory=list)
    header_rows: int = Field(default=1, ge=0)
    keep_sources: bool = False

    @field_validator("target")
    @classmethod
    def check_target(cls, v: str | None) -> str | None:
        return validate_sheet_name(v) if v is not None else v


# ==================== REMAP ====================


class RemapColumnsConfig(StageOptions):
    """
    Move columns. Keys are header names, "$C" letters or indices; values are
    destination letters or indices.
    """

    op: Literal["remapColumns"]
    mapping: dict[str, str | int] = Field(min_length=1)
    drop_unmapped: bool = False
    sheets: list[str] | None = None
    header_rows: int = Field(default=1, ge=0)


# ==================== SUPPLEMENTAL STAGES ====================


class SortKey(StageOptions):
    column: ColumnRef
    descending: bool = False


class SortRowsConfig(StageOptions):
    """Stable multi-key sort of the data rows."""

    op: Literal["sortRows"]
    by: list[SortKey] = Field(min_length=1)
    sheets: list[str] | None = None
    header_rows: int = Field(default=1, ge=0)


class SelectSheetsConfig(StageOptions):
    """Keep only the named sheets, in the given order."""

    op: Literal["selectSheets"]
    sheets: list[str] = Field(min_length=1)


class RenameSheetConfig(StageOptions):
    op: Literal["renameSheet"]
    source: str = Field(alias="from")
    to: str

    @field_validator("to")
    @classmethod
    def check_to(cls, v: str) -> str:
        return validate_sheet_name(v)


# ==================== AGGREGATE ====================

PERCENTILE_METRIC = re.compile(r"^p(\d{1,2}(?:\.\d+)?|100)$")
AGGREGATE_METRICS = ("count", "sum", "mean", "variance", "min", "max", "rate")
DEFAULT_METRICS = ["count", "sum", "mean", "variance", "p90", "p95", "p99", "min", "max"]


def percentile_rank(metric: str) -> float | None:
    """Return the percentile of a "pNN" metric as a fraction, or None."""
    match = PERCENTILE_METRIC.match(metric)
    if match is None:
        return None
    rank = float(match.group(1)) / 100
    return rank if rank > 0 else None


class AggregateRowsConfig(StageOptions):
    """
    Summarize a numeric column per group into a new sheet.

    Metrics are count, sum, mean, variance (population), min, max, pNN
    (nearest-rank percentile, e.g. "p95" or "p99.9") and rate (rows per
    second between the first and last timestamp). Timestamps are epoch
    milliseconds.

    bucketSeconds groups rows by time window before groupBy. step emits
    cumulative statistics over the first N, 2N, 3N... data rows instead of
    one row per group.
    """

    op: Literal["aggregateRows"]
    sheet: str | None = None
    target: str | None = None
    value: ColumnRef
    group_by: list[ColumnRef] = Field(default_factory=list)
    metrics: list[str] = Field(default_factory=lambda: list(DEFAULT_METRICS), min_length=1)
    timestamp: ColumnRef | None = None
    bucket_seconds: int | None = Field(default=None, gt=0)
    step: int | None = Field(default=None, gt=0)
    header_rows: int = Field(default=1, ge=0)

    @field_validator("target")
    @classmethod
    def check_target(cls, v: str | None) -> str | None:
        return validate_sheet_name(v) if v is not None else v

    @field_validator("metrics")
    @classmethod
    def check_metrics(cls, v: list[str]) -> list[str]:
        for metric in v:
            if metric not in AGGREGATE_METRICS and percentile_rank(metric) is None:
                raise ValueError(
                    f"unknown metric {metric!r}; use {', '.join(AGGREGATE_METRICS)} or pNN"
                )
        if len(set(v)) != len(v):
            raise ValueError("metrics must not repeat")
        return v

    @model_validator(mode="after")
    def check_timestamp(self) -> "AggregateRowsConfig":
        if self.timestamp is None and ("rate" in self.metrics or self.bucket_seconds):
            raise ValueError("'rate' and 'bucketSeconds' need a 'timestamp' column")
        return self


StageConfig = Annotated[
    Union[
        FilterRowsConfig,
        MergeSheetsConfig,
        RemapColumnsConfig,
        SortRowsConfig,
        SelectSheetsConfig,
        RenameSheetConfig,
        AggregateRowsConfig,
    ],
    Field(discriminator="op"),
]


# ==================== JOBS ====================


class JobState(str, Enum):
    """Orchestrator states."""

    IDLE = "idle"
    READING = "reading"
    TRANSFORMING = "transforming"
    WRITING = "writing"
    DONE = "done"
    FAILED = "failed"


class PipelineJob(BaseModel):
    """
    One read-transform-write job.

    Attributes:
        job_id: Identifier used in logs and progress events.
        inputs: Input workbook paths, read in order and combined.
        output: Output workbook path.
        stages: Ordered stage descriptors.
        streaming: Force streaming (True) or full (False) reads; None picks
            by input size.
        timeout_seconds: Deadline for the whole job's I/O.
        writer_engine: "openpyxl" or "xlsxwriter"; None uses the settings.
        overwrite: Whether an existing output may be replaced.
    """

    model_config = ConfigDict(
        alias_generator=to_camel,
        populate_by_name=True,
        extra="forbid",
    )

    job_id: str = Field(
        default_factory=lambda: uuid4().hex[:12],
        description="Identifier used in logs and progress events",
    )
    inputs: list[str] = Field(
        min_length=1,
        description="Input workbook paths, combined in order",
    )
    output: str = Field(
        description="Output workbook path",
    )
    stages: list[StageConfig] = Field(
        default_factory=list,
        description="Ordered transformation stages",
    )
    streaming: bool | None = Field(
        default=None,
        description="Force streaming (row-by-row) reads on or off",
    )
    timeout_seconds: float | None = Field(
        default=None,
        gt=0,
        description="I/O deadline for the whole job in seconds",
    )
    writer_engine: Literal["openpyxl", "xlsxwriter"] | None = Field(
        default=None,
        description="Output engine; defaults to the configured engine",
    )
    overwrite: bool = Field(
        default=False,
        description="Whether an existing output file may be replaced",
    )


class WriteResult(BaseModel):
    """Summary of one written workbook."""

    path: str | None = Field(default=None, description="Destination path, None for streams")
    engine: str = Field(description="Engine that serialized the workbook")
    bytes_written: int = Field(ge=0)
    sheets_written: int = Field(ge=0)
    rows_written: int = Field(ge=0)
    cells_written: int = Field(ge=0)
    style_count: int = Field(ge=0, description="Entries in the deduplicated style table")
    string_count: int = Field(ge=0, description="Entries in the deduplicated string table")


class JobResult(BaseModel):
    """
    Outcome of one orchestrated job.

    failed_phase and error are set only when state is "failed".
    """

    job_id: str
    state: JobState
    output_path: str | None = None
    sheets_read: int = 0
    stages_applied: int = 0
    rows_written: int = 0
    bytes_written: int = 0
    style_count: int = 0
    string_count: int = 0
    failed_phase: JobState | None = None
    error: dict | None = None
    processing_time_ms: float = Field(default=0.0, ge=0)

    @property
    def success(self) -> bool:
        return self.state == JobState.DONE


# ==================== API MODELS ====================


class ValidatePipelineRequest(BaseModel):
    stages: list[dict[str, Any]] = Field(
        description="Stage descriptors to validate",
    )


class ValidatePipelineResponse(BaseModel):
    valid: bool = Field(description="Whether every stage descriptor is valid")
    ops: list[str] = Field(default_factory=list, description="Stage ops in order")
    errors: list[dict[str, Any]] = Field(default_factory=list)


class SheetSummary(BaseModel):
    name: str
    state: str = "visible"
    row_count: int = Field(ge=0)
    column_count: int = Field(ge=0)
    cell_count: int = Field(ge=0)
    dimension: str | None = None
    declared_dimension: str | None = None
    protected: bool = False
    freeze_panes: str | None = None


class WorkbookSummary(BaseModel):
    """Shape of a workbook as returned by the inspect endpoints."""

    source: str | None = None
    sheets: list[SheetSummary] = Field(default_factory=list)
    style_count: int = Field(ge=0)
    string_count: int = Field(ge=0)


class ErrorResponse(BaseModel):
    """
    Standard error response model.

    Attributes:
        success: Always False for error responses.
        error_code: Machine-readable error code.
        message: Human-readable error message.
        details: Additional error details.
    """

    success: bool = Field(default=False)
    error_code: str
    message: str
    details: dict[str, Any] | None = None
