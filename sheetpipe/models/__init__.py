"""
Data models for SheetPipe.

Cells and styles are frozen pydantic models, the workbook containers are
plain classes, and job/stage configuration is validated with pydantic.
"""

from sheetpipe.models.cell_models import (
    DEFAULT_STYLE,
    ERROR_CODES,
    AlignmentStyle,
    BorderSide,
    BorderStyle,
    Cell,
    CellValueType,
    FillStyle,
    FontStyle,
    ProtectionStyle,
    Style,
)
from sheetpipe.models.container_models import (
    ContainerLayout,
    SheetPart,
    SheetProtection,
)
from sheetpipe.models.pipeline_models import (
    ErrorResponse,
    FilterRowsConfig,
    JobResult,
    JobState,
    MergeSheetsConfig,
    PipelineJob,
    RemapColumnsConfig,
    RenameSheetConfig,
    RowPredicate,
    SelectSheetsConfig,
    SheetSummary,
    SortKey,
    SortRowsConfig,
    StageConfig,
    ValidatePipelineRequest,
    ValidatePipelineResponse,
    WorkbookSummary,
    WriteResult,
)
from sheetpipe.models.workbook_models import (
    SheetBuffer,
    StringTable,
    StyleTable,
    Workbook,
)

__all__ = [
    "Cell",
    "CellValueType",
    "ERROR_CODES",
    "Style",
    "DEFAULT_STYLE",
    "FontStyle",
    "FillStyle",
    "BorderSide",
    "BorderStyle",
    "AlignmentStyle",
    "ProtectionStyle",
    "SheetProtection",
    "SheetPart",
    "ContainerLayout",
    "SheetBuffer",
    "StyleTable",
    "StringTable",
    "Workbook",
    "StageConfig",
    "RowPredicate",
    "FilterRowsConfig",
    "MergeSheetsConfig",
    "RemapColumnsConfig",
    "SortKey",
    "SortRowsConfig",
    "SelectSheetsConfig",
    "RenameSheetConfig",
    "PipelineJob",
    "JobState",
    "JobResult",
    "WriteResult",
    "ValidatePipelineRequest",
    "ValidatePipelineResponse",
    "SheetSummary",
    "WorkbookSummary",
    "ErrorResponse",
]
