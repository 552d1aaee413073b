"""
Custom exceptions for SheetPipe.

Provides the error taxonomy shared by the reader, the transform stages,
the writer and the orchestrator.
"""

from sheetpipe.exceptions.pipeline_exceptions import (
    ColumnNotFoundError,
    DuplicateSheetError,
    InputNotFoundError,
    IOFailureError,
    JobCancelledError,
    MalformedContainerError,
    MergeConflictError,
    RemapCollisionError,
    SheetNotFoundError,
    SheetPipeError,
    UnsupportedFeatureError,
    UnsupportedValueError,
)
from sheetpipe.exceptions.pipeline_exceptions import (
    ValidationError as PipelineValidationError,
)

__all__ = [
    "SheetPipeError",
    "MalformedContainerError",
    "UnsupportedFeatureError",
    "MergeConflictError",
    "RemapCollisionError",
    "UnsupportedValueError",
    "IOFailureError",
    "InputNotFoundError",
    "PipelineValidationError",
    "SheetNotFoundError",
    "ColumnNotFoundError",
    "DuplicateSheetError",
    "JobCancelledError",
]
