"""
Exception hierarchy for SheetPipe jobs.

Every failure raised by the reader, the transform stages, the writer or the
orchestrator derives from SheetPipeError, so callers can catch the whole
family with one except clause and turn it into an API payload via to_dict().

Example:
    try:
        orchestrator.run(job)
    except MergeConflictError as e:
        logger.error(f"Conflicting key {e.key} on sheet {e.sheet}")
    except SheetPipeError as e:
        logger.error(f"Job failed: {e}")
"""

from typing import Any


class SheetPipeError(Exception):
    """
    Base exception for all SheetPipe errors.

    Attributes:
        message: Human-readable error description.
        error_code: Machine-readable error code for API responses and CLI.
        details: Additional context (stage index, sheet, row, column, ...).
    """

    def __init__(
        self,
        message: str,
        error_code: str = "SHEETPIPE_ERROR",
        details: dict | None = None,
    ) -> None:
        """
        Initialize the SheetPipeError.

        Args:
            message: Human-readable error description.
            error_code: Machine-readable error code for API responses.
            details: Optional additional context about the error.
        """
        super().__init__(message)
        self.message = message
        self.error_code = error_code
        self.details = details or {}

    def add_context(self, **context: Any) -> "SheetPipeError":
        """
        Attach location context without overwriting values set at the source.

        None values are ignored, so callers can pass what they know.

        Returns:
            The same exception, for use in ``raise err.add_context(...)``.
        """
        for key, value in context.items():
            if value is not None and self.details.get(key) is None:
                self.details[key] = value
        return self

    def to_dict(self) -> dict:
        """
        Convert exception to a dictionary for API responses.

        Returns:
            Dictionary containing error_code, message, and details.
        """
        return {
            "error_code": self.error_code,
            "message": self.message,
            "details": self.details,
        }


class MalformedContainerError(SheetPipeError):
    """
    Raised when an input workbook is corrupt or structurally inconsistent.

    Covers files that are not zip packages, unparseable XML parts, sheets
    pointing at missing relationships and unresolvable shared-string
    indices.
    """

    def __init__(
        self,
        source: str,
        reason: str | None = None,
        part: str | None = None,
    ) -> None:
        self.source = source
        self.reason = reason
        self.part = part

        message = f"Malformed workbook container: {source}"
        if part:
            message += f" [{part}]"
        if reason:
            message += f" - {reason}"

        super().__init__(
            message=message,
            error_code="MALFORMED_CONTAINER",
            details={"source": source, "part": part, "reason": reason},
        )


class UnsupportedFeatureError(SheetPipeError):
    """
    Raised when the input is valid but uses a construct SheetPipe can't handle.

    Examples are encrypted (password-protected) workbooks, legacy binary
    formats and array formulas.
    """

    def __init__(self, feature: str, source: str | None = None) -> None:
        self.feature = feature
        self.source = source

        message = f"Unsupported feature: {feature}"
        if source:
            message += f" ({source})"

        super().__init__(
            message=message,
            error_code="UNSUPPORTED_FEATURE",
            details={"feature": feature, "source": source},
        )


class MergeConflictError(SheetPipeError):
    """
    Raised by mergeSheets with conflictPolicy="error" when two rows collide.

    Attributes:
        sheet: Sheet holding the conflicting row.
        row: Zero-based row index of the conflicting row in that sheet.
        column: Zero-based column of the conflicting cell (overlay merges).
        key: Row key values that collided (keyed merges).
    """

    def __init__(
        self,
        sheet: str,
        row: int,
        column: int | None = None,
        key: list | None = None,
        key_columns: list[str] | None = None,
        target: str | None = None,
    ) -> None:
        self.sheet = sheet
        self.row = row
        self.column = column
        self.key = key

        if key is not None:
            message = f"Merge conflict on key {key!r} in sheet '{sheet}' at row {row}"
        else:
            message = f"Merge conflict in sheet '{sheet}' at row {row}, column {column}"

        super().__init__(
            message=message,
            error_code="MERGE_CONFLICT",
            details={
                "sheet": sheet,
                "row": row,
                "column": column,
                "key": key,
                "key_columns": key_columns,
                "target": target,
            },
        )


class RemapCollisionError(SheetPipeError):
    """
    Raised when a column mapping sends two source columns to one destination.
    """

    def __init__(self, sheet: str, destination: int, sources: list[int]) -> None:
        self.sheet = sheet
        self.destination = destination
        self.sources = sources

        super().__init__(
            message=(
                f"Column remap collision in sheet '{sheet}': columns {sources} "
                f"all map to column {destination}"
            ),
            error_code="REMAP_COLLISION",
            details={
                "sheet": sheet,
                "column": destination,
                "sources": sources,
            },
        )


class UnsupportedValueError(SheetPipeError):
    """
    Raised when the output format cannot represent a cell value.
    """

    def __init__(
        self,
        reason: str,
        sheet: str | None = None,
        row: int | None = None,
        column: int | None = None,
    ) -> None:
        self.reason = reason
        self.sheet = sheet
        self.row = row
        self.column = column

        location = ""
        if sheet is not None:
            location = f" in sheet '{sheet}'"
            if row is not None:
                location += f" at row {row}, column {column}"

        super().__init__(
            message=f"Unsupported value{location}: {reason}",
            error_code="UNSUPPORTED_VALUE",
            details={"sheet": sheet, "row": row, "column": column, "reason": reason},
        )


class IOFailureError(SheetPipeError):
    """
    Raised on filesystem or stream errors, including I/O timeouts.

    Attributes:
        path: Path (or stream description) being accessed.
        operation: The operation that failed (read, write, rename, ...).
    """

    def __init__(
        self,
        path: str,
        operation: str = "access",
        reason: str | None = None,
        error_code: str = "IO_FAILURE",
    ) -> None:
        self.path = path
        self.operation = operation
        self.reason = reason

        message = f"Failed to {operation}: {path}"
        if reason:
            message += f" - {reason}"

        super().__init__(
            message=message,
            error_code=error_code,
            details={"path": path, "operation": operation, "reason": reason},
        )


class InputNotFoundError(IOFailureError):
    """
    Raised when an input workbook does not exist.
    """

    def __init__(self, path: str) -> None:
        super().__init__(
            path=path,
            operation="open",
            reason="file does not exist",
            error_code="FILE_NOT_FOUND",
        )


class ValidationError(SheetPipeError):
    """
    Raised when a job or stage configuration is invalid.

    Always raised before any I/O is attempted.

    Attributes:
        errors: One entry per problem, each with "loc", "msg" and, for
            stage descriptors, "stage_index".
    """

    def __init__(self, errors: list[dict], message: str | None = None) -> None:
        self.errors = errors

        if message is None:
            first = errors[0] if errors else {}
            message = "Invalid pipeline configuration"
            if "stage_index" in first:
                message += f" at stage {first['stage_index']}"
            if first.get("msg"):
                message += f": {first['msg']}"

        details: dict = {"errors": errors}
        if errors and "stage_index" in errors[0]:
            details["stage_index"] = errors[0]["stage_index"]

        super().__init__(
            message=message,
            error_code="VALIDATION_ERROR",
            details=details,
        )


class SheetNotFoundError(SheetPipeError):
    """
    Raised when a stage names a sheet that is not in the workbook.

    Attributes:
        sheet_name: Name of the sheet that was not found.
        available_sheets: List of sheets available in the workbook.
    """

    def __init__(
        self,
        sheet_name: str,
        available_sheets: list[str] | None = None,
    ) -> None:
        self.sheet_name = sheet_name
        self.available_sheets = available_sheets or []

        message = f"Sheet not found: {sheet_name}"
        if available_sheets:
            message += f". Available sheets: {', '.join(available_sheets)}"

        super().__init__(
            message=message,
            error_code="SHEET_NOT_FOUND",
            details={
                "sheet": sheet_name,
                "available_sheets": self.available_sheets,
            },
        )


class ColumnNotFoundError(SheetPipeError):
    """
    Raised when a column reference cannot be resolved against a sheet header.
    """

    def __init__(self, column: str | int, sheet: str) -> None:
        self.column_ref = column
        self.sheet = sheet

        super().__init__(
            message=f"Column {column!r} not found in sheet '{sheet}'",
            error_code="COLUMN_NOT_FOUND",
            details={"sheet": sheet, "column_ref": column},
        )


class DuplicateSheetError(SheetPipeError):
    """
    Raised when a sheet name would appear twice in one workbook.
    """

    def __init__(self, sheet_name: str) -> None:
        self.sheet_name = sheet_name

        super().__init__(
            message=f"Sheet already exists: {sheet_name}",
            error_code="DUPLICATE_SHEET",
            details={"sheet": sheet_name},
        )


class JobCancelledError(SheetPipeError):
    """
    Raised at a cancellation checkpoint after the job was cancelled.
    """

    def __init__(self, where: str | None = None) -> None:
        message = "Job cancelled"
        if where:
            message += f" during {where}"

        super().__init__(
            message=message,
            error_code="JOB_CANCELLED",
            details={"where": where},
        )
