"""
Workbook writer.

Validates a Workbook, compacts its style and string tables and serializes
it with one of the engines. Paths are written atomically: the engine writes
into a temporary file in the destination directory which is renamed over
the destination only after the engine has finished. The temporary file is
removed on every failure path, so no partial output is ever left behind.

Example:
    writer = WorkbookWriter()
    result = writer.write(workbook, "/data/out.xlsx", overwrite=True)
    print(result.style_count, result.bytes_written)
"""

import logging
import math
import os
import stat
import tempfile
from pathlib import Path
from typing import BinaryIO

from openpyxl.cell.cell import ILLEGAL_CHARACTERS_RE

from sheetpipe.adapters.openpyxl_adapter import OpenpyxlAdapter
from sheetpipe.adapters.xlsxwriter_adapter import XlsxWriterAdapter
from sheetpipe.config import Settings, settings as default_settings
from sheetpipe.exceptions.pipeline_exceptions import (
    IOFailureError,
    UnsupportedValueError,
)
from sheetpipe.models.cell_models import ERROR_CODES, Cell, CellValueType
from sheetpipe.models.pipeline_models import WriteResult
from sheetpipe.models.workbook_models import StringTable, StyleTable, Workbook
from sheetpipe.services.job_control import JobControl

logger = logging.getLogger(__name__)

MAX_ROWS = 1_048_576
MAX_COLUMNS = 16_384
MAX_TEXT_LENGTH = 32_767
DEFAULT_EXTENSION = ".xlsx"


class WorkbookWriter:
    """
    Serialize Workbooks to .xlsx files or streams.

    Args:
        settings: Settings providing the default engine, the XlsxWriter
            constant-memory flag and the default I/O timeout.
    """

    ENGINES = ("openpyxl", "xlsxwriter")

    def __init__(self, settings: Settings | None = None) -> None:
        self.settings = settings or default_settings

    def _adapter(self, engine: str | None) -> OpenpyxlAdapter | XlsxWriterAdapter:
        engine = engine or self.settings.writer_engine
        if engine == "openpyxl":
            return OpenpyxlAdapter()
        if engine == "xlsxwriter":
            return XlsxWriterAdapter(constant_memory=self.settings.xlsxwriter_constant_memory)
        raise ValueError(f"Unknown writer engine: {engine!r}. Expected one of {self.ENGINES}")

    # ==================== VALIDATION ====================

    def _check_cell(self, cell: Cell, sheet_name: str, styles: StyleTable) -> None:
        def reject(reason: str) -> UnsupportedValueError:
            return UnsupportedValueError(reason, sheet=sheet_name, row=cell.row, column=cell.column)

        if cell.row >= MAX_ROWS or cell.column >= MAX_COLUMNS:
            raise reject(f"position ({cell.row}, {cell.column}) is outside the sheet grid")
        if cell.style_id not in styles:
            raise reject(f"unknown style id {cell.style_id}")

        value_type = cell.value_type
        if value_type == CellValueType.NUMERIC and not math.isfinite(cell.value):
            raise reject(f"non-finite number {cell.value!r}")
        if value_type in (CellValueType.TEXT, CellValueType.FORMULA):
            if len(cell.value) > MAX_TEXT_LENGTH:
                raise reject(f"text longer than {MAX_TEXT_LENGTH} characters")
            if ILLEGAL_CHARACTERS_RE.search(cell.value):
                raise reject("text contains control characters")
        if value_type == CellValueType.FORMULA and (
            len(cell.value) < 2 or not cell.value.startswith("=")
        ):
            raise reject(f"invalid formula {cell.value!r}")
        if value_type == CellValueType.ERROR and cell.value not in ERROR_CODES:
            raise reject(f"unknown error value {cell.value!r}")

    def validate(self, workbook: Workbook) -> None:
        """
        Check that every value can be stored in an .xlsx package.

        Raises:
            UnsupportedValueError: For the first value that cannot be written.
        """
        if not workbook.sheet_names:
            raise UnsupportedValueError("a workbook needs at least one sheet")
        if all(sheet.state != "visible" for sheet in workbook.sheets):
            raise UnsupportedValueError("a workbook needs at least one visible sheet")
        for sheet in workbook.sheets:
            for cell in sheet.cells():
                self._check_cell(cell, sheet.name, workbook.styles)

    # ==================== COMPACTION ====================

    def compact(self, workbook: Workbook) -> Workbook:
        """
        Rebuild the style and string tables from the cells actually written.

        Styles are re-interned by attribute equality in first-use order
        (sheet order, then row, then column), so attribute-identical styles
        collapse to one entry and unused ones disappear. Strings are
        collected in the same order.
        """
        styles = StyleTable()
        strings = StringTable()
        remap: dict[int, int] = {0: 0}
        sheets = []
        for sheet in workbook.sheets:
            compacted = sheet.derive()
            for cell in sheet.cells():
                style_id = remap.get(cell.style_id)
                if style_id is None:
                    style_id = styles.intern(workbook.styles.get(cell.style_id))
                    remap[cell.style_id] = style_id
                if style_id != cell.style_id:
                    cell = cell.model_copy(update={"style_id": style_id})
                if cell.value_type == CellValueType.TEXT:
                    strings.intern(cell.value)
                compacted.put(cell)
            sheets.append(compacted)
        return Workbook(sheets=sheets, styles=styles, strings=strings, source=workbook.source)

    # ==================== WRITE OPERATIONS ====================

    def _resolve_path(self, destination: str) -> Path:
        path = Path(destination)
        if not path.suffix:
            path = path.with_suffix(DEFAULT_EXTENSION)
        return path

    def write(
        self,
        workbook: Workbook,
        destination: str | BinaryIO,
        engine: str | None = None,
        overwrite: bool = False,
        control: JobControl | None = None,
    ) -> WriteResult:
        """
        Validate, compact and serialize a workbook.

        Args:
            workbook: Workbook to write.
            destination: Output path or writable binary stream. A path
                without an extension gets ".xlsx".
            engine: "openpyxl" or "xlsxwriter"; defaults to the settings.
            overwrite: Replace an existing destination file.
            control: Cancellation/deadline control.

        Returns:
            WriteResult summarizing what was written.

        Raises:
            UnsupportedValueError: A value cannot be stored (nothing written).
            UnsupportedFeatureError: The engine cannot store a sheet feature.
            IOFailureError: Filesystem error, existing destination without
                overwrite, or deadline expiry.
        """
        self.validate(workbook)
        compacted = self.compact(workbook)
        adapter = self._adapter(engine)

        if isinstance(destination, str):
            path = self._resolve_path(destination)
            if control is None:
                control = JobControl(
                    timeout_seconds=self.settings.io_timeout_seconds, resource=str(path)
                )
            bytes_written = self._write_path(compacted, path, adapter, overwrite, control)
            path_text: str | None = str(path)
        else:
            if control is None:
                control = JobControl(
                    timeout_seconds=self.settings.io_timeout_seconds, resource="<stream>"
                )
            start = destination.tell() if destination.seekable() else 0
            try:
                adapter.write_workbook(compacted, destination, control)
                destination.flush()
                bytes_written = destination.tell() - start if destination.seekable() else 0
            except OSError as e:
                raise IOFailureError(path="<stream>", operation="write", reason=str(e)) from e
            path_text = None

        sheets = compacted.sheets
        result = WriteResult(
            path=path_text,
            engine=adapter.name,
            bytes_written=bytes_written,
            sheets_written=len(sheets),
            rows_written=sum(s.row_count for s in sheets),
            cells_written=sum(s.cell_count for s in sheets),
            style_count=len(compacted.styles),
            string_count=len(compacted.strings),
        )
        logger.info(
            "Wrote %s with %s: %d sheet(s), %d row(s), %d style(s), %d string(s)",
            path_text or "<stream>",
            adapter.name,
            result.sheets_written,
            result.rows_written,
            result.style_count,
            result.string_count,
        )
        return result

    def _write_path(
        self,
        workbook: Workbook,
        path: Path,
        adapter: OpenpyxlAdapter | XlsxWriterAdapter,
        overwrite: bool,
        control: JobControl,
    ) -> int:
        """Write to a temporary sibling file and rename it over path."""
        if path.exists() and not overwrite:
            raise IOFailureError(
                path=str(path), operation="write", reason="destination exists (overwrite not set)"
            )
        directory = path.parent
        if not directory.is_dir():
            raise IOFailureError(
                path=str(path), operation="write", reason=f"directory does not exist: {directory}"
            )

        try:
            fd, temp_name = tempfile.mkstemp(
                prefix=f".{path.stem}.", suffix=".tmp", dir=directory
            )
        except OSError as e:
            raise IOFailureError(path=str(path), operation="create", reason=str(e)) from e

        try:
            with os.fdopen(fd, "w+b") as handle:
                adapter.write_workbook(workbook, handle, control)
                handle.flush()
                os.fsync(handle.fileno())
            control.checkpoint(f"writing {path.name}")
            os.chmod(temp_name, stat.S_IMODE(path.stat().st_mode) if path.exists() else 0o644)
            os.replace(temp_name, path)
            return path.stat().st_size
        except OSError as e:
            self._discard(temp_name)
            raise IOFailureError(path=str(path), operation="write", reason=str(e)) from e
        except BaseException:
            self._discard(temp_name)
            raise

    def _discard(self, temp_name: str) -> None:
        try:
            os.unlink(temp_name)
        except FileNotFoundError:
            pass
        except OSError as e:
            logger.warning("Could not remove temporary file %s: %s", temp_name, e)
