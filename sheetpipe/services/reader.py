"""
Workbook reader.

Turns a workbook file (or binary stream) into a Workbook value in two
passes: the ContainerInspector checks the package structure and collects
sheet-level metadata, then the OpenpyxlAdapter loads the cells in full or
streaming mode. Both modes produce equal Workbook values; streaming only
bounds peak memory on large inputs.

Example:
    reader = WorkbookReader()
    workbook = reader.read("/data/sales.xlsx")
    print(workbook.sheet_names)
"""

import logging
import os
from pathlib import Path
from typing import BinaryIO

from sheetpipe.adapters.container_inspector import ContainerInspector
from sheetpipe.adapters.openpyxl_adapter import OpenpyxlAdapter
from sheetpipe.config import Settings, settings as default_settings
from sheetpipe.exceptions.pipeline_exceptions import (
    InputNotFoundError,
    IOFailureError,
    MalformedContainerError,
    UnsupportedFeatureError,
)
from sheetpipe.models.container_models import ContainerLayout
from sheetpipe.models.workbook_models import Workbook
from sheetpipe.services.job_control import JobControl

logger = logging.getLogger(__name__)

UNSUPPORTED_FORMATS = {
    ".xls": "legacy binary .xls workbook",
    ".xlsb": "binary .xlsb workbook",
    ".ods": "OpenDocument spreadsheet",
}


class WorkbookReader:
    """
    Read workbooks into SheetPipe Workbook values.

    Args:
        adapter: Cell-loading engine (defaults to OpenpyxlAdapter).
        inspector: Package inspector (defaults to ContainerInspector).
        settings: Settings providing the streaming threshold and the
            default I/O timeout.
    """

    SUPPORTED_EXTENSIONS = OpenpyxlAdapter.SUPPORTED_EXTENSIONS

    def __init__(
        self,
        adapter: OpenpyxlAdapter | None = None,
        inspector: ContainerInspector | None = None,
        settings: Settings | None = None,
    ) -> None:
        self.adapter = adapter or OpenpyxlAdapter()
        self.inspector = inspector or ContainerInspector()
        self.settings = settings or default_settings

    def _validate_file_path(self, file_path: str) -> Path:
        """
        Validate that the file exists and has a supported extension.

        Raises:
            InputNotFoundError: If the file does not exist.
            UnsupportedFeatureError: For .xls, .xlsb and .ods files.
            MalformedContainerError: For any other unknown extension.
        """
        path = Path(file_path)

        if not path.exists():
            raise InputNotFoundError(file_path)

        suffix = path.suffix.lower()
        if suffix in UNSUPPORTED_FORMATS:
            raise UnsupportedFeatureError(UNSUPPORTED_FORMATS[suffix], source=file_path)
        if suffix not in self.SUPPORTED_EXTENSIONS:
            raise MalformedContainerError(
                file_path,
                reason=f"Unsupported file extension: {path.suffix or '(none)'}",
            )
        return path

    def _use_streaming(self, size: int | None, streaming: bool | None) -> bool:
        if streaming is not None:
            return streaming
        if size is None:
            return False
        return size >= self.settings.streaming_threshold_bytes

    # ==================== READ OPERATIONS ====================

    def inspect(self, source: str | BinaryIO, control: JobControl | None = None) -> ContainerLayout:
        """
        Inspect the package structure without loading cells.

        Raises:
            Same as read(), minus cell-level errors.
        """
        if isinstance(source, str):
            self._validate_file_path(source)
        return self.inspector.inspect(source, control=control)

    def read(
        self,
        source: str | BinaryIO,
        streaming: bool | None = None,
        control: JobControl | None = None,
        source_name: str | None = None,
    ) -> Workbook:
        """
        Read a workbook.

        Args:
            source: Path or seekable binary stream.
            streaming: True for row-by-row parsing, False to load the full
                tree, None to pick by file size.
            control: Cancellation/deadline control. Defaults to a fresh
                control with the configured I/O timeout.
            source_name: Name used in errors and logs for streams.

        Returns:
            Workbook with one SheetBuffer per worksheet.

        Raises:
            InputNotFoundError: The path does not exist.
            UnsupportedFeatureError: Encrypted, legacy or unhandled content.
            MalformedContainerError: Corrupt or inconsistent package.
            IOFailureError: Filesystem error or deadline expiry.
        """
        name = source_name or (source if isinstance(source, str) else "<stream>")
        if control is None:
            control = JobControl(timeout_seconds=self.settings.io_timeout_seconds, resource=name)

        if isinstance(source, str):
            path = self._validate_file_path(source)
            try:
                size = path.stat().st_size
                with open(path, "rb") as handle:
                    return self._read_stream(handle, name, self._use_streaming(size, streaming), control)
            except OSError as e:
                raise IOFailureError(path=name, operation="read", reason=str(e)) from e

        size = None
        if source.seekable():
            position = source.tell()
            size = source.seek(0, os.SEEK_END) - position
            source.seek(position)
        return self._read_stream(source, name, self._use_streaming(size, streaming), control)

    def _read_stream(
        self,
        handle: BinaryIO,
        name: str,
        streaming: bool,
        control: JobControl,
    ) -> Workbook:
        layout = self.inspector.inspect(handle, source_name=name, control=control)
        if layout.has_macros:
            logger.warning("%s: VBA project is not carried to the output", name)

        logger.info(
            "Reading %s (%d sheet(s), %s mode)",
            name,
            len(layout.sheets),
            "streaming" if streaming else "full",
        )
        try:
            return self.adapter.read_workbook(handle, layout, streaming=streaming, control=control)
        except OSError as e:
            raise IOFailureError(path=name, operation="read", reason=str(e)) from e
