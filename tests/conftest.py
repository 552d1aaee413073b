"""
Test fixtures and utilities for the SheetPipe tests.

This module provides shared fixtures: temporary directories, sample
workbook files authored with XlsxWriter and openpyxl, in-memory workbook
builders and service instances.
"""

import datetime
import logging
import tempfile
import zipfile
from collections.abc import Callable, Generator
from pathlib import Path

import openpyxl
import pytest
import xlsxwriter
from openpyxl.styles import Font, PatternFill

from sheetpipe.adapters.container_inspector import ContainerInspector
from sheetpipe.adapters.openpyxl_adapter import OpenpyxlAdapter
from sheetpipe.adapters.xlsxwriter_adapter import XlsxWriterAdapter
from sheetpipe.config import Settings
from sheetpipe.models.cell_models import Cell, FontStyle, Style
from sheetpipe.models.workbook_models import SheetBuffer, Workbook
from sheetpipe.services.events import EventBus, ProgressEvent
from sheetpipe.services.orchestrator import PipelineOrchestrator
from sheetpipe.services.reader import WorkbookReader
from sheetpipe.services.writer import WorkbookWriter

BOLD = Style(font=FontStyle(bold=True))


@pytest.fixture
def temp_dir() -> Generator[Path, None, None]:
    """
    Create a temporary directory for test files.

    Yields:
        Path to the temporary directory.
    """
    with tempfile.TemporaryDirectory() as tmpdir:
        yield Path(tmpdir)


@pytest.fixture(autouse=True)
def reset_sheetpipe_logging() -> Generator[None, None, None]:
    """Drop handlers installed by front-ends so they don't outlive a test."""
    yield
    logger = logging.getLogger("sheetpipe")
    for handler in list(logger.handlers):
        if getattr(handler, "_sheetpipe_handler", False):
            logger.removeHandler(handler)
    logger.setLevel(logging.NOTSET)


# ==================== SERVICES ====================


@pytest.fixture
def settings() -> Settings:
    return Settings(_env_file=None)


@pytest.fixture
def inspector() -> ContainerInspector:
    return ContainerInspector()


@pytest.fixture
def openpyxl_adapter() -> OpenpyxlAdapter:
    return OpenpyxlAdapter()


@pytest.fixture
def xlsxwriter_adapter() -> XlsxWriterAdapter:
    return XlsxWriterAdapter()


@pytest.fixture
def reader(settings: Settings) -> WorkbookReader:
    return WorkbookReader(settings=settings)


@pytest.fixture
def writer(settings: Settings) -> WorkbookWriter:
    return WorkbookWriter(settings=settings)


@pytest.fixture
def event_log() -> list[ProgressEvent]:
    return []


@pytest.fixture
def bus(event_log: list[ProgressEvent]) -> EventBus:
    """
    EventBus that records every published event in event_log.
    """
    event_bus = EventBus()
    event_bus.subscribe("*", event_log.append)
    return event_bus


@pytest.fixture
def orchestrator(
    reader: WorkbookReader,
    writer: WorkbookWriter,
    bus: EventBus,
    settings: Settings,
) -> PipelineOrchestrator:
    return PipelineOrchestrator(reader=reader, writer=writer, bus=bus, settings=settings)


# ==================== IN-MEMORY WORKBOOKS ====================


@pytest.fixture
def make_workbook() -> Callable[..., Workbook]:
    """
    Factory building a Workbook from {sheet name: rows}.

    Values are tagged with Cell.from_value; None leaves the position empty.
    With bold_header=True the first row of every sheet uses a bold style.

    Example:
        workbook = make_workbook({"Sales": [["region", "amt"], ["East", 10]]})
    """

    def build(sheets: dict[str, list[list]], bold_header: bool = False) -> Workbook:
        workbook = Workbook(source="memory")
        bold_id = workbook.styles.intern(BOLD) if bold_header else 0
        for name, rows in sheets.items():
            sheet = SheetBuffer(name)
            for r, row in enumerate(rows):
                for c, value in enumerate(row):
                    if value is None:
                        continue
                    style_id = bold_id if r == 0 else 0
                    sheet.put(Cell.from_value(r, c, value, style_id=style_id))
            workbook.add_sheet(sheet)
        return workbook

    return build


def sheet_values(sheet: SheetBuffer) -> list[list]:
    """Rows of a sheet as dense value lists, from column 0 to the last used column."""
    rows = []
    for row in sheet.row_indices():
        cells = {c.column: c.value for c in sheet.row_cells(row)}
        rows.append([cells.get(c) for c in range(max(cells) + 1)])
    return rows


@pytest.fixture
def values() -> Callable[[SheetBuffer], list[list]]:
    return sheet_values


# ==================== SAMPLE FILES ====================


def write_xlsxwriter_file(path: Path, sheets: dict[str, list[list]], width: float = 14) -> Path:
    """Author a workbook with XlsxWriter: bold first row, first column widened."""
    workbook = xlsxwriter.Workbook(str(path))
    try:
        bold = workbook.add_format({"bold": True})
        for name, rows in sheets.items():
            worksheet = workbook.add_worksheet(name)
            worksheet.set_column(0, 0, width)
            for r, row in enumerate(rows):
                for c, value in enumerate(row):
                    if value is None:
                        continue
                    worksheet.write(r, c, value, bold if r == 0 else None)
    finally:
        workbook.close()
    return path


@pytest.fixture
def sales_file(temp_dir: Path) -> Path:
    """
    Create the Sales workbook used by the filter scenario.

    Returns:
        Path to a workbook with sheet "Sales": region/amt with East 10, West 20.
    """
    return write_xlsxwriter_file(
        temp_dir / "sales.xlsx",
        {"Sales": [["region", "amt"], ["East", 10], ["West", 20]]},
    )


@pytest.fixture
def keyed_files(temp_dir: Path) -> tuple[Path, Path]:
    """
    Two single-sheet workbooks sharing the key id=2.

    Returns:
        Paths (a.xlsx, b.xlsx), each with sheet "Sheet1" (id, value).
    """
    first = write_xlsxwriter_file(
        temp_dir / "a.xlsx",
        {"Sheet1": [["id", "value"], [1, "x"], [2, "y"]]},
    )
    second = write_xlsxwriter_file(
        temp_dir / "b.xlsx",
        {"Sheet1": [["id", "value"], [2, "z"], [3, "w"]]},
    )
    return first, second


@pytest.fixture
def styled_file(temp_dir: Path) -> Path:
    """
    Create a workbook exercising the carried-through sheet elements.

    Sheets:
        Data: bold/filled header, dates, column B widened, frozen at A2,
            protected with a password.
        Notes: hidden sheet.
        Empty: declared sheet with zero rows.
    """
    path = temp_dir / "styled.xlsx"
    workbook = openpyxl.Workbook()
    data = workbook.active
    data.title = "Data"
    data.append(["id", "name", "joined", "active"])
    data.append([1, "Ann", datetime.date(2024, 1, 15), True])
    data.append([2, "Bob", datetime.date(2024, 2, 1), False])
    data.append([3, "Cy", None, "=A4*2"])
    header_font = Font(bold=True, color="FF1F4E79")
    header_fill = PatternFill("solid", fgColor="FFFFFF00")
    for cell in data[1]:
        cell.font = header_font
        cell.fill = header_fill
    data["C4"].number_format = "0.00%"
    data.column_dimensions["B"].width = 25
    data.freeze_panes = "A2"
    data.protection.sheet = True
    data.protection.password = "secret"

    notes = workbook.create_sheet("Notes")
    notes["A1"] = "internal"
    notes.sheet_state = "hidden"

    workbook.create_sheet("Empty")
    workbook.save(path)
    return path


@pytest.fixture
def malformed_file(temp_dir: Path) -> Path:
    path = temp_dir / "broken.xlsx"
    path.write_bytes(b"this is not a zip package")
    return path


@pytest.fixture
def rewrite_part() -> Callable[..., Path]:
    """
    Helper that copies a zip package while rewriting one part.

    Usage:
        rewrite_part(source, target, "xl/styles.xml", lambda data: None)

    The transform receives the part's bytes; returning None drops the part.
    """

    def rewrite(
        source: Path,
        target: Path,
        part: str,
        transform: Callable[[bytes], bytes | None],
    ) -> Path:
        with zipfile.ZipFile(source) as original, zipfile.ZipFile(target, "w") as rewritten:
            for info in original.infolist():
                data = original.read(info.filename)
                if info.filename == part:
                    data = transform(data)
                    if data is None:
                        continue
                rewritten.writestr(info, data)
        return target

    return rewrite
