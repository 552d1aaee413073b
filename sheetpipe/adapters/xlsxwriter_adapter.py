"""
XlsxWriter adapter for high-performance workbook writing.

XlsxWriter cannot read workbooks, so this adapter only serializes. It
writes a deduplicated shared-string table by default; with
``constant_memory=True`` rows are flushed as they are written and strings
are stored inline instead.

Fidelity limits compared with the openpyxl engine:
    - theme and indexed colors are written as the automatic color
    - column widths are snapped to XlsxWriter's pixel grid
    - error cells cannot be written (UnsupportedValueError)
    - sheet protection with a stored password hash cannot be written
      (UnsupportedFeatureError)

Example:
    adapter = XlsxWriterAdapter(constant_memory=True)
    with open("out.xlsx", "wb") as handle:
        adapter.write_workbook(workbook, handle)
"""

import datetime
import logging
from typing import Any, BinaryIO

import xlsxwriter
from xlsxwriter.format import Format
from xlsxwriter.worksheet import Worksheet

from sheetpipe.exceptions.pipeline_exceptions import (
    UnsupportedFeatureError,
    UnsupportedValueError,
)
from sheetpipe.models.cell_models import Cell, CellValueType, Style
from sheetpipe.models.container_models import SheetProtection
from sheetpipe.models.workbook_models import Workbook
from sheetpipe.services.job_control import CHECKPOINT_ROWS, NO_CONTROL, JobControl

logger = logging.getLogger(__name__)

FIXED_TIMESTAMP = datetime.datetime(2000, 1, 1)

UNDERLINE_STYLES = {"single": 1, "double": 2, "singleAccounting": 33, "doubleAccounting": 34}

FILL_PATTERNS = {
    "solid": 1,
    "mediumGray": 2,
    "darkGray": 3,
    "lightGray": 4,
    "darkHorizontal": 5,
    "darkVertical": 6,
    "darkDown": 7,
    "darkUp": 8,
    "darkGrid": 9,
    "darkTrellis": 10,
    "lightHorizontal": 11,
    "lightVertical": 12,
    "lightDown": 13,
    "lightUp": 14,
    "lightGrid": 15,
    "lightTrellis": 16,
    "gray125": 17,
    "gray0625": 18,
}

BORDER_STYLES = {
    "thin": 1,
    "medium": 2,
    "dashed": 3,
    "dotted": 4,
    "thick": 5,
    "double": 6,
    "hair": 7,
    "mediumDashed": 8,
    "dashDot": 9,
    "mediumDashDot": 10,
    "dashDotDot": 11,
    "mediumDashDotDot": 12,
    "slantDashDot": 13,
}

HORIZONTAL_ALIGN = {
    "left": "left",
    "center": "center",
    "right": "right",
    "fill": "fill",
    "justify": "justify",
    "centerContinuous": "center_across",
    "distributed": "distributed",
}

VERTICAL_ALIGN = {
    "top": "top",
    "center": "vcenter",
    "bottom": "bottom",
    "justify": "vjustify",
    "distributed": "vdistributed",
}


def rgb_color(token: str | None) -> str | None:
    """Convert an ARGB/RGB color token to XlsxWriter's "#RRGGBB"."""
    if token is None or ":" in token or token == "auto":
        if token is not None:
            logger.debug("Color %s is not supported by XlsxWriter; using automatic", token)
        return None
    return f"#{token[-6:]}"


class XlsxWriterAdapter:
    """
    Serialize SheetPipe workbooks with XlsxWriter.

    Args:
        constant_memory: Flush each row as soon as the next one starts.
    """

    name = "xlsxwriter"

    def __init__(self, constant_memory: bool = False) -> None:
        self.constant_memory = constant_memory

    def _format_properties(self, style: Style) -> dict[str, Any]:
        """
        Translate a Style into an XlsxWriter format dictionary.

        Returns:
            Dictionary accepted by ``Workbook.add_format``.
        """
        props: dict[str, Any] = {}
        if style.number_format != "General":
            props["num_format"] = style.number_format

        font = style.font
        if font.name:
            props["font_name"] = font.name
        if font.size:
            props["font_size"] = font.size
        if font.bold:
            props["bold"] = True
        if font.italic:
            props["italic"] = True
        if font.strike:
            props["font_strikeout"] = True
        if font.underline in UNDERLINE_STYLES:
            props["underline"] = UNDERLINE_STYLES[font.underline]
        if font.vert_align == "superscript":
            props["font_script"] = 1
        elif font.vert_align == "subscript":
            props["font_script"] = 2
        if font.family is not None:
            props["font_family"] = int(font.family)
        if font.scheme:
            props["font_scheme"] = font.scheme
        font_color = rgb_color(font.color)
        if font_color:
            props["font_color"] = font_color

        fill = style.fill
        if fill.pattern_type in FILL_PATTERNS:
            props["pattern"] = FILL_PATTERNS[fill.pattern_type]
            fg_color = rgb_color(fill.fg_color)
            bg_color = rgb_color(fill.bg_color)
            if fg_color:
                props["fg_color"] = fg_color
            if bg_color:
                props["bg_color"] = bg_color

        for side_name in ("left", "right", "top", "bottom"):
            side = getattr(style.border, side_name)
            if side.style in BORDER_STYLES:
                props[side_name] = BORDER_STYLES[side.style]
                side_color = rgb_color(side.color)
                if side_color:
                    props[f"{side_name}_color"] = side_color

        alignment = style.alignment
        if alignment.horizontal in HORIZONTAL_ALIGN:
            props["align"] = HORIZONTAL_ALIGN[alignment.horizontal]
        if alignment.vertical in VERTICAL_ALIGN:
            props["valign"] = VERTICAL_ALIGN[alignment.vertical]
        if alignment.wrap_text:
            props["text_wrap"] = True
        if alignment.indent:
            props["indent"] = alignment.indent
        rotation = alignment.text_rotation
        if rotation == 255:
            props["rotation"] = 270
        elif 90 < rotation <= 180:
            props["rotation"] = 90 - rotation
        elif rotation:
            props["rotation"] = rotation

        if not style.protection.locked:
            props["locked"] = False
        if style.protection.hidden:
            props["hidden"] = True
        return props

    def _write_cell(
        self,
        worksheet: Worksheet,
        cell: Cell,
        cell_format: Format | None,
        sheet_name: str,
    ) -> None:
        """
        Write a cell with the XlsxWriter call matching its tag.

        Raises:
            UnsupportedValueError: For error cells.
        """
        row, col, value = cell.row, cell.column, cell.value
        value_type = cell.value_type
        if value_type == CellValueType.EMPTY:
            worksheet.write_blank(row, col, None, cell_format)
        elif value_type == CellValueType.BOOLEAN:
            worksheet.write_boolean(row, col, value, cell_format)
        elif value_type == CellValueType.NUMERIC:
            worksheet.write_number(row, col, value, cell_format)
        elif value_type == CellValueType.FORMULA:
            worksheet.write_formula(row, col, value, cell_format)
        elif value_type == CellValueType.TEXT:
            worksheet.write_string(row, col, value, cell_format)
        else:
            raise UnsupportedValueError(
                f"the xlsxwriter engine cannot store error value {value!r}",
                sheet=sheet_name,
                row=row,
                column=col,
            )

    def _protect(self, worksheet: Worksheet, protection: SheetProtection, sheet_name: str) -> None:
        if protection.has_password:
            raise UnsupportedFeatureError(
                f"sheet protection with a stored password hash on sheet '{sheet_name}' "
                "(use the openpyxl engine)"
            )
        # XlsxWriter options say what is allowed; the XML flags say what is locked
        worksheet.protect(
            "",
            {
                "objects": not protection.objects,
                "scenarios": not protection.scenarios,
                "format_cells": not protection.format_cells,
                "format_columns": not protection.format_columns,
                "format_rows": not protection.format_rows,
                "insert_columns": not protection.insert_columns,
                "insert_rows": not protection.insert_rows,
                "insert_hyperlinks": not protection.insert_hyperlinks,
                "delete_columns": not protection.delete_columns,
                "delete_rows": not protection.delete_rows,
                "select_locked_cells": not protection.select_locked_cells,
                "select_unlocked_cells": not protection.select_unlocked_cells,
                "sort": not protection.sort,
                "autofilter": not protection.auto_filter,
                "pivot_tables": not protection.pivot_tables,
            },
        )

    # ==================== WRITE OPERATIONS ====================

    def write_workbook(
        self,
        workbook: Workbook,
        handle: BinaryIO,
        control: JobControl | None = None,
    ) -> None:
        """
        Serialize a Workbook into an open binary stream.

        Args:
            workbook: Workbook to write (validated and style-compacted).
            handle: Writable binary stream.
            control: Cancellation/deadline control.

        Raises:
            UnsupportedValueError: If a cell holds an error value.
            UnsupportedFeatureError: If a sheet password hash must be kept.
        """
        control = control or NO_CONTROL
        output = xlsxwriter.Workbook(
            handle,
            {
                "constant_memory": self.constant_memory,
                "strings_to_numbers": False,
                "strings_to_formulas": False,
                "strings_to_urls": False,
            },
        )
        try:
            output.set_properties({"author": "sheetpipe", "created": FIXED_TIMESTAMP})
            formats: dict[int, Format] = {}
            activated = False

            for sheet in workbook.sheets:
                control.checkpoint(f"writing sheet '{sheet.name}'")
                worksheet = output.add_worksheet(sheet.name)

                for first, last, width in self._width_runs(sheet.column_widths):
                    worksheet.set_column(first, last, width)

                for row_number, (_, cells) in enumerate(sheet.iter_rows(), start=1):
                    if row_number % CHECKPOINT_ROWS == 0:
                        control.checkpoint(f"writing sheet '{sheet.name}'")
                    for cell in cells:
                        cell_format = None
                        if cell.style_id:
                            cell_format = formats.get(cell.style_id)
                            if cell_format is None:
                                style = workbook.styles.get(cell.style_id)
                                cell_format = output.add_format(self._format_properties(style))
                                formats[cell.style_id] = cell_format
                        self._write_cell(worksheet, cell, cell_format, sheet.name)

                if sheet.protection is not None:
                    self._protect(worksheet, sheet.protection, sheet.name)
                if sheet.freeze_panes:
                    worksheet.freeze_panes(sheet.freeze_panes)
                if sheet.state == "hidden":
                    worksheet.hide()
                elif sheet.state == "veryHidden":
                    worksheet.very_hidden()
                elif not activated:
                    worksheet.activate()
                    activated = True
        finally:
            output.close()

    def _width_runs(self, widths: dict[int, float]) -> list[tuple[int, int, float]]:
        runs: list[list] = []
        for column in sorted(widths):
            width = widths[column]
            if runs and runs[-1][1] == column - 1 and runs[-1][2] == width:
                runs[-1][1] = column
            else:
                runs.append([column, column, width])
        return [tuple(run) for run in runs]
