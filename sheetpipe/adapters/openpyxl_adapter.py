"""
Openpyxl adapter for workbook reading and writing.

This module provides the OpenpyxlAdapter class that converts between
openpyxl workbooks and SheetPipe Workbook values. Openpyxl is a pure Python
library with complete style support, which makes it the full-fidelity
engine: every Style attribute, error cells and hashed sheet passwords
survive a round trip.

Reading supports two strategies that yield the same Workbook value:
    - full: the whole sheet tree is loaded (``read_only=False``)
    - streaming: rows are parsed one at a time (``read_only=True``)

Example:
    adapter = OpenpyxlAdapter()
    with open("sales.xlsx", "rb") as handle:
        workbook = adapter.read_workbook(handle, layout, streaming=True)

    with open("out.xlsx", "wb") as handle:
        adapter.write_workbook(workbook, handle)
"""

import datetime
import logging
import zipfile
from typing import Any, BinaryIO
from xml.etree.ElementTree import ParseError

from openpyxl import Workbook as OpenpyxlWorkbook
from openpyxl import load_workbook
from openpyxl.cell.cell import MergedCell
from openpyxl.cell.read_only import EMPTY_CELL, ReadOnlyCell
from openpyxl.styles import Alignment, Border, Color, Font, PatternFill, Protection, Side
from openpyxl.styles.fills import GradientFill
from openpyxl.utils import get_column_letter, range_boundaries
from openpyxl.utils.datetime import to_excel
from openpyxl.utils.exceptions import InvalidFileException
from openpyxl.worksheet.formula import ArrayFormula, DataTableFormula
from openpyxl.worksheet.protection import SheetProtection as OpenpyxlSheetProtection
from openpyxl.writer.excel import ExcelWriter

from sheetpipe.exceptions.pipeline_exceptions import (
    MalformedContainerError,
    SheetPipeError,
    UnsupportedFeatureError,
)
from sheetpipe.models.cell_models import (
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
from sheetpipe.models.container_models import ContainerLayout, SheetProtection
from sheetpipe.models.workbook_models import SheetBuffer, Workbook
from sheetpipe.services.job_control import CHECKPOINT_ROWS, NO_CONTROL, JobControl

logger = logging.getLogger(__name__)

# Document timestamps are pinned so identical workbooks serialize identically.
FIXED_TIMESTAMP = datetime.datetime(2000, 1, 1)

DATE_TYPES = (datetime.datetime, datetime.date, datetime.time, datetime.timedelta)


def color_token(color: Color | None) -> str | None:
    """Convert an openpyxl Color into a style color token."""
    if color is None:
        return None
    if color.type == "rgb":
        token = color.rgb if isinstance(color.rgb, str) else None
    elif color.type == "theme":
        token = f"theme:{color.theme}"
    elif color.type == "indexed":
        token = f"indexed:{color.indexed}"
    elif color.type == "auto":
        return "auto"
    else:
        return None
    if token is not None and color.type != "rgb" and color.tint:
        token += f":{color.tint!r}"
    return token


def token_color(token: str | None) -> Color | None:
    """Convert a style color token back into an openpyxl Color."""
    if token is None:
        return None
    if token == "auto":
        return Color(auto=True)
    kind, _, rest = token.partition(":")
    if kind in ("theme", "indexed"):
        index, _, tint = rest.partition(":")
        tint_value = float(tint) if tint else 0.0
        if kind == "theme":
            return Color(theme=int(index), tint=tint_value)
        return Color(indexed=int(index), tint=tint_value)
    return Color(rgb=token)


class OpenpyxlAdapter:
    """
    Adapter between openpyxl and the SheetPipe workbook model.

    Attributes:
        SUPPORTED_EXTENSIONS: Tuple of supported file extensions.
        name: Engine name reported in write results.
    """

    SUPPORTED_EXTENSIONS = (".xlsx", ".xlsm")
    name = "openpyxl"

    def __init__(self) -> None:
        """Initialize the OpenpyxlAdapter."""
        self._gradient_warned = False

    # ==================== READ OPERATIONS ====================

    def _open_workbook(self, handle: BinaryIO, source: str, streaming: bool) -> Any:
        """
        Open a workbook with openpyxl.

        Formulas are kept as text (``data_only=False``).

        Raises:
            MalformedContainerError: If openpyxl cannot parse the package.
        """
        try:
            return load_workbook(
                handle,
                read_only=streaming,
                data_only=False,
                keep_links=False,
            )
        except (InvalidFileException, zipfile.BadZipFile, ParseError) as e:
            raise MalformedContainerError(source, reason=str(e)) from e
        except (KeyError, IndexError, ValueError, TypeError) as e:
            raise MalformedContainerError(source, reason=f"{type(e).__name__}: {e}") from e

    def read_workbook(
        self,
        handle: BinaryIO,
        layout: ContainerLayout,
        streaming: bool = False,
        control: JobControl | None = None,
    ) -> Workbook:
        """
        Load every worksheet of a package into a Workbook.

        Args:
            handle: Seekable binary stream positioned at the package start.
            layout: Structure reported by the ContainerInspector.
            streaming: Parse rows incrementally instead of loading the tree.
            control: Cancellation/deadline control.

        Returns:
            Workbook with one SheetBuffer per worksheet, in workbook order.

        Raises:
            MalformedContainerError: If the package content cannot be parsed.
            UnsupportedFeatureError: If a cell holds an array formula or an
                unknown error value.
        """
        control = control or NO_CONTROL
        source = layout.source
        openpyxl_wb = self._open_workbook(handle, source, streaming)

        try:
            workbook = Workbook(source=source)
            style_cache: dict[tuple, int] = {}

            for part in layout.sheets:
                if part.kind != "worksheet":
                    logger.warning("%s: skipping %s '%s'", source, part.kind, part.name)
                    continue
                control.checkpoint(f"reading sheet '{part.name}'")

                worksheet = openpyxl_wb[part.name]
                if streaming:
                    worksheet.reset_dimensions()

                buffer = SheetBuffer(
                    name=part.name,
                    state=part.state,
                    column_widths=part.column_widths,
                    protection=part.protection,
                    freeze_panes=part.freeze_panes,
                    declared_dimension=part.dimension,
                )
                covered = self._covered_positions(part.merged_ranges)
                if part.merged_ranges:
                    logger.warning(
                        "%s: %d merged range(s) in sheet '%s' are not preserved",
                        source,
                        len(part.merged_ranges),
                        part.name,
                    )

                self._read_cells(worksheet, buffer, workbook, covered, style_cache, control)
                workbook.add_sheet(buffer)
                logger.debug(
                    "Read sheet '%s': %d cells, range %s",
                    buffer.name,
                    buffer.cell_count,
                    buffer.dimensions,
                )

            return workbook

        except SheetPipeError:
            raise
        except (KeyError, IndexError, ValueError, TypeError, ParseError) as e:
            raise MalformedContainerError(source, reason=f"{type(e).__name__}: {e}") from e
        finally:
            openpyxl_wb.close()

    def _covered_positions(self, merged_ranges: list[str]) -> set[tuple[int, int]]:
        """Positions inside merged ranges other than each range's anchor."""
        covered: set[tuple[int, int]] = set()
        for ref in merged_ranges:
            min_col, min_row, max_col, max_row = range_boundaries(ref)
            for row in range(min_row - 1, max_row):
                for col in range(min_col - 1, max_col):
                    if (row, col) != (min_row - 1, min_col - 1):
                        covered.add((row, col))
        return covered

    def _read_cells(
        self,
        worksheet: Any,
        buffer: SheetBuffer,
        workbook: Workbook,
        covered: set[tuple[int, int]],
        style_cache: dict[tuple, int],
        control: JobControl,
    ) -> None:
        for row_number, row in enumerate(worksheet.iter_rows(), start=1):
            if row_number % CHECKPOINT_ROWS == 0:
                control.checkpoint(f"reading sheet '{buffer.name}'")
            for source_cell in row:
                if source_cell is EMPTY_CELL or isinstance(source_cell, MergedCell):
                    continue
                position = (source_cell.row - 1, source_cell.column - 1)
                if position in covered:
                    continue

                styled = self._has_style(source_cell)
                if source_cell.value is None and not styled:
                    continue

                style_id = 0
                if styled:
                    style_id = self._intern_style(source_cell, workbook, style_cache)

                cell = self._to_cell(source_cell, position, style_id, buffer.name)
                if cell.value_type == CellValueType.TEXT:
                    workbook.strings.intern(cell.value)
                buffer.put(cell)

    def _has_style(self, source_cell: Any) -> bool:
        if isinstance(source_cell, ReadOnlyCell):
            return any(source_cell.style_array)
        return source_cell.has_style

    def _intern_style(
        self,
        source_cell: Any,
        workbook: Workbook,
        style_cache: dict[tuple, int],
    ) -> int:
        # cells sharing a cellXfs entry share a Style
        if isinstance(source_cell, ReadOnlyCell):
            key = tuple(source_cell.style_array)
        else:
            key = (source_cell.style_id,)
        style_id = style_cache.get(key)
        if style_id is None:
            style_id = workbook.styles.intern(self._read_style(source_cell))
            style_cache[key] = style_id
        return style_id

    def _to_cell(
        self,
        source_cell: Any,
        position: tuple[int, int],
        style_id: int,
        sheet_name: str,
    ) -> Cell:
        """
        Map an openpyxl cell value to a tagged Cell.

        Dates and times become numeric serials on the 1900 date system.
        """
        row, column = position
        value = source_cell.value
        data_type = source_cell.data_type

        if value is None:
            value_type = CellValueType.EMPTY
        elif isinstance(value, (ArrayFormula, DataTableFormula)):
            raise UnsupportedFeatureError(
                f"array or data-table formula in sheet '{sheet_name}' "
                f"at {get_column_letter(column + 1)}{row + 1}"
            )
        elif data_type == "f":
            value_type = CellValueType.FORMULA
        elif data_type == "e":
            if value not in ERROR_CODES:
                raise UnsupportedFeatureError(
                    f"unknown error value {value!r} in sheet '{sheet_name}' "
                    f"at {get_column_letter(column + 1)}{row + 1}"
                )
            value_type = CellValueType.ERROR
        elif isinstance(value, bool):
            value_type = CellValueType.BOOLEAN
        elif isinstance(value, DATE_TYPES):
            value = to_excel(value)
            if isinstance(value, float) and value.is_integer():
                value = int(value)
            value_type = CellValueType.NUMERIC
        elif isinstance(value, (int, float)):
            value_type = CellValueType.NUMERIC
        else:
            value = str(value)
            value_type = CellValueType.TEXT

        return Cell(
            row=row,
            column=column,
            value_type=value_type,
            value=value,
            style_id=style_id,
        )

    def _read_style(self, source_cell: Any) -> Style:
        font = source_cell.font
        fill = source_cell.fill
        border = source_cell.border
        alignment = source_cell.alignment
        protection = source_cell.protection

        if getattr(fill, "tagname", None) == GradientFill.tagname:
            if not self._gradient_warned:
                logger.warning("Gradient fills are not supported and are read as no fill")
                self._gradient_warned = True
            fill_style = FillStyle()
        elif fill is None or fill.patternType is None:
            fill_style = FillStyle()
        else:
            fill_style = FillStyle(
                pattern_type=fill.patternType,
                fg_color=color_token(fill.fgColor),
                bg_color=color_token(fill.bgColor),
            )

        return Style(
            number_format=source_cell.number_format or "General",
            font=FontStyle(
                name=font.name,
                size=font.sz,
                bold=bool(font.b),
                italic=bool(font.i),
                underline=font.u,
                strike=bool(font.strike),
                color=color_token(font.color),
                vert_align=font.vertAlign,
                family=font.family,
                scheme=font.scheme,
            ),
            fill=fill_style,
            border=BorderStyle(
                left=self._read_side(border.left),
                right=self._read_side(border.right),
                top=self._read_side(border.top),
                bottom=self._read_side(border.bottom),
            ),
            alignment=AlignmentStyle(
                horizontal=alignment.horizontal,
                vertical=alignment.vertical,
                wrap_text=bool(alignment.wrap_text),
                text_rotation=int(alignment.textRotation or 0),
                indent=int(alignment.indent or 0),
            ),
            protection=ProtectionStyle(
                locked=protection.locked is not False,
                hidden=bool(protection.hidden),
            ),
        )

    def _read_side(self, side: Side | None) -> BorderSide:
        if side is None or side.style is None:
            return BorderSide()
        return BorderSide(style=side.style, color=color_token(side.color))

    # ==================== WRITE OPERATIONS ====================

    def write_workbook(
        self,
        workbook: Workbook,
        handle: BinaryIO,
        control: JobControl | None = None,
    ) -> None:
        """
        Serialize a Workbook into an open binary stream.

        The caller is responsible for validating values and compacting the
        style table first (see WorkbookWriter).

        Args:
            workbook: Workbook to write.
            handle: Writable binary stream.
            control: Cancellation/deadline control.
        """
        control = control or NO_CONTROL
        openpyxl_wb = OpenpyxlWorkbook()
        openpyxl_wb.remove(openpyxl_wb.active)
        openpyxl_wb.properties.creator = "sheetpipe"
        openpyxl_wb.properties.created = FIXED_TIMESTAMP
        openpyxl_wb.properties.modified = FIXED_TIMESTAMP

        style_objects: dict[int, dict[str, Any]] = {}
        first_visible = None

        for index, sheet in enumerate(workbook.sheets):
            control.checkpoint(f"writing sheet '{sheet.name}'")
            worksheet = openpyxl_wb.create_sheet(title=sheet.name)
            worksheet.sheet_state = sheet.state
            if first_visible is None and sheet.state == "visible":
                first_visible = index

            for row_number, (row, cells) in enumerate(sheet.iter_rows(), start=1):
                if row_number % CHECKPOINT_ROWS == 0:
                    control.checkpoint(f"writing sheet '{sheet.name}'")
                for cell in cells:
                    target = worksheet.cell(row=row + 1, column=cell.column + 1)
                    self._write_value(target, cell)
                    if cell.style_id:
                        objects = style_objects.get(cell.style_id)
                        if objects is None:
                            objects = self._style_objects(workbook.styles.get(cell.style_id))
                            style_objects[cell.style_id] = objects
                        target.font = objects["font"]
                        target.fill = objects["fill"]
                        target.border = objects["border"]
                        target.alignment = objects["alignment"]
                        target.protection = objects["protection"]
                        target.number_format = objects["number_format"]

            self._write_column_widths(worksheet, sheet.column_widths)
            if sheet.protection is not None:
                worksheet.protection = self._protection(sheet.protection)
            if sheet.freeze_panes:
                worksheet.freeze_panes = sheet.freeze_panes

        if first_visible:
            openpyxl_wb.active = first_visible

        archive = zipfile.ZipFile(handle, "w", zipfile.ZIP_DEFLATED, allowZip64=True)
        ExcelWriter(openpyxl_wb, archive).save()

    def _write_value(self, target: Any, cell: Cell) -> None:
        if cell.value_type == CellValueType.EMPTY:
            return
        target.value = cell.value
        # openpyxl infers formulas and errors from text; keep the cell's own tag
        if cell.value_type == CellValueType.TEXT and target.data_type != "s":
            target.data_type = "s"
        elif cell.value_type == CellValueType.ERROR:
            target.data_type = "e"

    def _style_objects(self, style: Style) -> dict[str, Any]:
        """Build the openpyxl style objects for one Style record."""
        font = style.font
        fill = style.fill
        fill_kwargs: dict[str, Any] = {"patternType": fill.pattern_type}
        if fill.pattern_type is not None:
            if fill.fg_color is not None:
                fill_kwargs["fgColor"] = token_color(fill.fg_color)
            if fill.bg_color is not None:
                fill_kwargs["bgColor"] = token_color(fill.bg_color)

        return {
            "font": Font(
                name=font.name,
                sz=font.size,
                b=font.bold or None,
                i=font.italic or None,
                u=font.underline,
                strike=font.strike or None,
                color=token_color(font.color),
                vertAlign=font.vert_align,
                family=font.family,
                scheme=font.scheme,
            ),
            "fill": PatternFill(**fill_kwargs),
            "border": Border(
                left=self._side(style.border.left),
                right=self._side(style.border.right),
                top=self._side(style.border.top),
                bottom=self._side(style.border.bottom),
            ),
            "alignment": Alignment(
                horizontal=style.alignment.horizontal,
                vertical=style.alignment.vertical,
                wrap_text=style.alignment.wrap_text or None,
                text_rotation=style.alignment.text_rotation,
                indent=style.alignment.indent,
            ),
            "protection": Protection(
                locked=style.protection.locked,
                hidden=style.protection.hidden,
            ),
            "number_format": style.number_format,
        }

    def _side(self, side: BorderSide) -> Side:
        return Side(style=side.style, color=token_color(side.color))

    def _write_column_widths(self, worksheet: Any, widths: dict[int, float]) -> None:
        """Write widths as runs of adjacent columns sharing a width."""
        runs: list[list] = []
        for column in sorted(widths):
            width = widths[column]
            if runs and runs[-1][1] == column - 1 and runs[-1][2] == width:
                runs[-1][1] = column
            else:
                runs.append([column, column, width])

        for first, last, width in runs:
            dimension = worksheet.column_dimensions[get_column_letter(first + 1)]
            dimension.width = width
            dimension.min = first + 1
            dimension.max = last + 1

    def _protection(self, protection: SheetProtection) -> OpenpyxlSheetProtection:
        result = OpenpyxlSheetProtection(
            sheet=protection.sheet,
            objects=protection.objects,
            scenarios=protection.scenarios,
            formatCells=protection.format_cells,
            formatColumns=protection.format_columns,
            formatRows=protection.format_rows,
            insertColumns=protection.insert_columns,
            insertRows=protection.insert_rows,
            insertHyperlinks=protection.insert_hyperlinks,
            deleteColumns=protection.delete_columns,
            deleteRows=protection.delete_rows,
            selectLockedCells=protection.select_locked_cells,
            selectUnlockedCells=protection.select_unlocked_cells,
            sort=protection.sort,
            autoFilter=protection.auto_filter,
            pivotTables=protection.pivot_tables,
            algorithmName=protection.algorithm_name,
            hashValue=protection.hash_value,
            saltValue=protection.salt_value,
            spinCount=protection.spin_count,
        )
        if protection.password:
            result.set_password(protection.password, already_hashed=True)
            result.sheet = protection.sheet
        return result
