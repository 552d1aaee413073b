"""
In-memory workbook representation.

A Workbook owns an ordered list of SheetBuffers plus the style and string
tables their cells refer to. The tables are arenas: cells hold integer ids,
never references to records. Every transform stage returns a new Workbook;
sheets handed to a new Workbook are copied when they still belong to the
old one, so no mutable buffer is shared between stage outputs.
"""

from collections.abc import Iterable, Iterator

from openpyxl.utils import get_column_letter

from sheetpipe.exceptions.pipeline_exceptions import (
    DuplicateSheetError,
    SheetNotFoundError,
)
from sheetpipe.models.cell_models import (
    DEFAULT_STYLE,
    Cell,
    CellValueType,
    Style,
)
from sheetpipe.models.container_models import SheetProtection

MAX_SHEET_NAME_LENGTH = 31


class StyleTable:
    """
    Deduplicated arena of Style records addressed by index.

    Index 0 always holds the default style. Interning an attribute-equal
    style returns the index already assigned to it.
    """

    def __init__(self, styles: Iterable[Style] | None = None) -> None:
        self._styles: list[Style] = []
        self._index: dict[Style, int] = {}
        self.intern(DEFAULT_STYLE)
        for style in styles or ():
            self.intern(style)

    def intern(self, style: Style) -> int:
        style_id = self._index.get(style)
        if style_id is None:
            style_id = len(self._styles)
            self._styles.append(style)
            self._index[style] = style_id
        return style_id

    def get(self, style_id: int) -> Style:
        if not 0 <= style_id < len(self._styles):
            raise KeyError(f"Unknown style id: {style_id}")
        return self._styles[style_id]

    def __contains__(self, style_id: object) -> bool:
        return isinstance(style_id, int) and 0 <= style_id < len(self._styles)

    def __len__(self) -> int:
        return len(self._styles)

    def __iter__(self) -> Iterator[Style]:
        return iter(self._styles)

    def copy(self) -> "StyleTable":
        table = StyleTable()
        table._styles = list(self._styles)
        table._index = dict(self._index)
        return table


class StringTable:
    """Deduplicated arena of text values in first-seen order."""

    def __init__(self, strings: Iterable[str] | None = None) -> None:
        self._strings: list[str] = []
        self._index: dict[str, int] = {}
        for text in strings or ():
            self.intern(text)

    def intern(self, text: str) -> int:
        string_id = self._index.get(text)
        if string_id is None:
            string_id = len(self._strings)
            self._strings.append(text)
            self._index[text] = string_id
        return string_id

    def get(self, string_id: int) -> str:
        return self._strings[string_id]

    def index_of(self, text: str) -> int | None:
        return self._index.get(text)

    def __len__(self) -> int:
        return len(self._strings)

    def __iter__(self) -> Iterator[str]:
        return iter(self._strings)

    def copy(self) -> "StringTable":
        table = StringTable()
        table._strings = list(self._strings)
        table._index = dict(self._index)
        return table


class SheetBuffer:
    """
    Sparse grid of cells for one worksheet.

    Rows map to {column: Cell}. Bounds are tracked as cells are added, and a
    position can hold at most one cell. Sheet-level elements that are carried
    through unchanged (column widths, protection, visibility, frozen panes)
    live on the buffer as metadata.

    Attributes:
        name: Sheet name, unique within its workbook.
        state: "visible", "hidden" or "veryHidden".
        column_widths: Zero-based column index to width in characters.
        protection: Sheet protection settings, or None if unprotected.
        freeze_panes: Top-left unfrozen cell (e.g. "A2"), or None.
        declared_dimension: Used range the input file declared for the sheet.
            Only buffers read from a file carry it; derived buffers do not.
    """

    def __init__(
        self,
        name: str,
        state: str = "visible",
        column_widths: dict[int, float] | None = None,
        protection: SheetProtection | None = None,
        freeze_panes: str | None = None,
        declared_dimension: str | None = None,
    ) -> None:
        self.name = name
        self.state = state
        self.column_widths: dict[int, float] = dict(column_widths or {})
        self.protection = protection
        self.freeze_panes = freeze_panes
        self.declared_dimension = declared_dimension
        self._rows: dict[int, dict[int, Cell]] = {}
        self._cell_count = 0
        self.min_row: int | None = None
        self.max_row: int | None = None
        self.min_column: int | None = None
        self.max_column: int | None = None

    # ==================== MUTATION ====================

    def put(self, cell: Cell, replace: bool = False) -> None:
        """
        Place a cell at its own position.

        Raises:
            ValueError: If the position is already occupied and replace is
                False.
        """
        row = self._rows.setdefault(cell.row, {})
        if cell.column in row:
            if not replace:
                raise ValueError(
                    f"Cell ({cell.row}, {cell.column}) already occupied in sheet '{self.name}'"
                )
        else:
            self._cell_count += 1
        row[cell.column] = cell
        self._track(cell.row, cell.column)

    def extend(self, cells: Iterable[Cell]) -> None:
        for cell in cells:
            self.put(cell)

    def _track(self, row: int, column: int) -> None:
        if self.min_row is None:
            self.min_row = self.max_row = row
            self.min_column = self.max_column = column
            return
        self.min_row = min(self.min_row, row)
        self.max_row = max(self.max_row, row)
        self.min_column = min(self.min_column, column)
        self.max_column = max(self.max_column, column)

    # ==================== ACCESS ====================

    def get(self, row: int, column: int) -> Cell | None:
        return self._rows.get(row, {}).get(column)

    def row_cells(self, row: int) -> list[Cell]:
        """Cells of one row ordered by column."""
        cells = self._rows.get(row, {})
        return [cells[c] for c in sorted(cells)]

    def row_indices(self) -> list[int]:
        return sorted(self._rows)

    def iter_rows(self) -> Iterator[tuple[int, list[Cell]]]:
        """Yield (row index, cells ordered by column) in row order."""
        for row in self.row_indices():
            yield row, self.row_cells(row)

    def cells(self) -> Iterator[Cell]:
        """All cells in row-major order."""
        for _, cells in self.iter_rows():
            yield from cells

    @property
    def cell_count(self) -> int:
        return self._cell_count

    @property
    def row_count(self) -> int:
        return len(self._rows)

    @property
    def is_empty(self) -> bool:
        return self._cell_count == 0

    @property
    def dimensions(self) -> str | None:
        """Used range in A1 notation, or None for an empty sheet."""
        if self.min_row is None:
            return None
        return (
            f"{get_column_letter(self.min_column + 1)}{self.min_row + 1}:"
            f"{get_column_letter(self.max_column + 1)}{self.max_row + 1}"
        )

    # ==================== DERIVATION ====================

    def derive(self, name: str | None = None) -> "SheetBuffer":
        """Return an empty buffer carrying this sheet's metadata."""
        return SheetBuffer(
            name=name or self.name,
            state=self.state,
            column_widths=self.column_widths,
            protection=self.protection,
            freeze_panes=self.freeze_panes,
        )

    def copy(self, name: str | None = None) -> "SheetBuffer":
        """Return a copy with its own row maps. Cells are immutable and shared."""
        buffer = self.derive(name)
        buffer.declared_dimension = self.declared_dimension
        buffer._rows = {r: dict(cells) for r, cells in self._rows.items()}
        buffer._cell_count = self._cell_count
        buffer.min_row, buffer.max_row = self.min_row, self.max_row
        buffer.min_column, buffer.max_column = self.min_column, self.max_column
        return buffer

    def __repr__(self) -> str:
        return f"<SheetBuffer {self.name!r} cells={self._cell_count} range={self.dimensions}>"


class Workbook:
    """
    Ordered collection of uniquely named sheets plus shared tables.

    Sheet names are unique case-insensitively, as in Excel.

    Attributes:
        styles: StyleTable referenced by cell style ids.
        strings: StringTable of text values seen by the reader.
        source: Description of where the workbook came from.
    """

    def __init__(
        self,
        sheets: Iterable[SheetBuffer] | None = None,
        styles: StyleTable | None = None,
        strings: StringTable | None = None,
        source: str | None = None,
    ) -> None:
        self.styles = styles if styles is not None else StyleTable()
        self.strings = strings if strings is not None else StringTable()
        self.source = source
        self._sheets: list[SheetBuffer] = []
        for sheet in sheets or ():
            self.add_sheet(sheet)

    @property
    def sheets(self) -> list[SheetBuffer]:
        return list(self._sheets)

    @property
    def sheet_names(self) -> list[str]:
        return [s.name for s in self._sheets]

    def has_sheet(self, name: str) -> bool:
        folded = name.casefold()
        return any(s.name.casefold() == folded for s in self._sheets)

    def get_sheet(self, name: str) -> SheetBuffer:
        for sheet in self._sheets:
            if sheet.name == name:
                return sheet
        raise SheetNotFoundError(name, self.sheet_names)

    def add_sheet(self, sheet: SheetBuffer) -> None:
        """
        Append a sheet while the workbook is being built.

        Raises:
            DuplicateSheetError: If a sheet with the same name exists.
        """
        if self.has_sheet(sheet.name):
            raise DuplicateSheetError(sheet.name)
        self._sheets.append(sheet)

    def unique_sheet_name(self, name: str) -> str:
        """Return name, or "name (N)" trimmed to Excel's limit if it is taken."""
        if not self.has_sheet(name):
            return name
        n = 2
        while True:
            suffix = f" ({n})"
            candidate = name[: MAX_SHEET_NAME_LENGTH - len(suffix)] + suffix
            if not self.has_sheet(candidate):
                return candidate
            n += 1

    # ==================== DERIVATION ====================

    def with_sheets(self, sheets: Iterable[SheetBuffer]) -> "Workbook":
        """
        Return a new workbook holding the given sheets and copies of the tables.

        Sheets that still belong to this workbook are copied first.
        """
        owned = {id(s) for s in self._sheets}
        return Workbook(
            sheets=[s.copy() if id(s) in owned else s for s in sheets],
            styles=self.styles.copy(),
            strings=self.strings.copy(),
            source=self.source,
        )

    def replace_sheet(self, sheet: SheetBuffer, name: str | None = None) -> "Workbook":
        """Return a new workbook with the sheet called name (default sheet.name) replaced."""
        name = name or sheet.name
        self.get_sheet(name)
        return self.with_sheets(sheet if s.name == name else s for s in self._sheets)

    def clone(self) -> "Workbook":
        return self.with_sheets(self._sheets)

    @classmethod
    def combine(cls, workbooks: list["Workbook"]) -> "Workbook":
        """
        Combine several workbooks into one.

        Styles are re-interned into a single table by attribute equality.
        Colliding sheet names get a " (2)", " (3)", ... suffix.
        """
        if len(workbooks) == 1:
            return workbooks[0]

        result = cls(source=", ".join(wb.source or "<memory>" for wb in workbooks))
        for workbook in workbooks:
            style_map = [result.styles.intern(style) for style in workbook.styles]
            for sheet in workbook.sheets:
                target = sheet.derive(result.unique_sheet_name(sheet.name))
                for cell in sheet.cells():
                    style_id = style_map[cell.style_id]
                    if style_id != cell.style_id:
                        cell = cell.model_copy(update={"style_id": style_id})
                    if cell.value_type == CellValueType.TEXT:
                        result.strings.intern(cell.value)
                    target.put(cell)
                result.add_sheet(target)
        return result

    # ==================== COMPARISON ====================

    def snapshot(self) -> list[dict]:
        """
        Value representation of the workbook.

        Cells carry their resolved Style record instead of a style id, so
        two workbooks with differently ordered style tables compare equal.
        """
        return [
            {
                "name": sheet.name,
                "state": sheet.state,
                "column_widths": dict(sorted(sheet.column_widths.items())),
                "protection": sheet.protection,
                "freeze_panes": sheet.freeze_panes,
                "cells": [
                    (
                        c.row,
                        c.column,
                        c.value_type.value,
                        c.value,
                        self.styles.get(c.style_id),
                    )
                    for c in sheet.cells()
                ],
            }
            for sheet in self._sheets
        ]

    def value_equals(self, other: "Workbook") -> bool:
        return self.snapshot() == other.snapshot()

    def __repr__(self) -> str:
        return f"<Workbook sheets={self.sheet_names} styles={len(self.styles)}>"
