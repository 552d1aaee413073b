"""
Transform stages.

Each stage is built from its validated configuration model and exposes
``apply(workbook, control) -> Workbook``. Stages never mutate the workbook
they receive: touched sheets are rebuilt into new SheetBuffers and the
result is a new Workbook.

Rows with an index below ``header_rows`` are header rows. They are never
filtered, sorted or keyed, and the last of them supplies the header names
that column references are resolved against.

Column references are resolved in this order:
    1. header name (exact match)
    2. zero-based index (int, or a string of digits)
    3. column letters written "$C" or "$AB"
    4. bare column letters ("C"), only when header_rows is 0

Stages that run on every sheet by default skip sheets without a header
row; sheets named in the stage's ``sheets`` option are always processed.
"""

import bisect
import logging
import math
import re
import statistics
from collections.abc import Callable
from datetime import datetime, timezone
from decimal import Decimal
from typing import Any, Protocol

from openpyxl.utils import column_index_from_string
from openpyxl.utils.datetime import to_excel

from sheetpipe.exceptions.pipeline_exceptions import (
    ColumnNotFoundError,
    DuplicateSheetError,
    MergeConflictError,
    RemapCollisionError,
    UnsupportedValueError,
    ValidationError,
)
from sheetpipe.models.cell_models import (
    AlignmentStyle,
    BorderSide,
    BorderStyle,
    Cell,
    CellValueType,
    FillStyle,
    FontStyle,
    Style,
)
from sheetpipe.models.pipeline_models import (
    AggregateRowsConfig,
    FilterRowsConfig,
    MergeSheetsConfig,
    RemapColumnsConfig,
    RenameSheetConfig,
    RowPredicate,
    SelectSheetsConfig,
    SortRowsConfig,
)
from sheetpipe.models.workbook_models import SheetBuffer, Workbook
from sheetpipe.services.job_control import NO_CONTROL, JobControl

logger = logging.getLogger(__name__)

COLUMN_LETTERS = re.compile(r"^[A-Za-z]{1,3}$")
MAX_COLUMN_INDEX = 16383

# Sort order across value types; empty cells always sort last.
TYPE_RANK = {
    CellValueType.NUMERIC: 0,
    CellValueType.TEXT: 1,
    CellValueType.BOOLEAN: 2,
    CellValueType.FORMULA: 3,
    CellValueType.ERROR: 4,
}


class TransformStage(Protocol):
    """Anything that turns one Workbook into another."""

    op: str

    def apply(self, workbook: Workbook, control: JobControl | None = None) -> Workbook: ...


# ==================== COLUMN RESOLUTION ====================


def header_names(sheet: SheetBuffer, header_rows: int) -> dict[str, int]:
    """Map header text to column index using the last header row."""
    if header_rows <= 0:
        return {}
    names: dict[str, int] = {}
    for cell in sheet.row_cells(header_rows - 1):
        if cell.is_empty:
            continue
        names.setdefault(str(cell.value), cell.column)
    return names


def column_index(ref: str | int, letters: bool = True) -> int | None:
    """
    Resolve an index or column letters without looking at headers.

    "$C" always reads as column letters; bare letters ("C") only when
    letters is True.
    """
    if isinstance(ref, bool):
        return None
    if isinstance(ref, int):
        return ref if 0 <= ref <= MAX_COLUMN_INDEX else None
    ref = ref.strip()
    if ref.isdigit():
        index = int(ref)
        return index if index <= MAX_COLUMN_INDEX else None
    if ref.startswith("$"):
        ref, letters = ref[1:], True
    if letters and COLUMN_LETTERS.match(ref):
        index = column_index_from_string(ref.upper()) - 1
        return index if index <= MAX_COLUMN_INDEX else None
    return None


def resolve_column(
    ref: str | int,
    headers: dict[str, int],
    sheet_name: str,
    header_rows: int = 1,
) -> int:
    """
    Resolve a column reference against a sheet's header names.

    Bare column letters are only read as letters on sheets without header
    rows, so a missing short header such as "id" is an error rather than
    column ID.

    Raises:
        ColumnNotFoundError: If the reference matches nothing.
    """
    if isinstance(ref, str) and ref in headers:
        return headers[ref]
    index = column_index(ref, letters=header_rows == 0)
    if index is None:
        raise ColumnNotFoundError(ref, sheet_name)
    return index


def has_header(sheet: SheetBuffer, header_rows: int) -> bool:
    """Whether a sheet has anything for column references to resolve against."""
    if sheet.is_empty:
        return False
    return header_rows == 0 or bool(header_names(sheet, header_rows))


def _target_sheets(workbook: Workbook, names: list[str] | None, header_rows: int) -> set[str]:
    """
    Sheets a per-sheet stage applies to.

    Named sheets must exist and are always targeted. The default scope
    leaves out sheets without a header row, which pass through unchanged.
    """
    if names is not None:
        for name in names:
            workbook.get_sheet(name)
        return set(names)
    targets = set()
    for sheet in workbook.sheets:
        if has_header(sheet, header_rows):
            targets.add(sheet.name)
        else:
            logger.debug("Skipping sheet '%s': no header row", sheet.name)
    return targets


def _cell_value(sheet: SheetBuffer, row: int, column: int) -> Cell | None:
    cell = sheet.get(row, column)
    if cell is None or cell.is_empty:
        return None
    return cell


# ==================== FILTER ====================


def _is_number(value: Any) -> bool:
    return isinstance(value, (int, float)) and not isinstance(value, bool)


def _same_kind(left: Any, right: Any) -> bool:
    if _is_number(left) and _is_number(right):
        return True
    if isinstance(left, bool) or isinstance(right, bool):
        return isinstance(left, bool) and isinstance(right, bool)
    return isinstance(left, str) and isinstance(right, str)


class RowMatcher:
    """A predicate bound to one sheet's resolved column."""

    def __init__(self, predicate: RowPredicate, column: int) -> None:
        self.predicate = predicate
        self.column = column

    def _fold(self, value: Any) -> Any:
        if isinstance(value, str) and not self.predicate.case_sensitive:
            return value.casefold()
        return value

    def _equals(self, value: Any, expected: Any) -> bool:
        if not _same_kind(value, expected):
            return False
        return self._fold(value) == self._fold(expected)

    def matches(self, sheet: SheetBuffer, row: int) -> bool:
        cell = _cell_value(sheet, row, self.column)
        value = None if cell is None else cell.value
        comparator = self.predicate.comparator
        expected = self.predicate.value

        if comparator == "empty":
            return value is None or value == ""
        if comparator == "notEmpty":
            return not (value is None or value == "")
        if value is None:
            return comparator == "ne"
        if comparator == "eq":
            return self._equals(value, expected)
        if comparator == "ne":
            return not self._equals(value, expected)
        if comparator == "in":
            return any(self._equals(value, item) for item in expected)
        if comparator == "contains":
            if cell.value_type != CellValueType.TEXT:
                return False
            return self._fold(str(expected)) in self._fold(value)

        if not _same_kind(value, expected) or isinstance(value, bool):
            return False
        left, right = self._fold(value), self._fold(expected)
        if comparator == "gt":
            return left > right
        if comparator == "ge":
            return left >= right
        if comparator == "lt":
            return left < right
        return left <= right


class FilterRowsStage:
    """
    Keep the data rows matching the predicate(s).

    Kept rows are packed directly under the header rows in their original
    order, which makes the stage idempotent.
    """

    op = "filterRows"

    def __init__(self, config: FilterRowsConfig) -> None:
        self.config = config

    def _filter_sheet(self, sheet: SheetBuffer) -> SheetBuffer:
        config = self.config
        headers = header_names(sheet, config.header_rows)
        matchers = [
            RowMatcher(
                predicate,
                resolve_column(predicate.column, headers, sheet.name, config.header_rows),
            )
            for predicate in config.all_predicates
        ]
        combine = all if config.match == "all" else any

        result = sheet.derive()
        next_row = config.header_rows
        kept = dropped = 0
        for row, cells in sheet.iter_rows():
            if row < config.header_rows:
                result.extend(cells)
                continue
            selected = combine(m.matches(sheet, row) for m in matchers)
            if selected == config.invert:
                dropped += 1
                continue
            result.extend(cell.moved(row=next_row) for cell in cells)
            next_row += 1
            kept += 1

        logger.debug("filterRows '%s': kept %d row(s), dropped %d", sheet.name, kept, dropped)
        return result

    def apply(self, workbook: Workbook, control: JobControl | None = None) -> Workbook:
        control = control or NO_CONTROL
        targets = _target_sheets(workbook, self.config.sheets, self.config.header_rows)
        sheets = []
        for sheet in workbook.sheets:
            if sheet.name in targets:
                control.checkpoint(f"filterRows on sheet '{sheet.name}'")
                sheet = self._filter_sheet(sheet)
            sheets.append(sheet)
        return workbook.with_sheets(sheets)


# ==================== MERGE ====================


class MergeSheetsStage:
    """
    Merge source sheets into one target sheet.

    Keyed merge (key_columns given): header rows come from the first source,
    data rows are unioned in source order and a repeated key is a conflict.
    Rows whose key cells are all empty never conflict.

    Overlay merge (no key columns): sheets are laid over each other cell by
    cell and a conflict is two cells with different content at one position.

    keepFirst keeps the earlier row/cell, keepLast puts the later content at
    the earlier position, error raises MergeConflictError.
    """

    op = "mergeSheets"

    def __init__(self, config: MergeSheetsConfig) -> None:
        self.config = config

    def _default_sources(self, workbook: Workbook) -> list[str]:
        header_rows = self.config.header_rows if self.config.key_columns else 0
        names = [s.name for s in workbook.sheets if has_header(s, header_rows)]
        return names or workbook.sheet_names

    def _sources(self, workbook: Workbook) -> list[SheetBuffer]:
        names = self.config.sources or self._default_sources(workbook)
        sources: list[SheetBuffer] = []
        seen: set[str] = set()
        for name in names:
            if name in seen:
                continue
            seen.add(name)
            sources.append(workbook.get_sheet(name))
        return sources

    def _conflict(
        self,
        sheet: str,
        row: int,
        column: int | None = None,
        key: list | None = None,
    ) -> MergeConflictError:
        return MergeConflictError(
            sheet=sheet,
            row=row,
            column=column,
            key=key,
            key_columns=[str(c) for c in self.config.key_columns] or None,
            target=self.config.target,
        )

    def _merge_keyed(
        self,
        sources: list[SheetBuffer],
        result: SheetBuffer,
        control: JobControl,
    ) -> None:
        header_rows = self.config.header_rows
        policy = self.config.conflict_policy
        for row, cells in sources[0].iter_rows():
            if row < header_rows:
                result.extend(cells)

        merged: list[list[Cell]] = []
        positions: dict[tuple, int] = {}
        for sheet in sources:
            control.checkpoint(f"mergeSheets on sheet '{sheet.name}'")
            headers = header_names(sheet, header_rows)
            key_columns = [
                resolve_column(c, headers, sheet.name, header_rows) for c in self.config.key_columns
            ]
            for row, cells in sheet.iter_rows():
                if row < header_rows:
                    continue
                key_cells = [_cell_value(sheet, row, c) for c in key_columns]
                if all(c is None for c in key_cells):
                    merged.append(cells)
                    continue
                key = tuple(None if c is None else c.content() for c in key_cells)
                index = positions.get(key)
                if index is None:
                    positions[key] = len(merged)
                    merged.append(cells)
                elif policy == "error":
                    raise self._conflict(
                        sheet.name,
                        row,
                        column=key_columns[0],
                        key=[None if c is None else c.value for c in key_cells],
                    )
                elif policy == "keepLast":
                    merged[index] = cells

        for offset, cells in enumerate(merged):
            result.extend(cell.moved(row=header_rows + offset) for cell in cells)

    def _merge_overlay(
        self,
        sources: list[SheetBuffer],
        result: SheetBuffer,
        control: JobControl,
    ) -> None:
        policy = self.config.conflict_policy
        for sheet in sources:
            control.checkpoint(f"mergeSheets on sheet '{sheet.name}'")
            for cell in sheet.cells():
                existing = result.get(cell.row, cell.column)
                if existing is None:
                    result.put(cell)
                elif existing.content() == cell.content():
                    continue
                elif policy == "error":
                    raise self._conflict(sheet.name, cell.row, column=cell.column)
                elif policy == "keepLast":
                    result.put(cell, replace=True)

    def apply(self, workbook: Workbook, control: JobControl | None = None) -> Workbook:
        control = control or NO_CONTROL
        sources = self._sources(workbook)
        source_names = {s.name for s in sources}
        target = self.config.target or sources[0].name

        if target not in source_names and workbook.has_sheet(target):
            raise DuplicateSheetError(target)

        result = sources[0].derive(target)
        for sheet in sources[1:]:
            for column, width in sheet.column_widths.items():
                result.column_widths.setdefault(column, width)

        if self.config.key_columns:
            self._merge_keyed(sources, result, control)
        else:
            self._merge_overlay(sources, result, control)

        sheets: list[SheetBuffer] = []
        for sheet in workbook.sheets:
            if sheet is sources[0]:
                if self.config.keep_sources and sheet.name != target:
                    sheets.append(sheet)
                sheets.append(result)
            elif sheet.name in source_names:
                if self.config.keep_sources and sheet.name != target:
                    sheets.append(sheet)
            else:
                sheets.append(sheet)

        logger.debug(
            "mergeSheets %s -> '%s': %d row(s)",
            [s.name for s in sources],
            target,
            result.row_count,
        )
        return workbook.with_sheets(sheets)


# ==================== REMAP ====================


class RemapColumnsStage:
    """
    Move columns to new positions.

    Unmapped columns stay where they are unless drop_unmapped is set.
    Column widths move with their columns. Two source columns ending up in
    one destination raise RemapCollisionError.
    """

    op = "remapColumns"

    def __init__(self, config: RemapColumnsConfig) -> None:
        self.config = config

    def _resolve_moves(self, sheet: SheetBuffer) -> dict[int, int]:
        header_rows = self.config.header_rows
        headers = header_names(sheet, header_rows)
        moves: dict[int, int] = {}
        for source_ref, destination_ref in self.config.mapping.items():
            source = resolve_column(source_ref, headers, sheet.name, header_rows)
            destination = column_index(destination_ref)
            if destination is None:
                raise ColumnNotFoundError(destination_ref, sheet.name)
            if source in moves and moves[source] != destination:
                raise ValidationError(
                    [
                        {
                            "loc": ["mapping", source_ref],
                            "msg": f"column {source} is mapped more than once in sheet '{sheet.name}'",
                        }
                    ]
                )
            moves[source] = destination

        occupied = {cell.column for cell in sheet.cells()}

        by_destination: dict[int, list[int]] = {}
        for source, destination in moves.items():
            by_destination.setdefault(destination, []).append(source)
        if not self.config.drop_unmapped:
            for column in occupied - set(moves):
                by_destination.setdefault(column, []).append(column)
        for destination, sources in sorted(by_destination.items()):
            if len(sources) > 1:
                raise RemapCollisionError(sheet.name, destination, sorted(sources))
        return moves

    def _remap_sheet(self, sheet: SheetBuffer) -> SheetBuffer:
        moves = self._resolve_moves(sheet)
        column_map = dict(moves)
        if not self.config.drop_unmapped:
            for column in {cell.column for cell in sheet.cells()} | set(sheet.column_widths):
                column_map.setdefault(column, column)

        result = sheet.derive()
        widths: dict[int, float] = {}
        for column, width in sheet.column_widths.items():
            if column in column_map and column not in moves:
                widths[column_map[column]] = width
        # a moved column's width replaces one left behind at its destination
        for column, width in sheet.column_widths.items():
            if column in moves:
                widths[moves[column]] = width
        result.column_widths = widths

        for cell in sheet.cells():
            destination = column_map.get(cell.column)
            if destination is not None:
                result.put(cell.moved(column=destination))
        return result

    def apply(self, workbook: Workbook, control: JobControl | None = None) -> Workbook:
        control = control or NO_CONTROL
        targets = _target_sheets(workbook, self.config.sheets, self.config.header_rows)
        sheets = []
        for sheet in workbook.sheets:
            if sheet.name in targets:
                control.checkpoint(f"remapColumns on sheet '{sheet.name}'")
                sheet = self._remap_sheet(sheet)
            sheets.append(sheet)
        return workbook.with_sheets(sheets)


# ==================== SORT ====================


class SortRowsStage:
    """
    Stable multi-key sort of data rows.

    Data rows keep the set of row indices they occupied; only their order
    changes. Empty values sort last in both directions.
    """

    op = "sortRows"

    def __init__(self, config: SortRowsConfig) -> None:
        self.config = config

    def _sort_sheet(self, sheet: SheetBuffer) -> SheetBuffer:
        header_rows = self.config.header_rows
        headers = header_names(sheet, header_rows)
        keys = [
            (resolve_column(key.column, headers, sheet.name, header_rows), key.descending)
            for key in self.config.by
        ]
        data_rows = [row for row in sheet.row_indices() if row >= header_rows]

        ordered = list(data_rows)
        for column, descending in reversed(keys):

            def sort_value(row: int, column: int = column) -> tuple:
                cell = _cell_value(sheet, row, column)
                if cell is None:
                    return (len(TYPE_RANK), 0)
                return (TYPE_RANK[cell.value_type], cell.value)

            ordered.sort(key=sort_value, reverse=descending)
            ordered.sort(key=lambda row, column=column: _cell_value(sheet, row, column) is None)

        result = sheet.derive()
        for row, cells in sheet.iter_rows():
            if row < header_rows:
                result.extend(cells)
        for destination, source in zip(data_rows, ordered):
            result.extend(cell.moved(row=destination) for cell in sheet.row_cells(source))
        return result

    def apply(self, workbook: Workbook, control: JobControl | None = None) -> Workbook:
        control = control or NO_CONTROL
        targets = _target_sheets(workbook, self.config.sheets, self.config.header_rows)
        sheets = []
        for sheet in workbook.sheets:
            if sheet.name in targets:
                control.checkpoint(f"sortRows on sheet '{sheet.name}'")
                sheet = self._sort_sheet(sheet)
            sheets.append(sheet)
        return workbook.with_sheets(sheets)


# ==================== AGGREGATE ====================

HEADER_STYLE = Style(
    font=FontStyle(bold=True),
    fill=FillStyle(pattern_type="solid", fg_color="FFC0C0C0"),
    border=BorderStyle(
        left=BorderSide(style="thin"),
        right=BorderSide(style="thin"),
        top=BorderSide(style="thin"),
        bottom=BorderSide(style="thin"),
    ),
    alignment=AlignmentStyle(horizontal="center"),
)
BUCKET_STYLE = Style(number_format="yyyy-mm-dd hh:mm")
BUCKET_WIDTH = 16
MAX_AUTO_WIDTH = 50


def percentile(ordered: list, rank: Decimal) -> int | float | None:
    """
    Nearest-rank percentile of an ascending list.

    Picks the value at position ceil(rank * n) - 1, clamped to the list, so
    p90 of ten values is the ninth smallest.
    """
    if not ordered:
        return None
    index = math.ceil(rank * len(ordered)) - 1
    return ordered[min(max(index, 0), len(ordered) - 1)]


def summarize(values: list, timestamps: list, metrics: list[str]) -> list:
    """Compute metrics over one group's values, in the order requested."""
    ordered = sorted(values)
    n = len(values)
    results = []
    for metric in metrics:
        if metric == "count":
            results.append(n)
        elif metric == "sum":
            results.append(sum(values))
        elif metric == "mean":
            results.append(statistics.fmean(values))
        elif metric == "variance":
            results.append(statistics.pvariance(values) if n > 1 else 0)
        elif metric == "min":
            results.append(ordered[0])
        elif metric == "max":
            results.append(ordered[-1])
        elif metric == "rate":
            span = max(timestamps) - min(timestamps) if timestamps else 0
            results.append(n * 1000 / span if span > 0 else None)
        else:
            results.append(percentile(ordered, Decimal(metric[1:]) / 100))
    return results


def bucket_serial(seconds: int) -> float:
    """Excel serial of a UTC epoch time given in seconds."""
    moment = datetime.fromtimestamp(seconds, tz=timezone.utc).replace(tzinfo=None)
    return to_excel(moment)


class _Group:
    """Aggregated rows sharing one time bucket and group key."""

    def __init__(self, bucket: int | None, key_cells: list[Cell | None]) -> None:
        self.bucket = bucket
        self.key_cells = key_cells
        self.ordinals: list[int] = []
        self.values: list = []
        self.timestamps: list = []

    def add(self, ordinal: int, value: int | float, timestamp: int | float | None) -> None:
        self.ordinals.append(ordinal)
        self.values.append(value)
        if timestamp is not None:
            self.timestamps.append(timestamp)

    def through(self, count: int) -> tuple[list, list]:
        """Values and timestamps of this group's rows among the first count rows."""
        end = bisect.bisect_left(self.ordinals, count)
        return self.values[:end], self.timestamps[:end]


class AggregateRowsStage:
    """
    Summarize one numeric column of a sheet into a new sheet.

    Rows are grouped by time bucket (when bucket_seconds is set) and then by
    the group_by columns; groups keep the order in which they first appear.
    Data rows with an empty value, or an empty timestamp when a timestamp
    column is set, are skipped. Other non-numeric values raise
    UnsupportedValueError.

    With step, each group gets one row per batch of step aggregated rows it
    appears in, holding the statistics of all its rows up to the end of that
    batch; the "rows" column holds the batch end.

    The summary sheet goes directly after its source sheet. Its header row
    is bold on a grey fill and frozen.
    """

    op = "aggregateRows"

    def __init__(self, config: AggregateRowsConfig) -> None:
        self.config = config

    def _source(self, workbook: Workbook) -> SheetBuffer:
        if self.config.sheet is not None:
            return workbook.get_sheet(self.config.sheet)
        sheets = workbook.sheets
        if not sheets:
            raise ValidationError(
                [{"loc": ["sheet"], "msg": "the workbook has no sheet to aggregate"}]
            )
        for sheet in sheets:
            if has_header(sheet, self.config.header_rows):
                return sheet
        return sheets[0]

    def _target(self, workbook: Workbook, source: SheetBuffer) -> str:
        if self.config.target is None:
            return workbook.unique_sheet_name(f"{source.name[:25]} Stats")
        if workbook.has_sheet(self.config.target):
            raise DuplicateSheetError(self.config.target)
        return self.config.target

    @staticmethod
    def _number(sheet: SheetBuffer, row: int, column: int) -> int | float | None:
        cell = _cell_value(sheet, row, column)
        if cell is None:
            return None
        if cell.value_type != CellValueType.NUMERIC:
            raise UnsupportedValueError(
                f"aggregateRows needs numbers, found a {cell.value_type.value} cell",
                sheet=sheet.name,
                row=row,
                column=column,
            )
        return cell.value

    def _collect(self, sheet: SheetBuffer) -> tuple[list[str], list[_Group]]:
        config = self.config
        headers = header_names(sheet, config.header_rows)
        names = {column: name for name, column in headers.items()}

        def resolve(ref: str | int) -> int:
            return resolve_column(ref, headers, sheet.name, config.header_rows)

        value_column = resolve(config.value)
        key_columns = [resolve(ref) for ref in config.group_by]
        timestamp_column = None if config.timestamp is None else resolve(config.timestamp)

        labels = ["bucket"] if config.bucket_seconds else []
        labels += [names.get(column, str(ref)) for column, ref in zip(key_columns, config.group_by)]
        if config.step:
            labels.append("rows")
        labels += config.metrics

        groups: dict[tuple, _Group] = {}
        ordinal = skipped = 0
        for row in sheet.row_indices():
            if row < config.header_rows:
                continue
            value = self._number(sheet, row, value_column)
            timestamp = None
            if timestamp_column is not None:
                timestamp = self._number(sheet, row, timestamp_column)
            if value is None or (timestamp_column is not None and timestamp is None):
                skipped += 1
                continue

            key_cells = [_cell_value(sheet, row, column) for column in key_columns]
            key = tuple(None if c is None else c.content() for c in key_cells)
            bucket = None
            if config.bucket_seconds:
                bucket = int(timestamp // 1000 // config.bucket_seconds) * config.bucket_seconds
                key = (bucket,) + key
            group = groups.get(key)
            if group is None:
                group = groups[key] = _Group(bucket, key_cells)
            group.add(ordinal, value, timestamp)
            ordinal += 1

        logger.debug(
            "aggregateRows '%s': %d row(s) in %d group(s), skipped %d",
            sheet.name,
            ordinal,
            len(groups),
            skipped,
        )
        return labels, list(groups.values())

    def _batches(self, group: _Group):
        step = self.config.step
        if not step:
            yield None, group.values, group.timestamps
            return
        for batch in sorted({ordinal // step for ordinal in group.ordinals}):
            through = (batch + 1) * step
            values, timestamps = group.through(through)
            yield through, values, timestamps

    def _summary_sheet(
        self,
        name: str,
        labels: list[str],
        groups: list[_Group],
        workbook: Workbook,
    ) -> SheetBuffer:
        header_style = workbook.styles.intern(HEADER_STYLE)
        bucket_style = None
        if self.config.bucket_seconds:
            bucket_style = workbook.styles.intern(BUCKET_STYLE)
        summary = SheetBuffer(name, freeze_panes="A2")
        widths = [len(label) for label in labels]

        def place(row: int, column: int, cell: Cell) -> None:
            summary.put(cell.moved(row=row, column=column))
            if cell.value_type == CellValueType.TEXT:
                workbook.strings.intern(cell.value)
            shown = BUCKET_WIDTH if cell.style_id == bucket_style else len(str(cell.value))
            widths[column] = max(widths[column], shown)

        for column, label in enumerate(labels):
            place(0, column, Cell.from_value(0, column, label, header_style))

        row = 1
        for group in groups:
            for through, values, timestamps in self._batches(group):
                cells: list[Cell | None] = []
                if group.bucket is not None:
                    cells.append(Cell.from_value(row, 0, bucket_serial(group.bucket), bucket_style))
                cells += group.key_cells
                if through is not None:
                    cells.append(Cell.from_value(row, 0, through))
                cells += [
                    None if v is None else Cell.from_value(row, 0, v)
                    for v in summarize(values, timestamps, self.config.metrics)
                ]
                for column, cell in enumerate(cells):
                    if cell is not None:
                        place(row, column, cell)
                row += 1

        summary.column_widths = {
            column: min(width + 2, MAX_AUTO_WIDTH) for column, width in enumerate(widths)
        }
        return summary

    def apply(self, workbook: Workbook, control: JobControl | None = None) -> Workbook:
        control = control or NO_CONTROL
        source = self._source(workbook)
        control.checkpoint(f"aggregateRows on sheet '{source.name}'")
        target = self._target(workbook, source)
        labels, groups = self._collect(source)

        result = workbook.clone()
        summary = self._summary_sheet(target, labels, groups, result)
        sheets = []
        for sheet in result.sheets:
            sheets.append(sheet)
            if sheet.name == source.name:
                sheets.append(summary)
        return result.with_sheets(sheets)


# ==================== SHEET-LEVEL STAGES ====================


class SelectSheetsStage:
    """Keep only the named sheets, in the configured order."""

    op = "selectSheets"

    def __init__(self, config: SelectSheetsConfig) -> None:
        self.config = config

    def apply(self, workbook: Workbook, control: JobControl | None = None) -> Workbook:
        seen: set[str] = set()
        sheets = []
        for name in self.config.sheets:
            if name in seen:
                raise DuplicateSheetError(name)
            seen.add(name)
            sheets.append(workbook.get_sheet(name))
        return workbook.with_sheets(sheets)


class RenameSheetStage:
    op = "renameSheet"

    def __init__(self, config: RenameSheetConfig) -> None:
        self.config = config

    def apply(self, workbook: Workbook, control: JobControl | None = None) -> Workbook:
        source = workbook.get_sheet(self.config.source)
        new_name = self.config.to
        if new_name == source.name:
            return workbook.clone()
        if new_name.casefold() != source.name.casefold() and workbook.has_sheet(new_name):
            raise DuplicateSheetError(new_name)
        return workbook.with_sheets(
            sheet.copy(new_name) if sheet is source else sheet for sheet in workbook.sheets
        )


# ==================== REGISTRY ====================

STAGE_BUILDERS: dict[str, Callable[[Any], TransformStage]] = {
    "filterRows": FilterRowsStage,
    "mergeSheets": MergeSheetsStage,
    "remapColumns": RemapColumnsStage,
    "sortRows": SortRowsStage,
    "selectSheets": SelectSheetsStage,
    "renameSheet": RenameSheetStage,
    "aggregateRows": AggregateRowsStage,
}


def build_stage(config: Any) -> TransformStage:
    """
    Build a stage from its validated configuration model.

    Raises:
        ValidationError: If no stage is registered for config.op.
    """
    builder = STAGE_BUILDERS.get(config.op)
    if builder is None:
        raise ValidationError([{"loc": ["op"], "msg": f"Unknown stage op: {config.op!r}"}])
    return builder(config)
