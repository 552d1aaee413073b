"""
Models describing the structure of an OOXML workbook package.

These are produced by the ContainerInspector and carry the sheet-level
elements that SheetPipe round-trips without transforming them.
"""

from pydantic import BaseModel, Field


class SheetProtection(BaseModel):
    """
    Worksheet protection flags.

    Flags follow the XML semantics: True means the action is protected
    (locked), False means it is allowed. Defaults mirror the file format
    defaults, so ``SheetProtection(sheet=True)`` is a plainly protected sheet.
    The password is stored only as the legacy hash or as the modern
    algorithm/hash/salt triple, never in clear text.
    """

    sheet: bool = False
    objects: bool = False
    scenarios: bool = False
    format_cells: bool = True
    format_columns: bool = True
    format_rows: bool = True
    insert_columns: bool = True
    insert_rows: bool = True
    insert_hyperlinks: bool = True
    delete_columns: bool = True
    delete_rows: bool = True
    select_locked_cells: bool = False
    select_unlocked_cells: bool = False
    sort: bool = True
    auto_filter: bool = True
    pivot_tables: bool = True
    password: str | None = Field(default=None, description="Legacy password hash")
    algorithm_name: str | None = None
    hash_value: str | None = None
    salt_value: str | None = None
    spin_count: int | None = None

    model_config = {"frozen": True}

    @property
    def has_password(self) -> bool:
        return bool(self.password or self.hash_value)


# XML attribute name for each SheetProtection flag
PROTECTION_ATTRIBUTES: dict[str, str] = {
    "sheet": "sheet",
    "objects": "objects",
    "scenarios": "scenarios",
    "format_cells": "formatCells",
    "format_columns": "formatColumns",
    "format_rows": "formatRows",
    "insert_columns": "insertColumns",
    "insert_rows": "insertRows",
    "insert_hyperlinks": "insertHyperlinks",
    "delete_columns": "deleteColumns",
    "delete_rows": "deleteRows",
    "select_locked_cells": "selectLockedCells",
    "select_unlocked_cells": "selectUnlockedCells",
    "sort": "sort",
    "auto_filter": "autoFilter",
    "pivot_tables": "pivotTables",
}


class SheetPart(BaseModel):
    """
    One sheet entry of the workbook part, resolved to its package part.

    Attributes:
        name: Sheet name as shown in Excel.
        sheet_id: The sheetId attribute.
        state: "visible", "hidden" or "veryHidden".
        relationship_id: r:id linking the sheet to its part.
        part_name: Path of the part inside the zip package.
        kind: "worksheet" or "chartsheet".
        column_widths: Zero-based column index to width in characters.
        protection: Parsed sheetProtection element, if any.
        freeze_panes: Top-left unfrozen cell (e.g. "B2") when panes are frozen.
        dimension: Declared used range (e.g. "A1:C10").
        merged_ranges: Merged cell ranges (not carried to the output).
    """

    name: str
    sheet_id: int | None = None
    state: str = "visible"
    relationship_id: str
    part_name: str
    kind: str = "worksheet"
    column_widths: dict[int, float] = Field(default_factory=dict)
    protection: SheetProtection | None = None
    freeze_panes: str | None = None
    dimension: str | None = None
    merged_ranges: list[str] = Field(default_factory=list)


class ContainerLayout(BaseModel):
    """
    Structural summary of a workbook package.

    Attributes:
        source: Path or description of the inspected input.
        workbook_part: Path of the workbook part.
        sheets: Sheets in workbook order.
        shared_string_count: Number of entries in the shared-string part.
        has_styles: Whether a styles part is present.
        has_macros: Whether a VBA project part is present (not carried over).
    """

    source: str
    workbook_part: str
    sheets: list[SheetPart] = Field(default_factory=list)
    shared_string_count: int = 0
    has_styles: bool = False
    has_macros: bool = False

    @property
    def sheet_names(self) -> list[str]:
        return [s.name for s in self.sheets]

    def get_sheet(self, name: str) -> SheetPart | None:
        for sheet in self.sheets:
            if sheet.name == name:
                return sheet
        return None
