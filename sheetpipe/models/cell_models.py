"""
Cell and style models.

Cells and styles are immutable pydantic models. A cell refers to its style
by index into the owning workbook's StyleTable, so many cells can share one
style record without holding references to it.
"""

import math
from enum import Enum

from pydantic import BaseModel, Field, model_validator

ERROR_CODES = frozenset(
    {
        "#NULL!",
        "#DIV/0!",
        "#VALUE!",
        "#REF!",
        "#NAME?",
        "#NUM!",
        "#N/A",
        "#GETTING_DATA",
        "#SPILL!",
        "#CALC!",
        "#FIELD!",
        "#BLOCKED!",
        "#CONNECT!",
        "#BUSY!",
        "#UNKNOWN!",
    }
)

DEFAULT_STYLE_ID = 0


class CellValueType(str, Enum):
    """
    Value tag of a cell.

    Dates and times are not a separate tag: they are numeric serials whose
    style carries a date number format.
    """

    EMPTY = "empty"
    NUMERIC = "numeric"
    TEXT = "text"
    BOOLEAN = "boolean"
    FORMULA = "formula"
    ERROR = "error"


class Cell(BaseModel):
    """
    A single cell: position, tagged value and style reference.

    Attributes:
        row: Zero-based row index.
        column: Zero-based column index.
        value_type: Tag describing how value is interpreted.
        value: The stored value. Formulas keep their leading "=".
        style_id: Index into the workbook StyleTable (0 is the default style).
    """

    row: int = Field(ge=0, description="Zero-based row index")
    column: int = Field(ge=0, description="Zero-based column index")
    value_type: CellValueType = Field(
        default=CellValueType.EMPTY,
        description="Tag describing how the value is interpreted",
    )
    value: bool | int | float | str | None = Field(
        default=None,
        description="Cell value matching value_type",
    )
    style_id: int = Field(
        default=DEFAULT_STYLE_ID,
        ge=0,
        description="Index into the workbook style table",
    )

    model_config = {"frozen": True}

    @model_validator(mode="after")
    def check_value_matches_type(self) -> "Cell":
        """Ensure the value agrees with its tag."""
        vt, v = self.value_type, self.value
        if vt == CellValueType.EMPTY:
            ok = v is None
        elif vt == CellValueType.NUMERIC:
            ok = isinstance(v, (int, float)) and not isinstance(v, bool)
        elif vt == CellValueType.TEXT:
            ok = isinstance(v, str)
        elif vt == CellValueType.BOOLEAN:
            ok = isinstance(v, bool)
        elif vt == CellValueType.FORMULA:
            ok = isinstance(v, str) and v.startswith("=")
        else:
            ok = v in ERROR_CODES
        if not ok:
            raise ValueError(f"value {v!r} is not valid for a {vt.value} cell")
        return self

    @classmethod
    def from_value(
        cls,
        row: int,
        column: int,
        value: bool | int | float | str | None,
        style_id: int = DEFAULT_STYLE_ID,
    ) -> "Cell":
        """
        Build a cell, inferring the tag from a Python value.

        Strings starting with "=" become formulas. Error cells have to be
        built explicitly with value_type=ERROR.

        Example:
            >>> Cell.from_value(0, 1, 10).value_type
            <CellValueType.NUMERIC: 'numeric'>
        """
        if value is None:
            value_type = CellValueType.EMPTY
        elif isinstance(value, bool):
            value_type = CellValueType.BOOLEAN
        elif isinstance(value, (int, float)):
            value_type = CellValueType.NUMERIC
        elif isinstance(value, str) and len(value) > 1 and value.startswith("="):
            value_type = CellValueType.FORMULA
        else:
            value_type = CellValueType.TEXT
        return cls(
            row=row,
            column=column,
            value_type=value_type,
            value=value,
            style_id=style_id,
        )

    def moved(self, row: int | None = None, column: int | None = None) -> "Cell":
        """Return a copy of this cell at a new position."""
        update = {}
        if row is not None:
            update["row"] = row
        if column is not None:
            update["column"] = column
        return self.model_copy(update=update)

    @property
    def is_empty(self) -> bool:
        return self.value_type == CellValueType.EMPTY

    @property
    def is_finite(self) -> bool:
        if self.value_type != CellValueType.NUMERIC:
            return True
        return math.isfinite(self.value)

    def content(self) -> tuple:
        """Value identity of the cell, ignoring position and style."""
        return (self.value_type.value, self.value)


# ==================== STYLE RECORDS ====================
#
# Colors are plain tokens so that styles stay hashable and engine-neutral:
#   "FFRRGGBB"         ARGB hex
#   "theme:N[:tint]"   theme palette entry with optional tint
#   "indexed:N"        legacy indexed palette entry
#   "auto"             automatic color


class FontStyle(BaseModel):
    """Font attributes."""

    name: str | None = None
    size: float | None = None
    bold: bool = False
    italic: bool = False
    underline: str | None = None
    strike: bool = False
    color: str | None = None
    vert_align: str | None = None
    family: float | None = None
    scheme: str | None = None

    model_config = {"frozen": True}


class FillStyle(BaseModel):
    """Pattern fill. Gradient fills are not represented."""

    pattern_type: str | None = None
    fg_color: str | None = None
    bg_color: str | None = None

    model_config = {"frozen": True}


class BorderSide(BaseModel):
    style: str | None = None
    color: str | None = None

    model_config = {"frozen": True}


class BorderStyle(BaseModel):
    left: BorderSide = BorderSide()
    right: BorderSide = BorderSide()
    top: BorderSide = BorderSide()
    bottom: BorderSide = BorderSide()

    model_config = {"frozen": True}


class AlignmentStyle(BaseModel):
    horizontal: str | None = None
    vertical: str | None = None
    wrap_text: bool = False
    text_rotation: int = 0
    indent: int = 0

    model_config = {"frozen": True}


class ProtectionStyle(BaseModel):
    locked: bool = True
    hidden: bool = False

    model_config = {"frozen": True}


class Style(BaseModel):
    """
    A deduplicated formatting record.

    Two styles are interchangeable when all attributes are equal; style
    tables rely on the model being frozen (hashable) to intern records.
    ``Style()`` is the workbook default style.
    """

    number_format: str = "General"
    font: FontStyle = FontStyle()
    fill: FillStyle = FillStyle()
    border: BorderStyle = BorderStyle()
    alignment: AlignmentStyle = AlignmentStyle()
    protection: ProtectionStyle = ProtectionStyle()

    model_config = {"frozen": True}

    @property
    def is_default(self) -> bool:
        return self == DEFAULT_STYLE


DEFAULT_STYLE = Style()
