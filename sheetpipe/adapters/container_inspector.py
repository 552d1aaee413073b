"""
Structural inspection of OOXML workbook packages.

The inspector walks the zip package with zipfile and ElementTree before any
cell is loaded. It fails fast on structural corruption and collects the
sheet-level elements (column widths, sheet protection, visibility, frozen
panes) that are carried through a pipeline unchanged.

Element names are matched on their local part, so files written with the
strict OOXML namespaces are handled like transitional ones.
"""

import logging
import posixpath
import zipfile
from typing import BinaryIO
from xml.etree import ElementTree as ET

from openpyxl.utils import get_column_letter

from sheetpipe.exceptions.pipeline_exceptions import (
    IOFailureError,
    MalformedContainerError,
    SheetPipeError,
    UnsupportedFeatureError,
)
from sheetpipe.models.container_models import (
    PROTECTION_ATTRIBUTES,
    ContainerLayout,
    SheetPart,
    SheetProtection,
)
from sheetpipe.services.job_control import CHECKPOINT_ROWS, NO_CONTROL, JobControl

logger = logging.getLogger(__name__)

OLE2_SIGNATURE = b"\xd0\xcf\x11\xe0\xa1\xb1\x1a\xe1"
PACKAGE_RELS = "_rels/.rels"
MAX_COLUMNS = 16384


def _local(tag: str) -> str:
    return tag.rsplit("}", 1)[-1]


def _attr(element: ET.Element, name: str) -> str | None:
    """Attribute lookup ignoring the namespace prefix."""
    if name in element.attrib:
        return element.attrib[name]
    for key, value in element.attrib.items():
        if _local(key) == name:
            return value
    return None


def _flag(value: str | None, default: bool) -> bool:
    if value is None:
        return default
    return value.strip().lower() in ("1", "true")


def _rels_path(part_name: str) -> str:
    directory, filename = posixpath.split(part_name)
    return posixpath.join(directory, "_rels", f"{filename}.rels")


def _resolve_target(base_part: str, target: str) -> str:
    if target.startswith("/"):
        return target.lstrip("/")
    return posixpath.normpath(posixpath.join(posixpath.dirname(base_part), target))


class ContainerInspector:
    """
    Validate a workbook package and describe its structure.

    Example:
        >>> layout = ContainerInspector().inspect("sales.xlsx")
        >>> layout.sheet_names
        ['Sales', 'Regions']
    """

    def inspect(
        self,
        source: str | BinaryIO,
        source_name: str | None = None,
        control: JobControl | None = None,
    ) -> ContainerLayout:
        """
        Inspect a workbook package.

        Args:
            source: Path or seekable binary stream.
            source_name: Name used in error messages for streams.
            control: Cancellation/deadline control.

        Returns:
            ContainerLayout describing the package.

        Raises:
            UnsupportedFeatureError: Encrypted or legacy binary workbook.
            MalformedContainerError: Corrupt or inconsistent package.
            IOFailureError: The source cannot be read.
        """
        name = source_name or (source if isinstance(source, str) else "<stream>")
        control = control or NO_CONTROL

        try:
            if isinstance(source, str):
                with open(source, "rb") as handle:
                    return self._inspect_stream(handle, name, control)
            return self._inspect_stream(source, name, control)

        except SheetPipeError:
            raise
        except OSError as e:
            raise IOFailureError(path=name, operation="read", reason=str(e)) from e

    def _inspect_stream(
        self, handle: BinaryIO, name: str, control: JobControl
    ) -> ContainerLayout:
        start = handle.tell()
        signature = handle.read(len(OLE2_SIGNATURE))
        handle.seek(start)
        if signature == OLE2_SIGNATURE:
            raise UnsupportedFeatureError(
                "encrypted or legacy binary (OLE2) workbook", source=name
            )

        try:
            with zipfile.ZipFile(handle) as archive:
                layout = self._inspect_archive(archive, name, control)
        except zipfile.BadZipFile as e:
            raise MalformedContainerError(name, reason=f"not a zip package: {e}") from e
        finally:
            handle.seek(start)
        return layout

    # ==================== PACKAGE STRUCTURE ====================

    def _inspect_archive(
        self, archive: zipfile.ZipFile, name: str, control: JobControl
    ) -> ContainerLayout:
        members = set(archive.namelist())

        package_rels = self._read_relationships(archive, PACKAGE_RELS, name, required=True)
        workbook_part = None
        for rel_type, target in package_rels.values():
            if rel_type.endswith("/officeDocument"):
                workbook_part = _resolve_target("", target)
                break
        if workbook_part is None or workbook_part not in members:
            raise MalformedContainerError(
                name, reason="package has no workbook part", part=PACKAGE_RELS
            )

        workbook_rels = self._read_relationships(
            archive, _rels_path(workbook_part), name, required=True
        )
        shared_strings_part = None
        styles_part = None
        has_macros = False
        for rel_type, target in workbook_rels.values():
            if rel_type.endswith("/sharedStrings"):
                shared_strings_part = _resolve_target(workbook_part, target)
            elif rel_type.endswith("/styles"):
                styles_part = _resolve_target(workbook_part, target)
            elif rel_type.endswith("/vbaProject"):
                has_macros = True

        sheets = self._read_sheet_entries(archive, workbook_part, workbook_rels, members, name)

        shared_string_count = 0
        if shared_strings_part is not None and shared_strings_part in members:
            shared_string_count = self._count_shared_strings(archive, shared_strings_part, name)
        elif shared_strings_part is not None:
            logger.warning("%s: shared-string part %s is missing", name, shared_strings_part)

        for sheet in sheets:
            control.checkpoint(f"inspecting sheet '{sheet.name}'")
            if sheet.kind == "worksheet":
                self._scan_worksheet(archive, sheet, shared_string_count, name, control)

        return ContainerLayout(
            source=name,
            workbook_part=workbook_part,
            sheets=sheets,
            shared_string_count=shared_string_count,
            has_styles=styles_part is not None and styles_part in members,
            has_macros=has_macros,
        )

    def _parse_part(self, archive: zipfile.ZipFile, part: str, name: str) -> ET.Element:
        try:
            return ET.fromstring(archive.read(part))
        except KeyError as e:
            raise MalformedContainerError(name, reason="part is missing", part=part) from e
        except ET.ParseError as e:
            raise MalformedContainerError(name, reason=f"invalid XML: {e}", part=part) from e

    def _read_relationships(
        self,
        archive: zipfile.ZipFile,
        part: str,
        name: str,
        required: bool = False,
    ) -> dict[str, tuple[str, str]]:
        """Map relationship id to (type, target)."""
        if part not in archive.namelist():
            if required:
                raise MalformedContainerError(name, reason="relationships part is missing", part=part)
            return {}
        root = self._parse_part(archive, part, name)
        rels: dict[str, tuple[str, str]] = {}
        for rel in root:
            if _local(rel.tag) != "Relationship":
                continue
            rel_id = rel.attrib.get("Id")
            target = rel.attrib.get("Target")
            if rel_id and target and rel.attrib.get("TargetMode") != "External":
                rels[rel_id] = (rel.attrib.get("Type", ""), target)
        return rels

    def _read_sheet_entries(
        self,
        archive: zipfile.ZipFile,
        workbook_part: str,
        workbook_rels: dict[str, tuple[str, str]],
        members: set[str],
        name: str,
    ) -> list[SheetPart]:
        root = self._parse_part(archive, workbook_part, name)
        sheets: list[SheetPart] = []
        for element in root.iter():
            if _local(element.tag) != "sheet":
                continue
            sheet_name = element.attrib.get("name")
            rel_id = _attr(element, "id")
            if not sheet_name or not rel_id:
                raise MalformedContainerError(
                    name, reason="sheet entry without name or r:id", part=workbook_part
                )
            if rel_id not in workbook_rels:
                raise MalformedContainerError(
                    name,
                    reason=f"sheet '{sheet_name}' references missing relationship {rel_id}",
                    part=workbook_part,
                )
            rel_type, target = workbook_rels[rel_id]
            part_name = _resolve_target(workbook_part, target)
            if part_name not in members:
                raise MalformedContainerError(
                    name,
                    reason=f"sheet '{sheet_name}' points at missing part {part_name}",
                    part=workbook_part,
                )
            sheet_id = element.attrib.get("sheetId")
            sheets.append(
                SheetPart(
                    name=sheet_name,
                    sheet_id=int(sheet_id) if sheet_id and sheet_id.isdigit() else None,
                    state=element.attrib.get("state", "visible"),
                    relationship_id=rel_id,
                    part_name=part_name,
                    kind=rel_type.rsplit("/", 1)[-1] or "worksheet",
                )
            )
        return sheets

    def _count_shared_strings(self, archive: zipfile.ZipFile, part: str, name: str) -> int:
        count = 0
        try:
            with archive.open(part) as stream:
                for _, element in ET.iterparse(stream, events=("end",)):
                    if _local(element.tag) == "si":
                        count += 1
                        element.clear()
        except ET.ParseError as e:
            raise MalformedContainerError(name, reason=f"invalid XML: {e}", part=part) from e
        return count

    # ==================== WORKSHEET SCAN ====================

    def _scan_worksheet(
        self,
        archive: zipfile.ZipFile,
        sheet: SheetPart,
        shared_string_count: int,
        name: str,
        control: JobControl,
    ) -> None:
        """Collect sheet-level elements and verify shared-string references."""
        rows_seen = 0
        try:
            with archive.open(sheet.part_name) as stream:
                for _, element in ET.iterparse(stream, events=("end",)):
                    tag = _local(element.tag)
                    if tag == "c":
                        self._check_cell(element, shared_string_count, sheet, name)
                    elif tag == "row":
                        element.clear()
                        rows_seen += 1
                        if rows_seen % CHECKPOINT_ROWS == 0:
                            control.checkpoint(f"inspecting sheet '{sheet.name}'")
                    elif tag == "col":
                        self._read_column(element, sheet)
                    elif tag == "sheetProtection":
                        protection = self._read_protection(element)
                        sheet.protection = protection if protection.sheet else None
                    elif tag == "pane":
                        sheet.freeze_panes = self._read_pane(element)
                    elif tag == "dimension":
                        sheet.dimension = element.attrib.get("ref")
                    elif tag == "mergeCell" and element.attrib.get("ref"):
                        sheet.merged_ranges.append(element.attrib["ref"])
        except ET.ParseError as e:
            raise MalformedContainerError(
                name, reason=f"invalid XML: {e}", part=sheet.part_name
            ) from e
        except ValueError as e:
            raise MalformedContainerError(name, reason=str(e), part=sheet.part_name) from e

    def _check_cell(
        self,
        element: ET.Element,
        shared_string_count: int,
        sheet: SheetPart,
        name: str,
    ) -> None:
        if element.attrib.get("t") != "s":
            return
        for child in element:
            if _local(child.tag) == "v" and child.text is not None:
                index = int(child.text)
                if not 0 <= index < shared_string_count:
                    raise MalformedContainerError(
                        name,
                        reason=(
                            f"cell {element.attrib.get('r', '?')} in sheet '{sheet.name}' "
                            f"references shared string {index}, "
                            f"table has {shared_string_count} entries"
                        ),
                        part=sheet.part_name,
                    )

    def _read_column(self, element: ET.Element, sheet: SheetPart) -> None:
        width = element.attrib.get("width")
        if width is None:
            return
        first = int(element.attrib.get("min", "1"))
        last = min(int(element.attrib.get("max", first)), MAX_COLUMNS)
        for column in range(first - 1, last):
            sheet.column_widths[column] = float(width)

    def _read_protection(self, element: ET.Element) -> SheetProtection:
        values: dict = {
            field: _flag(element.attrib.get(attr), SheetProtection.model_fields[field].default)
            for field, attr in PROTECTION_ATTRIBUTES.items()
        }
        spin_count = element.attrib.get("spinCount")
        values.update(
            password=element.attrib.get("password"),
            algorithm_name=element.attrib.get("algorithmName"),
            hash_value=element.attrib.get("hashValue"),
            salt_value=element.attrib.get("saltValue"),
            spin_count=int(spin_count) if spin_count else None,
        )
        return SheetProtection(**values)

    def _read_pane(self, element: ET.Element) -> str | None:
        if element.attrib.get("state") not in ("frozen", "frozenSplit"):
            return None
        top_left = element.attrib.get("topLeftCell")
        if top_left:
            return top_left
        columns = int(float(element.attrib.get("xSplit", "0")))
        rows = int(float(element.attrib.get("ySplit", "0")))
        return f"{get_column_letter(columns + 1)}{rows + 1}"
