"""
Adapters between workbook engines and the SheetPipe workbook model.

- ContainerInspector: zip/XML structure checks and sheet-level metadata
- OpenpyxlAdapter: full-fidelity reading (full or streaming) and writing
- XlsxWriterAdapter: fast writing, optionally in constant-memory mode
"""

from sheetpipe.adapters.container_inspector import ContainerInspector
from sheetpipe.adapters.openpyxl_adapter import OpenpyxlAdapter
from sheetpipe.adapters.xlsxwriter_adapter import XlsxWriterAdapter

__all__ = [
    "ContainerInspector",
    "OpenpyxlAdapter",
    "XlsxWriterAdapter",
]
