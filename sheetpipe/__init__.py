"""
SheetPipe: spreadsheet ingestion and transformation engine.

Reads Excel workbooks, applies an ordered pipeline of structural stages
(filter, merge, remap, sort, select, rename) and writes a new workbook
while carrying cell styles, column widths, sheet protection, visibility
and frozen panes through.

Architecture:
    - Service layer (reader, pipeline, writer, orchestrator) decoupled
      from the CLI, REST (FastAPI) and MCP transports
    - openpyxl for reading (full or streaming) and full-fidelity writes
    - XlsxWriter for fast, optionally constant-memory writes
"""

__version__ = "0.1.0"
