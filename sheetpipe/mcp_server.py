"""
MCP (Model Context Protocol) server for SheetPipe.

Exposes the pipeline operations as tools that AI agents can call. It
provides the same functionality as the REST API through the MCP protocol.

MCP Tools:
    - validate_pipeline: Validate stage descriptors without any file I/O
    - run_pipeline: Read inputs, apply stages and write the output
    - inspect_workbook: Summarize the sheets of a workbook

Example:
    To run the MCP server:
        python -m sheetpipe.mcp_server

    Or programmatically:
        from sheetpipe.mcp_server import run_mcp_server
        run_mcp_server()
"""

import asyncio
import json
from typing import Any

from mcp.server import Server
from mcp.server.stdio import stdio_server
from mcp.types import (
    TextContent,
    Tool,
)

from sheetpipe.config import settings
from sheetpipe.exceptions.pipeline_exceptions import SheetPipeError
from sheetpipe.services.events import LoggingObserver
from sheetpipe.services.pipeline_service import PipelineService
from sheetpipe.utils.logging import configure_logging

STAGES_SCHEMA = {
    "type": "array",
    "description": (
        "Ordered stage descriptors, each an object with an 'op' of filterRows, "
        "mergeSheets, remapColumns, sortRows, selectSheets, renameSheet or aggregateRows"
    ),
    "items": {"type": "object"},
}


class MCPSheetPipeServer:
    """
    MCP server implementation for SheetPipe.

    Wraps a PipelineService and exposes it through the MCP protocol.

    Attributes:
        service: The underlying PipelineService instance.
        server: The MCP Server instance.

    Example:
        mcp_server = MCPSheetPipeServer()
        await mcp_server.run()
    """

    def __init__(self, service: PipelineService | None = None) -> None:
        """
        Initialize the MCP server.

        Args:
            service: Optional PipelineService instance. If None, creates a new one.
        """
        self.service = service or PipelineService()
        self.server = Server("sheetpipe-mcp-server")
        self._setup_handlers()

    def _setup_handlers(self) -> None:
        """Set up MCP request handlers."""

        @self.server.list_tools()
        async def list_tools() -> list[Tool]:
            """Return the list of available tools."""
            return self._get_tools()

        @self.server.call_tool()
        async def call_tool(name: str, arguments: dict[str, Any]) -> list[TextContent]:
            """Execute a tool and return the result."""
            result = await self._execute_tool(name, arguments)
            return [TextContent(type="text", text=json.dumps(result, default=str, indent=2))]

    def _get_tools(self) -> list[Tool]:
        """
        Get the list of available tools.

        Returns:
            List of MCP Tool definitions.
        """
        return [
            Tool(
                name="validate_pipeline",
                description=(
                    "Validate a list of transformation stage descriptors. "
                    "No file is opened; every problem is reported with its stage index."
                ),
                inputSchema={
                    "type": "object",
                    "properties": {
                        "stages": STAGES_SCHEMA,
                    },
                    "required": ["stages"],
                },
            ),
            Tool(
                name="run_pipeline",
                description=(
                    "Read one or more Excel workbooks, apply the transformation stages "
                    "in order and write a new workbook, preserving cell styles, column "
                    "widths, sheet protection and frozen panes."
                ),
                inputSchema={
                    "type": "object",
                    "properties": {
                        "inputs": {
                            "type": "array",
                            "items": {"type": "string"},
                            "description": "Input workbook paths, combined in order",
                        },
                        "output": {
                            "type": "string",
                            "description": "Output workbook path",
                        },
                        "stages": STAGES_SCHEMA,
                        "streaming": {
                            "type": "boolean",
                            "description": "Force row-by-row reading on or off",
                        },
                        "timeout_seconds": {
                            "type": "number",
                            "description": "I/O deadline for the job in seconds",
                        },
                        "writer_engine": {
                            "type": "string",
                            "enum": ["openpyxl", "xlsxwriter"],
                            "description": "Engine used to write the output",
                        },
                        "overwrite": {
                            "type": "boolean",
                            "description": "Replace the output file if it exists",
                            "default": False,
                        },
                    },
                    "required": ["inputs", "output"],
                },
            ),
            Tool(
                name="inspect_workbook",
                description=(
                    "Summarize an Excel workbook: sheets with their state, row and "
                    "cell counts, used range, protection and frozen panes."
                ),
                inputSchema={
                    "type": "object",
                    "properties": {
                        "file_path": {
                            "type": "string",
                            "description": "Path to the Excel file",
                        },
                    },
                    "required": ["file_path"],
                },
            ),
        ]

    async def _execute_tool(self, name: str, arguments: dict[str, Any]) -> dict[str, Any]:
        """
        Execute a tool by name with the given arguments.

        Args:
            name: The name of the tool to execute.
            arguments: The arguments to pass to the tool.

        Returns:
            Dictionary containing the tool execution result.
        """
        try:
            if name == "validate_pipeline":
                result = self.service.validate_pipeline(arguments.get("stages", []))
                return {"success": result.valid, "data": result.model_dump()}

            elif name == "run_pipeline":
                job = {
                    key: arguments[key]
                    for key in (
                        "inputs",
                        "output",
                        "stages",
                        "streaming",
                        "timeout_seconds",
                        "writer_engine",
                        "overwrite",
                    )
                    if key in arguments
                }
                result = await asyncio.to_thread(self.service.run_pipeline, job)
                payload = {"success": result.success, "data": result.model_dump(mode="json")}
                if result.error is not None:
                    payload["error"] = result.error
                return payload

            elif name == "inspect_workbook":
                result = self.service.inspect_workbook(arguments["file_path"])
                return {"success": True, "data": result.model_dump()}

            else:
                return {
                    "success": False,
                    "error": {
                        "error_code": "UNKNOWN_TOOL",
                        "message": f"Unknown tool: {name}",
                    },
                }

        except SheetPipeError as e:
            return {
                "success": False,
                "error": e.to_dict(),
            }
        except Exception as e:
            return {
                "success": False,
                "error": {
                    "error_code": "INTERNAL_ERROR",
                    "message": str(e),
                },
            }

    async def run(self) -> None:
        """
        Run the MCP server using stdio transport.

        Blocks until terminated. Uses stdin/stdout for communication with the
        MCP client, so logs go to stderr.
        """
        async with stdio_server() as (read_stream, write_stream):
            await self.server.run(
                read_stream,
                write_stream,
                self.server.create_initialization_options(),
            )


def run_mcp_server() -> None:
    """
    Run the SheetPipe MCP server.

    Example:
        python -m sheetpipe.mcp_server
    """
    configure_logging(settings.log_level)
    server = MCPSheetPipeServer()
    LoggingObserver().attach(server.service.bus)
    asyncio.run(server.run())


if __name__ == "__main__":
    run_mcp_server()
