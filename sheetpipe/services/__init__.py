"""
Service layer for SheetPipe.

Reader, transform stages, pipeline, writer and orchestrator live in their
own modules and are imported from there, decoupled from the transport
layers (CLI/HTTP/MCP):

    from sheetpipe.services.orchestrator import PipelineOrchestrator
"""
