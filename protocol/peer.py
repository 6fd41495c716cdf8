"""Peer binding: serves one CapabilityRegistry through an MCP low-level Server.

This is the dispatch boundary. Tool failures come back to the host as
error results; resource and prompt failures come back as JSON-RPC errors
carrying a code the host session maps onto the same error taxonomy.
"""
from typing import Dict, List, Optional

import mcp.types as types
import structlog
from mcp.server.lowlevel import NotificationOptions, Server
from mcp.server.lowlevel.helper_types import ReadResourceContents
from mcp.server.stdio import stdio_server
from mcp.shared.exceptions import McpError
from pydantic import AnyUrl

from protocol.errors import BackendError, MethodNotFound, NotFoundError, UserMcpError, ValidationError
from protocol.registry import CallContext, CapabilityRegistry

logger = structlog.get_logger(__name__)

RESOURCE_NOT_FOUND = -32002


def to_mcp_error(exc: UserMcpError) -> McpError:
    if isinstance(exc, MethodNotFound):
        code = types.METHOD_NOT_FOUND
    elif isinstance(exc, ValidationError):
        code = types.INVALID_PARAMS
    elif isinstance(exc, NotFoundError):
        code = RESOURCE_NOT_FOUND
    else:
        code = types.INTERNAL_ERROR
    return McpError(types.ErrorData(code=code, message=str(exc)))


class Peer:
    """An MCP server process side: owns the registry and the SDK server object."""

    def __init__(self, registry: CapabilityRegistry, name: str, version: str,
                 instructions: Optional[str] = None):
        self.registry = registry
        self.server = Server(name, version=version, instructions=instructions)
        self._bind()

    def _sampler(self):
        session = self.server.request_context.session

        async def sample(messages: List[types.SamplingMessage], max_tokens: int,
                         model_hint: Optional[str]) -> types.CreateMessageResult:
            wanted = types.ClientCapabilities(sampling=types.SamplingCapability())
            if not session.check_client_capability(wanted):
                raise BackendError("Model call failed: the connected host does not support sampling")
            prefs = types.ModelPreferences(hints=[types.ModelHint(name=model_hint)]) if model_hint else None
            return await session.create_message(
                messages=messages, max_tokens=max_tokens, model_preferences=prefs,
            )

        return sample

    def _bind(self) -> None:
        server, registry = self.server, self.registry

        @server.list_tools()
        async def _list_tools() -> List[types.Tool]:
            return registry.list_tools()

        # registry validation is the only argument gate
        @server.call_tool(validate_input=False)
        async def _call_tool(name: str, arguments: Dict) -> List[types.TextContent]:
            log = logger.bind(tool=name)
            try:
                content = await registry.call_tool(name, arguments, CallContext(sampler=self._sampler()))
            except UserMcpError as e:
                # the SDK turns the raised error into an isError result
                log.warning("tool.failed", error=str(e), kind=type(e).__name__)
                raise
            log.info("tool.succeeded")
            return content

        @server.list_resources()
        async def _list_resources() -> List[types.Resource]:
            return await registry.list_resources()

        @server.list_resource_templates()
        async def _list_resource_templates() -> List[types.ResourceTemplate]:
            return registry.list_resource_templates()

        @server.read_resource()
        async def _read_resource(uri: AnyUrl) -> List[ReadResourceContents]:
            try:
                contents = await registry.read_resource(str(uri))
            except UserMcpError as e:
                logger.warning("resource.failed", uri=str(uri), error=str(e))
                raise to_mcp_error(e) from e
            return [ReadResourceContents(content=c.text, mime_type=c.mimeType) for c in contents]

        @server.list_prompts()
        async def _list_prompts() -> List[types.Prompt]:
            return registry.list_prompts()

        @server.get_prompt()
        async def _get_prompt(name: str, arguments: Optional[Dict[str, str]]) -> types.GetPromptResult:
            try:
                return await registry.get_prompt(name, arguments)
            except UserMcpError as e:
                logger.warning("prompt.failed", prompt=name, error=str(e))
                raise to_mcp_error(e) from e

    def initialization_options(self):
        return self.server.create_initialization_options(notification_options=NotificationOptions())

    async def run(self, read_stream, write_stream) -> None:
        await self.server.run(read_stream, write_stream, self.initialization_options())

    async def run_stdio(self) -> None:
        """Serve over this process's stdin/stdout until the host disconnects."""
        logger.info("peer.started", name=self.server.name)
        async with stdio_server() as (read_stream, write_stream):
            await self.run(read_stream, write_stream)
        logger.info("peer.stopped", name=self.server.name)
