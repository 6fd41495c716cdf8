"""Host-side protocol session.

Wraps one ``mcp.ClientSession`` over one transport and drives it through an
explicit lifecycle::

    DISCONNECTED -> CONNECTING -> NEGOTIATING -> READY -> CLOSED
                \\______________\\_____________\\______-> FAILED

FAILED and CLOSED are terminal; a session is never reconnected, build a new
one instead. Capabilities are discovered once right after the handshake and
kept as an immutable snapshot.
"""
import asyncio, enum, itertools
from contextlib import AsyncExitStack
from dataclasses import dataclass
from datetime import timedelta
from typing import Any, Awaitable, Callable, Dict, Optional, Tuple

import anyio
import httpx
import mcp.types as types
import structlog
from mcp import ClientSession, StdioServerParameters
from mcp.client.stdio import stdio_client
from mcp.shared.exceptions import McpError
from pydantic import AnyUrl

from protocol.errors import (
    MethodNotFound, NotFoundError, ProtocolError, RequestTimeout, TransportError, UserMcpError, ValidationError,
)
from protocol.peer import RESOURCE_NOT_FOUND

logger = structlog.get_logger(__name__)

CLIENT_NAME = "user-mcp-host"
CLIENT_VERSION = "1.0.0"

TRANSPORT_ERRORS = (
    anyio.ClosedResourceError, anyio.BrokenResourceError, anyio.EndOfStream, OSError,
)


class SessionState(str, enum.Enum):
    DISCONNECTED = "disconnected"
    CONNECTING = "connecting"
    NEGOTIATING = "negotiating"
    READY = "ready"
    CLOSED = "closed"
    FAILED = "failed"


TERMINAL = {SessionState.CLOSED, SessionState.FAILED}

TRANSITIONS = {
    SessionState.DISCONNECTED: {SessionState.CONNECTING},
    SessionState.CONNECTING: {SessionState.NEGOTIATING},
    SessionState.NEGOTIATING: {SessionState.READY},
    SessionState.READY: {SessionState.CLOSED},
    SessionState.CLOSED: set(),
    SessionState.FAILED: set(),
}


@dataclass(frozen=True)
class PeerCapabilities:
    """What the peer advertised at connect time. Never refreshed."""

    server_info: Optional[types.Implementation] = None
    tools: Tuple[types.Tool, ...] = ()
    resources: Tuple[types.Resource, ...] = ()
    resource_templates: Tuple[types.ResourceTemplate, ...] = ()
    prompts: Tuple[types.Prompt, ...] = ()

    def find_tool(self, name: str) -> Optional[types.Tool]:
        return next((t for t in self.tools if t.name == name), None)

    def find_prompt(self, name: str) -> Optional[types.Prompt]:
        return next((p for p in self.prompts if p.name == name), None)

    def resource_uris(self) -> Dict[str, Any]:
        """Concrete URIs and URI templates, each mapped to its descriptor."""
        out: Dict[str, Any] = {str(r.uri): r for r in self.resources}
        out.update({t.uriTemplate: t for t in self.resource_templates})
        return out


def stdio_transport(params: StdioServerParameters, errlog=None):
    """Transport factory spawning the peer as a subprocess."""
    if errlog is None:
        return lambda: stdio_client(params)
    return lambda: stdio_client(params, errlog=errlog)


def translate(err: McpError) -> UserMcpError:
    """Map a JSON-RPC error from the peer onto the local taxonomy."""
    code, message = err.error.code, err.error.message
    if code == types.METHOD_NOT_FOUND:
        return MethodNotFound(message)
    if code == types.INVALID_PARAMS:
        return ValidationError(message)
    if code == RESOURCE_NOT_FOUND:
        return NotFoundError(message)
    if code == httpx.codes.REQUEST_TIMEOUT:
        return RequestTimeout(message)
    if code == types.CONNECTION_CLOSED:
        return TransportError(message)
    return ProtocolError(message)


class HostSession:
    """One connection from a host to one peer.

    Args:
        transport: Zero-argument callable returning an async context manager
            that yields ``(read_stream, write_stream)``.
        sampling_handler: Sampling callback; when set, sampling support is
            declared during the handshake.
        timeout: Per-request timeout in seconds.
    """

    def __init__(self, transport: Callable[[], Any], sampling_handler=None,
                 timeout: Optional[float] = 120.0):
        self._transport = transport
        self._sampling_handler = sampling_handler
        self._timeout = timedelta(seconds=timeout) if timeout else None
        self._stack = AsyncExitStack()
        self._session: Optional[ClientSession] = None
        self._ids = itertools.count(1)
        self.state = SessionState.DISCONNECTED
        self.capabilities = PeerCapabilities()

    @classmethod
    def stdio(cls, params: StdioServerParameters, errlog=None, **kw) -> "HostSession":
        return cls(stdio_transport(params, errlog), **kw)

    # ---------- lifecycle ----------
    def _transition(self, new: SessionState) -> None:
        if new not in TRANSITIONS[self.state]:
            raise ProtocolError(f"illegal session transition {self.state.value} -> {new.value}")
        logger.debug("session.state", old=self.state.value, new=new.value)
        self.state = new

    async def _fail(self, exc: BaseException) -> None:
        logger.error("session.failed", state=self.state.value, error=str(exc) or type(exc).__name__)
        self.state = SessionState.FAILED
        self._session = None
        try:
            await self._stack.aclose()
        except Exception as e:  # keep the first error
            logger.debug("session.cleanup_error", error=repr(e))

    async def connect(self) -> PeerCapabilities:
        """Open the transport, negotiate and snapshot the peer's capabilities."""
        if self.state is not SessionState.DISCONNECTED:
            raise ProtocolError(f"cannot connect a session in state {self.state.value}")
        self._transition(SessionState.CONNECTING)
        try:
            read_stream, write_stream = await self._stack.enter_async_context(self._transport())
            self._transition(SessionState.NEGOTIATING)
            kwargs: Dict[str, Any] = {
                "read_timeout_seconds": self._timeout,
                "client_info": types.Implementation(name=CLIENT_NAME, version=CLIENT_VERSION),
            }
            if self._sampling_handler is not None:
                kwargs["sampling_callback"] = self._sampling_handler
            self._session = await self._stack.enter_async_context(
                ClientSession(read_stream, write_stream, **kwargs)
            )
            init = await self._session.initialize()
            self._transition(SessionState.READY)
            self.capabilities = await self._discover(init)
        except McpError as e:
            await self._fail(e)
            raise TransportError(f"handshake failed: {e.error.message}") from e
        except TRANSPORT_ERRORS as e:
            await self._fail(e)
            raise TransportError(f"could not reach peer: {str(e) or type(e).__name__}") from e
        logger.info(
            "session.ready",
            server=self.capabilities.server_info.name if self.capabilities.server_info else None,
            tools=len(self.capabilities.tools),
            resources=len(self.capabilities.resources),
            templates=len(self.capabilities.resource_templates),
            prompts=len(self.capabilities.prompts),
        )
        return self.capabilities

    async def _discover(self, init: types.InitializeResult) -> PeerCapabilities:
        caps = init.capabilities
        session = self._session

        async def nothing():
            return None

        # the four listings are independent; skip what the peer did not advertise
        tools, resources, templates, prompts = await asyncio.gather(
            session.list_tools() if caps.tools else nothing(),
            session.list_resources() if caps.resources else nothing(),
            session.list_resource_templates() if caps.resources else nothing(),
            session.list_prompts() if caps.prompts else nothing(),
        )
        return PeerCapabilities(
            server_info=init.serverInfo,
            tools=tuple(tools.tools) if tools else (),
            resources=tuple(resources.resources) if resources else (),
            resource_templates=tuple(templates.resourceTemplates) if templates else (),
            prompts=tuple(prompts.prompts) if prompts else (),
        )

    async def close(self) -> None:
        if self.state is SessionState.READY:
            self._transition(SessionState.CLOSED)
        self._session = None
        await self._stack.aclose()

    async def __aenter__(self) -> "HostSession":
        await self.connect()
        return self

    async def __aexit__(self, *exc_info) -> None:
        await self.close()

    # ---------- requests ----------
    async def _request(self, method: str, send: Callable[[ClientSession], Awaitable[Any]]) -> Any:
        if self.state is not SessionState.READY or self._session is None:
            raise ProtocolError(f"session is not ready (state={self.state.value})")
        log = logger.bind(call_id=next(self._ids), method=method)
        log.debug("request.sent")
        try:
            result = await send(self._session)
        except McpError as e:
            err = translate(e)
            if isinstance(err, TransportError):
                await self._fail(e)
            log.warning("request.failed", error=str(err), kind=type(err).__name__)
            raise err from e
        except TRANSPORT_ERRORS as e:
            await self._fail(e)
            raise TransportError(f"connection to peer lost: {str(e) or type(e).__name__}") from e
        log.debug("response.received")
        return result

    async def call_tool(self, name: str, arguments: Optional[Dict[str, Any]] = None) -> types.CallToolResult:
        return await self._request("tools/call", lambda s: s.call_tool(name, arguments or {}))

    async def read_resource(self, uri: str) -> types.ReadResourceResult:
        return await self._request("resources/read", lambda s: s.read_resource(AnyUrl(uri)))

    async def get_prompt(self, name: str, arguments: Optional[Dict[str, str]] = None) -> types.GetPromptResult:
        return await self._request("prompts/get", lambda s: s.get_prompt(name, arguments or {}))
