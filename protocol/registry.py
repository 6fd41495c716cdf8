"""Capability registry: the peer-side table of tools, resources and prompts.

One registry is built at startup and handed to the peer binding. Each entry
couples the descriptor advertised during discovery with the handler that
serves it. Arguments are validated against a pydantic model before any
handler runs, so handlers only ever see well-typed input.
"""
import re
from dataclasses import dataclass, field
from typing import Any, Awaitable, Callable, Dict, List, Optional, Sequence, Type, Union

import mcp.types as types
import pydantic
import structlog

from protocol.errors import MethodNotFound, NotFoundError, ValidationError

logger = structlog.get_logger(__name__)

PLACEHOLDER_RE = re.compile(r"\{([^}]+)\}")

Content = Union[types.TextContent, types.ImageContent, types.EmbeddedResource]
Sampler = Callable[[List[types.SamplingMessage], int, Optional[str]], Awaitable[types.CreateMessageResult]]


# ---------- URI templates ----------
def template_params(template: str) -> List[str]:
    """Placeholder names of a URI template, left to right."""
    return PLACEHOLDER_RE.findall(template)


def expand_template(template: str, values: Dict[str, Any]) -> str:
    """Substitute each placeholder literally, left to right.

    Raises ValidationError naming the first placeholder without a value.
    """
    uri = template
    for name in template_params(template):
        value = values.get(name)
        if value is None or str(value) == "":
            raise ValidationError(f"Missing value for '{name}' in {template}", field=name)
        uri = uri.replace("{" + name + "}", str(value), 1)
    return uri


def match_template(template: str, uri: str) -> Optional[Dict[str, str]]:
    """Extract placeholder values from a concrete URI, or None when it does not fit."""
    parts = PLACEHOLDER_RE.split(template)
    names = parts[1::2]
    pattern = "".join(re.escape(p) if i % 2 == 0 else "([^/]+)" for i, p in enumerate(parts))
    m = re.fullmatch(pattern, uri)
    if not m:
        return None
    return dict(zip(names, m.groups()))


def text_message(role: str, text: str) -> types.PromptMessage:
    return types.PromptMessage(role=role, content=types.TextContent(type="text", text=text))


class NoArgs(pydantic.BaseModel):
    pass


@dataclass
class CallContext:
    """Per-call handle given to tool handlers.

    sampler is set by the peer binding when a live session can forward
    sampling requests to the host.
    """

    sampler: Optional[Sampler] = None


@dataclass(frozen=True)
class ToolHints:
    read_only: bool = False
    destructive: bool = False
    idempotent: bool = False
    open_world: bool = True

    def to_annotations(self, title: Optional[str]) -> types.ToolAnnotations:
        return types.ToolAnnotations(
            title=title,
            readOnlyHint=self.read_only,
            destructiveHint=self.destructive,
            idempotentHint=self.idempotent,
            openWorldHint=self.open_world,
        )


@dataclass
class ToolEntry:
    name: str
    handler: Callable[..., Awaitable[Union[str, Sequence[Content]]]]
    description: str = ""
    params: Type[pydantic.BaseModel] = NoArgs
    title: Optional[str] = None
    hints: ToolHints = field(default_factory=ToolHints)
    output_schema: Optional[Dict[str, Any]] = None

    def descriptor(self) -> types.Tool:
        return types.Tool(
            name=self.name,
            description=self.description,
            inputSchema=self.params.model_json_schema(),
            outputSchema=self.output_schema,
            annotations=self.hints.to_annotations(self.title),
        )


@dataclass
class ResourceEntry:
    name: str
    uri: str
    read: Callable[[str, Dict[str, str]], Awaitable[str]]
    list_fn: Optional[Callable[[], Awaitable[List[types.Resource]]]] = None
    description: str = ""
    title: Optional[str] = None
    mime_type: str = "application/json"

    @property
    def is_template(self) -> bool:
        return bool(template_params(self.uri))

    def concrete(self) -> types.Resource:
        return types.Resource(
            uri=self.uri, name=self.name, title=self.title,
            description=self.description, mimeType=self.mime_type,
        )

    def template(self) -> types.ResourceTemplate:
        return types.ResourceTemplate(
            uriTemplate=self.uri, name=self.name, title=self.title,
            description=self.description, mimeType=self.mime_type,
        )

    def variables_for(self, uri: str) -> Optional[Dict[str, str]]:
        if self.is_template:
            return match_template(self.uri, uri)
        return {} if uri == self.uri else None


@dataclass
class PromptEntry:
    name: str
    render: Callable[[pydantic.BaseModel], Awaitable[List[types.PromptMessage]]]
    description: str = ""
    params: Type[pydantic.BaseModel] = NoArgs

    def descriptor(self) -> types.Prompt:
        args = [
            types.PromptArgument(name=fname, description=f.description, required=f.is_required())
            for fname, f in self.params.model_fields.items()
        ]
        return types.Prompt(name=self.name, description=self.description, arguments=args)


def validate_model(model: Type[pydantic.BaseModel], arguments: Optional[Dict[str, Any]], what: str):
    try:
        return model.model_validate(arguments or {})
    except pydantic.ValidationError as e:
        err = e.errors()[0]
        fld = ".".join(str(p) for p in err["loc"]) or None
        if fld is None:
            raise ValidationError(f"Invalid arguments for {what}: {err['msg']}") from e
        raise ValidationError(f"Invalid value for '{fld}' in {what}: {err['msg']}", field=fld) from e


class CapabilityRegistry:
    """Named tools, resources (concrete and templated) and prompts of one peer."""

    def __init__(self):
        self._tools: Dict[str, ToolEntry] = {}
        self._resources: Dict[str, ResourceEntry] = {}
        self._prompts: Dict[str, PromptEntry] = {}

    # ---------- registration ----------
    def add_tool(self, name: str, handler, description: str = "", params=NoArgs,
                 title: Optional[str] = None, hints: Optional[ToolHints] = None,
                 output_schema: Optional[Dict[str, Any]] = None) -> ToolEntry:
        if name in self._tools:
            raise ValueError(f"tool already registered: {name}")
        entry = ToolEntry(name, handler, description, params, title, hints or ToolHints(), output_schema)
        self._tools[name] = entry
        return entry

    def add_resource(self, name: str, uri: str, read, list_fn=None, description: str = "",
                     title: Optional[str] = None, mime_type: str = "application/json") -> ResourceEntry:
        if name in self._resources:
            raise ValueError(f"resource already registered: {name}")
        entry = ResourceEntry(name, uri, read, list_fn, description, title, mime_type)
        # resources/list must always carry a concrete example URI
        if entry.is_template and list_fn is None:
            raise ValueError(f"templated resource {name} needs a list function")
        self._resources[name] = entry
        return entry

    def add_prompt(self, name: str, render, description: str = "", params=NoArgs) -> PromptEntry:
        if name in self._prompts:
            raise ValueError(f"prompt already registered: {name}")
        entry = PromptEntry(name, render, description, params)
        self._prompts[name] = entry
        return entry

    def tool(self, name: str, **kw):
        def decorator(fn):
            self.add_tool(name, fn, **kw)
            return fn
        return decorator

    def resource(self, name: str, uri: str, **kw):
        def decorator(fn):
            self.add_resource(name, uri, fn, **kw)
            return fn
        return decorator

    def prompt(self, name: str, **kw):
        def decorator(fn):
            self.add_prompt(name, fn, **kw)
            return fn
        return decorator

    # ---------- discovery ----------
    def list_tools(self) -> List[types.Tool]:
        return [t.descriptor() for t in self._tools.values()]

    async def list_resources(self) -> List[types.Resource]:
        out: List[types.Resource] = []
        for entry in self._resources.values():
            if entry.list_fn is not None:
                out.extend(await entry.list_fn())
            else:
                out.append(entry.concrete())
        return out

    def list_resource_templates(self) -> List[types.ResourceTemplate]:
        return [r.template() for r in self._resources.values() if r.is_template]

    def list_prompts(self) -> List[types.Prompt]:
        return [p.descriptor() for p in self._prompts.values()]

    # ---------- dispatch ----------
    async def call_tool(self, name: str, arguments: Optional[Dict[str, Any]],
                        ctx: Optional[CallContext] = None) -> List[Content]:
        entry = self._tools.get(name)
        if entry is None:
            raise MethodNotFound(f"Unknown tool: {name}")
        args = validate_model(entry.params, arguments, f"tool '{name}'")
        logger.debug("tool.dispatch", tool=name)
        result = await entry.handler(args, ctx or CallContext())
        if isinstance(result, str):
            return [types.TextContent(type="text", text=result)]
        return list(result)

    async def read_resource(self, uri: str) -> List[types.TextResourceContents]:
        for entry in self._resources.values():
            variables = entry.variables_for(uri)
            if variables is None:
                continue
            logger.debug("resource.dispatch", resource=entry.name, uri=uri)
            text = await entry.read(uri, variables)
            return [types.TextResourceContents(uri=uri, text=text, mimeType=entry.mime_type)]
        raise NotFoundError(f"Unknown resource: {uri}")

    async def get_prompt(self, name: str, arguments: Optional[Dict[str, Any]]) -> types.GetPromptResult:
        entry = self._prompts.get(name)
        if entry is None:
            raise MethodNotFound(f"Unknown prompt: {name}")
        args = validate_model(entry.params, arguments, f"prompt '{name}'")
        messages = await entry.render(args)
        return types.GetPromptResult(description=entry.description, messages=messages)
